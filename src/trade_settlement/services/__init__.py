"""Application services: deal lifecycle, escrow orchestration, verification and wallets."""

from trade_settlement.services.deal_service import DealService
from trade_settlement.services.escrow_orchestrator import EscrowOrchestrator
from trade_settlement.services.verification_service import VerificationService
from trade_settlement.services.wallet_service import WalletService, generate_did_document

__all__ = [
    "DealService",
    "EscrowOrchestrator",
    "VerificationService",
    "WalletService",
    "generate_did_document",
]
