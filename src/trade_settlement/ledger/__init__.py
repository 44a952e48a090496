"""Ledger layer: gateway contract, transaction builders and implementations."""

from trade_settlement.ledger.intents import SettlementAsset
from trade_settlement.ledger.protocol import (
    AccountState,
    LedgerCredential,
    LedgerGateway,
    LedgerTransaction,
    ProvisionedWallet,
    SubmitResult,
    TransactionIntent,
    WalletKey,
)
from trade_settlement.ledger.sequencer import AccountSequencer
from trade_settlement.ledger.session import LedgerSession
from trade_settlement.ledger.simulated import SimulatedLedgerGateway
from trade_settlement.ledger.xrpl_gateway import XrplLedgerGateway

__all__ = [
    "AccountSequencer",
    "AccountState",
    "LedgerCredential",
    "LedgerGateway",
    "LedgerTransaction",
    "LedgerSession",
    "ProvisionedWallet",
    "SettlementAsset",
    "SimulatedLedgerGateway",
    "SubmitResult",
    "TransactionIntent",
    "WalletKey",
    "XrplLedgerGateway",
]
