"""Wallet Service: provisions participant accounts and their ledger identity.

A new participant gets a faucet-funded account, a DID pointing at its DID
document, and a trust line to the settlement token when deals settle in an
issued token rather than XRP.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from trade_settlement.config import get_settings
from trade_settlement.domain.enums import ParticipantRole, TransactionLogType
from trade_settlement.domain.exceptions import LedgerRejectedError, ValidationError
from trade_settlement.infrastructure.database.orm_models import Participant
from trade_settlement.infrastructure.database.repositories import (
    ParticipantRepository,
    TransactionLogRepository,
)
from trade_settlement.ledger.intents import SettlementAsset, did_set_intent, trust_set_intent
from trade_settlement.ledger.sequencer import AccountSequencer
from trade_settlement.logging_config import get_logger
from trade_settlement.schemas.deal import ParticipantView, ProvisionedParticipant

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from trade_settlement.config import Settings
    from trade_settlement.ledger.protocol import LedgerGateway, TransactionIntent, WalletKey

logger = get_logger(__name__)

DID_METHOD_PREFIX = "did:xrpl:1:"


def decentralized_id(address: str) -> str:
    return f"{DID_METHOD_PREFIX}{address}"


def generate_did_document(
    address: str, public_key: str, settings: Settings | None = None
) -> dict[str, Any]:
    """Build the W3C DID document published for ``address``."""
    settings = settings or get_settings()
    did = decentralized_id(address)
    key_id = f"{did}#keys-1"
    return {
        "@context": "https://www.w3.org/ns/did/v1",
        "id": did,
        "verificationMethod": [
            {
                "id": key_id,
                "type": "EcdsaSecp256k1VerificationKey2019",
                "controller": did,
                "publicKeyHex": public_key,
            }
        ],
        "authentication": [key_id],
        "service": [
            {
                "id": f"{did}#profile",
                "type": "TradeSettlementProfile",
                "serviceEndpoint": f"{settings.identity_base_url}/profile/{address}",
            }
        ],
    }


class WalletService:
    """Creates participants together with their funded ledger accounts."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: LedgerGateway,
        sequencer: AccountSequencer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._sequencer = sequencer or AccountSequencer.shared()
        self._settings = settings or get_settings()
        self._participant_repo = ParticipantRepository(session)
        self._log_repo = TransactionLogRepository(session)

    async def create_participant_wallet(self, name: str, role: str) -> ProvisionedParticipant:
        """Provision a wallet, register the participant and publish its DID.

        The participant and its key are committed as soon as the account is
        funded, so a DID or trust line failure leaves a usable participant.

        Raises:
            ValidationError: If ``role`` is not buyer, supplier or facilitator.
            LedgerRejectedError: If the DIDSet or TrustSet fails.
        """
        try:
            role = ParticipantRole(role.lower()).value
        except ValueError as err:
            raise ValidationError(f"Unknown participant role: {role}") from err
        if not name.strip():
            raise ValidationError("Participant name must not be empty")

        provisioned = await self._gateway.provision_wallet()
        key = provisioned.key
        participant = await self._participant_repo.create(
            Participant(
                role=role,
                name=name,
                ledger_address=key.address,
                public_key=key.public_key,
                verified=False,
            )
        )
        await self._participant_repo.store_key(participant, key)
        await self._session.commit()

        did_uri = f"{self._settings.identity_base_url}/did/{key.address}"
        did_hash = await self._submit(did_set_intent(key.address, did_uri), key, "DIDSet")
        participant.decentralized_id = decentralized_id(key.address)

        trust_hash = None
        asset = SettlementAsset.from_settings(self._settings)
        if not asset.is_native:
            trust_hash = await self._submit(
                trust_set_intent(key.address, asset, self._settings.settlement_trust_limit),
                key,
                "TrustSet",
            )

        await self._log_repo.record(
            TransactionLogType.WALLET_CREATED,
            participant_id=participant.id,
            tx_hash=did_hash,
            amount=provisioned.balance,
            to_address=key.address,
            metadata={
                "role": role,
                "decentralized_id": participant.decentralized_id,
                "trust_set_hash": trust_hash,
            },
        )
        await self._session.commit()

        logger.info(
            "wallet.created",
            address=key.address,
            role=role,
            balance=str(provisioned.balance),
        )
        return ProvisionedParticipant(
            participant=ParticipantView.model_validate(participant),
            balance=provisioned.balance,
            did_document=generate_did_document(key.address, key.public_key, self._settings),
        )

    async def _submit(self, intent: TransactionIntent, signer: WalletKey, operation: str) -> str:
        async with self._sequencer.serialize(signer.address):
            result = await self._gateway.submit_and_confirm(intent, signer)
        if not result.success:
            logger.error(
                "wallet.ledger_rejected",
                operation=operation,
                account=signer.address,
                result=result.result_code,
            )
            raise LedgerRejectedError(operation, result.result_code, result.hash or None)
        return result.hash
