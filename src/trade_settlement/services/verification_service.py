"""Participant Verification Service: KYC-style credentials on the ledger.

Coordinates between:
    - Ledger gateway (CredentialCreate by the issuer, CredentialAccept by the subject)
    - Credential and participant repositories
    - Transaction log (audit trail)

A participant is marked verified only after the credential both exists and
is accepted on the ledger. Re-running the workflow after a partial failure
resumes from whichever step is missing.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from trade_settlement.config import get_settings
from trade_settlement.domain.enums import ComplianceStatus, DealStatus, TransactionLogType
from trade_settlement.domain.exceptions import (
    KeyMaterialMissingError,
    LedgerRejectedError,
    ParticipantNotFoundError,
)
from trade_settlement.domain.ledger_time import expiration_after_days, ledger_now
from trade_settlement.infrastructure.database.repositories import (
    CredentialRepository,
    DealRepository,
    ParticipantRepository,
    TransactionLogRepository,
)
from trade_settlement.ledger.intents import (
    credential_accept_intent,
    credential_create_intent,
    credential_delete_intent,
)
from trade_settlement.ledger.sequencer import AccountSequencer
from trade_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from trade_settlement.config import Settings
    from trade_settlement.infrastructure.database.orm_models import (
        Credential,
        Deal,
        Participant,
    )
    from trade_settlement.ledger.protocol import (
        LedgerCredential,
        LedgerGateway,
        TransactionIntent,
        WalletKey,
    )

logger = get_logger(__name__)

_OPEN_STATUSES = {DealStatus.DRAFT, DealStatus.FUNDED, DealStatus.ACTIVE}


def credential_is_valid(credential: LedgerCredential | None, now: int) -> bool:
    """A credential is valid iff it exists, is accepted and has not expired."""
    if credential is None or not credential.accepted:
        return False
    return credential.expiration is None or credential.expiration > now


def compliance_status_for(deal: Deal) -> ComplianceStatus:
    if deal.buyer.verified and deal.supplier.verified:
        return ComplianceStatus.KYC_COMPLETE
    return ComplianceStatus.PENDING


class VerificationService:
    """Issues and accepts identity credentials for participants."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: LedgerGateway,
        sequencer: AccountSequencer | None = None,
        settings: Settings | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._sequencer = sequencer or AccountSequencer.shared()
        self._settings = settings or get_settings()
        self._now = now
        self._participant_repo = ParticipantRepository(session)
        self._credential_repo = CredentialRepository(session)
        self._deal_repo = DealRepository(session)
        self._log_repo = TransactionLogRepository(session)

    async def verify_participant(self, issuer_address: str, subject_address: str) -> Participant:
        """Verify ``subject_address`` with a credential from ``issuer_address``.

        1. No-op if the subject is already verified locally
        2. Reuse a valid credential already on the ledger
        3. Otherwise issue it (issuer signs) and accept it (subject signs)
        4. Mark the subject verified and refresh its open deals' compliance

        Raises:
            ParticipantNotFoundError: If the subject is not registered.
            KeyMaterialMissingError: If the issuer's or subject's keys are absent.
            LedgerRejectedError: If deleting an expired credential, issuance or
                acceptance fails on ledger.
        """
        subject = await self._participant_repo.get_by_address(subject_address)
        if subject is None:
            raise ParticipantNotFoundError(subject_address)
        if subject.verified:
            logger.info("verification.already_verified", subject=subject_address)
            return subject

        issuer_key = await self._require_key(issuer_address)
        subject_key = await self._require_key(subject_address)
        credential_type = self._settings.credential_type
        now = ledger_now(self._settings.ledger_epoch_offset, self._now())

        existing = await self._gateway.get_credential_object(
            issuer_address, subject_address, credential_type
        )
        if credential_is_valid(existing, now):
            logger.info(
                "verification.credential_reused",
                subject=subject_address,
                tx_hash=existing.transaction_hash,
            )
            credential = await self._credential_repo.get_or_create(
                subject,
                issuer_address,
                credential_type,
                expiration=existing.expiration,
                transaction_hash=existing.transaction_hash,
            )
            tx_hash = existing.transaction_hash
        else:
            credential, tx_hash = await self._issue_and_accept(
                subject, issuer_key, subject_key, existing, now
            )

        await self._credential_repo.mark_accepted(credential)
        await self._participant_repo.mark_verified(subject, issuer_address)
        await self._log_repo.record(
            TransactionLogType.CREDENTIAL_ISSUED,
            participant_id=subject.id,
            tx_hash=tx_hash,
            from_address=issuer_address,
            to_address=subject_address,
            metadata={
                "credential_type": credential_type,
                "expiration": credential.expiration,
            },
        )
        await self._refresh_compliance(subject)
        await self._session.commit()

        logger.info("verification.completed", subject=subject_address, issuer=issuer_address)
        return subject

    async def _issue_and_accept(
        self,
        subject: Participant,
        issuer_key: WalletKey,
        subject_key: WalletKey,
        existing: LedgerCredential | None,
        now: int,
    ) -> tuple[Credential, str]:
        credential_type = self._settings.credential_type
        if existing is not None and existing.expiration is not None and existing.expiration <= now:
            await self._delete_expired(issuer_key, existing)
            existing = None

        expiration = existing.expiration if existing is not None else None
        issue_hash = existing.transaction_hash if existing is not None else None

        if existing is None:
            expiration = expiration_after_days(
                self._now(),
                self._settings.credential_expiration_days,
                self._settings.ledger_epoch_offset,
            )
            intent = credential_create_intent(
                issuer=issuer_key.address,
                subject=subject_key.address,
                credential_type=credential_type,
                expiration=expiration,
            )
            issue_hash = await self._submit(intent, issuer_key, "CredentialCreate")
            logger.info("verification.credential_issued", subject=subject_key.address)

        credential = await self._credential_repo.record_issued(
            subject,
            issuer_key.address,
            credential_type,
            expiration=expiration,
            transaction_hash=issue_hash,
        )
        await self._session.commit()

        intent = credential_accept_intent(
            subject=subject_key.address,
            issuer=issuer_key.address,
            credential_type=credential_type,
        )
        accept_hash = await self._submit(intent, subject_key, "CredentialAccept")
        logger.info("verification.credential_accepted", subject=subject_key.address)
        return credential, accept_hash

    async def _delete_expired(self, issuer_key: WalletKey, existing: LedgerCredential) -> None:
        intent = credential_delete_intent(
            account=issuer_key.address,
            issuer=existing.issuer,
            subject=existing.subject,
            credential_type=existing.credential_type,
        )
        await self._submit(intent, issuer_key, "CredentialDelete")
        logger.info(
            "verification.expired_credential_deleted",
            subject=existing.subject,
            expiration=existing.expiration,
        )

    async def _submit(self, intent: TransactionIntent, signer: WalletKey, operation: str) -> str:
        async with self._sequencer.serialize(signer.address):
            result = await self._gateway.submit_and_confirm(intent, signer)
        if not result.success:
            logger.error(
                "verification.ledger_rejected",
                operation=operation,
                account=signer.address,
                result=result.result_code,
            )
            raise LedgerRejectedError(operation, result.result_code, result.hash or None)
        return result.hash

    async def _refresh_compliance(self, participant: Participant) -> None:
        for deal in await self._deal_repo.list_by_participant(participant.id):
            if deal.status not in _OPEN_STATUSES:
                continue
            deal.compliance_status = compliance_status_for(deal).value
        await self._session.flush()

    async def _require_key(self, address: str) -> WalletKey:
        key = await self._participant_repo.get_key(address)
        if key is None:
            raise KeyMaterialMissingError(address)
        return key
