"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select

from trade_settlement.infrastructure.database.orm_models import (
    Credential,
    Deal,
    DealCounter,
    Participant,
    TransactionLogEntry,
    WalletKeyRecord,
)
from trade_settlement.ledger.protocol import WalletKey

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from trade_settlement.domain.enums import DealStatus, TransactionLogType

DEAL_COUNTER_ID = "counter"


class ParticipantRepository:
    """Data access for participants and their signing material."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, participant: Participant) -> Participant:
        """Insert a new participant."""
        self._session.add(participant)
        await self._session.flush()
        return participant

    async def get_by_id(self, participant_id: uuid.UUID) -> Participant | None:
        result = await self._session.execute(
            select(Participant).where(Participant.id == participant_id)
        )
        return result.scalar_one_or_none()

    async def get_by_address(self, address: str) -> Participant | None:
        """Fetch a participant by its ledger address."""
        result = await self._session.execute(
            select(Participant).where(Participant.ledger_address == address)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[Participant]:
        result = await self._session.execute(
            select(Participant).order_by(Participant.created_at.asc())
        )
        return list(result.scalars().all())

    async def mark_verified(self, participant: Participant, issuer: str) -> Participant:
        participant.verified = True
        participant.issuer = issuer
        await self._session.flush()
        return participant

    async def store_key(self, participant: Participant, key: WalletKey) -> WalletKeyRecord:
        """Persist signing material. The seed is encrypted by the column type."""
        record = WalletKeyRecord(
            participant_id=participant.id,
            address=key.address,
            public_key=key.public_key,
            seed=key.seed,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def get_key(self, address: str) -> WalletKey | None:
        """Return the signing material of ``address``, or None if not held."""
        result = await self._session.execute(
            select(WalletKeyRecord).where(WalletKeyRecord.address == address)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        return WalletKey(address=record.address, public_key=record.public_key, seed=record.seed)


class CredentialRepository:
    """Data access for identity credentials."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(
        self, participant_id: uuid.UUID, issuer_address: str, credential_type: str
    ) -> Credential | None:
        result = await self._session.execute(
            select(Credential).where(
                Credential.participant_id == participant_id,
                Credential.issuer_address == issuer_address,
                Credential.credential_type == credential_type,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        participant: Participant,
        issuer_address: str,
        credential_type: str,
        expiration: int | None = None,
        transaction_hash: str | None = None,
    ) -> Credential:
        """Return the local credential row, creating it on first sight."""
        credential = await self.get(participant.id, issuer_address, credential_type)
        if credential is not None:
            return credential
        credential = Credential(
            participant_id=participant.id,
            issuer_address=issuer_address,
            credential_type=credential_type,
            expiration=expiration,
            transaction_hash=transaction_hash,
            accepted=False,
        )
        self._session.add(credential)
        await self._session.flush()
        return credential

    async def record_issued(
        self,
        participant: Participant,
        issuer_address: str,
        credential_type: str,
        expiration: int | None,
        transaction_hash: str | None,
    ) -> Credential:
        """Upsert the local row for a credential issued on the ledger.

        A re-issued credential replaces the row's expiration and hash and
        resets it to unaccepted.
        """
        credential = await self.get_or_create(
            participant,
            issuer_address,
            credential_type,
            expiration=expiration,
            transaction_hash=transaction_hash,
        )
        if credential.transaction_hash != transaction_hash:
            credential.expiration = expiration
            credential.transaction_hash = transaction_hash
            credential.accepted = False
            await self._session.flush()
        return credential

    async def mark_accepted(self, credential: Credential) -> Credential:
        credential.accepted = True
        await self._session.flush()
        return credential

    async def list_for_participant(self, participant_id: uuid.UUID) -> list[Credential]:
        result = await self._session.execute(
            select(Credential)
            .where(Credential.participant_id == participant_id)
            .order_by(Credential.created_at.asc())
        )
        return list(result.scalars().all())


class DealRepository:
    """Data access for deals. Milestones and escrow records load with the deal."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, deal: Deal) -> Deal:
        """Insert a new deal with its milestones and escrow records."""
        self._session.add(deal)
        await self._session.flush()
        return deal

    async def get_by_id(self, deal_id: uuid.UUID) -> Deal | None:
        result = await self._session.execute(select(Deal).where(Deal.id == deal_id))
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> Deal | None:
        result = await self._session.execute(
            select(Deal).where(Deal.deal_reference == reference)
        )
        return result.scalar_one_or_none()

    async def list_all(self, status: DealStatus | None = None) -> list[Deal]:
        """Fetch all deals, newest first, optionally filtered by status."""
        stmt = select(Deal).order_by(Deal.created_at.desc())
        if status is not None:
            stmt = stmt.where(Deal.status == status.value)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_participant(self, participant_id: uuid.UUID) -> list[Deal]:
        """Fetch every deal in which a participant holds any role."""
        result = await self._session.execute(
            select(Deal)
            .where(
                or_(
                    Deal.buyer_id == participant_id,
                    Deal.supplier_id == participant_id,
                    Deal.facilitator_id == participant_id,
                )
            )
            .order_by(Deal.created_at.desc())
        )
        return list(result.scalars().all())


class DealCounterRepository:
    """Monotonic deal-reference generator backed by an atomic counter row."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def next_value(self) -> int:
        """Atomically increment and return the counter.

        A single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` creates the
        row on first use and increments it afterwards; concurrent callers
        serialize on the row lock.
        """
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"Deal counter upsert not supported on {dialect}")

        stmt = (
            insert(DealCounter)
            .values(id=DEAL_COUNTER_ID, value=1)
            .on_conflict_do_update(
                index_elements=[DealCounter.id],
                set_={"value": DealCounter.value + 1},
            )
            .returning(DealCounter.value)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def next_deal_reference(self, year: int | None = None) -> str:
        """Return the next reference, ``DEAL-<year>-<counter:04d>``."""
        value = await self.next_value()
        year = year or datetime.now(UTC).year
        return f"DEAL-{year}-{value:04d}"


class TransactionLogRepository:
    """Data access for the append-only transaction log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        entry_type: TransactionLogType,
        deal_id: uuid.UUID | None = None,
        participant_id: uuid.UUID | None = None,
        tx_hash: str | None = None,
        amount: Decimal | None = None,
        from_address: str | None = None,
        to_address: str | None = None,
        status: str = "success",
        metadata: dict[str, Any] | None = None,
    ) -> TransactionLogEntry:
        """Append a new audit entry. This is the ONLY write operation allowed."""
        entry = TransactionLogEntry(
            type=entry_type.value,
            deal_id=deal_id,
            participant_id=participant_id,
            hash=tx_hash,
            amount=amount,
            from_address=from_address,
            to_address=to_address,
            status=status,
            metadata_json=metadata,
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_by_deal(self, deal_id: uuid.UUID) -> list[TransactionLogEntry]:
        """Fetch all entries of a deal in chronological order."""
        result = await self._session.execute(
            select(TransactionLogEntry)
            .where(TransactionLogEntry.deal_id == deal_id)
            .order_by(TransactionLogEntry.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_by_participant(self, participant_id: uuid.UUID) -> list[TransactionLogEntry]:
        """Fetch all entries touching a participant, newest first."""
        result = await self._session.execute(
            select(TransactionLogEntry)
            .where(TransactionLogEntry.participant_id == participant_id)
            .order_by(TransactionLogEntry.created_at.desc())
        )
        return list(result.scalars().all())
