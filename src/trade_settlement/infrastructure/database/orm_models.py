"""SQLAlchemy 2.0 ORM models for the settlement core.

Tables:
    1. participants: Buyers, suppliers and facilitators, one per ledger address.
    2. wallet_keys: Signing material for a participant (seed encrypted at rest).
    3. credentials: Identity credentials issued to a participant.
    4. deals: Trade deals between a buyer and a supplier.
    5. milestones: Ordered, percentage-weighted tranches of a deal.
    6. escrow_records: Local mirror of each milestone's ledger escrow.
    7. transaction_log: Append-only audit trail of every observable state change.
    8. deal_counters: Atomic counter behind human-readable deal references.

Design decisions:
    - UUIDs as primary keys.
    - Decimal for amounts (no floating point rounding errors).
    - Fulfillments and seeds use EncryptedText and never leave the release
      and signing paths in clear text.
    - CHECK constraints on status columns mirror the state machines.
    - transaction_log is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from trade_settlement.infrastructure.database.encryption import EncryptedText

JSONType = JSON().with_variant(JSONB, "postgresql")
Amount = Numeric(18, 6)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. participants
# ---------------------------------------------------------------------------
class Participant(Base):
    """A party to deals, identified by its ledger address."""

    __tablename__ = "participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    role: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    ledger_address: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Classic XRPL address; immutable once created",
    )
    public_key: Mapped[str | None] = mapped_column(String(80), nullable=True)
    decentralized_id: Mapped[str | None] = mapped_column(
        String(120),
        nullable=True,
        comment="did:xrpl:1:<address>",
    )
    issuer: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Address of the credential issuer that verified this participant",
    )
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    wallet_key: Mapped[WalletKeyRecord | None] = relationship(
        "WalletKeyRecord",
        back_populates="participant",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    credentials: Mapped[list[Credential]] = relationship(
        "Credential",
        back_populates="participant",
        cascade="all, delete-orphan",
        order_by="Credential.created_at.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('buyer', 'supplier', 'facilitator')",
            name="ck_participant_valid_role",
        ),
        Index("idx_participant_role", "role"),
    )

    def __repr__(self) -> str:
        return f"<Participant {self.role} {self.ledger_address} verified={self.verified}>"


# ---------------------------------------------------------------------------
# 2. wallet_keys
# ---------------------------------------------------------------------------
class WalletKeyRecord(Base):
    """Signing material of a participant's account. Read-only to the core."""

    __tablename__ = "wallet_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    participant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    public_key: Mapped[str] = mapped_column(String(80), nullable=False)
    seed: Mapped[str] = mapped_column(EncryptedText, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    participant: Mapped[Participant] = relationship("Participant", back_populates="wallet_key")

    def __repr__(self) -> str:
        return f"<WalletKeyRecord {self.address}>"


# ---------------------------------------------------------------------------
# 3. credentials
# ---------------------------------------------------------------------------
class Credential(Base):
    """An identity credential between an issuer and a participant."""

    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    participant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
    )
    issuer_address: Mapped[str] = mapped_column(String(64), nullable=False)
    credential_type: Mapped[str] = mapped_column(String(64), nullable=False)
    accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expiration: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Ledger-epoch seconds"
    )
    transaction_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    participant: Mapped[Participant] = relationship("Participant", back_populates="credentials")

    __table_args__ = (
        UniqueConstraint(
            "participant_id", "issuer_address", "credential_type", name="uq_credential_triple"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Credential {self.credential_type} issuer={self.issuer_address} "
            f"accepted={self.accepted}>"
        )


# ---------------------------------------------------------------------------
# 4. deals
# ---------------------------------------------------------------------------
class Deal(Base):
    """A milestone-based trade deal between a buyer and a supplier."""

    __tablename__ = "deals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_reference: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        comment="DEAL-<year>-<counter>",
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    settlement_asset: Mapped[str] = mapped_column(String(40), nullable=False)
    escrow_balance: Mapped[Decimal] = mapped_column(
        Amount,
        nullable=False,
        default=Decimal(0),
        comment="Cache of the amount still locked; derived from milestones",
    )
    supplier_balance: Mapped[Decimal] = mapped_column(
        Amount,
        nullable=False,
        default=Decimal(0),
        comment="Cache of the amount released; derived from milestones",
    )

    # --- Status (guarded by DealStateMachine) ---
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    dispute: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    compliance_status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending")
    credential_provider: Mapped[str] = mapped_column(String(200), nullable=False)

    # --- Participants ---
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("participants.id"), nullable=False
    )
    supplier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("participants.id"), nullable=False
    )
    facilitator_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("participants.id"), nullable=True
    )

    transaction_hashes: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Append-only list of ledger transaction hashes for this deal",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    buyer: Mapped[Participant] = relationship(
        "Participant", foreign_keys=[buyer_id], lazy="selectin"
    )
    supplier: Mapped[Participant] = relationship(
        "Participant", foreign_keys=[supplier_id], lazy="selectin"
    )
    facilitator: Mapped[Participant | None] = relationship(
        "Participant", foreign_keys=[facilitator_id], lazy="selectin"
    )
    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="Milestone.index.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'funded', 'active', 'completed', 'cancelled', 'disputed')",
            name="ck_deal_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_deal_positive_amount"),
        CheckConstraint("buyer_id <> supplier_id", name="ck_deal_distinct_parties"),
        Index("idx_deal_status", "status"),
        Index("idx_deal_buyer", "buyer_id"),
        Index("idx_deal_supplier", "supplier_id"),
        Index("idx_deal_created_at", "created_at"),
    )

    def append_transaction_hash(self, tx_hash: str) -> None:
        """Append a hash. Reassigns the list so the JSON column is flagged dirty."""
        self.transaction_hashes = [*(self.transaction_hashes or []), tx_hash]

    def milestone_at(self, index: int) -> Milestone | None:
        return next((m for m in self.milestones if m.index == index), None)

    def __repr__(self) -> str:
        return f"<Deal {self.deal_reference} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 5. milestones
# ---------------------------------------------------------------------------
class Milestone(Base):
    """A tranche of a deal. Index order is release order."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending")
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Verification (present only when the deal has a facilitator) ---
    verifier_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    credential_label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    verification_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    deal: Mapped[Deal] = relationship("Deal", back_populates="milestones")
    escrow: Mapped[EscrowRecord | None] = relationship(
        "EscrowRecord",
        back_populates="milestone",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("deal_id", "index", name="uq_milestone_deal_index"),
        CheckConstraint("percentage > 0", name="ck_milestone_positive_percentage"),
        CheckConstraint(
            "status IN ('Pending', 'Released', 'Disputed')",
            name="ck_milestone_valid_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Milestone {self.index} {self.name} status={self.status}>"


# ---------------------------------------------------------------------------
# 6. escrow_records
# ---------------------------------------------------------------------------
class EscrowRecord(Base):
    """Local mirror of a milestone's escrow object on the ledger.

    Pre-populated with the condition and encrypted fulfillment at deal
    creation; ``sequence`` and ``transaction_hash`` are set once the
    EscrowCreate validates. ``status`` only moves forward.
    """

    __tablename__ = "escrow_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    destination: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(
        Amount, nullable=False, comment="Milestone amount in the deal currency"
    )
    ledger_amount: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Amount as locked on ledger: drops for XRP, value for tokens",
    )
    condition: Mapped[str] = mapped_column(String(100), nullable=False)
    fulfillment: Mapped[str] = mapped_column(EncryptedText, nullable=False)

    sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pending_sequence: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Sequence pinned for a creation whose outcome is not yet known",
    )
    pending_finish_sequence: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Finisher's sequence pinned for an EscrowFinish not yet confirmed",
    )
    cancel_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finish_after: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="created")
    create_transaction_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Hash of the latest confirmed transaction (create, finish or cancel)",
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, comment="<dealReference>:<index>"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    milestone: Mapped[Milestone] = relationship("Milestone", back_populates="escrow")

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'finished', 'cancelled')",
            name="ck_escrow_record_valid_status",
        ),
        Index("idx_escrow_record_owner_sequence", "owner", "sequence"),
    )

    @property
    def is_on_ledger(self) -> bool:
        return self.sequence is not None and bool(self.create_transaction_hash)

    def __repr__(self) -> str:
        return f"<EscrowRecord {self.owner}:{self.sequence} status={self.status}>"


# ---------------------------------------------------------------------------
# 7. transaction_log (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class TransactionLogEntry(Base):
    """Immutable audit record of an externally observable state change.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "transaction_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=True
    )
    participant_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("participants.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="success")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_txlog_deal", "deal_id"),
        Index("idx_txlog_participant", "participant_id"),
        Index("idx_txlog_type", "type"),
        Index("idx_txlog_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<TransactionLogEntry type={self.type} hash={self.hash}>"


# ---------------------------------------------------------------------------
# 8. deal_counters
# ---------------------------------------------------------------------------
class DealCounter(Base):
    __tablename__ = "deal_counters"

    id: Mapped[str] = mapped_column(String(20), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


event.listen(Participant, "before_update", _set_updated_at)
event.listen(Deal, "before_update", _set_updated_at)
event.listen(EscrowRecord, "before_update", _set_updated_at)
