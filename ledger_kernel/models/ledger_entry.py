"""
Module: ledger_kernel.models.ledger_entry
Responsibility: ORM persistence for ledger entries and their allocations.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Append-only: entries and allocations are never deleted; the only
      permitted update on an entry is the validated flip
      (db/immutability.py listeners).
    - amount is positive (validated by LedgerStore); direction is encoded
      by entry_type.
    - (ledger, seq) is unique; seq is allocated under the ledger's
      sequence row lock.
    - exchange_rate is written once at creation and never recomputed.

Failure modes:
    - IntegrityError on an unknown ledger or duplicate (ledger, seq).
    - ImmutabilityViolationError on forbidden UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import Base, ExactDecimal, UUIDString
from ledger_kernel.domain.ledger import (
    Allocation,
    EntryType,
    LedgerEntryRecord,
    LedgerKind,
)

# Only these columns may change after insert
MUTABLE_ENTRY_FIELDS: frozenset[str] = frozenset({"validated", "validated_at", "validated_by"})


class LedgerEntryModel(Base):
    """One immutable record of money movement."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        CheckConstraint("ledger IN ('capital', 'revenue')", name="ck_ledger_entries_ledger"),
        UniqueConstraint("ledger", "seq", name="uq_ledger_entries_ledger_seq"),
        Index("ix_ledger_entries_ledger_date", "ledger", "entry_date", "seq"),
        Index("ix_ledger_entries_reference", "reference"),
        Index("ix_ledger_entries_corrects", "corrects_entry_id"),
        Index("ix_ledger_entries_correlation", "correlation_id"),
    )

    entry_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    ledger: Mapped[str] = mapped_column(String(20), nullable=False)
    seq: Mapped[int] = mapped_column(nullable=False)
    entry_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entry_date: Mapped[datetime] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(ExactDecimal(38, 18), nullable=False)
    amount_base: Mapped[Decimal] = mapped_column(nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    corrects_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("ledger_entries.id"), nullable=True,
    )
    validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    validated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    allocations: Mapped[list[LedgerAllocationModel]] = relationship(
        "LedgerAllocationModel",
        back_populates="entry",
        order_by="LedgerAllocationModel.position",
        lazy="selectin",
        passive_deletes="all",
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.entry_number} {self.ledger}/{self.entry_type} "
            f"{self.amount} {self.currency}>"
        )

    def to_dto(self) -> LedgerEntryRecord:
        """Convert ORM model to frozen domain DTO."""
        return LedgerEntryRecord(
            entry_id=self.id,
            entry_number=self.entry_number,
            ledger=LedgerKind(self.ledger),
            seq=self.seq,
            entry_type=EntryType(self.entry_type),
            entry_date=self.entry_date,
            amount=self.amount,
            currency=self.currency,
            exchange_rate=self.exchange_rate,
            amount_base=self.amount_base,
            base_currency=self.base_currency,
            created_by=self.created_by,
            description=self.description,
            reference=self.reference,
            corrects_entry_id=self.corrects_entry_id,
            validated=self.validated,
            validated_at=self.validated_at,
            validated_by=self.validated_by,
            correlation_id=self.correlation_id,
            allocations=tuple(a.to_dto() for a in self.allocations),
        )


class LedgerAllocationModel(Base):
    """A slice of an entry assigned to a business target. Append-only."""

    __tablename__ = "ledger_allocations"

    __table_args__ = (
        UniqueConstraint("entry_id", "position", name="uq_ledger_allocations_position"),
        Index("ix_ledger_allocations_target", "target_ref"),
    )

    entry_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("ledger_entries.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    target_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    is_adjustment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)

    entry: Mapped[LedgerEntryModel] = relationship(
        "LedgerEntryModel", back_populates="allocations",
    )

    def to_dto(self) -> Allocation:
        return Allocation(
            target_ref=self.target_ref,
            amount=self.amount,
            is_adjustment=self.is_adjustment,
        )
