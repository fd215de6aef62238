"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read-only queries over the capital and revenue ledgers:
    entry listings, lookup by business reference, and the per-ledger
    summary (derived balance plus unvalidated count).
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - No stored balances.  Summaries derive from ledger_entries rows at
      query time using the same pure arithmetic as LedgerStore.
    - Listings are in (entry_date, seq) order, which is the order the
      balance arithmetic applies entries in.

Failure modes:
    - Empty results and zero balances when a ledger has no entries.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger_kernel.domain.ledger import (
    LedgerEntryRecord,
    LedgerKind,
    LedgerSummary,
    compute_balance,
)
from ledger_kernel.models.ledger_entry import LedgerEntryModel
from ledger_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class EntryPage:
    """A window of entries from one ledger."""

    ledger: LedgerKind
    entries: tuple[LedgerEntryRecord, ...]
    total: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


class LedgerSelector(BaseSelector):
    """Read-side queries over ledger entries."""

    def __init__(self, session: Session, base_currency: str = "USD"):
        super().__init__(session)
        self.base_currency = base_currency

    def _filtered(
        self,
        ledger: LedgerKind,
        start: datetime | None,
        end: datetime | None,
        entry_types,
        validated: bool | None,
    ):
        conditions = [LedgerEntryModel.ledger == ledger.value]
        if start is not None:
            conditions.append(LedgerEntryModel.entry_date >= start)
        if end is not None:
            conditions.append(LedgerEntryModel.entry_date <= end)
        if entry_types:
            conditions.append(
                LedgerEntryModel.entry_type.in_([getattr(t, "value", t) for t in entry_types])
            )
        if validated is not None:
            conditions.append(LedgerEntryModel.validated.is_(validated))
        return conditions

    def list_entries(
        self,
        ledger: LedgerKind | str,
        start: datetime | None = None,
        end: datetime | None = None,
        entry_types=None,
        validated: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> EntryPage:
        """
        Entries of one ledger, oldest first.

        Args:
            ledger: ``capital`` or ``revenue``.
            start / end: inclusive entry_date window.
            entry_types: optional iterable of EntryType (or values).
            validated: filter on the validated flag.
        """
        kind = LedgerKind(ledger)
        conditions = self._filtered(kind, start, end, entry_types, validated)

        total = self.session.execute(
            select(func.count()).select_from(LedgerEntryModel).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(LedgerEntryModel)
            .where(*conditions)
            .order_by(LedgerEntryModel.entry_date, LedgerEntryModel.seq)
            .limit(limit)
            .offset(offset)
        ).scalars()

        return EntryPage(
            ledger=kind,
            entries=tuple(m.to_dto() for m in rows),
            total=total,
            offset=offset,
        )

    def get_by_reference(
        self,
        reference: str,
        ledger: LedgerKind | str | None = None,
    ) -> list[LedgerEntryRecord]:
        """Every entry carrying a business reference (order id, purchase id, ...)."""
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.reference == reference)
        if ledger is not None:
            stmt = stmt.where(LedgerEntryModel.ledger == LedgerKind(ledger).value)
        stmt = stmt.order_by(LedgerEntryModel.ledger, LedgerEntryModel.seq)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def get_by_correlation(self, correlation_id: str) -> list[LedgerEntryRecord]:
        rows = self.session.execute(
            select(LedgerEntryModel)
            .where(LedgerEntryModel.correlation_id == correlation_id)
            .order_by(LedgerEntryModel.ledger, LedgerEntryModel.seq)
        ).scalars()
        return [m.to_dto() for m in rows]

    def summary(self, ledger: LedgerKind | str, as_of: datetime | None = None) -> LedgerSummary:
        """Balance, unvalidated count and last entry date of one ledger."""
        kind = LedgerKind(ledger)
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.ledger == kind.value)
        if as_of is not None:
            stmt = stmt.where(LedgerEntryModel.entry_date <= as_of)
        entries = [m.to_dto() for m in self.session.execute(stmt).scalars()]

        known = {e.entry_id for e in entries}
        missing = {e.corrects_entry_id for e in entries if e.corrects_entry_id and e.corrects_entry_id not in known}
        originals = {}
        if missing:
            originals = {
                m.id: m.to_dto()
                for m in self.session.execute(
                    select(LedgerEntryModel).where(LedgerEntryModel.id.in_(missing))
                ).scalars()
            }

        return LedgerSummary(
            balance=compute_balance(kind, entries, self.base_currency, originals, as_of=as_of),
            unvalidated_count=sum(1 for e in entries if not e.validated),
            last_entry_at=max((e.entry_date for e in entries), default=None),
        )
