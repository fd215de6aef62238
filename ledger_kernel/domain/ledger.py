"""
Ledger domain types (``ledger_kernel.domain.ledger``).

Responsibility
--------------
Pure value objects and arithmetic for the capital and revenue ledgers:
entry types and their direction, the frozen entry record, derived balances,
and the allocation law.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Amounts are positive; direction lives in ``EntryType``, never in sign.
* A correction (``reverse`` / ``reclass``) carries no direction of its own:
  it moves money opposite to the entry it corrects.
* Balance = sum(In) - sum(Out) + corrections, in the base currency, using
  each entry's frozen ``amount_base``.  The result does not depend on the
  order entries are supplied in.
* Allocation law: |sum(allocations) - amount| <= 0.01.  The difference is
  reported, never rounded away.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ledger_kernel.exceptions import AllocationMismatchError, InvalidCorrectionError

ALLOCATION_TOLERANCE = Decimal("0.01")
ZERO = Decimal("0")


class LedgerKind(str, Enum):
    """The two money streams the store tracks."""

    CAPITAL = "capital"
    REVENUE = "revenue"


class Direction(str, Enum):
    IN = "in"
    OUT = "out"

    def opposite(self) -> Direction:
        return Direction.OUT if self is Direction.IN else Direction.IN


class EntryType(str, Enum):
    """Ledger entry types.  Corrections are shared by both ledgers."""

    # Capital
    CAPITAL_IN = "capital_in"
    CAPITAL_OUT = "capital_out"
    OPENING = "opening"

    # Revenue
    RECEIPT = "receipt"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"
    REINVEST_OUT = "reinvest_out"
    TRANSFER_FEE = "transfer_fee"

    # Corrections
    REVERSE = "reverse"
    RECLASS = "reclass"


ENTRY_DIRECTIONS: dict[EntryType, Direction] = {
    EntryType.CAPITAL_IN: Direction.IN,
    EntryType.OPENING: Direction.IN,
    EntryType.CAPITAL_OUT: Direction.OUT,
    EntryType.RECEIPT: Direction.IN,
    EntryType.REFUND: Direction.OUT,
    EntryType.WITHDRAWAL: Direction.OUT,
    EntryType.REINVEST_OUT: Direction.OUT,
    EntryType.TRANSFER_FEE: Direction.OUT,
}

CORRECTION_TYPES: frozenset[EntryType] = frozenset({EntryType.REVERSE, EntryType.RECLASS})

LEDGER_ENTRY_TYPES: dict[LedgerKind, frozenset[EntryType]] = {
    LedgerKind.CAPITAL: frozenset({
        EntryType.CAPITAL_IN,
        EntryType.CAPITAL_OUT,
        EntryType.OPENING,
        EntryType.REVERSE,
        EntryType.RECLASS,
    }),
    LedgerKind.REVENUE: frozenset({
        EntryType.RECEIPT,
        EntryType.REFUND,
        EntryType.WITHDRAWAL,
        EntryType.REINVEST_OUT,
        EntryType.TRANSFER_FEE,
        EntryType.REVERSE,
        EntryType.RECLASS,
    }),
}

# Revenue types that make up the accounting (earned) balance
ACCOUNTING_REVENUE_TYPES: frozenset[EntryType] = frozenset({EntryType.RECEIPT, EntryType.REFUND})


@dataclass(frozen=True)
class Allocation:
    """One slice of an entry assigned to a business target (e.g. an order)."""

    target_ref: str
    amount: Decimal
    is_adjustment: bool = False


@dataclass(frozen=True)
class LedgerEntryRecord:
    """Immutable view of a persisted ledger entry."""

    entry_id: UUID
    entry_number: str
    ledger: LedgerKind
    seq: int
    entry_type: EntryType
    entry_date: datetime
    amount: Decimal
    currency: str
    exchange_rate: Decimal
    amount_base: Decimal
    base_currency: str
    created_by: str
    description: str = ""
    reference: str | None = None
    corrects_entry_id: UUID | None = None
    validated: bool = False
    validated_at: datetime | None = None
    validated_by: str | None = None
    correlation_id: str | None = None
    allocations: tuple[Allocation, ...] = ()

    @property
    def is_correction(self) -> bool:
        return self.entry_type in CORRECTION_TYPES

    @property
    def allocated_total(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)


@dataclass(frozen=True)
class Balance:
    """Derived balance of one ledger, in the base currency."""

    ledger: LedgerKind
    currency: str
    balance: Decimal
    total_in: Decimal
    total_out: Decimal
    corrections: Decimal
    entry_count: int
    as_of: datetime | None = None

    @property
    def is_negative(self) -> bool:
        return self.balance < ZERO


@dataclass(frozen=True)
class RevenueBalances:
    """Dual view of the revenue ledger.

    ``accounting_balance`` is what was earned (receipts less refunds);
    ``withdrawable_balance`` is what can still leave the ledger.
    """

    currency: str
    accounting_balance: Decimal
    withdrawable_balance: Decimal
    as_of: datetime | None = None


@dataclass(frozen=True)
class LedgerSummary:
    balance: Balance
    unvalidated_count: int
    last_entry_at: datetime | None = None


@dataclass(frozen=True)
class BalanceProjection:
    """Balance before and after a proposed entry (same transaction)."""

    current: Balance
    effect: Decimal

    @property
    def projected(self) -> Decimal:
        return self.current.balance + self.effect


# =========================================================================
# Pure arithmetic
# =========================================================================


def effective_direction(
    entry_type: EntryType,
    original_type: EntryType | None = None,
) -> Direction:
    """Direction an entry moves money in.

    Corrections need the type of the entry they correct.
    """
    if entry_type in CORRECTION_TYPES:
        if original_type is None:
            raise ValueError(f"{entry_type.value} entry requires the original entry type")
        return ENTRY_DIRECTIONS[original_type].opposite()
    return ENTRY_DIRECTIONS[entry_type]


def signed_amount(amount_base: Decimal, direction: Direction) -> Decimal:
    return amount_base if direction is Direction.IN else -amount_base


def _original_type(
    entry: LedgerEntryRecord,
    originals: Mapping[UUID, LedgerEntryRecord],
) -> EntryType | None:
    if not entry.is_correction:
        return None
    original = originals.get(entry.corrects_entry_id) if entry.corrects_entry_id else None
    if original is None:
        raise InvalidCorrectionError(
            str(entry.corrects_entry_id),
            f"original of correction {entry.entry_id} is not available",
        )
    return original.entry_type


def compute_balance(
    ledger: LedgerKind,
    entries: Iterable[LedgerEntryRecord],
    base_currency: str,
    originals: Mapping[UUID, LedgerEntryRecord] | None = None,
    as_of: datetime | None = None,
) -> Balance:
    """Sum entries into a Balance.

    Entries are applied in (timestamp, seq) order.  ``originals`` resolves
    corrected entries that are not part of ``entries``; entries in the
    iterable are always available as originals.
    """
    ordered = sorted(entries, key=lambda e: (e.entry_date, e.seq))
    lookup: dict[UUID, LedgerEntryRecord] = dict(originals or {})
    lookup.update({e.entry_id: e for e in ordered})

    total_in = ZERO
    total_out = ZERO
    corrections = ZERO
    for entry in ordered:
        direction = effective_direction(entry.entry_type, _original_type(entry, lookup))
        if entry.is_correction:
            corrections += signed_amount(entry.amount_base, direction)
        elif direction is Direction.IN:
            total_in += entry.amount_base
        else:
            total_out += entry.amount_base

    return Balance(
        ledger=ledger,
        currency=base_currency,
        balance=total_in - total_out + corrections,
        total_in=total_in,
        total_out=total_out,
        corrections=corrections,
        entry_count=len(ordered),
        as_of=as_of,
    )


def compute_revenue_balances(
    entries: Iterable[LedgerEntryRecord],
    base_currency: str,
    originals: Mapping[UUID, LedgerEntryRecord] | None = None,
    as_of: datetime | None = None,
) -> RevenueBalances:
    ordered = sorted(entries, key=lambda e: (e.entry_date, e.seq))
    lookup: dict[UUID, LedgerEntryRecord] = dict(originals or {})
    lookup.update({e.entry_id: e for e in ordered})

    accounting = ZERO
    withdrawable = ZERO
    for entry in ordered:
        original_type = _original_type(entry, lookup)
        effect = signed_amount(
            entry.amount_base, effective_direction(entry.entry_type, original_type),
        )
        withdrawable += effect
        kind = original_type if entry.is_correction else entry.entry_type
        if kind in ACCOUNTING_REVENUE_TYPES:
            accounting += effect

    return RevenueBalances(
        currency=base_currency,
        accounting_balance=accounting,
        withdrawable_balance=withdrawable,
        as_of=as_of,
    )


def uncorrected_amount(
    original: LedgerEntryRecord,
    corrections: Sequence[LedgerEntryRecord],
) -> Decimal:
    """Part of ``original.amount`` not yet reversed or reclassified."""
    corrected = sum(
        (c.amount for c in corrections if c.corrects_entry_id == original.entry_id),
        ZERO,
    )
    return original.amount - corrected


def check_allocations(
    amount: Decimal,
    allocations: Sequence[Allocation],
    tolerance: Decimal = ALLOCATION_TOLERANCE,
) -> Decimal:
    """Enforce the allocation law; return the residual (amount - allocated).

    An entry without allocations trivially satisfies the law.

    Raises:
        AllocationMismatchError: duplicate targets, non-positive slices, or a
            residual beyond ``tolerance``.
    """
    if not allocations:
        return ZERO

    seen: set[str] = set()
    for allocation in allocations:
        if allocation.is_adjustment:
            continue
        if allocation.target_ref in seen:
            raise AllocationMismatchError(
                amount, ZERO, tolerance,
                reason=f"duplicate allocation target {allocation.target_ref}",
            )
        seen.add(allocation.target_ref)
        if allocation.amount <= ZERO:
            raise AllocationMismatchError(
                amount, ZERO, tolerance,
                reason=f"allocation to {allocation.target_ref} must be positive, got {allocation.amount}",
            )

    allocated = sum((a.amount for a in allocations), ZERO)
    residual = amount - allocated
    if abs(residual) > tolerance:
        raise AllocationMismatchError(amount, allocated, tolerance)
    return residual
