"""
Pure domain layer.

Frozen value objects and pure rules with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

Time enters only through the injected Clock.
"""

from ledger_kernel.domain.approval import (
    ApprovalChain,
    ApprovalDecision,
    ApprovalGuard,
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalStatus,
    HistoryKind,
    SweepReport,
)
from ledger_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from ledger_kernel.domain.currency import ConversionResult, RateSnapshot
from ledger_kernel.domain.ledger import (
    Allocation,
    Balance,
    Direction,
    EntryType,
    LedgerEntryRecord,
    LedgerKind,
    RevenueBalances,
)

__all__ = [
    "Allocation",
    "ApprovalChain",
    "ApprovalDecision",
    "ApprovalGuard",
    "ApprovalOutcome",
    "ApprovalRequest",
    "ApprovalStatus",
    "Balance",
    "Clock",
    "ConversionResult",
    "DeterministicClock",
    "Direction",
    "EntryType",
    "HistoryKind",
    "LedgerEntryRecord",
    "LedgerKind",
    "RateSnapshot",
    "RevenueBalances",
    "SweepReport",
    "SystemClock",
]
