"""
Approval domain types (``ledger_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval gate: the request lifecycle state
machine, chain and guard configuration, the ordered approval history, and
the accumulation rule that decides when a request is satisfied.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``APPROVAL_TRANSITIONS`` defines the only valid status transitions.
  Terminal states have no outgoing edges.
* At most one open (pending or escalated) request per entity; the open
  set is ``OPEN_APPROVAL_STATUSES`` and the persistence layer's partial
  unique index uses exactly this set.
* Auto-approval and escalation are recorded as their own history kinds,
  never as a human decision.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

SYSTEM_ACTOR = "system"


# =========================================================================
# Approval Status Lifecycle
# =========================================================================


class ApprovalStatus(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.ESCALATED,
        ApprovalStatus.CANCELLED,
    }),
    ApprovalStatus.ESCALATED: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
})

OPEN_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.PENDING,
    ApprovalStatus.ESCALATED,
})


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in APPROVAL_TRANSITIONS[current]


class ApprovalDecision(str, Enum):
    """Decision types that an approver can make."""

    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"


class HistoryKind(str, Enum):
    """Who or what produced a history entry."""

    HUMAN = "human"
    AUTO = "auto"
    ESCALATION = "escalation"
    CANCELLATION = "cancellation"
    BYPASS = "bypass"


# Operation types the gate knows about.  Configuration referencing anything
# else is rejected at load time.
KNOWN_OPERATION_TYPES: frozenset[str] = frozenset({
    "capital_entry",
    "purchase",
    "sale_order",
    "financial_adjustment",
    "revenue_management",
    "reinvestment",
    "system_setting_change",
    "warehouse_operation",
    "shipping_operation",
    "user_management",
})


# =========================================================================
# Configuration
# =========================================================================


@dataclass(frozen=True)
class ApprovalChain:
    """Who must approve an operation type, and under which conditions.

    ``priority``: higher number wins.  ``amount_threshold``: the chain
    applies when the amount is at or above it; ``None`` means the chain is
    a catch-all for its operation type.
    """

    chain_id: UUID
    name: str
    operation_type: str
    priority: int = 0
    min_approvers: int = 1
    require_all_approvers: bool = False
    amount_threshold: Decimal | None = None
    role_restrictions: tuple[str, ...] = ()
    approver_roles: tuple[str, ...] = ()
    exempt_roles: tuple[str, ...] = ()
    auto_approve_after_hours: int | None = None
    escalate_after_hours: int | None = None
    escalation_chain_id: UUID | None = None
    is_active: bool = True

    @property
    def has_threshold(self) -> bool:
        return self.amount_threshold is not None

    def matches_amount(self, amount: Decimal | None) -> bool:
        if self.amount_threshold is None:
            return True
        return amount is not None and amount >= self.amount_threshold

    def matches_role(self, requester_role: str | None) -> bool:
        if not self.role_restrictions:
            return True
        return requester_role in self.role_restrictions

    def exempts(self, requester_role: str | None) -> bool:
        return requester_role is not None and requester_role in self.exempt_roles

    def permits_approver(self, role: str | None) -> bool:
        if not self.approver_roles:
            return True
        return role in self.approver_roles

    @property
    def required_approvals(self) -> int:
        if self.require_all_approvers and self.approver_roles:
            return max(self.min_approvers, len(self.approver_roles))
        return self.min_approvers


@dataclass(frozen=True)
class ApprovalGuard:
    """Security policy evaluated before any chain.

    A guard can block an operation outright when nobody is able to approve
    it, or let an emergency role skip the chain entirely.
    """

    guard_id: UUID
    name: str
    operation_type: str
    is_enabled: bool = True
    amount_threshold: Decimal | None = None
    role_exceptions: tuple[str, ...] = ()
    block_if_no_approver: bool = False
    allow_emergency_override: bool = False
    emergency_override_roles: tuple[str, ...] = ()
    notify_on_bypass: bool = True
    audit_all_attempts: bool = False

    def applies_to(self, amount: Decimal | None, requester_role: str | None) -> bool:
        if not self.is_enabled:
            return False
        if requester_role is not None and requester_role in self.role_exceptions:
            return False
        if self.amount_threshold is None:
            return True
        return amount is not None and amount >= self.amount_threshold

    def can_override(self, requester_role: str | None) -> bool:
        return (
            self.allow_emergency_override
            and requester_role is not None
            and requester_role in self.emergency_override_roles
        )


# =========================================================================
# Request state
# =========================================================================


@dataclass(frozen=True)
class ApprovalHistoryEntry:
    """One line of a request's ordered, append-only history."""

    sequence: int
    kind: HistoryKind
    actor_id: str
    recorded_at: datetime
    chain_id: UUID | None = None
    actor_role: str | None = None
    decision: ApprovalDecision | None = None
    comment: str = ""


@dataclass(frozen=True)
class ApprovalRequest:
    """A live or retained instance of the approval state machine."""

    request_id: UUID
    request_number: str
    operation_type: str
    chain_id: UUID
    entity_type: str
    entity_id: str
    amount: Decimal | None
    currency: str
    justification: str
    status: ApprovalStatus
    required_approvals: int
    current_approvals: int
    requested_by: str
    requested_at: datetime
    requester_role: str | None = None
    required_roles: tuple[str, ...] = ()
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    escalated_at: datetime | None = None
    cancelled_at: datetime | None = None
    final_approved_by: str | None = None
    final_rejected_by: str | None = None
    rejection_reason: str | None = None
    auto_approve_at: datetime | None = None
    escalate_at: datetime | None = None
    correlation_id: str | None = None
    consumed_at: datetime | None = None
    consumed_by: str | None = None
    consumed_operation_ref: str | None = None
    history: tuple[ApprovalHistoryEntry, ...] = field(default_factory=tuple)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPROVAL_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_APPROVAL_STATUSES

    @property
    def is_auto_approved(self) -> bool:
        return self.status == ApprovalStatus.APPROVED and any(
            h.kind == HistoryKind.AUTO for h in self.history
        )

    @property
    def remaining_approvals(self) -> int:
        if not self.is_open:
            return 0
        return max(self.required_approvals - self.current_approvals, 0)

    @property
    def missing_roles(self) -> tuple[str, ...]:
        if not self.is_open or not self.required_roles:
            return ()
        approved = approved_roles_in_round(self.history)
        return tuple(r for r in self.required_roles if r not in approved)

    def describe_outstanding(self) -> str:
        """User-facing summary of what still blocks this request."""
        if not self.is_open:
            return f"request is {self.status.value}"
        parts = [f"{self.remaining_approvals} more approval(s) required"]
        if self.missing_roles:
            parts.append(f"missing roles: {', '.join(self.missing_roles)}")
        return "; ".join(parts)


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of asking the gate whether an operation may proceed.

    Either an immediate pass (nothing persisted) or a persisted pending
    request the caller must wait on.
    """

    operation_type: str
    entity_type: str
    entity_id: str
    needs_approval: bool
    reason: str
    request: ApprovalRequest | None = None
    chain_id: UUID | None = None
    chain_name: str | None = None
    bypassed: bool = False
    guard_name: str | None = None

    @property
    def is_immediate_pass(self) -> bool:
        return not self.needs_approval


@dataclass(frozen=True)
class AccumulationResult:
    satisfied: bool
    remaining: int
    missing_roles: tuple[str, ...]


@dataclass(frozen=True)
class SweepReport:
    """What one timer sweep changed."""

    as_of: datetime
    auto_approved: tuple[UUID, ...] = ()
    escalated: tuple[UUID, ...] = ()
    examined: int = 0

    @property
    def changed(self) -> int:
        return len(self.auto_approved) + len(self.escalated)


# =========================================================================
# Pure rules
# =========================================================================


def current_round(history: Iterable[ApprovalHistoryEntry]) -> list[ApprovalHistoryEntry]:
    """History entries recorded on the request's current chain.

    An escalation that moved the request to another chain starts a new
    round: earlier approvals no longer count.  An escalation without a
    target keeps the request on its chain, so the round continues.
    """
    entries = list(history)
    start = 0
    chain: UUID | None = None
    for index, entry in enumerate(entries):
        if (
            entry.kind == HistoryKind.ESCALATION
            and chain is not None
            and entry.chain_id != chain
        ):
            start = index + 1
        if entry.chain_id is not None:
            chain = entry.chain_id
    return entries[start:]


def approved_roles_in_round(history: Iterable[ApprovalHistoryEntry]) -> set[str]:
    """Roles that approved in the current round."""
    return {
        entry.actor_role
        for entry in current_round(history)
        if entry.kind == HistoryKind.HUMAN
        and entry.decision == ApprovalDecision.APPROVE
        and entry.actor_role
    }


def approvers_in_round(history: Iterable[ApprovalHistoryEntry]) -> set[str]:
    """Actors who decided in the current round."""
    return {entry.actor_id for entry in current_round(history) if entry.kind == HistoryKind.HUMAN}


def evaluate_accumulation(
    required_approvals: int,
    current_approvals: int,
    required_roles: tuple[str, ...],
    approved_roles: set[str],
) -> AccumulationResult:
    """Satisfied when the count is met and, if roles are required, every
    required role has approved."""
    remaining = max(required_approvals - current_approvals, 0)
    missing = tuple(r for r in required_roles if r not in approved_roles)
    return AccumulationResult(
        satisfied=remaining == 0 and not missing,
        remaining=remaining,
        missing_roles=missing,
    )


def select_chain(
    chains: Iterable[ApprovalChain],
    operation_type: str,
    amount: Decimal | None,
    requester_role: str | None,
) -> ApprovalChain | None:
    """Highest-priority active chain whose threshold and role restrictions
    match, falling back to the highest-priority chain without a threshold."""
    candidates = sorted(
        (c for c in chains if c.is_active and c.operation_type == operation_type),
        key=lambda c: (-c.priority, c.name),
    )
    for chain in candidates:
        if chain.matches_amount(amount) and chain.matches_role(requester_role):
            return chain
    for chain in candidates:
        if not chain.has_threshold:
            return chain
    return None
