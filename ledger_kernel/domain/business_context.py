"""
Business context carried by audit entries.

Each operation kind has its own frozen variant with a fixed ``kind`` tag.
``to_payload()`` produces the stored form; ``context_from_payload`` reads
it back into the right variant.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from decimal import Decimal
from typing import Any, ClassVar


@dataclass(frozen=True)
class BusinessContext:
    kind: ClassVar[str] = "generic"

    def to_payload(self) -> dict[str, Any]:
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        payload["kind"] = self.kind
        return payload


@dataclass(frozen=True)
class LedgerMutationContext(BusinessContext):
    kind: ClassVar[str] = "ledger_mutation"

    ledger: str
    entry_type: str
    reference: str | None = None
    balance_before: Decimal | None = None
    balance_after: Decimal | None = None
    approval_request_id: str | None = None


@dataclass(frozen=True)
class ApprovalContext(BusinessContext):
    kind: ClassVar[str] = "approval"

    operation_type: str
    chain_name: str | None = None
    decision: str | None = None
    comment: str | None = None
    remaining_approvals: int | None = None


@dataclass(frozen=True)
class GuardContext(BusinessContext):
    kind: ClassVar[str] = "guard"

    operation_type: str
    guard_name: str
    outcome: str
    requester_role: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class SweepContext(BusinessContext):
    kind: ClassVar[str] = "timer_sweep"

    trigger: str
    deadline: str | None = None
    from_chain: str | None = None
    to_chain: str | None = None


@dataclass(frozen=True)
class ReconciliationContext(BusinessContext):
    kind: ClassVar[str] = "reconciliation"

    ledger: str
    residual: Decimal
    tolerance: Decimal
    reason: str | None = None


@dataclass(frozen=True)
class ConfigurationChangeContext(BusinessContext):
    kind: ClassVar[str] = "configuration_change"

    subject: str
    change: str
    category: str | None = None


CONTEXT_TYPES: dict[str, type[BusinessContext]] = {
    cls.kind: cls
    for cls in (
        LedgerMutationContext,
        ApprovalContext,
        GuardContext,
        SweepContext,
        ReconciliationContext,
        ConfigurationChangeContext,
    )
}


def context_from_payload(payload: dict[str, Any] | None) -> BusinessContext | None:
    """Rebuild the tagged variant from its stored form (decimals come back as str)."""
    if not payload:
        return None
    cls = CONTEXT_TYPES.get(payload.get("kind", ""))
    if cls is None:
        return BusinessContext()
    names = {f.name for f in fields(cls)}
    values = {k: v for k, v in payload.items() if k in names}
    for f in fields(cls):
        if f.name in values and "Decimal" in str(f.type) and values[f.name] is not None:
            values[f.name] = Decimal(values[f.name])
    return cls(**values)
