"""
Collaborator interfaces (``ledger_kernel.domain.collaborators``).

Responsibility
--------------
Structural interfaces for the services the kernel consumes but does not
own: alert delivery, display numbering, runtime settings, and the
approver directory.  Adapters live in ``ledger_kernel.services``.

Architecture position
---------------------
**Kernel domain layer** -- Protocols and value objects only.  ZERO I/O.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertCategory(str, Enum):
    NEGATIVE_BALANCE = "negative_balance"
    LOW_BALANCE = "low_balance"
    AUDIT_FAILURE = "audit_failure"
    EMERGENCY_BYPASS = "emergency_bypass"
    ESCALATION = "escalation"
    ESCALATION_TARGET_MISSING = "escalation_target_missing"
    CONFIGURATION = "configuration"


@dataclass(frozen=True)
class AlertDispatch:
    """Observed outcome of one best-effort alert."""

    category: str
    severity: str
    delivered: bool
    error: str | None = None


@runtime_checkable
class NotificationSink(Protocol):
    """Alert delivery.  Fire-and-forget from the kernel's point of view."""

    def send_alert(
        self,
        category: str,
        severity: str,
        message: str,
        entity_ref: str | None = None,
    ) -> None: ...


@runtime_checkable
class NumberingProvider(Protocol):
    """Display numbers for entries and requests.  Not part of identity."""

    def next_number(self, entity_type: str) -> str: ...


SettingChangeListener = Callable[[str, str | None], None]


@runtime_checkable
class SettingsProvider(Protocol):
    """Runtime settings source (canonical rate, negative-balance switch)."""

    def get_setting(self, key: str, category: str | None = None) -> str | None: ...

    def add_change_listener(self, listener: SettingChangeListener) -> None: ...


@runtime_checkable
class ApproverDirectory(Protocol):
    """Who currently holds approver roles."""

    def eligible_approvers(self, roles: Sequence[str]) -> Sequence[str]: ...
