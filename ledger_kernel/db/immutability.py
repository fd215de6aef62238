"""
ORM-level immutability enforcement (layer 1 of 2).

Money movement and its evidence must be tamper-proof: entries are corrected
with new entries, never edited; audit rows and approval history are
append-only; terminal approval requests are frozen.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications made through SQLAlchemy sessions
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/triggers.py (PostgreSQL triggers)
    - Catches raw SQL and bulk statements
    - Installed only on PostgreSQL

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity             | Rule
-------------------|------------------------------------------------------
LedgerEntry        | Never deleted; only validated/validated_at/validated_by
                   | may change after insert
LedgerAllocation   | Append-only (no UPDATE, no DELETE)
AuditLogEntry      | Append-only
ApprovalHistory    | Append-only
ApprovalRequest    | Never deleted; frozen once terminal, except the one-time
                   | consumption stamp on an approved request

===============================================================================
NOTE ON COLLECTIONS
===============================================================================

SQLAlchemy fires ``before_update`` on a parent when only one of its
relationship collections changed.  The checks below look at column
attribute history only, so appending a child row never trips the parent's
listener.

Usage:

    from ledger_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup (create_tables does it)

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

REQUEST_CONSUMPTION_FIELDS = frozenset({"consumed_at", "consumed_by", "consumed_operation_ref"})


def _changed_columns(target) -> list[str]:
    """Column attributes with pending changes (collections excluded)."""
    state = inspect(target)
    return [
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    ]


def _block(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


# =============================================================================
# Ledger entries and allocations
# =============================================================================


def _check_ledger_entry_immutability(mapper, connection, target):
    """Only the validation flip may change on a recorded entry."""
    from ledger_kernel.models.ledger_entry import MUTABLE_ENTRY_FIELDS

    forbidden = [c for c in _changed_columns(target) if c not in MUTABLE_ENTRY_FIELDS]
    if forbidden:
        _block(
            "LedgerEntry", target, "UPDATE",
            f"Ledger entries are immutable; cannot modify {', '.join(sorted(forbidden))}. "
            "Record a reverse or reclass entry instead",
        )


def _check_ledger_entry_delete(mapper, connection, target):
    _block("LedgerEntry", target, "DELETE", "Ledger entries cannot be deleted")


def _check_allocation_immutability(mapper, connection, target):
    if _changed_columns(target):
        _block(
            "LedgerAllocation", target, "UPDATE",
            "Allocations are append-only; reconcile with an adjustment row",
        )


def _check_allocation_delete(mapper, connection, target):
    _block("LedgerAllocation", target, "DELETE", "Allocations cannot be deleted")


# =============================================================================
# Audit log
# =============================================================================


def _check_audit_log_immutability(mapper, connection, target):
    _block("AuditLogEntry", target, "UPDATE", "Audit entries are immutable and cannot be modified")


def _check_audit_log_delete(mapper, connection, target):
    _block("AuditLogEntry", target, "DELETE", "Audit entries cannot be deleted")


# =============================================================================
# Approval requests and history
# =============================================================================


def _check_history_immutability(mapper, connection, target):
    if _changed_columns(target):
        _block("ApprovalHistory", target, "UPDATE", "Approval history is append-only")


def _check_history_delete(mapper, connection, target):
    _block("ApprovalHistory", target, "DELETE", "Approval history is append-only")


def _check_request_immutability(mapper, connection, target):
    """Terminal requests are frozen apart from the consumption stamp."""
    from ledger_kernel.domain.approval import TERMINAL_APPROVAL_STATUSES, ApprovalStatus

    state = inspect(target)
    status_history = state.attrs.status.history
    previous = status_history.deleted[0] if status_history.deleted else target.status
    if ApprovalStatus(previous) not in TERMINAL_APPROVAL_STATUSES:
        return

    for key in _changed_columns(target):
        consuming = (
            key in REQUEST_CONSUMPTION_FIELDS
            and previous == ApprovalStatus.APPROVED.value
            and all(v is None for v in state.attrs[key].history.deleted)
        )
        if not consuming:
            _block(
                "ApprovalRequest", target, "UPDATE",
                f"Cannot modify field '{key}' on {previous} request",
            )


def _check_request_delete(mapper, connection, target):
    _block("ApprovalRequest", target, "DELETE", "Approval requests are retained for audit")


# =============================================================================
# Registration
# =============================================================================


def _listener_table():
    from ledger_kernel.models.approval import ApprovalHistoryModel, ApprovalRequestModel
    from ledger_kernel.models.audit_log import AuditLogEntry
    from ledger_kernel.models.ledger_entry import LedgerAllocationModel, LedgerEntryModel

    return [
        (LedgerEntryModel, "before_update", _check_ledger_entry_immutability),
        (LedgerEntryModel, "before_delete", _check_ledger_entry_delete),
        (LedgerAllocationModel, "before_update", _check_allocation_immutability),
        (LedgerAllocationModel, "before_delete", _check_allocation_delete),
        (AuditLogEntry, "before_update", _check_audit_log_immutability),
        (AuditLogEntry, "before_delete", _check_audit_log_delete),
        (ApprovalHistoryModel, "before_update", _check_history_immutability),
        (ApprovalHistoryModel, "before_delete", _check_history_delete),
        (ApprovalRequestModel, "before_update", _check_request_immutability),
        (ApprovalRequestModel, "before_delete", _check_request_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent.  Call after the models are importable and before any
    database operations begin.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to tamper with rows on
    purpose to verify detection.
    """
    for target, event_name, listener_fn in _listener_table():
        _safe_remove_listener(target, event_name, listener_fn)
