"""
Append-only records.

Verifies:
- Recorded ledger entries only accept the validation flip
- Allocations, audit rows and approval history cannot change
- Terminal approval requests are frozen apart from the one-time
  consumption stamp
- On PostgreSQL the database refuses raw mutations as well
"""

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError

from ledger_kernel.db.triggers import ALL_TRIGGER_NAMES, triggers_installed
from ledger_kernel.domain.ledger import LedgerKind
from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.models.approval import ApprovalHistoryModel, ApprovalRequestModel
from ledger_kernel.models.audit_log import AuditAction, AuditLogEntry
from ledger_kernel.models.ledger_entry import LedgerAllocationModel, LedgerEntryModel


@pytest.fixture
def recorded_entry(ledger_store):
    return ledger_store.record_entry(
        LedgerKind.CAPITAL, "capital_in", "100", "USD", "tester",
        allocations=[("order-1", "60"), ("order-2", "40")],
    )


@pytest.fixture
def decided_request(approval_engine, make_chain):
    """Return a factory for a request driven to approved or rejected."""
    make_chain()

    def _decide(decision="approve"):
        request = approval_engine.request_approval(
            "capital_entry", "CapitalEntry", "CE-1", "5000", "", "clerk", "sales",
        ).request
        return approval_engine.record_approval_decision(request.request_id, "fin-1", "finance", decision)

    return _decide


class TestLedgerEntries:

    def test_amount_cannot_change(self, session, recorded_entry, captured_logs):
        model = session.get(LedgerEntryModel, recorded_entry.entry_id)
        model.amount = model.amount * 2

        with pytest.raises(ImmutabilityViolationError, match="cannot modify amount") as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "LedgerEntry"
        assert any(r["message"] == "immutability_violation_blocked" for r in captured_logs())

    def test_validation_fields_may_change(self, session, recorded_entry, deterministic_clock):
        model = session.get(LedgerEntryModel, recorded_entry.entry_id)
        model.validated = True
        model.validated_at = deterministic_clock.now()
        model.validated_by = "controller"

        session.flush()

    def test_entry_cannot_be_deleted(self, session, recorded_entry):
        session.delete(session.get(LedgerEntryModel, recorded_entry.entry_id))

        with pytest.raises(ImmutabilityViolationError, match="cannot be deleted") as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "LedgerEntry"
        assert exc_info.value.entity_id == str(recorded_entry.entry_id)

    def test_allocation_cannot_change(self, session, recorded_entry):
        allocation = session.execute(
            select(LedgerAllocationModel).where(LedgerAllocationModel.entry_id == recorded_entry.entry_id)
        ).scalars().first()
        allocation.target_ref = "order-9"

        with pytest.raises(ImmutabilityViolationError, match="append-only"):
            session.flush()


class TestAuditRows:

    def test_audit_row_cannot_change(self, session, auditor):
        record = auditor.record(AuditAction.CREATE, "LedgerEntry", "E-1", "tester")
        row = session.get(AuditLogEntry, record.audit_id)
        row.actor_id = "mallory"

        with pytest.raises(ImmutabilityViolationError, match="immutable"):
            session.flush()

    def test_audit_row_cannot_be_deleted(self, session, auditor):
        record = auditor.record(AuditAction.CREATE, "LedgerEntry", "E-1", "tester")
        session.delete(session.get(AuditLogEntry, record.audit_id))

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestApprovalRequests:

    def test_history_is_append_only(self, session, decided_request):
        request = decided_request()
        line = session.execute(
            select(ApprovalHistoryModel).where(ApprovalHistoryModel.request_id == request.request_id)
        ).scalars().first()
        line.comment = "rewritten"

        with pytest.raises(ImmutabilityViolationError, match="append-only"):
            session.flush()

    def test_rejected_request_frozen(self, session, decided_request):
        request = decided_request("reject")
        model = session.get(ApprovalRequestModel, request.request_id)
        model.status = "approved"

        with pytest.raises(ImmutabilityViolationError, match="Cannot modify field 'status' on rejected request"):
            session.flush()

    def test_approved_request_accepts_one_consumption_stamp(self, session, decided_request, deterministic_clock):
        request = decided_request()
        model = session.get(ApprovalRequestModel, request.request_id)
        model.consumed_at = deterministic_clock.now()
        model.consumed_by = "clerk"
        model.consumed_operation_ref = "capital:CE-1"
        session.flush()

        model.consumed_by = "someone-else"
        with pytest.raises(ImmutabilityViolationError, match="consumed_by"):
            session.flush()

    def test_pending_request_is_mutable(self, session, approval_engine, make_chain):
        make_chain(min_approvers=2)
        request = approval_engine.request_approval(
            "capital_entry", "CapitalEntry", "CE-1", "5000", "", "clerk", "sales",
        ).request
        model = session.get(ApprovalRequestModel, request.request_id)
        model.justification = "clarified"

        session.flush()

    def test_request_cannot_be_deleted(self, session, decided_request):
        request = decided_request()
        session.delete(session.get(ApprovalRequestModel, request.request_id))

        with pytest.raises(ImmutabilityViolationError, match="retained") as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "ApprovalRequest"
        assert exc_info.value.entity_id == str(request.request_id)


@pytest.mark.postgres
class TestDatabaseTriggers:

    def test_triggers_installed(self, db_engine, db_tables):
        assert triggers_installed(db_engine) == sorted(ALL_TRIGGER_NAMES)

    def test_raw_update_of_entry_refused(self, session, recorded_entry):
        with pytest.raises(DBAPIError, match="only validation columns may change"):
            session.execute(
                text("UPDATE ledger_entries SET amount = amount * 2 WHERE id = :id"),
                {"id": str(recorded_entry.entry_id)},
            )

    def test_raw_delete_of_audit_row_refused(self, session, auditor):
        auditor.record(AuditAction.CREATE, "LedgerEntry", "E-1", "tester")

        with pytest.raises(DBAPIError, match="append-only"):
            session.execute(text("DELETE FROM audit_log"))
