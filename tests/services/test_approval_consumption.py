"""
Single-use consumption of approved requests.

Verifies:
- An approved request authorizes exactly one execution
- Operation, entity and amount (within 0.01) must match the approval
- Approvals expire 24 hours after they were granted
"""

import pytest

from ledger_kernel.domain.approval import ApprovalStatus
from ledger_kernel.exceptions import ApprovalNotUsableError
from ledger_kernel.models.audit_log import AuditAction
from ledger_kernel.services.approval_engine import ApprovalEngine


@pytest.fixture
def approved_request(approval_engine, make_chain):
    make_chain()
    request = approval_engine.request_approval(
        "capital_entry", "CapitalEntry", "CE-1", "5000", "top up", "clerk", "sales",
    ).request
    return approval_engine.record_approval_decision(request.request_id, "fin-1", "finance", "approve")


def _consume(engine, request, **overrides):
    values = dict(
        operation_type="capital_entry",
        entity_type="CapitalEntry",
        entity_id="CE-1",
        amount="5000",
        consumed_by="clerk",
        operation_ref="ledger-entry-1",
    )
    values.update(overrides)
    return engine.consume_approval(request.request_id, **values)


class TestConsumption:

    def test_consume_stamps_the_request(self, approval_engine, approved_request, deterministic_clock, auditor):
        consumed = _consume(approval_engine, approved_request)

        assert consumed.status is ApprovalStatus.APPROVED
        assert consumed.consumed_at == deterministic_clock.now()
        assert consumed.consumed_by == "clerk"
        assert consumed.consumed_operation_ref == "ledger-entry-1"
        trace = auditor.get_trace("ApprovalRequest", approved_request.request_id)
        assert trace.last_action is AuditAction.CONSUME

    def test_second_consumption_refused(self, approval_engine, approved_request):
        _consume(approval_engine, approved_request)

        with pytest.raises(ApprovalNotUsableError, match="already consumed by ledger-entry-1"):
            _consume(approval_engine, approved_request, operation_ref="ledger-entry-2")

    def test_amount_within_a_cent_accepted(self, approval_engine, approved_request):
        consumed = _consume(approval_engine, approved_request, amount="5000.01")
        assert consumed.consumed_at is not None

    def test_pending_request_not_usable(self, approval_engine, make_chain):
        make_chain(min_approvers=2)
        request = approval_engine.request_approval(
            "capital_entry", "CapitalEntry", "CE-1", "5000", "", "clerk", "sales",
        ).request

        with pytest.raises(ApprovalNotUsableError, match="request is pending"):
            _consume(approval_engine, request)

    def test_refusal_logged(self, approval_engine, approved_request, captured_logs):
        with pytest.raises(ApprovalNotUsableError):
            _consume(approval_engine, approved_request, operation_type="purchase")

        refused = [r for r in captured_logs() if r["message"] == "approval_consumption_refused"]
        assert refused[0]["reason"] == "approved for capital_entry, not purchase"


class TestMismatch:

    @pytest.mark.parametrize("overrides,reason", [
        ({"operation_type": "purchase"}, "approved for capital_entry, not purchase"),
        ({"entity_id": "CE-2"}, "approved for CapitalEntry/CE-1"),
        ({"entity_type": "Purchase"}, "approved for CapitalEntry/CE-1"),
        ({"amount": "5000.02"}, "does not match"),
        ({"amount": "4000"}, "does not match"),
    ])
    def test_mismatch_refused(self, approval_engine, approved_request, overrides, reason):
        with pytest.raises(ApprovalNotUsableError) as exc_info:
            _consume(approval_engine, approved_request, **overrides)

        assert reason in exc_info.value.reason
        assert approval_engine.get_approval_status(approved_request.request_id).consumed_at is None


class TestExpiry:

    def test_usable_until_the_validity_window_ends(self, approval_engine, approved_request, deterministic_clock):
        deterministic_clock.advance_hours(24)
        assert _consume(approval_engine, approved_request).consumed_at is not None

    def test_expired_after_24_hours(self, approval_engine, approved_request, deterministic_clock):
        deterministic_clock.advance_hours(24)
        deterministic_clock.advance(1)

        with pytest.raises(ApprovalNotUsableError, match="expired"):
            _consume(approval_engine, approved_request)

    def test_validity_is_configurable(
        self, session, registry, currency_authority, auditor, deterministic_clock, numbering, make_chain,
    ):
        engine = ApprovalEngine(
            session, registry, currency_authority,
            auditor=auditor, clock=deterministic_clock, numbering=numbering,
            approval_validity_hours=1,
        )
        make_chain()
        request = engine.request_approval(
            "capital_entry", "CapitalEntry", "CE-1", "5000", "", "clerk", "sales",
        ).request
        engine.record_approval_decision(request.request_id, "fin-1", "finance", "approve")
        deterministic_clock.advance_hours(2)

        with pytest.raises(ApprovalNotUsableError, match="expired"):
            _consume(engine, request)
