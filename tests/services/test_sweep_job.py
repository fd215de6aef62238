"""
Periodic approval sweep in its own transaction.

Verifies:
- run_sweep_once commits escalations and auto-approvals
- A repeated sweep over unchanged data changes nothing
- The loop sleeps between runs and survives an unavailable store
"""

import pytest

from ledger_kernel.db.engine import session_scope
from ledger_kernel.domain.approval import ApprovalStatus
from ledger_kernel.exceptions import StoreUnavailableError
from ledger_services import sweep_job
from ledger_services.ledger_orchestrator import LedgerOrchestrator


@pytest.fixture
def committed_orchestrator(
    committed_session_factory, ledger_config, currency_authority, settings, notification_sink, deterministic_clock,
):
    """Run ``fn(orchestrator)`` in its own committed transaction."""

    def _run(fn):
        with session_scope(committed_session_factory) as session:
            orchestrator = LedgerOrchestrator(
                session, ledger_config, currency_authority, settings,
                notification_sink=notification_sink, clock=deterministic_clock,
            )
            return fn(orchestrator)

    _run(lambda orch: orch.seed_policies())
    return _run


@pytest.fixture
def pending_request(committed_orchestrator):
    return committed_orchestrator(
        lambda orch: orch.record_capital_entry(
            "capital_in", "5000", "USD", created_by="clerk", requester_role="finance",
        ).request
    )


def _sweep(committed_session_factory, ledger_config, currency_authority, settings, sink, clock):
    return sweep_job.run_sweep_once(
        committed_session_factory, ledger_config, currency_authority, settings,
        notification_sink=sink, clock=clock,
    )


class TestRunSweepOnce:

    def test_nothing_due(
        self, committed_session_factory, ledger_config, currency_authority, settings,
        notification_sink, deterministic_clock, pending_request,
    ):
        report = _sweep(committed_session_factory, ledger_config, currency_authority, settings,
                        notification_sink, deterministic_clock)

        assert report.changed == 0

    def test_escalation_committed(
        self, committed_session_factory, ledger_config, currency_authority, settings,
        notification_sink, deterministic_clock, pending_request, committed_orchestrator, captured_logs,
    ):
        deterministic_clock.advance_hours(12)

        report = _sweep(committed_session_factory, ledger_config, currency_authority, settings,
                        notification_sink, deterministic_clock)

        assert report.escalated == (pending_request.request_id,)
        request = committed_orchestrator(lambda orch: orch.status(pending_request.request_id))
        assert request.status is ApprovalStatus.ESCALATED
        committed = [r for r in captured_logs() if r["message"] == "approval_sweep_committed"]
        assert committed[0]["escalated"] == 1

    def test_repeated_sweep_changes_nothing(
        self, committed_session_factory, ledger_config, currency_authority, settings,
        notification_sink, deterministic_clock, pending_request,
    ):
        deterministic_clock.advance_hours(12)
        _sweep(committed_session_factory, ledger_config, currency_authority, settings,
               notification_sink, deterministic_clock)

        again = _sweep(committed_session_factory, ledger_config, currency_authority, settings,
                       notification_sink, deterministic_clock)

        assert again.changed == 0


class TestRunSweepLoop:

    def test_runs_requested_iterations_and_sleeps_between(
        self, committed_session_factory, ledger_config, currency_authority, settings,
        notification_sink, deterministic_clock, pending_request,
    ):
        naps = []

        reports = sweep_job.run_sweep_loop(
            committed_session_factory, ledger_config, currency_authority, settings,
            notification_sink=notification_sink, clock=deterministic_clock,
            interval_seconds=60, iterations=2, sleep=naps.append,
        )

        assert len(reports) == 2
        assert naps == [60]

    def test_unavailable_store_does_not_stop_the_loop(
        self, ledger_config, currency_authority, settings, monkeypatch, captured_logs,
    ):
        calls = []

        def _down(*args, **kwargs):
            calls.append(1)
            raise StoreUnavailableError("run_sweep", "connection refused")

        monkeypatch.setattr(sweep_job, "run_sweep_once", _down)

        reports = sweep_job.run_sweep_loop(
            None, ledger_config, currency_authority, settings,
            iterations=3, sleep=lambda seconds: None,
        )

        assert reports == []
        assert len(calls) == 3
        failures = [r for r in captured_logs() if r["message"] == "approval_sweep_store_unavailable"]
        assert [f["run"] for f in failures] == [1, 2, 3]
        assert failures[0]["cause"] == "connection refused"
