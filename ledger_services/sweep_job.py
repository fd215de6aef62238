"""
ledger_services.sweep_job -- Periodic approval timer sweep.

Responsibility:
    Runs ``ApprovalEngine.sweep_timers`` in its own transaction so that
    overdue requests are auto-approved or escalated without any caller
    blocking on them.

Architecture position:
    Services -- process entry point.  Owns the transaction boundary
    (``session_scope``) and nothing else; all state changes happen in the
    engine.

Invariants enforced:
    - Idempotent: a sweep over unchanged data changes nothing, so
      overlapping or repeated runs are harmless.  Concurrent workers on
      PostgreSQL skip each other's locked rows.

Failure modes:
    - StoreUnavailableError from a single sweep is logged and the loop
      continues with the next interval; ``run_sweep_once`` re-raises it.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from ledger_config.schema import LedgerConfigSet
from ledger_kernel.db.engine import session_scope
from ledger_kernel.domain.approval import SweepReport
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.collaborators import NotificationSink, SettingsProvider
from ledger_kernel.exceptions import StoreUnavailableError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_services.ledger_orchestrator import LedgerOrchestrator

logger = get_logger("services.sweep_job")

DEFAULT_SWEEP_INTERVAL_SECONDS = 300
SWEEP_ACTOR = "system"


def run_sweep_once(
    session_factory: sessionmaker[Session] | None,
    config: LedgerConfigSet,
    currency_authority: CurrencyConversionAuthority,
    settings: SettingsProvider,
    notification_sink: NotificationSink | None = None,
    clock: Clock | None = None,
    as_of: datetime | None = None,
) -> SweepReport:
    """One sweep in one committed transaction."""
    with LogContext.bind(actor_id=SWEEP_ACTOR, operation_type="approval_sweep"):
        with session_scope(session_factory) as session:
            orchestrator = LedgerOrchestrator(
                session,
                config,
                currency_authority,
                settings,
                notification_sink=notification_sink,
                clock=clock,
            )
            report = orchestrator.run_sweep(as_of)

    logger.info(
        "approval_sweep_committed",
        extra={
            "as_of": report.as_of.isoformat(),
            "auto_approved": len(report.auto_approved),
            "escalated": len(report.escalated),
            "examined": report.examined,
        },
    )
    return report


def run_sweep_loop(
    session_factory: sessionmaker[Session] | None,
    config: LedgerConfigSet,
    currency_authority: CurrencyConversionAuthority,
    settings: SettingsProvider,
    notification_sink: NotificationSink | None = None,
    clock: Clock | None = None,
    interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    iterations: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[SweepReport]:
    """
    Sweep every ``interval_seconds`` until ``iterations`` runs are done
    (forever when ``None``).  Returns the reports of successful runs.
    """
    reports: list[SweepReport] = []
    run = 0
    while iterations is None or run < iterations:
        run += 1
        try:
            reports.append(run_sweep_once(
                session_factory, config, currency_authority, settings,
                notification_sink=notification_sink, clock=clock,
            ))
        except StoreUnavailableError as exc:
            logger.error(
                "approval_sweep_store_unavailable",
                extra={"run": run, "cause": exc.cause},
            )
        if iterations is None or run < iterations:
            sleep(interval_seconds)
    return reports
