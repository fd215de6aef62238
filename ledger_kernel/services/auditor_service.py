"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, checksummed, hash-chained audit entries for every
    ledger mutation, approval lifecycle transition, guard decision and
    configuration change.  Provides per-entry integrity verification,
    chain validation, and trace / correlation queries.

Architecture position:
    Kernel > Services -- imperative shell, called by LedgerStore,
    ApprovalEngine, ApprovalPolicyRegistry and SettingsService.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never raw SQL max+1).  The
      audit counter row lock also serializes appends to the hash chain.
    - checksum = H(seq | action | entity | actor | risk | correlation |
      occurred_at | H(before, after, context) | prev_checksum).
    - Append-only: audit rows are never modified or deleted (ORM listeners
      and PostgreSQL triggers).
    - Every read through get_entry() re-verifies the checksum.

Failure modes:
    - IntegrityCheckFailedError: a stored row no longer matches its checksum.
    - AuditChainBrokenError: checksum mismatch or broken prev link during
      chain validation.
    - record_best_effort() never raises for write failures: the savepoint is
      rolled back, the failure is logged critical and an audit_failure alert
      is dispatched.  The caller's business work is kept.
"""

from dataclasses import dataclass
from datetime import UTC
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.domain.business_context import BusinessContext
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.collaborators import (
    AlertCategory,
    AlertDispatch,
    AlertSeverity,
    NotificationSink,
)
from ledger_kernel.exceptions import AuditChainBrokenError, IntegrityCheckFailedError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.audit_log import AuditAction, AuditLogEntry, AuditRecord, RiskLevel
from ledger_kernel.services.alerting import dispatch_alert
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.utils.hashing import hash_audit_entry, hash_payload, to_json_safe

logger = get_logger("services.auditor")


DEFAULT_RISK_LEVELS: dict[AuditAction, RiskLevel] = {
    AuditAction.CREATE: RiskLevel.LOW,
    AuditAction.UPDATE: RiskLevel.MEDIUM,
    AuditAction.APPROVE: RiskLevel.MEDIUM,
    AuditAction.REJECT: RiskLevel.MEDIUM,
    AuditAction.ESCALATE: RiskLevel.HIGH,
    AuditAction.AUTO_APPROVE: RiskLevel.HIGH,
    AuditAction.CANCEL: RiskLevel.LOW,
    AuditAction.BYPASS: RiskLevel.CRITICAL,
    AuditAction.GUARD_BLOCK: RiskLevel.HIGH,
    AuditAction.GUARD_CHECK: RiskLevel.LOW,
    AuditAction.CONSUME: RiskLevel.MEDIUM,
    AuditAction.VALIDATE: RiskLevel.LOW,
    AuditAction.AUTO_CORRECT: RiskLevel.HIGH,
    AuditAction.REVERSE: RiskLevel.HIGH,
    AuditAction.RECLASSIFY: RiskLevel.HIGH,
    AuditAction.CONFIG_CHANGE: RiskLevel.HIGH,
    AuditAction.SETTING_CHANGE: RiskLevel.HIGH,
}


@dataclass(frozen=True)
class AuditWriteResult:
    """Observed result of a best-effort audit write."""

    recorded: bool
    record: AuditRecord | None = None
    error: str | None = None
    alert: AlertDispatch | None = None


@dataclass(frozen=True)
class AuditTrace:
    """
    Complete audit trace for an entity.

    Contains all audit entries in chain order.
    """

    entity_type: str
    entity_id: str
    entries: tuple[AuditRecord, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def first_action(self) -> AuditAction | None:
        return self.entries[0].action if self.entries else None

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


def _expected_checksum(row: AuditLogEntry) -> str:
    return hash_audit_entry(
        seq=row.seq,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        actor_id=row.actor_id,
        actor_role=row.actor_role,
        risk_level=row.risk_level,
        correlation_id=row.correlation_id,
        occurred_at=row.occurred_at,
        content_hash=hash_payload(row.content()),
        prev_checksum=row.prev_checksum,
    )


class AuditorService:
    """
    Service for creating and verifying tamper-evident audit entries.

    Contract:
        ``record`` flushes one append-only ``AuditLogEntry`` linked to its
        predecessor.  ``record_best_effort`` wraps it in a SAVEPOINT and
        reports failures instead of raising.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        notification_sink: NotificationSink | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sink = notification_sink
        self._sequence_service = SequenceService(session)

    def _last_checksum(self) -> str | None:
        return self._session.execute(
            select(AuditLogEntry.checksum)
            .order_by(AuditLogEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    # Writing

    def record(
        self,
        action: AuditAction | str,
        entity_type: str,
        entity_id: Any,
        actor_id: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        business_context: BusinessContext | dict[str, Any] | None = None,
        actor_role: str | None = None,
        risk_level: RiskLevel | str | None = None,
        correlation_id: str | None = None,
    ) -> AuditRecord:
        """
        Append one audit entry.

        Postconditions:
            - The row is flushed with the next audit ``seq`` and
              ``prev_checksum`` equal to the checksum of the row before it.
            - ``correlation_id`` is the given one, else the one bound in
              ``LogContext``, else a fresh UUID.
        """
        action = AuditAction(action)
        if action is AuditAction.BYPASS:
            risk = RiskLevel.CRITICAL
        elif risk_level is not None:
            risk = RiskLevel(risk_level)
        else:
            risk = DEFAULT_RISK_LEVELS[action]
        correlation_id = correlation_id or LogContext.get_correlation_id() or str(uuid4())

        if isinstance(business_context, BusinessContext):
            business_context = business_context.to_payload()

        before_safe = to_json_safe(before)
        after_safe = to_json_safe(after)
        context_safe = to_json_safe(business_context)
        content_hash = hash_payload({
            "before": before_safe,
            "after": after_safe,
            "context": context_safe,
        })

        seq = self._sequence_service.next_value(SequenceService.AUDIT_LOG)
        prev_checksum = self._last_checksum()
        occurred_at = self._clock.now().astimezone(UTC)

        checksum = hash_audit_entry(
            seq=seq,
            action=action.value,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_id=str(actor_id),
            actor_role=actor_role,
            risk_level=risk.value,
            correlation_id=correlation_id,
            occurred_at=occurred_at,
            content_hash=content_hash,
            prev_checksum=prev_checksum,
        )

        row = AuditLogEntry(
            seq=seq,
            action=action.value,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_id=str(actor_id),
            actor_role=actor_role,
            before=before_safe,
            after=after_safe,
            business_context=context_safe,
            risk_level=risk.value,
            correlation_id=correlation_id,
            occurred_at=occurred_at,
            content_hash=content_hash,
            prev_checksum=prev_checksum,
            checksum=checksum,
        )
        self._session.add(row)
        self._session.flush()

        log = logger.critical if risk is RiskLevel.CRITICAL else logger.info
        log(
            "audit_entry_created",
            extra={
                "seq": seq,
                "action": action.value,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "risk_level": risk.value,
                "correlation_id": correlation_id,
            },
        )
        return row.to_dto()

    def record_best_effort(
        self,
        action: AuditAction | str,
        entity_type: str,
        entity_id: Any,
        actor_id: str,
        **kwargs: Any,
    ) -> AuditWriteResult:
        """
        Write an audit entry without letting a failure undo the caller's work.

        Same arguments as ``record``.
        """
        savepoint = self._session.begin_nested()
        try:
            record = self.record(action, entity_type, entity_id, actor_id, **kwargs)
            savepoint.commit()
        except Exception as exc:
            if savepoint.is_active:
                savepoint.rollback()
            logger.critical(
                "audit_write_failed",
                extra={
                    "action": getattr(action, "value", action),
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            alert = dispatch_alert(
                self._sink,
                AlertCategory.AUDIT_FAILURE,
                AlertSeverity.CRITICAL,
                f"Audit write failed for {entity_type} {entity_id}: {exc}",
                entity_ref=str(entity_id),
            )
            return AuditWriteResult(recorded=False, error=str(exc), alert=alert)
        return AuditWriteResult(recorded=True, record=record)

    # Reading

    def _verify_row(self, row: AuditLogEntry) -> None:
        expected = _expected_checksum(row)
        if expected != row.checksum:
            logger.critical(
                "audit_integrity_check_failed",
                extra={"audit_id": str(row.id), "seq": row.seq},
            )
            raise IntegrityCheckFailedError(str(row.id), expected, row.checksum)

    def get_entry(self, audit_id: UUID) -> AuditRecord | None:
        """Load one audit entry, verifying its checksum.

        Raises:
            IntegrityCheckFailedError: the row does not match its checksum.
        """
        row = self._session.get(AuditLogEntry, audit_id, populate_existing=True)
        if row is None:
            return None
        self._verify_row(row)
        return row.to_dto()

    def verify_entry(self, audit_id: UUID) -> bool:
        row = self._session.get(AuditLogEntry, audit_id, populate_existing=True)
        if row is None:
            return False
        return _expected_checksum(row) == row.checksum

    def get_trace(self, entity_type: str, entity_id: Any) -> AuditTrace:
        rows = self._session.execute(
            select(AuditLogEntry)
            .where(
                AuditLogEntry.entity_type == entity_type,
                AuditLogEntry.entity_id == str(entity_id),
            )
            .order_by(AuditLogEntry.seq)
            .execution_options(populate_existing=True)
        ).scalars().all()
        for row in rows:
            self._verify_row(row)
        return AuditTrace(
            entity_type=entity_type,
            entity_id=str(entity_id),
            entries=tuple(r.to_dto() for r in rows),
        )

    def get_correlated(self, correlation_id: str) -> list[AuditRecord]:
        """All entries belonging to one business operation, in chain order."""
        rows = self._session.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.correlation_id == correlation_id)
            .order_by(AuditLogEntry.seq)
            .execution_options(populate_existing=True)
        ).scalars().all()
        for row in rows:
            self._verify_row(row)
        return [r.to_dto() for r in rows]

    def get_recent(self, limit: int = 100) -> list[AuditRecord]:
        """Most recent entries first."""
        rows = self._session.execute(
            select(AuditLogEntry)
            .order_by(AuditLogEntry.seq.desc())
            .limit(limit)
        ).scalars().all()
        return [r.to_dto() for r in rows]

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: at the first row whose checksum or
                predecessor link does not match.
        """
        rows = self._session.execute(
            select(AuditLogEntry).order_by(AuditLogEntry.seq)
        ).scalars().all()

        if not rows:
            return True

        if rows[0].prev_checksum is not None:
            logger.critical("audit_chain_broken", extra={"audit_id": str(rows[0].id)})
            raise AuditChainBrokenError(str(rows[0].id), "None", rows[0].prev_checksum)

        for i, row in enumerate(rows):
            expected = _expected_checksum(row)
            if row.checksum != expected:
                logger.critical("audit_chain_broken", extra={"audit_id": str(row.id)})
                raise AuditChainBrokenError(str(row.id), expected, row.checksum)

            if i > 0 and row.prev_checksum != rows[i - 1].checksum:
                logger.critical("audit_chain_broken", extra={"audit_id": str(row.id)})
                raise AuditChainBrokenError(
                    str(row.id),
                    rows[i - 1].checksum,
                    row.prev_checksum or "None",
                )

        logger.info("audit_chain_valid", extra={"entry_count": len(rows)})
        return True
