"""
Module: ledger_kernel.models.audit_log
Responsibility: ORM persistence for the tamper-evident audit log.
Architecture position: Kernel > Models.  May import from db/, domain/ and utils/.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (db/immutability.py).
    - checksum = H(seq | action | entity | actor | risk | correlation |
      occurred_at | content_hash | prev_checksum).  Validated by
      AuditorService on every read.
    - seq is strictly increasing, allocated by SequenceService under the
      counter row lock, which also serializes hash-chain appends.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError on a duplicate seq.

Audit relevance:
    AuditLogEntry IS the audit trail.  Every ledger mutation, every
    approval lifecycle transition, every guard decision and every
    configuration change produces one row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base
from ledger_kernel.domain.business_context import BusinessContext, context_from_payload


class AuditAction(str, Enum):
    """Types of auditable actions."""

    CREATE = "create"
    UPDATE = "update"
    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"
    AUTO_APPROVE = "auto_approve"
    CANCEL = "cancel"
    BYPASS = "approval_bypassed"
    GUARD_BLOCK = "guard_block"
    GUARD_CHECK = "guard_check"
    CONSUME = "consume"
    VALIDATE = "validate"
    AUTO_CORRECT = "auto_correct"
    REVERSE = "reverse"
    RECLASSIFY = "reclassify"
    CONFIG_CHANGE = "config_change"
    SETTING_CHANGE = "setting_change"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AuditRecord:
    """Read-side view of one audit log row."""

    audit_id: UUID
    seq: int
    action: AuditAction
    entity_type: str
    entity_id: str
    actor_id: str
    actor_role: str | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    business_context: BusinessContext | None
    risk_level: RiskLevel
    correlation_id: str
    occurred_at: datetime
    content_hash: str
    prev_checksum: str | None
    checksum: str

    @property
    def is_genesis(self) -> bool:
        return self.prev_checksum is None


class AuditLogEntry(Base):
    """
    Audit log row with hash chain for tamper evidence.

    Contract:
        Rows are append-only, never updated or deleted.  Each row's
        checksum includes the previous row's checksum.

    Non-goals:
        - This model does NOT compute checksums at INSERT time; that is
          the responsibility of AuditorService.
    """

    __tablename__ = "audit_log"

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        Index("ix_audit_log_action", "action"),
        Index("ix_audit_log_correlation", "correlation_id"),
        Index("ix_audit_log_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(nullable=False, unique=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_role: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Snapshots are stored JSON-safe so they hash identically on read-back
    before: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    after: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    business_context: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLogEntry #{self.seq} {self.action} on {self.entity_type}:{self.entity_id}>"

    def content(self) -> dict[str, Any]:
        """The hashed content block: snapshots plus business context."""
        return {
            "before": self.before,
            "after": self.after,
            "context": self.business_context,
        }

    def to_dto(self) -> AuditRecord:
        return AuditRecord(
            audit_id=self.id,
            seq=self.seq,
            action=AuditAction(self.action),
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            before=self.before,
            after=self.after,
            business_context=context_from_payload(self.business_context),
            risk_level=RiskLevel(self.risk_level),
            correlation_id=self.correlation_id,
            occurred_at=self.occurred_at,
            content_hash=self.content_hash,
            prev_checksum=self.prev_checksum,
            checksum=self.checksum,
        )
