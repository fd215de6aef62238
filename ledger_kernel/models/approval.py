"""
Module: ledger_kernel.models.approval
Responsibility: ORM persistence for approval chains, guards, requests and
    the append-only approval history.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Single open request per entity: partial UNIQUE index on
      (entity_type, entity_id) WHERE status IN ('pending', 'escalated').
      The index is the arbiter of the creation race; the service performs
      one constrained INSERT and reads the winner on IntegrityError.
    - Status values limited by CHECK constraint; transitions are enforced
      by ApprovalEngine and terminal rows are frozen here (only the
      single-use consumption stamp may still be written on an approved row).
    - History rows are append-only: UNIQUE(request_id, sequence), no
      UPDATE, no DELETE.
    - Chain and guard names are unique.

Failure modes:
    - IntegrityError on a second open request for the same entity.
    - ImmutabilityViolationError on history UPDATE/DELETE or on mutation
      of a terminal request.
      (listeners live in db/immutability.py)
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import Base, UUIDString
from ledger_kernel.domain.approval import (
    ApprovalChain,
    ApprovalDecision,
    ApprovalGuard,
    ApprovalHistoryEntry,
    ApprovalRequest,
    ApprovalStatus,
    HistoryKind,
)

_OPEN_STATUS_PREDICATE = "status IN ('pending', 'escalated')"


class ApprovalChainModel(Base):
    """Approval chain configuration row."""

    __tablename__ = "approval_chains"

    __table_args__ = (
        Index("ix_approval_chains_operation", "operation_type", "is_active", "priority"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    operation_type: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_approvers: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    require_all_approvers: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    amount_threshold: Mapped[Decimal | None] = mapped_column(nullable=True)
    role_restrictions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    approver_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    exempt_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    auto_approve_after_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    escalate_after_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    escalation_chain_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("approval_chains.id"), nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_by: Mapped[str] = mapped_column(String(100), nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalChain {self.name} op={self.operation_type} prio={self.priority}>"

    def to_dto(self) -> ApprovalChain:
        return ApprovalChain(
            chain_id=self.id,
            name=self.name,
            operation_type=self.operation_type,
            priority=self.priority,
            min_approvers=self.min_approvers,
            require_all_approvers=self.require_all_approvers,
            amount_threshold=self.amount_threshold,
            role_restrictions=tuple(self.role_restrictions or ()),
            approver_roles=tuple(self.approver_roles or ()),
            exempt_roles=tuple(self.exempt_roles or ()),
            auto_approve_after_hours=self.auto_approve_after_hours,
            escalate_after_hours=self.escalate_after_hours,
            escalation_chain_id=self.escalation_chain_id,
            is_active=self.is_active,
        )


class ApprovalGuardModel(Base):
    """Approval guard configuration row."""

    __tablename__ = "approval_guards"

    __table_args__ = (
        Index("ix_approval_guards_operation", "operation_type", "is_enabled"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    operation_type: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    amount_threshold: Mapped[Decimal | None] = mapped_column(nullable=True)
    role_exceptions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    block_if_no_approver: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_emergency_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    emergency_override_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    notify_on_bypass: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    audit_all_attempts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_by: Mapped[str] = mapped_column(String(100), nullable=False)

    def to_dto(self) -> ApprovalGuard:
        return ApprovalGuard(
            guard_id=self.id,
            name=self.name,
            operation_type=self.operation_type,
            is_enabled=self.is_enabled,
            amount_threshold=self.amount_threshold,
            role_exceptions=tuple(self.role_exceptions or ()),
            block_if_no_approver=self.block_if_no_approver,
            allow_emergency_override=self.allow_emergency_override,
            emergency_override_roles=tuple(self.emergency_override_roles or ()),
            notify_on_bypass=self.notify_on_bypass,
            audit_all_attempts=self.audit_all_attempts,
        )


class ApprovalRequestModel(Base):
    """Persistent approval request.

    Contract:
        Status transitions are performed only by ApprovalEngine.  Once a
        request is terminal it is frozen, except that an approved request
        may be stamped as consumed exactly once.
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'escalated', 'cancelled')",
            name="ck_approval_requests_valid_status",
        ),
        Index(
            "ux_approval_requests_open_entity",
            "entity_type", "entity_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_PREDICATE),
            sqlite_where=text(_OPEN_STATUS_PREDICATE),
        ),
        Index("ix_approval_requests_entity_status", "entity_type", "entity_id", "status"),
        Index("ix_approval_requests_auto_approve", "status", "auto_approve_at"),
        Index("ix_approval_requests_escalate", "status", "escalate_at"),
    )

    request_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    operation_type: Mapped[str] = mapped_column(String(100), nullable=False)
    chain_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_chains.id"), nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False)
    current_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    requested_by: Mapped[str] = mapped_column(String(100), nullable=False)
    requester_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    final_approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    final_rejected_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_approve_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escalate_at: Mapped[datetime | None] = mapped_column(nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    consumed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    consumed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    consumed_operation_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)

    history: Mapped[list[ApprovalHistoryModel]] = relationship(
        "ApprovalHistoryModel",
        back_populates="request",
        order_by="ApprovalHistoryModel.sequence",
        lazy="selectin",
        passive_deletes="all",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.request_number} "
            f"{self.entity_type}/{self.entity_id} status={self.status}>"
        )

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        return ApprovalRequest(
            request_id=self.id,
            request_number=self.request_number,
            operation_type=self.operation_type,
            chain_id=self.chain_id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            amount=self.amount,
            currency=self.currency,
            justification=self.justification,
            status=ApprovalStatus(self.status),
            required_approvals=self.required_approvals,
            current_approvals=self.current_approvals,
            requested_by=self.requested_by,
            requested_at=self.requested_at,
            requester_role=self.requester_role,
            required_roles=tuple(self.required_roles or ()),
            approved_at=self.approved_at,
            rejected_at=self.rejected_at,
            escalated_at=self.escalated_at,
            cancelled_at=self.cancelled_at,
            final_approved_by=self.final_approved_by,
            final_rejected_by=self.final_rejected_by,
            rejection_reason=self.rejection_reason,
            auto_approve_at=self.auto_approve_at,
            escalate_at=self.escalate_at,
            correlation_id=self.correlation_id,
            consumed_at=self.consumed_at,
            consumed_by=self.consumed_by,
            consumed_operation_ref=self.consumed_operation_ref,
            history=tuple(h.to_dto() for h in self.history),
        )


class ApprovalHistoryModel(Base):
    """One append-only line of a request's approval history."""

    __tablename__ = "approval_history"

    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_approval_history_sequence"),
        Index("ix_approval_history_actor", "request_id", "actor_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    chain_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped[ApprovalRequestModel] = relationship(
        "ApprovalRequestModel", back_populates="history",
    )

    def to_dto(self) -> ApprovalHistoryEntry:
        return ApprovalHistoryEntry(
            sequence=self.sequence,
            kind=HistoryKind(self.kind),
            actor_id=self.actor_id,
            recorded_at=self.recorded_at,
            chain_id=self.chain_id,
            actor_role=self.actor_role,
            decision=ApprovalDecision(self.decision) if self.decision else None,
            comment=self.comment,
        )
