"""
ApprovalEngine -- approval request lifecycle and gating.

Responsibility:
    Decides whether an operation needs authorization, persists the request
    when it does, records decisions, runs the auto-approval / escalation
    timers, and binds an approved request to the single execution it
    authorizes.

Architecture position:
    Kernel > Services -- imperative shell over the pure rules in
    ``domain/approval.py``.  Reads configuration from
    ApprovalPolicyRegistry; converts amounts through the currency authority;
    audits through AuditorService.

Invariants enforced:
    - State machine: ``APPROVAL_TRANSITIONS`` is checked before every
      status change; terminal rows are frozen by ORM listeners.
    - Single open request per (entity_type, entity_id): one constrained
      INSERT inside a SAVEPOINT; the partial unique index decides the race.
    - No self-approval, regardless of role.
    - One decision per approver per round; a round ends when an escalation
      moves the request to another chain.
    - Auto-approval and escalation are recorded as their own history
      kinds with actor ``system``; auto-approval wins over escalation when
      both deadlines have passed.
    - An approval authorizes one execution: consumption is a single
      conditional UPDATE on ``consumed_at IS NULL``.

Failure modes:
    - DuplicatePendingApprovalError (carries the open request).
    - NotPendingError, SelfApprovalError, UnauthorizedError,
      DuplicateDecisionError on decisions and cancellation.
    - GuardBlockedError, NoApplicableChainError on request creation.
    - ApprovalNotUsableError on consumption.
    - ApprovalRequestNotFoundError for unknown ids.

Audit relevance:
    Every transition, bypass and guard refusal is audited.  Bypass is
    always ``critical``.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
    - Does NOT block waiting for approval; callers poll status or await
      the request by id.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.types import to_decimal, validate_currency
from ledger_kernel.domain.approval import (
    OPEN_APPROVAL_STATUSES,
    SYSTEM_ACTOR,
    ApprovalChain,
    ApprovalDecision,
    ApprovalGuard,
    ApprovalHistoryEntry,
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalStatus,
    HistoryKind,
    SweepReport,
    approved_roles_in_round,
    approvers_in_round,
    can_transition,
    evaluate_accumulation,
)
from ledger_kernel.domain.business_context import ApprovalContext, GuardContext, SweepContext
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.collaborators import (
    AlertCategory,
    AlertSeverity,
    ApproverDirectory,
    NotificationSink,
    NumberingProvider,
)
from ledger_kernel.exceptions import (
    ApprovalNotUsableError,
    ApprovalRequestNotFoundError,
    DuplicateDecisionError,
    DuplicatePendingApprovalError,
    GuardBlockedError,
    NotPendingError,
    SelfApprovalError,
    UnauthorizedError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.approval import ApprovalHistoryModel, ApprovalRequestModel
from ledger_kernel.models.audit_log import AuditAction
from ledger_kernel.services.alerting import dispatch_alert
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_kernel.services.numbering import SequenceNumbering
from ledger_kernel.services.policy_registry import ApprovalPolicyRegistry

logger = get_logger("services.approval_engine")

CONSUMPTION_TOLERANCE = Decimal("0.01")
DEFAULT_APPROVAL_VALIDITY_HOURS = 24

_OPEN_VALUES = tuple(s.value for s in OPEN_APPROVAL_STATUSES)


def _hours(hours: int | None, start: datetime) -> datetime | None:
    return start + timedelta(hours=hours) if hours else None


def _required_roles(chain: ApprovalChain) -> list[str]:
    return list(chain.approver_roles) if chain.require_all_approvers else []


def _request_snapshot(request: ApprovalRequest) -> dict[str, Any]:
    return {
        "status": request.status.value,
        "chain_id": request.chain_id,
        "required_approvals": request.required_approvals,
        "current_approvals": request.current_approvals,
        "escalate_at": request.escalate_at,
        "auto_approve_at": request.auto_approve_at,
    }


class ApprovalEngine:
    """
    Approval gate and request state machine.

    Contract:
        Every method flushes into the caller's transaction and returns
        frozen DTOs (``ApprovalOutcome`` / ``ApprovalRequest`` /
        ``SweepReport``).
    """

    def __init__(
        self,
        session: Session,
        registry: ApprovalPolicyRegistry,
        currency_authority: CurrencyConversionAuthority,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        numbering: NumberingProvider | None = None,
        notification_sink: NotificationSink | None = None,
        approver_directory: ApproverDirectory | None = None,
        approval_validity_hours: int = DEFAULT_APPROVAL_VALIDITY_HOURS,
    ):
        self._session = session
        self._registry = registry
        self._authority = currency_authority
        self._clock = clock or SystemClock()
        self._sink = notification_sink
        self._auditor = auditor or AuditorService(session, self._clock, notification_sink)
        self._numbering = numbering or SequenceNumbering(session)
        self._directory = approver_directory
        self._validity = timedelta(hours=approval_validity_hours)

    # =========================================================================
    # Loading
    # =========================================================================

    def _load(self, request_id: UUID, lock: bool = False) -> ApprovalRequestModel:
        stmt = select(ApprovalRequestModel).where(ApprovalRequestModel.id == request_id)
        if lock:
            stmt = stmt.with_for_update()
        model = self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise ApprovalRequestNotFoundError(str(request_id))
        return model

    def _find_open(self, entity_type: str, entity_id: str) -> ApprovalRequestModel | None:
        return self._session.execute(
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.entity_type == entity_type,
                ApprovalRequestModel.entity_id == entity_id,
                ApprovalRequestModel.status.in_(_OPEN_VALUES),
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_approval_status(self, request_id: UUID) -> ApprovalRequest:
        """Current state, with ``remaining_approvals`` and ``missing_roles``."""
        return self._load(request_id).to_dto()

    def get_open_request(self, entity_type: str, entity_id: Any) -> ApprovalRequest | None:
        model = self._find_open(entity_type, str(entity_id))
        return model.to_dto() if model else None

    def get_history(self, request_id: UUID) -> tuple[ApprovalHistoryEntry, ...]:
        return self._load(request_id).to_dto().history

    # =========================================================================
    # History
    # =========================================================================

    def _append_history(
        self,
        model: ApprovalRequestModel,
        kind: HistoryKind,
        actor_id: str,
        at: datetime,
        actor_role: str | None = None,
        decision: ApprovalDecision | None = None,
        comment: str = "",
        chain_id: UUID | None = None,
    ) -> None:
        sequence = len(model.history) + 1
        self._session.add(ApprovalHistoryModel(
            request_id=model.id,
            sequence=sequence,
            kind=kind.value,
            actor_id=actor_id,
            actor_role=actor_role,
            decision=decision.value if decision else None,
            comment=comment or "",
            chain_id=chain_id or model.chain_id,
            recorded_at=at,
        ))
        self._session.flush()
        self._session.refresh(model, ["history"])

    def _audit(
        self,
        action: AuditAction,
        request: ApprovalRequest,
        actor_id: str,
        before: dict[str, Any] | None,
        context: Any,
        actor_role: str | None = None,
    ) -> None:
        self._auditor.record_best_effort(
            action=action,
            entity_type="ApprovalRequest",
            entity_id=request.request_id,
            actor_id=actor_id,
            actor_role=actor_role,
            before=before,
            after=_request_snapshot(request),
            business_context=context,
            correlation_id=request.correlation_id,
        )

    # =========================================================================
    # Request
    # =========================================================================

    def _base_amount(self, amount: Decimal | None, currency: str) -> Decimal | None:
        if amount is None:
            return None
        return self._authority.convert(amount, currency).converted_amount

    def _check_guards(
        self,
        guards: list[ApprovalGuard],
        operation_type: str,
        entity_type: str,
        entity_id: str,
        requested_by: str,
        requester_role: str | None,
        emergency_override: bool,
        correlation_id: str,
    ) -> ApprovalGuard | None:
        """Return the guard that grants an emergency bypass, if any."""
        if not emergency_override:
            return None

        for guard in guards:
            if guard.can_override(requester_role):
                return guard

        permitted = tuple(sorted({r for g in guards if g.allow_emergency_override for r in g.emergency_override_roles}))
        logger.warning(
            "approval_bypass_denied",
            extra={
                "operation_type": operation_type,
                "requested_by": requested_by,
                "requester_role": requester_role,
            },
        )
        self._auditor.record_best_effort(
            action=AuditAction.GUARD_BLOCK,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=requested_by,
            actor_role=requester_role,
            after={"emergency_override": True, "allowed": False},
            business_context=GuardContext(
                operation_type=operation_type,
                guard_name=guards[0].name if guards else "none",
                outcome="override_denied",
                requester_role=requester_role,
                reason="requester role not eligible for emergency override",
            ),
            correlation_id=correlation_id,
        )
        raise UnauthorizedError(
            requested_by, requester_role,
            "emergency override is not available to this role",
            permitted_roles=permitted,
        )

    def _bypass(
        self,
        guard: ApprovalGuard,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        amount: Decimal | None,
        currency: str,
        justification: str,
        requested_by: str,
        requester_role: str | None,
        correlation_id: str,
    ) -> ApprovalOutcome:
        logger.critical(
            "approval_bypassed",
            extra={
                "operation_type": operation_type,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "guard": guard.name,
                "requested_by": requested_by,
                "requester_role": requester_role,
            },
        )
        self._auditor.record_best_effort(
            action=AuditAction.BYPASS,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=requested_by,
            actor_role=requester_role,
            after={
                "operation_type": operation_type,
                "amount": amount,
                "currency": currency,
                "justification": justification,
            },
            business_context=GuardContext(
                operation_type=operation_type,
                guard_name=guard.name,
                outcome="bypassed",
                requester_role=requester_role,
                reason=justification or None,
            ),
            correlation_id=correlation_id,
        )
        if guard.notify_on_bypass:
            dispatch_alert(
                self._sink,
                AlertCategory.EMERGENCY_BYPASS,
                AlertSeverity.CRITICAL,
                f"Emergency override of {operation_type} for {entity_type} {entity_id} "
                f"by {requested_by} ({requester_role})",
                entity_ref=f"{entity_type}:{entity_id}",
            )
        return ApprovalOutcome(
            operation_type=operation_type,
            entity_type=entity_type,
            entity_id=entity_id,
            needs_approval=False,
            reason=f"emergency override via guard {guard.name}",
            bypassed=True,
            guard_name=guard.name,
        )

    def _check_approver_availability(
        self,
        guards: list[ApprovalGuard],
        chain: ApprovalChain,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        requested_by: str,
        requester_role: str | None,
        correlation_id: str,
    ) -> None:
        if self._directory is None:
            return
        for guard in guards:
            if not guard.block_if_no_approver:
                continue
            eligible = [a for a in self._directory.eligible_approvers(chain.approver_roles) if a != requested_by]
            if len(eligible) >= chain.required_approvals:
                continue
            reason = (
                f"{len(eligible)} eligible approver(s) available, "
                f"{chain.required_approvals} required by chain {chain.name}"
            )
            logger.warning(
                "approval_guard_blocked",
                extra={"operation_type": operation_type, "guard": guard.name, "reason": reason},
            )
            self._auditor.record_best_effort(
                action=AuditAction.GUARD_BLOCK,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=requested_by,
                actor_role=requester_role,
                after={"chain": chain.name, "eligible_approvers": len(eligible)},
                business_context=GuardContext(
                    operation_type=operation_type,
                    guard_name=guard.name,
                    outcome="blocked",
                    requester_role=requester_role,
                    reason=reason,
                ),
                correlation_id=correlation_id,
            )
            raise GuardBlockedError(guard.name, operation_type, reason)

    def request_approval(
        self,
        operation_type: str,
        entity_type: str,
        entity_id: Any,
        amount: Any,
        justification: str,
        requested_by: str,
        requester_role: str | None,
        currency: str | None = None,
        correlation_id: str | None = None,
        emergency_override: bool = False,
    ) -> ApprovalOutcome:
        """
        Gate an operation.

        Returns an immediate pass (nothing persisted) or a pending request.
        Amount thresholds compare in the base currency.

        Raises:
            DuplicatePendingApprovalError: an open request already exists
                for the entity; ``existing_request`` carries it.
        """
        entity_id = str(entity_id)
        currency = validate_currency(currency or self._authority.base_currency)
        value = to_decimal(amount) if amount is not None else None
        correlation_id = correlation_id or LogContext.get_correlation_id()
        base_amount = self._base_amount(value, currency)

        guards = [g for g in self._registry.guards_for(operation_type) if g.applies_to(base_amount, requester_role)]
        bypass_guard = self._check_guards(
            guards, operation_type, entity_type, entity_id,
            requested_by, requester_role, emergency_override, correlation_id,
        )
        if bypass_guard is not None:
            return self._bypass(
                bypass_guard, operation_type, entity_type, entity_id, value, currency,
                justification, requested_by, requester_role, correlation_id,
            )

        chain = self._registry.resolve_chain(operation_type, base_amount, requester_role)

        if chain is not None and chain.required_approvals > 0 and not chain.exempts(requester_role):
            self._check_approver_availability(
                guards, chain, operation_type, entity_type, entity_id,
                requested_by, requester_role, correlation_id,
            )

        for guard in guards:
            if guard.audit_all_attempts:
                self._auditor.record_best_effort(
                    action=AuditAction.GUARD_CHECK,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    actor_id=requested_by,
                    actor_role=requester_role,
                    after={"amount": value, "currency": currency},
                    business_context=GuardContext(
                        operation_type=operation_type,
                        guard_name=guard.name,
                        outcome="passed",
                        requester_role=requester_role,
                    ),
                    correlation_id=correlation_id,
                )

        if chain is None or chain.min_approvers == 0 or chain.exempts(requester_role):
            if chain is None:
                reason = "no approval chain applies"
            elif chain.min_approvers == 0:
                reason = f"chain {chain.name} requires no approvers"
            else:
                reason = f"role {requester_role} is exempt under chain {chain.name}"
            logger.info(
                "approval_not_required",
                extra={"operation_type": operation_type, "entity_id": entity_id, "reason": reason},
            )
            return ApprovalOutcome(
                operation_type=operation_type,
                entity_type=entity_type,
                entity_id=entity_id,
                needs_approval=False,
                reason=reason,
                chain_id=chain.chain_id if chain else None,
                chain_name=chain.name if chain else None,
            )

        request = self._insert_request(
            chain, operation_type, entity_type, entity_id, value, currency,
            justification, requested_by, requester_role, correlation_id,
        )
        return ApprovalOutcome(
            operation_type=operation_type,
            entity_type=entity_type,
            entity_id=entity_id,
            needs_approval=True,
            reason=request.describe_outstanding(),
            request=request,
            chain_id=chain.chain_id,
            chain_name=chain.name,
        )

    def _insert_request(
        self,
        chain: ApprovalChain,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        amount: Decimal | None,
        currency: str,
        justification: str,
        requested_by: str,
        requester_role: str | None,
        correlation_id: str | None,
    ) -> ApprovalRequest:
        now = self._clock.now()
        savepoint = self._session.begin_nested()
        try:
            model = ApprovalRequestModel(
                request_number=self._numbering.next_number("approval_request"),
                operation_type=operation_type,
                chain_id=chain.chain_id,
                entity_type=entity_type,
                entity_id=entity_id,
                amount=amount,
                currency=currency,
                justification=justification or "",
                status=ApprovalStatus.PENDING.value,
                required_approvals=chain.required_approvals,
                current_approvals=0,
                required_roles=_required_roles(chain),
                requested_by=requested_by,
                requester_role=requester_role,
                requested_at=now,
                auto_approve_at=_hours(chain.auto_approve_after_hours, now),
                escalate_at=_hours(chain.escalate_after_hours, now),
                correlation_id=correlation_id,
            )
            self._session.add(model)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find_open(entity_type, entity_id)
            logger.warning(
                "approval_request_duplicate",
                extra={
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "existing_request_id": str(existing.id) if existing else None,
                },
            )
            raise DuplicatePendingApprovalError(
                entity_type, entity_id, existing.to_dto() if existing else None,
            ) from None

        request = model.to_dto()
        logger.info(
            "approval_request_created",
            extra={
                "request_id": str(request.request_id),
                "request_number": request.request_number,
                "operation_type": operation_type,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "chain": chain.name,
                "required_approvals": request.required_approvals,
            },
        )
        self._audit(
            AuditAction.CREATE, request, requested_by, None,
            ApprovalContext(
                operation_type=operation_type,
                chain_name=chain.name,
                remaining_approvals=request.remaining_approvals,
            ),
            actor_role=requester_role,
        )
        return request

    # =========================================================================
    # Decisions
    # =========================================================================

    def record_approval_decision(
        self,
        request_id: UUID,
        approver_id: str,
        approver_role: str | None,
        decision: ApprovalDecision | str,
        comment: str = "",
    ) -> ApprovalRequest:
        """
        Record one approver's decision under the request's row lock.

        The requester is refused before anything else, whatever the status.

        Raises:
            SelfApprovalError: approver is the requester.
            NotPendingError: request is terminal.
            UnauthorizedError: role not permitted by the current chain.
            DuplicateDecisionError: approver already decided this round.
        """
        decision = ApprovalDecision(decision)
        model = self._load(request_id, lock=True)
        status = ApprovalStatus(model.status)
        target = {
            ApprovalDecision.APPROVE: ApprovalStatus.APPROVED,
            ApprovalDecision.REJECT: ApprovalStatus.REJECTED,
            ApprovalDecision.ESCALATE: ApprovalStatus.ESCALATED,
        }[decision]
        if approver_id == model.requested_by:
            logger.warning(
                "approval_self_decision_rejected",
                extra={"request_id": str(request_id), "actor_id": approver_id},
            )
            raise SelfApprovalError(approver_id, approver_role, str(request_id))

        if status not in OPEN_APPROVAL_STATUSES or not can_transition(status, target):
            raise NotPendingError(str(request_id), status.value, action=decision.value)

        chain = self._registry.get_chain(model.chain_id)
        if not chain.permits_approver(approver_role) and not self._registry.is_admin(approver_role):
            raise UnauthorizedError(
                approver_id, approver_role,
                f"role may not decide on chain {chain.name}",
                permitted_roles=chain.approver_roles,
            )

        before = model.to_dto()
        if approver_id in approvers_in_round(before.history):
            raise DuplicateDecisionError(str(request_id), approver_id)

        now = self._clock.now()
        self._append_history(
            model, HistoryKind.HUMAN, approver_id, now,
            actor_role=approver_role, decision=decision, comment=comment,
        )

        if decision is ApprovalDecision.REJECT:
            model.status = ApprovalStatus.REJECTED.value
            model.rejected_at = now
            model.final_rejected_by = approver_id
            model.rejection_reason = comment or None
            self._session.flush()
            request = model.to_dto()
            logger.info(
                "approval_request_rejected",
                extra={"request_id": str(request_id), "actor_id": approver_id},
            )
            self._audit(
                AuditAction.REJECT, request, approver_id, _request_snapshot(before),
                ApprovalContext(
                    operation_type=request.operation_type,
                    chain_name=chain.name,
                    decision=decision.value,
                    comment=comment or None,
                ),
                actor_role=approver_role,
            )
            return request

        if decision is ApprovalDecision.ESCALATE:
            return self._escalate(model, chain, now, approver_id, approver_role, comment, trigger="manual")

        model.current_approvals += 1
        history = model.to_dto().history
        accumulation = evaluate_accumulation(
            model.required_approvals,
            model.current_approvals,
            tuple(model.required_roles or ()),
            approved_roles_in_round(history),
        )
        if accumulation.satisfied:
            model.status = ApprovalStatus.APPROVED.value
            model.approved_at = now
            model.final_approved_by = approver_id
        self._session.flush()
        request = model.to_dto()

        logger.info(
            "approval_decision_recorded",
            extra={
                "request_id": str(request_id),
                "actor_id": approver_id,
                "decision": decision.value,
                "status": request.status.value,
                "remaining_approvals": accumulation.remaining,
            },
        )
        self._audit(
            AuditAction.APPROVE, request, approver_id, _request_snapshot(before),
            ApprovalContext(
                operation_type=request.operation_type,
                chain_name=chain.name,
                decision=decision.value,
                comment=comment or None,
                remaining_approvals=accumulation.remaining,
            ),
            actor_role=approver_role,
        )
        return request

    def _escalate(
        self,
        model: ApprovalRequestModel,
        chain: ApprovalChain,
        now: datetime,
        actor_id: str,
        actor_role: str | None,
        comment: str,
        trigger: str,
    ) -> ApprovalRequest:
        """Move a pending request to ``escalated``; switch chains when a target exists."""
        before = model.to_dto()
        target = (
            self._registry.get_chain(chain.escalation_chain_id)
            if chain.escalation_chain_id else None
        )

        model.status = ApprovalStatus.ESCALATED.value
        model.escalated_at = now
        model.escalate_at = None
        if target is not None:
            model.chain_id = target.chain_id
            model.current_approvals = 0
            model.required_approvals = target.required_approvals
            model.required_roles = _required_roles(target)
            model.auto_approve_at = _hours(target.auto_approve_after_hours, now)
        self._session.flush()

        self._append_history(
            model, HistoryKind.ESCALATION, actor_id, now,
            actor_role=actor_role, comment=comment,
            chain_id=target.chain_id if target else chain.chain_id,
        )
        request = model.to_dto()

        logger.warning(
            "approval_request_escalated",
            extra={
                "request_id": str(request.request_id),
                "trigger": trigger,
                "from_chain": chain.name,
                "to_chain": target.name if target else None,
            },
        )
        if target is None:
            dispatch_alert(
                self._sink,
                AlertCategory.ESCALATION_TARGET_MISSING,
                AlertSeverity.WARNING,
                f"Request {request.request_number} escalated but chain {chain.name} "
                f"has no escalation target",
                entity_ref=str(request.request_id),
            )
        else:
            dispatch_alert(
                self._sink,
                AlertCategory.ESCALATION,
                AlertSeverity.WARNING,
                f"Request {request.request_number} escalated from {chain.name} to {target.name}",
                entity_ref=str(request.request_id),
            )
        self._audit(
            AuditAction.ESCALATE, request, actor_id, _request_snapshot(before),
            SweepContext(
                trigger=trigger,
                deadline=before.escalate_at.isoformat() if before.escalate_at else None,
                from_chain=chain.name,
                to_chain=target.name if target else None,
            ),
            actor_role=actor_role,
        )
        return request

    def cancel_request(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str | None,
        reason: str = "",
    ) -> ApprovalRequest:
        """
        Cancel a pending request.

        Allowed for the requester before any approval, or for an admin.
        Escalated requests cannot be cancelled.
        """
        model = self._load(request_id, lock=True)
        status = ApprovalStatus(model.status)
        if not can_transition(status, ApprovalStatus.CANCELLED):
            raise NotPendingError(str(request_id), status.value, action="cancel")

        is_admin = self._registry.is_admin(actor_role)
        if not is_admin:
            if actor_id != model.requested_by:
                raise UnauthorizedError(
                    actor_id, actor_role, "only the requester or an admin may cancel",
                )
            if model.current_approvals > 0:
                raise UnauthorizedError(
                    actor_id, actor_role, "request already has approvals; only an admin may cancel",
                )

        before = model.to_dto()
        now = self._clock.now()
        self._append_history(
            model, HistoryKind.CANCELLATION, actor_id, now,
            actor_role=actor_role, comment=reason,
        )
        model.status = ApprovalStatus.CANCELLED.value
        model.cancelled_at = now
        self._session.flush()
        request = model.to_dto()

        logger.info(
            "approval_request_cancelled",
            extra={"request_id": str(request_id), "actor_id": actor_id, "admin": is_admin},
        )
        self._audit(
            AuditAction.CANCEL, request, actor_id, _request_snapshot(before),
            ApprovalContext(operation_type=request.operation_type, comment=reason or None),
            actor_role=actor_role,
        )
        return request

    # =========================================================================
    # Timers
    # =========================================================================

    def _auto_approve(self, model: ApprovalRequestModel, as_of: datetime) -> ApprovalRequest:
        before = model.to_dto()
        self._append_history(
            model, HistoryKind.AUTO, SYSTEM_ACTOR, as_of,
            comment="auto-approval deadline elapsed",
        )
        model.status = ApprovalStatus.APPROVED.value
        model.approved_at = as_of
        model.final_approved_by = SYSTEM_ACTOR
        self._session.flush()
        request = model.to_dto()

        logger.info(
            "approval_request_auto_approved",
            extra={"request_id": str(request.request_id), "deadline": str(before.auto_approve_at)},
        )
        self._audit(
            AuditAction.AUTO_APPROVE, request, SYSTEM_ACTOR, _request_snapshot(before),
            SweepContext(
                trigger="auto_approve",
                deadline=before.auto_approve_at.isoformat() if before.auto_approve_at else None,
            ),
        )
        return request

    def sweep_timers(self, as_of: datetime | None = None) -> SweepReport:
        """
        Apply elapsed auto-approval and escalation deadlines.

        Idempotent: a request handled once no longer matches.  On PostgreSQL
        rows locked by a concurrent sweep are skipped.
        """
        as_of = as_of or self._clock.now()
        stmt = (
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.status.in_(_OPEN_VALUES),
                or_(
                    ApprovalRequestModel.auto_approve_at <= as_of,
                    ApprovalRequestModel.escalate_at <= as_of,
                ),
            )
            .order_by(ApprovalRequestModel.requested_at, ApprovalRequestModel.request_number)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        candidates = list(self._session.execute(stmt).scalars())

        auto_approved: list[UUID] = []
        escalated: list[UUID] = []
        for model in candidates:
            status = ApprovalStatus(model.status)
            if status not in OPEN_APPROVAL_STATUSES:
                continue
            if model.auto_approve_at is not None and model.auto_approve_at <= as_of:
                self._auto_approve(model, as_of)
                auto_approved.append(model.id)
            elif (
                status is ApprovalStatus.PENDING
                and model.escalate_at is not None
                and model.escalate_at <= as_of
            ):
                chain = self._registry.get_chain(model.chain_id)
                self._escalate(model, chain, as_of, SYSTEM_ACTOR, None, "escalation deadline elapsed", trigger="timer")
                escalated.append(model.id)

        report = SweepReport(
            as_of=as_of,
            auto_approved=tuple(auto_approved),
            escalated=tuple(escalated),
            examined=len(candidates),
        )
        logger.info(
            "approval_sweep_completed",
            extra={
                "as_of": as_of.isoformat(),
                "examined": report.examined,
                "auto_approved": len(report.auto_approved),
                "escalated": len(report.escalated),
            },
        )
        return report

    # =========================================================================
    # Consumption
    # =========================================================================

    def consume_approval(
        self,
        request_id: UUID,
        operation_type: str,
        entity_type: str,
        entity_id: Any,
        amount: Any,
        consumed_by: str,
        operation_ref: str,
    ) -> ApprovalRequest:
        """
        Bind an approved request to the execution it authorizes.

        Raises:
            ApprovalNotUsableError: not approved, already consumed, for a
                different operation or entity, amount off by more than 0.01,
                or older than the validity window.
        """
        model = self._load(request_id, lock=True)
        request = model.to_dto()
        now = self._clock.now()
        value = to_decimal(amount) if amount is not None else None

        reason = None
        if request.status is not ApprovalStatus.APPROVED:
            reason = f"request is {request.status.value}"
        elif request.consumed_at is not None:
            reason = f"already consumed by {request.consumed_operation_ref}"
        elif request.operation_type != operation_type:
            reason = f"approved for {request.operation_type}, not {operation_type}"
        elif (request.entity_type, request.entity_id) != (entity_type, str(entity_id)):
            reason = f"approved for {request.entity_type}/{request.entity_id}"
        elif (request.amount is None) != (value is None) or (
            value is not None and abs(request.amount - value) > CONSUMPTION_TOLERANCE
        ):
            reason = f"approved amount {request.amount} does not match {value}"
        elif request.approved_at is None or now - request.approved_at > self._validity:
            reason = "approval has expired"
        if reason is not None:
            logger.warning(
                "approval_consumption_refused",
                extra={"request_id": str(request_id), "reason": reason},
            )
            raise ApprovalNotUsableError(str(request_id), reason)

        result = self._session.execute(
            update(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.id == request_id,
                ApprovalRequestModel.status == ApprovalStatus.APPROVED.value,
                ApprovalRequestModel.consumed_at.is_(None),
            )
            .values(consumed_at=now, consumed_by=consumed_by, consumed_operation_ref=operation_ref)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ApprovalNotUsableError(str(request_id), "already consumed")

        consumed = self._load(request_id).to_dto()
        logger.info(
            "approval_consumed",
            extra={"request_id": str(request_id), "operation_ref": operation_ref, "consumed_by": consumed_by},
        )
        self._audit(
            AuditAction.CONSUME, consumed, consumed_by,
            {"consumed_at": None},
            ApprovalContext(operation_type=operation_type, comment=operation_ref),
        )
        return consumed
