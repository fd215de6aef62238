"""
ApprovalPolicyRegistry -- approval chains and guards.

Responsibility:
    Stores the administrator-maintained approval configuration (chains and
    guards) and answers the one question the engine asks of it: which
    chain governs this operation, amount and requester role.

Architecture position:
    Kernel > Services -- per-session.  Read-only to ApprovalEngine; the
    administration methods are used by operators and by the config bridge
    (``ledger_config.bridges.seed_policy_registry``).

Invariants enforced:
    - Chain and guard names are unique.
    - Chain selection: active chains by priority desc (name breaks ties),
      first whose threshold (amount >= threshold) and role restrictions
      match, else the highest-priority chain without a threshold.
    - An escalation target must exist and differ from the chain itself.
    - Every administrative change is audited (``config_change``).

Failure modes:
    - NoApplicableChainError: nothing matches and an applicable guard
      blocks operations without an approver.
    - ApprovalChainNotFoundError: unknown chain id / name / escalation target.
    - InvalidConfigurationError: unknown operation type, negative counts or
      durations, duplicate names, unknown fields.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.db.types import to_decimal
from ledger_kernel.domain.approval import (
    KNOWN_OPERATION_TYPES,
    ApprovalChain,
    ApprovalGuard,
    select_chain,
)
from ledger_kernel.domain.business_context import ConfigurationChangeContext
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import (
    ApprovalChainNotFoundError,
    InvalidConfigurationError,
    NoApplicableChainError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.approval import ApprovalChainModel, ApprovalGuardModel
from ledger_kernel.models.audit_log import AuditAction
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.utils.hashing import to_json_safe

logger = get_logger("services.policy_registry")

DEFAULT_ADMIN_ROLES: tuple[str, ...] = ("admin",)

_CHAIN_FIELDS = frozenset({
    "operation_type",
    "priority",
    "min_approvers",
    "require_all_approvers",
    "amount_threshold",
    "role_restrictions",
    "approver_roles",
    "exempt_roles",
    "auto_approve_after_hours",
    "escalate_after_hours",
    "escalation_chain",
    "is_active",
})

_GUARD_FIELDS = frozenset({
    "operation_type",
    "is_enabled",
    "amount_threshold",
    "role_exceptions",
    "block_if_no_approver",
    "allow_emergency_override",
    "emergency_override_roles",
    "notify_on_bypass",
    "audit_all_attempts",
})

_LIST_FIELDS = frozenset({
    "role_restrictions",
    "approver_roles",
    "exempt_roles",
    "role_exceptions",
    "emergency_override_roles",
})


def _snapshot(dto: Any) -> dict[str, Any]:
    return to_json_safe({k: v for k, v in vars(dto).items()})


class ApprovalPolicyRegistry:
    """
    Chain/guard store and chain resolution.

    Contract:
        Administrative writes flush into the caller's transaction together
        with their audit entry and return the frozen DTO.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        admin_roles: tuple[str, ...] | list[str] = DEFAULT_ADMIN_ROLES,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._admin_roles = frozenset(admin_roles)

    # =========================================================================
    # Queries
    # =========================================================================

    def is_admin(self, role: str | None) -> bool:
        """Admin roles may decide on any chain and cancel any pending request."""
        return role is not None and role in self._admin_roles

    def _chain_model(self, chain_ref: UUID | str) -> ApprovalChainModel:
        if isinstance(chain_ref, UUID):
            model = self._session.get(ApprovalChainModel, chain_ref)
        else:
            model = self._session.execute(
                select(ApprovalChainModel).where(ApprovalChainModel.name == chain_ref)
            ).scalar_one_or_none()
        if model is None:
            raise ApprovalChainNotFoundError(str(chain_ref))
        return model

    def get_chain(self, chain_ref: UUID | str) -> ApprovalChain:
        """Chain by id or by name."""
        return self._chain_model(chain_ref).to_dto()

    def find_chain(self, name: str) -> ApprovalChain | None:
        model = self._session.execute(
            select(ApprovalChainModel).where(ApprovalChainModel.name == name)
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def list_chains(
        self,
        operation_type: str | None = None,
        include_inactive: bool = False,
    ) -> list[ApprovalChain]:
        stmt = select(ApprovalChainModel)
        if operation_type is not None:
            stmt = stmt.where(ApprovalChainModel.operation_type == operation_type)
        if not include_inactive:
            stmt = stmt.where(ApprovalChainModel.is_active.is_(True))
        stmt = stmt.order_by(ApprovalChainModel.priority.desc(), ApprovalChainModel.name)
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    def _guard_model(self, guard_ref: UUID | str) -> ApprovalGuardModel:
        if isinstance(guard_ref, UUID):
            model = self._session.get(ApprovalGuardModel, guard_ref)
        else:
            model = self._session.execute(
                select(ApprovalGuardModel).where(ApprovalGuardModel.name == guard_ref)
            ).scalar_one_or_none()
        if model is None:
            raise InvalidConfigurationError([f"approval guard not found: {guard_ref}"], source="registry")
        return model

    def get_guard(self, guard_ref: UUID | str) -> ApprovalGuard:
        return self._guard_model(guard_ref).to_dto()

    def find_guard(self, name: str) -> ApprovalGuard | None:
        model = self._session.execute(
            select(ApprovalGuardModel).where(ApprovalGuardModel.name == name)
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def guards_for(self, operation_type: str, enabled_only: bool = True) -> list[ApprovalGuard]:
        stmt = select(ApprovalGuardModel).where(ApprovalGuardModel.operation_type == operation_type)
        if enabled_only:
            stmt = stmt.where(ApprovalGuardModel.is_enabled.is_(True))
        stmt = stmt.order_by(ApprovalGuardModel.name)
        return [m.to_dto() for m in self._session.execute(stmt).scalars()]

    def resolve_chain(
        self,
        operation_type: str,
        amount: Decimal | None,
        requester_role: str | None,
    ) -> ApprovalChain | None:
        """
        Chain governing an operation, or None when no approval is required.

        ``amount`` must already be in the base currency.

        Raises:
            NoApplicableChainError: no chain matches and an applicable
                guard has ``block_if_no_approver``.
        """
        chain = select_chain(self.list_chains(operation_type), operation_type, amount, requester_role)
        if chain is not None:
            logger.debug(
                "approval_chain_resolved",
                extra={"operation_type": operation_type, "chain": chain.name},
            )
            return chain

        blocking = [
            g for g in self.guards_for(operation_type)
            if g.block_if_no_approver and g.applies_to(amount, requester_role)
        ]
        if blocking:
            logger.warning(
                "approval_chain_missing_blocked",
                extra={
                    "operation_type": operation_type,
                    "guard": blocking[0].name,
                    "amount": str(amount) if amount is not None else None,
                },
            )
            raise NoApplicableChainError(operation_type, amount, requester_role)
        return None

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def _validate_common(name: str, fields: dict[str, Any], allowed: frozenset[str]) -> list[str]:
        errors: list[str] = []
        unknown = set(fields) - allowed
        if unknown:
            errors.append(f"{name}: unknown fields {sorted(unknown)}")
        op = fields.get("operation_type")
        if op is not None and op not in KNOWN_OPERATION_TYPES:
            errors.append(f"{name}: unknown operation type {op!r}")
        for key in ("min_approvers", "auto_approve_after_hours", "escalate_after_hours"):
            value = fields.get(key)
            if value is not None and int(value) < 0:
                errors.append(f"{name}: {key} must not be negative")
        threshold = fields.get("amount_threshold")
        if threshold is not None and to_decimal(threshold) < 0:
            errors.append(f"{name}: amount_threshold must not be negative")
        return errors

    @staticmethod
    def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key in _LIST_FIELDS:
                values[key] = list(value or ())
            elif key == "amount_threshold":
                values[key] = to_decimal(value) if value is not None else None
            else:
                values[key] = value
        return values

    def _resolve_escalation_target(self, chain_name: str, target: UUID | str | None) -> UUID | None:
        if target is None:
            return None
        model = self._chain_model(target)
        if model.name == chain_name:
            raise InvalidConfigurationError(
                [f"{chain_name}: chain cannot escalate to itself"], source="registry",
            )
        return model.id

    def _audit_change(
        self,
        entity_type: str,
        entity_id: UUID,
        subject: str,
        change: str,
        actor_id: str,
        before: dict[str, Any] | None,
        after: dict[str, Any],
    ) -> None:
        self._auditor.record(
            action=AuditAction.CONFIG_CHANGE,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            before=before,
            after=after,
            business_context=ConfigurationChangeContext(subject=subject, change=change),
        )
        logger.info(
            "approval_policy_changed",
            extra={"entity_type": entity_type, "subject": subject, "change": change, "actor_id": actor_id},
        )

    # =========================================================================
    # Chain administration
    # =========================================================================

    def create_chain(self, name: str, operation_type: str, actor_id: str, **fields: Any) -> ApprovalChain:
        """
        Create an approval chain.

        ``escalation_chain`` may be a chain id or name.  Remaining keyword
        arguments mirror the ``ApprovalChain`` fields.
        """
        fields = {"operation_type": operation_type, **fields}
        errors = self._validate_common(name, fields, _CHAIN_FIELDS)
        if not name:
            errors.append("chain name is required")
        if self.find_chain(name) is not None:
            errors.append(f"{name}: an approval chain with this name already exists")
        if errors:
            raise InvalidConfigurationError(errors, source="registry")

        escalation_chain_id = self._resolve_escalation_target(name, fields.pop("escalation_chain", None))
        model = ApprovalChainModel(
            name=name,
            escalation_chain_id=escalation_chain_id,
            updated_at=self._clock.now(),
            updated_by=actor_id,
            **self._column_values(fields),
        )
        self._session.add(model)
        self._session.flush()
        chain = model.to_dto()

        self._audit_change("ApprovalChain", chain.chain_id, name, "create", actor_id, None, _snapshot(chain))
        return chain

    def update_chain(self, chain_ref: UUID | str, actor_id: str, **changes: Any) -> ApprovalChain:
        model = self._chain_model(chain_ref)
        errors = self._validate_common(model.name, changes, _CHAIN_FIELDS)
        if errors:
            raise InvalidConfigurationError(errors, source="registry")

        before = model.to_dto()
        if "escalation_chain" in changes:
            model.escalation_chain_id = self._resolve_escalation_target(
                model.name, changes.pop("escalation_chain"),
            )
        for key, value in self._column_values(changes).items():
            setattr(model, key, value)
        model.updated_at = self._clock.now()
        model.updated_by = actor_id
        self._session.flush()
        after = model.to_dto()

        self._audit_change(
            "ApprovalChain", after.chain_id, model.name, "update", actor_id,
            _snapshot(before), _snapshot(after),
        )
        return after

    def deactivate_chain(self, chain_ref: UUID | str, actor_id: str) -> ApprovalChain:
        """Retire a chain.  Requests already on it keep referring to it."""
        model = self._chain_model(chain_ref)
        if not model.is_active:
            return model.to_dto()
        model.is_active = False
        model.updated_at = self._clock.now()
        model.updated_by = actor_id
        self._session.flush()
        chain = model.to_dto()
        self._audit_change(
            "ApprovalChain", chain.chain_id, model.name, "deactivate", actor_id,
            {"is_active": True}, {"is_active": False},
        )
        return chain

    # =========================================================================
    # Guard administration
    # =========================================================================

    def create_guard(self, name: str, operation_type: str, actor_id: str, **fields: Any) -> ApprovalGuard:
        fields = {"operation_type": operation_type, **fields}
        errors = self._validate_common(name, fields, _GUARD_FIELDS)
        if not name:
            errors.append("guard name is required")
        if self.find_guard(name) is not None:
            errors.append(f"{name}: an approval guard with this name already exists")
        if errors:
            raise InvalidConfigurationError(errors, source="registry")

        model = ApprovalGuardModel(
            name=name,
            updated_at=self._clock.now(),
            updated_by=actor_id,
            **self._column_values(fields),
        )
        self._session.add(model)
        self._session.flush()
        guard = model.to_dto()

        self._audit_change("ApprovalGuard", guard.guard_id, name, "create", actor_id, None, _snapshot(guard))
        return guard

    def update_guard(self, guard_ref: UUID | str, actor_id: str, **changes: Any) -> ApprovalGuard:
        model = self._guard_model(guard_ref)
        errors = self._validate_common(model.name, changes, _GUARD_FIELDS)
        if errors:
            raise InvalidConfigurationError(errors, source="registry")

        before = model.to_dto()
        for key, value in self._column_values(changes).items():
            setattr(model, key, value)
        model.updated_at = self._clock.now()
        model.updated_by = actor_id
        self._session.flush()
        after = model.to_dto()

        self._audit_change(
            "ApprovalGuard", after.guard_id, model.name, "update", actor_id,
            _snapshot(before), _snapshot(after),
        )
        return after
