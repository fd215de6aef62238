"""
Config -> Kernel Bridges.

Functions that turn a ``LedgerConfigSet`` into kernel inputs.  These live
in ledger_config (the producer) because the kernel must NEVER import
ledger_config.

Usage:
    from ledger_config import get_active_config
    from ledger_config.bridges import build_currency_authority, seed_policy_registry

    config = get_active_config()
    settings = ConfiguredSettings(SettingsService(factory), config)
    authority = build_currency_authority(config, settings)
    with session_scope() as session:
        seed_policy_registry(ApprovalPolicyRegistry(session), config)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from ledger_config.schema import ApprovalChainDef, ApprovalGuardDef, LedgerConfigSet, SettingKeyDef
from ledger_kernel.domain.approval import ApprovalChain, ApprovalGuard
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.collaborators import SettingChangeListener, SettingsProvider
from ledger_kernel.logging_config import get_logger
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_kernel.services.numbering import SequenceNumbering
from ledger_kernel.services.policy_registry import ApprovalPolicyRegistry
from ledger_kernel.services.rate_cache import RateCache

logger = get_logger("config.bridges")

CONFIG_ACTOR = "config"


def settings_keys_from_config(config: LedgerConfigSet) -> dict[str, SettingKeyDef]:
    """Settings keys the kernel reads, by key."""
    return {s.key: s for s in config.settings}


class ConfiguredSettings:
    """
    Settings provider that applies configured defaults.

    Reads go to the wrapped provider first; a missing non-critical key
    falls back to its configured default.  Critical keys (the exchange
    rate) never get a default.
    """

    def __init__(self, provider: SettingsProvider, config: LedgerConfigSet):
        self._provider = provider
        self._keys = settings_keys_from_config(config)

    @property
    def provider(self) -> SettingsProvider:
        return self._provider

    def get_setting(self, key: str, category: str | None = None) -> str | None:
        value = self._provider.get_setting(key, category)
        if value is not None:
            return value
        key_def = self._keys.get(key)
        if key_def is None or key_def.critical:
            return None
        if category is not None and key_def.category is not None and key_def.category != category:
            return None
        if key_def.category is not None and category is None:
            value = self._provider.get_setting(key, key_def.category)
            if value is not None:
                return value
        return key_def.default

    def add_change_listener(self, listener: SettingChangeListener) -> None:
        self._provider.add_change_listener(listener)


def build_currency_authority(
    config: LedgerConfigSet,
    settings: SettingsProvider,
    clock: Clock | None = None,
) -> CurrencyConversionAuthority:
    ledger = config.ledger
    return CurrencyConversionAuthority(
        settings,
        base_currency=ledger.base_currency,
        tracked_currency=ledger.tracked_currency,
        rate_key=ledger.rate_key,
        rate_category=ledger.rate_category,
        cache=RateCache(ttl_seconds=ledger.rate_cache_ttl_seconds, clock=clock),
        clock=clock,
    )


def build_numbering(session: Session, config: LedgerConfigSet) -> SequenceNumbering:
    return SequenceNumbering(session, prefixes=config.numbering.prefixes, width=config.numbering.width)


# ---------------------------------------------------------------------------
# Registry seeding
# ---------------------------------------------------------------------------


@dataclass
class SeedReport:
    """What ``seed_policy_registry`` changed."""

    created_chains: list[str] = field(default_factory=list)
    updated_chains: list[str] = field(default_factory=list)
    created_guards: list[str] = field(default_factory=list)
    updated_guards: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return (
            len(self.created_chains) + len(self.updated_chains)
            + len(self.created_guards) + len(self.updated_guards)
        )


def _chain_fields(definition: ApprovalChainDef) -> dict[str, Any]:
    return {
        "operation_type": definition.operation_type,
        "priority": definition.priority,
        "min_approvers": definition.min_approvers,
        "require_all_approvers": definition.require_all_approvers,
        "amount_threshold": definition.amount_threshold,
        "role_restrictions": definition.role_restrictions,
        "approver_roles": definition.approver_roles,
        "exempt_roles": definition.exempt_roles,
        "auto_approve_after_hours": definition.auto_approve_after_hours,
        "escalate_after_hours": definition.escalate_after_hours,
        "is_active": definition.is_active,
    }


def _guard_fields(definition: ApprovalGuardDef) -> dict[str, Any]:
    return {
        "operation_type": definition.operation_type,
        "is_enabled": definition.is_enabled,
        "amount_threshold": definition.amount_threshold,
        "role_exceptions": definition.role_exceptions,
        "block_if_no_approver": definition.block_if_no_approver,
        "allow_emergency_override": definition.allow_emergency_override,
        "emergency_override_roles": definition.emergency_override_roles,
        "notify_on_bypass": definition.notify_on_bypass,
        "audit_all_attempts": definition.audit_all_attempts,
    }


def _differences(existing: ApprovalChain | ApprovalGuard, wanted: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in wanted.items() if getattr(existing, k) != v}


def seed_policy_registry(
    registry: ApprovalPolicyRegistry,
    config: LedgerConfigSet,
    actor_id: str = CONFIG_ACTOR,
) -> SeedReport:
    """
    Upsert the configured chains and guards by name.

    Idempotent: re-seeding an unchanged configuration writes nothing and
    produces no audit entries.  Chains absent from the configuration are
    left alone.
    """
    report = SeedReport()

    # Pass 1: chains without escalation targets (targets may be declared later)
    for definition in config.approval.chains:
        existing = registry.find_chain(definition.name)
        wanted = _chain_fields(definition)
        if existing is None:
            registry.create_chain(definition.name, actor_id=actor_id, **wanted)
            report.created_chains.append(definition.name)
        else:
            changes = _differences(existing, wanted)
            if changes:
                registry.update_chain(existing.chain_id, actor_id, **changes)
                report.updated_chains.append(definition.name)

    # Pass 2: escalation targets
    for definition in config.approval.chains:
        chain = registry.get_chain(definition.name)
        target_id = registry.get_chain(definition.escalate_to).chain_id if definition.escalate_to else None
        if chain.escalation_chain_id != target_id:
            registry.update_chain(chain.chain_id, actor_id, escalation_chain=target_id)
            if definition.name not in report.created_chains and definition.name not in report.updated_chains:
                report.updated_chains.append(definition.name)

    for definition in config.approval.guards:
        existing = registry.find_guard(definition.name)
        wanted = _guard_fields(definition)
        if existing is None:
            registry.create_guard(definition.name, actor_id=actor_id, **wanted)
            report.created_guards.append(definition.name)
        else:
            changes = _differences(existing, wanted)
            if changes:
                registry.update_guard(existing.guard_id, actor_id, **changes)
                report.updated_guards.append(definition.name)

    logger.info(
        "policy_registry_seeded",
        extra={
            "config_id": config.config_id,
            "created_chains": len(report.created_chains),
            "updated_chains": len(report.updated_chains),
            "created_guards": len(report.created_guards),
            "updated_guards": len(report.updated_guards),
        },
    )
    return report
