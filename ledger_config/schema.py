"""
Ledger configuration set schema.

The human-authored, reviewable source artifact for the ledger and the
approval gate.  YAML files are parsed into these types by the loader;
bridges translate them into kernel inputs (registry seeding, runtime
settings defaults, numbering).

Runtime values (the canonical exchange rate, the negative-balance switch,
the low-balance threshold) are NOT stored here.  The configuration only
names the settings keys to read and the defaults for the non-critical ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSettingsDef:
    """Currency pair and cache/validity windows."""

    base_currency: str = "USD"
    tracked_currency: str = "ETB"
    rate_key: str = "USD_ETB_RATE"
    rate_category: str | None = "financial"
    rate_cache_ttl_seconds: int = 300
    approval_validity_hours: int = 24


@dataclass(frozen=True)
class SettingKeyDef:
    """A runtime setting the kernel reads.

    ``critical`` keys have no default: their absence is a
    ConfigurationMissingError at the point of use.
    """

    key: str
    category: str | None = None
    default: str | None = None
    critical: bool = False
    description: str = ""


# ---------------------------------------------------------------------------
# Approval policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovalChainDef:
    name: str
    operation_type: str
    priority: int = 0
    min_approvers: int = 1
    require_all_approvers: bool = False
    amount_threshold: Decimal | None = None
    role_restrictions: tuple[str, ...] = ()
    approver_roles: tuple[str, ...] = ()
    exempt_roles: tuple[str, ...] = ()
    auto_approve_after_hours: int | None = None
    escalate_after_hours: int | None = None
    escalate_to: str | None = None  # chain name
    is_active: bool = True


@dataclass(frozen=True)
class ApprovalGuardDef:
    name: str
    operation_type: str
    is_enabled: bool = True
    amount_threshold: Decimal | None = None
    role_exceptions: tuple[str, ...] = ()
    block_if_no_approver: bool = False
    allow_emergency_override: bool = False
    emergency_override_roles: tuple[str, ...] = ()
    notify_on_bypass: bool = True
    audit_all_attempts: bool = False


@dataclass(frozen=True)
class ApprovalPolicyDef:
    """Chains, guards and administrator roles.

    ``required_operation_types`` lists operations that must have at least
    one active chain; a configuration without one is rejected.
    """

    admin_roles: tuple[str, ...] = ("admin",)
    required_operation_types: tuple[str, ...] = ()
    chains: tuple[ApprovalChainDef, ...] = ()
    guards: tuple[ApprovalGuardDef, ...] = ()

    def chain(self, name: str) -> ApprovalChainDef | None:
        for chain in self.chains:
            if chain.name == name:
                return chain
        return None


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NumberingDef:
    prefixes: dict[str, str] = field(default_factory=dict)
    width: int = 6


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerConfigSet:
    """Root configuration artifact."""

    config_id: str
    version: int
    ledger: LedgerSettingsDef = field(default_factory=LedgerSettingsDef)
    settings: tuple[SettingKeyDef, ...] = ()
    approval: ApprovalPolicyDef = field(default_factory=ApprovalPolicyDef)
    numbering: NumberingDef = field(default_factory=NumberingDef)
    checksum: str = ""

    def setting(self, key: str) -> SettingKeyDef | None:
        for setting in self.settings:
            if setting.key == key:
                return setting
        return None
