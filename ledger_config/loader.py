"""
Configuration Loader (``ledger_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen
``ledger_config.schema`` dataclasses, validating it on the way.  Runtime
callers go through ``ledger_config.get_active_config()``.

Architecture position
---------------------
**Config layer** -- sits above ``ledger_kernel`` (it reuses the kernel's
operation-type catalogue, currency validation and error types) and below
``ledger_services``.

Invariants enforced
-------------------
* Decimals are parsed from strings or integers, never from floats.
* Every problem found is reported at once in a single
  ``InvalidConfigurationError`` (unknown operation types, missing names,
  negative counts or durations, duplicate chain / guard names, dangling
  escalation targets, required operations without an active chain).
* ``compute_checksum`` is deterministic for the same parsed content.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Non-mapping root or invalid content -> ``InvalidConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import (
    ApprovalChainDef,
    ApprovalGuardDef,
    ApprovalPolicyDef,
    LedgerConfigSet,
    LedgerSettingsDef,
    NumberingDef,
    SettingKeyDef,
)
from ledger_kernel.db.types import ISO_4217_CURRENCIES
from ledger_kernel.domain.approval import KNOWN_OPERATION_TYPES
from ledger_kernel.exceptions import InvalidConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML file whose root is a mapping.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        InvalidConfigurationError: if the root is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidConfigurationError(
            [f"root must be a mapping, got {type(data).__name__}"], source=str(path),
        )
    return data


def parse_decimal(value: Any, where: str, errors: list[str]) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, (float, bool)):
        errors.append(f"{where}: write decimals as quoted strings, got {value!r}")
        return None
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        errors.append(f"{where}: not a decimal: {value!r}")
        return None


def _parse_hours(value: Any, where: str, errors: list[str]) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{where}: expected whole hours, got {value!r}")
        return None
    if value < 0:
        errors.append(f"{where}: must not be negative")
        return None
    return value


def _roles(value: Any, where: str, errors: list[str]) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        errors.append(f"{where}: expected a list of roles")
        return ()
    return tuple(str(v) for v in value)


def parse_ledger_settings(data: dict[str, Any], errors: list[str]) -> LedgerSettingsDef:
    defaults = LedgerSettingsDef()
    base = str(data.get("base_currency", defaults.base_currency)).upper()
    tracked = str(data.get("tracked_currency", defaults.tracked_currency)).upper()
    for where, code in (("ledger.base_currency", base), ("ledger.tracked_currency", tracked)):
        if code not in ISO_4217_CURRENCIES:
            errors.append(f"{where}: unknown currency {code!r}")
    if base == tracked:
        errors.append("ledger: base and tracked currency must differ")

    ttl = data.get("rate_cache_ttl_seconds", defaults.rate_cache_ttl_seconds)
    if not isinstance(ttl, int) or isinstance(ttl, bool) or ttl <= 0:
        errors.append("ledger.rate_cache_ttl_seconds: must be a positive integer")
        ttl = defaults.rate_cache_ttl_seconds
    validity = _parse_hours(
        data.get("approval_validity_hours", defaults.approval_validity_hours),
        "ledger.approval_validity_hours", errors,
    )

    return LedgerSettingsDef(
        base_currency=base,
        tracked_currency=tracked,
        rate_key=str(data.get("rate_key", defaults.rate_key)),
        rate_category=data.get("rate_category", defaults.rate_category),
        rate_cache_ttl_seconds=ttl,
        approval_validity_hours=validity if validity is not None else defaults.approval_validity_hours,
    )


def parse_setting_key(data: dict[str, Any], index: int, errors: list[str]) -> SettingKeyDef | None:
    key = data.get("key")
    if not key:
        errors.append(f"settings[{index}]: key is required")
        return None
    critical = bool(data.get("critical", False))
    default = data.get("default")
    if critical and default is not None:
        errors.append(f"settings.{key}: critical settings cannot have a default")
    if isinstance(default, float):
        errors.append(f"settings.{key}: write the default as a quoted string")
    return SettingKeyDef(
        key=str(key),
        category=data.get("category"),
        default=str(default).lower() if isinstance(default, bool) else (
            str(default) if default is not None else None
        ),
        critical=critical,
        description=str(data.get("description", "")),
    )


def _check_operation(name: str, operation_type: Any, errors: list[str]) -> str:
    if not operation_type:
        errors.append(f"{name}: operation_type is required")
        return ""
    if operation_type not in KNOWN_OPERATION_TYPES:
        errors.append(f"{name}: unknown operation type {operation_type!r}")
    return str(operation_type)


def parse_chain(data: dict[str, Any], index: int, errors: list[str]) -> ApprovalChainDef | None:
    name = data.get("name")
    if not name:
        errors.append(f"approval.chains[{index}]: name is required")
        return None
    where = f"chain {name}"
    min_approvers = data.get("min_approvers", 1)
    if not isinstance(min_approvers, int) or isinstance(min_approvers, bool) or min_approvers < 0:
        errors.append(f"{where}: min_approvers must be a non-negative integer")
        min_approvers = 1
    threshold = parse_decimal(data.get("amount_threshold"), f"{where}.amount_threshold", errors)
    if threshold is not None and threshold < 0:
        errors.append(f"{where}: amount_threshold must not be negative")

    return ApprovalChainDef(
        name=str(name),
        operation_type=_check_operation(where, data.get("operation_type"), errors),
        priority=int(data.get("priority", 0)),
        min_approvers=min_approvers,
        require_all_approvers=bool(data.get("require_all_approvers", False)),
        amount_threshold=threshold,
        role_restrictions=_roles(data.get("role_restrictions"), f"{where}.role_restrictions", errors),
        approver_roles=_roles(data.get("approver_roles"), f"{where}.approver_roles", errors),
        exempt_roles=_roles(data.get("exempt_roles"), f"{where}.exempt_roles", errors),
        auto_approve_after_hours=_parse_hours(
            data.get("auto_approve_after_hours"), f"{where}.auto_approve_after_hours", errors,
        ),
        escalate_after_hours=_parse_hours(
            data.get("escalate_after_hours"), f"{where}.escalate_after_hours", errors,
        ),
        escalate_to=data.get("escalate_to"),
        is_active=bool(data.get("is_active", True)),
    )


def parse_guard(data: dict[str, Any], index: int, errors: list[str]) -> ApprovalGuardDef | None:
    name = data.get("name")
    if not name:
        errors.append(f"approval.guards[{index}]: name is required")
        return None
    where = f"guard {name}"
    allow_override = bool(data.get("allow_emergency_override", False))
    override_roles = _roles(data.get("emergency_override_roles"), f"{where}.emergency_override_roles", errors)
    if allow_override and not override_roles:
        errors.append(f"{where}: allow_emergency_override needs emergency_override_roles")

    return ApprovalGuardDef(
        name=str(name),
        operation_type=_check_operation(where, data.get("operation_type"), errors),
        is_enabled=bool(data.get("is_enabled", True)),
        amount_threshold=parse_decimal(data.get("amount_threshold"), f"{where}.amount_threshold", errors),
        role_exceptions=_roles(data.get("role_exceptions"), f"{where}.role_exceptions", errors),
        block_if_no_approver=bool(data.get("block_if_no_approver", False)),
        allow_emergency_override=allow_override,
        emergency_override_roles=override_roles,
        notify_on_bypass=bool(data.get("notify_on_bypass", True)),
        audit_all_attempts=bool(data.get("audit_all_attempts", False)),
    )


def parse_approval_policy(data: dict[str, Any], errors: list[str]) -> ApprovalPolicyDef:
    chains = tuple(
        c for c in (parse_chain(d, i, errors) for i, d in enumerate(data.get("chains") or ()))
        if c is not None
    )
    guards = tuple(
        g for g in (parse_guard(d, i, errors) for i, d in enumerate(data.get("guards") or ()))
        if g is not None
    )
    required = _roles(data.get("required_operation_types"), "approval.required_operation_types", errors)
    for operation_type in required:
        if operation_type not in KNOWN_OPERATION_TYPES:
            errors.append(f"approval.required_operation_types: unknown operation type {operation_type!r}")

    return ApprovalPolicyDef(
        admin_roles=_roles(data.get("admin_roles", ["admin"]), "approval.admin_roles", errors),
        required_operation_types=required,
        chains=chains,
        guards=guards,
    )


def parse_numbering(data: dict[str, Any], errors: list[str]) -> NumberingDef:
    width = data.get("width", 6)
    if not isinstance(width, int) or isinstance(width, bool) or width < 1:
        errors.append("numbering.width: must be a positive integer")
        width = 6
    prefixes = data.get("prefixes") or {}
    if not isinstance(prefixes, dict):
        errors.append("numbering.prefixes: expected a mapping")
        prefixes = {}
    return NumberingDef(prefixes={str(k): str(v) for k, v in prefixes.items()}, width=width)


def validate_policy(policy: ApprovalPolicyDef) -> list[str]:
    """Cross-reference checks that need the whole policy."""
    errors: list[str] = []

    seen: set[str] = set()
    for chain in policy.chains:
        if chain.name in seen:
            errors.append(f"duplicate approval chain name {chain.name!r}")
        seen.add(chain.name)

        if chain.escalate_to is not None:
            target = policy.chain(chain.escalate_to)
            if target is None:
                errors.append(f"chain {chain.name}: escalation target {chain.escalate_to!r} does not exist")
            elif target.name == chain.name:
                errors.append(f"chain {chain.name}: chain cannot escalate to itself")
        if chain.require_all_approvers and not chain.approver_roles:
            errors.append(f"chain {chain.name}: require_all_approvers needs approver_roles")

    guard_names: set[str] = set()
    for guard in policy.guards:
        if guard.name in guard_names:
            errors.append(f"duplicate approval guard name {guard.name!r}")
        guard_names.add(guard.name)

    active_ops = {c.operation_type for c in policy.chains if c.is_active}
    for operation_type in policy.required_operation_types:
        if operation_type not in active_ops:
            errors.append(f"required operation {operation_type!r} has no active approval chain")
    return errors


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 over the raw configuration mapping."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_config(data: dict[str, Any], source: str | None = None) -> LedgerConfigSet:
    """
    Parse and validate a configuration mapping.

    Raises:
        InvalidConfigurationError: with every problem found.
    """
    errors: list[str] = []

    config_id = data.get("config_id")
    if not config_id:
        errors.append("config_id is required")
    version = data.get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        errors.append("version must be a positive integer")
        version = 1

    ledger = parse_ledger_settings(data.get("ledger") or {}, errors)
    settings = tuple(
        s for s in (parse_setting_key(d, i, errors) for i, d in enumerate(data.get("settings") or ()))
        if s is not None
    )
    keys = [s.key for s in settings]
    for key in sorted({k for k in keys if keys.count(k) > 1}):
        errors.append(f"duplicate setting key {key!r}")

    approval = parse_approval_policy(data.get("approval") or {}, errors)
    errors.extend(validate_policy(approval))
    numbering = parse_numbering(data.get("numbering") or {}, errors)

    if errors:
        raise InvalidConfigurationError(errors, source=source)

    return LedgerConfigSet(
        config_id=str(config_id),
        version=version,
        ledger=ledger,
        settings=settings,
        approval=approval,
        numbering=numbering,
        checksum=compute_checksum(data),
    )


def load_config(path: Path | str) -> LedgerConfigSet:
    """Load, parse and validate one configuration file."""
    path = Path(path)
    return parse_config(load_yaml_file(path), source=str(path))
