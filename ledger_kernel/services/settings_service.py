"""
Runtime settings adapters.

Two implementations of the ``SettingsProvider`` collaborator:

* ``InMemorySettings`` -- process-local dictionary, used by tests and by
  deployments that inject values from the environment.
* ``SettingsService`` -- the ``settings`` table.  Each read and write runs
  in its own short transaction from the session factory, so it can be
  shared process-wide next to the currency authority.  Writes are audited.

Both notify change listeners after a write becomes visible; the currency
authority uses this to drop its cached rate.

Parsing helpers (``setting_as_bool`` / ``setting_as_decimal``) apply the
defaults for non-critical keys.
"""

from __future__ import annotations

import threading
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ledger_kernel.domain.business_context import ConfigurationChangeContext
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.collaborators import SettingChangeListener, SettingsProvider
from ledger_kernel.exceptions import InvalidConfigurationError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.audit_log import AuditAction
from ledger_kernel.models.setting import SettingModel
from ledger_kernel.services.auditor_service import AuditorService

logger = get_logger("services.settings")

# Well-known keys
PREVENT_NEGATIVE_BALANCE = "PREVENT_NEGATIVE_BALANCE"
CAPITAL_LOW_BALANCE_THRESHOLD = "CAPITAL_LOW_BALANCE_THRESHOLD"
USD_ETB_RATE = "USD_ETB_RATE"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def setting_as_bool(
    settings: SettingsProvider,
    key: str,
    default: bool,
    category: str | None = None,
) -> bool:
    raw = settings.get_setting(key, category)
    if raw is None:
        return default
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise InvalidConfigurationError([f"{key}: expected a boolean, got {raw!r}"], source="settings")


def setting_as_decimal(
    settings: SettingsProvider,
    key: str,
    default: Decimal,
    category: str | None = None,
) -> Decimal:
    raw = settings.get_setting(key, category)
    if raw is None:
        return default
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation:
        raise InvalidConfigurationError(
            [f"{key}: expected a decimal, got {raw!r}"], source="settings",
        ) from None


class _ListenerMixin:
    def __init__(self) -> None:
        self._listeners: list[SettingChangeListener] = []
        self._listener_lock = threading.Lock()

    def add_change_listener(self, listener: SettingChangeListener) -> None:
        with self._listener_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def _notify(self, key: str, category: str | None) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(key, category)


class InMemorySettings(_ListenerMixin):
    """Dictionary-backed settings provider."""

    def __init__(self, values: dict[tuple[str, str | None], str] | None = None):
        super().__init__()
        self._values: dict[tuple[str, str | None], str] = dict(values or {})
        self._lock = threading.Lock()

    def get_setting(self, key: str, category: str | None = None) -> str | None:
        with self._lock:
            return self._values.get((key, category))

    def set_setting(self, key: str, value: str, category: str | None = None) -> None:
        with self._lock:
            self._values[(key, category)] = str(value)
        logger.info("setting_changed", extra={"key": key, "category": category})
        self._notify(key, category)

    def remove_setting(self, key: str, category: str | None = None) -> None:
        with self._lock:
            self._values.pop((key, category), None)
        self._notify(key, category)


class SettingsService(_ListenerMixin):
    """
    ``settings`` table adapter.

    Contract:
        ``get_setting`` reads the committed value.  ``set_setting`` upserts,
        records a ``setting_change`` audit entry in the same transaction,
        commits, then notifies listeners.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        super().__init__()
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def get_setting(self, key: str, category: str | None = None) -> str | None:
        with self._session_factory() as session:
            return session.execute(
                select(SettingModel.value).where(
                    SettingModel.key == key,
                    SettingModel.category.is_(None) if category is None
                    else SettingModel.category == category,
                )
            ).scalar_one_or_none()

    def set_setting(
        self,
        key: str,
        value: str,
        category: str | None = None,
        updated_by: str = "system",
        description: str | None = None,
    ) -> None:
        with self._session_factory() as session, session.begin():
            row = session.execute(
                select(SettingModel)
                .where(
                    SettingModel.key == key,
                    SettingModel.category.is_(None) if category is None
                    else SettingModel.category == category,
                )
                .with_for_update()
            ).scalar_one_or_none()

            before = {"value": row.value} if row is not None else None
            now = self._clock.now()
            if row is None:
                row = SettingModel(
                    key=key,
                    category=category,
                    value=str(value),
                    description=description or "",
                    updated_by=updated_by,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.value = str(value)
                row.updated_by = updated_by
                row.updated_at = now
                if description is not None:
                    row.description = description
            session.flush()

            AuditorService(session, self._clock).record(
                action=AuditAction.SETTING_CHANGE,
                entity_type="Setting",
                entity_id=f"{category}.{key}" if category else key,
                actor_id=updated_by,
                before=before,
                after={"value": str(value)},
                business_context=ConfigurationChangeContext(
                    subject=key, change="set", category=category,
                ),
            )

        logger.info(
            "setting_changed",
            extra={"key": key, "category": category, "updated_by": updated_by},
        )
        self._notify(key, category)
