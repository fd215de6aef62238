"""Structured JSON logging for the ledger kernel.

Every record under the ``ledger_kernel`` hierarchy is one JSON object:
the event name as ``message``, the bound ``LogContext`` fields, and the
``extra={}`` fields of the call.  Amounts and identifiers are rendered as
strings so that nothing is lost to float conversion.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

LOGGER_NAMESPACE = "ledger_kernel"

# Operation-scoped fields, in the order they appear in a record
CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "actor_id",
    "request_id",
    "entry_id",
    "operation_type",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"ledger_log_{name}", default=None) for name in CONTEXT_FIELDS
}


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown LogContext fields: {sorted(unknown)}")


class LogContext:
    """Context-variable holder for the fields of the current business operation.

    Safe across threads and asyncio tasks.  ``correlation_id`` doubles as
    the default audit correlation id: audit entries written while it is
    bound join the same operation.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        """Set fields for the rest of the current context; None leaves a field as is."""
        _check_fields(fields)
        for name, value in fields.items():
            if value is not None:
                _context_vars[name].set(str(value))

    @staticmethod
    def get(name: str) -> str | None:
        return _context_vars[name].get()

    @staticmethod
    def get_correlation_id() -> str | None:
        return _context_vars["correlation_id"].get()

    @staticmethod
    def get_all() -> dict[str, str]:
        """Bound fields only."""
        return {
            name: value
            for name, value in ((n, _context_vars[n].get()) for n in CONTEXT_FIELDS)
            if value is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    def bind(**fields: Any) -> "_BoundContext":
        """Bind fields for a ``with`` block; previous values come back on exit."""
        _check_fields(fields)
        return _BoundContext(fields)


class _BoundContext:

    def __init__(self, fields: dict[str, Any]):
        self._fields = {k: str(v) for k, v in fields.items() if v is not None}
        self._tokens: list[tuple[str, Token]] = []

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            self._tokens.append((name, _context_vars[name].set(value)))
        return LogContext

    def __exit__(self, *exc_info: Any) -> None:
        while self._tokens:
            name, token = self._tokens.pop()
            _context_vars[name].reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    """Fallback encoder for ledger values that json cannot serialise."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    return str(value)


def _error_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # LedgerKernelError subclasses keep their context as attributes
    for name, value in vars(exc).items():
        if not name.startswith("_") and name not in ("args", "code"):
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON line per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }

        for name, value in vars(record).items():
            if name not in _RESERVED_ATTRS:
                payload.setdefault(name, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_error_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_to_json)


def get_logger(name: str) -> logging.Logger:
    """``ledger_kernel.<name>``; configure the namespace once with configure_logging()."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_state_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install the JSON handler on the ledger_kernel namespace.

    Idempotent: later calls leave the first handler in place.
    """
    global _installed_handler
    with _state_lock:
        if _installed_handler is not None:
            return
        installed = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        installed.setFormatter(StructuredFormatter())
        namespace = logging.getLogger(LOGGER_NAMESPACE)
        namespace.setLevel(level)
        namespace.propagate = False
        namespace.addHandler(installed)
        _installed_handler = installed


def reset_logging() -> None:
    """Remove the installed handler. Tests only."""
    global _installed_handler
    with _state_lock:
        namespace = logging.getLogger(LOGGER_NAMESPACE)
        namespace.handlers.clear()
        namespace.setLevel(logging.WARNING)
        _installed_handler = None
