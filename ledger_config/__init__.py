"""
ledger_config -- single public entrypoint for ledger configuration.

Responsibility:
    Provides the way to obtain static configuration at runtime through
    ``get_active_config()``: the currency pair, the settings keys and
    their defaults, the approval chains and guards, and display numbering.

Architecture position:
    Configuration.  Sits above ``ledger_kernel`` and below
    ``ledger_services``.  The kernel MUST NEVER import from
    ``ledger_config``; ``ledger_config.bridges`` translates the config set
    into kernel inputs.

Invariants enforced:
    - The returned ``LedgerConfigSet`` has passed full validation.
    - Resolution order: explicit path, then ``LEDGER_CONFIG_PATH``, then
      the packaged ``sets/default/ledger.yaml``.

Failure modes:
    - ``FileNotFoundError`` -- the resolved file does not exist.
    - ``InvalidConfigurationError`` -- validation failed (all errors listed).

Audit relevance:
    Every successful call emits a ``LEDGER_CONFIG_TRACE`` log entry with
    the config id, version and checksum, tying ledger activity to the
    configuration that governed it.
"""

from __future__ import annotations

import os
from pathlib import Path

from ledger_config.loader import load_config
from ledger_config.schema import LedgerConfigSet
from ledger_kernel.logging_config import get_logger

_logger = get_logger("config")

CONFIG_PATH_ENV = "LEDGER_CONFIG_PATH"

# Packaged default configuration
DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default" / "ledger.yaml"


def resolve_config_path(path: Path | str | None = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def get_active_config(path: Path | str | None = None) -> LedgerConfigSet:
    """Load and validate the active configuration set.

    Args:
        path: Override for the configuration file.  Defaults to
            ``$LEDGER_CONFIG_PATH`` or the packaged default set.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        InvalidConfigurationError: If validation fails.
    """
    config_path = resolve_config_path(path)
    config = load_config(config_path)

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(config_path),
            "chain_count": len(config.approval.chains),
            "guard_count": len(config.approval.guards),
        },
    )
    return config


__all__ = [
    "CONFIG_PATH_ENV",
    "DEFAULT_CONFIG_PATH",
    "LedgerConfigSet",
    "get_active_config",
    "resolve_config_path",
]
