"""
Explicit TTL cache for settings-derived values.

Process-level and shared between sessions, so access is lock-guarded.
Time comes from the injected Clock; an entry whose age has reached the
TTL is never served.  Refetch on expiry is synchronous: the caller that
finds the entry stale loads the fresh value itself.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Generic, TypeVar

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.logging_config import get_logger

logger = get_logger("services.rate_cache")

V = TypeVar("V")

DEFAULT_RATE_TTL_SECONDS = 300


@dataclass(frozen=True)
class _Slot(Generic[V]):
    value: V
    loaded_at: datetime


class ExpiringCache(Generic[V]):
    """Key/value cache with a fixed time-to-live and explicit invalidation."""

    def __init__(self, ttl_seconds: float, clock: Clock | None = None, name: str = "cache"):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._name = name
        self._slots: dict[Hashable, _Slot[V]] = {}
        # Bumped by invalidate(); a load that started before the bump is not cached
        self._generations: dict[Hashable, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _fresh(self, slot: _Slot[V]) -> bool:
        return self._clock.now() - slot.loaded_at < self._ttl

    def peek(self, key: Hashable) -> V | None:
        """Cached value if still fresh, else None.  Never loads."""
        with self._lock:
            slot = self._slots.get(key)
            if slot is not None and self._fresh(slot):
                return slot.value
        return None

    def _generation(self, key: Hashable) -> tuple[int, int]:
        return (self._epoch, self._generations.get(key, 0))

    def get(self, key: Hashable, loader: Callable[[], V]) -> V:
        """Fresh cached value, or the loader's result.

        The loaded value is cached only if no invalidation of ``key`` happened
        while the loader ran; otherwise it is returned to this caller alone
        and the next call loads again.  A loader exception propagates and
        leaves nothing cached.
        """
        with self._lock:
            slot = self._slots.get(key)
            if slot is not None and self._fresh(slot):
                return slot.value
            generation = self._generation(key)

        value = loader()
        with self._lock:
            if self._generation(key) != generation:
                logger.debug("cache_load_discarded", extra={"cache": self._name, "key": str(key)})
                return value
            self._slots[key] = _Slot(value, self._clock.now())
        logger.debug("cache_loaded", extra={"cache": self._name, "key": str(key)})
        return value

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        with self._lock:
            if key is None:
                self._slots.clear()
                self._epoch += 1
            else:
                self._slots.pop(key, None)
                self._generations[key] = self._generations.get(key, 0) + 1
        logger.debug(
            "cache_invalidated",
            extra={"cache": self._name, "key": "*" if key is None else str(key)},
        )


class RateCache(ExpiringCache[Decimal]):
    """Cache for the canonical exchange rate, keyed by currency pair."""

    def __init__(self, ttl_seconds: float = DEFAULT_RATE_TTL_SECONDS, clock: Clock | None = None):
        super().__init__(ttl_seconds, clock=clock, name="rate")
