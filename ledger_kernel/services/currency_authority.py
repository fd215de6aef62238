"""
CurrencyConversionAuthority -- the single source of the canonical exchange rate.

Responsibility:
    Resolves the canonical rate for the tracked currency pair from the
    settings collaborator (through an explicit TTL cache) and converts
    amounts into the base currency.  Every ledger entry freezes the
    ``rate_used`` returned here; historical entries are never re-resolved.

Architecture position:
    Kernel > Services -- process-level leaf collaborator.  Shared by all
    sessions; holds no database session itself.

Invariants enforced:
    - Rate semantics: tracked units per ONE base unit (60 ETB per USD), so
      tracked -> base divides and base -> tracked multiplies.
    - Converted amounts are rounded half-up to 2 places.  Rates are never
      rounded.
    - Float input is rejected; amounts are Decimal or decimal strings.
    - A rate write observed through the settings provider invalidates the
      cache immediately; otherwise a cached rate lives at most one TTL.

Failure modes:
    - ConfigurationMissingError: rate unset, unparseable or non-positive.
    - InvalidCurrencyError: currency outside the canonical pair.
    - InvalidAmountError: float or malformed amount.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from ledger_kernel.db.types import round_money, to_decimal, validate_currency
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.collaborators import SettingsProvider
from ledger_kernel.domain.currency import IDENTITY_RATE, ConversionResult, RateSnapshot
from ledger_kernel.exceptions import ConfigurationMissingError, InvalidCurrencyError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.services.rate_cache import RateCache

logger = get_logger("services.currency_authority")

DEFAULT_BASE_CURRENCY = "USD"
DEFAULT_TRACKED_CURRENCY = "ETB"
DEFAULT_RATE_KEY = "USD_ETB_RATE"
DEFAULT_RATE_CATEGORY = "financial"


class CurrencyConversionAuthority:
    """
    Canonical rate lookup and conversion for one currency pair.

    Contract:
        ``get_rate()`` returns the current canonical rate.  ``convert()``
        returns a ``ConversionResult`` whose ``rate_used`` the caller must
        persist alongside the converted amount.
    """

    def __init__(
        self,
        settings: SettingsProvider,
        base_currency: str = DEFAULT_BASE_CURRENCY,
        tracked_currency: str = DEFAULT_TRACKED_CURRENCY,
        rate_key: str = DEFAULT_RATE_KEY,
        rate_category: str | None = DEFAULT_RATE_CATEGORY,
        cache: RateCache | None = None,
        clock: Clock | None = None,
    ):
        self._settings = settings
        self._base = validate_currency(base_currency)
        self._tracked = validate_currency(tracked_currency)
        self._rate_key = rate_key
        self._rate_category = rate_category
        self._clock = clock or SystemClock()
        self._cache = cache or RateCache(clock=self._clock)

        add_listener = getattr(settings, "add_change_listener", None)
        if add_listener is not None:
            add_listener(self._on_setting_changed)

    @property
    def base_currency(self) -> str:
        return self._base

    @property
    def tracked_currency(self) -> str:
        return self._tracked

    @property
    def _pair(self) -> tuple[str, str]:
        return (self._base, self._tracked)

    def _on_setting_changed(self, key: str, category: str | None) -> None:
        if key == self._rate_key:
            logger.info(
                "exchange_rate_setting_changed",
                extra={"key": key, "category": category},
            )
            self.invalidate()

    def _load_rate(self) -> Decimal:
        raw = self._settings.get_setting(self._rate_key, self._rate_category)
        if raw is None and self._rate_category is not None:
            raw = self._settings.get_setting(self._rate_key, None)
        if raw is None or str(raw).strip() == "":
            logger.error(
                "exchange_rate_missing",
                extra={"key": self._rate_key, "category": self._rate_category},
            )
            raise ConfigurationMissingError(self._rate_key, self._rate_category)

        try:
            rate = Decimal(str(raw).strip())
        except InvalidOperation:
            raise ConfigurationMissingError(
                self._rate_key, self._rate_category, reason=f"unparseable value {raw!r}",
            ) from None
        if not rate.is_finite() or rate <= 0:
            raise ConfigurationMissingError(
                self._rate_key, self._rate_category, reason=f"rate must be positive, got {raw!r}",
            )

        logger.info(
            "exchange_rate_loaded",
            extra={"pair": f"{self._base}/{self._tracked}", "rate": str(rate)},
        )
        return rate

    def get_rate(self) -> Decimal:
        """Canonical rate: tracked units per one base unit."""
        return self._cache.get(self._pair, self._load_rate)

    def snapshot(self) -> RateSnapshot:
        return RateSnapshot(
            base_currency=self._base,
            tracked_currency=self._tracked,
            rate=self.get_rate(),
            fetched_at=self._clock.now(),
        )

    def invalidate(self) -> None:
        self._cache.invalidate(self._pair)

    def convert(
        self,
        amount: Any,
        from_currency: str,
        to_currency: str | None = None,
    ) -> ConversionResult:
        """
        Convert ``amount`` between the currencies of the canonical pair.

        ``to_currency`` defaults to the base currency.  Identity conversions
        use rate 1 and never touch the settings source.
        """
        value = to_decimal(amount)
        source = validate_currency(from_currency)
        target = validate_currency(to_currency) if to_currency else self._base
        now = self._clock.now()

        for currency in (source, target):
            if currency not in self._pair:
                raise InvalidCurrencyError(
                    currency,
                    f"no conversion path; supported currencies are {self._base} and {self._tracked}",
                )

        if source == target:
            return ConversionResult(value, source, value, target, IDENTITY_RATE, now)

        rate = self.get_rate()
        if source == self._tracked:
            converted = round_money(value / rate)
        else:
            converted = round_money(value * rate)

        return ConversionResult(
            original_amount=value,
            from_currency=source,
            converted_amount=converted,
            to_currency=target,
            rate_used=rate,
            timestamp=now,
        )
