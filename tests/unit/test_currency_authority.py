"""
Tests for the CurrencyConversionAuthority and its rate cache.

Verifies:
- Conversions in both directions of the canonical pair (60 ETB = 1 USD)
- Identity conversions never read the settings source
- Missing or invalid rates raise ConfigurationMissingError, never a default
- Category lookup falls back to the uncategorized key
- The cached rate expires after its TTL and drops on a settings change,
  including a change that lands while the rate is being loaded
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.exceptions import (
    ConfigurationMissingError,
    InvalidAmountError,
    InvalidCurrencyError,
)
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_kernel.services.rate_cache import ExpiringCache, RateCache
from ledger_kernel.services.settings_service import USD_ETB_RATE, InMemorySettings


class CountingSettings:
    """Settings source without change notification; counts reads."""

    def __init__(self, values):
        self.values = values
        self.reads = 0

    def get_setting(self, key, category=None):
        self.reads += 1
        return self.values.get((key, category))


class TestConversion:

    def test_tracked_to_base_divides_by_rate(self, currency_authority):
        result = currency_authority.convert(Decimal("600"), "ETB")
        assert result.converted_amount == Decimal("10.00")
        assert result.to_currency == "USD"
        assert result.rate_used == Decimal("60")
        assert result.original_amount == Decimal("600")

    def test_base_to_tracked_multiplies(self, currency_authority):
        result = currency_authority.convert("10", "USD", "ETB")
        assert result.converted_amount == Decimal("600.00")
        assert result.rate_used == Decimal("60")

    def test_result_rounded_to_cents(self, currency_authority):
        assert currency_authority.convert("100", "ETB").converted_amount == Decimal("1.67")

    def test_timestamp_from_clock(self, currency_authority, deterministic_clock):
        assert currency_authority.convert("1", "ETB").timestamp == deterministic_clock.now()

    def test_identity_conversion_does_not_read_settings(self):
        settings = CountingSettings({})
        authority = CurrencyConversionAuthority(settings, clock=DeterministicClock())

        result = authority.convert("12.50", "USD")

        assert result.is_identity
        assert result.converted_amount == Decimal("12.50")
        assert result.rate_used == Decimal("1")
        assert settings.reads == 0

    def test_currency_outside_pair_rejected(self, currency_authority):
        with pytest.raises(InvalidCurrencyError, match="no conversion path"):
            currency_authority.convert("10", "EUR")

    def test_invalid_code_rejected(self, currency_authority):
        with pytest.raises(InvalidCurrencyError):
            currency_authority.convert("10", "XYZ")

    def test_float_amount_rejected(self, currency_authority):
        with pytest.raises(InvalidAmountError):
            currency_authority.convert(10.5, "ETB")


class TestRateLookup:

    def test_missing_rate_is_an_error(self):
        authority = CurrencyConversionAuthority(InMemorySettings(), clock=DeterministicClock())
        with pytest.raises(ConfigurationMissingError) as exc_info:
            authority.get_rate()
        assert USD_ETB_RATE in str(exc_info.value)

    def test_missing_rate_blocks_conversion(self):
        authority = CurrencyConversionAuthority(InMemorySettings(), clock=DeterministicClock())
        with pytest.raises(ConfigurationMissingError):
            authority.convert("600", "ETB")

    @pytest.mark.parametrize("raw", ["abc", "0", "-5", "  "])
    def test_invalid_rate_is_an_error(self, raw):
        settings = InMemorySettings({(USD_ETB_RATE, "financial"): raw})
        authority = CurrencyConversionAuthority(settings, clock=DeterministicClock())
        with pytest.raises(ConfigurationMissingError):
            authority.get_rate()

    def test_falls_back_to_uncategorized_key(self):
        settings = InMemorySettings({(USD_ETB_RATE, None): "55.5"})
        authority = CurrencyConversionAuthority(settings, clock=DeterministicClock())
        assert authority.get_rate() == Decimal("55.5")

    def test_category_wins_over_uncategorized(self):
        settings = InMemorySettings({
            (USD_ETB_RATE, None): "50",
            (USD_ETB_RATE, "financial"): "60",
        })
        authority = CurrencyConversionAuthority(settings, clock=DeterministicClock())
        assert authority.get_rate() == Decimal("60")

    def test_snapshot(self, currency_authority, deterministic_clock):
        snapshot = currency_authority.snapshot()
        assert snapshot.base_currency == "USD"
        assert snapshot.tracked_currency == "ETB"
        assert snapshot.rate == Decimal("60")
        assert snapshot.fetched_at == deterministic_clock.now()

    def test_rate_load_is_logged(self, currency_authority, captured_logs):
        currency_authority.get_rate()
        loaded = [r for r in captured_logs() if r["message"] == "exchange_rate_loaded"]
        assert loaded and loaded[0]["rate"] == "60"


class TestRateCaching:

    def test_rate_cached_within_ttl(self):
        clock = DeterministicClock()
        settings = CountingSettings({(USD_ETB_RATE, "financial"): "60"})
        authority = CurrencyConversionAuthority(settings, clock=clock)

        authority.get_rate()
        clock.advance(299)
        authority.get_rate()

        assert settings.reads == 1

    def test_rate_reloaded_after_ttl(self):
        clock = DeterministicClock()
        settings = CountingSettings({(USD_ETB_RATE, "financial"): "60"})
        authority = CurrencyConversionAuthority(settings, clock=clock)

        assert authority.get_rate() == Decimal("60")
        settings.values[(USD_ETB_RATE, "financial")] = "62"
        assert authority.get_rate() == Decimal("60")

        clock.advance(300)
        assert authority.get_rate() == Decimal("62")

    def test_settings_change_invalidates_immediately(self, settings, currency_authority):
        assert currency_authority.get_rate() == Decimal("60")

        settings.set_setting(USD_ETB_RATE, "62", category="financial")

        assert currency_authority.get_rate() == Decimal("62")

    def test_unrelated_setting_change_keeps_cache(self, settings, currency_authority):
        currency_authority.get_rate()
        settings.set_setting("PREVENT_NEGATIVE_BALANCE", "false")
        assert currency_authority._cache.peek(("USD", "ETB")) == Decimal("60")

    def test_rate_written_during_load_is_not_masked(self):
        class WriteDuringRead(InMemorySettings):
            """Rate changes between the read and the cache fill."""

            def __init__(self, values):
                super().__init__(values)
                self.pending_write = "62"

            def get_setting(self, key, category=None):
                value = super().get_setting(key, category)
                if self.pending_write is not None:
                    new_rate, self.pending_write = self.pending_write, None
                    self.set_setting(USD_ETB_RATE, new_rate, category="financial")
                return value

        settings = WriteDuringRead({(USD_ETB_RATE, "financial"): "60"})
        authority = CurrencyConversionAuthority(settings, clock=DeterministicClock())

        assert authority.get_rate() == Decimal("60")
        assert authority.get_rate() == Decimal("62")

    def test_explicit_invalidate(self):
        settings = CountingSettings({(USD_ETB_RATE, "financial"): "60"})
        authority = CurrencyConversionAuthority(settings, clock=DeterministicClock())
        authority.get_rate()
        authority.invalidate()
        authority.get_rate()
        assert settings.reads == 2


class TestExpiringCache:

    def test_loader_result_cached(self):
        cache = ExpiringCache(ttl_seconds=10, clock=DeterministicClock())
        calls = []
        assert cache.get("k", lambda: calls.append(1) or "v") == "v"
        assert cache.get("k", lambda: calls.append(1) or "w") == "v"
        assert len(calls) == 1

    def test_peek_never_loads(self):
        cache = ExpiringCache(ttl_seconds=10, clock=DeterministicClock())
        assert cache.peek("k") is None

    def test_expired_slot_not_returned(self):
        clock = DeterministicClock()
        cache = ExpiringCache(ttl_seconds=10, clock=clock)
        cache.get("k", lambda: "v")
        clock.advance(10)
        assert cache.peek("k") is None

    def test_loader_failure_caches_nothing(self):
        cache = ExpiringCache(ttl_seconds=10, clock=DeterministicClock())

        def boom():
            raise ConfigurationMissingError(USD_ETB_RATE)

        with pytest.raises(ConfigurationMissingError):
            cache.get("k", boom)
        assert cache.peek("k") is None

    def test_invalidate_all(self):
        cache = ExpiringCache(ttl_seconds=10, clock=DeterministicClock())
        cache.get("a", lambda: 1)
        cache.get("b", lambda: 2)
        cache.invalidate()
        assert cache.peek("a") is None and cache.peek("b") is None

    def test_invalidation_during_load_discards_result(self):
        cache = ExpiringCache(ttl_seconds=10, clock=DeterministicClock())

        def load_then_invalidate():
            cache.invalidate("k")
            return "old"

        assert cache.get("k", load_then_invalidate) == "old"
        assert cache.peek("k") is None
        assert cache.get("k", lambda: "new") == "new"

    def test_other_key_invalidation_keeps_result(self):
        cache = ExpiringCache(ttl_seconds=10, clock=DeterministicClock())

        def load_and_touch_other():
            cache.invalidate("other")
            return "v"

        cache.get("k", load_and_touch_other)
        assert cache.peek("k") == "v"

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValueError):
            ExpiringCache(ttl_seconds=0)

    def test_rate_cache_default_ttl(self):
        assert RateCache().ttl == timedelta(minutes=5)
