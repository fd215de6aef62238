"""
Tests for the settings adapters and best-effort alert dispatch.

Verifies:
- InMemorySettings reads by (key, category) and notifies listeners
- Boolean and decimal parsing with defaults for non-critical keys
- dispatch_alert reports delivery without ever raising
"""

from decimal import Decimal

import pytest

from ledger_kernel.domain.collaborators import AlertCategory, AlertSeverity
from ledger_kernel.exceptions import InvalidConfigurationError
from ledger_kernel.services.alerting import LoggingNotificationSink, dispatch_alert
from ledger_kernel.services.settings_service import (
    CAPITAL_LOW_BALANCE_THRESHOLD,
    PREVENT_NEGATIVE_BALANCE,
    InMemorySettings,
    setting_as_bool,
    setting_as_decimal,
)


class TestInMemorySettings:

    def test_category_is_part_of_the_key(self):
        settings = InMemorySettings({("RATE", "financial"): "60"})
        assert settings.get_setting("RATE", "financial") == "60"
        assert settings.get_setting("RATE") is None

    def test_set_stores_strings(self):
        settings = InMemorySettings()
        settings.set_setting("LIMIT", 5)
        assert settings.get_setting("LIMIT") == "5"

    def test_listeners_notified_on_set_and_remove(self):
        settings = InMemorySettings()
        seen = []
        settings.add_change_listener(lambda key, category: seen.append((key, category)))

        settings.set_setting("RATE", "60", category="financial")
        settings.remove_setting("RATE", category="financial")

        assert seen == [("RATE", "financial"), ("RATE", "financial")]
        assert settings.get_setting("RATE", "financial") is None

    def test_listener_registered_once(self):
        settings = InMemorySettings()
        seen = []

        def listener(key, category):
            seen.append(key)

        settings.add_change_listener(listener)
        settings.add_change_listener(listener)
        settings.set_setting("A", "1")

        assert seen == ["A"]


class TestSettingParsing:

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("YES", True), ("on", True),
        ("false", False), ("0", False), ("no", False), (" Off ", False),
    ])
    def test_bool_values(self, raw, expected):
        settings = InMemorySettings({(PREVENT_NEGATIVE_BALANCE, None): raw})
        assert setting_as_bool(settings, PREVENT_NEGATIVE_BALANCE, default=not expected) is expected

    def test_bool_default_when_absent(self):
        assert setting_as_bool(InMemorySettings(), PREVENT_NEGATIVE_BALANCE, default=True) is True

    def test_bool_garbage_rejected(self):
        settings = InMemorySettings({(PREVENT_NEGATIVE_BALANCE, None): "maybe"})
        with pytest.raises(InvalidConfigurationError, match=PREVENT_NEGATIVE_BALANCE):
            setting_as_bool(settings, PREVENT_NEGATIVE_BALANCE, default=True)

    def test_decimal_value_and_default(self):
        settings = InMemorySettings({(CAPITAL_LOW_BALANCE_THRESHOLD, None): "2500.50"})
        assert setting_as_decimal(settings, CAPITAL_LOW_BALANCE_THRESHOLD, Decimal("1")) == Decimal("2500.50")
        assert setting_as_decimal(InMemorySettings(), CAPITAL_LOW_BALANCE_THRESHOLD, Decimal("10000")) == Decimal("10000")

    def test_decimal_garbage_rejected(self):
        settings = InMemorySettings({(CAPITAL_LOW_BALANCE_THRESHOLD, None): "lots"})
        with pytest.raises(InvalidConfigurationError):
            setting_as_decimal(settings, CAPITAL_LOW_BALANCE_THRESHOLD, Decimal("1"))


class TestDispatchAlert:

    def test_delivered_to_sink(self, notification_sink):
        sink = notification_sink
        result = dispatch_alert(
            sink, AlertCategory.LOW_BALANCE, AlertSeverity.WARNING, "capital is low", entity_ref="capital",
        )

        assert result.delivered
        assert result.category == "low_balance"
        assert sink.alerts == [{
            "category": "low_balance",
            "severity": "warning",
            "message": "capital is low",
            "entity_ref": "capital",
        }]

    def test_no_sink_reports_undelivered(self):
        result = dispatch_alert(None, AlertCategory.ESCALATION, AlertSeverity.WARNING, "escalated")
        assert not result.delivered
        assert result.error == "no sink configured"

    def test_sink_failure_never_raises(self, failing_sink, captured_logs):
        result = dispatch_alert(
            failing_sink, AlertCategory.NEGATIVE_BALANCE, AlertSeverity.CRITICAL, "negative",
        )

        assert not result.delivered
        assert "notification channel down" in result.error
        assert any(r["message"] == "alert_delivery_failed" for r in captured_logs())

    def test_logging_sink_writes_structured_record(self, captured_logs):
        sink = LoggingNotificationSink()
        sink.send_alert("emergency_bypass", "critical", "override used", "Purchase:P-1")

        records = [r for r in captured_logs() if r["message"] == "alert"]
        assert records[0]["level"] == "CRITICAL"
        assert records[0]["alert_message"] == "override used"
        assert records[0]["entity_ref"] == "Purchase:P-1"
