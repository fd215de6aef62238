"""
Mixed-currency ledgers.

Verifies:
- ETB entries are converted at the rate in force and keep that rate
- Balances aggregate mixed currencies in the base currency
- Approval thresholds compare in the base currency while the request
  keeps the amount and currency that were asked for
- Reinvestment and withdrawals in the tracked currency
"""

from decimal import Decimal

from ledger_kernel.domain.ledger import EntryType, LedgerKind
from ledger_kernel.services.settings_service import USD_ETB_RATE

RATE_CATEGORY = "financial"


def _capital_in(orchestrator, amount, currency):
    return orchestrator.store.record_entry(LedgerKind.CAPITAL, "capital_in", amount, currency, "owner")


class TestMixedBalances:

    def test_capital_balance_in_base_currency(self, orchestrator):
        _capital_in(orchestrator, "1000", "USD")
        etb = _capital_in(orchestrator, "6000", "ETB")

        balance = orchestrator.capital_balance()

        assert etb.exchange_rate == Decimal("60")
        assert etb.amount_base == Decimal("100.00")
        assert balance.currency == "USD"
        assert balance.balance == Decimal("1100.00")
        assert orchestrator.ledger_summary(LedgerKind.CAPITAL).balance.balance == Decimal("1100.00")

    def test_rate_change_leaves_history_alone(self, orchestrator, settings):
        _capital_in(orchestrator, "6000", "ETB")
        settings.set_setting(USD_ETB_RATE, "50", category=RATE_CATEGORY)
        later = _capital_in(orchestrator, "6000", "ETB")

        assert later.amount_base == Decimal("120.00")
        assert orchestrator.capital_balance().balance == Decimal("220.00")
        rates = [e.exchange_rate for e in orchestrator.list_entries(LedgerKind.CAPITAL).entries]
        assert rates == [Decimal("60"), Decimal("50")]


class TestThresholdsInBaseCurrency:

    def test_below_threshold_after_conversion(self, orchestrator):
        result = orchestrator.record_capital_entry(
            "capital_in", "59940", "ETB", created_by="clerk", requester_role="finance",
        )

        assert result.recorded
        assert result.entry.amount_base == Decimal("999.00")

    def test_above_threshold_after_conversion(self, orchestrator):
        pending = orchestrator.record_capital_entry(
            "capital_in", "61200", "ETB", created_by="clerk", requester_role="finance",
        )

        assert pending.pending
        assert pending.outcome.chain_name == "capital-entry-standard"
        assert pending.request.amount == Decimal("61200")
        assert pending.request.currency == "ETB"

    def test_approved_entry_uses_rate_at_write_time(self, orchestrator, settings):
        pending = orchestrator.record_capital_entry(
            "capital_in", "61200", "ETB", created_by="clerk", requester_role="finance",
        )
        request_id = pending.request.request_id
        orchestrator.decide(request_id, "fin-1", "finance", "approve")
        settings.set_setting(USD_ETB_RATE, "50", category=RATE_CATEGORY)

        result = orchestrator.record_capital_entry(
            "capital_in", "61200", "ETB", created_by="clerk", requester_role="finance",
            approval_request_id=request_id,
        )

        assert result.entry.exchange_rate == Decimal("50")
        assert result.entry.amount_base == Decimal("1224.00")
        assert orchestrator.status(request_id).consumed_at is not None


class TestRevenueInTrackedCurrency:

    def test_etb_reinvestment(self, orchestrator):
        orchestrator.store.record_entry(LedgerKind.REVENUE, "receipt", "60000", "ETB", "cashier")
        pending = orchestrator.reinvest_revenue("18000", "300", "ETB", actor_id="clerk", requester_role="finance")
        assert pending.request.amount == Decimal("18300")
        orchestrator.decide(pending.request.request_id, "adm-1", "admin", "approve")

        result = orchestrator.reinvest_revenue(
            "18000", "300", "ETB", actor_id="clerk", approval_request_id=pending.request.request_id,
        )

        assert [e.entry_type for e in result.entries] == [
            EntryType.REINVEST_OUT, EntryType.TRANSFER_FEE, EntryType.CAPITAL_IN,
        ]
        assert {e.exchange_rate for e in result.entries} == {Decimal("60")}
        balances = orchestrator.revenue_balances()
        assert balances.accounting_balance == Decimal("1000.00")
        assert balances.withdrawable_balance == Decimal("695.00")
        assert orchestrator.capital_balance().balance == Decimal("300.00")

    def test_withdrawal_threshold_in_base_currency(self, orchestrator):
        orchestrator.store.record_entry(LedgerKind.REVENUE, "receipt", "5000", "USD", "cashier")

        small = orchestrator.record_revenue_entry(
            "withdrawal", "90000", "ETB", created_by="owner", requester_role="finance",
        )
        large = orchestrator.record_revenue_entry(
            "withdrawal", "150000", "ETB", created_by="owner", requester_role="finance",
        )

        assert small.recorded
        assert small.entry.amount_base == Decimal("1500.00")
        assert large.pending
        assert large.outcome.chain_name == "revenue-withdrawal"
        assert orchestrator.revenue_balances().withdrawable_balance == Decimal("3500.00")
