"""
LedgerStore against a real database.

Verifies:
- Entries get a per-ledger seq, a display number and a frozen rate
- Negative-balance prevention rejects the write and leaves no trace
- Locking a ledger takes its counter row without using up a number
- Reverse / reclass corrections and their refusal rules
- The dual revenue view and as-of balances
- mark_validated is idempotent; reconcile_allocations is explicit and audited
- Balance alerts after every mutation
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.domain.ledger import EntryType, LedgerKind
from ledger_kernel.exceptions import (
    AllocationMismatchError,
    ConfigurationMissingError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidCorrectionError,
    InvalidCurrencyError,
    InvalidEntryTypeError,
    LedgerEntryNotFoundError,
)
from ledger_kernel.models.audit_log import AuditAction
from ledger_kernel.models.ledger_entry import LedgerAllocationModel
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_kernel.services.ledger_store import RECONCILIATION_TARGET, LedgerStore
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.settings_service import (
    CAPITAL_LOW_BALANCE_THRESHOLD,
    PREVENT_NEGATIVE_BALANCE,
    USD_ETB_RATE,
    InMemorySettings,
)

ACTOR = "test-operator"


class TestRecording:

    def test_first_capital_entry(self, ledger_store, deterministic_clock):
        entry = ledger_store.record_entry(
            LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "1000.00", "USD", ACTOR, reference="INV-1",
        )

        assert entry.seq == 1
        assert entry.entry_number == "CE000001"
        assert entry.exchange_rate == Decimal("1")
        assert entry.amount_base == Decimal("1000.00")
        assert entry.base_currency == "USD"
        assert entry.entry_date == deterministic_clock.now()
        assert not entry.validated
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("1000.00")

    def test_ledgers_number_independently(self, fund_ledger):
        capital = fund_ledger("100")
        revenue = fund_ledger("50", ledger=LedgerKind.REVENUE)
        second = fund_ledger("100")

        assert (capital.seq, second.seq) == (1, 2)
        assert revenue.seq == 1
        assert revenue.entry_number == "RV000001"
        assert second.entry_number == "CE000002"

    def test_string_ledger_and_type_accepted(self, ledger_store):
        entry = ledger_store.record_entry("revenue", "receipt", "10", "usd", ACTOR)
        assert entry.ledger is LedgerKind.REVENUE
        assert entry.currency == "USD"

    def test_allocations_persisted_in_order(self, ledger_store):
        entry = ledger_store.record_entry(
            LedgerKind.REVENUE, EntryType.RECEIPT, "100", "USD", ACTOR,
            allocations=[("order-1", "60"), {"target_ref": "order-2", "amount": "39.99"}],
        )

        assert [a.target_ref for a in entry.allocations] == ["order-1", "order-2"]
        assert entry.allocated_total == Decimal("99.99")
        assert ledger_store.get_entry(entry.entry_id).allocations == entry.allocations

    def test_unknown_entry(self, ledger_store):
        with pytest.raises(LedgerEntryNotFoundError):
            ledger_store.get_entry(uuid4())


class TestInputValidation:

    @pytest.mark.parametrize("amount", ["0", "-5", 0])
    def test_non_positive_amount(self, ledger_store, amount):
        with pytest.raises(InvalidAmountError):
            ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, amount, "USD", ACTOR)

    def test_float_amount(self, ledger_store):
        with pytest.raises(InvalidAmountError):
            ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, 10.5, "USD", ACTOR)

    def test_type_from_the_other_ledger(self, ledger_store):
        with pytest.raises(InvalidEntryTypeError):
            ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.RECEIPT, "10", "USD", ACTOR)

    def test_unknown_ledger(self, ledger_store):
        with pytest.raises(InvalidEntryTypeError):
            ledger_store.record_entry("savings", "capital_in", "10", "USD", ACTOR)

    @pytest.mark.parametrize("currency", ["EUR", "XYZ"])
    def test_unsupported_currency(self, ledger_store, currency):
        with pytest.raises(InvalidCurrencyError):
            ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "10", currency, ACTOR)
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).entry_count == 0

    def test_allocation_mismatch_leaves_nothing(self, ledger_store):
        with pytest.raises(AllocationMismatchError):
            ledger_store.record_entry(
                LedgerKind.REVENUE, EntryType.RECEIPT, "100", "USD", ACTOR,
                allocations=[("order-1", "99.98")],
            )
        assert ledger_store.compute_balance(LedgerKind.REVENUE).entry_count == 0


class TestFrozenRate:

    def test_tracked_currency_converted_at_creation(self, ledger_store):
        entry = ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "600", "ETB", ACTOR)

        assert entry.amount == Decimal("600")
        assert entry.currency == "ETB"
        assert entry.exchange_rate == Decimal("60")
        assert entry.amount_base == Decimal("10.00")

    def test_rate_change_does_not_touch_existing_entries(self, ledger_store, settings):
        first = ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "600", "ETB", ACTOR)

        settings.set_setting(USD_ETB_RATE, "62", category="financial")
        second = ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "620", "ETB", ACTOR)

        assert second.exchange_rate == Decimal("62")
        assert second.amount_base == Decimal("10.00")
        assert ledger_store.get_entry(first.entry_id).exchange_rate == Decimal("60")
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("20.00")

    def test_reversal_uses_the_original_rate(self, ledger_store, settings):
        original = ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "600", "ETB", ACTOR)
        settings.set_setting(USD_ETB_RATE, "75", category="financial")

        reversal = ledger_store.reverse_entry(original.entry_id, ACTOR)

        assert reversal.exchange_rate == Decimal("60")
        assert reversal.amount_base == Decimal("10.00")
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("0")

    def test_missing_rate_blocks_only_tracked_currency(self, session, deterministic_clock):
        settings = InMemorySettings()
        store = LedgerStore(
            session,
            CurrencyConversionAuthority(settings, clock=deterministic_clock),
            settings,
            clock=deterministic_clock,
        )

        with pytest.raises(ConfigurationMissingError):
            store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "600", "ETB", ACTOR)

        entry = store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "10", "USD", ACTOR)
        assert entry.seq == 1


class TestNegativeBalance:

    def test_outflow_beyond_balance_rejected(self, ledger_store, fund_ledger):
        fund_ledger("1000")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_OUT, "1200", "USD", ACTOR)

        assert exc_info.value.balance == Decimal("1000")
        assert exc_info.value.required == Decimal("1200")
        assert exc_info.value.shortfall == Decimal("200")
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("1000")

    def test_rejected_write_does_not_consume_a_number(self, ledger_store, fund_ledger):
        fund_ledger("1000")
        with pytest.raises(InsufficientBalanceError):
            ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_OUT, "1200", "USD", ACTOR)

        entry = ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_OUT, "200", "USD", ACTOR)

        assert entry.seq == 2
        assert entry.entry_number == "CE000002"

    def test_exact_balance_may_be_spent(self, ledger_store, fund_ledger):
        fund_ledger("1000")
        ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_OUT, "1000", "USD", ACTOR)
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("0")

    def test_reversal_of_inflow_cannot_overdraw(self, ledger_store, fund_ledger):
        inflow = fund_ledger("500")
        ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_OUT, "400", "USD", ACTOR)

        with pytest.raises(InsufficientBalanceError):
            ledger_store.reverse_entry(inflow.entry_id, ACTOR)

    def test_withdrawal_limited_to_withdrawable(self, ledger_store, fund_ledger):
        fund_ledger("500", ledger=LedgerKind.REVENUE)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger_store.record_entry(LedgerKind.REVENUE, EntryType.WITHDRAWAL, "700", "USD", ACTOR)
        assert exc_info.value.ledger == "revenue"

    def test_switch_off_allows_negative_and_alerts(
        self, ledger_store, fund_ledger, settings, notification_sink, captured_logs,
    ):
        settings.set_setting(PREVENT_NEGATIVE_BALANCE, "false")
        fund_ledger("1000")

        ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_OUT, "1200", "USD", ACTOR)

        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("-200")
        negative = notification_sink.of_category("negative_balance")
        assert negative and negative[-1]["severity"] == "critical"
        assert any(r["message"] == "ledger_negative_balance_allowed" for r in captured_logs())


class TestLedgerLock:

    def test_lock_does_not_allocate_a_number(self, ledger_store, session):
        sequences = SequenceService(session)
        ledger_store.lock_ledger(LedgerKind.CAPITAL)

        assert sequences.lock(SequenceService.ledger_sequence("capital")) == 0
        entry = ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "10", "USD", ACTOR)
        assert entry.seq == 1

    def test_lock_reports_current_value(self, ledger_store, fund_ledger, session):
        fund_ledger("10", ledger=LedgerKind.REVENUE)
        fund_ledger("10", ledger=LedgerKind.REVENUE)

        assert SequenceService(session).lock(SequenceService.ledger_sequence("revenue")) == 2


class TestCorrections:

    def test_reverse_restores_balance_and_inherits_reference(self, ledger_store, fund_ledger):
        fund_ledger("1000")
        original = fund_ledger("500", reference="INV-7")

        reversal = ledger_store.reverse_entry(original.entry_id, ACTOR)

        assert reversal.entry_type is EntryType.REVERSE
        assert reversal.corrects_entry_id == original.entry_id
        assert reversal.amount == Decimal("500")
        assert reversal.reference == "INV-7"
        assert reversal.description == f"Reversal of {original.entry_number}"
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("1000")

    def test_partial_reclass_then_reverse_remainder(self, ledger_store, fund_ledger):
        original = fund_ledger("500")

        ledger_store.reclassify_entry(original.entry_id, "200", ACTOR)
        assert ledger_store.uncorrected_remainder(original.entry_id) == Decimal("300")

        reversal = ledger_store.reverse_entry(original.entry_id, ACTOR)
        assert reversal.amount == Decimal("300")
        assert ledger_store.uncorrected_remainder(original.entry_id) == Decimal("0")
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("0")

    def test_fully_corrected_entry_refused(self, ledger_store, fund_ledger):
        fund_ledger("1000")
        original = fund_ledger("500")
        ledger_store.reverse_entry(original.entry_id, ACTOR)

        with pytest.raises(InvalidCorrectionError, match="fully corrected"):
            ledger_store.record_entry(
                LedgerKind.CAPITAL, EntryType.REVERSE, "500", "USD", ACTOR,
                corrects_entry_id=original.entry_id,
            )

    def test_reverse_must_take_the_whole_remainder(self, ledger_store, fund_ledger):
        original = fund_ledger("500")
        with pytest.raises(InvalidCorrectionError, match="must equal"):
            ledger_store.record_entry(
                LedgerKind.CAPITAL, EntryType.REVERSE, "100", "USD", ACTOR,
                corrects_entry_id=original.entry_id,
            )

    def test_reclass_cannot_exceed_remainder(self, ledger_store, fund_ledger):
        original = fund_ledger("500")
        with pytest.raises(InvalidCorrectionError, match="exceeds"):
            ledger_store.reclassify_entry(original.entry_id, "600", ACTOR)

    def test_correction_of_a_correction_refused(self, ledger_store, fund_ledger):
        original = fund_ledger("500")
        reclass = ledger_store.reclassify_entry(original.entry_id, "200", ACTOR)

        with pytest.raises(InvalidCorrectionError, match="cannot itself be corrected"):
            ledger_store.reverse_entry(reclass.entry_id, ACTOR)

    def test_correction_on_another_ledger_refused(self, ledger_store, fund_ledger):
        original = fund_ledger("500")
        with pytest.raises(InvalidCorrectionError, match="capital ledger"):
            ledger_store.record_entry(
                LedgerKind.REVENUE, EntryType.REVERSE, "500", "USD", ACTOR,
                corrects_entry_id=original.entry_id,
            )

    def test_correction_currency_must_match(self, ledger_store, fund_ledger):
        original = fund_ledger("500")
        with pytest.raises(InvalidCorrectionError, match="differs"):
            ledger_store.record_entry(
                LedgerKind.CAPITAL, EntryType.RECLASS, "10", "ETB", ACTOR,
                corrects_entry_id=original.entry_id,
            )

    def test_correction_needs_an_existing_original(self, ledger_store):
        with pytest.raises(InvalidCorrectionError, match="must reference"):
            ledger_store.record_entry(LedgerKind.CAPITAL, EntryType.RECLASS, "10", "USD", ACTOR)
        with pytest.raises(InvalidCorrectionError, match="does not exist"):
            ledger_store.record_entry(
                LedgerKind.CAPITAL, EntryType.RECLASS, "10", "USD", ACTOR, corrects_entry_id=uuid4(),
            )

    def test_ordinary_entry_cannot_point_at_another(self, ledger_store, fund_ledger):
        original = fund_ledger("500")
        with pytest.raises(InvalidCorrectionError):
            ledger_store.record_entry(
                LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "10", "USD", ACTOR,
                corrects_entry_id=original.entry_id,
            )

    def test_correction_audited_with_its_own_action(self, ledger_store, fund_ledger, auditor):
        original = fund_ledger("500")
        reclass = ledger_store.reclassify_entry(original.entry_id, "20", ACTOR)

        assert auditor.get_trace("LedgerEntry", reclass.entry_id).actions == (AuditAction.RECLASSIFY,)


class TestBalances:

    def test_dual_revenue_view(self, ledger_store, fund_ledger):
        fund_ledger("1000", ledger=LedgerKind.REVENUE)
        ledger_store.record_entry(LedgerKind.REVENUE, EntryType.REFUND, "100", "USD", ACTOR)
        ledger_store.record_entry(LedgerKind.REVENUE, EntryType.WITHDRAWAL, "300", "USD", ACTOR)

        balances = ledger_store.revenue_balances()

        assert balances.accounting_balance == Decimal("900")
        assert balances.withdrawable_balance == Decimal("600")
        assert ledger_store.compute_balance(LedgerKind.REVENUE).balance == Decimal("600")

    def test_as_of_excludes_later_entries(self, ledger_store, fund_ledger, deterministic_clock):
        fund_ledger("100")
        cutoff = deterministic_clock.now()
        deterministic_clock.advance(3600)
        fund_ledger("50")

        assert ledger_store.compute_balance(LedgerKind.CAPITAL, as_of=cutoff).balance == Decimal("100")
        assert ledger_store.compute_balance(LedgerKind.CAPITAL).balance == Decimal("150")

    def test_create_audit_carries_balance_movement(self, fund_ledger, auditor):
        fund_ledger("250")
        entry = fund_ledger("100", correlation_id="op-42")

        trace = auditor.get_trace("LedgerEntry", entry.entry_id)
        context = trace.entries[0].business_context

        assert trace.actions == (AuditAction.CREATE,)
        assert trace.entries[0].correlation_id == "op-42"
        assert context.balance_before == Decimal("250")
        assert context.balance_after == Decimal("350")


class TestValidation:

    def test_mark_validated_is_idempotent(self, ledger_store, fund_ledger, deterministic_clock, auditor):
        entry = fund_ledger("100")
        deterministic_clock.advance(60)
        first = ledger_store.mark_validated(entry.entry_id, "auditor-1")
        validated_at = deterministic_clock.now()

        deterministic_clock.advance(60)
        second = ledger_store.mark_validated(entry.entry_id, "auditor-2")

        assert first.validated and second.validated
        assert second.validated_by == "auditor-1"
        assert second.validated_at == validated_at
        assert auditor.get_trace("LedgerEntry", entry.entry_id).actions == (
            AuditAction.CREATE, AuditAction.VALIDATE,
        )

    def test_reconcile_clean_entry_is_a_no_op(self, ledger_store):
        entry = ledger_store.record_entry(
            LedgerKind.REVENUE, EntryType.RECEIPT, "100", "USD", ACTOR, allocations=[("order-1", "100")],
        )
        assert ledger_store.reconcile_allocations(entry.entry_id, ACTOR) is None

    def test_mismatched_allocations_block_validation_until_reconciled(
        self, session, ledger_store, deterministic_clock, auditor,
    ):
        entry = ledger_store.record_entry(
            LedgerKind.REVENUE, EntryType.RECEIPT, "100", "USD", ACTOR,
            allocations=[("order-1", "60"), ("order-2", "40")],
        )
        # A slice added outside the store, e.g. by a legacy import
        session.add(LedgerAllocationModel(
            entry_id=entry.entry_id,
            position=2,
            target_ref="order-3",
            amount=Decimal("30"),
            is_adjustment=False,
            created_at=deterministic_clock.now(),
            created_by="legacy-import",
        ))
        session.flush()
        session.expire_all()

        with pytest.raises(AllocationMismatchError):
            ledger_store.mark_validated(entry.entry_id, "auditor-1")

        corrected = ledger_store.reconcile_allocations(entry.entry_id, "auditor-1")

        adjustment = corrected.allocations[-1]
        assert adjustment.target_ref == RECONCILIATION_TARGET
        assert adjustment.is_adjustment
        assert adjustment.amount == Decimal("-30")
        assert corrected.allocated_total == Decimal("100")
        assert ledger_store.mark_validated(entry.entry_id, "auditor-1").validated

        actions = auditor.get_trace("LedgerEntry", entry.entry_id).actions
        assert actions == (AuditAction.CREATE, AuditAction.AUTO_CORRECT, AuditAction.VALIDATE)


class TestBalanceAlerts:

    def test_low_capital_is_a_warning(self, fund_ledger, notification_sink):
        fund_ledger("6000")
        low = notification_sink.of_category("low_balance")
        assert low[-1]["severity"] == "warning"
        assert low[-1]["entity_ref"] == "capital"

    def test_below_half_threshold_is_critical(self, fund_ledger, notification_sink):
        fund_ledger("1000")
        assert notification_sink.of_category("low_balance")[-1]["severity"] == "critical"

    def test_threshold_from_settings(self, fund_ledger, settings, notification_sink):
        settings.set_setting(CAPITAL_LOW_BALANCE_THRESHOLD, "500")
        fund_ledger("1000")
        assert notification_sink.of_category("low_balance") == []

    def test_healthy_capital_raises_nothing(self, fund_ledger, notification_sink):
        fund_ledger("20000")
        assert notification_sink.alerts == []

    def test_revenue_has_no_low_balance_alert(self, fund_ledger, notification_sink):
        fund_ledger("10", ledger=LedgerKind.REVENUE)
        assert notification_sink.of_category("low_balance") == []

    def test_alert_failure_never_fails_the_write(self, session, settings, failing_sink):
        clock = DeterministicClock()
        store = LedgerStore(
            session,
            CurrencyConversionAuthority(settings, clock=clock),
            settings,
            clock=clock,
            notification_sink=failing_sink,
        )
        entry = store.record_entry(LedgerKind.CAPITAL, EntryType.CAPITAL_IN, "10", "USD", ACTOR)
        assert store.get_entry(entry.entry_id).amount == Decimal("10")


class TestLedgerSelector:

    def test_list_entries_windowed(self, session, fund_ledger, deterministic_clock):
        fund_ledger("100")
        start = deterministic_clock.now() + timedelta(seconds=1)
        deterministic_clock.advance(60)
        fund_ledger("200")
        fund_ledger("300")

        page = LedgerSelector(session).list_entries("capital", start=start, limit=1)

        assert page.total == 2
        assert [e.amount for e in page.entries] == [Decimal("200")]
        assert page.has_more

    def test_lookups_by_reference_and_correlation(self, session, fund_ledger):
        fund_ledger("100", reference="PO-9", correlation_id="op-1")
        fund_ledger("40", ledger=LedgerKind.REVENUE, reference="PO-9", correlation_id="op-1")
        fund_ledger("1", reference="PO-10")

        selector = LedgerSelector(session)
        assert len(selector.get_by_reference("PO-9")) == 2
        assert len(selector.get_by_reference("PO-9", ledger="revenue")) == 1
        assert len(selector.get_by_correlation("op-1")) == 2

    def test_summary(self, session, ledger_store, fund_ledger, deterministic_clock):
        entry = fund_ledger("100")
        fund_ledger("50")
        ledger_store.mark_validated(entry.entry_id, "auditor-1")

        summary = LedgerSelector(session).summary("capital")

        assert summary.balance.balance == Decimal("150")
        assert summary.unvalidated_count == 1
        assert summary.last_entry_at == deterministic_clock.now()
