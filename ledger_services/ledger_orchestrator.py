"""
ledger_services.ledger_orchestrator -- Approval-gated ledger operations.

Responsibility:
    Composes the kernel services for one session and exposes the business
    call contracts that need more than one of them: a capital entry that
    must pass the approval gate, a purchase settlement that consumes its
    approval, and the revenue reinvestment that touches both ledgers.

Architecture position:
    Services -- stateful orchestration over the kernel.  This is the only
    place where LedgerStore, ApprovalEngine, ApprovalPolicyRegistry and
    AuditorService are constructed together.  Process-level collaborators
    (currency authority, settings, notification sink, clock, approver
    directory) are injected; per-session services are built here.

Invariants enforced:
    - Single-instance lifecycle: one auditor, store, registry and engine
      per orchestrator, all sharing the same Session and Clock.
    - One correlation id per business operation: approval consumption and
      the ledger entries it authorizes are written under the request's
      correlation id (bound in ``LogContext`` for the duration).
    - Consume-then-write atomicity: consumption and the entries it
      authorizes share one SAVEPOINT; a rejected entry releases the
      approval.

Failure modes:
    - ApprovalRequiredError: a gated operation was called without a
      usable approval; carries the pending request.
    - ApprovalNotUsableError: the supplied approval cannot authorize this
      execution.
    - InsufficientBalanceError: the ledger (or the withdrawable revenue
      balance for reinvestment) cannot cover the outflow.
    - StoreUnavailableError: the database connection failed
      (``OperationalError``); retryable.

Audit relevance:
    Every kernel call made here is audited by the kernel itself.  The
    orchestrator adds nothing to the trail; it threads the correlation id
    that ties approval and ledger entries together.

Usage:
    config = get_active_config()
    settings = ConfiguredSettings(SettingsService(factory), config)
    authority = build_currency_authority(config, settings)

    with session_scope() as session:
        orchestrator = LedgerOrchestrator(session, config, authority, settings)
        result = orchestrator.record_capital_entry(
            "capital_in", "5000.00", "USD", created_by="u-17",
            requester_role="finance", justification="owner top-up",
        )
        if result.pending:
            ...  # wait for result.request, then call again with its id
"""

from __future__ import annotations

import functools
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ledger_config.bridges import SeedReport, build_numbering, seed_policy_registry
from ledger_config.schema import LedgerConfigSet
from ledger_kernel.db.types import to_decimal, validate_currency
from ledger_kernel.domain.approval import (
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalRequest,
    SweepReport,
)
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.collaborators import (
    ApproverDirectory,
    NotificationSink,
    SettingsProvider,
)
from ledger_kernel.domain.ledger import (
    Balance,
    EntryType,
    LedgerEntryRecord,
    LedgerKind,
    LedgerSummary,
    RevenueBalances,
)
from ledger_kernel.exceptions import (
    ApprovalRequiredError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidEntryTypeError,
    StoreUnavailableError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.selectors.ledger_selector import EntryPage, LedgerSelector
from ledger_kernel.services.approval_engine import ApprovalEngine
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_kernel.services.ledger_store import LedgerStore
from ledger_kernel.services.policy_registry import ApprovalPolicyRegistry

logger = get_logger("services.ledger_orchestrator")

CAPITAL_ENTRY_OPERATION = "capital_entry"
PURCHASE_OPERATION = "purchase"
REINVESTMENT_OPERATION = "reinvestment"
REVENUE_OPERATION = "revenue_management"

CAPITAL_ENTITY = "CapitalEntry"
PURCHASE_ENTITY = "Purchase"
REINVESTMENT_ENTITY = "Reinvestment"
REVENUE_ENTITY = "RevenueEntry"

# Revenue entry types that leave the business and need the gate
_GATED_REVENUE_TYPES = frozenset({EntryType.WITHDRAWAL})


def _store_guarded(operation: str):
    """Translate connection failures into the retryable StoreUnavailableError."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except OperationalError as exc:
                logger.error(
                    "store_unavailable",
                    extra={"operation": operation, "error": str(exc.orig or exc)},
                )
                raise StoreUnavailableError(operation, str(exc.orig or exc)) from exc

        return wrapper

    return decorator


@dataclass(frozen=True)
class GatedEntryResult:
    """
    Result of an approval-gated ledger operation.

    Exactly one of two shapes:
        - ``entries`` populated: the operation went through (immediately,
          or with a consumed approval).
        - ``outcome.request`` populated and ``entries`` empty: the
          operation waits on that pending request.
    """

    outcome: ApprovalOutcome | None
    entries: tuple[LedgerEntryRecord, ...] = ()
    correlation_id: str | None = None

    @property
    def recorded(self) -> bool:
        return bool(self.entries)

    @property
    def pending(self) -> bool:
        return not self.entries and self.request is not None

    @property
    def entry(self) -> LedgerEntryRecord | None:
        return self.entries[0] if self.entries else None

    @property
    def request(self) -> ApprovalRequest | None:
        return self.outcome.request if self.outcome is not None else None


class LedgerOrchestrator:
    """Per-session composition of the ledger and approval services.

    Contract:
        Receives a Session and the process-level collaborators; builds
        every kernel service exactly once and exposes them as public
        attributes (``auditor``, ``registry``, ``store``, ``engine``, ``selector``).

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT retry StoreUnavailableError.
    """

    def __init__(
        self,
        session: Session,
        config: LedgerConfigSet,
        currency_authority: CurrencyConversionAuthority,
        settings: SettingsProvider,
        notification_sink: NotificationSink | None = None,
        clock: Clock | None = None,
        approver_directory: ApproverDirectory | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._clock = clock or SystemClock()
        self.currency_authority = currency_authority

        # Order matters: auditor first, everything else audits through it
        self.auditor = AuditorService(session, self._clock, notification_sink)
        self.numbering = build_numbering(session, config)
        self.registry = ApprovalPolicyRegistry(
            session,
            auditor=self.auditor,
            clock=self._clock,
            admin_roles=config.approval.admin_roles,
        )
        self.store = LedgerStore(
            session,
            currency_authority,
            settings,
            auditor=self.auditor,
            clock=self._clock,
            numbering=self.numbering,
            notification_sink=notification_sink,
        )
        self.engine = ApprovalEngine(
            session,
            self.registry,
            currency_authority,
            auditor=self.auditor,
            clock=self._clock,
            numbering=self.numbering,
            notification_sink=notification_sink,
            approver_directory=approver_directory,
            approval_validity_hours=config.ledger.approval_validity_hours,
        )
        self.selector = LedgerSelector(session, currency_authority.base_currency)

    @property
    def base_currency(self) -> str:
        return self.currency_authority.base_currency

    # =========================================================================
    # Configuration
    # =========================================================================

    @_store_guarded("seed_policies")
    def seed_policies(self, actor_id: str = "config") -> SeedReport:
        """Bring the chain and guard tables in line with the configuration."""
        return seed_policy_registry(self.registry, self._config, actor_id=actor_id)

    # =========================================================================
    # Gate helpers
    # =========================================================================

    def _gate(
        self,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        amount: Decimal,
        currency: str,
        justification: str,
        requested_by: str,
        requester_role: str | None,
        correlation_id: str,
        emergency_override: bool,
    ) -> ApprovalOutcome:
        return self.engine.request_approval(
            operation_type=operation_type,
            entity_type=entity_type,
            entity_id=entity_id,
            amount=amount,
            justification=justification,
            requested_by=requested_by,
            requester_role=requester_role,
            currency=currency,
            correlation_id=correlation_id,
            emergency_override=emergency_override,
        )

    def _consume(
        self,
        request_id: UUID,
        operation_type: str,
        entity_type: str,
        entity_id: str | None,
        amount: Decimal,
        consumed_by: str,
        operation_ref: str,
    ) -> ApprovalRequest:
        request = self.engine.get_approval_status(request_id)
        return self.engine.consume_approval(
            request_id,
            operation_type=operation_type,
            entity_type=entity_type,
            entity_id=entity_id if entity_id is not None else request.entity_id,
            amount=amount,
            consumed_by=consumed_by,
            operation_ref=operation_ref,
        )

    @staticmethod
    def _correlation_for(request: ApprovalRequest | None) -> str:
        if request is not None and request.correlation_id:
            return request.correlation_id
        return LogContext.get_correlation_id() or str(uuid4())

    def _pending(
        self,
        outcome: ApprovalOutcome,
        correlation_id: str,
    ) -> GatedEntryResult:
        logger.info(
            "ledger_operation_awaiting_approval",
            extra={
                "operation_type": outcome.operation_type,
                "entity_id": outcome.entity_id,
                "request_id": str(outcome.request.request_id),
                "outstanding": outcome.reason,
            },
        )
        return GatedEntryResult(outcome=outcome, correlation_id=correlation_id)

    # =========================================================================
    # Capital
    # =========================================================================

    @_store_guarded("record_capital_entry")
    def record_capital_entry(
        self,
        entry_type: EntryType | str,
        amount: Any,
        currency: str,
        created_by: str,
        requester_role: str | None,
        justification: str = "",
        reference: str | None = None,
        description: str = "",
        allocations: Sequence[Any] = (),
        entry_date: datetime | None = None,
        approval_request_id: UUID | None = None,
        emergency_override: bool = False,
    ) -> GatedEntryResult:
        """
        Record a capital entry behind the ``capital_entry`` gate.

        Without ``approval_request_id`` the gate is evaluated: an immediate
        pass records the entry, anything else returns the pending request.
        With it, the approval is consumed and the entry is recorded under
        the request's correlation id.  The gated entity is ``reference``
        (a fresh id when absent, reported back in the pending result).
        """
        value = to_decimal(amount)
        currency = validate_currency(currency)

        if approval_request_id is not None:
            request = self.engine.get_approval_status(approval_request_id)
            correlation_id = self._correlation_for(request)
            entity_id = reference if reference is not None else request.entity_id
            with LogContext.bind(correlation_id=correlation_id, actor_id=created_by,
                                 operation_type=CAPITAL_ENTRY_OPERATION):
                with self._session.begin_nested():
                    self._consume(
                        approval_request_id, CAPITAL_ENTRY_OPERATION, CAPITAL_ENTITY,
                        entity_id, value, created_by, f"capital:{entity_id}",
                    )
                    entry = self.store.record_entry(
                        LedgerKind.CAPITAL, entry_type, value, currency, created_by,
                        reference=entity_id,
                        description=description,
                        allocations=allocations,
                        entry_date=entry_date,
                        correlation_id=correlation_id,
                        approval_request_id=approval_request_id,
                    )
            return GatedEntryResult(outcome=None, entries=(entry,), correlation_id=correlation_id)

        entity_id = reference if reference is not None else str(uuid4())
        correlation_id = self._correlation_for(None)
        with LogContext.bind(correlation_id=correlation_id, actor_id=created_by,
                             operation_type=CAPITAL_ENTRY_OPERATION):
            outcome = self._gate(
                CAPITAL_ENTRY_OPERATION, CAPITAL_ENTITY, entity_id, value, currency,
                justification or description, created_by, requester_role,
                correlation_id, emergency_override,
            )
            if outcome.needs_approval:
                return self._pending(outcome, correlation_id)
            entry = self.store.record_entry(
                LedgerKind.CAPITAL, entry_type, value, currency, created_by,
                reference=reference,
                description=description,
                allocations=allocations,
                entry_date=entry_date,
                correlation_id=correlation_id,
            )
        return GatedEntryResult(outcome=outcome, entries=(entry,), correlation_id=correlation_id)

    # =========================================================================
    # Purchases
    # =========================================================================

    @_store_guarded("request_settlement_approval")
    def request_settlement_approval(
        self,
        purchase_id: str,
        amount: Any,
        currency: str,
        requested_by: str,
        requester_role: str | None,
        justification: str,
        emergency_override: bool = False,
    ) -> ApprovalOutcome:
        """Gate the settlement of a purchase (operation ``purchase``)."""
        correlation_id = self._correlation_for(None)
        with LogContext.bind(correlation_id=correlation_id, actor_id=requested_by,
                             operation_type=PURCHASE_OPERATION):
            return self._gate(
                PURCHASE_OPERATION, PURCHASE_ENTITY, str(purchase_id),
                to_decimal(amount), validate_currency(currency),
                justification, requested_by, requester_role,
                correlation_id, emergency_override,
            )

    @_store_guarded("settle_purchase")
    def settle_purchase(
        self,
        purchase_id: str,
        amount: Any,
        currency: str,
        actor_id: str,
        approval_request_id: UUID | None = None,
        requester_role: str | None = None,
        description: str = "",
    ) -> LedgerEntryRecord:
        """
        Pay a purchase out of capital.

        With ``approval_request_id`` the approval is consumed and a
        ``capital_out`` referencing the purchase is recorded, both under the
        request's correlation id.  Without one the gate is evaluated; if it
        demands approval, ApprovalRequiredError carries the pending request.
        """
        purchase_id = str(purchase_id)
        value = to_decimal(amount)
        currency = validate_currency(currency)

        request = None
        if approval_request_id is None:
            outcome = self.request_settlement_approval(
                purchase_id, value, currency, actor_id, requester_role,
                justification=description or f"settle purchase {purchase_id}",
            )
            if outcome.needs_approval:
                raise ApprovalRequiredError(PURCHASE_OPERATION, purchase_id, outcome.request)
        else:
            request = self.engine.get_approval_status(approval_request_id)

        correlation_id = self._correlation_for(request)
        with LogContext.bind(correlation_id=correlation_id, actor_id=actor_id,
                             operation_type=PURCHASE_OPERATION):
            with self._session.begin_nested():
                if approval_request_id is not None:
                    self._consume(
                        approval_request_id, PURCHASE_OPERATION, PURCHASE_ENTITY,
                        purchase_id, value, actor_id, f"purchase:{purchase_id}",
                    )
                entry = self.store.record_entry(
                    LedgerKind.CAPITAL, EntryType.CAPITAL_OUT, value, currency, actor_id,
                    reference=purchase_id,
                    description=description or f"Settlement of purchase {purchase_id}",
                    correlation_id=correlation_id,
                    approval_request_id=approval_request_id,
                )

        logger.info(
            "purchase_settled",
            extra={
                "purchase_id": purchase_id,
                "entry_id": str(entry.entry_id),
                "amount": str(value),
                "currency": currency,
            },
        )
        return entry

    # =========================================================================
    # Revenue
    # =========================================================================

    @_store_guarded("record_revenue_entry")
    def record_revenue_entry(
        self,
        entry_type: EntryType | str,
        amount: Any,
        currency: str,
        created_by: str,
        requester_role: str | None = None,
        reference: str | None = None,
        description: str = "",
        allocations: Sequence[Any] = (),
        entry_date: datetime | None = None,
        approval_request_id: UUID | None = None,
    ) -> GatedEntryResult:
        """
        Record a revenue entry.

        Receipts and refunds go straight to the ledger.  Withdrawals pass
        the ``revenue_management`` gate first, like capital entries.
        """
        try:
            etype = EntryType(entry_type)
        except ValueError as exc:
            raise InvalidEntryTypeError(LedgerKind.REVENUE.value, str(entry_type)) from exc
        value = to_decimal(amount)
        currency = validate_currency(currency)

        if etype not in _GATED_REVENUE_TYPES:
            correlation_id = self._correlation_for(None)
            with LogContext.bind(correlation_id=correlation_id, actor_id=created_by):
                entry = self.store.record_entry(
                    LedgerKind.REVENUE, etype, value, currency, created_by,
                    reference=reference,
                    description=description,
                    allocations=allocations,
                    entry_date=entry_date,
                    correlation_id=correlation_id,
                )
            return GatedEntryResult(outcome=None, entries=(entry,), correlation_id=correlation_id)

        request = (
            self.engine.get_approval_status(approval_request_id)
            if approval_request_id is not None else None
        )
        correlation_id = self._correlation_for(request)
        entity_id = reference if reference is not None else (
            request.entity_id if request is not None else str(uuid4())
        )
        with LogContext.bind(correlation_id=correlation_id, actor_id=created_by,
                             operation_type=REVENUE_OPERATION):
            outcome = None
            if request is None:
                outcome = self._gate(
                    REVENUE_OPERATION, REVENUE_ENTITY, entity_id, value, currency,
                    description, created_by, requester_role, correlation_id, False,
                )
                if outcome.needs_approval:
                    return self._pending(outcome, correlation_id)
            with self._session.begin_nested():
                if request is not None:
                    self._consume(
                        approval_request_id, REVENUE_OPERATION, REVENUE_ENTITY,
                        entity_id, value, created_by, f"revenue:{entity_id}",
                    )
                entry = self.store.record_entry(
                    LedgerKind.REVENUE, etype, value, currency, created_by,
                    reference=entity_id,
                    description=description,
                    allocations=allocations,
                    entry_date=entry_date,
                    correlation_id=correlation_id,
                    approval_request_id=approval_request_id,
                )
        return GatedEntryResult(outcome=outcome, entries=(entry,), correlation_id=correlation_id)

    @_store_guarded("reinvest_revenue")
    def reinvest_revenue(
        self,
        amount: Any,
        fee: Any,
        currency: str,
        actor_id: str,
        requester_role: str | None = None,
        reference: str | None = None,
        description: str = "",
        approval_request_id: UUID | None = None,
    ) -> GatedEntryResult:
        """
        Move revenue back into capital.

        Writes, in one SAVEPOINT and under one correlation id:
            1. ``reinvest_out`` of ``amount`` on the revenue ledger,
            2. ``transfer_fee`` of ``fee`` on the revenue ledger (when > 0),
            3. ``capital_in`` of ``amount`` on the capital ledger,
               referencing the reinvestment.

        The withdrawable revenue balance must cover amount plus fee,
        regardless of the negative-balance switch.  It is read under the
        revenue ledger lock, so concurrent reinvestments cannot both spend
        it.  The transfer passes the ``reinvestment`` gate for amount plus fee.
        """
        value = to_decimal(amount)
        fee_value = to_decimal(fee) if fee is not None else Decimal("0")
        if value <= 0:
            raise InvalidAmountError(value, "reinvestment amount must be positive")
        if fee_value < 0:
            raise InvalidAmountError(fee_value, "transfer fee cannot be negative")
        currency = validate_currency(currency)
        total = value + fee_value

        request = (
            self.engine.get_approval_status(approval_request_id)
            if approval_request_id is not None else None
        )
        reinvestment_ref = reference if reference is not None else (
            request.entity_id if request is not None else str(uuid4())
        )
        correlation_id = self._correlation_for(request)

        with LogContext.bind(correlation_id=correlation_id, actor_id=actor_id,
                             operation_type=REINVESTMENT_OPERATION):
            outcome = None
            if request is None:
                outcome = self._gate(
                    REINVESTMENT_OPERATION, REINVESTMENT_ENTITY, reinvestment_ref,
                    total, currency, description or "revenue reinvestment",
                    actor_id, requester_role, correlation_id, False,
                )
                if outcome.needs_approval:
                    return self._pending(outcome, correlation_id)

            with self._session.begin_nested():
                if request is not None:
                    self._consume(
                        approval_request_id, REINVESTMENT_OPERATION, REINVESTMENT_ENTITY,
                        reinvestment_ref, total, actor_id, f"reinvestment:{reinvestment_ref}",
                    )

                required = self.currency_authority.convert(total, currency).converted_amount
                self.store.lock_ledger(LedgerKind.REVENUE)
                available = self.store.revenue_balances().withdrawable_balance
                if required > available:
                    logger.warning(
                        "reinvestment_rejected_insufficient_revenue",
                        extra={"withdrawable": str(available), "required": str(required)},
                    )
                    raise InsufficientBalanceError(
                        LedgerKind.REVENUE.value, available, required, self.base_currency,
                    )

                common = {
                    "reference": reinvestment_ref,
                    "correlation_id": correlation_id,
                    "approval_request_id": approval_request_id,
                }
                entries = [
                    self.store.record_entry(
                        LedgerKind.REVENUE, EntryType.REINVEST_OUT, value, currency, actor_id,
                        description=description or "Reinvestment to capital", **common,
                    ),
                ]
                if fee_value > 0:
                    entries.append(self.store.record_entry(
                        LedgerKind.REVENUE, EntryType.TRANSFER_FEE, fee_value, currency, actor_id,
                        description="Reinvestment transfer fee", **common,
                    ))
                entries.append(self.store.record_entry(
                    LedgerKind.CAPITAL, EntryType.CAPITAL_IN, value, currency, actor_id,
                    description=description or "Reinvestment from revenue", **common,
                ))

        logger.info(
            "revenue_reinvested",
            extra={
                "reference": reinvestment_ref,
                "amount": str(value),
                "fee": str(fee_value),
                "currency": currency,
                "entry_count": len(entries),
            },
        )
        return GatedEntryResult(outcome=outcome, entries=tuple(entries), correlation_id=correlation_id)

    # =========================================================================
    # Approval lifecycle
    # =========================================================================

    @_store_guarded("decide")
    def decide(
        self,
        request_id: UUID,
        approver_id: str,
        approver_role: str | None,
        decision: ApprovalDecision | str,
        comment: str = "",
    ) -> ApprovalRequest:
        with LogContext.bind(actor_id=approver_id, request_id=str(request_id)):
            return self.engine.record_approval_decision(
                request_id, approver_id, approver_role, ApprovalDecision(decision), comment,
            )

    @_store_guarded("cancel")
    def cancel(
        self,
        request_id: UUID,
        actor_id: str,
        actor_role: str | None,
        reason: str = "",
    ) -> ApprovalRequest:
        with LogContext.bind(actor_id=actor_id, request_id=str(request_id)):
            return self.engine.cancel_request(request_id, actor_id, actor_role, reason)

    @_store_guarded("status")
    def status(self, request_id: UUID) -> ApprovalRequest:
        return self.engine.get_approval_status(request_id)

    @_store_guarded("run_sweep")
    def run_sweep(self, as_of: datetime | None = None) -> SweepReport:
        return self.engine.sweep_timers(as_of)

    # =========================================================================
    # Balances
    # =========================================================================

    @_store_guarded("capital_balance")
    def capital_balance(self, as_of: datetime | None = None) -> Balance:
        return self.store.compute_balance(LedgerKind.CAPITAL, as_of)

    @_store_guarded("revenue_balances")
    def revenue_balances(self, as_of: datetime | None = None) -> RevenueBalances:
        return self.store.revenue_balances(as_of)

    # =========================================================================
    # Queries
    # =========================================================================

    @_store_guarded("list_entries")
    def list_entries(
        self,
        ledger: LedgerKind | str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> EntryPage:
        return self.selector.list_entries(ledger, start=start, end=end, limit=limit, offset=offset)

    @_store_guarded("entries_for_reference")
    def entries_for_reference(self, reference: str) -> list[LedgerEntryRecord]:
        """Every ledger entry written for a purchase, reinvestment or other reference."""
        return self.selector.get_by_reference(reference)

    @_store_guarded("entries_for_operation")
    def entries_for_operation(self, correlation_id: str) -> list[LedgerEntryRecord]:
        return self.selector.get_by_correlation(correlation_id)

    @_store_guarded("ledger_summary")
    def ledger_summary(self, ledger: LedgerKind | str, as_of: datetime | None = None) -> LedgerSummary:
        return self.selector.summary(ledger, as_of)
