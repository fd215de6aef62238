"""
LedgerStore -- append-only capital and revenue ledgers.

Responsibility:
    Records ledger entries with a frozen exchange-rate snapshot, derives
    balances, enforces the allocation law and the negative-balance policy,
    records reverse / reclass corrections, flips the validated flag, and
    runs the explicit allocation reconcile.

Architecture position:
    Kernel > Services -- imperative shell.  Per-session object composed
    with process-level collaborators (currency authority, settings,
    notification sink, clock).  Delegates ordering and write serialization
    to SequenceService and audit to AuditorService.

Invariants enforced:
    - Append-only: entries are corrected by new entries only (ORM listeners
      and PostgreSQL triggers reject anything else).
    - Frozen rate: ``exchange_rate`` / ``amount_base`` are resolved once,
      at creation.  Corrections inherit the original's rate.
    - Serialized writes: every write first locks the ledger's sequence row,
      then re-reads the balance inside the same transaction, so the
      balance check and the insert are atomic per ledger.
    - Negative balance: with PREVENT_NEGATIVE_BALANCE on (default), an
      out-effect entry that would drive the balance below zero fails with
      InsufficientBalanceError and leaves no trace.
    - Allocation law: |sum(allocations) - amount| <= 0.01, never rounded.

Failure modes:
    - InvalidAmountError, InvalidCurrencyError, InvalidEntryTypeError,
      AllocationMismatchError, InvalidCorrectionError: rejected input.
    - ConfigurationMissingError: non-base currency without a usable rate.
    - InsufficientBalanceError: negative-balance prevention.
    - LedgerEntryNotFoundError: unknown entry id.

Audit relevance:
    Every entry, validation and reconcile produces an audit entry through
    ``record_best_effort``; an audit failure is alerted but never undoes
    the ledger write.  Balance alerts run after every mutation and never
    change its outcome.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
    - Does NOT decide approvals; callers gate writes through ApprovalEngine.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.db.types import round_money, to_decimal, validate_currency
from ledger_kernel.domain.business_context import LedgerMutationContext, ReconciliationContext
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.collaborators import (
    AlertCategory,
    AlertDispatch,
    AlertSeverity,
    NotificationSink,
    NumberingProvider,
    SettingsProvider,
)
from ledger_kernel.domain.ledger import (
    ALLOCATION_TOLERANCE,
    CORRECTION_TYPES,
    LEDGER_ENTRY_TYPES,
    ZERO,
    Allocation,
    Balance,
    BalanceProjection,
    EntryType,
    LedgerEntryRecord,
    LedgerKind,
    RevenueBalances,
    check_allocations,
    compute_balance,
    compute_revenue_balances,
    effective_direction,
    signed_amount,
    uncorrected_amount,
)
from ledger_kernel.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidCorrectionError,
    InvalidEntryTypeError,
    LedgerEntryNotFoundError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.audit_log import AuditAction
from ledger_kernel.models.ledger_entry import LedgerAllocationModel, LedgerEntryModel
from ledger_kernel.services.alerting import dispatch_alert
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_kernel.services.numbering import SequenceNumbering
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.settings_service import (
    CAPITAL_LOW_BALANCE_THRESHOLD,
    PREVENT_NEGATIVE_BALANCE,
    setting_as_bool,
    setting_as_decimal,
)

logger = get_logger("services.ledger_store")

DEFAULT_LOW_BALANCE_THRESHOLD = Decimal("10000")
RECONCILIATION_TARGET = "reconciliation-adjustment"

_CORRECTION_ACTIONS = {
    EntryType.REVERSE: AuditAction.REVERSE,
    EntryType.RECLASS: AuditAction.RECLASSIFY,
}


def _entry_snapshot(entry: LedgerEntryRecord) -> dict[str, Any]:
    return {
        "entry_number": entry.entry_number,
        "ledger": entry.ledger.value,
        "seq": entry.seq,
        "entry_type": entry.entry_type.value,
        "entry_date": entry.entry_date,
        "amount": entry.amount,
        "currency": entry.currency,
        "exchange_rate": entry.exchange_rate,
        "amount_base": entry.amount_base,
        "reference": entry.reference,
        "corrects_entry_id": entry.corrects_entry_id,
        "validated": entry.validated,
        "allocations": [
            {"target_ref": a.target_ref, "amount": a.amount, "is_adjustment": a.is_adjustment}
            for a in entry.allocations
        ],
    }


class LedgerStore:
    """
    Append-only store for the capital and revenue ledgers.

    Contract:
        Writes flush into the caller's transaction and return frozen
        ``LedgerEntryRecord`` DTOs.  A failed write is rolled back to its
        own SAVEPOINT, so the caller's session stays usable.
    """

    def __init__(
        self,
        session: Session,
        currency_authority: CurrencyConversionAuthority,
        settings: SettingsProvider,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        numbering: NumberingProvider | None = None,
        notification_sink: NotificationSink | None = None,
    ):
        self._session = session
        self._authority = currency_authority
        self._settings = settings
        self._clock = clock or SystemClock()
        self._sink = notification_sink
        self._auditor = auditor or AuditorService(session, self._clock, notification_sink)
        self._numbering = numbering or SequenceNumbering(session)
        self._sequences = SequenceService(session)

    @property
    def base_currency(self) -> str:
        return self._authority.base_currency

    # =========================================================================
    # Reads
    # =========================================================================

    def _get_model(self, entry_id: UUID) -> LedgerEntryModel:
        model = self._session.get(LedgerEntryModel, entry_id)
        if model is None:
            raise LedgerEntryNotFoundError(str(entry_id))
        return model

    def get_entry(self, entry_id: UUID) -> LedgerEntryRecord:
        """Raises LedgerEntryNotFoundError for an unknown id."""
        return self._get_model(entry_id).to_dto()

    def _load_entries(
        self,
        ledger: LedgerKind,
        as_of: datetime | None = None,
    ) -> tuple[list[LedgerEntryRecord], dict[UUID, LedgerEntryRecord]]:
        """Entries of one ledger (up to ``as_of``) plus any originals they correct."""
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.ledger == ledger.value)
        if as_of is not None:
            stmt = stmt.where(LedgerEntryModel.entry_date <= as_of)
        entries = [m.to_dto() for m in self._session.execute(stmt.order_by(LedgerEntryModel.seq)).scalars()]

        known = {e.entry_id for e in entries}
        missing = {e.corrects_entry_id for e in entries if e.corrects_entry_id and e.corrects_entry_id not in known}
        originals: dict[UUID, LedgerEntryRecord] = {}
        if missing:
            rows = self._session.execute(
                select(LedgerEntryModel).where(LedgerEntryModel.id.in_(missing))
            ).scalars()
            originals = {m.id: m.to_dto() for m in rows}
        return entries, originals

    def compute_balance(self, ledger: LedgerKind | str, as_of: datetime | None = None) -> Balance:
        """Balance of ``ledger`` in the base currency, inside the caller's transaction."""
        kind = LedgerKind(ledger)
        entries, originals = self._load_entries(kind, as_of)
        return compute_balance(kind, entries, self.base_currency, originals, as_of=as_of)

    def lock_ledger(self, ledger: LedgerKind | str) -> None:
        """
        Serialize on ``ledger`` for the rest of the transaction.

        Balance reads after this call see every committed write and no other
        writer of the ledger can interleave until commit.  record_entry takes
        the same lock, so callers may check a balance first and then write.
        """
        kind = LedgerKind(ledger)
        self._sequences.lock(SequenceService.ledger_sequence(kind.value))

    def revenue_balances(self, as_of: datetime | None = None) -> RevenueBalances:
        """Accounting (earned) and withdrawable views of the revenue ledger."""
        entries, originals = self._load_entries(LedgerKind.REVENUE, as_of)
        return compute_revenue_balances(entries, self.base_currency, originals, as_of=as_of)

    def _corrections_of(self, entry_id: UUID) -> list[LedgerEntryRecord]:
        rows = self._session.execute(
            select(LedgerEntryModel)
            .where(LedgerEntryModel.corrects_entry_id == entry_id)
            .order_by(LedgerEntryModel.seq)
        ).scalars()
        return [m.to_dto() for m in rows]

    def uncorrected_remainder(self, entry_id: UUID) -> Decimal:
        """Part of an entry's amount not yet reversed or reclassified."""
        return uncorrected_amount(self.get_entry(entry_id), self._corrections_of(entry_id))

    # =========================================================================
    # Validation helpers
    # =========================================================================

    @staticmethod
    def _resolve_type(ledger: Any, entry_type: Any) -> tuple[LedgerKind, EntryType]:
        try:
            kind = LedgerKind(ledger)
            etype = EntryType(entry_type)
        except ValueError:
            raise InvalidEntryTypeError(str(getattr(ledger, "value", ledger)), str(getattr(entry_type, "value", entry_type))) from None
        if etype not in LEDGER_ENTRY_TYPES[kind]:
            raise InvalidEntryTypeError(kind.value, etype.value)
        return kind, etype

    @staticmethod
    def _normalize_allocations(allocations: Iterable[Any]) -> tuple[Allocation, ...]:
        normalized = []
        for item in allocations:
            if isinstance(item, Allocation):
                normalized.append(Allocation(item.target_ref, to_decimal(item.amount), item.is_adjustment))
            elif isinstance(item, dict):
                normalized.append(Allocation(str(item["target_ref"]), to_decimal(item["amount"])))
            else:
                target_ref, amount = item
                normalized.append(Allocation(str(target_ref), to_decimal(amount)))
        return tuple(normalized)

    def validate_linked_amounts(self, entry: LedgerEntryRecord | UUID) -> bool:
        """
        Check the allocation law for a persisted entry.

        Raises:
            AllocationMismatchError: |sum(allocations) - amount| > 0.01.
        """
        record = entry if isinstance(entry, LedgerEntryRecord) else self.get_entry(entry)
        check_allocations(record.amount, record.allocations)
        return True

    def _prepare_correction(
        self,
        kind: LedgerKind,
        etype: EntryType,
        amount: Decimal,
        currency: str,
        corrects_entry_id: UUID | None,
        entry_date: datetime,
    ) -> tuple[LedgerEntryRecord, Decimal]:
        """Validate a correction; return the original and the correction's amount_base."""
        if corrects_entry_id is None:
            raise InvalidCorrectionError("None", f"{etype.value} entry must reference the entry it corrects")

        model = self._session.get(LedgerEntryModel, corrects_entry_id)
        if model is None:
            raise InvalidCorrectionError(str(corrects_entry_id), "original entry does not exist")
        original = model.to_dto()
        if original.ledger is not kind:
            raise InvalidCorrectionError(
                str(corrects_entry_id), f"original entry is on the {original.ledger.value} ledger",
            )
        if original.is_correction:
            raise InvalidCorrectionError(str(corrects_entry_id), "a correction cannot itself be corrected")
        if currency != original.currency:
            raise InvalidCorrectionError(
                str(corrects_entry_id),
                f"correction currency {currency} differs from original {original.currency}",
            )
        if entry_date < original.entry_date:
            raise InvalidCorrectionError(str(corrects_entry_id), "correction cannot predate the original entry")

        corrections = self._corrections_of(original.entry_id)
        remainder = uncorrected_amount(original, corrections)
        base_remainder = original.amount_base - sum((c.amount_base for c in corrections), ZERO)
        if remainder <= ZERO:
            raise InvalidCorrectionError(str(corrects_entry_id), "original entry is already fully corrected")
        if etype is EntryType.REVERSE and amount != remainder:
            raise InvalidCorrectionError(
                str(corrects_entry_id),
                f"reverse amount {amount} must equal the uncorrected amount {remainder}",
            )
        if etype is EntryType.RECLASS and amount > remainder:
            raise InvalidCorrectionError(
                str(corrects_entry_id),
                f"reclass amount {amount} exceeds the uncorrected amount {remainder}",
            )

        if amount == remainder:
            amount_base = base_remainder
        elif currency == self.base_currency:
            amount_base = amount
        else:
            amount_base = round_money(amount / original.exchange_rate)
        return original, amount_base

    # =========================================================================
    # Writes
    # =========================================================================

    def record_entry(
        self,
        ledger: LedgerKind | str,
        entry_type: EntryType | str,
        amount: Any,
        currency: str,
        created_by: str,
        reference: str | None = None,
        description: str = "",
        allocations: Sequence[Any] = (),
        corrects_entry_id: UUID | None = None,
        entry_date: datetime | None = None,
        correlation_id: str | None = None,
        approval_request_id: UUID | None = None,
    ) -> LedgerEntryRecord:
        """
        Append one entry to a ledger.

        Preconditions:
            - ``amount`` > 0 (Decimal, int or decimal string).
            - ``entry_type`` belongs to ``ledger``.
            - Corrections reference an uncorrected original on the same ledger.

        Postconditions:
            - The entry and its allocations are flushed with the next ledger
              ``seq`` and a frozen ``exchange_rate``.
            - An audit entry was attempted and balance alerts were evaluated.
        """
        kind, etype = self._resolve_type(ledger, entry_type)
        value = to_decimal(amount)
        if value <= ZERO:
            raise InvalidAmountError(value, "amount must be positive")
        currency = validate_currency(currency)
        allocs = self._normalize_allocations(allocations)
        check_allocations(value, allocs)
        entry_date = entry_date or self._clock.now()

        if etype not in CORRECTION_TYPES and corrects_entry_id is not None:
            raise InvalidCorrectionError(
                str(corrects_entry_id), f"{etype.value} entries cannot correct another entry",
            )

        with self._session.begin_nested():
            # Serialize on the ledger: from here until commit no other
            # writer of this ledger can read the balance.
            seq = self._sequences.next_value(SequenceService.ledger_sequence(kind.value))

            original = None
            if etype in CORRECTION_TYPES:
                original, amount_base = self._prepare_correction(
                    kind, etype, value, currency, corrects_entry_id, entry_date,
                )
                rate = original.exchange_rate
                original_type = original.entry_type
            else:
                conversion = self._authority.convert(value, currency)
                rate = conversion.rate_used
                amount_base = conversion.converted_amount
                original_type = None

            effect = signed_amount(amount_base, effective_direction(etype, original_type))
            projection = BalanceProjection(self.compute_balance(kind), effect)
            if effect < ZERO and projection.projected < ZERO:
                if setting_as_bool(self._settings, PREVENT_NEGATIVE_BALANCE, default=True):
                    logger.warning(
                        "ledger_entry_rejected_insufficient_balance",
                        extra={
                            "ledger": kind.value,
                            "entry_type": etype.value,
                            "balance": str(projection.current.balance),
                            "required": str(-effect),
                        },
                    )
                    raise InsufficientBalanceError(
                        kind.value, projection.current.balance, -effect, self.base_currency,
                    )
                logger.warning(
                    "ledger_negative_balance_allowed",
                    extra={"ledger": kind.value, "projected": str(projection.projected)},
                )

            now = self._clock.now()
            model = LedgerEntryModel(
                entry_number=self._numbering.next_number(kind.value),
                ledger=kind.value,
                seq=seq,
                entry_type=etype.value,
                entry_date=entry_date,
                amount=value,
                currency=currency,
                exchange_rate=rate,
                amount_base=amount_base,
                base_currency=self.base_currency,
                reference=reference if reference is not None else (original.reference if original else None),
                description=description,
                corrects_entry_id=original.entry_id if original else None,
                created_by=created_by,
                created_at=now,
                correlation_id=correlation_id,
            )
            self._session.add(model)
            self._session.flush()
            for position, alloc in enumerate(allocs):
                self._session.add(LedgerAllocationModel(
                    entry_id=model.id,
                    position=position,
                    target_ref=alloc.target_ref,
                    amount=alloc.amount,
                    is_adjustment=alloc.is_adjustment,
                    created_at=now,
                    created_by=created_by,
                ))
            self._session.flush()
            self._session.refresh(model, ["allocations"])
            record = model.to_dto()

        logger.info(
            "ledger_entry_recorded",
            extra={
                "entry_id": str(record.entry_id),
                "entry_number": record.entry_number,
                "ledger": kind.value,
                "entry_type": etype.value,
                "amount": str(value),
                "currency": currency,
                "exchange_rate": str(rate),
                "amount_base": str(amount_base),
                "seq": seq,
            },
        )

        self._auditor.record_best_effort(
            action=_CORRECTION_ACTIONS.get(etype, AuditAction.CREATE),
            entity_type="LedgerEntry",
            entity_id=record.entry_id,
            actor_id=created_by,
            before={"balance": projection.current.balance},
            after=_entry_snapshot(record),
            business_context=LedgerMutationContext(
                ledger=kind.value,
                entry_type=etype.value,
                reference=record.reference,
                balance_before=projection.current.balance,
                balance_after=projection.projected,
                approval_request_id=str(approval_request_id) if approval_request_id else None,
            ),
            correlation_id=correlation_id,
        )
        self.check_balance_alerts(kind)
        return record

    def reverse_entry(
        self,
        entry_id: UUID,
        created_by: str,
        description: str = "",
        correlation_id: str | None = None,
    ) -> LedgerEntryRecord:
        """Negate the uncorrected remainder of an entry with a ``reverse`` entry."""
        original = self.get_entry(entry_id)
        return self.record_entry(
            ledger=original.ledger,
            entry_type=EntryType.REVERSE,
            amount=self.uncorrected_remainder(entry_id),
            currency=original.currency,
            created_by=created_by,
            description=description or f"Reversal of {original.entry_number}",
            corrects_entry_id=entry_id,
            correlation_id=correlation_id,
        )

    def reclassify_entry(
        self,
        entry_id: UUID,
        amount: Any,
        created_by: str,
        description: str = "",
        correlation_id: str | None = None,
    ) -> LedgerEntryRecord:
        """Move part of an entry's amount back with a ``reclass`` entry."""
        original = self.get_entry(entry_id)
        return self.record_entry(
            ledger=original.ledger,
            entry_type=EntryType.RECLASS,
            amount=amount,
            currency=original.currency,
            created_by=created_by,
            description=description or f"Reclassification of {original.entry_number}",
            corrects_entry_id=entry_id,
            correlation_id=correlation_id,
        )

    def mark_validated(self, entry_id: UUID, validated_by: str) -> LedgerEntryRecord:
        """
        Flip the validated flag after checking the allocation law.

        Idempotent: an already validated entry is returned unchanged.

        Raises:
            AllocationMismatchError: allocations do not match the amount.
        """
        model = self._get_model(entry_id)
        if model.validated:
            return model.to_dto()

        self.validate_linked_amounts(model.to_dto())
        model.validated = True
        model.validated_at = self._clock.now()
        model.validated_by = validated_by
        self._session.flush()
        record = model.to_dto()

        logger.info(
            "ledger_entry_validated",
            extra={"entry_id": str(entry_id), "validated_by": validated_by},
        )
        self._auditor.record_best_effort(
            action=AuditAction.VALIDATE,
            entity_type="LedgerEntry",
            entity_id=entry_id,
            actor_id=validated_by,
            before={"validated": False},
            after={"validated": True},
            business_context=LedgerMutationContext(
                ledger=record.ledger.value,
                entry_type=record.entry_type.value,
                reference=record.reference,
            ),
        )
        return record

    def reconcile_allocations(self, entry_id: UUID, actor_id: str) -> LedgerEntryRecord | None:
        """
        Explicit after-the-fact correction of an allocation mismatch.

        Appends an adjustment allocation for the residual and records an
        ``auto_correct`` audit entry.  Returns None when the entry already
        satisfies the allocation law.
        """
        model = self._get_model(entry_id)
        record = model.to_dto()
        if not record.allocations:
            return None
        residual = record.amount - record.allocated_total
        if abs(residual) <= ALLOCATION_TOLERANCE:
            return None

        now = self._clock.now()
        self._session.add(LedgerAllocationModel(
            entry_id=model.id,
            position=len(record.allocations),
            target_ref=RECONCILIATION_TARGET,
            amount=residual,
            is_adjustment=True,
            created_at=now,
            created_by=actor_id,
        ))
        self._session.flush()
        self._session.refresh(model, ["allocations"])
        corrected = model.to_dto()

        logger.warning(
            "ledger_allocations_reconciled",
            extra={"entry_id": str(entry_id), "residual": str(residual), "actor_id": actor_id},
        )
        self._auditor.record_best_effort(
            action=AuditAction.AUTO_CORRECT,
            entity_type="LedgerEntry",
            entity_id=entry_id,
            actor_id=actor_id,
            before=_entry_snapshot(record),
            after=_entry_snapshot(corrected),
            business_context=ReconciliationContext(
                ledger=record.ledger.value,
                residual=residual,
                tolerance=ALLOCATION_TOLERANCE,
                reason="allocations did not sum to the entry amount",
            ),
        )
        return corrected

    # =========================================================================
    # Alerts
    # =========================================================================

    def check_balance_alerts(self, ledger: LedgerKind | str) -> list[AlertDispatch]:
        """
        Negative / low balance detection.  Pure read plus alerts.

        ``negative_balance`` is critical.  ``low_balance`` (capital ledger,
        balance under the threshold setting) is critical below half the
        threshold, otherwise a warning.  Never changes the outcome of the
        operation that triggered it.
        """
        kind = LedgerKind(ledger)
        try:
            balance = self.compute_balance(kind)
            threshold = setting_as_decimal(
                self._settings, CAPITAL_LOW_BALANCE_THRESHOLD, DEFAULT_LOW_BALANCE_THRESHOLD,
            )
        except Exception as exc:
            logger.error(
                "balance_alert_check_failed",
                extra={"ledger": kind.value, "error": str(exc)},
            )
            return []

        dispatched: list[AlertDispatch] = []
        if balance.is_negative:
            dispatched.append(dispatch_alert(
                self._sink,
                AlertCategory.NEGATIVE_BALANCE,
                AlertSeverity.CRITICAL,
                f"{kind.value} balance is negative: {balance.balance} {balance.currency}",
                entity_ref=kind.value,
            ))
        elif kind is LedgerKind.CAPITAL and balance.balance < threshold:
            severity = (
                AlertSeverity.CRITICAL if balance.balance < threshold / 2 else AlertSeverity.WARNING
            )
            dispatched.append(dispatch_alert(
                self._sink,
                AlertCategory.LOW_BALANCE,
                severity,
                f"capital balance {balance.balance} {balance.currency} is below {threshold}",
                entity_ref=kind.value,
            ))
        return dispatched
