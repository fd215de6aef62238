"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for audit entries,
    per-ledger entry ordinals and display numbering.  Uses a dedicated
    counter table with row-level locking (``SELECT ... FOR UPDATE``) to
    guarantee uniqueness and ordering under concurrent access.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by LedgerStore (``ledger.<name>``), AuditorService (``audit_log``)
    and SequenceNumbering (``number.<entity_type>``).

Invariants enforced:
    - Monotonicity: the locked counter row is the sole source of truth for
      the next value.  Aggregate max-plus-one is never used.
    - Serialization: holding a counter row lock serializes every writer of
      that sequence until the transaction ends.  LedgerStore relies on this
      to make its balance re-read and insert atomic per ledger.
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).
"""

from sqlalchemy import String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from ledger_kernel.db.base import Base
from ledger_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    # Sequence name (e.g., "audit_log", "ledger.capital", "number.capital")
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(nullable=False, default=0)


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Contract:
        Accepts a sequence name and returns the next strictly increasing
        integer value.  The increment is committed with the caller's
        transaction.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.

    Usage:
        with session_scope() as session:
            seq = SequenceService(session).next_value("audit_log")
    """

    AUDIT_LOG = "audit_log"

    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def ledger_sequence(ledger: str) -> str:
        return f"ledger.{ledger}"

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _lock_or_create(self, sequence_name: str) -> SequenceCounter:
        """Locked counter row for ``sequence_name``, created at 0 on first use."""
        counter = self._locked_counter(sequence_name)
        if counter is not None:
            return counter

        # Another transaction may create it concurrently, so the insert runs
        # in a savepoint that can be discarded alone.
        savepoint = self._session.begin_nested()
        try:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)
            self._session.flush()
            savepoint.commit()
            return counter
        except IntegrityError:
            logger.debug(
                "sequence_counter_race_retry",
                extra={"sequence_name": sequence_name},
            )
            savepoint.rollback()
            counter = self._locked_counter(sequence_name)
            if counter is None:
                raise
            return counter

    def lock(self, sequence_name: str) -> int:
        """
        Take the counter row lock without allocating a value.

        Writers that must read state guarded by the sequence (a ledger's
        balance) before they know whether they will write call this first.
        Returns the current value.
        """
        return self._lock_or_create(sequence_name).current_value

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the named counter (creating it on first use), increment it and
        return the new value.

        Postconditions:
            - Returns an integer > 0 strictly greater than any previously
              returned value for this sequence name.
            - The counter row stays locked until the transaction completes.
        """
        counter = self._lock_or_create(sequence_name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value of a sequence without incrementing, or None."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
