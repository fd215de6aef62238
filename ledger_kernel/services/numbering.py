"""
Default display-numbering adapter.

Numbers are for people (``CE000042``), never identity.  Each entity type
draws from its own locked counter, so numbers are unique and increasing
within the type and a rolled-back transaction returns its number.
"""

from sqlalchemy.orm import Session

from ledger_kernel.services.sequence_service import SequenceService

DEFAULT_PREFIXES: dict[str, str] = {
    "capital": "CE",
    "revenue": "RV",
    "approval_request": "AR",
}

DEFAULT_WIDTH = 6


class SequenceNumbering:
    """``NumberingProvider`` backed by SequenceService counters."""

    def __init__(
        self,
        session: Session,
        prefixes: dict[str, str] | None = None,
        width: int = DEFAULT_WIDTH,
    ):
        self._sequences = SequenceService(session)
        self._prefixes = {**DEFAULT_PREFIXES, **(prefixes or {})}
        self._width = width

    def next_number(self, entity_type: str) -> str:
        prefix = self._prefixes.get(entity_type, entity_type[:2].upper())
        value = self._sequences.next_value(f"number.{entity_type}")
        return f"{prefix}{value:0{self._width}d}"
