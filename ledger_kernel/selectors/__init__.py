"""Selectors for the ledger kernel (read side)."""

from ledger_kernel.selectors.ledger_selector import EntryPage, LedgerSelector

__all__ = [
    "EntryPage",
    "LedgerSelector",
]
