"""
Module: ledger_kernel.selectors.base
Responsibility: Base class for read-only query selectors (the "Q" side of
    the store).
Architecture position: Kernel > Selectors.  May import from db/, models/
    and domain/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only: selectors never add, flush, delete or commit.
    - Selectors return frozen DTOs, never ORM instances.
    - The caller owns the session and its transaction scope.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Base class for all selectors.

    Contract:
        Accepts a Session from the caller and performs read-only queries.
    """

    def __init__(self, session: Session):
        self.session = session
