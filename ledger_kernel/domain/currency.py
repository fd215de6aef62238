"""
Currency conversion value objects.

The canonical pair is expressed as "tracked units per one base unit": a
rate of 60 means 60 ETB buy 1 USD, so converting ETB to USD divides.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

IDENTITY_RATE = Decimal("1")


@dataclass(frozen=True)
class RateSnapshot:
    """A canonical rate as read from the settings source."""

    base_currency: str
    tracked_currency: str
    rate: Decimal
    fetched_at: datetime


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of one conversion.  ``rate_used`` is frozen onto the entry."""

    original_amount: Decimal
    from_currency: str
    converted_amount: Decimal
    to_currency: str
    rate_used: Decimal
    timestamp: datetime

    @property
    def is_identity(self) -> bool:
        return self.from_currency == self.to_currency
