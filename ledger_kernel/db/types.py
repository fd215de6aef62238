"""
Module: ledger_kernel.db.types
Responsibility: The money helpers every layer shares: decimal parsing,
    rounding, ISO 4217 validation.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere.  to_decimal() rejects float input outright;
      amounts enter the kernel as Decimal, int or decimal strings.
    - round_money() is the only sanctioned rounding function (ROUND_HALF_UP).
    - validate_currency() is the canonical ISO 4217 check.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from ledger_kernel.exceptions import InvalidAmountError, InvalidCurrencyError

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """Parse an incoming monetary value without passing through float.

    Raises:
        InvalidAmountError: float input, unparseable text, NaN or infinity.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(value, f"{field} must be a Decimal or decimal string, not {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmountError(value, f"{field} is not a decimal number") from None
    else:
        raise InvalidAmountError(value, f"{field} has unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise InvalidAmountError(value, f"{field} must be finite")
    return result


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the only rounding function for financial values; everything
    else delegates here so precision handling stays consistent.
    """
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


# ISO 4217 currency codes
ISO_4217_CURRENCIES: frozenset[str] = frozenset("""
    USD EUR GBP JPY CHF CAD AUD NZD CNY INR
    AED AFN ALL AMD AOA ARS AZN BAM BDT BGN BHD BIF BND BOB BRL BWP BYN
    CDF CLP COP CRC CZK DJF DKK DOP DZD EGP ERN ETB GEL GHS GMD GNF GTQ
    HKD HNL HUF IDR ILS IQD IRR ISK JMD JOD KES KGS KHR KMF KRW KWD KZT
    LAK LBP LKR LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR MVR MWK
    MXN MYR MZN NAD NGN NIO NOK NPR OMR PAB PEN PGK PHP PKR PLN PYG QAR
    RON RSD RUB RWF SAR SCR SDG SEK SGD SLE SOS SRD SSP SYP SZL THB TJS
    TMT TND TOP TRY TTD TWD TZS UAH UGX UYU UZS VES VND XAF XOF YER ZAR ZMW
""".split())


def validate_currency(currency: str) -> str:
    """
    Validate and normalize an ISO 4217 currency code.

    Returns:
        The uppercase, trimmed code.

    Raises:
        InvalidCurrencyError: If the code is not recognized.
    """
    if not currency or not isinstance(currency, str):
        raise InvalidCurrencyError(str(currency))

    normalized = currency.upper().strip()
    if normalized not in ISO_4217_CURRENCIES:
        raise InvalidCurrencyError(currency)
    return normalized
