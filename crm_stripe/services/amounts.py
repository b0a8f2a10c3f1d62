"""Amount codec: decimal amounts <-> Stripe minor units.

Stripe takes integer amounts in the currency's smallest unit: cents for
USD, whole yen for JPY, and thousandths for the three-decimal currencies.
Everything that talks amounts to Stripe or reads them back goes through
here so both directions agree on precision.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from crm_stripe.services.errors import InvalidAmount

# https://stripe.com/docs/currencies#zero-decimal
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}

# https://stripe.com/docs/currencies#three-decimal
THREE_DECIMAL_CURRENCIES = {"BHD", "JOD", "KWD", "OMR", "TND"}


def currency_precision(currency):
    """Number of decimal places used by a currency (default 2)."""
    code = (currency or "").upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def _quantum(precision):
    return Decimal(1).scaleb(-precision)


def round_amount(value, currency):
    """Round a decimal value to the currency's precision (half up)."""
    return Decimal(value).quantize(
        _quantum(currency_precision(currency)), rounding=ROUND_HALF_UP
    )


def parse_amount(amount):
    """Parse a caller-supplied amount into a Decimal.

    Accepts Decimal, int, float or numeric strings ("12.34", "1,234.50").
    Raises InvalidAmount for anything else, negatives, or non-finite values.
    """
    if amount is None or isinstance(amount, bool):
        raise InvalidAmount(f"Amount is missing or malformed: {amount!r}")
    if isinstance(amount, float):
        amount = repr(amount)
    if isinstance(amount, str):
        amount = amount.strip().replace(",", "")
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Amount is malformed: {amount!r}")
    if not value.is_finite() or value < 0:
        raise InvalidAmount(f"Amount is out of range: {amount!r}")
    return value


def to_minor_units(amount, currency):
    """Convert a decimal amount to Stripe's integer minor units.

    >>> to_minor_units("12.34", "USD")
    1234
    >>> to_minor_units("500", "JPY")
    500
    """
    if not currency:
        raise InvalidAmount("Currency is required to convert an amount")
    value = round_amount(parse_amount(amount), currency)
    return int(value.scaleb(currency_precision(currency)))


def from_minor_units(minor_units, currency):
    """Convert Stripe's integer minor units back to a Decimal amount."""
    if minor_units is None:
        return None
    precision = currency_precision(currency)
    return Decimal(int(minor_units)).scaleb(-precision).quantize(_quantum(precision))
