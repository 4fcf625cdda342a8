"""
Exact conversion between base units and decimal amounts.

Token amounts arrive from the chain as fixed-point integers (6 decimals for
USDT). Converting them with float division loses precision, so every
conversion here goes through decimal.Decimal:

    from_base_units("1500000", 6) == Decimal("1.500000")
    to_base_units(Decimal("1.5"), 6) == "1500000"

The two functions are exact inverses for any amount with at most
`decimals` fractional digits. Extra digits are rounded half-up.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext

from settlement_engine.exceptions import InvalidAmountError

# Enough significant digits for any uint256 plus its fractional scale
PRECISION = 100


def parse_base_units(value, field: str = "amount") -> int:
    """
    Parse a base-unit integer (int, digit string or 0x-hex string).

    Raises:
        InvalidAmountError: For booleans, fractions, negatives or garbage.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(field, value)
    if isinstance(value, int):
        units = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            units = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            raise InvalidAmountError(field, value)
    else:
        raise InvalidAmountError(field, value)
    if units < 0:
        raise InvalidAmountError(field, value)
    return units


def from_base_units(value, decimals: int, field: str = "amount") -> Decimal:
    """Convert a base-unit integer to a Decimal in major units."""
    sign, digits, exponent = Decimal(parse_base_units(value, field)).as_tuple()
    return Decimal((sign, digits, exponent - decimals))


def to_decimal(value, field: str = "amount") -> Decimal:
    """
    Parse a major-unit amount (e.g. a webhook's 1000.5) as an exact Decimal.

    Floats are converted through their shortest repr, so 1000.1 becomes
    Decimal("1000.1") rather than its binary expansion.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(field, value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(field, value)
    if not amount.is_finite() or amount < 0:
        raise InvalidAmountError(field, value)
    return amount


def to_base_units(amount, decimals: int) -> str:
    """Convert a major-unit amount to a base-unit integer string."""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        scaled = to_decimal(amount).scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return str(int(scaled))


def quantize(amount: Decimal, decimals: int) -> Decimal:
    """Round an amount half-up to a fixed number of decimal places."""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
