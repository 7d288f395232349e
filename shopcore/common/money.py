"""Fixed-point money helpers.

Amounts are stored and summed as integer minor units; `Decimal` only appears
at the API boundary.
"""

from decimal import Decimal, InvalidOperation

from shopcore.common.errors import ValidationError

_EXPONENTS = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
}


def exponent(currency: str) -> int:
    return _EXPONENTS.get(currency.upper(), 2)


def to_minor(amount, currency: str, field: str = "amount") -> int:
    """Convert a decimal amount into minor units, rejecting excess precision."""

    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} is not a decimal amount", field=field) from exc
    if not value.is_finite():
        raise ValidationError(f"{field} is not a decimal amount", field=field)
    scaled = value.scaleb(exponent(currency))
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"{field} has more precision than {currency.upper()} allows",
            field=field,
        )
    return int(scaled)


def from_minor(amount_minor: int, currency: str) -> Decimal:
    exp = exponent(currency)
    return Decimal(amount_minor).scaleb(-exp).quantize(Decimal(1).scaleb(-exp))
