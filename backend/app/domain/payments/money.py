from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from app.domain.errors import ValidationError

_PENCE = Decimal("0.01")


def to_pence(amount: Decimal | int | float | str) -> int:
    """Convert a major-unit amount (``Decimal("12.50")``) to integer pence."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(detail=f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(detail=f"Invalid amount: {amount!r}")
    return int((value.quantize(_PENCE, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def to_major(pence: int) -> Decimal:
    return (Decimal(int(pence)) / 100).quantize(_PENCE)


def format_gbp(pence: int) -> str:
    value = to_major(pence)
    sign = "-" if value < 0 else ""
    return f"{sign}£{abs(value):,.2f}"
