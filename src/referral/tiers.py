from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from typing import Optional, Union

MIN_PLAN_LEVEL = 1
MAX_PLAN_LEVEL = 16

# (first level, last level, percent)
COMMISSION_TIERS: tuple[tuple[int, int, Decimal], ...] = (
    (1, 4, Decimal("50")),
    (5, 8, Decimal("55")),
    (9, 16, Decimal("60")),
)


def commission_rate(
    plan_level: int, explicit_rate: Optional[Union[str, Decimal]] = None
) -> Decimal:
    if explicit_rate is not None and str(explicit_rate).strip():
        try:
            rate = Decimal(str(explicit_rate).strip())
        except InvalidOperation as error:
            raise ValueError(f"commission rate is not a number: {explicit_rate!r}") from error
        if not rate.is_finite() or rate < 0 or rate > 100:
            raise ValueError(f"commission rate out of range: {explicit_rate!r}")
        return rate

    for first, last, rate in COMMISSION_TIERS:
        if first <= plan_level <= last:
            return rate
    raise ValueError(
        f"plan level {plan_level} outside {MIN_PLAN_LEVEL}-{MAX_PLAN_LEVEL}"
    )


def compute_commission(amount_units: int, rate: Decimal) -> int:
    if amount_units < 0:
        raise ValueError("commission base amount must be non-negative")
    with localcontext() as context:
        context.prec = 100
        value = Decimal(amount_units) * rate / Decimal(100)
        return int(value.to_integral_value(rounding=ROUND_DOWN))
