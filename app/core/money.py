from collections.abc import Iterable
from decimal import Decimal, ROUND_HALF_UP

MONEY_QUANT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return ZERO_MONEY
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Decimal | int | float | str | None]) -> Decimal:
    total = ZERO_MONEY
    for value in values:
        total += to_money(value)
    return to_money(total)


def percent_of(amount: Decimal, rate: Decimal | float) -> Decimal:
    return to_money(to_money(amount) * Decimal(str(rate)) / Decimal("100"))
