from __future__ import annotations

from decimal import Decimal

from .types import AlertDirection


def parse_direction(value: AlertDirection | str | None) -> AlertDirection | None:
    if isinstance(value, AlertDirection):
        return value
    text = (value or "").strip().lower()
    try:
        return AlertDirection(text)
    except ValueError:
        return None


def should_trigger(
    direction: AlertDirection | str | None,
    target_price: Decimal,
    current_price: Decimal,
) -> bool:
    """Decide whether a single price sample fires an alert.

    A single qualifying sample is enough; there is no hysteresis. Unknown
    directions never fire.
    """
    parsed = parse_direction(direction)
    if parsed is AlertDirection.ABOVE:
        return current_price >= target_price
    if parsed is AlertDirection.BELOW:
        return current_price <= target_price
    return False
