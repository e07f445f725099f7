from __future__ import annotations

import math


class InsufficientBalance(RuntimeError):
    def __init__(self, required: float, available: float, asset: str = ""):
        super().__init__(
            f"insufficient {asset or 'balance'}: required={required:.8f} available={available:.8f}"
        )
        self.required = required
        self.available = available
        self.asset = asset


def _decimals(step: float) -> int:
    return max(0, int(round(-math.log10(step)))) + 2 if step < 1 else 2


def floor_to_step(value: float, step: float) -> float:
    if step <= 0:
        raise ValueError("step must be > 0")
    if value <= 0:
        return 0.0
    # 4e-5 / 1e-5 is 3.9999999999999996 in binary floating point.
    units = math.floor(value / step + 1e-9)
    decimals = _decimals(step)
    quantity = round(units * step, decimals)
    # The tolerance must never lift the result above the input.
    while units > 0 and quantity > value:
        units -= 1
        quantity = round(units * step, decimals)
    return max(0.0, quantity)


def entry_quantity(
    *,
    portfolio_value: float,
    risk_percent: float,
    volatility: float,
    last_price: float,
    free_balance: float,
    max_position_fraction: float,
    min_amount: float,
    amount_step: float,
    floor_volatility: float = 0.001,
) -> float:
    if last_price <= 0 or portfolio_value <= 0 or free_balance <= 0:
        return 0.0
    risk_amount = portfolio_value * risk_percent / 100
    by_risk = risk_amount / max(volatility, floor_volatility) / last_price
    by_balance = free_balance * max_position_fraction / last_price
    quantity = floor_to_step(min(by_risk, by_balance), amount_step)
    if quantity < min_amount or quantity <= 0:
        return 0.0
    return quantity


def exit_quantity(
    requested: float,
    held: float,
    *,
    min_amount: float,
    amount_step: float,
) -> float:
    # Clamp to the held amount before rounding so dust never exceeds the holding.
    clamped = min(max(0.0, requested), max(0.0, held))
    quantity = floor_to_step(clamped, amount_step)
    if quantity < min_amount or quantity <= 0:
        return 0.0
    return quantity


def required_quote(quantity: float, price: float, *, leverage: int = 1) -> float:
    if quantity <= 0 or price <= 0:
        return 0.0
    return quantity * price / max(1, leverage)


def ensure_affordable(quantity: float, price: float, available: float, *, leverage: int = 1, asset: str = "") -> None:
    required = required_quote(quantity, price, leverage=leverage)
    if required > available:
        raise InsufficientBalance(required, available, asset)
