"""
Deposit Calculator

Pure policy function: how much deposit a puppy at a given price costs.
Never raises; bad inputs fall back to defaults.
"""
import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Literal

from app.core.config import settings

DEFAULT_FIXED_DEPOSIT = Decimal("300")
_CENT = Decimal("0.01")

DepositMode = Literal["fixed", "percent"]


def _positive(value: Any) -> Decimal | None:
    """Decimal for finite values > 0, None for anything else"""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, float) and not math.isfinite(value):
            return None
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


def _round_cents(amount: Decimal) -> Decimal:
    try:
        return amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # beyond the context precision; no cents to round
        return amount


def _price_cents(price_usd: Any) -> Decimal | None:
    """Known price in whole cents; a positive sub-cent price counts as one cent"""
    price = _positive(price_usd)
    if price is None:
        return None
    return max(_round_cents(price), _CENT)


def calculate_deposit(
    price_usd: Any,
    mode: str = "fixed",
    fixed_amount: Any = DEFAULT_FIXED_DEPOSIT,
    percent: Any = None,
    cap: Any = None,
    min_amount: Any = None,
) -> Decimal:
    """
    Deposit owed for a puppy.

    Args:
        price_usd: Full price; None or non-positive means unknown (no clamping)
        mode: "fixed" or "percent"; percent needs a known price and percent > 0
        fixed_amount: Fixed deposit, default 300
        percent: Ratio used in percent mode (0.25 == 25%)
        cap: Upper bound applied in percent mode
        min_amount: Floor, applied before the final clamp to price

    Returns:
        Amount rounded half-up to cents; with a known price it lies in
        (0, price], the price itself taken in whole cents.
    """
    price = _price_cents(price_usd)
    fixed = _positive(fixed_amount) or DEFAULT_FIXED_DEPOSIT
    ratio = _positive(percent)
    ceiling = _positive(cap)
    floor = _positive(min_amount)

    if mode == "percent" and price is not None and ratio is not None:
        amount = price * ratio
        if ceiling is not None:
            amount = min(amount, ceiling)
    else:
        amount = min(fixed, price) if price is not None else fixed

    if floor is not None:
        amount = max(amount, floor)
    if price is not None:
        amount = min(amount, price)

    # never below one cent; a known price is at least that much
    return max(_round_cents(amount), _CENT)


def deposit_for_puppy(price_usd: Any) -> Decimal:
    """Deposit under the configured policy"""
    return calculate_deposit(
        price_usd,
        mode=settings.DEPOSIT_MODE,
        fixed_amount=settings.DEPOSIT_FIXED_AMOUNT,
        percent=settings.DEPOSIT_PERCENT,
        cap=settings.DEPOSIT_CAP,
        min_amount=settings.DEPOSIT_MIN,
    )
