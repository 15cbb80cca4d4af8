"""
Order sizing, price formatting and P&L for leveraged perp bets.

Sizing from a fixed margin budget:
    size = (margin × leverage) / reference_price

truncated (never rounded up) to the asset's size decimals, so notional
never exceeds margin × leverage.

Hyperliquid price rules (perps):
    at most 5 significant figures, at most (6 - szDecimals) decimals,
    integer prices always accepted, no trailing zeros in the wire string.

All arithmetic is done in Decimal and every cut is ROUND_DOWN.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Union

from config.settings import (
    AGGRESSIVE_SLIPPAGE,
    PRICE_SIG_FIGS,
    MAX_PERP_DECIMALS,
    MAX_SPOT_DECIMALS,
)

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def format_decimal(value: Decimal) -> str:
    """Wire string: no exponent, no trailing zeros, no trailing '.'."""
    if value == 0:
        return "0"
    text = format(value.normalize(), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def truncate(value: Number, decimals: int) -> Decimal:
    """Cut `value` to `decimals` places, always toward zero."""
    if decimals < 0:
        raise ValueError("Decimal places must be non-negative")
    quantum = Decimal(1).scaleb(-decimals)
    return to_decimal(value).quantize(quantum, rounding=ROUND_DOWN)


def compute_order_size(
    margin: Number,
    leverage: int,
    reference_price: Number,
    sz_decimals: int,
) -> str:
    """
    Position size for a margin budget at a given leverage.

    Examples:
        >>> compute_order_size(10, 40, 50000, 5)
        '0.008'
        >>> compute_order_size(10, 20, 3000, 4)
        '0.0666'
    """
    price = to_decimal(reference_price)
    if price <= 0:
        raise ValueError("Reference price must be positive")
    if leverage <= 0:
        raise ValueError("Leverage must be positive")

    notional = to_decimal(margin) * to_decimal(leverage)
    return format_decimal(truncate(notional / price, sz_decimals))


def format_price(price: Number, sz_decimals: int, is_spot: bool = False) -> str:
    """
    Truncate a price to Hyperliquid's precision rules and render it.

    Examples:
        >>> format_price(51000.0, 5)
        '51000'
        >>> format_price(3060.519, 4)
        '3060.5'
        >>> format_price(0.0123456, 0)
        '0.012345'
    """
    value = to_decimal(price)
    if value <= 0:
        raise ValueError("Price must be positive")

    max_decimals = max((MAX_SPOT_DECIMALS if is_spot else MAX_PERP_DECIMALS) - sz_decimals, 0)
    sig_decimals = max(PRICE_SIG_FIGS - 1 - value.adjusted(), 0)
    result = truncate(value, min(sig_decimals, max_decimals))

    if result <= 0:
        raise ValueError(f"Price {price} is below the precision allowed for szDecimals={sz_decimals}")
    return format_decimal(result)


def aggressive_price(
    reference_price: Number,
    is_buy: bool,
    sz_decimals: int,
    slippage: float = AGGRESSIVE_SLIPPAGE,
) -> str:
    """
    Limit price that crosses the book so an IOC order fills immediately.

    Buys pay up to reference × (1 + slippage), sells accept down to
    reference × (1 - slippage).
    """
    offset = to_decimal(slippage)
    multiplier = Decimal(1) + offset if is_buy else Decimal(1) - offset
    return format_price(to_decimal(reference_price) * multiplier, sz_decimals)


# ================================================================
# Outcome
# ================================================================

@dataclass
class PnL:
    """Realized result of one closed bet."""
    dollar_value: float
    percent: float
    is_win: bool


def is_win(direction: str, entry_price: float, exit_price: float) -> bool:
    """
    Up wins only if price rose, down wins only if price fell.

    An unchanged price is a loss for both directions.
    """
    if direction == "up":
        return exit_price > entry_price
    if direction == "down":
        return exit_price < entry_price
    raise ValueError(f"Unknown direction: {direction}")


def compute_pnl(
    direction: str,
    entry_price: float,
    exit_price: float,
    size: Number,
    leverage: Optional[int] = None,
) -> PnL:
    """
    P&L of a closed position. Sign flips for shorts.

    `percent` is return on margin (entry notional / leverage) when leverage
    is known, otherwise the raw price move in percent.
    """
    qty = float(size or 0)
    move = exit_price - entry_price
    if direction == "down":
        move = -move
    dollar_value = move * qty

    if leverage and entry_price > 0 and qty > 0:
        margin_used = entry_price * qty / leverage
        percent = dollar_value / margin_used * 100
    elif entry_price > 0:
        percent = move / entry_price * 100
    else:
        percent = 0.0

    return PnL(
        dollar_value=dollar_value,
        percent=percent,
        is_win=is_win(direction, entry_price, exit_price),
    )
