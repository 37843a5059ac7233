"""
perptrader Core: Protective Order Prices

Pure sanitization of decision-supplied stop-loss / take-profit levels before
they reach the exchange, plus the invalidation text stored on each position.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from core.models import Side

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtectiveConfig:
    default_stop_loss_pct: float = 3.0
    default_take_profit_pct: float = 0.8
    # Values below entry * ratio are read as percentages, not prices
    percent_threshold_ratio: float = 0.1


@dataclass
class ProtectivePrices:
    stop_loss: float
    take_profit: Optional[float]
    adjustments: List[str] = field(default_factory=list)


def _offset(entry: float, pct: float, side: Side, favorable: bool) -> float:
    up = (side is Side.LONG) == favorable
    return entry * (1 + pct / 100) if up else entry * (1 - pct / 100)


def sanitize_protective_prices(
    side: Side,
    entry_price: float,
    stop_loss: Optional[float],
    take_profit: Optional[float],
    config: ProtectiveConfig = ProtectiveConfig(),
) -> ProtectivePrices:
    """
    Normalize SL/TP into absolute prices on the correct side of entry.

    - 0 < value < entry * threshold: interpreted as a percentage distance
    - stop-loss missing or on the wrong side: default stop distance
    - take-profit on the wrong side: default take-profit distance
    - take-profit missing: stays None
    """
    if entry_price <= 0:
        raise ValueError(f"Invalid entry price: {entry_price}")

    adjustments: List[str] = []
    threshold = entry_price * config.percent_threshold_ratio

    sl = stop_loss if stop_loss and stop_loss > 0 else None
    tp = take_profit if take_profit and take_profit > 0 else None

    if sl is not None and sl < threshold:
        converted = _offset(entry_price, sl, side, favorable=False)
        adjustments.append(f"stop_loss {sl} read as {sl}% -> {converted:.4f}")
        sl = converted
    if tp is not None and tp < threshold:
        converted = _offset(entry_price, tp, side, favorable=True)
        adjustments.append(f"take_profit {tp} read as {tp}% -> {converted:.4f}")
        tp = converted

    if sl is None:
        sl = _offset(entry_price, config.default_stop_loss_pct, side, favorable=False)
        adjustments.append(f"stop_loss missing, default {config.default_stop_loss_pct}%")
    else:
        wrong_side = sl >= entry_price if side is Side.LONG else sl <= entry_price
        if wrong_side:
            corrected = _offset(entry_price, config.default_stop_loss_pct, side, favorable=False)
            adjustments.append(f"stop_loss {sl} on wrong side of entry, reset to {corrected:.4f}")
            sl = corrected

    if tp is not None:
        wrong_side = tp <= entry_price if side is Side.LONG else tp >= entry_price
        if wrong_side:
            corrected = _offset(entry_price, config.default_take_profit_pct, side, favorable=True)
            adjustments.append(f"take_profit {tp} on wrong side of entry, reset to {corrected:.4f}")
            tp = corrected

    for note in adjustments:
        logger.warning(f"Protective price adjusted ({side.value} @ {entry_price}): {note}")

    return ProtectivePrices(stop_loss=sl, take_profit=tp, adjustments=adjustments)


def generate_invalidation_condition(
    symbol: str,
    side: Side,
    entry_price: float,
    stop_loss: Optional[float] = None,
) -> str:
    direction = "below" if side is Side.LONG else "above"
    if not stop_loss:
        default_stop_pct = 0.05
        price = entry_price * (1 - default_stop_pct) if side is Side.LONG else entry_price * (1 + default_stop_pct)
        return (
            f"If {symbol} price closes {direction} ${price:.2f} "
            f"({default_stop_pct * 100:.1f}% against entry) on 3-minute candle"
        )
    stop_pct = abs((stop_loss - entry_price) / entry_price) * 100
    return f"If {symbol} price closes {direction} ${stop_loss:.2f} ({stop_pct:.1f}% stop loss) on 3-minute candle"
