"""
Slippage Model for Perp Backtesting

Simulates fill prices for market entries and triggered exits:
- Tier-based base slippage (liquidity of the asset)
- Market impact (larger notional = more slippage)
- Volatility scaling from the fill candle's high/low range

Stops take the full slippage, take-profits half.
"""
import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional

logger = logging.getLogger(__name__)

FillKind = Literal["entry", "stop", "take_profit"]


@dataclass
class SlippageConfig:
    """Configuration for slippage simulation"""
    # Base slippage per tier (bps from reference price)
    tier1_slippage_bps: float = 5.0    # BTC/ETH
    tier2_slippage_bps: float = 10.0   # Large caps
    tier3_slippage_bps: float = 20.0   # Long tail

    # Candle range (high-low as % of close) considered normal per tier
    tier1_normal_range_pct: float = 0.3
    tier2_normal_range_pct: float = 0.5
    tier3_normal_range_pct: float = 0.8

    # Volatility multiplier is range / normal range, clamped to [0, max]
    max_volatility_multiplier: float = 3.0

    # Market impact cap (larger orders = more impact)
    market_impact_multiplier: float = 1.2

    take_profit_fraction: float = 0.5


class SlippageModel:
    """
    Slippage for simulated perp fills.

    Example:
        Stop-loss on a long at $58,200, tier1, candle range 3x normal
        - Base: 5 bps
        - Volatility: x3
        - Fill: 58,200 * (1 - 0.0015) = $58,112.70
    """

    def __init__(self, config: Optional[SlippageConfig] = None):
        self.config = config or SlippageConfig()

    def _base_bps(self, tier: str) -> float:
        if tier == "tier1":
            return self.config.tier1_slippage_bps
        if tier == "tier2":
            return self.config.tier2_slippage_bps
        return self.config.tier3_slippage_bps

    def _normal_range_pct(self, tier: str) -> float:
        if tier == "tier1":
            return self.config.tier1_normal_range_pct
        if tier == "tier2":
            return self.config.tier2_normal_range_pct
        return self.config.tier3_normal_range_pct

    def volatility_multiplier(self, high: float, low: float, close: float, tier: str) -> float:
        """Candle range relative to the tier's normal range. A zero-range candle gives 0."""
        if close <= 0:
            return 0.0
        range_pct = max(0.0, high - low) / close * 100
        multiplier = range_pct / self._normal_range_pct(tier)
        return max(0.0, min(self.config.max_volatility_multiplier, multiplier))

    def impact_multiplier(self, notional_usd: float) -> float:
        # $10k = 1.0x, $100k = 1.2x (log scale, capped)
        if notional_usd <= 10_000:
            return 1.0
        impact = 1.0 + math.log10(notional_usd / 10_000) * 0.2
        return min(impact, self.config.market_impact_multiplier)

    def slippage_fraction(
        self,
        tier: str,
        notional_usd: float,
        high: float,
        low: float,
        close: float,
        kind: FillKind = "entry",
    ) -> float:
        bps = (
            self._base_bps(tier)
            * self.impact_multiplier(notional_usd)
            * self.volatility_multiplier(high, low, close, tier)
        )
        if kind == "take_profit":
            bps *= self.config.take_profit_fraction
        return bps / 10_000.0

    def fill_price(
        self,
        reference_price: float,
        is_buy: bool,
        tier: str,
        notional_usd: float,
        high: float,
        low: float,
        close: float,
        kind: FillKind = "entry",
    ) -> float:
        """Buy fills above the reference price, sell fills below."""
        if reference_price <= 0:
            raise ValueError(f"Invalid reference price: {reference_price}")
        fraction = self.slippage_fraction(tier, notional_usd, high, low, close, kind)
        return reference_price * (1 + fraction) if is_buy else reference_price * (1 - fraction)
