"""
perptrader Core: Cost Model

Centralized perp trading costs for backtest simulation: taker fees,
hourly funding, maintenance margin and the liquidation fee, plus per-asset
leverage caps and liquidity tiers.

Funding uses a fixed hourly rate per asset rather than historical funding
data. This is a known simplification of the simulation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.models import Side

logger = logging.getLogger(__name__)

DEFAULT_TAKER_FEE = 0.00035  # 3.5 bps Hyperliquid taker, per side
DEFAULT_LIQUIDATION_FEE = 0.005
DEFAULT_FUNDING_RATE_HOURLY = 0.0000125


@dataclass(frozen=True)
class AssetParams:
    max_leverage: float = 10.0
    tier: str = "tier3"
    funding_rate_hourly: float = DEFAULT_FUNDING_RATE_HOURLY

    @property
    def maintenance_margin_rate(self) -> float:
        """Half of the initial margin at max leverage."""
        return 1.0 / (2.0 * self.max_leverage)


@dataclass
class CostConfig:
    """Cost model configuration"""
    taker_fee: float = DEFAULT_TAKER_FEE
    liquidation_fee: float = DEFAULT_LIQUIDATION_FEE
    assets: Dict[str, AssetParams] = field(default_factory=lambda: {
        "BTC": AssetParams(max_leverage=40, tier="tier1"),
        "ETH": AssetParams(max_leverage=25, tier="tier1"),
        "SOL": AssetParams(max_leverage=20, tier="tier2"),
    })
    default_asset: AssetParams = field(default_factory=AssetParams)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CostConfig":
        """Build from the `backtest` section of policy.yaml."""
        data = data or {}
        raw_assets = dict(data.get("assets") or {})
        default_raw = raw_assets.pop("default", None) or {}

        def _asset(raw: Dict[str, Any]) -> AssetParams:
            return AssetParams(
                max_leverage=float(raw.get("max_leverage", 10.0)),
                tier=str(raw.get("tier", "tier3")),
                funding_rate_hourly=float(raw.get("funding_rate_hourly", DEFAULT_FUNDING_RATE_HOURLY)),
            )

        config = cls(
            taker_fee=float(data.get("taker_fee", DEFAULT_TAKER_FEE)),
            liquidation_fee=float(data.get("liquidation_fee", DEFAULT_LIQUIDATION_FEE)),
            default_asset=_asset(default_raw),
        )
        if raw_assets:
            config.assets = {symbol.upper(): _asset(raw or {}) for symbol, raw in raw_assets.items()}
        return config


class CostModel:
    """
    Perp cost model.

    Cost components:
    1. Taker fee on entry and exit notional
    2. Funding: notional x hourly rate per whole hour held; longs pay a
       positive rate, shorts receive it
    3. Liquidation fee on notional when equity falls to maintenance margin
    """

    def __init__(self, config: Optional[CostConfig] = None):
        self.config = config or CostConfig()

    def asset(self, symbol: str) -> AssetParams:
        return self.config.assets.get(symbol.upper(), self.config.default_asset)

    def clamp_leverage(self, symbol: str, leverage: float, account_cap: Optional[float] = None) -> float:
        cap = self.asset(symbol).max_leverage
        if account_cap is not None:
            cap = min(cap, account_cap)
        return max(1.0, min(leverage, cap))

    def fee(self, notional: float) -> float:
        return notional * self.config.taker_fee

    def funding(self, symbol: str, side: Side, notional: float, hours: int = 1) -> float:
        """Funding cost for `hours` whole hours. Negative means the position is paid."""
        cost = notional * self.asset(symbol).funding_rate_hourly * hours
        return cost if side is Side.LONG else -cost

    def maintenance_margin(self, symbol: str, notional: float) -> float:
        return notional * self.asset(symbol).maintenance_margin_rate

    def liquidation_fee(self, notional: float) -> float:
        return notional * self.config.liquidation_fee

    def get_summary(self) -> dict:
        """Get cost model configuration summary for logging"""
        return {
            "taker_fee_pct": f"{self.config.taker_fee * 100:.3f}%",
            "liquidation_fee_pct": f"{self.config.liquidation_fee * 100:.2f}%",
            "assets": {
                symbol: {
                    "max_leverage": a.max_leverage,
                    "tier": a.tier,
                    "funding_rate_hourly": a.funding_rate_hourly,
                }
                for symbol, a in self.config.assets.items()
            },
        }

