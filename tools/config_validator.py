"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class LoopConfig(BaseModel):
    """Control loop scheduling"""
    interval_seconds: float = Field(default=180, gt=0, description="Seconds between ticks")
    jitter_pct: float = Field(default=10, ge=0, le=100, description="Random extra delay, % of interval")
    position_sync_interval_seconds: float = Field(default=60, gt=0, description="Position sync cadence")


class LocksConfig(BaseModel):
    """Lease TTLs"""
    trading_lock_ttl_seconds: int = Field(default=120, gt=0, description="Per-account lock TTL")
    symbol_lock_ttl_seconds: int = Field(default=120, gt=0, description="Per symbol+side lock TTL")


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker parameters"""
    cooldown_minutes: float = Field(default=30, gt=0, description="Tripped duration (minutes)")
    max_consecutive_ai_failures: int = Field(default=3, gt=0, description="AI failures before trip")
    max_consecutive_losses: int = Field(default=5, gt=0, description="Losing trades before trip")


class ReconcilerConfig(BaseModel):
    grace_period_seconds: int = Field(default=180, ge=0, description="New positions kept while exchange catches up")


class ValidatorConfig(BaseModel):
    """Pre-trade validation limits"""
    max_positions: int = Field(default=3, gt=0, description="Max concurrent positions")
    max_same_direction: int = Field(default=2, gt=0, description="Max positions on one side")
    min_position_usd: float = Field(default=200, gt=0, description="Minimum notional cap (USD)")
    min_position_pct_of_account: float = Field(default=10, gt=0, le=100, description="Minimum notional, % of account")
    duplicate_guard_seconds: int = Field(default=60, ge=0)
    cooldown_seconds: int = Field(default=300, ge=0)
    memory_guard_seconds: int = Field(default=60, ge=0)

    @field_validator("max_same_direction")
    @classmethod
    def validate_same_direction(cls, v: int, info) -> int:
        """Ensure max_same_direction <= max_positions"""
        max_positions = info.data.get("max_positions")
        if max_positions is not None and v > max_positions:
            raise ValueError(f"max_same_direction ({v}) must be <= max_positions ({max_positions})")
        return v


class RiskConfig(BaseModel):
    """Legacy per-trade caps"""
    max_leverage: float = Field(default=10, ge=1, description="Max leverage")
    max_position_size: float = Field(default=0.5, gt=0, le=10, description="Max notional as fraction of account")


class TrendGuardConfig(BaseModel):
    enabled: bool = True
    min_strength: int = Field(default=6, ge=1, le=10, description="Blocking threshold (1-10)")
    interval: str = Field(default="1h", pattern="^(1m|5m|15m|1h|4h|1d)$")
    lookback_candles: int = Field(default=60, ge=50, description="Needs 50+ for EMA50")


class ExecutorConfig(BaseModel):
    """Protective order placement"""
    protective_max_attempts: int = Field(default=3, gt=0)
    protective_backoff_seconds: float = Field(default=2.0, ge=0)
    default_stop_loss_pct: float = Field(default=3.0, gt=0, lt=100)
    default_take_profit_pct: float = Field(default=0.8, gt=0)
    percent_threshold_ratio: float = Field(default=0.1, gt=0, lt=1)


class BacktestAssetConfig(BaseModel):
    max_leverage: float = Field(gt=0)
    funding_rate_hourly: float = Field(default=0.0000125, ge=-0.01, le=0.01)
    tier: str = Field(default="tier3", pattern="^tier[123]$")


class BacktestConfig(BaseModel):
    """Backtest simulation constants"""
    interval: str = Field(default="5m", pattern="^(1m|5m|15m|1h|4h|1d)$")
    step_size: int = Field(default=6, gt=0)
    warmup_candles: int = Field(default=50, ge=0)
    min_candles: int = Field(default=10, gt=0)
    max_ai_calls_per_chunk: int = Field(default=12, gt=0)
    chunk_time_budget_seconds: float = Field(default=240, gt=0)
    progress_every_steps: int = Field(default=5, gt=0)
    max_margin_fraction: float = Field(default=0.2, gt=0, le=1)
    default_leverage: float = Field(default=5, ge=1)
    min_capital_fraction: float = Field(default=0.1, ge=0, lt=1)
    taker_fee: float = Field(default=0.00035, ge=0, lt=0.01)
    liquidation_fee: float = Field(default=0.005, ge=0, lt=0.1)
    sharpe_annualization: int = Field(default=252, gt=0)
    assets: Dict[str, BacktestAssetConfig] = Field(default_factory=dict)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    loop: LoopConfig = Field(default_factory=LoopConfig)
    locks: LocksConfig = Field(default_factory=LocksConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    trend_guard: TrendGuardConfig = Field(default_factory=TrendGuardConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = "perptrader"
    mode: Literal["DRY_RUN", "LIVE"] = "DRY_RUN"


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = None
    audit_file: Optional[str] = None


class StoreConfig(BaseModel):
    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str = "data/perptrader.db"


class ExchangeConfig(BaseModel):
    name: Literal["hyperliquid"] = "hyperliquid"
    testnet: bool = True
    timeout_seconds: float = Field(default=10, gt=0)
    max_retries: int = Field(default=3, ge=0)


class DecisionSourceConfig(BaseModel):
    provider: Literal["openai", "anthropic", "openrouter", "scripted"] = "openai"
    model: str = Field(default="gpt-4o-mini", min_length=1)
    api_key_env: str = "OPENAI_API_KEY"
    base_url: Optional[str] = None
    timeout_seconds: float = Field(default=60, gt=0)
    max_tokens: int = Field(default=1500, gt=0)
    temperature: float = Field(default=0.2, ge=0, le=2)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: Optional[str] = "ALERT_WEBHOOK_URL"
    min_severity: str = "warning"
    dedupe_seconds: float = Field(default=60, ge=0)
    timeout_seconds: float = Field(default=5, gt=0)
    dry_run: bool = False

    @field_validator("min_severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        if v.lower() not in ("info", "warning", "critical"):
            raise ValueError(f"min_severity must be info, warning or critical, got {v!r}")
        return v.lower()


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class AccountEntry(BaseModel):
    """One trading account"""
    id: str = Field(min_length=1)
    name: Optional[str] = None
    wallet_address: Optional[str] = None
    wallet_address_env: Optional[str] = None
    private_key_env: Optional[str] = None
    is_active: bool = True
    testnet: Optional[bool] = None
    initial_capital: float = Field(default=1000, gt=0)
    symbols: List[str] = Field(default_factory=lambda: ["BTC", "ETH", "SOL"], min_length=1)
    max_leverage: Optional[float] = Field(default=None, ge=1)
    max_position_size: Optional[float] = Field(default=None, gt=0)
    max_positions: Optional[int] = Field(default=None, gt=0)
    max_same_direction: Optional[int] = Field(default=None, gt=0)
    min_position_usd: Optional[float] = Field(default=None, gt=0)
    circuit_breaker: Optional[CircuitBreakerConfig] = None

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v: List[str]) -> List[str]:
        """Bare perp symbols, no quote suffix"""
        for symbol in v:
            if "-" in symbol or "/" in symbol or symbol != symbol.upper():
                raise ValueError(f"Symbol {symbol!r} must be an uppercase bare perp symbol (e.g. BTC)")
        return v


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    decision_source: DecisionSourceConfig = Field(default_factory=DecisionSourceConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    accounts: List[AccountEntry] = Field(default_factory=list)

    @field_validator("accounts")
    @classmethod
    def validate_unique_ids(cls, v: List[AccountEntry]) -> List[AccountEntry]:
        seen = set()
        for account in v:
            if account.id in seen:
                raise ValueError(f"Duplicate account id: {account.id}")
            seen.add(account.id)
        return v


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    raw_lines = file_path.read_text().splitlines()
    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"{filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across app.yaml and policy.yaml.

    Detects:
    - LIVE accounts that cannot sign orders
    - Account leverage above every backtest asset cap
    - Account limits looser than the policy allows
    """
    errors: List[str] = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    for account in app.accounts:
        if app.app.mode == "LIVE" and account.is_active and not account.private_key_env:
            errors.append(f"accounts -> {account.id}: LIVE mode requires private_key_env")
        if not account.wallet_address and not account.wallet_address_env:
            errors.append(f"accounts -> {account.id}: wallet_address or wallet_address_env is required")
        if account.max_same_direction and account.max_positions and account.max_same_direction > account.max_positions:
            errors.append(
                f"accounts -> {account.id}: max_same_direction ({account.max_same_direction}) "
                f"> max_positions ({account.max_positions})"
            )

    if policy.backtest.warmup_candles < 50:
        logger.warning("backtest.warmup_candles < 50: SMA50 context will be missing for early steps")

    if not errors:
        logger.info("Configuration sanity checks passed")
    else:
        logger.warning(f"{len(errors)} sanity check issue(s) found")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency), only when schemas pass

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors: List[str] = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")
    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)
    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    print("\nAll configuration files are valid!\n")
    sys.exit(0)
