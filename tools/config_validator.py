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
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class _Section(BaseModel):
    # Unknown keys are almost always typos in a trading config
    model_config = ConfigDict(extra="forbid")


# ===== App Schema =====
class AppSection(_Section):
    mode: str = Field(default="PAPER", pattern="^(DRY_RUN|PAPER|LIVE)$", description="Run mode")
    name: str = Field(default="lifecycle-engine", min_length=1)


class LoggingConfig(_Section):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/lifecycle.log", min_length=1)


class BrokerConfig(_Section):
    """Broker endpoints, timeouts and retry budget"""
    trading_base: Optional[str] = Field(default=None, description="Override trading API base URL")
    data_base: Optional[str] = Field(default=None, description="Override market data base URL")
    crypto_location: str = Field(default="us", min_length=1)
    trading_connect_timeout_seconds: float = Field(default=2.0, gt=0)
    trading_read_timeout_seconds: float = Field(default=5.0, gt=0)
    market_data_connect_timeout_seconds: float = Field(default=1.0, gt=0)
    market_data_read_timeout_seconds: float = Field(default=2.0, gt=0)
    backoff_schedule_ms: List[int] = Field(default_factory=lambda: [250, 500, 1000])
    total_retry_seconds: float = Field(default=3.0, gt=0)

    @field_validator("backoff_schedule_ms")
    @classmethod
    def validate_backoff(cls, v: List[int]) -> List[int]:
        if any(delay < 0 for delay in v):
            raise ValueError("backoff delays must be >= 0")
        return v


class LoopConfig(_Section):
    entry_interval_seconds: float = Field(default=60, gt=0)
    manage_interval_seconds: float = Field(default=5, gt=0)
    reconcile_interval_seconds: Optional[float] = Field(default=None, gt=0)
    instrument_refresh_seconds: float = Field(default=3600, gt=0)
    jitter_pct: float = Field(default=10.0, ge=0, le=20)
    worker_threads: int = Field(default=8, gt=0, le=64)


class MetricsConfig(_Section):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


# ===== Policy Schema =====
class UniverseConfig(_Section):
    symbols: List[str] = Field(default_factory=list, description="Symbols to trade; empty = all USD crypto pairs")
    max_symbols: int = Field(default=20, gt=0)


class QuotesConfig(_Section):
    """Quote freshness, caching and per-symbol cooldown"""
    max_quote_age_ms: float = Field(default=30000, gt=0)
    absurd_age_ms: float = Field(default=86400000, gt=0)
    crypto_cache_ttl_ms: float = Field(default=2000, ge=0)
    equity_cache_ttl_ms: float = Field(default=5000, ge=0)
    last_known_max_age_ms: float = Field(default=120000, ge=0)
    failure_threshold: int = Field(default=3, gt=0)
    failure_window_ms: float = Field(default=60000, gt=0)
    failure_cooldown_ms: float = Field(default=60000, ge=0)


class PricingSection(_Section):
    """Fee-aware exit pricing"""
    desired_net_bps: float = Field(default=50.0, ge=0)
    maker_fee_bps: float = Field(default=15.0, ge=0)
    taker_fee_bps: float = Field(default=25.0, ge=0)
    slippage_bps: float = Field(default=5.0, ge=0)
    spread_buffer_bps: float = Field(default=5.0, ge=0)
    profit_buffer_bps: float = Field(default=0.0, ge=0)
    cap_bps: Optional[float] = Field(default=300.0, gt=0)
    min_gross_take_profit_bps: float = Field(default=20.0, ge=0)
    spread_floor_bps: float = Field(default=0.0, ge=0)
    spread_cap_bps: float = Field(default=200.0, gt=0)
    spread_multiplier: float = Field(default=1.0, ge=0)
    spread_add_bps: float = Field(default=0.0, ge=0)
    crypto_tick_size: float = Field(default=0.01, gt=0)
    equity_tick_size: float = Field(default=0.01, gt=0)


class EntrySection(_Section):
    """Entry gates and the expected-value model"""
    max_spread_bps: float = Field(default=25.0, gt=0)
    quote_max_age_ms: float = Field(default=30000, gt=0)
    orderbook_gate_enabled: bool = True
    depth_band_bps: float = Field(default=50.0, gt=0)
    min_depth_usd: float = Field(default=5000.0, ge=0)
    impact_reference_notional_usd: float = Field(default=1000.0, gt=0)
    max_impact_bps: float = Field(default=15.0, gt=0)
    bars_timeframe: str = Field(default="1Min", pattern="^(1Min|5Min|15Min|1Hour)$")
    bars_limit: int = Field(default=60, gt=1, le=1000)
    min_bars: int = Field(default=20, gt=1)
    vol_half_life_bars: float = Field(default=20.0, gt=0)
    horizon_bars: float = Field(default=30.0, gt=0)
    spread_ewma_alpha: float = Field(default=0.2, gt=0, le=1)
    slippage_ewma_alpha: float = Field(default=0.2, gt=0, le=1)
    stop_vol_multiplier: float = Field(default=2.0, gt=0)
    min_stop_bps: float = Field(default=50.0, gt=0)
    max_stop_bps: float = Field(default=500.0, gt=0)
    momentum_lookback: int = Field(default=10, gt=0)
    ev_guard_enabled: bool = True
    min_ev_bps: float = 0.0
    entry_order_type: str = Field(default="limit", pattern="^(limit|market)$")
    entry_time_in_force: str = Field(default="gtc", pattern="^(gtc|ioc|fok|day)$")


class SizingSection(_Section):
    portfolio_fraction: float = Field(default=0.10, gt=0, le=1)
    min_notional_usd: float = Field(default=10.0, ge=0)
    min_qty: float = Field(default=0.0, ge=0)
    crypto_qty_increment: float = Field(default=1e-8, gt=0)
    equity_qty_increment: float = Field(default=1.0, gt=0)
    max_active_symbols: int = Field(default=5, gt=0)


class LifecycleSection(_Section):
    """Entry fill wait and exit management"""
    client_order_tag: str = Field(default="lct", pattern="^[A-Za-z0-9]{1,12}$")
    intent_window_seconds: float = Field(default=300, gt=0)
    in_flight_ttl_seconds: float = Field(default=180, gt=0)
    equity_time_in_force: str = Field(default="day", pattern="^(gtc|day)$")
    fill_timeout_seconds: float = Field(default=60, gt=0)
    fill_poll_interval_seconds: float = Field(default=3, gt=0)
    market_fallback_on_timeout: bool = True
    market_fallback_max_spread_bps: float = Field(default=25, gt=0)
    taker_fill_timeout_seconds: float = Field(default=5, gt=0)
    cancellation_policy: str = Field(default="replace_only", pattern="^(replace_only|allow)$")
    taker_exit_on_touch: bool = True
    taker_cooldown_ms: float = Field(default=15000, ge=0)
    stop_loss_bps: float = Field(default=150, ge=0)
    max_age_ms: Optional[float] = Field(default=6 * 3600 * 1000, ge=0)
    allow_loss_on_force_exit: bool = False
    max_hold_ms: Optional[float] = Field(default=2 * 3600 * 1000, ge=0)
    reprice_min_age_ms: float = Field(default=30000, ge=0)
    reprice_threshold_bps: float = Field(default=10, ge=0)
    reprice_cooldown_ms: float = Field(default=20000, ge=0)


class ReconcileSection(_Section):
    interval_seconds: float = Field(default=60, gt=0)
    min_interval_seconds: float = Field(default=10, ge=0)
    missing_grace_ms: float = Field(default=30000, ge=0)
    dust_qty: float = Field(default=1e-6, ge=0)
    dust_usd: float = Field(default=1.0, ge=0)
    repair_orphans: bool = True
    halt_on_orphans: bool = True
    lock_timeout_seconds: float = Field(default=5.0, gt=0)


class ConcurrencySection(_Section):
    trading_max_concurrent: int = Field(default=4, gt=0)
    market_data_max_concurrent: int = Field(default=4, gt=0)
    market_data_failure_threshold: int = Field(default=5, gt=0)
    market_data_failure_window_seconds: float = Field(default=60, gt=0)
    market_data_cooldown_seconds: float = Field(default=30, ge=0)


class CacheSection(_Section):
    account_ttl_seconds: float = Field(default=5, ge=0)
    positions_ttl_seconds: float = Field(default=2, ge=0)
    orders_ttl_seconds: float = Field(default=2, ge=0)
    clock_ttl_seconds: float = Field(default=30, ge=0)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    universe: UniverseConfig = Field(default_factory=UniverseConfig)
    quotes: QuotesConfig = Field(default_factory=QuotesConfig)
    pricing: PricingSection = Field(default_factory=PricingSection)
    entry: EntrySection = Field(default_factory=EntrySection)
    sizing: SizingSection = Field(default_factory=SizingSection)
    lifecycle: LifecycleSection = Field(default_factory=LifecycleSection)
    reconcile: ReconcileSection = Field(default_factory=ReconcileSection)
    concurrency: ConcurrencySection = Field(default_factory=ConcurrencySection)
    cache: CacheSection = Field(default_factory=CacheSection)


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
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict (an empty file yields {}).

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        if not isinstance(config, dict):
            return [f"{filename}: top level must be a mapping"]
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across app.yaml and policy.yaml.

    Detects contradictions (e.g. maker fee above taker fee) and unsafe
    combinations (e.g. LIVE mode pointed at the paper endpoint).
    """
    errors = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    pricing = policy.pricing
    if pricing.maker_fee_bps > pricing.taker_fee_bps:
        errors.append(
            f"CONTRADICTION: pricing.maker_fee_bps ({pricing.maker_fee_bps}) exceeds "
            f"taker_fee_bps ({pricing.taker_fee_bps})"
        )
    if pricing.cap_bps is not None and pricing.cap_bps < pricing.min_gross_take_profit_bps:
        errors.append(
            f"CONTRADICTION: pricing.cap_bps ({pricing.cap_bps}) is below "
            f"min_gross_take_profit_bps ({pricing.min_gross_take_profit_bps})"
        )
    if pricing.spread_floor_bps > pricing.spread_cap_bps:
        errors.append("CONTRADICTION: pricing.spread_floor_bps exceeds spread_cap_bps")

    entry = policy.entry
    if entry.min_stop_bps > entry.max_stop_bps:
        errors.append(
            f"CONTRADICTION: entry.min_stop_bps ({entry.min_stop_bps}) exceeds max_stop_bps ({entry.max_stop_bps})"
        )
    if entry.min_bars > entry.bars_limit:
        errors.append(f"CONTRADICTION: entry.min_bars ({entry.min_bars}) exceeds bars_limit ({entry.bars_limit})")

    lifecycle = policy.lifecycle
    if lifecycle.max_hold_ms and lifecycle.max_age_ms and lifecycle.max_hold_ms > lifecycle.max_age_ms:
        errors.append(
            "CONTRADICTION: lifecycle.max_hold_ms exceeds max_age_ms (the max-hold exit could never fire)"
        )
    if lifecycle.fill_poll_interval_seconds > lifecycle.fill_timeout_seconds:
        errors.append("CONTRADICTION: lifecycle.fill_poll_interval_seconds exceeds fill_timeout_seconds")

    if app.app.mode == "LIVE" and app.broker.trading_base and "paper" in app.broker.trading_base:
        errors.append("UNSAFE: app.mode=LIVE but broker.trading_base points at the paper endpoint")
    if app.app.mode != "LIVE" and app.broker.trading_base and "paper" not in app.broker.trading_base:
        errors.append(f"UNSAFE: app.mode={app.app.mode} but broker.trading_base is not a paper endpoint")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
