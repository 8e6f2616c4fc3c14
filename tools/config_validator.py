"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas and fills in defaults so the
rest of the system can read plain dict sections with .get().

Usage:
    from tools.config_validator import validate_app_config

    errors = validate_app_config("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


class ConfigError(ValueError):
    """app.yaml is missing, malformed, or fails validation."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


# ===== App Schema =====
class StreamConfig(BaseModel):
    """Price stream reconnect/keepalive settings"""
    reconnect_base_seconds: float = Field(default=1.0, gt=0, description="First reconnect delay")
    reconnect_max_seconds: float = Field(default=30.0, gt=0, description="Reconnect delay ceiling")
    max_reconnect_attempts: int = Field(default=5, gt=0, description="Consecutive failures before giving up")
    ping_interval_seconds: float = Field(default=30.0, gt=0, description="Keepalive ping interval")

    @model_validator(mode="after")
    def validate_delays(self) -> "StreamConfig":
        if self.reconnect_max_seconds < self.reconnect_base_seconds:
            raise ValueError("reconnect_max_seconds must be >= reconnect_base_seconds")
        return self


class ExchangeConfig(BaseModel):
    """Venue connection"""
    venue: str = Field(default="binance", pattern="^binance$", description="Exchange adapter")
    testnet: bool = Field(default=False, description="Use the venue testnet")
    api_key_env: str = Field(default="BINANCE_API_KEY", min_length=1)
    api_secret_env: str = Field(default="BINANCE_API_SECRET", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0)
    stream: StreamConfig = Field(default_factory=StreamConfig)


class CloseConfig(BaseModel):
    """Close-order escalation"""
    limit_attempts: int = Field(default=3, ge=1, description="Reduce-only LIMIT attempts before MARKET")
    limit_offset: float = Field(default=0.0005, ge=0, lt=0.05, description="LIMIT price offset through market")
    limit_retry_delay_seconds: float = Field(default=1.0, ge=0)
    market_retry_delay_seconds: float = Field(default=1.0, ge=0)


class TradingConfig(BaseModel):
    """Signal and execution parameters"""
    symbol: str = Field(default="BTC/USDT", description="Unified symbol BASE/QUOTE")
    leverage: int = Field(default=20, ge=1, le=125)
    proximity_threshold: float = Field(default=0.001, gt=0, lt=0.1, description="Relative distance counting as a level hit")
    stop_factor: float = Field(default=0.0016, gt=0, lt=1, description="Initial stop distance from entry")
    trail_factor: float = Field(default=0.0016, gt=0, lt=1, description="Trailing stop distance from price")
    max_resting_orders_per_side: int = Field(default=4, ge=1, description="Duplicate-signal throttle")
    level_refresh_seconds: float = Field(default=300.0, gt=0)
    close: CloseConfig = Field(default_factory=CloseConfig)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError(f"symbol must look like BASE/QUOTE, got {v!r}")
        return v.upper()


class StakeConfig(BaseModel):
    """Anti-martingale stake bounds, in percent of balance"""
    initial_pct: float = Field(default=6.0, gt=0, le=100)
    min_pct: float = Field(default=1.5, gt=0, le=100)
    max_pct: float = Field(default=6.0, gt=0, le=100)

    @model_validator(mode="after")
    def validate_bounds(self) -> "StakeConfig":
        if not self.min_pct <= self.initial_pct <= self.max_pct:
            raise ValueError(
                f"stake must satisfy min_pct <= initial_pct <= max_pct "
                f"(got {self.min_pct}, {self.initial_pct}, {self.max_pct})"
            )
        return self


class RiskConfig(BaseModel):
    """Entry gate limits"""
    max_daily_losses: int = Field(default=3, ge=1)
    max_drawdown: float = Field(default=0.15, gt=0, le=1, description="Fraction of baseline balance")
    enforce_drawdown: bool = Field(default=True)


class LevelsConfig(BaseModel):
    """Swing-pivot level detection"""
    swing_window: int = Field(default=2, ge=1)
    merge_tolerance: float = Field(default=0.001, ge=0, lt=0.1)
    max_levels_per_timeframe: int = Field(default=10, ge=1)
    candle_limits: Dict[str, int] = Field(default_factory=lambda: {"4h": 80, "1h": 320, "15m": 1280, "5m": 3840})

    @field_validator("candle_limits")
    @classmethod
    def validate_candle_limits(cls, v: Dict[str, int]) -> Dict[str, int]:
        for timeframe, limit in v.items():
            if timeframe not in ("4h", "1h", "15m", "5m"):
                raise ValueError(f"unknown timeframe {timeframe!r}")
            if limit < 5:
                raise ValueError(f"candle limit for {timeframe} must be >= 5, got {limit}")
        return v


class StateConfig(BaseModel):
    path: str = Field(default="state/trading_state.json", min_length=1)
    lock_dir: str = Field(default="state", min_length=1)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/levelbounce.log")


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=1, le=65535)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    stake: StakeConfig = Field(default_factory=StakeConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    levels: LevelsConfig = Field(default_factory=LevelsConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


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
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

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


def _validate(config_dir: Path) -> Tuple[Optional[AppSchema], List[str]]:
    errors: List[str] = []
    app_path = config_dir / APP_CONFIG_FILE
    try:
        raw = load_yaml_file(app_path)
        if not isinstance(raw, dict):
            return None, [f"{APP_CONFIG_FILE}: top level must be a mapping"]
        return AppSchema(**raw), errors
    except FileNotFoundError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{APP_CONFIG_FILE}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{APP_CONFIG_FILE}: {field}: {error['msg']}")
    return None, errors


def validate_app_config(config_dir: str = "config") -> List[str]:
    """
    Validate app.yaml.

    Returns:
        List of error messages (empty if valid)
    """
    _, errors = _validate(Path(config_dir))
    if not errors:
        logger.info("✅ app.yaml validation passed")
    else:
        logger.error(f"❌ {len(errors)} validation error(s) found")
    return errors


def load_app_config(config_dir: str = "config", overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load, validate and default-fill app.yaml.

    Args:
        config_dir: Directory holding app.yaml
        overrides: Section-level values merged over the file (e.g. {"exchange": {"testnet": True}})

    Raises:
        ConfigError: listing every validation problem
    """
    schema, errors = _validate(Path(config_dir))
    if errors:
        raise ConfigError(errors)
    config = schema.model_dump()
    for section, values in (overrides or {}).items():
        config.setdefault(section, {}).update(values)
    return config


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_app_config(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Configuration is valid!\n")
        sys.exit(0)
