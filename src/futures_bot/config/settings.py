"""
Settings management using Pydantic.

Loads configuration from YAML files and environment variables.
Environment variables override YAML values.
"""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from futures_bot.domain.models import TakeProfitAction

logger = logging.getLogger(__name__)


class TradingSettings(BaseModel):
    """Instrument and account parameters used for PnL bookkeeping."""

    symbol: str = "BTCUSDT"
    leverage: Decimal = Field(default=Decimal("10"), gt=Decimal("0"))
    # Taker fee applied to both legs of the round trip (entry + exit notional).
    trading_fee_rate: Decimal = Field(default=Decimal("0.00055"), ge=Decimal("0"))


class SmartTP3Settings(BaseModel):
    """Tick-based TP3 chasing once trailing is active."""

    enabled: bool = False
    tick_size_percent: Decimal = Decimal("0.05")
    max_ticks: int = Field(default=3, ge=1)


class RiskSettings(BaseModel):
    """Stop-loss management settings for the exiting service."""

    # Offset in basis points of the entry price (0.3 bps = 0.003%).
    breakeven_offset_bps: Decimal = Field(default=Decimal("0.3"), ge=Decimal("0"))
    trailing_stop_percent: Decimal = Field(default=Decimal("0.5"), gt=Decimal("0"))
    trailing_stop_activation_level: int = Field(default=2, ge=1)
    # When true, a stop already moved to breakeven is never converted to trailing.
    trailing_exclusive_of_breakeven: bool = False
    # Relative tolerance used to attribute a partial close to a TP level.
    ledger_price_match_percent: Decimal = Decimal("1.0")
    smart_tp3: SmartTP3Settings = Field(default_factory=SmartTP3Settings)
    bollinger_period: int = Field(default=20, ge=2)
    bollinger_std_multiplier: Decimal = Decimal("2")


class StopLossSettings(BaseModel):
    """Initial stop-loss placement (reference values for exit calculations)."""

    model_config = {"frozen": True}

    percent: Decimal = Decimal("1.0")
    atr_multiplier: Decimal = Decimal("1.5")
    min_distance_percent: Decimal = Decimal("0.3")


class TrailingSettings(BaseModel):
    """Trailing stop configuration."""

    model_config = {"frozen": True}

    enabled: bool = False
    percent: Decimal = Decimal("0.5")
    use_atr: bool = False
    atr_multiplier: Decimal = Decimal("1.0")
    activation_level: int = 2


class BreakevenSettings(BaseModel):
    """Breakeven configuration."""

    model_config = {"frozen": True}

    enabled: bool = True
    offset_percent: Decimal = Decimal("0.1")


class TakeProfitLevelSettings(BaseModel):
    """Declarative behavior of a single TP level."""

    model_config = {"frozen": True}

    level: int = Field(ge=1)
    percent: Decimal = Field(gt=Decimal("0"))
    size_percent: Decimal = Field(gt=Decimal("0"), le=Decimal("100"))
    on_hit: TakeProfitAction | None = None
    be_margin: Decimal | None = None
    trailing: TrailingSettings | None = None
    custom_handler: str | None = None


def _default_take_profits() -> list[TakeProfitLevelSettings]:
    return [
        TakeProfitLevelSettings(
            level=1,
            percent=Decimal("0.5"),
            size_percent=Decimal("33"),
            on_hit=TakeProfitAction.MOVE_SL_TO_BREAKEVEN,
        ),
        TakeProfitLevelSettings(
            level=2,
            percent=Decimal("1.0"),
            size_percent=Decimal("33"),
            on_hit=TakeProfitAction.ACTIVATE_TRAILING,
        ),
        TakeProfitLevelSettings(
            level=3,
            percent=Decimal("1.5"),
            size_percent=Decimal("34"),
            on_hit=TakeProfitAction.CLOSE,
        ),
    ]


class ExitStrategySettings(BaseModel):
    """Config-driven exit strategy (shared read-only across positions)."""

    model_config = {"frozen": True}

    stop_loss: StopLossSettings = Field(default_factory=StopLossSettings)
    take_profits: list[TakeProfitLevelSettings] = Field(default_factory=_default_take_profits)
    trailing: TrailingSettings | None = None
    breakeven: BreakevenSettings | None = None


class LadderLevelSettings(BaseModel):
    """One rung of the scalping ladder."""

    model_config = {"frozen": True}

    price_percent: Decimal
    close_percent: Decimal


def _default_ladder_levels() -> list[LadderLevelSettings]:
    return [
        LadderLevelSettings(price_percent=Decimal("0.08"), close_percent=Decimal("33")),
        LadderLevelSettings(price_percent=Decimal("0.15"), close_percent=Decimal("33")),
        LadderLevelSettings(price_percent=Decimal("0.25"), close_percent=Decimal("34")),
    ]


class LadderSettings(BaseModel):
    """Ladder TP manager settings (validated by LadderTpManager itself)."""

    levels: list[LadderLevelSettings] = Field(default_factory=_default_ladder_levels)
    move_to_breakeven_after_tp1: bool = True
    trailing_after_tp2: bool = True
    trailing_distance_percent: Decimal = Decimal("0.05")
    min_partial_close_percent: Decimal = Decimal("10")
    max_partial_close_percent: Decimal = Decimal("90")
    # Relative tolerance (percent of target) for "close enough" TP detection.
    tp_hit_tolerance_percent: Decimal = Field(default=Decimal("0.01"), ge=Decimal("0"))
    min_close_quantity: Decimal = Decimal("0.01")
    max_holding_time_seconds: int = Field(default=0, ge=0)  # 0 = disabled


class WebSocketSettings(BaseModel):
    """Fill-to-TP matching tolerances for exchange push events."""

    tp_price_match_tolerance_percent: Decimal = Decimal("0.3")
    tp_quantity_match_tolerance_percent: Decimal = Decimal("5")


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    json_enabled: bool = True
    json_file: str = "logs/futures_bot_json.jsonl"
    # Rotate JSONL log to prevent unbounded growth (disk + I/O).
    # Set to 0 to disable rotation.
    json_max_bytes: int = 50_000_000
    json_backup_count: int = 3

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.upper().strip()


class TelegramSettings(BaseModel):
    """Telegram notification settings."""

    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""


class Settings(BaseSettings):
    """
    Main settings container.

    Loads from YAML file based on environment, then applies env var overrides.
    """

    # Environment
    env: str = Field(default="development", alias="BOT_ENV")

    live_trading: bool = False
    testing_mode: bool = False

    # Sub-settings
    trading: TradingSettings = Field(default_factory=TradingSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    exit_strategy: ExitStrategySettings = Field(default_factory=ExitStrategySettings)
    ladder: LadderSettings = Field(default_factory=LadderSettings)
    websocket: WebSocketSettings = Field(default_factory=WebSocketSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)

    model_config = {
        "env_prefix": "BOT_",
        "env_nested_delimiter": "__",
        "extra": "ignore",
        "populate_by_name": True,
    }

    def validate_for_live_trading(self) -> list[str]:
        """
        Validate that all required settings are present for live trading.

        Returns:
            List of validation error messages. Empty list means all validations passed.
        """
        errors = []

        if self.trading.leverage <= 0:
            errors.append("trading.leverage must be positive")

        if not (Decimal("0") <= self.trading.trading_fee_rate < Decimal("1")):
            errors.append("trading.trading_fee_rate must be within [0, 1)")

        if self.telegram.enabled and (not self.telegram.bot_token or not self.telegram.chat_id):
            errors.append("telegram.bot_token and telegram.chat_id are required when telegram is enabled")

        total_size = sum((tp.size_percent for tp in self.exit_strategy.take_profits), Decimal("0"))
        if total_size > Decimal("100"):
            errors.append(f"exit_strategy.take_profits size_percent totals {total_size}% (must be <= 100)")

        levels = [tp.level for tp in self.exit_strategy.take_profits]
        if len(levels) != len(set(levels)):
            errors.append("exit_strategy.take_profits contains duplicate levels")

        return errors

    @classmethod
    def from_yaml(cls, env: str = "development") -> Settings:
        """
        Load settings from config.yaml.

        An optional `<env>.yaml` next to it is deep-merged on top.
        """
        config_dir = Path(__file__).parent
        yaml_file = config_dir / "config.yaml"

        data: dict = {}
        if yaml_file.exists():
            with open(yaml_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

        env_file = config_dir / f"{env}.yaml"
        if env_file.exists():
            with open(env_file, encoding="utf-8") as f:
                env_data = yaml.safe_load(f) or {}
            data = _deep_merge(data, env_data)

        # Trading overrides from env
        if "trading" not in data:
            data["trading"] = {}
        if os.getenv("BOT_LEVERAGE"):
            data["trading"]["leverage"] = os.getenv("BOT_LEVERAGE")
        if os.getenv("BOT_TRADING_FEE_RATE"):
            data["trading"]["trading_fee_rate"] = os.getenv("BOT_TRADING_FEE_RATE")

        # Telegram settings from env
        if "telegram" not in data:
            data["telegram"] = {}
        if os.getenv("TELEGRAM_BOT_TOKEN"):
            data["telegram"]["bot_token"] = os.getenv("TELEGRAM_BOT_TOKEN")
        if os.getenv("TELEGRAM_CHAT_ID"):
            data["telegram"]["chat_id"] = os.getenv("TELEGRAM_CHAT_ID")
        if os.getenv("TELEGRAM_ENABLED"):
            val = os.getenv("TELEGRAM_ENABLED").lower()
            data["telegram"]["enabled"] = val in ("true", "1", "yes")

        data["env"] = env

        # Warn about unknown keys before creating model (helps catch typos in config.yaml)
        _warn_unknown_keys(data, cls)

        return cls(**data)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts, override wins on conflicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _collect_all_keys(data: dict, prefix: str = "") -> set[str]:
    """
    Recursively collect all keys from a nested dict.

    Returns keys in dot-notation format (e.g., "risk.smart_tp3.enabled").
    Lists of mappings (take_profits, ladder levels) are not descended into.
    """
    keys = set()
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key
        keys.add(full_key)
        if isinstance(value, dict):
            keys.update(_collect_all_keys(value, full_key))
    return keys


def _collect_model_fields(model_class: type[BaseModel], prefix: str = "") -> set[str]:
    """
    Recursively collect all field names from a Pydantic model.

    Returns field names in dot-notation format.
    """
    fields = set()
    for field_name, field_info in model_class.model_fields.items():
        full_key = f"{prefix}.{field_name}" if prefix else field_name
        fields.add(full_key)
        if field_info.alias:
            fields.add(f"{prefix}.{field_info.alias}" if prefix else field_info.alias)

        annotation = field_info.annotation
        origin = getattr(annotation, "__origin__", None)
        if origin in (list, dict, tuple):
            # Generic containers like list[...] - skip
            continue
        if origin is None and isinstance(annotation, type) and issubclass(annotation, BaseModel):
            fields.update(_collect_model_fields(annotation, full_key))
            continue
        # Optional sections (TrailingSettings | None) expose their members too
        for arg in getattr(annotation, "__args__", ()):
            if getattr(arg, "__origin__", None) is None and isinstance(arg, type) and issubclass(arg, BaseModel):
                fields.update(_collect_model_fields(arg, full_key))

    return fields


def _warn_unknown_keys(data: dict, model_class: type[BaseModel]) -> None:
    """
    Warn about unknown keys in YAML config that don't match model fields.

    This prevents silent config bugs where typos in key names are ignored.
    """
    yaml_keys = _collect_all_keys(data)
    model_fields = _collect_model_fields(model_class)

    unknown_keys = yaml_keys - model_fields

    if unknown_keys:
        logger.warning(
            f"Unknown configuration keys found (will be ignored due to extra='ignore'): {sorted(unknown_keys)}. "
            f"This may indicate typos in config.yaml or outdated config keys."
        )


@lru_cache(maxsize=4)
def get_settings(env: str | None = None) -> Settings:
    """Get cached settings instance."""
    resolved_env = env or os.getenv("BOT_ENV", "development")
    return Settings.from_yaml(env=resolved_env)
