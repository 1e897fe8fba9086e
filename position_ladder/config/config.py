"""
Configuration models for the position ladder service.

Uses Pydantic for validation and type safety.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from position_ladder.constants import (
    BITUNIX_BASE_URL,
    BITUNIX_WS_URL,
    CLOSE_QTY_EPSILON,
    DEFAULT_ALLOCATION_PCT,
    DEFAULT_API_TIMEOUT,
    MIN_FILL_QTY,
    QTY_DECIMALS,
    TP_PRICE_OFFSET_PCT,
)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _unset_if_placeholder(v):
    """An unexpanded ${VAR} (or blank) value means the setting is absent."""
    if isinstance(v, str) and (not v.strip() or v.strip().startswith("${")):
        return None
    return v


class ExchangeConfig(BaseSettings):
    """Exchange connection and credentials."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "bitunix"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    base_url: str = BITUNIX_BASE_URL
    ws_url: str = BITUNIX_WS_URL
    margin_coin: str = "USDT"
    request_timeout_seconds: float = Field(default=DEFAULT_API_TIMEOUT, ge=1, le=120)

    @field_validator("api_key", "api_secret", mode="before")
    @classmethod
    def drop_placeholders(cls, v):
        return _unset_if_placeholder(v)

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


class LadderConfig(BaseSettings):
    """Take-profit ladder and quantity thresholds."""
    model_config = SettingsConfigDict(extra="ignore")

    allocation_pct: List[Decimal] = Field(
        default_factory=lambda: [Decimal(p) for p in DEFAULT_ALLOCATION_PCT],
        description="Percent of live quantity per target level; levels past the list split the remainder",
    )
    tp_price_offset_pct: Decimal = Field(default=TP_PRICE_OFFSET_PCT, ge=0, le=Decimal("0.05"))
    close_qty_epsilon: Decimal = Field(default=CLOSE_QTY_EPSILON, gt=0)
    min_fill_qty: Decimal = Field(default=MIN_FILL_QTY, gt=0)
    qty_decimals: int = Field(default=QTY_DECIMALS, ge=0, le=12)
    tpsl_enabled: bool = Field(default=True, description="Place take-profit and stop-loss orders")

    @field_validator("allocation_pct")
    @classmethod
    def validate_allocation(cls, v):
        if not v:
            raise ValueError("allocation_pct must not be empty")
        if any(p < 0 for p in v):
            raise ValueError("allocation_pct entries must be non-negative")
        if sum(v) > 100:
            raise ValueError(f"allocation_pct sums to {sum(v)} (> 100)")
        return v


class ReconciliationConfig(BaseSettings):
    """Reconciliation cycle configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = Field(default=True, description="Run the periodic reconciliation cycle")
    interval_seconds: int = Field(default=30, ge=5, le=600, description="Reconcile every N seconds")
    max_cycle_duration_seconds: int = Field(default=300, ge=30, le=3600)


class PriceMonitorConfig(BaseSettings):
    """Price-trigger monitor configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    debounce_seconds: float = Field(default=5.0, ge=0, le=120)
    reconnect_delay_seconds: float = Field(default=5.0, ge=0.1, le=300)
    max_retries: int = Field(default=1000, ge=1)


class StorageConfig(BaseSettings):
    """Position store configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///data/positions.db"
    max_write_attempts: int = Field(default=5, ge=1, le=50)


class NotificationConfig(BaseSettings):
    """Push notification delivery."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    join_api_key: Optional[str] = None
    join_device_id: Optional[str] = None
    webhook_url: Optional[str] = None
    chat_id: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, ge=1, le=60)

    @field_validator("join_api_key", "join_device_id", "webhook_url", "chat_id", mode="before")
    @classmethod
    def drop_placeholders(cls, v):
        return _unset_if_placeholder(v)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    ladder: LadderConfig = Field(default_factory=LadderConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    price_monitor: PriceMonitorConfig = Field(default_factory=PriceMonitorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        raw_content = yaml_path.read_text()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("storage", {})["database_url"] = db_url

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Checks that span sections."""
        if self.ladder.min_fill_qty > self.ladder.close_qty_epsilon:
            raise ValueError("ladder.min_fill_qty must not exceed ladder.close_qty_epsilon")
        if self.environment == "prod" and not self.exchange.has_credentials():
            raise ValueError("Exchange credentials are required in prod (exchange.api_key / api_secret)")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml. If None, uses the packaged config.yaml.

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    config = Config.from_yaml(config_path or DEFAULT_CONFIG_PATH)
    config.validate_config()
    return config
