"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - Engine, trading, oracle, storage and observability sections
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class EngineConfig(BaseModel):
    """Trade cycle scheduler configuration."""
    cycle_interval_secs: int = 300  # 5 minutes between cycles
    # A subscription traded more recently than this is treated as
    # already processed for the current cycle.
    min_trade_spacing_secs: int = 60
    lease_ttl_secs: int = 120
    run_on_start: bool = False  # first tick immediately instead of after one interval


class AssetDescriptor(BaseModel):
    id: str
    symbol: str
    name: str
    logo_url: str = ""


class TradingConfig(BaseModel):
    """Simulation parameters and fallbacks for misconfigured bots."""
    default_min_profit_pct: float = 1.0
    default_max_profit_pct: float = 5.0
    default_win_rate_pct: float = 70.0
    trade_slice_min_pct: float = 5.0
    trade_slice_max_pct: float = 15.0
    loss_cap_factor: float = 0.7
    default_asset: AssetDescriptor = Field(
        default_factory=lambda: AssetDescriptor(
            id="bitcoin", symbol="BTC", name="Bitcoin", logo_url="",
        )
    )


class OracleConfig(BaseModel):
    enabled: bool = True
    base_url: str = "https://api.coingecko.com/api/v3"
    timeout_secs: float = 5.0
    cache_ttl_secs: int = 60
    max_retries: int = 2


class StorageConfig(BaseModel):
    db_type: str = "sqlite"
    sqlite_path: str = "data/tradesim.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/tradesim.log"
    enable_metrics: bool = True


class PlatformConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_config(path: str | Path | None = None) -> PlatformConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        cfg = PlatformConfig(**raw)
    else:
        cfg = PlatformConfig()
    if not is_oracle_enabled():
        cfg.oracle.enabled = False
    return cfg


def is_oracle_enabled() -> bool:
    """The price oracle can be switched off via env var (offline runs)."""
    return os.environ.get("TRADESIM_ENABLE_ORACLE", "true").lower() != "false"
