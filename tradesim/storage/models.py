"""Database models — Pydantic models for ledger records.

Money columns are decimal strings with 8 fractional digits on disk and
``Decimal`` in memory.
"""

from __future__ import annotations

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field, field_validator

MONEY_PLACES = Decimal("0.00000001")
ZERO = Decimal("0")


def quantize(value: Decimal) -> Decimal:
    """Round to the 8 decimal places used by every money column."""
    return value.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def parse_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    """Parse a loosely typed numeric value, returning ``default`` if invalid."""
    if value is None or isinstance(value, bool):
        return default
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not d.is_finite():
        return default
    return d


def money_str(value: Decimal) -> str:
    return format(quantize(value), "f")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


class BotRecord(BaseModel):
    """Admin-configured trading bot product.

    ``trading_assets`` holds the raw configured entries (bare symbol strings
    or dicts); they are normalised by the asset selector, not here.
    ``expected_roi`` doubles as the win-rate percentage for the simulator.
    """
    id: int | None = None
    name: str
    description: str = ""
    category: str = "crypto"
    price: Decimal = ZERO
    duration_days: int = 30
    is_active: bool = True
    min_profit_percent: str = "1"
    max_profit_percent: str = "5"
    expected_roi: str = "70"
    trading_assets: list[Any] = Field(default_factory=list)
    asset_distribution: dict[str, Any] = Field(default_factory=dict)
    logo_url: str = ""
    created_at: dt.datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def coerce_utc(cls, value: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(value)


class SubscriptionRecord(BaseModel):
    """A user's position in a bot."""
    id: int | None = None
    user_id: int
    bot_id: int
    investment_amount: Decimal = ZERO
    allocated_amount: Decimal = ZERO
    remaining_allocation: Decimal = ZERO
    current_profit: Decimal = ZERO
    total_profit_distributed: Decimal = ZERO
    status: str = "active"  # active | completed | stopped
    is_paused: bool = False
    is_stopped: bool = False
    purchase_date: dt.datetime = Field(default_factory=utcnow)
    expiry_date: dt.datetime
    last_trade_date: dt.datetime | None = None
    last_profit_date: dt.datetime | None = None

    @field_validator(
        "purchase_date", "expiry_date", "last_trade_date", "last_profit_date",
    )
    @classmethod
    def coerce_utc(cls, value: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(value)

    def is_expired(self, now: dt.datetime) -> bool:
        return self.expiry_date < now


class BalanceRecord(BaseModel):
    """Per-user cash balance tiers. total == available + locked at rest."""
    user_id: int
    total_balance_usd: Decimal = ZERO
    available_balance_usd: Decimal = ZERO
    locked_balance_usd: Decimal = ZERO
    updated_at: dt.datetime = Field(default_factory=utcnow)

    @field_validator("updated_at")
    @classmethod
    def coerce_utc(cls, value: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(value)


class HoldingRecord(BaseModel):
    """Per-user, per-symbol portfolio position."""
    id: int | None = None
    user_id: int
    asset_id: str
    symbol: str
    name: str = ""
    asset_type: str = "crypto"
    amount: Decimal = ZERO
    average_buy_price: Decimal = ZERO
    current_value: Decimal = ZERO
    updated_at: dt.datetime = Field(default_factory=utcnow)

    @field_validator("updated_at")
    @classmethod
    def coerce_utc(cls, value: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(value)


class TradeRecord(BaseModel):
    """Append-only history row, one per executed trade cycle."""
    id: str = ""
    subscription_id: int
    user_id: int
    bot_id: int
    asset_id: str
    asset_symbol: str
    asset_name: str = ""
    asset_logo_url: str = ""
    asset_type: str = "crypto"
    trade_result: str  # win | loss
    trade_amount: Decimal
    profit_amount: Decimal = ZERO
    loss_amount: Decimal = ZERO
    asset_price_at_trade: Decimal | None = None
    created_at: dt.datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def coerce_utc(cls, value: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(value)
