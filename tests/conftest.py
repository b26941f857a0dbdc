"""Shared test fixtures."""

from __future__ import annotations

import datetime as dt
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure the tradesim package is importable without installation
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tradesim.config import StorageConfig  # noqa: E402
from tradesim.observability.metrics import metrics  # noqa: E402
from tradesim.storage.database import Database  # noqa: E402
from tradesim.storage.models import BotRecord, SubscriptionRecord  # noqa: E402

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def db(tmp_path):
    database = Database(StorageConfig(sqlite_path=str(tmp_path / "test.db")))
    database.connect()
    yield database
    database.close()


def make_bot(db: Database, **overrides) -> BotRecord:
    """Insert a bot with sensible defaults."""
    defaults = dict(
        name="Test Bot",
        min_profit_percent="2",
        max_profit_percent="4",
        expected_roi="100",
        trading_assets=[{"id": "bitcoin", "symbol": "BTC", "name": "Bitcoin"}],
        asset_distribution={"BTC": 100},
    )
    defaults.update(overrides)
    return db.upsert_bot(BotRecord(**defaults))


def make_subscription(
    db: Database,
    bot: BotRecord,
    user_id: int = 1,
    amount: str = "1000",
    locked: str | None = None,
    available: str = "0",
    **overrides,
) -> SubscriptionRecord:
    """Insert a subscription and give the user a matching balance."""
    value = Decimal(amount)
    defaults = dict(
        user_id=user_id,
        bot_id=bot.id,
        investment_amount=value,
        allocated_amount=value,
        remaining_allocation=value,
        purchase_date=NOW - dt.timedelta(days=1),
        expiry_date=NOW + dt.timedelta(days=29),
    )
    defaults.update(overrides)
    sub = db.create_subscription(SubscriptionRecord(**defaults))
    db.set_balance(
        user_id,
        available=Decimal(available),
        locked=Decimal(locked if locked is not None else amount),
    )
    return sub
