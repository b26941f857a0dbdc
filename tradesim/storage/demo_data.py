"""Sample bots, balances and subscriptions for local demos."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any

from tradesim.engine.subscriptions import subscribe
from tradesim.observability.logger import get_logger
from tradesim.storage.database import Database
from tradesim.storage.models import BotRecord, utcnow

log = get_logger(__name__)

DEMO_BOTS = [
    BotRecord(
        name="Bitcoin Trader Pro",
        description="Advanced AI bot specializing in BTC trading with proven track record",
        price=Decimal("299"),
        expected_roi="72",
        min_profit_percent="1.5",
        max_profit_percent="4",
        trading_assets=[
            {"id": "bitcoin", "symbol": "BTC", "name": "Bitcoin"},
            {"id": "ethereum", "symbol": "ETH", "name": "Ethereum"},
        ],
        asset_distribution={"BTC": 85, "ETH": 15},
    ),
    BotRecord(
        name="Altcoin Master",
        description="Multi-currency trading bot for altcoin opportunities",
        price=Decimal("499"),
        expected_roi="65",
        min_profit_percent="2",
        max_profit_percent="6",
        trading_assets=[
            {"id": "solana", "symbol": "SOL", "name": "Solana"},
            {"id": "cardano", "symbol": "ADA", "name": "Cardano"},
            {"id": "ripple", "symbol": "XRP", "name": "XRP"},
        ],
        asset_distribution={"sol": 50, "ada": 25, "xrp": 25},
    ),
    BotRecord(
        name="Forex Elite",
        description="Forex trading specialist with advanced market analysis",
        category="forex",
        price=Decimal("399"),
        expected_roi="10-15%",  # display text; simulator falls back to the default win rate
        trading_assets=["EURUSD", "GBPUSD"],
    ),
]

DEMO_USERS = {
    1: (Decimal("10000"), [(0, Decimal("2500")), (1, Decimal("1500"))]),
    2: (Decimal("5000"), [(2, Decimal("1000"))]),
}


def seed_demo(db: Database, now: dt.datetime | None = None) -> dict[str, Any]:
    """Insert demo bots and users. Skips bots whose name already exists."""
    now = now or utcnow()
    existing = {b.name: b for b in db.list_active_bots()}
    bots: list[BotRecord] = []
    for template in DEMO_BOTS:
        bot = existing.get(template.name) or db.upsert_bot(template)
        bots.append(bot)

    subscriptions = 0
    for user_id, (deposit, picks) in DEMO_USERS.items():
        if db.list_user_subscriptions(user_id):
            continue
        balance = db.get_or_create_balance(user_id)
        db.set_balance(
            user_id,
            available=balance.available_balance_usd + deposit,
            locked=balance.locked_balance_usd,
        )
        for bot_index, amount in picks:
            subscribe(db, user_id, bots[bot_index], amount, now=now)
            subscriptions += 1

    summary = {"bots": len(bots), "users": len(DEMO_USERS), "subscriptions": subscriptions}
    log.info("demo_data.seeded", **summary)
    return summary
