"""Database — SQLite ledger store.

Manages the connection, runs migrations, and exposes the read/update
primitives the trade engine orchestrates. Every mutating call runs inside
``transaction()``; callers that need a read-modify-write on one entity
wrap the read and the write in the same ``transaction()`` block.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from tradesim.config import StorageConfig
from tradesim.storage.migrations import run_migrations
from tradesim.storage.models import (
    BalanceRecord,
    BotRecord,
    HoldingRecord,
    SubscriptionRecord,
    TradeRecord,
    money_str,
    utcnow,
)
from tradesim.observability.logger import get_logger

log = get_logger(__name__)


class LedgerError(Exception):
    """Base class for ledger store errors."""


class NotFoundError(LedgerError):
    """The requested entity does not exist."""


class InsufficientFundsError(LedgerError):
    """A balance tier cannot cover the requested amount."""


_SUBSCRIPTION_COLUMNS = frozenset({
    "investment_amount", "allocated_amount", "remaining_allocation",
    "current_profit", "total_profit_distributed", "status", "is_paused",
    "is_stopped", "expiry_date", "last_trade_date", "last_profit_date",
})
_BALANCE_COLUMNS = frozenset({
    "total_balance_usd", "available_balance_usd", "locked_balance_usd",
})
_HOLDING_COLUMNS = frozenset({
    "name", "asset_type", "amount", "average_buy_price", "current_value",
})


def _to_db(value: Any) -> Any:
    if isinstance(value, Decimal):
        return money_str(value)
    if isinstance(value, dt.datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _update_clause(fields: dict[str, Any], allowed: frozenset[str]) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {sorted(unknown)}")
    if not fields:
        raise ValueError("No fields to update")
    names = sorted(fields)
    clause = ", ".join(f"{n} = ?" for n in names)
    return clause, [_to_db(fields[n]) for n in names]


class Database:
    """SQLite ledger store for bots, subscriptions, balances and portfolios."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly.
        self._conn = sqlite3.connect(path, isolation_level=None, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Re-entrant write transaction (``BEGIN IMMEDIATE`` at the outermost level)."""
        conn = self.conn
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield conn
            finally:
                self._tx_depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield conn
        except BaseException:
            self._tx_depth = 0
            conn.execute("ROLLBACK")
            raise
        self._tx_depth = 0
        conn.execute("COMMIT")

    # ── Bots ─────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_bot(row: sqlite3.Row) -> BotRecord:
        data = dict(row)
        data["trading_assets"] = json.loads(data.pop("trading_assets_json") or "[]")
        data["asset_distribution"] = json.loads(data.pop("asset_distribution_json") or "{}")
        return BotRecord(**data)

    def upsert_bot(self, bot: BotRecord) -> BotRecord:
        values = (
            bot.name, bot.description, bot.category, money_str(bot.price),
            bot.duration_days, int(bot.is_active), bot.min_profit_percent,
            bot.max_profit_percent, bot.expected_roi,
            json.dumps(bot.trading_assets), json.dumps(bot.asset_distribution),
            bot.logo_url, bot.created_at.isoformat(),
        )
        with self.transaction() as conn:
            if bot.id is None:
                cur = conn.execute(
                    """
                    INSERT INTO ai_bots
                        (name, description, category, price, duration_days,
                         is_active, min_profit_percent, max_profit_percent,
                         expected_roi, trading_assets_json,
                         asset_distribution_json, logo_url, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                bot_id = int(cur.lastrowid)
            else:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO ai_bots
                        (id, name, description, category, price, duration_days,
                         is_active, min_profit_percent, max_profit_percent,
                         expected_roi, trading_assets_json,
                         asset_distribution_json, logo_url, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (bot.id, *values),
                )
                bot_id = bot.id
        return bot.model_copy(update={"id": bot_id})

    def get_bot(self, bot_id: int) -> BotRecord | None:
        row = self.conn.execute(
            "SELECT * FROM ai_bots WHERE id = ?", (bot_id,)
        ).fetchone()
        return self._row_to_bot(row) if row else None

    def list_active_bots(self) -> list[BotRecord]:
        rows = self.conn.execute(
            "SELECT * FROM ai_bots WHERE is_active = 1 ORDER BY id"
        ).fetchall()
        return [self._row_to_bot(r) for r in rows]

    # ── Subscriptions ────────────────────────────────────────────────

    def create_subscription(self, sub: SubscriptionRecord) -> SubscriptionRecord:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO user_bots
                    (user_id, bot_id, investment_amount, allocated_amount,
                     remaining_allocation, current_profit,
                     total_profit_distributed, status, is_paused, is_stopped,
                     purchase_date, expiry_date, last_trade_date,
                     last_profit_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sub.user_id, sub.bot_id,
                    money_str(sub.investment_amount),
                    money_str(sub.allocated_amount),
                    money_str(sub.remaining_allocation),
                    money_str(sub.current_profit),
                    money_str(sub.total_profit_distributed),
                    sub.status, int(sub.is_paused), int(sub.is_stopped),
                    sub.purchase_date.isoformat(), sub.expiry_date.isoformat(),
                    _to_db(sub.last_trade_date), _to_db(sub.last_profit_date),
                ),
            )
        return sub.model_copy(update={"id": int(cur.lastrowid)})

    def get_subscription(self, subscription_id: int) -> SubscriptionRecord | None:
        row = self.conn.execute(
            "SELECT * FROM user_bots WHERE id = ?", (subscription_id,)
        ).fetchone()
        return SubscriptionRecord(**dict(row)) if row else None

    def list_subscriptions(self, bot_id: int) -> list[SubscriptionRecord]:
        rows = self.conn.execute(
            "SELECT * FROM user_bots WHERE bot_id = ? ORDER BY id", (bot_id,)
        ).fetchall()
        return [SubscriptionRecord(**dict(r)) for r in rows]

    def list_user_subscriptions(self, user_id: int) -> list[SubscriptionRecord]:
        rows = self.conn.execute(
            "SELECT * FROM user_bots WHERE user_id = ? ORDER BY id", (user_id,)
        ).fetchall()
        return [SubscriptionRecord(**dict(r)) for r in rows]

    def update_subscription(self, subscription_id: int, fields: dict[str, Any]) -> None:
        clause, params = _update_clause(fields, _SUBSCRIPTION_COLUMNS)
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE user_bots SET {clause} WHERE id = ?",
                (*params, subscription_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Subscription {subscription_id} not found")

    # ── Balances ─────────────────────────────────────────────────────

    def get_balance(self, user_id: int) -> BalanceRecord | None:
        row = self.conn.execute(
            "SELECT * FROM user_balances WHERE user_id = ?", (user_id,)
        ).fetchone()
        return BalanceRecord(**dict(row)) if row else None

    def create_balance(self, user_id: int) -> BalanceRecord:
        """Create a zeroed balance row (no-op if one already exists)."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO user_balances
                    (user_id, total_balance_usd, available_balance_usd,
                     locked_balance_usd, updated_at)
                VALUES (?, '0.00000000', '0.00000000', '0.00000000', ?)
                """,
                (user_id, utcnow().isoformat()),
            )
            balance = self.get_balance(user_id)
        if balance is None:
            raise NotFoundError(f"Balance for user {user_id} not found")
        return balance

    def get_or_create_balance(self, user_id: int) -> BalanceRecord:
        return self.get_balance(user_id) or self.create_balance(user_id)

    def update_balance(self, user_id: int, fields: dict[str, Any]) -> None:
        clause, params = _update_clause(fields, _BALANCE_COLUMNS)
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE user_balances SET {clause}, updated_at = ? WHERE user_id = ?",
                (*params, utcnow().isoformat(), user_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Balance for user {user_id} not found")

    def set_balance(
        self, user_id: int, *, available: Decimal, locked: Decimal,
    ) -> BalanceRecord:
        """Overwrite both tiers and derive the total (admin / seeding helper)."""
        with self.transaction():
            self.get_or_create_balance(user_id)
            self.update_balance(user_id, {
                "available_balance_usd": available,
                "locked_balance_usd": locked,
                "total_balance_usd": available + locked,
            })
            balance = self.get_balance(user_id)
        if balance is None:
            raise NotFoundError(f"Balance for user {user_id} not found")
        return balance

    # ── Portfolio ────────────────────────────────────────────────────

    def get_portfolio_holding(self, user_id: int, symbol: str) -> HoldingRecord | None:
        row = self.conn.execute(
            "SELECT * FROM portfolios WHERE user_id = ? AND symbol = ?",
            (user_id, symbol),
        ).fetchone()
        return HoldingRecord(**dict(row)) if row else None

    def create_portfolio_holding(self, holding: HoldingRecord) -> HoldingRecord:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO portfolios
                    (user_id, asset_id, symbol, name, asset_type, amount,
                     average_buy_price, current_value, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    holding.user_id, holding.asset_id, holding.symbol,
                    holding.name, holding.asset_type,
                    money_str(holding.amount),
                    money_str(holding.average_buy_price),
                    money_str(holding.current_value),
                    utcnow().isoformat(),
                ),
            )
        return holding.model_copy(update={"id": int(cur.lastrowid)})

    def update_portfolio_holding(self, holding_id: int, fields: dict[str, Any]) -> None:
        clause, params = _update_clause(fields, _HOLDING_COLUMNS)
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE portfolios SET {clause}, updated_at = ? WHERE id = ?",
                (*params, utcnow().isoformat(), holding_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Holding {holding_id} not found")

    def list_portfolio(self, user_id: int) -> list[HoldingRecord]:
        rows = self.conn.execute(
            "SELECT * FROM portfolios WHERE user_id = ? ORDER BY symbol", (user_id,)
        ).fetchall()
        return [HoldingRecord(**dict(r)) for r in rows]

    # ── Trade Records ────────────────────────────────────────────────

    def append_trade_record(self, record: TradeRecord) -> str:
        tid = record.id or str(uuid.uuid4())
        price = record.asset_price_at_trade
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO bot_trades
                    (id, subscription_id, user_id, bot_id, asset_id,
                     asset_symbol, asset_name, asset_logo_url, asset_type,
                     trade_result, trade_amount, profit_amount, loss_amount,
                     asset_price_at_trade, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tid, record.subscription_id, record.user_id, record.bot_id,
                    record.asset_id, record.asset_symbol, record.asset_name,
                    record.asset_logo_url, record.asset_type,
                    record.trade_result, money_str(record.trade_amount),
                    money_str(record.profit_amount),
                    money_str(record.loss_amount),
                    money_str(price) if price is not None else None,
                    record.created_at.isoformat(),
                ),
            )
        return tid

    def list_trade_records(
        self,
        *,
        user_id: int | None = None,
        subscription_id: int | None = None,
        limit: int = 100,
    ) -> list[TradeRecord]:
        sql = "SELECT * FROM bot_trades"
        where: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            where.append("user_id = ?")
            params.append(user_id)
        if subscription_id is not None:
            where.append("subscription_id = ?")
            params.append(subscription_id)
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    # ── Processing Leases ────────────────────────────────────────────

    def acquire_lease(
        self,
        subscription_id: int,
        owner: str,
        ttl_secs: float,
        now: float | None = None,
    ) -> bool:
        """Take the processing lease for a subscription.

        Succeeds when no lease exists, the existing lease has expired, or it
        is already held by ``owner``.
        """
        now = time.time() if now is None else now
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT owner, expires_at FROM processing_leases WHERE subscription_id = ?",
                (subscription_id,),
            ).fetchone()
            if row and row["owner"] != owner and row["expires_at"] > now:
                return False
            conn.execute(
                """
                INSERT OR REPLACE INTO processing_leases
                    (subscription_id, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (subscription_id, owner, now, now + ttl_secs),
            )
        return True

    def release_lease(self, subscription_id: int, owner: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM processing_leases WHERE subscription_id = ? AND owner = ?",
                (subscription_id, owner),
            )

    # ── Engine State ─────────────────────────────────────────────────

    def set_engine_state(self, key: str, value: str) -> None:
        """Persist scheduler state for cross-process reads."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO engine_state (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, time.time()),
            )

    def get_engine_state(self, key: str) -> str | None:
        row = self.conn.execute(
            "SELECT value FROM engine_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None
