"""Database migrations — create and upgrade schema."""

from __future__ import annotations

import sqlite3

from tradesim.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS ai_bots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT DEFAULT '',
            category TEXT DEFAULT 'crypto',
            price TEXT DEFAULT '0',
            duration_days INTEGER DEFAULT 30,
            is_active INTEGER DEFAULT 1,
            min_profit_percent TEXT DEFAULT '1',
            max_profit_percent TEXT DEFAULT '5',
            expected_roi TEXT DEFAULT '70',
            trading_assets_json TEXT DEFAULT '[]',
            asset_distribution_json TEXT DEFAULT '{}',
            logo_url TEXT DEFAULT '',
            created_at TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS user_bots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            bot_id INTEGER NOT NULL,
            investment_amount TEXT DEFAULT '0',
            allocated_amount TEXT DEFAULT '0',
            remaining_allocation TEXT DEFAULT '0',
            current_profit TEXT DEFAULT '0',
            total_profit_distributed TEXT DEFAULT '0',
            status TEXT DEFAULT 'active',
            is_paused INTEGER DEFAULT 0,
            is_stopped INTEGER DEFAULT 0,
            purchase_date TEXT,
            expiry_date TEXT NOT NULL,
            last_trade_date TEXT,
            last_profit_date TEXT,
            FOREIGN KEY (bot_id) REFERENCES ai_bots(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS user_balances (
            user_id INTEGER PRIMARY KEY,
            total_balance_usd TEXT DEFAULT '0',
            available_balance_usd TEXT DEFAULT '0',
            locked_balance_usd TEXT DEFAULT '0',
            updated_at TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS portfolios (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            asset_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            name TEXT DEFAULT '',
            asset_type TEXT DEFAULT 'crypto',
            amount TEXT DEFAULT '0',
            average_buy_price TEXT DEFAULT '0',
            current_value TEXT DEFAULT '0',
            updated_at TEXT,
            UNIQUE (user_id, symbol)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS bot_trades (
            id TEXT PRIMARY KEY,
            subscription_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            bot_id INTEGER NOT NULL,
            asset_id TEXT,
            asset_symbol TEXT,
            asset_name TEXT,
            asset_logo_url TEXT,
            asset_type TEXT,
            trade_result TEXT NOT NULL,
            trade_amount TEXT,
            profit_amount TEXT,
            loss_amount TEXT,
            asset_price_at_trade TEXT,
            created_at TEXT,
            FOREIGN KEY (subscription_id) REFERENCES user_bots(id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_user_bots_bot ON user_bots(bot_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_user_bots_user ON user_bots(user_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_bot_trades_sub ON bot_trades(subscription_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_bot_trades_user ON bot_trades(user_id, created_at);
        """,
    ],
    2: [
        # Per-subscription processing leases guard against overlapping ticks
        """
        CREATE TABLE IF NOT EXISTS processing_leases (
            subscription_id INTEGER PRIMARY KEY,
            owner TEXT NOT NULL,
            acquired_at REAL NOT NULL,
            expires_at REAL NOT NULL
        );
        """,
        # Scheduler status, readable from other processes (CLI status)
        """
        CREATE TABLE IF NOT EXISTS engine_state (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at REAL
        );
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        conn.execute("BEGIN")
        try:
            for sql in _MIGRATIONS[version]:
                conn.execute(sql)
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (version,),
            )
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        log.info("migrations.applied", version=version)

    final = _get_current_version(conn)
    log.info("migrations.complete", version=final)


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
