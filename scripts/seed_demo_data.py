"""Seed the database with sample bots, balances and subscriptions."""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tradesim.config import load_config  # noqa: E402
from tradesim.observability.logger import configure_logging  # noqa: E402
from tradesim.storage.database import Database  # noqa: E402
from tradesim.storage.demo_data import seed_demo  # noqa: E402


def seed() -> None:
    cfg = load_config()
    configure_logging(level="INFO", fmt="console")
    db = Database(cfg.storage)
    db.connect()
    try:
        summary = seed_demo(db)
    finally:
        db.close()
    print(
        f"✅ Seeded {summary['bots']} bots, {summary['users']} users, "
        f"{summary['subscriptions']} subscriptions into {cfg.storage.sqlite_path}"
    )


if __name__ == "__main__":
    seed()
