"""Trade cycle scheduler: the periodic driver of the simulation engine.

Each tick (default every 5 minutes):
  1. Load all active bots
  2. For each bot, load its subscriptions
  3. Per subscription: take the processing lease, re-read the row, then
     skip stopped/paused ones, route expired ones to the expiry path, skip
     inactive ones and ones already traded in this cycle window, and
     otherwise run one trade through the reconciler
  4. Collect a CycleReport (processed count, trade summaries, errors)

A failure is confined to the subscription (or bot) it happened in; only a
failure to load the bot list ends a tick early.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import os
import random
import signal
import socket
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from tradesim.config import PlatformConfig
from tradesim.connectors.price_oracle import PriceOracle
from tradesim.engine.reconciler import SubscriptionReconciler, TradeSummary
from tradesim.observability.logger import cycle_context, get_logger
from tradesim.observability.metrics import metrics
from tradesim.observability.sentry_integration import capture_exception
from tradesim.storage.database import Database
from tradesim.storage.models import BotRecord, SubscriptionRecord, utcnow

log = get_logger(__name__)

STATE_KEY = "scheduler_status"


@dataclass
class CycleReport:
    """Summary of one trade cycle."""
    cycle_id: int
    started_at: float
    ended_at: float = 0.0
    duration_secs: float = 0.0
    processed: int = 0
    expired: int = 0
    skipped: int = 0
    trades: list[TradeSummary] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_secs": self.duration_secs,
            "processed": self.processed,
            "expired": self.expired,
            "skipped": self.skipped,
            "trades": [t.to_dict() for t in self.trades],
            "errors": list(self.errors),
            "status": self.status,
        }


class TradeCycleScheduler:
    """Owns the periodic trade loop and its running/stopped lifecycle."""

    def __init__(
        self,
        db: Database,
        config: PlatformConfig | None = None,
        oracle: PriceOracle | None = None,
        rng: random.Random | None = None,
        instance_id: str | None = None,
    ):
        self.config = config or PlatformConfig()
        self._db = db
        self._reconciler = SubscriptionReconciler(
            db, oracle=oracle, config=self.config.trading, rng=rng,
        )
        self._instance_id = instance_id or (
            f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        )
        self._state = "stopped"
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._cycle_count = 0
        self._history: list[CycleReport] = []

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == "running"

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def last_report(self) -> CycleReport | None:
        return self._history[-1] if self._history else None

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> bool:
        """Schedule the periodic loop on the running event loop.

        Returns False (and does nothing) if already running. Raises
        RuntimeError when called outside a running event loop, leaving the
        scheduler stopped.
        """
        if self._state == "running":
            log.info("scheduler.already_running")
            return False
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run_loop())
        self._state = "running"
        log.info(
            "scheduler.started",
            interval_secs=self.config.engine.cycle_interval_secs,
            instance_id=self._instance_id,
        )
        self._persist_state()
        return True

    def stop(self) -> bool:
        """Stop scheduling new ticks. A tick in progress runs to completion."""
        if self._state != "running":
            log.info("scheduler.not_running")
            return False
        self._state = "stopped"
        if self._stop_event is not None:
            self._stop_event.set()
        log.info("scheduler.stop_requested")
        return True

    async def join(self) -> None:
        """Wait for the loop task to exit after ``stop()``."""
        if self._task is not None:
            await self._task
            self._task = None

    async def serve(self) -> None:
        """Run until SIGINT/SIGTERM (host-process entry point)."""
        self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread
        await self.join()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("scheduler.signal_received", signal=sig.name)
        self.stop()

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if stop was requested meanwhile."""
        if self._stop_event is None:
            raise RuntimeError("Scheduler has not been started")
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_loop(self) -> None:
        interval = self.config.engine.cycle_interval_secs
        try:
            if self.config.engine.run_on_start:
                await self._tick()
            while self._state == "running":
                if await self._wait_for_stop(interval):
                    break
                await self._tick()
        finally:
            self._state = "stopped"
            log.info("scheduler.stopped", total_cycles=self._cycle_count)
            self._persist_state()

    async def _tick(self) -> None:
        log.info("scheduler.tick")
        try:
            await self.run_once()
        except Exception as e:
            log.error("scheduler.tick_error", error=str(e))
            capture_exception(e)

    # ── Cycle ────────────────────────────────────────────────────────

    async def run_once(self, now: dt.datetime | None = None) -> CycleReport:
        """Run one full trade cycle over every active bot and subscription.

        Also the entry point for the manual "distribute profits now" action.
        """
        self._cycle_count += 1
        report = CycleReport(cycle_id=self._cycle_count, started_at=time.time())
        now = now or utcnow()
        # Unique per tick so two overlapping ticks of one instance still exclude each other.
        owner = f"{self._instance_id}#{report.cycle_id}"
        with cycle_context(cycle_id=report.cycle_id, instance_id=self._instance_id):
            log.info("scheduler.cycle_start")
            await self._run_cycle(report, owner, now)
            self._finish_cycle(report)
        return report

    async def _run_cycle(self, report: CycleReport, owner: str, now: dt.datetime) -> None:
        try:
            bots = self._db.list_active_bots()
            if not bots:
                log.info("scheduler.no_active_bots")

            for bot in bots:
                try:
                    subscriptions = self._db.list_subscriptions(bot.id)
                except Exception as e:
                    log.error("scheduler.bot_error", bot_id=bot.id, error=str(e))
                    report.errors.append(f"Bot {bot.id}: {e}")
                    continue

                for sub in subscriptions:
                    try:
                        await self._process_subscription(sub, bot, report, owner, now)
                    except Exception as e:
                        log.error(
                            "scheduler.subscription_error",
                            subscription_id=sub.id, user_id=sub.user_id, error=str(e),
                        )
                        report.errors.append(f"Subscription {sub.id}: {e}")
            report.status = "completed"
        except Exception as e:
            log.error("scheduler.fatal_error", error=str(e))
            capture_exception(e)
            report.errors.append(f"Fatal: {e}")
            report.status = "error"

    async def _process_subscription(
        self,
        sub: SubscriptionRecord,
        bot: BotRecord,
        report: CycleReport,
        owner: str,
        now: dt.datetime,
    ) -> None:
        if sub.id is None:
            raise ValueError("Subscription has not been saved")
        # Cheap pre-filter on the listed snapshot; re-checked under the lease.
        if sub.is_stopped or sub.is_paused:
            report.skipped += 1
            return

        if not self._db.acquire_lease(sub.id, owner, self.config.engine.lease_ttl_secs):
            log.info("scheduler.lease_busy", subscription_id=sub.id)
            report.skipped += 1
            return

        try:
            current = self._db.get_subscription(sub.id)
            if current is None or current.is_stopped or current.is_paused:
                report.skipped += 1
                return

            if current.is_expired(now):
                if self._reconciler.handle_expiry(current) is not None:
                    report.expired += 1
                return

            if current.status != "active":
                report.skipped += 1
                return

            if self._traded_this_window(current, now):
                log.debug("scheduler.already_traded", subscription_id=sub.id)
                report.skipped += 1
                return

            errors_before = len(report.errors)
            summary = await self._reconciler.execute_trade(
                current, bot, report.errors, now=now,
            )
            if summary is None:
                report.skipped += 1
                return
            report.trades.append(summary)
            # Only fully reconciled trades count; a ledger failure was recorded above.
            if len(report.errors) == errors_before:
                report.processed += 1
        finally:
            self._db.release_lease(sub.id, owner)

    def _traded_this_window(self, sub: SubscriptionRecord, now: dt.datetime) -> bool:
        spacing = self.config.engine.min_trade_spacing_secs
        if spacing <= 0 or sub.last_trade_date is None:
            return False
        return (now - sub.last_trade_date).total_seconds() < spacing

    def _finish_cycle(self, report: CycleReport) -> None:
        report.ended_at = time.time()
        report.duration_secs = round(report.ended_at - report.started_at, 3)
        self._history.append(report)
        if len(self._history) > 100:
            self._history = self._history[-50:]

        metrics.histogram("cycle.duration_secs", report.duration_secs)
        metrics.gauge("cycle.processed", report.processed)
        if report.errors:
            metrics.incr("cycle.errors", len(report.errors))

        log.info(
            "scheduler.cycle_complete",
            cycle_id=report.cycle_id,
            processed=report.processed,
            expired=report.expired,
            skipped=report.skipped,
            errors=len(report.errors),
            duration=report.duration_secs,
            status=report.status,
        )
        self._persist_state()

    def _persist_state(self) -> None:
        try:
            state = {
                "running": self.is_running,
                "instance_id": self._instance_id,
                "cycle_count": self._cycle_count,
                "interval_secs": self.config.engine.cycle_interval_secs,
                "last_cycle": self.last_report.to_dict() if self.last_report else None,
                "metrics": metrics.snapshot(),
            }
            self._db.set_engine_state(STATE_KEY, json.dumps(state, default=str))
        except Exception as e:
            log.warning("scheduler.persist_state_error", error=str(e))
