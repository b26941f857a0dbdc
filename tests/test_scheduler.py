"""Tests for the trade cycle scheduler: filtering, guards, error isolation, lifecycle."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import random
from decimal import Decimal

import pytest
import structlog

from tradesim.config import EngineConfig, PlatformConfig
from tradesim.engine.scheduler import STATE_KEY, TradeCycleScheduler
from tradesim.observability.metrics import metrics
from tradesim.storage.models import utcnow

from conftest import NOW, make_bot, make_subscription

D = Decimal


def _config(**engine) -> PlatformConfig:
    cfg = PlatformConfig()
    cfg.engine = EngineConfig(**{"cycle_interval_secs": 3600, **engine})
    cfg.oracle.enabled = False
    return cfg


def _scheduler(db, **engine) -> TradeCycleScheduler:
    return TradeCycleScheduler(
        db, _config(**engine), rng=random.Random(21), instance_id="test-host",
    )


# ── Cycle ────────────────────────────────────────────────────────────

class TestRunOnce:

    @pytest.mark.asyncio
    async def test_processes_every_active_subscription(self, db):
        bot = make_bot(db)
        for user_id in (1, 2):
            make_subscription(db, bot, user_id=user_id)

        report = await _scheduler(db).run_once(now=NOW)

        assert report.status == "completed"
        assert report.processed == 2
        assert report.errors == []
        assert {t.user_id for t in report.trades} == {1, 2}
        assert all(t.result == "win" for t in report.trades)
        assert metrics.snapshot()["gauges"]["cycle.processed"] == 2

    @pytest.mark.asyncio
    async def test_cycle_ids_bound_to_log_context(self, db, monkeypatch):
        bot = make_bot(db)
        make_subscription(db, bot)
        scheduler = _scheduler(db)
        seen: list[dict] = []
        original = scheduler._reconciler.execute_trade

        async def _recording(*args, **kwargs):
            seen.append(structlog.contextvars.get_contextvars())
            return await original(*args, **kwargs)

        monkeypatch.setattr(scheduler._reconciler, "execute_trade", _recording)
        await scheduler.run_once(now=NOW)

        assert seen == [{"cycle_id": 1, "instance_id": "test-host"}]
        assert "cycle_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_inactive_bots_ignored(self, db):
        bot = make_bot(db, is_active=False)
        make_subscription(db, bot)

        report = await _scheduler(db).run_once(now=NOW)

        assert report.processed == 0
        assert report.trades == []

    @pytest.mark.asyncio
    async def test_paused_and_stopped_skipped(self, db):
        bot = make_bot(db)
        paused = make_subscription(db, bot, user_id=1, is_paused=True)
        stopped = make_subscription(db, bot, user_id=2, is_stopped=True, status="stopped")
        # Stopped wins over expiry: nothing is released
        expired_stopped = make_subscription(
            db, bot, user_id=3, is_stopped=True, expiry_date=NOW - dt.timedelta(days=1),
        )

        report = await _scheduler(db).run_once(now=NOW)

        assert report.processed == 0
        assert report.skipped == 3
        for sub in (paused, stopped, expired_stopped):
            assert db.list_trade_records(subscription_id=sub.id) == []
        assert db.get_subscription(expired_stopped.id).status == "active"

    @pytest.mark.asyncio
    async def test_expired_subscription_routed_to_expiry(self, db):
        bot = make_bot(db)
        sub = make_subscription(
            db, bot, amount="500", remaining_allocation=D("250"),
            expiry_date=NOW - dt.timedelta(minutes=1),
        )

        report = await _scheduler(db).run_once(now=NOW)

        assert report.expired == 1
        assert report.processed == 0
        assert db.list_trade_records(subscription_id=sub.id) == []
        assert db.get_subscription(sub.id).status == "completed"
        assert db.get_balance(1).available_balance_usd == D("250")

    @pytest.mark.asyncio
    async def test_completed_subscription_skipped(self, db):
        bot = make_bot(db)
        make_subscription(db, bot, status="completed")

        report = await _scheduler(db).run_once(now=NOW)

        assert report.processed == 0
        assert report.skipped == 1


# ── Processing guard ─────────────────────────────────────────────────

class TestProcessingGuard:

    @pytest.mark.asyncio
    async def test_same_window_not_traded_twice(self, db):
        bot = make_bot(db)
        sub = make_subscription(db, bot)
        scheduler = _scheduler(db, min_trade_spacing_secs=60)

        first = await scheduler.run_once(now=NOW)
        second = await scheduler.run_once(now=NOW + dt.timedelta(seconds=30))
        third = await scheduler.run_once(now=NOW + dt.timedelta(seconds=90))

        assert (first.processed, second.processed, third.processed) == (1, 0, 1)
        assert len(db.list_trade_records(subscription_id=sub.id)) == 2

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere_skips(self, db):
        bot = make_bot(db)
        sub = make_subscription(db, bot)
        assert db.acquire_lease(sub.id, "other-host#1", ttl_secs=120)

        report = await _scheduler(db).run_once(now=NOW)

        assert report.processed == 0
        assert report.skipped == 1
        assert db.list_trade_records(subscription_id=sub.id) == []

    @pytest.mark.asyncio
    async def test_lease_released_after_processing(self, db):
        bot = make_bot(db)
        sub = make_subscription(db, bot)

        await _scheduler(db).run_once(now=NOW)

        assert db.acquire_lease(sub.id, "other-host#1", ttl_secs=120)

    @pytest.mark.asyncio
    async def test_overlapping_ticks_trade_once(self, db):
        bot = make_bot(db)
        sub = make_subscription(db, bot)
        scheduler = _scheduler(db)

        reports = await asyncio.gather(scheduler.run_once(now=NOW), scheduler.run_once(now=NOW))

        assert sum(r.processed for r in reports) == 1
        assert len(db.list_trade_records(subscription_id=sub.id)) == 1


# ── Error isolation ──────────────────────────────────────────────────

class TestErrorIsolation:

    @pytest.mark.asyncio
    async def test_balance_failure_isolated_to_one_subscription(self, db, monkeypatch):
        bot = make_bot(db)
        subs = [make_subscription(db, bot, user_id=uid) for uid in (1, 2, 3)]
        original = db.update_balance

        def _flaky(user_id, fields):
            if user_id == 2:
                raise RuntimeError("disk I/O error")
            return original(user_id, fields)

        monkeypatch.setattr(db, "update_balance", _flaky)

        report = await _scheduler(db).run_once(now=NOW)

        assert report.processed == 2
        assert report.errors == ["Balance update for user 2: disk I/O error"]
        assert len(report.trades) == 3
        for sub, uid in ((subs[0], 1), (subs[2], 3)):
            profit = db.get_subscription(sub.id).current_profit
            assert profit > 0
            assert db.get_balance(uid).available_balance_usd == profit
        assert db.get_balance(2).available_balance_usd == 0
        assert metrics.counter("cycle.errors") == 1

    @pytest.mark.asyncio
    async def test_subscription_exception_recorded(self, db, monkeypatch):
        bot = make_bot(db)
        subs = [make_subscription(db, bot, user_id=uid) for uid in (1, 2)]
        original = db.get_or_create_balance

        def _boom(user_id):
            if user_id == 1:
                raise RuntimeError("row vanished")
            return original(user_id)

        monkeypatch.setattr(db, "get_or_create_balance", _boom)

        report = await _scheduler(db).run_once(now=NOW)

        assert report.errors == [f"Subscription {subs[0].id}: row vanished"]
        assert report.processed == 1
        assert report.status == "completed"

    @pytest.mark.asyncio
    async def test_bot_failure_skips_to_next_bot(self, db, monkeypatch):
        bad = make_bot(db, name="Bad")
        good = make_bot(db, name="Good")
        make_subscription(db, good, user_id=5)
        original = db.list_subscriptions

        def _list(bot_id):
            if bot_id == bad.id:
                raise RuntimeError("cannot read subscriptions")
            return original(bot_id)

        monkeypatch.setattr(db, "list_subscriptions", _list)

        report = await _scheduler(db).run_once(now=NOW)

        assert report.errors == [f"Bot {bad.id}: cannot read subscriptions"]
        assert report.processed == 1

    @pytest.mark.asyncio
    async def test_fatal_error_ends_tick(self, db, monkeypatch):
        def _fail():
            raise RuntimeError("database is locked")

        monkeypatch.setattr(db, "list_active_bots", _fail)

        report = await _scheduler(db).run_once(now=NOW)

        assert report.errors == ["Fatal: database is locked"]
        assert report.status == "error"
        assert report.processed == 0


# ── Lifecycle ────────────────────────────────────────────────────────

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, db):
        scheduler = _scheduler(db)

        assert scheduler.start() is True
        assert scheduler.start() is False
        assert scheduler.is_running

        assert scheduler.stop() is True
        assert scheduler.stop() is False
        await scheduler.join()
        assert scheduler.state == "stopped"
        assert scheduler.cycle_count == 0

    def test_start_outside_event_loop_stays_stopped(self, db):
        scheduler = _scheduler(db)

        with pytest.raises(RuntimeError):
            scheduler.start()

        assert scheduler.state == "stopped"
        assert not scheduler.is_running
        assert scheduler.stop() is False

    @pytest.mark.asyncio
    async def test_start_after_failed_start(self, db):
        scheduler = _scheduler(db)
        with pytest.raises(RuntimeError):
            await asyncio.to_thread(scheduler.start)

        assert scheduler.start() is True
        scheduler.stop()
        await scheduler.join()
        assert scheduler.state == "stopped"

    @pytest.mark.asyncio
    async def test_run_on_start_ticks_immediately(self, db):
        bot = make_bot(db)
        # Ticks started by the loop use the wall clock
        make_subscription(db, bot, expiry_date=utcnow() + dt.timedelta(days=30))
        scheduler = _scheduler(db, run_on_start=True)

        scheduler.start()
        for _ in range(200):
            if scheduler.cycle_count:
                break
            await asyncio.sleep(0.01)
        scheduler.stop()
        await scheduler.join()

        assert scheduler.cycle_count == 1
        assert scheduler.last_report.processed == 1

    @pytest.mark.asyncio
    async def test_periodic_ticks(self, db):
        scheduler = _scheduler(db, cycle_interval_secs=0)
        scheduler.start()
        for _ in range(200):
            if scheduler.cycle_count >= 3:
                break
            await asyncio.sleep(0.01)
        scheduler.stop()
        await scheduler.join()

        assert scheduler.cycle_count >= 3

    @pytest.mark.asyncio
    async def test_state_persisted_for_status_readers(self, db):
        bot = make_bot(db)
        make_subscription(db, bot)

        await _scheduler(db).run_once(now=NOW)

        state = json.loads(db.get_engine_state(STATE_KEY))
        assert state["running"] is False
        assert state["cycle_count"] == 1
        assert state["instance_id"] == "test-host"
        assert state["last_cycle"]["processed"] == 1
        assert state["last_cycle"]["trades"][0]["result"] == "win"
