"""Tests for subscribe / pause / resume / stop."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from tradesim.engine.subscriptions import (
    SubscriptionError,
    pause,
    resume,
    stop_subscription,
    subscribe,
)
from tradesim.storage.database import InsufficientFundsError, NotFoundError
from tradesim.storage.demo_data import seed_demo

from conftest import NOW, make_bot, make_subscription

D = Decimal


class TestSubscribe:

    def test_moves_available_into_locked(self, db):
        bot = make_bot(db, duration_days=14)
        db.set_balance(1, available=D("1000"), locked=D("100"))

        sub = subscribe(db, 1, bot, D("400"), now=NOW)

        assert sub.id is not None
        assert sub.investment_amount == sub.allocated_amount == sub.remaining_allocation == D("400")
        assert sub.status == "active"
        assert sub.expiry_date == NOW + dt.timedelta(days=14)
        balance = db.get_balance(1)
        assert balance.available_balance_usd == D("600")
        assert balance.locked_balance_usd == D("500")
        assert balance.total_balance_usd == D("1100")

    def test_insufficient_funds_changes_nothing(self, db):
        bot = make_bot(db)
        db.set_balance(1, available=D("50"), locked=D("0"))

        with pytest.raises(InsufficientFundsError):
            subscribe(db, 1, bot, D("50.01"), now=NOW)

        assert db.list_user_subscriptions(1) == []
        assert db.get_balance(1).available_balance_usd == D("50")

    def test_rejects_inactive_bot_and_bad_amounts(self, db):
        db.set_balance(1, available=D("100"), locked=D("0"))
        with pytest.raises(SubscriptionError):
            subscribe(db, 1, make_bot(db, is_active=False), D("10"))
        with pytest.raises(SubscriptionError):
            subscribe(db, 1, make_bot(db), D("0"))
        with pytest.raises(SubscriptionError):
            subscribe(db, 1, make_bot(db), D("-5"))

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity"])
    def test_rejects_non_finite_amounts(self, db, amount):
        db.set_balance(1, available=D("100"), locked=D("0"))
        with pytest.raises(SubscriptionError):
            subscribe(db, 1, make_bot(db), D(amount))
        assert db.get_balance(1).available_balance_usd == D("100")


class TestPauseResume:

    def test_toggle(self, db):
        sub = make_subscription(db, make_bot(db))
        pause(db, sub.id)
        assert db.get_subscription(sub.id).is_paused is True
        resume(db, sub.id)
        assert db.get_subscription(sub.id).is_paused is False

    def test_only_active_subscriptions(self, db):
        sub = make_subscription(db, make_bot(db), status="completed")
        with pytest.raises(SubscriptionError):
            pause(db, sub.id)
        with pytest.raises(NotFoundError):
            resume(db, 12345)


class TestStop:

    def test_releases_remaining_allocation(self, db):
        sub = make_subscription(
            db, make_bot(db), amount="500", available="20", remaining_allocation=D("320"),
        )

        released = stop_subscription(db, sub.id)

        assert released == D("320")
        after = db.get_subscription(sub.id)
        assert after.status == "stopped"
        assert after.is_stopped is True
        assert after.remaining_allocation == 0
        balance = db.get_balance(1)
        assert balance.locked_balance_usd == D("180")
        assert balance.available_balance_usd == D("340")
        assert balance.total_balance_usd == D("520")

    def test_nothing_left_still_stops(self, db):
        sub = make_subscription(db, make_bot(db), remaining_allocation=D("0"))
        assert stop_subscription(db, sub.id) == 0
        assert db.get_subscription(sub.id).status == "stopped"

    def test_stop_twice_rejected(self, db):
        sub = make_subscription(db, make_bot(db))
        stop_subscription(db, sub.id)
        with pytest.raises(SubscriptionError):
            stop_subscription(db, sub.id)


class TestDemoData:

    def test_seed_is_repeatable(self, db):
        first = seed_demo(db, now=NOW)
        second = seed_demo(db, now=NOW)

        assert first == {"bots": 3, "users": 2, "subscriptions": 3}
        assert second["subscriptions"] == 0
        assert len(db.list_active_bots()) == 3
        balance = db.get_balance(1)
        assert balance.locked_balance_usd == D("4000")
        assert balance.available_balance_usd == D("6000")
