"""Subscription lifecycle: subscribe, pause, resume, stop.

Subscribing moves the invested amount from the user's available balance
into the locked tier; stopping hands the unused allocation back the same
way the expiry path does.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

from tradesim.engine.reconciler import release_allocation
from tradesim.observability.logger import get_logger
from tradesim.storage.database import Database, InsufficientFundsError, NotFoundError
from tradesim.storage.models import BotRecord, SubscriptionRecord, quantize, utcnow

log = get_logger(__name__)


class SubscriptionError(Exception):
    """Invalid subscription request or state transition."""


def subscribe(
    db: Database,
    user_id: int,
    bot: BotRecord,
    amount: Decimal,
    now: dt.datetime | None = None,
) -> SubscriptionRecord:
    """Lock ``amount`` of the user's available balance into a new subscription."""
    if bot.id is None:
        raise SubscriptionError("Bot has not been saved")
    if not bot.is_active:
        raise SubscriptionError(f"Bot {bot.id} is not active")
    if not amount.is_finite():
        raise SubscriptionError(f"Investment amount must be a finite number, got {amount}")
    amount = quantize(amount)
    if amount <= 0:
        raise SubscriptionError("Investment amount must be positive")
    now = now or utcnow()

    with db.transaction():
        balance = db.get_or_create_balance(user_id)
        if balance.available_balance_usd < amount:
            raise InsufficientFundsError(
                f"User {user_id} has {balance.available_balance_usd} available, "
                f"needs {amount}"
            )
        new_available = balance.available_balance_usd - amount
        new_locked = balance.locked_balance_usd + amount
        db.update_balance(user_id, {
            "available_balance_usd": new_available,
            "locked_balance_usd": new_locked,
            "total_balance_usd": new_available + new_locked,
        })
        sub = db.create_subscription(SubscriptionRecord(
            user_id=user_id,
            bot_id=bot.id,
            investment_amount=amount,
            allocated_amount=amount,
            remaining_allocation=amount,
            purchase_date=now,
            expiry_date=now + dt.timedelta(days=bot.duration_days),
        ))

    log.info(
        "subscriptions.created",
        subscription_id=sub.id, user_id=user_id, bot_id=bot.id, amount=str(amount),
    )
    return sub


def _require_active(db: Database, subscription_id: int) -> SubscriptionRecord:
    sub = db.get_subscription(subscription_id)
    if sub is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    if sub.status != "active" or sub.is_stopped:
        raise SubscriptionError(
            f"Subscription {subscription_id} is {sub.status}, not active"
        )
    return sub


def pause(db: Database, subscription_id: int) -> None:
    with db.transaction():
        _require_active(db, subscription_id)
        db.update_subscription(subscription_id, {"is_paused": True})
    log.info("subscriptions.paused", subscription_id=subscription_id)


def resume(db: Database, subscription_id: int) -> None:
    with db.transaction():
        _require_active(db, subscription_id)
        db.update_subscription(subscription_id, {"is_paused": False})
    log.info("subscriptions.resumed", subscription_id=subscription_id)


def stop_subscription(db: Database, subscription_id: int) -> Decimal:
    """Stop trading and return the unused allocation to available balance.

    Returns the amount released (zero when nothing was left to release).
    """
    with db.transaction():
        _require_active(db, subscription_id)
        released = release_allocation(
            db, subscription_id, {"status": "stopped", "is_stopped": True},
        )
        if released is None:
            # Nothing left to release; still close the subscription.
            db.update_subscription(
                subscription_id, {"status": "stopped", "is_stopped": True},
            )
            released = Decimal("0")
    log.info(
        "subscriptions.stopped",
        subscription_id=subscription_id, released=str(released),
    )
    return released
