"""Apply one trade cycle of a subscription to the ledgers.

For a single subscription this module:
  1. Sizes and simulates a trade (asset selector + trade simulator)
  2. Updates the subscription's allocation/profit figures and appends the
     trade record, in one transaction
  3. Reconciles the user's balance tiers and portfolio, in a second
     transaction

A failure in step 3 is recorded in the batch error list and does not undo
step 2. The expiry path releases leftover allocation back to the user's
available balance and completes the subscription.
"""

from __future__ import annotations

import datetime as dt
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from tradesim.config import AssetDescriptor, TradingConfig
from tradesim.connectors.price_oracle import PriceOracle
from tradesim.engine.asset_selector import select_asset
from tradesim.engine.trade_simulator import (
    TradeOutcome,
    resolve_parameters,
    simulate_trade,
    tradeable_ceiling,
)
from tradesim.observability.logger import get_logger
from tradesim.observability.metrics import metrics
from tradesim.storage.database import Database, NotFoundError
from tradesim.storage.models import (
    ZERO,
    BotRecord,
    HoldingRecord,
    SubscriptionRecord,
    TradeRecord,
    quantize,
    utcnow,
)

log = get_logger(__name__)

_ONE = Decimal("1")


@dataclass
class TradeSummary:
    """One executed trade, as reported by the scheduler."""
    subscription_id: int
    user_id: int
    asset: str
    result: str
    profit: Decimal
    loss: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "asset": self.asset,
            "result": self.result,
            "profit": str(self.profit),
            "loss": str(self.loss),
        }


def _saved_id(subscription: SubscriptionRecord) -> int:
    if subscription.id is None:
        raise ValueError("Subscription has not been saved")
    return subscription.id


def release_allocation(
    db: Database,
    subscription_id: int,
    fields: dict[str, Any],
) -> Decimal | None:
    """Unlock a subscription's remaining allocation and close it.

    Moves ``min(remaining_allocation, locked)`` from locked to available,
    zeroes the remaining allocation and applies ``fields`` (e.g. the new
    status). Returns the amount released, or None without touching anything
    when the subscription is not active or has nothing left.
    """
    with db.transaction():
        sub = db.get_subscription(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if sub.status != "active" or sub.remaining_allocation <= 0:
            return None

        balance = db.get_or_create_balance(sub.user_id)
        release = max(ZERO, min(sub.remaining_allocation, balance.locked_balance_usd))
        new_locked = balance.locked_balance_usd - release
        new_available = balance.available_balance_usd + release
        db.update_balance(sub.user_id, {
            "locked_balance_usd": new_locked,
            "available_balance_usd": new_available,
            "total_balance_usd": new_available + new_locked,
        })
        db.update_subscription(subscription_id, {
            **fields,
            "remaining_allocation": ZERO,
        })
    return release


class SubscriptionReconciler:
    """Runs the trade and expiry paths for individual subscriptions."""

    def __init__(
        self,
        db: Database,
        oracle: PriceOracle | None = None,
        config: TradingConfig | None = None,
        rng: random.Random | None = None,
    ):
        self._db = db
        self._oracle = oracle
        self._config = config or TradingConfig()
        self._rng = rng or random.Random()

    # ── Trade path ───────────────────────────────────────────────────

    async def execute_trade(
        self,
        subscription: SubscriptionRecord,
        bot: BotRecord,
        errors: list[str],
        now: dt.datetime | None = None,
    ) -> TradeSummary | None:
        """Run one trade cycle. Returns None when there was nothing to trade."""
        now = now or utcnow()
        sub_id = _saved_id(subscription)

        balance = self._db.get_or_create_balance(subscription.user_id)
        ceiling = tradeable_ceiling(
            subscription.remaining_allocation, balance.locked_balance_usd,
        )
        outcome = simulate_trade(
            resolve_parameters(bot, self._config), ceiling, self._rng, self._config,
        )
        if outcome is None:
            log.debug("reconciler.nothing_to_trade", subscription_id=sub_id, ceiling=str(ceiling))
            return None

        asset = select_asset(
            bot.trading_assets, bot.asset_distribution, self._rng,
            default=self._config.default_asset,
        )
        price = await self._lookup_price(asset.id)

        self._apply_subscription_update(subscription, bot, asset, outcome, price, now)

        try:
            with self._db.transaction():
                if outcome.is_win:
                    self._credit_profit(
                        subscription.user_id, asset, bot.category or "crypto",
                        outcome.profit_amount, price,
                    )
                else:
                    self._debit_loss(subscription.user_id, outcome.loss_amount)
        except Exception as e:
            log.error(
                "reconciler.balance_update_failed",
                subscription_id=sub_id, user_id=subscription.user_id, error=str(e),
            )
            errors.append(f"Balance update for user {subscription.user_id}: {e}")

        metrics.incr(f"trades.{outcome.result}")
        log.info(
            "reconciler.trade_applied",
            subscription_id=sub_id,
            user_id=subscription.user_id,
            asset=asset.symbol,
            result=outcome.result,
            trade_amount=str(outcome.asset_amount_traded),
            profit=str(outcome.profit_amount),
            loss=str(outcome.loss_amount),
        )
        return TradeSummary(
            subscription_id=sub_id,
            user_id=subscription.user_id,
            asset=asset.symbol,
            result=outcome.result,
            profit=outcome.profit_amount,
            loss=outcome.loss_amount,
        )

    async def _lookup_price(self, asset_id: str) -> Decimal | None:
        if self._oracle is None:
            return None
        return await self._oracle.get_price(asset_id)

    def _apply_subscription_update(
        self,
        subscription: SubscriptionRecord,
        bot: BotRecord,
        asset: AssetDescriptor,
        outcome: TradeOutcome,
        price: Decimal | None,
        now: dt.datetime,
    ) -> None:
        sub_id = _saved_id(subscription)
        with self._db.transaction():
            current = self._db.get_subscription(sub_id)
            if current is None:
                raise NotFoundError(f"Subscription {sub_id} not found")

            remaining = current.remaining_allocation
            if not outcome.is_win:
                remaining = max(ZERO, remaining - outcome.loss_amount)

            fields: dict[str, Any] = {
                "remaining_allocation": remaining,
                "current_profit": current.current_profit
                + outcome.profit_amount - outcome.loss_amount,
                "total_profit_distributed": current.total_profit_distributed
                + outcome.profit_amount,
                "last_trade_date": now,
            }
            if outcome.profit_amount > 0:
                fields["last_profit_date"] = now
            self._db.update_subscription(sub_id, fields)

            self._db.append_trade_record(TradeRecord(
                subscription_id=sub_id,
                user_id=current.user_id,
                bot_id=bot.id if bot.id is not None else current.bot_id,
                asset_id=asset.id,
                asset_symbol=asset.symbol,
                asset_name=asset.name,
                asset_logo_url=asset.logo_url,
                asset_type=bot.category or "crypto",
                trade_result=outcome.result,
                trade_amount=outcome.asset_amount_traded,
                profit_amount=outcome.profit_amount,
                loss_amount=outcome.loss_amount,
                asset_price_at_trade=price,
                created_at=now,
            ))

    def _credit_profit(
        self,
        user_id: int,
        asset: AssetDescriptor,
        asset_type: str,
        profit: Decimal,
        price: Decimal | None,
    ) -> None:
        holding = self._db.get_portfolio_holding(user_id, asset.symbol)
        if price is not None and price > 0:
            unit_price = price
        elif holding is not None and holding.average_buy_price > 0:
            # No live price: keep valuing an existing position at its cost basis.
            unit_price = holding.average_buy_price
        else:
            # No price at all: 1 unit == 1 USD so the holding still shows the value.
            unit_price = _ONE
        units = quantize(profit / unit_price)

        if holding is None:
            self._db.create_portfolio_holding(HoldingRecord(
                user_id=user_id,
                asset_id=asset.id,
                symbol=asset.symbol,
                name=asset.name,
                asset_type=asset_type,
                amount=units,
                average_buy_price=quantize(unit_price),
                current_value=quantize(units * unit_price),
            ))
        else:
            if holding.id is None:
                raise ValueError(f"Holding {asset.symbol} for user {user_id} has no id")
            new_amount = holding.amount + units
            if new_amount > 0:
                avg = (holding.amount * holding.average_buy_price
                       + units * unit_price) / new_amount
            else:
                avg = unit_price
            self._db.update_portfolio_holding(holding.id, {
                "amount": new_amount,
                "average_buy_price": quantize(avg),
                "current_value": quantize(new_amount * unit_price),
            })

        balance = self._db.get_or_create_balance(user_id)
        new_available = balance.available_balance_usd + profit
        self._db.update_balance(user_id, {
            "available_balance_usd": new_available,
            "total_balance_usd": new_available + balance.locked_balance_usd,
        })

    def _debit_loss(self, user_id: int, loss: Decimal) -> None:
        balance = self._db.get_or_create_balance(user_id)
        locked = balance.locked_balance_usd
        available = balance.available_balance_usd
        if loss <= locked:
            new_locked = locked - loss
            new_available = available
        else:
            new_locked = ZERO
            new_available = max(ZERO, available - (loss - locked))
        self._db.update_balance(user_id, {
            "locked_balance_usd": new_locked,
            "available_balance_usd": new_available,
            "total_balance_usd": new_available + new_locked,
        })

    # ── Expiry path ──────────────────────────────────────────────────

    def handle_expiry(self, subscription: SubscriptionRecord) -> Decimal | None:
        """Release leftover allocation of an expired subscription.

        Idempotent: a subscription already completed (or with nothing left)
        is left untouched and None is returned.
        """
        released = release_allocation(
            self._db, _saved_id(subscription), {"status": "completed"},
        )
        if released is not None:
            metrics.incr("subscriptions.expired")
            log.info(
                "reconciler.expired",
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                released=str(released),
            )
        else:
            log.debug("reconciler.expiry_noop", subscription_id=subscription.id)
        return released
