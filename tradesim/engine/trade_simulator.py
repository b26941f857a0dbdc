"""Trade simulation: decide win/loss and size one cycle's trade.

Pure functions over their inputs and a ``random.Random``; no I/O.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from decimal import Decimal

from tradesim.config import TradingConfig
from tradesim.storage.models import ZERO, BotRecord, parse_decimal, quantize

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class TradeParameters:
    """Per-bot simulation inputs after fallback resolution."""
    min_profit_pct: Decimal
    max_profit_pct: Decimal
    win_rate_pct: Decimal


@dataclass(frozen=True)
class TradeOutcome:
    asset_amount_traded: Decimal
    is_win: bool
    profit_amount: Decimal
    loss_amount: Decimal

    @property
    def result(self) -> str:
        return "win" if self.is_win else "loss"


def _positive_or(value: str, default: float) -> Decimal:
    parsed = parse_decimal(value)
    if parsed is None or parsed <= 0:
        return Decimal(str(default))
    return parsed


def resolve_parameters(bot: BotRecord, config: TradingConfig) -> TradeParameters:
    """Parse the bot's textual percentages, substituting configured defaults.

    ``expected_roi`` is read as a win-rate percentage. Non-numeric values
    (e.g. a display string like "2-4% daily") fall back to the default;
    zero or negative values also fall back; the rest are capped at 100.
    """
    win_rate = _positive_or(bot.expected_roi, config.default_win_rate_pct)
    return TradeParameters(
        min_profit_pct=_positive_or(bot.min_profit_percent, config.default_min_profit_pct),
        max_profit_pct=_positive_or(bot.max_profit_percent, config.default_max_profit_pct),
        win_rate_pct=min(win_rate, _HUNDRED),
    )


def _uniform(rng: random.Random, low: Decimal, high: Decimal) -> Decimal:
    return Decimal(repr(rng.uniform(float(low), float(high))))


def tradeable_ceiling(remaining_allocation: Decimal, locked_balance: Decimal) -> Decimal:
    """Most a single cycle may put at risk: never more than is actually locked."""
    return max(ZERO, min(remaining_allocation, locked_balance))


def simulate_trade(
    params: TradeParameters,
    ceiling: Decimal,
    rng: random.Random | None = None,
    config: TradingConfig | None = None,
) -> TradeOutcome | None:
    """Simulate one trade against ``ceiling``.

    Returns None when there is nothing to trade (ceiling or the sized slice
    rounds to zero). On a loss the percentage range is capped at
    ``max_profit_pct * loss_cap_factor`` and the loss itself never exceeds
    the ceiling.
    """
    rng = rng or random.Random()
    config = config or TradingConfig()
    if ceiling <= 0:
        return None

    is_win = Decimal(repr(rng.random() * 100)) < params.win_rate_pct

    slice_pct = _uniform(
        rng,
        Decimal(str(config.trade_slice_min_pct)),
        Decimal(str(config.trade_slice_max_pct)),
    )
    trade_amount = quantize(min(ceiling * slice_pct / _HUNDRED, ceiling))
    if trade_amount <= 0:
        return None

    if is_win:
        pct = _uniform(rng, params.min_profit_pct, params.max_profit_pct)
        profit = quantize(trade_amount * pct / _HUNDRED)
        return TradeOutcome(trade_amount, True, profit, ZERO)

    loss_high = params.max_profit_pct * Decimal(str(config.loss_cap_factor))
    pct = _uniform(rng, params.min_profit_pct, loss_high)
    loss = quantize(min(trade_amount * pct / _HUNDRED, ceiling))
    return TradeOutcome(trade_amount, False, ZERO, loss)
