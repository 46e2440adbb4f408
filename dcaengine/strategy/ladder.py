# dcaengine/strategy/ladder.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from dcaengine.bots.models import BotConfig


@dataclass(frozen=True)
class LadderStep:
    entry_number: int
    drop_percent: float
    trigger_price: Optional[float]
    order_amount: float


def drop_percent(config: BotConfig, entry_number: int) -> float:
    """
    Price drop (relative to the prior fill) that triggers entry n.
    n=1 is the initial entry and has no drop.
    """
    n = int(entry_number)
    if n <= 1:
        return 0.0
    return float(config.step_percent) * float(config.step_multiplier) ** (n - 2)


def order_amount(config: BotConfig, entry_number: int) -> float:
    n = max(1, int(entry_number))
    return float(config.initial_order_amount) * float(config.trade_multiplier) ** (n - 1)


def next_entry(
    config: BotConfig,
    entry_number: int,
    prior_fill_price: Optional[float],
) -> LadderStep:
    """
    Trigger price and size for entry n. The ladder is relative to the last
    fill, not to the initial entry.
    """
    n = max(1, int(entry_number))
    drop = drop_percent(config, n)
    trigger: Optional[float] = None
    if n > 1 and prior_fill_price is not None and prior_fill_price > 0:
        trigger = max(0.0, float(prior_fill_price) * (1.0 - drop / 100.0))
    return LadderStep(
        entry_number=n,
        drop_percent=drop,
        trigger_price=trigger,
        order_amount=order_amount(config, n),
    )


def ladder_plan(config: BotConfig, initial_price: float) -> List[LadderStep]:
    """Full ladder assuming every level fills exactly at its trigger."""
    steps: List[LadderStep] = []
    prior: Optional[float] = float(initial_price)
    for n in range(1, config.max_entries + 1):
        if n == 1:
            step = LadderStep(1, 0.0, float(initial_price), order_amount(config, 1))
        else:
            step = next_entry(config, n, prior)
        steps.append(step)
        prior = step.trigger_price
    return steps
