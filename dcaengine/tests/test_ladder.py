import pytest

from dcaengine.strategy.ladder import drop_percent, ladder_plan, next_entry, order_amount

from conftest import make_config


def _cfg():
    return make_config(
        initial_order_amount=10,
        trade_multiplier=2,
        step_percent=1,
        step_multiplier=2,
        re_entry_count=3,
    )


def test_order_amounts_double_per_entry():
    cfg = _cfg()
    assert [order_amount(cfg, n) for n in (1, 2, 3)] == [10, 20, 40]


def test_drops_relative_to_prior_fill():
    cfg = _cfg()
    assert drop_percent(cfg, 1) == 0.0
    assert drop_percent(cfg, 2) == 1.0
    assert drop_percent(cfg, 3) == 2.0

    step2 = next_entry(cfg, 2, prior_fill_price=100.0)
    assert step2.trigger_price == pytest.approx(99.0)

    # entry 3 keys off entry 2's fill, not the initial entry
    step3 = next_entry(cfg, 3, prior_fill_price=99.0)
    assert step3.trigger_price == pytest.approx(99.0 * 0.98)
    assert step3.order_amount == 40


def test_initial_entry_has_no_trigger():
    step = next_entry(_cfg(), 1, prior_fill_price=None)
    assert step.trigger_price is None
    assert step.drop_percent == 0.0
    assert step.order_amount == 10


def test_trigger_never_negative():
    cfg = make_config(step_percent=60, step_multiplier=2, re_entry_count=3)
    step = next_entry(cfg, 3, prior_fill_price=10.0)  # 120% drop
    assert step.trigger_price == 0.0


@pytest.mark.parametrize("tm,sm", [(1.0, 1.0), (1.5, 1.2), (3.0, 2.0)])
def test_ladder_is_monotone(tm, sm):
    cfg = make_config(trade_multiplier=tm, step_multiplier=sm, re_entry_count=5)
    steps = ladder_plan(cfg, 1000.0)

    assert len(steps) == cfg.max_entries
    amounts = [s.order_amount for s in steps]
    drops = [s.drop_percent for s in steps[1:]]
    prices = [s.trigger_price for s in steps]

    assert all(b >= a for a, b in zip(amounts, amounts[1:]))
    assert all(b >= a for a, b in zip(drops, drops[1:]))
    assert all(b < a for a, b in zip(prices, prices[1:]))
