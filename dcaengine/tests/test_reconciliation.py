import pytest

from dcaengine.bots.models import BotEntry, EntryStatus, ReconciledMetrics
from dcaengine.bots.reconciliation import (
    apply_buy_fill,
    apply_sell_fill,
    reconcile,
    stale_metrics,
)

from conftest import make_bot


def test_buy_fill_weighted_average():
    avg, qty = apply_buy_fill(0.0, 0.0, 100.0, 1.0)
    assert (avg, qty) == (100.0, 1.0)

    avg, qty = apply_buy_fill(avg, qty, 90.0, 2.0)
    assert qty == 3.0
    assert avg == pytest.approx((100.0 + 180.0) / 3.0)


def test_sell_fill_keeps_average():
    avg, qty = apply_sell_fill(95.0, 3.0, 1.0)
    assert avg == 95.0
    assert qty == 2.0

    avg, qty = apply_sell_fill(95.0, 2.0, 5.0)
    assert qty == 0.0


def test_out_of_band_sell_zeroes_invested():
    bot = make_bot(average_purchase_price=100.0, held_quantity=2.0)
    m = reconcile(bot, 0.0, 120.0)
    assert m.total_invested == 0.0
    assert m.unrealized_pnl == 0.0
    assert m.current_value == 0.0
    # basis survives for display
    assert m.average_purchase_price == 100.0


@pytest.mark.parametrize("holdings", [0.0, 0.5, 2.0, 7.25])
def test_invested_is_holdings_times_avg(holdings):
    bot = make_bot(average_purchase_price=80.0, held_quantity=2.0)
    m = reconcile(bot, holdings, 100.0)
    assert m.total_invested == pytest.approx(holdings * 80.0)
    assert m.unrealized_pnl == pytest.approx(holdings * 20.0)


def test_partial_sell_reduces_invested_proportionally():
    bot = make_bot(average_purchase_price=100.0, held_quantity=4.0)
    m = reconcile(bot, 1.0, 110.0)
    assert m.total_invested == pytest.approx(100.0)
    assert m.unrealized_pnl_percent == pytest.approx(10.0)
    assert m.current_tp_price == pytest.approx(103.0)


def test_next_entry_price_from_last_fill():
    bot = make_bot(
        average_purchase_price=100.0,
        held_quantity=1.0,
        entries=[BotEntry(1, 100.0, 1.0, 100.0, status=EntryStatus.FILLED)],
    )
    m = reconcile(bot, 1.0, 100.0)
    assert m.next_entry_price == pytest.approx(98.0)


def test_stale_metrics_reuse_last_snapshot():
    bot = make_bot(average_purchase_price=100.0, held_quantity=5.0)
    bot.last_metrics = ReconciledMetrics(current_holdings=1.5, current_price=99.0)

    m = stale_metrics(bot, 101.0, now_ms=1)
    assert m.holdings_stale
    assert m.current_holdings == 1.5
    assert m.current_price == 101.0

    m2 = stale_metrics(bot, None, now_ms=1)
    assert m2.current_price == 99.0


def test_stale_metrics_without_snapshot_use_ledger():
    bot = make_bot(average_purchase_price=100.0, held_quantity=5.0)
    m = stale_metrics(bot, 100.0, now_ms=1)
    assert m.current_holdings == 5.0
    assert m.holdings_stale
