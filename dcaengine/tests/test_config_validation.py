import pytest

from dcaengine.bots.errors import InvalidBotConfig
from dcaengine.bots.models import BotConfig
from dcaengine.core.config import Settings


def test_invalid_execution_mode_is_fatal():
    s = Settings(EXECUTION_MODE="banana")
    with pytest.raises(ValueError):
        s.validate_runtime()


def test_invalid_bearish_mode_is_fatal():
    s = Settings(EXIT_BEARISH_MODE="sometimes")
    with pytest.raises(ValueError) as e:
        s.validate_runtime()
    assert "EXIT_BEARISH_MODE" in str(e.value)


def test_live_mode_warning_not_error():
    s = Settings(EXECUTION_MODE="LIVE", BACKEND_API_KEY="k")
    warnings = s.validate_runtime()
    assert s.EXECUTION_MODE == "live"
    assert any("REAL orders" in w for w in warnings)


def test_reason_lists_accept_csv_and_json():
    s = Settings(
        TRANSIENT_REJECTION_REASONS="Rate Limit, timeout",
        PERMANENT_REJECTION_REASONS='["Invalid", "Permission denied"]',
    )
    assert s.TRANSIENT_REJECTION_REASONS == ["rate limit", "timeout"]
    assert s.PERMANENT_REJECTION_REASONS == ["invalid", "permission denied"]


def test_reason_lists_from_env(monkeypatch):
    monkeypatch.setenv("TRANSIENT_REJECTION_REASONS", "busy,overloaded")
    s = Settings()
    assert s.TRANSIENT_REJECTION_REASONS == ["busy", "overloaded"]


def test_defaults_validate_cleanly():
    assert Settings().validate_runtime() == []


@pytest.mark.parametrize(
    "field,value",
    [
        ("initial_order_amount", 0),
        ("trade_multiplier", 0.5),
        ("re_entry_count", 0),
        ("step_percent", 0),
        ("step_percent", 100),
        ("step_multiplier", 0.9),
        ("tp_target", 0),
        ("exit_percentage", 0),
        ("exit_percentage", 101),
        ("re_entry_delay", -1),
    ],
)
def test_bot_config_bounds(field, value):
    data = dict(initial_order_amount=10, re_entry_count=3, step_percent=1, tp_target=3)
    data[field] = value
    with pytest.raises(InvalidBotConfig):
        BotConfig.build(data)


def test_bot_config_rejects_unknown_fields():
    with pytest.raises(InvalidBotConfig):
        BotConfig.build(dict(initial_order_amount=10, re_entry_count=3, step_percent=1, tp_target=3, leverage=5))


def test_partial_update_revalidates():
    cfg = BotConfig.build(dict(initial_order_amount=10, re_entry_count=3, step_percent=1, tp_target=3))
    updated = cfg.merged({"tp_target": 5, "re_entry_delay": 30})
    assert updated.tp_target == 5
    assert updated.initial_order_amount == 10
    assert cfg.tp_target == 3

    with pytest.raises(InvalidBotConfig):
        cfg.merged({"trade_multiplier": 0})
