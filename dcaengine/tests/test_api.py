import pytest
from fastapi.testclient import TestClient

import dcaengine.main as main_mod
from dcaengine.runner.scheduler import Scheduler

CONFIG = {
    "initial_order_amount": 100,
    "trade_multiplier": 2,
    "re_entry_count": 3,
    "step_percent": 2,
    "step_multiplier": 1.5,
    "tp_target": 3,
}


@pytest.fixture
def api(monkeypatch, make_engine, market):
    market.set("BTCUSD", 100.0)
    market.set("ETHUSD", 10.0)
    engine = make_engine()
    monkeypatch.setattr(main_mod, "engine_instance", engine)
    monkeypatch.setattr(main_mod, "scheduler_instance", Scheduler(engine, 60))
    return TestClient(main_mod.app)


def _create(api, symbols=("BTCUSD",), **overrides):
    r = api.post("/dca-bots", json={"symbols": list(symbols), "config": {**CONFIG, **overrides}})
    assert r.status_code == 201, r.text
    return r.json()["bots"]


def test_create_and_list(api):
    bots = _create(api, ["BTCUSD", "ETHUSD"])
    assert {b["symbol"] for b in bots} == {"BTCUSD", "ETHUSD"}
    assert all(b["status"] == "active" for b in bots)

    listed = api.get("/dca-bots").json()["bots"]
    assert len(listed) == 2


def test_invalid_config_is_422(api):
    r = api.post("/dca-bots", json={"symbols": ["BTCUSD"], "config": {**CONFIG, "step_percent": 0}})
    assert r.status_code == 422
    assert r.json()["error"] == "InvalidBotConfig"


def test_unknown_bot_is_404(api):
    assert api.get("/dca-bots/nope").status_code == 404
    assert api.post("/dca-bots/nope/pause").status_code == 404


def test_trigger_and_executions(api):
    bot = _create(api)[0]
    r = api.post(f"/dca-bots/{bot['id']}/trigger")
    assert r.status_code == 200
    body = r.json()
    assert body["result"]["action"] == "ENTRY_FILLED"
    assert body["bot"]["current_entry_count"] == 1
    assert body["bot"]["total_invested"] == pytest.approx(100.0)

    execs = api.get(f"/dca-bots/{bot['id']}/executions").json()["executions"]
    assert len(execs) == 1
    assert execs[0]["action"] == "entry"
    assert execs[0]["entry_number"] == 1


def test_lifecycle_routes(api):
    bot = _create(api)[0]
    bid = bot["id"]

    assert api.post(f"/dca-bots/{bid}/pause").json()["status"] == "paused"
    assert api.post(f"/dca-bots/{bid}/pause").status_code == 409
    assert api.post(f"/dca-bots/{bid}/resume").json()["status"] == "active"
    assert api.post(f"/dca-bots/{bid}/retry-exit").status_code == 409
    assert api.post(f"/dca-bots/{bid}/stop").json()["status"] == "stopped"

    assert api.delete(f"/dca-bots/{bid}").json()["status"] == "deleted"
    assert api.get(f"/dca-bots/{bid}").status_code == 404


def test_manual_exit_route(api):
    bot = _create(api)[0]
    api.post(f"/dca-bots/{bot['id']}/trigger")
    r = api.post(f"/dca-bots/{bot['id']}/exit")
    assert r.status_code == 200
    assert r.json()["status"] == "completed"


def test_patch_config(api):
    bot = _create(api)[0]
    r = api.patch(f"/dca-bots/{bot['id']}/config", json={"tp_target": 5})
    assert r.status_code == 200
    assert r.json()["config"]["tp_target"] == 5

    bad = api.patch(f"/dca-bots/{bot['id']}/config", json={"exit_percentage": 500})
    assert bad.status_code == 422


def test_ladder_preview(api):
    bot = _create(api)[0]
    assert api.get(f"/dca-bots/{bot['id']}/ladder").json()["steps"] == []

    steps = api.get(f"/dca-bots/{bot['id']}/ladder", params={"initial_price": 100}).json()["steps"]
    assert [s["order_amount"] for s in steps] == [100, 200, 400, 800]
    assert steps[1]["trigger_price"] == pytest.approx(98.0)


def test_runner_trigger_and_status(api):
    _create(api, ["BTCUSD", "ETHUSD"])
    r = api.post("/runner/trigger").json()
    assert r["status"] == "ok"
    assert r["bots"] == 2

    status = api.get("/runner/status").json()
    assert status["running"] is False
    assert status["bots"] == {"active": 2}

    events = api.get("/runner/audit/tail", params={"limit": 500}).json()["events"]
    assert any(e["action"] == "ENTRY_FILLED" for e in events)


def test_debug_config_masks_api_key(api, monkeypatch):
    monkeypatch.setattr(main_mod.settings, "BACKEND_API_KEY", "secret")
    cfg = api.get("/debug/config").json()["config"]
    assert cfg["BACKEND_API_KEY"] == "***"
