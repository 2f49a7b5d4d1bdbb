import time

import pytest
from fastapi.testclient import TestClient

from web_fleet.app import create_app
from web_fleet.routines import RoutineRegistry


def _wait_until_idle(client: TestClient, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        payload = client.get("/api/runs/current").json()
        if not payload["active"]:
            return payload
        time.sleep(0.02)
    raise AssertionError("run did not finish in time")


@pytest.fixture
def registry():
    registry = RoutineRegistry()

    async def visit(ctx):
        ctx.log(f"visiting through {ctx.ws_url}")
        return True

    registry.register("visit", visit, display_name="Visit homepage")
    return registry


@pytest.fixture
def api(settings, provider, envs, registry):
    provider.environments = envs(3)
    app = create_app(settings, client=provider, registry=registry)
    with TestClient(app) as client:
        yield client


def test_healthz_reports_ready(api):
    response = api.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "ready": True, "issues": []}


def test_lists_routines_and_environments(api):
    routines = api.get("/api/routines").json()
    assert [item["display_name"] for item in routines] == ["Visit homepage"]

    environments = api.get("/api/environments").json()
    assert environments["total"] == 3
    assert environments["items"][0]["id"] == "env-1"


def test_run_executes_and_is_persisted(api, provider):
    response = api.post("/api/runs", json={"routines": ["visit"], "max_concurrent": 2})
    assert response.status_code == 202
    assert response.json()["environments"] == 3

    current = _wait_until_idle(api)
    assert current["stats"] == {"running": 0, "completed": 3, "failed": 0}
    assert current["last_summary"]["stats"]["completed"] == 3
    assert any("visiting through ws://" in line["message"] for line in current["logs"])
    assert provider.max_open <= 2
    assert provider.open == set()

    runs = api.get("/api/runs").json()
    assert len(runs) == 1
    assert len(runs[0]["outcomes"]) == 3


def test_run_can_target_selected_environments(api, provider):
    response = api.post(
        "/api/runs",
        json={"routines": ["visit"], "environment_ids": [" env-2 ", "env-9"]},
    )
    assert response.status_code == 202
    assert response.json()["environments"] == 2

    _wait_until_idle(api)
    assert provider.calls("start") == ["env-2", "env-9"]


def test_unknown_routine_is_rejected(api):
    response = api.post("/api/runs", json={"routines": ["nope"]})
    assert response.status_code == 400
    assert "Unknown routine" in response.json()["detail"]


def test_empty_routine_list_is_invalid(api):
    response = api.post("/api/runs", json={"routines": []})
    assert response.status_code == 422


def test_stop_without_active_run_conflicts(api):
    response = api.post("/api/runs/stop")
    assert response.status_code == 409


def test_configured_schedule_mode_applies_when_request_omits_it(api, settings):
    settings.schedule_mode = "per_round"

    response = api.post("/api/runs", json={"routines": ["visit"]})
    assert response.status_code == 202
    assert response.json()["mode"] == "per_round"

    current = _wait_until_idle(api)
    assert current["last_summary"]["mode"] == "per_round"
    assert {item["round"] for item in current["last_summary"]["outcomes"]} == {1}


def test_request_mode_overrides_configured_default(api, settings):
    settings.schedule_mode = "per_round"

    response = api.post("/api/runs", json={"routines": ["visit"], "mode": "per_environment"})
    assert response.json()["mode"] == "per_environment"
    _wait_until_idle(api)
