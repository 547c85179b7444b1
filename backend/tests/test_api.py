import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeFetcher, FakeLLM, FakeSearch, espresso_plan, espresso_rows
from research_engine.engine import ResearchOrchestrator
from research_engine.main import create_app, format_sse, is_terminal_event

HEADERS = {"X-Household-Id": "house-1", "X-User-Id": "user-1"}
BASE = "/api/conversations/conv-1/research"


@pytest.fixture
def client(settings, store):
    orchestrator = ResearchOrchestrator(
        settings=settings,
        store=store,
        llm=FakeLLM(),
        search=FakeSearch(espresso_rows()),
        fetcher=FakeFetcher(),
    )
    app = create_app(settings=settings, orchestrator=orchestrator)
    with TestClient(app) as test_client:
        yield test_client


def _create_plan(client, **body):
    response = client.post(f"{BASE}/plan", json={"query": "best espresso machines under $500", "effort": "quick", **body}, headers=HEADERS)
    assert response.status_code == 200
    return response.json()


def _wait_for_terminal(client, run_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"{BASE}/{run_id}", headers=HEADERS).json()
        if body["run"]["status"] not in {"planning", "running"}:
            return body
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} did not finish")


def test_capabilities(client):
    body = client.get("/api/system/capabilities").json()
    assert body["llm_enabled"] is False
    assert body["search_providers"]["duckduckgo"] is True
    assert body["blocked_domains"] == ["pinterest.com"]


def test_plan_start_and_status(client):
    created = _create_plan(client)
    run_id = created["run_id"]
    assert created["plan"]["sub_questions"] == espresso_plan()["sub_questions"]

    response = client.post(f"{BASE}/{run_id}/start", headers=HEADERS)
    assert response.status_code == 202
    assert response.json()["run"]["status"] == "running"

    status = _wait_for_terminal(client, run_id)
    assert status["run"]["status"] == "completed"
    assert status["report"]["summary"]
    assert status["findings"] and status["sources"]

    runs = client.get(BASE, headers=HEADERS).json()["runs"]
    assert [run["id"] for run in runs] == [run_id]
    assert runs[0]["completed_sub_questions"] == 3

    events = client.get(f"{BASE}/{run_id}/events", params={"after_id": 0, "limit": 5}, headers=HEADERS).json()["events"]
    assert len(events) == 5
    assert events[0]["stage"] == "planning"


def test_event_stream_replays_history_and_ends_on_terminal_event(client):
    run_id = _create_plan(client)["run_id"]
    client.post(f"{BASE}/{run_id}/cancel", headers=HEADERS)

    response = client.get(f"{BASE}/{run_id}/events/stream", headers=HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    chunks = [chunk for chunk in response.text.split("\n\n") if chunk]
    assert chunks[0].startswith("id: ")
    assert "event: planning" in chunks[0]
    assert "event: run" in chunks[-1]
    assert '"terminal": true' in chunks[-1]


def test_missing_household_header_is_unauthorized(client):
    assert client.get(BASE).status_code == 401


def test_unknown_run_is_not_found(client):
    assert client.get(f"{BASE}/missing", headers=HEADERS).status_code == 404
    assert client.post(f"{BASE}/missing/start", headers=HEADERS).status_code == 404

    run_id = _create_plan(client)["run_id"]
    other_household = {"X-Household-Id": "house-2"}
    assert client.get(f"{BASE}/{run_id}", headers=other_household).status_code == 404


def test_start_after_cancel_conflicts(client):
    run_id = _create_plan(client)["run_id"]
    canceled = client.post(f"{BASE}/{run_id}/cancel", headers=HEADERS).json()["run"]
    assert canceled["status"] == "canceled"

    response = client.post(f"{BASE}/{run_id}/start", headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["context"]["status"] == "canceled"


def test_invalid_bodies_are_rejected(client):
    assert client.post(f"{BASE}/plan", json={"query": "   "}, headers=HEADERS).status_code == 422
    assert client.post(f"{BASE}/plan", json={"query": "x", "effort": "extreme"}, headers=HEADERS).status_code == 422

    run_id = _create_plan(client)["run_id"]
    bad_plan = espresso_plan()
    bad_plan["sub_questions"] = ["Only one?"]
    response = client.post(f"{BASE}/{run_id}/start", json={"plan": bad_plan}, headers=HEADERS)
    assert response.status_code == 422


def test_create_tasks_from_findings(client):
    run_id = _create_plan(client)["run_id"]
    client.post(f"{BASE}/{run_id}/start", headers=HEADERS)
    status = _wait_for_terminal(client, run_id)

    response = client.post(
        f"{BASE}/{run_id}/tasks",
        json={"finding_ids": [status["findings"][0]["id"]], "action_items": [{"title": "Compare grinder prices"}]},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert len(response.json()["created_task_ids"]) == 2


def test_sse_helpers():
    event = {"id": 7, "stage": "run", "status": "completed", "payload": {"terminal": True}}
    assert format_sse(event).startswith("id: 7\nevent: run\ndata: {")
    assert is_terminal_event(event)
    assert not is_terminal_event({"id": 8, "stage": "search", "payload": {"terminal": True}})
