"""Tests for the dashboard hub and its JSON API."""

from datetime import date, timedelta

import pytest

from dashboard import (
    ACCEPT_PENDING,
    CHANGE_PROVIDER,
    RESET_AWAY,
    TOGGLE_AUTO_REPLY,
    DashboardHub,
    create_app,
)


@pytest.fixture
def hub():
    return DashboardHub()


@pytest.fixture
def client(hub):
    app = create_app(hub)
    app.config["TESTING"] = True
    return app.test_client()


def test_events_reach_listeners_and_snapshot(hub):
    events = []
    hub.subscribe(lambda event, data: events.append(event))

    hub.prompt_submitted({"id": "u1"}, "prompt", True, False, "openrouter")
    hub.response_received({"id": "u1"}, "hey", "chutes", True)
    hub.update_bot_state({"name": "Catzuya"})

    assert events == ["prompt-data", "prompt-response", "bot-state"]
    snapshot = hub.snapshot()
    assert snapshot["lastPrompt"]["isBatched"]
    assert snapshot["lastResponse"]["wasFallback"]
    assert snapshot["botState"] == {"name": "Catzuya"}


def test_failing_listener_does_not_break_events(hub):
    def broken(event, data):
        raise RuntimeError("socket closed")

    hub.subscribe(broken)
    hub.log_activity("still works")

    assert hub.recent_activity()[-1]["message"] == "still works"


def test_activity_is_bounded():
    hub = DashboardHub(activity_limit=3)
    for i in range(5):
        hub.log_activity(str(i))
    assert [a["message"] for a in hub.recent_activity()] == ["2", "3", "4"]


def test_message_count_resets_daily(hub):
    today = date.today()
    hub.increment_message_count(today)
    assert hub.increment_message_count(today) == 2
    assert hub.increment_message_count(today + timedelta(days=1)) == 1


def test_unknown_command(hub):
    with pytest.raises(KeyError):
        hub.command("nope")


def test_state_endpoint(client, hub):
    hub.set_pending_requests({"u9": {"userId": "u9", "username": "Bob"}})

    response = client.get("/api/state")

    assert response.status_code == 200
    assert response.get_json()["pendingRequests"] == [{"userId": "u9", "username": "Bob"}]
    assert client.get("/api/pending").get_json()["requests"][0]["userId"] == "u9"


def test_accept_pending_routes_to_handler(client, hub):
    seen = []
    hub.register_command(ACCEPT_PENDING, lambda payload: seen.append(payload) or {"allowed": True})

    response = client.post("/api/pending/u9/accept")

    assert response.status_code == 200
    assert response.get_json() == {"ok": True, "result": {"allowed": True}}
    assert seen == [{"userId": "u9"}]


def test_required_fields(client, hub):
    hub.register_command(TOGGLE_AUTO_REPLY, lambda payload: payload)
    hub.register_command(CHANGE_PROVIDER, lambda payload: payload)

    assert client.post("/api/auto-reply", json={}).status_code == 400
    assert client.post("/api/provider", json={}).status_code == 400
    assert client.post("/api/auto-reply", json={"userId": "u1"}).status_code == 200


def test_handler_value_error_is_bad_request(client, hub):
    def reject(payload):
        raise ValueError("Unknown AI provider: nope")

    hub.register_command(CHANGE_PROVIDER, reject)
    response = client.post("/api/provider", json={"provider": "nope"})

    assert response.status_code == 400
    assert "nope" in response.get_json()["error"]


def test_unregistered_command_is_not_found(client):
    assert client.post("/api/away/reset").status_code == 404


def test_reset_away_route(client, hub):
    hub.register_command(RESET_AWAY, lambda payload: {"isAway": False})
    assert client.post("/api/away/reset").get_json()["result"] == {"isAway": False}
