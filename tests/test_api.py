import pytest
from fastapi.testclient import TestClient

from benefits_interview.api import create_app
from benefits_interview.coverage_oracle import CoverageOracleClient

from conftest import FakeChatClient, sections_payload


@pytest.fixture()
def api_chat_client():
    return FakeChatClient([sections_payload(household=True, assets=True)])


@pytest.fixture()
def client(settings, store, api_chat_client):
    app = create_app(
        settings,
        store=store,
        oracle=CoverageOracleClient(api_chat_client, timeout=1.0),
    )
    with TestClient(app) as test_client:
        yield test_client


def _post_event(client, session_id, role, content):
    return client.post(
        f"/sessions/{session_id}/events",
        json={"role": role, "content": content},
    )


def test_event_creates_interview(client):
    r = _post_event(client, "abc", "assistant", "Who lives in your household?")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["message_count"] == 1
    assert body["completed"] is False

    r = client.get("/interviews/abc")
    assert r.status_code == 200
    assert r.json()["status"] == "in_progress"


def test_unknown_role_is_rejected(client):
    r = _post_event(client, "abc", "system", "hello")
    assert r.status_code == 422


def test_periodic_and_forced_checkpoints(client):
    for n in range(5):
        role = "assistant" if n % 2 == 0 else "user"
        assert _post_event(client, "abc", role, f"turn {n}").status_code == 200

    r = client.get("/interviews/abc/checkpoints")
    assert r.status_code == 200
    assert len(r.json()) == 1

    r = client.post("/sessions/abc/checkpoint")
    assert r.status_code == 200
    assert len(r.json()["checkpoint"]["transcript_snapshot"]) == 5
    assert r.json()["status"]["checkpoints_saved"] == 2
    assert len(client.get("/interviews/abc/checkpoints").json()) == 2


def test_manual_completion_needs_confirmation(client):
    _post_event(client, "abc", "assistant", "Hello")
    _post_event(client, "abc", "user", "Hi, I rent an apartment.")

    r = client.post("/sessions/abc/complete", json={"confirmed": False})
    assert r.status_code == 200
    assert r.json()["record"] is None
    assert r.json()["status"]["completed"] is False

    r = client.post("/sessions/abc/complete", json={"confirmed": True})
    assert r.status_code == 200
    body = r.json()
    assert body["record"]["status"] == "completed"
    assert body["record"]["summary"]["reason"] == "User manually ended interview"
    assert body["status"]["completed"] is True

    r = client.get("/sessions/abc")
    assert r.json()["completion_reason"] == "User manually ended interview"


def test_completion_failure_returns_503(client, store):
    _post_event(client, "abc", "assistant", "Hello")
    store.available = False

    r = client.post("/sessions/abc/complete", json={"confirmed": True})
    assert r.status_code == 503

    store.available = True
    r = client.post("/sessions/abc/complete", json={"confirmed": True})
    assert r.status_code == 200


def test_store_outage_on_event_returns_503(client, store):
    store.available = False
    r = _post_event(client, "abc", "user", "Hello")
    assert r.status_code == 503


def test_unknown_sessions_return_404(client):
    assert client.get("/sessions/nope").status_code == 404
    assert client.get("/interviews/nope").status_code == 404
    assert client.get("/interviews/nope/checkpoints").status_code == 404


def test_evaluate_coverage(client, api_chat_client):
    r = client.post("/evaluate-coverage", json={"transcript": "   "})
    assert r.status_code == 400
    assert api_chat_client.calls == []

    r = client.post(
        "/evaluate-coverage",
        json={"transcript": "user: I live alone and own a car"},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["sections"]["household"] is True
    assert body["sections"]["assets"] is True
    assert body["complete"] is False
    assert body["degraded"] is False
    assert body["missing_sections"] == ["income", "expenses", "special"]


def test_evaluate_coverage_reports_degraded_result(settings, store):
    broken = FakeChatClient(["no json here"])
    app = create_app(
        settings, store=store, oracle=CoverageOracleClient(broken, timeout=1.0)
    )
    with TestClient(app) as client:
        r = client.post("/evaluate-coverage", json={"transcript": "user: hi"})

    assert r.status_code == 200
    body = r.json()
    assert body["degraded"] is True
    assert body["error"]
    assert not any(
        value for key, value in body["sections"].items() if key != "complete"
    )


def test_completing_a_session_this_process_never_saw(client):
    r = client.post("/sessions/fresh/complete", json={"confirmed": True})

    assert r.status_code == 200, r.text
    assert r.json()["record"]["status"] == "completed"
    assert client.get("/interviews/fresh").json()["status"] == "completed"


def test_restarted_app_resumes_from_latest_checkpoint(settings, store, api_chat_client):
    def build_app():
        return create_app(
            settings,
            store=store,
            oracle=CoverageOracleClient(api_chat_client, timeout=1.0),
        )

    with TestClient(build_app()) as first:
        for n in range(4):
            role = "assistant" if n % 2 == 0 else "user"
            assert _post_event(first, "abc", role, f"turn {n}").status_code == 200
        assert first.post("/sessions/abc/checkpoint").status_code == 200

    with TestClient(build_app()) as second:
        r = _post_event(second, "abc", "assistant", "turn 4")
        assert r.status_code == 200
        assert r.json()["message_count"] == 5

        r = second.post("/sessions/abc/checkpoint")
        assert len(r.json()["checkpoint"]["transcript_snapshot"]) == 5

        record = second.get("/interviews/abc").json()

    assert "turn 0" in record["transcript"]
    assert "turn 4" in record["transcript"]
    assert record["exchange_count"] == 2
