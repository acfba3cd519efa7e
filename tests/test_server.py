from __future__ import annotations

from fastapi.testclient import TestClient

import chat_gateway
from chat_gateway import create_app
from chat_gateway.errors import ProviderError
from chat_gateway.store import ACCOUNTS_KEY, InMemoryStore

from conftest import ScriptedBackend

EMAIL = "sam@example.com"


def _client(config_path, clock, backend=None, accounts=None):
    store = InMemoryStore({ACCOUNTS_KEY: accounts or []})
    backend = backend or ScriptedBackend(default="ok")
    app = create_app(config_path=str(config_path), store=store, backend=backend, clock=clock)
    return TestClient(app), store, backend


def test_health(config_path, clock, clean_env):
    client, _, _ = _client(config_path, clock)
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["text_models"] == ["model-a", "model-b"]
    assert body["vision_models"] == ["model-v"]


def test_chat_roundtrip(config_path, clock, clean_env):
    """Basic sanity check: /chat returns 200 with the model's answer."""
    client, _, backend = _client(config_path, clock)

    r = client.post("/chat", json={"message": "Hello", "history": [{"role": "user", "content": "earlier"}]})

    assert r.status_code == 200
    assert r.json() == {"response": "ok", "sessionId": None}
    messages = backend.calls[0]["messages"]
    assert messages[0] == {"role": "system", "content": "You are a test coach."}
    assert messages[1:] == [{"role": "user", "content": "earlier"}, {"role": "user", "content": "Hello"}]


def test_empty_message_is_rejected(config_path, clock, clean_env):
    client, _, backend = _client(config_path, clock)
    r = client.post("/chat", json={"message": "   "})
    assert r.status_code == 400
    assert r.json() == {"error": "Message cannot be empty."}
    assert backend.calls == []


def test_quota_exceeded_returns_429(config_path, clock, clean_env):
    client, _, _ = _client(config_path, clock)
    payload = {"message": "hi", "identityHints": {"fingerprintID": "fp-1"}}
    headers = {"user-agent": "pytest-agent", "x-forwarded-for": "5.6.7.8"}

    for _ in range(3):
        assert client.post("/chat", json=payload, headers=headers).status_code == 200

    clock.advance(20 * 60)
    r = client.post("/chat", json=payload, headers=headers)
    assert r.status_code == 429
    body = r.json()
    assert body["retryAfter"] == 40
    assert "40 minutes" in body["error"]

    # another browser fingerprint has its own allowance
    other = {"message": "hi", "identityHints": {"fingerprintID": "fp-2"}}
    assert client.post("/chat", json=other, headers=headers).status_code == 200


def test_all_models_failing_returns_500(config_path, clock, clean_env):
    backend = ScriptedBackend(default=ProviderError("status 502"))
    client, _, _ = _client(config_path, clock, backend=backend)

    r = client.post("/chat", json={"message": "hi"})

    assert r.status_code == 500
    assert "temporarily unavailable" in r.json()["error"]
    assert backend.models_called() == ["model-a", "model-b"]


def test_account_session_flow(config_path, clock, clean_env):
    account = {"id": 1, "email": EMAIL, "plan": "unlimited", "sessions": []}
    client, _, _ = _client(config_path, clock, accounts=[account])

    r = client.post("/chat", json={"message": "Plan my week", "identityHints": {"email": EMAIL}})
    assert r.status_code == 200
    session_id = r.json()["sessionId"]
    assert session_id == int(clock.now * 1000)

    r = client.post("/chat", json={"message": "More", "identityHints": {"email": EMAIL}, "sessionId": session_id})
    assert r.json()["sessionId"] == session_id

    history = client.post("/history", json={"email": EMAIL}).json()
    assert history == [{"id": session_id, "title": "ok"}]

    session = client.post("/get-session", json={"email": EMAIL, "sessionId": str(session_id)}).json()
    assert [m["content"] for m in session["messages"]] == ["Plan my week", "ok", "More", "ok"]


def test_unlimited_plan_is_never_denied(config_path, clock, clean_env):
    account = {"id": 1, "email": EMAIL, "plan": "unlimited", "sessions": []}
    client, _, _ = _client(config_path, clock, accounts=[account])
    for _ in range(6):
        r = client.post("/chat", json={"message": "hi", "email": EMAIL, "sessionId": 1})
        assert r.status_code == 200


def test_history_and_session_errors(config_path, clock, clean_env):
    client, _, _ = _client(config_path, clock, accounts=[{"id": 1, "email": EMAIL, "sessions": []}])

    assert client.post("/history", json={}).status_code == 400
    assert client.post("/history", json={"email": "nobody@example.com"}).json() == []
    r = client.post("/get-session", json={"email": EMAIL, "sessionId": 123})
    assert r.status_code == 404
    assert r.json() == {"error": "Session not found."}


def test_delete_session_feedback_and_user_count(config_path, clock, clean_env):
    account = {"id": 1, "email": EMAIL, "plan": "unlimited", "sessions": []}
    client, _, _ = _client(config_path, clock, accounts=[account, {"id": 2, "email": "b@example.com"}])
    session_id = client.post("/chat", json={"message": "hi", "identityHints": {"email": EMAIL}}).json()["sessionId"]

    r = client.post("/feedback", json={"email": EMAIL, "sessionId": session_id, "messageContent": "ok", "feedback": "like"})
    assert r.json() == {"success": True}
    assert client.post("/feedback", json={"email": EMAIL, "sessionId": 999, "messageContent": "ok"}).json() == {"success": False}
    session = client.post("/get-session", json={"email": EMAIL, "sessionId": session_id}).json()
    assert session["messages"][1]["feedback"] == "like"

    assert client.get("/user-count").json() == {"success": True, "count": 2}

    r = client.post("/delete-session", json={"email": EMAIL, "sessionId": session_id})
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert client.post("/history", json={"email": EMAIL}).json() == []

    r = client.post("/delete-session", json={"email": "nobody@example.com", "sessionId": session_id})
    assert r.status_code == 404
    assert r.json() == {"error": "Operation failed."}


def test_malformed_body_uses_error_shape(config_path, clock, clean_env):
    client, _, backend = _client(config_path, clock)

    r = client.post("/chat", json={"message": "hi", "history": [{"role": "user", "content": None}]})

    assert r.status_code == 422
    assert set(r.json()) == {"error"}
    assert r.json()["error"].startswith("Invalid request")
    assert backend.calls == []


def test_health_reports_plans_and_version(config_path, clock, clean_env):
    client, _, _ = _client(config_path, clock)
    body = client.get("/health").json()
    assert body["plans"] == ["free", "unlimited"]
    assert body["version"] == chat_gateway.get_version()
