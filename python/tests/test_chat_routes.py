"""Integration tests for the chat streaming routes.

Tests cover:
- POST /chat streams SSE for anonymous and authenticated callers
- Admission failures render as JSON error envelopes before streaming
- GET /chat/{chat_id}/stream resumes or returns 204
"""

from uuid import UUID, uuid4

from fastapi.testclient import TestClient

from chorus.services import anonymous
from tests.helpers import (
    auth_headers,
    chat_body,
    create_chat_with_messages,
    create_user,
    get_user_balance,
    load_messages,
    parse_sse,
)
from tests.support.fake_llm import reply


def _types(events: list[dict]) -> list[str]:
    return [e["type"] for e in events]


# =============================================================================
# POST /chat
# =============================================================================


class TestPostChat:
    def test_anonymous_turn_streams_sse(self, client: TestClient, fake_llm, session_factory):
        fake_llm.queue_stream(reply("Hi ", "there"))

        response = client.post("/chat", json=chat_body("hello"))

        assert response.status_code == 200
        assert response.headers["content-type"] == "text/event-stream; charset=utf-8"
        assert response.headers["cache-control"] == "no-cache, no-transform"
        assert response.headers["x-accel-buffering"] == "no"

        events = parse_sse(response.text)
        assert events[0]["type"] == "start"
        assert events[-1]["type"] == "finish"
        text = "".join(e["delta"] for e in events if e["type"] == "text-delta")
        assert text == "Hi there"

        session_id = UUID(response.headers["x-anonymous-session"])
        db = session_factory()
        try:
            session = anonymous.get_or_create_session(db, session_id, 0)
            assert session.remaining_credits == 9
        finally:
            db.close()

    def test_anonymous_session_header_is_reused(self, client: TestClient, fake_llm):
        fake_llm.queue_stream(reply("one"))
        first = client.post("/chat", json=chat_body("first"))
        session_id = first.headers["x-anonymous-session"]

        fake_llm.queue_stream(reply("two"))
        second = client.post(
            "/chat",
            json=chat_body("second"),
            headers={"X-Anonymous-Session": session_id},
        )

        assert second.status_code == 200
        assert second.headers["x-anonymous-session"] == session_id

    def test_authenticated_turn_persists_and_debits(
        self, client: TestClient, fake_llm, session_factory
    ):
        user_id = create_user(session_factory, credits=50)
        body = chat_body("What is a monad?")
        fake_llm.queue_response("Monads explained")
        fake_llm.queue_stream(reply("A monoid in the category of endofunctors."))

        response = client.post("/chat", json=body, headers=auth_headers(user_id))

        assert response.status_code == 200
        assert "x-anonymous-session" not in response.headers
        events = parse_sse(response.text)
        assert _types(events)[-1] == "finish"
        assert any(e["type"] == "message-metadata" for e in events)

        messages = load_messages(session_factory, UUID(body["id"]))
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[1].is_partial is False
        assert get_user_balance(session_factory, user_id) == (49, 0)

    def test_insufficient_credits_returns_402_envelope(
        self, client: TestClient, fake_llm, session_factory
    ):
        user_id = create_user(session_factory, credits=0)

        response = client.post("/chat", json=chat_body(), headers=auth_headers(user_id))

        assert response.status_code == 402
        error = response.json()["error"]
        assert error["code"] == "E_INSUFFICIENT_BUDGET"
        assert error["request_id"] == response.headers["X-Request-ID"]
        assert fake_llm.stream_calls == []

    def test_paid_model_refused_for_anonymous(self, client: TestClient):
        response = client.post("/chat", json=chat_body(model="openai/gpt-4o"))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "E_MODEL_NOT_AVAILABLE"

    def test_input_too_long_returns_413(self, client: TestClient, session_factory, monkeypatch):
        from chorus.config import clear_settings_cache

        monkeypatch.setenv("MAX_INPUT_TOKENS", "10")
        clear_settings_cache()
        user_id = create_user(session_factory)

        response = client.post(
            "/chat", json=chat_body("word " * 200), headers=auth_headers(user_id)
        )

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "E_INPUT_TOO_LONG"

    def test_invalid_body_returns_400(self, client: TestClient):
        body = chat_body()
        body["message"]["parts"] = [{"type": "tool-call"}]

        response = client.post("/chat", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "E_INVALID_REQUEST",
            "message": "Invalid request body",
            "request_id": response.headers["X-Request-ID"],
        }

    def test_malformed_anonymous_history_returns_400_without_charging(
        self, client: TestClient, fake_llm, session_factory
    ):
        session_id = uuid4()
        db = session_factory()
        try:
            anonymous.get_or_create_session(db, session_id, 10)
        finally:
            db.close()
        body = chat_body(previousMessages=[{"role": "user", "parts": [{"type": "file"}]}])

        response = client.post(
            "/chat", json=body, headers={"X-Anonymous-Session": str(session_id)}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"
        assert fake_llm.call_count == 0
        db = session_factory()
        try:
            assert anonymous.get_or_create_session(db, session_id, 0).remaining_credits == 10
        finally:
            db.close()

    def test_anonymous_turn_on_existing_chat_is_forbidden(
        self, client: TestClient, fake_llm, session_factory
    ):
        owner = create_user(session_factory)
        chat_id, _ = create_chat_with_messages(session_factory, owner, [("user", "secret")])

        response = client.post("/chat", json=chat_body(chat_id=chat_id))

        assert response.status_code == 403
        assert fake_llm.stream_calls == []
        assert [m.role for m in load_messages(session_factory, chat_id)] == ["user"]

    def test_malformed_json_returns_400(self, client: TestClient):
        response = client.post(
            "/chat", content="{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Malformed JSON body"

    def test_bad_bearer_token_returns_401(self, client: TestClient):
        response = client.post(
            "/chat", json=chat_body(), headers={"Authorization": "Token abc"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"


# =============================================================================
# GET /chat/{chat_id}/stream
# =============================================================================


class TestResumeStream:
    def test_nothing_to_resume_returns_204(self, client: TestClient, session_factory):
        user_id = create_user(session_factory)
        chat_id, _ = create_chat_with_messages(
            session_factory, user_id, [("user", "hi"), ("assistant", "hello")]
        )

        response = client.get(f"/chat/{chat_id}/stream", headers=auth_headers(user_id))

        assert response.status_code == 204

    def test_resume_just_finished_turn(self, client: TestClient, fake_llm, session_factory):
        user_id = create_user(session_factory)
        body = chat_body("hi")
        fake_llm.queue_response("Greeting")
        fake_llm.queue_stream(reply("hello!"))
        client.post("/chat", json=body, headers=auth_headers(user_id))

        response = client.get(f"/chat/{body['id']}/stream", headers=auth_headers(user_id))

        assert response.status_code == 200
        events = parse_sse(response.text)
        assert _types(events) == ["data-appendMessage"]
        assert events[0]["transient"] is True

    def test_unknown_chat_returns_404(self, client: TestClient, session_factory):
        user_id = create_user(session_factory)

        response = client.get(f"/chat/{uuid4()}/stream", headers=auth_headers(user_id))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_CHAT_NOT_FOUND"

    def test_private_chat_of_another_user_is_forbidden(
        self, client: TestClient, session_factory
    ):
        owner = create_user(session_factory)
        other = create_user(session_factory)
        chat_id, _ = create_chat_with_messages(session_factory, owner, [("user", "secret")])

        response = client.get(f"/chat/{chat_id}/stream", headers=auth_headers(other))

        assert response.status_code == 403

    def test_anonymous_caller_gets_nothing_for_private_chat(
        self, client: TestClient, session_factory
    ):
        owner = create_user(session_factory)
        chat_id, _ = create_chat_with_messages(
            session_factory, owner, [("user", "hi"), ("assistant", "hello")]
        )

        response = client.get(f"/chat/{chat_id}/stream")

        assert response.status_code == 204
