"""
Tests for the HTTP layer.

A scripted transport replays one canned response per request synchronously
inside ``send``, so each streamed chat completes before the response body
is read.
"""

import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from parley.core.access import Access, AccessResolver
from parley.core.engine import SessionEngine
from parley.core.session_store import SessionStore
from parley.core.tools import FunctionToolExecutor
from parley.core.transport import Subscription, Transport
from parley.models.config import EngineConfig
from parley.models.session import Session, SessionStatus
from parley.server.app import create_app
from parley.server.dependencies import reset_engine, set_engine

READ_FILE = {
    "name": "read_file",
    "description": "Read a file",
    "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}},
}


def sse(*records):
    return b"".join(b"data: " + json.dumps(r).encode() + b"\n\n" for r in records)


def text_turn(text):
    return [
        {"type": "message_start", "message": {"usage": {"input_tokens": 10, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
        {"type": "content_block_stop"},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 5}},
        {"type": "message_stop"},
    ]


def tool_turn(tool_id, name, tool_input):
    return [
        {"type": "message_start", "message": {"usage": {"input_tokens": 20, "output_tokens": 1}}},
        {"type": "content_block_start", "content_block": {"type": "tool_use", "id": tool_id, "name": name}},
        {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": json.dumps(tool_input)}},
        {"type": "content_block_stop"},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
    ]


class ScriptedTransport(Transport):
    """Answers each send with the next script: a record list or an error string."""

    def __init__(self):
        self.scripts = []
        self.listeners = {}

    def listen(self, key, on_chunk, on_done, on_error):
        self.listeners[key] = (on_chunk, on_done, on_error)
        return Subscription(lambda: None)

    def send(self, url, headers, body, key):
        on_chunk, on_done, on_error = self.listeners[key]
        script = self.scripts.pop(0)
        if isinstance(script, str):
            on_error(script)
            return
        on_chunk(sse(*script))
        on_done(False)

    def abort(self, key):
        pass

    def request(self, url, headers, body):
        return {}


class DirectResolver(AccessResolver):
    def __init__(self):
        pass

    def resolve(self, model=None, strategy=None):
        return Access("https://api.test/v1/messages", "sk-test", "anthropic", "claude-haiku-4-5-20251001")


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def store(temp_dir):
    return SessionStore(base_dir=temp_dir / "sessions")


@pytest.fixture
def engine(transport, store, catalog, ledger, telemetry):
    engine = SessionEngine(
        transport=transport,
        resolver=DirectResolver(),
        executor=FunctionToolExecutor({"read_file": lambda path: f"contents of {path}"}),
        catalog=catalog,
        config=EngineConfig(default_model="haiku"),
        ledger=ledger,
        telemetry=telemetry,
        tool_defs=[READ_FILE],
    )
    set_engine(engine, store)
    with patch("parley.core.engine.get_context_window", return_value=200_000):
        yield engine
    reset_engine()


@pytest.fixture
def client(engine):
    return TestClient(create_app())


def _parts(body):
    """Split a data stream body into (code, payload) pairs."""
    parts = []
    for line in body.splitlines():
        code, _, payload = line.partition(":")
        parts.append((code, json.loads(payload)))
    return parts


def _chat(client, text, **extra):
    return client.post("/api/chat", json={"messages": [{"role": "user", "content": text}], **extra})


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "parley"}


class TestChat:
    """POST /api/chat streaming."""

    def test_text_reply(self, client, transport, engine, store):
        transport.scripts.append(text_turn("Hello"))
        response = _chat(client, "Hi")

        assert response.status_code == 200
        assert response.headers["x-vercel-ai-data-stream"] == "v1"
        session_id = response.headers["x-parley-session-id"]

        parts = _parts(response.text)
        assert parts[0][0] == "f"
        assert ("0", "Hello") in parts
        assert parts[-1] == (
            "d",
            {"finishReason": "stop", "usage": {"promptTokens": 10, "completionTokens": 5}},
        )

        session = engine.get_session(session_id)
        assert session.status == SessionStatus.IDLE
        assert [m.role for m in session.messages] == ["user", "assistant"]
        assert store.load(session_id) is not None

    def test_tool_round(self, client, transport):
        transport.scripts += [tool_turn("t1", "read_file", {"path": "a.txt"}), text_turn("Done")]
        response = _chat(client, "Read a.txt")

        parts = _parts(response.text)
        assert ("9", {"toolCallId": "t1", "toolName": "read_file", "args": {"path": "a.txt"}}) in parts
        assert ("a", {"toolCallId": "t1", "result": {"output": "contents of a.txt", "ok": True}}) in parts
        step_reasons = [payload["finishReason"] for code, payload in parts if code == "e"]
        assert step_reasons == ["tool-calls", "stop"]
        assert ("0", "Done") in parts

    def test_model_and_system_for_new_session(self, client, transport, engine):
        transport.scripts.append(text_turn("Hello"))
        response = _chat(client, "Hi", model="sonnet", system="Be brief")
        session = engine.get_session(response.headers["x-parley-session-id"])
        assert session.model == "sonnet"
        assert session.system_prompt == "Be brief"

    def test_resume_by_session_id(self, client, transport, engine):
        transport.scripts += [text_turn("One"), text_turn("Two")]
        first = _chat(client, "First")
        session_id = first.headers["x-parley-session-id"]

        second = _chat(client, "Second", sessionId=session_id)
        assert second.headers["x-parley-session-id"] == session_id
        assert len(engine.get_session(session_id).messages) == 4

    def test_resume_stored_session(self, client, transport, engine, store):
        stored = Session(model="haiku")
        store.save(stored)
        transport.scripts.append(text_turn("Back"))

        response = _chat(client, "Again", sessionId=stored.id)
        assert response.headers["x-parley-session-id"] == stored.id
        assert engine.get_session(stored.id).messages[-1].content == "Back"

    def test_uses_last_user_text_part(self, client, transport, engine):
        transport.scripts.append(text_turn("Hello"))
        response = client.post(
            "/api/chat",
            json={
                "messages": [
                    {"role": "user", "content": "Old"},
                    {"role": "assistant", "content": "Reply"},
                    {"role": "user", "content": [{"type": "text", "text": "New"}, {"type": "image"}]},
                ]
            },
        )
        session = engine.get_session(response.headers["x-parley-session-id"])
        assert session.messages[0].content == "New"

    def test_no_user_message(self, client):
        response = client.post("/api/chat", json={"messages": [{"role": "assistant", "content": "Hi"}]})
        parts = _parts(response.text)
        assert parts[0] == ("3", "No user message found")
        assert parts[-1][1]["finishReason"] == "error"

    def test_busy_session(self, client, engine):
        session = engine.create_session()
        session.status = SessionStatus.STREAMING

        parts = _parts(_chat(client, "Hi", sessionId=session.id).text)
        assert parts[0][0] == "f"
        assert parts[1][0] == "3"
        assert parts[-1][1]["finishReason"] == "error"

    def test_provider_error(self, client, transport, engine):
        transport.scripts.append("API error 429: Too Many Requests")
        response = _chat(client, "Hi")

        parts = _parts(response.text)
        errors = [payload for code, payload in parts if code == "3"]
        assert errors and "Rate limit" in errors[0]
        assert parts[-1][1]["finishReason"] == "error"
        session = engine.get_session(response.headers["x-parley-session-id"])
        assert session.status == SessionStatus.ERROR


class TestSessions:
    """Session listing, lookup, abort and delete."""

    def test_list_live_and_stored(self, client, engine, store):
        live = engine.create_session()
        stored = Session(model="sonnet", title="Saved")
        store.save(stored)

        response = client.get("/api/sessions")
        assert response.status_code == 200
        ids = [s["session_id"] for s in response.json()]
        assert ids == [live.id, stored.id]
        saved = response.json()[1]
        assert saved["title"] == "Saved"
        assert saved["status"] == "idle"
        assert saved["message_count"] == 0

    def test_live_session_not_listed_twice(self, client, engine, store):
        session = engine.create_session()
        store.save(session)
        ids = [s["session_id"] for s in client.get("/api/sessions").json()]
        assert ids == [session.id]

    def test_get_session(self, client, transport):
        transport.scripts.append(text_turn("Hello"))
        session_id = _chat(client, "Hi").headers["x-parley-session-id"]

        data = client.get(f"/api/sessions/{session_id}").json()
        assert data["id"] == session_id
        assert [m["content"] for m in data["messages"]] == ["Hi", "Hello"]
        assert "background" not in data

    def test_get_restores_stored(self, client, engine, store):
        stored = Session(model="haiku")
        store.save(stored)
        assert client.get(f"/api/sessions/{stored.id}").status_code == 200
        assert engine.get_session(stored.id) is not None

    def test_get_missing(self, client):
        response = client.get("/api/sessions/nope")
        assert response.status_code == 404

    def test_abort_idle(self, client, engine):
        session = engine.create_session()
        response = client.post(f"/api/sessions/{session.id}/abort")
        assert response.json() == {"ok": True, "aborted": False}

    def test_abort_unknown(self, client):
        assert client.post("/api/sessions/nope/abort").status_code == 404

    def test_delete(self, client, store):
        stored = Session(model="haiku")
        store.save(stored)
        assert client.delete(f"/api/sessions/{stored.id}").json() == {"ok": True}
        assert store.load(stored.id) is None
        assert client.delete(f"/api/sessions/{stored.id}").status_code == 404
