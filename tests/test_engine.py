"""
Tests for the session engine state machine.

The fake transport records listeners and requests; tests drive the stream
by invoking the recorded callbacks directly, so every transition happens
synchronously on the test thread.
"""

import json
import threading
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from parley.core.access import Access, AccessResolver
from parley.core.engine import (
    ABORTED_TOOL_OUTPUT,
    BUDGET_REACHED_TEXT,
    LOOP_LIMIT_OUTPUT,
    CompletionResult,
    SessionEngine,
    _parse_tool_input,
)
from parley.core.errors import NoAccessError, OfflineError, QuotaExceededError, SessionBusyError
from parley.core.ledger import UsageLedger
from parley.core.tools import FunctionToolExecutor
from parley.core.transport import Subscription, Transport
from parley.models.config import EngineConfig
from parley.models.session import (
    ABORT_MARKER,
    MessageStatus,
    SessionStatus,
    ThinkingBlock,
    ToolStatus,
)
from parley.models.usage import UsageSnapshot

HAIKU = "claude-haiku-4-5-20251001"

READ_FILE = {
    "name": "read_file",
    "description": "Read a file",
    "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}},
}


def sse(*records):
    return b"".join(b"data: " + json.dumps(r).encode() + b"\n\n" for r in records)


def text_turn(text, input_tokens=10, output_tokens=5):
    return [
        {"type": "message_start", "message": {"usage": {"input_tokens": input_tokens, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
        {"type": "content_block_stop"},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": output_tokens}},
        {"type": "message_stop"},
    ]


def tool_turn(*calls):
    records = [{"type": "message_start", "message": {"usage": {"input_tokens": 20, "output_tokens": 1}}}]
    for tool_id, name, tool_input in calls:
        records += [
            {"type": "content_block_start", "content_block": {"type": "tool_use", "id": tool_id, "name": name}},
            {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": json.dumps(tool_input)}},
            {"type": "content_block_stop"},
        ]
    records.append({"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}})
    return records


class FakeTransport(Transport):
    def __init__(self):
        self.listeners = {}
        self.sent = []
        self.aborted = []
        self.requests = []
        self.response = {}

    def listen(self, key, on_chunk, on_done, on_error):
        self.listeners[key] = SimpleNamespace(on_chunk=on_chunk, on_done=on_done, on_error=on_error)
        return Subscription(lambda: None)

    def send(self, url, headers, body, key):
        self.sent.append(SimpleNamespace(url=url, headers=headers, body=json.loads(body), key=key))

    def abort(self, key):
        self.aborted.append(key)

    def request(self, url, headers, body):
        self.requests.append(json.loads(body))
        return self.response

    @property
    def last_key(self):
        return self.sent[-1].key

    def push(self, records, key=None):
        self.listeners[key or self.last_key].on_chunk(sse(*records))

    def push_raw(self, raw, key=None):
        self.listeners[key or self.last_key].on_chunk(raw)

    def done(self, key=None, aborted=False):
        self.listeners[key or self.last_key].on_done(aborted)

    def fail(self, message, key=None):
        self.listeners[key or self.last_key].on_error(message)


class FakeResolver(AccessResolver):
    def __init__(self, access="direct"):
        self.access = access

    def resolve(self, model=None, strategy=None):
        if isinstance(self.access, Exception):
            raise self.access
        if isinstance(self.access, Access):
            return self.access
        if self.access == "direct":
            return Access("https://api.test/v1/messages", "sk-test", "anthropic", HAIKU)
        if self.access == "relay":
            return Access("https://relay.test/proxy", "tok", "relay", HAIKU, vendor_hint="anthropic")
        return None


@pytest.fixture(autouse=True)
def _fixed_context_window():
    with patch("parley.core.engine.get_context_window", return_value=200_000):
        yield


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def executor():
    return FunctionToolExecutor(
        {
            "read_file": lambda path: f"contents of {path}",
            "echo": lambda **kwargs: kwargs,
        }
    )


@pytest.fixture
def events():
    return []


def _make_engine(transport, executor, catalog, ledger, telemetry, events, resolver=None, **config):
    engine = SessionEngine(
        transport=transport,
        resolver=resolver or FakeResolver(),
        executor=executor,
        catalog=catalog,
        config=EngineConfig(default_model="haiku", **config),
        ledger=ledger,
        telemetry=telemetry,
        tool_defs=[READ_FILE],
    )
    engine.add_listener(lambda sid, kind, data: events.append((kind, data)))
    return engine


@pytest.fixture
def engine(transport, executor, catalog, ledger, telemetry, events):
    return _make_engine(transport, executor, catalog, ledger, telemetry, events)


def _kinds(events, kind):
    return [data for k, data in events if k == kind]


class TestTextTurn:
    """A plain question and answer."""

    def test_streams_to_idle(self, engine, transport, events):
        session = engine.create_session()
        engine.send(session.id, "Hi")

        assert session.status == SessionStatus.STREAMING
        assert session.title == "Hi"
        assert transport.sent[0].url == "https://api.test/v1/messages"
        assert transport.sent[0].body["messages"] == [{"role": "user", "content": "Hi"}]
        assert transport.sent[0].body["model"] == HAIKU

        transport.push(text_turn("Hello"))
        transport.done()

        assert session.status == SessionStatus.IDLE
        reply = session.messages[-1]
        assert reply.role == "assistant"
        assert reply.content == "Hello"
        assert reply.status == MessageStatus.COMPLETE
        assert _kinds(events, "text") == ["Hello"]
        assert _kinds(events, "state") == ["streaming", "idle"]
        assert engine.wait_idle(session.id, timeout=1)

    def test_usage_merged_and_priced(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hello", input_tokens=10, output_tokens=5))

        usage = session.messages[-1].usage
        assert usage.input_total == 10
        assert usage.output == 5
        assert usage.total == 15
        # Haiku: $1 in, $5 out per million
        assert usage.cost == 0.000035
        assert session.usage == usage

    def test_usage_after_stop_charged_to_ledger(self, engine, transport, ledger):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        turn = text_turn("Hello", input_tokens=10, output_tokens=5)
        transport.push(turn[:4] + [{"type": "message_stop"}])
        assert session.status == SessionStatus.IDLE
        assert ledger.month_total() == 0.000015

        transport.push([turn[4]])
        assert session.messages[-1].usage.output == 5
        assert ledger.month_total() == 0.000035
        assert ledger.summary()["calls"] == 2

        transport.push([turn[4]])
        assert ledger.summary()["calls"] == 2

    def test_long_title_truncated(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "x" * 80)
        assert session.title == "x" * 50 + "..."

    def test_done_without_terminal_record(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hello")[:3])
        transport.done()
        assert session.status == SessionStatus.IDLE
        assert session.messages[-1].content == "Hello"
        assert session.messages[-1].status == MessageStatus.COMPLETE

    def test_records_split_across_chunks(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        raw = sse(*text_turn("Hello"))
        for i in range(0, len(raw), 5):
            transport.push_raw(raw[i : i + 5])
        assert session.messages[-1].content == "Hello"
        assert session.status == SessionStatus.IDLE

    def test_thinking_blocks(self, engine, transport, events):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(
            [
                {"type": "content_block_start", "content_block": {"type": "thinking"}},
                {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "let me "}},
                {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "see"}},
                {"type": "content_block_delta", "delta": {"type": "signature_delta", "signature": "sig"}},
                {"type": "content_block_stop"},
            ]
            + text_turn("Answer")[1:]
        )
        reply = session.messages[-1]
        assert reply.thinking_blocks == [ThinkingBlock(text="let me see", signature="sig")]
        assert reply.content == "Answer"
        assert _kinds(events, "thinking") == ["let me ", "see"]

    def test_second_turn_carries_history(self, engine, transport):
        session = engine.create_session(system_prompt="Be brief")
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hello"))
        engine.send(session.id, "Again")

        body = transport.sent[1].body
        assert body["system"][0]["text"] == "Be brief"
        assert body["messages"] == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "Again"},
        ]

    def test_busy_while_streaming(self, engine):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        with pytest.raises(SessionBusyError):
            engine.send(session.id, "Again")

    def test_unknown_session(self, engine):
        with pytest.raises(KeyError):
            engine.send("missing", "Hi")

    def test_listener_failure_does_not_break_turn(self, engine, transport):
        def broken(sid, kind, data):
            raise RuntimeError("listener bug")

        engine.add_listener(broken)
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hello"))
        assert session.status == SessionStatus.IDLE

    def test_remove_listener(self, engine, transport):
        seen = []
        remove = engine.add_listener(lambda sid, kind, data: seen.append(kind))
        remove()
        session = engine.create_session()
        engine.send(session.id, "Hi")
        assert seen == []

    def test_telemetry_and_ledger_recorded_once(self, engine, transport, ledger, telemetry):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hello"))
        transport.done()

        summary = telemetry.get_summary(session.id)
        assert summary["llm_calls"] == 1
        assert summary["turns"] == 1
        assert ledger.summary()["calls"] == 1
        assert ledger.summary()["by_feature"] == {"chat": 0.000035}


class TestToolLoop:
    """Streaming -> ToolExecution -> Streaming."""

    def test_tool_round_trip(self, engine, transport, events):
        session = engine.create_session()
        observed = []

        def watch(sid, kind, data):
            if kind == "state" and data == "tool_execution":
                calls = session.messages[-1].tool_calls
                observed.extend((c.status, c.input) for c in calls)

        engine.add_listener(watch)
        engine.send(session.id, "read a.md")
        transport.push(tool_turn(("t1", "read_file", {"path": "a.md"})))

        assert observed == [(ToolStatus.PENDING, {"path": "a.md"})]
        assert len(transport.sent) == 2
        assert session.status == SessionStatus.STREAMING
        assert session.loop_depth == 1

        call = session.messages[1].tool_calls[0]
        assert call.id == "t1"
        assert call.status == ToolStatus.DONE
        assert call.output == "contents of a.md"
        assert session.messages[1].status == MessageStatus.COMPLETE

        results = session.messages[2]
        assert results.is_tool_result
        assert results.tool_results[0].tool_use_id == "t1"
        assert results.tool_results[0].content == "contents of a.md"

        body = transport.sent[1].body
        assert body["messages"][1]["content"] == [
            {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.md"}}
        ]
        assert body["messages"][2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": "contents of a.md"}
        ]

        transport.push(text_turn("Done"))
        assert session.status == SessionStatus.IDLE
        assert session.messages[-1].content == "Done"
        assert _kinds(events, "tool_start") == [{"id": "t1", "name": "read_file"}]
        assert _kinds(events, "tool_end") == [
            {"id": "t1", "name": "read_file", "input": {"path": "a.md"}, "output": "contents of a.md", "ok": True}
        ]
        assert _kinds(events, "state") == ["streaming", "tool_execution", "streaming", "idle"]

    def test_usage_summed_across_turns(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "read a.md")
        transport.push(tool_turn(("t1", "read_file", {"path": "a.md"})))
        transport.push(text_turn("Done", input_tokens=10, output_tokens=5))

        assert session.messages[1].usage.total == 27
        assert session.messages[3].usage.total == 15
        assert session.usage.total == 42

    def test_tools_run_once_when_done_follows(self, engine, transport, executor):
        calls = []
        executor.register("count", lambda: calls.append(1) or "ok")
        session = engine.create_session()
        engine.send(session.id, "go")
        first = transport.last_key
        transport.push(tool_turn(("t1", "count", {})) + [{"type": "message_stop"}])
        transport.done(key=first)
        transport.done(key=first)

        assert calls == [1]
        assert len(transport.sent) == 2

    def test_fragmented_tool_input(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "go")
        transport.push([{"type": "content_block_start", "content_block": {"type": "tool_use", "id": "t1", "name": "echo"}}])
        transport.push([{"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"x":'}}])
        transport.push([{"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": "1}"}}])
        transport.push([{"type": "content_block_stop"}, {"type": "message_delta", "delta": {"stop_reason": "tool_use"}}])

        call = session.messages[1].tool_calls[0]
        assert call.input == {"x": 1}
        assert call.output == '{"x": 1}'

    def test_invalid_tool_input_becomes_empty(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "go")
        transport.push(
            [
                {"type": "content_block_start", "content_block": {"type": "tool_use", "id": "t1", "name": "echo"}},
                {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"x": 1'}},
                {"type": "content_block_stop"},
                {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
            ]
        )
        call = session.messages[1].tool_calls[0]
        assert call.input == {}
        assert call.status == ToolStatus.DONE

    def test_parallel_results_keep_call_order(self, engine, transport, executor):
        def slow():
            time.sleep(0.05)
            return "slow"

        executor.register("slow", slow)
        executor.register("fast", lambda: "fast")
        session = engine.create_session()
        engine.send(session.id, "go")
        transport.push(tool_turn(("t1", "slow", {}), ("t2", "fast", {})))

        results = session.messages[2].tool_results
        assert [r.tool_use_id for r in results] == ["t1", "t2"]
        assert [r.content for r in results] == ["slow", "fast"]

    def test_failed_tool_reported_as_error(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "go")
        transport.push(tool_turn(("t1", "nope", {})))

        call = session.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert call.output == "Unknown tool: nope"
        assert session.messages[2].tool_results[0].is_error
        assert transport.sent[1].body["messages"][2]["content"][0]["is_error"] is True

    def test_loop_limit(self, transport, executor, catalog, ledger, telemetry, events):
        engine = _make_engine(transport, executor, catalog, ledger, telemetry, events, max_tool_loop_depth=1)
        session = engine.create_session()
        engine.send(session.id, "go")
        transport.push(tool_turn(("t1", "read_file", {"path": "a"})))
        transport.push(tool_turn(("t2", "read_file", {"path": "b"})))

        assert len(transport.sent) == 2
        assert session.status == SessionStatus.IDLE
        call = session.messages[-1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert call.output == LOOP_LIMIT_OUTPUT
        assert _kinds(events, "loop_limit") == [{"depth": 1, "limit": 1}]

    def test_google_direct_tool_call(self, engine, transport):
        engine.resolver = FakeResolver(Access("https://g.test", "k", "google", "gemini-3-flash-preview"))
        session = engine.create_session()
        engine.send(session.id, "go")
        transport.push(
            [
                {
                    "candidates": [
                        {
                            "content": {
                                "parts": [{"functionCall": {"name": "read_file", "args": {"path": "a"}}, "thoughtSignature": "ts"}]
                            },
                            "finishReason": "STOP",
                        }
                    ]
                }
            ]
        )
        transport.done()

        call = session.messages[1].tool_calls[0]
        assert call.input == {"path": "a"}
        assert call.reasoning_signature == "ts"
        assert call.status == ToolStatus.DONE
        contents = transport.sent[1].body["contents"]
        assert contents[1]["parts"][0]["thoughtSignature"] == "ts"
        assert contents[2]["parts"][0]["functionResponse"]["name"] == "read_file"


class TestAbort:
    def test_abort_while_streaming(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        first = transport.last_key
        transport.push(text_turn("Hel")[:3])

        assert engine.abort(session.id) is True
        assert session.status == SessionStatus.IDLE
        reply = session.messages[-1]
        assert reply.status == MessageStatus.ABORTED
        assert reply.content == "Hel" + ABORT_MARKER
        assert transport.aborted == [first]

        # Late callbacks for the aborted request are dropped
        transport.push([{"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}}], key=first)
        transport.done(key=first, aborted=True)
        assert reply.content == "Hel" + ABORT_MARKER
        assert engine.abort(session.id) is False

    def test_send_after_abort(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hel")[:3])
        engine.abort(session.id)
        engine.send(session.id, "Again")

        assert transport.sent[1].key.generation > transport.sent[0].key.generation
        messages = transport.sent[1].body["messages"]
        assert messages[1] == {"role": "assistant", "content": "Hel" + ABORT_MARKER}

    def test_abort_marks_pending_tools(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "go")
        transport.push(
            [{"type": "content_block_start", "content_block": {"type": "tool_use", "id": "t1", "name": "echo"}}]
        )
        engine.abort(session.id)
        call = session.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert call.output == ABORTED_TOOL_OUTPUT

    def test_transport_reported_abort(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hel")[:3])
        transport.done(aborted=True)
        assert session.status == SessionStatus.IDLE
        assert session.messages[-1].status == MessageStatus.ABORTED

    def test_abort_during_tool_execution(self, engine, transport, executor):
        started = threading.Event()
        release = threading.Event()

        def blocking():
            started.set()
            release.wait(5)
            return "late"

        executor.register("blocking", blocking)
        session = engine.create_session()
        engine.send(session.id, "go")
        worker = threading.Thread(target=transport.push, args=(tool_turn(("t1", "blocking", {})),))
        worker.start()
        assert started.wait(5)

        assert engine.abort(session.id) is True
        assert session.status == SessionStatus.IDLE
        release.set()
        worker.join(5)

        call = session.messages[1].tool_calls[0]
        assert call.status == ToolStatus.ERROR
        assert call.output == ABORTED_TOOL_OUTPUT
        assert len(session.messages) == 2
        assert len(transport.sent) == 1

    def test_abort_idle_session(self, engine):
        session = engine.create_session()
        assert engine.abort(session.id) is False


class TestErrors:
    def test_transport_error(self, engine, transport, events, telemetry):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push(text_turn("Partial")[:3])
        transport.fail('API error 429: {"error":{"message":"slow down"}}')

        assert session.status == SessionStatus.ERROR
        reply = session.messages[-1]
        assert reply.status == MessageStatus.ERROR
        assert reply.content.startswith("Partial\n\n**Error:** Rate limit exceeded")
        assert len(_kinds(events, "error")) == 1
        assert telemetry.get_summary(session.id)["errors"] == 1

    def test_error_after_finish_ignored(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        first = transport.last_key
        transport.push(text_turn("Hello"))
        transport.fail("API error 500: late", key=first)
        assert session.status == SessionStatus.IDLE

    def test_stream_error_record(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push([{"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}])
        assert session.status == SessionStatus.ERROR
        assert "experiencing issues" in session.messages[-1].content

    def test_stream_rate_limit_record(self, engine, transport, telemetry):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        with patch.object(telemetry, "track_error") as track_error:
            transport.push([{"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}}])
        assert session.status == SessionStatus.ERROR
        assert "Rate limit exceeded" in session.messages[-1].content
        assert track_error.call_args[0][1] == "rate_limit"

    def test_unreadable_envelope(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.push_raw(b"<html>502 Bad Gateway</html>")
        transport.done()
        assert session.status == SessionStatus.ERROR
        assert "could not be read" in session.messages[-1].content

    def test_error_is_resting(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        transport.fail("API error 500: down")
        assert engine.wait_idle(session.id, timeout=1)
        engine.send(session.id, "Retry")
        assert session.status == SessionStatus.STREAMING

    def test_no_access(self, transport, executor, catalog, ledger, telemetry, events):
        engine = _make_engine(transport, executor, catalog, ledger, telemetry, events, resolver=FakeResolver(None))
        session = engine.create_session()
        engine.send(session.id, "Hi")

        assert transport.sent == []
        assert session.status == SessionStatus.ERROR
        assert session.messages[-1].status == MessageStatus.ERROR
        assert "No API key configured" in session.messages[-1].content

    def test_offline(self, transport, executor, catalog, ledger, telemetry, events):
        engine = _make_engine(
            transport, executor, catalog, ledger, telemetry, events, resolver=FakeResolver(OfflineError())
        )
        session = engine.create_session()
        engine.send(session.id, "Hi")
        assert session.status == SessionStatus.ERROR
        assert "offline" in session.messages[-1].content

    def test_budget_gate(self, transport, executor, catalog, temp_dir, telemetry, events):
        ledger = UsageLedger(base_dir=temp_dir / "budget", monthly_limit=0.01)
        ledger.record(UsageSnapshot(input_total=10, total=10, cost=0.02), "chat", "anthropic", HAIKU)
        engine = _make_engine(transport, executor, catalog, ledger, telemetry, events)
        session = engine.create_session()
        engine.send(session.id, "Hi")

        assert transport.sent == []
        assert session.status == SessionStatus.IDLE
        assert session.messages[-1].content == BUDGET_REACHED_TEXT
        assert _kinds(events, "error") == [BUDGET_REACHED_TEXT]


class TestRelay:
    def test_balance_events(self, transport, executor, catalog, ledger, telemetry, events):
        engine = _make_engine(transport, executor, catalog, ledger, telemetry, events, resolver=FakeResolver("relay"))
        session = engine.create_session()
        engine.send(session.id, "Hi")
        sent = transport.sent[0]
        assert sent.url == "https://relay.test/proxy"
        assert sent.headers["X-Relay-Provider"] == "anthropic"

        transport.push(text_turn("Hello") + [{"type": "relay_balance", "credits": 4.5, "cost_cents": 2}])
        transport.push_raw(b"data: [DONE]\n\n")
        transport.done()

        assert _kinds(events, "balance") == [{"credits": 4.5, "cost_cents": 2}]
        assert session.status == SessionStatus.IDLE


class TestBackground:
    def test_callback_when_turn_ends(self, engine, transport):
        finished = []
        session = engine.create_session()
        engine.send(session.id, "Hi")
        engine.background(session.id, finished.append)
        assert finished == []
        assert session.background

        transport.push(text_turn("Hello"))
        transport.done()

        assert finished == [session]
        assert engine.get_session(session.id) is None

    def test_idle_session_finishes_immediately(self, engine):
        finished = []
        session = engine.create_session()
        engine.background(session.id, finished.append)
        assert finished == [session]

    def test_attach_cancels_background(self, engine, transport):
        finished = []
        session = engine.create_session()
        engine.send(session.id, "Hi")
        engine.background(session.id, finished.append)
        assert engine.attach(session.id) is session
        transport.push(text_turn("Hello"))

        assert finished == []
        assert not session.background
        assert engine.get_session(session.id) is session

    def test_attach_unknown(self, engine):
        assert engine.attach("gone") is None


class TestSnapshots:
    def test_snapshot_and_restore(self, engine, transport):
        session = engine.create_session(model="haiku")
        engine.send(session.id, "Hi")
        transport.push(text_turn("Hello"))
        data = engine.snapshot(session.id)

        restored = engine.restore(dict(data, id="copy"))
        assert restored.id == "copy"
        assert [m.content for m in restored.messages] == ["Hi", "Hello"]
        assert restored.status == SessionStatus.IDLE
        assert engine.get_session("copy") is restored
        assert {s.id for s in engine.list_sessions()} == {session.id, "copy"}

    def test_snapshot_while_streaming_stores_idle(self, engine):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        data = engine.snapshot(session.id)
        assert data["status"] == "idle"

        restored = engine.restore(dict(data, id="copy"))
        assert restored.messages[-1].status == MessageStatus.ABORTED

    def test_restore_keeps_live_session(self, engine, transport):
        session = engine.create_session()
        engine.send(session.id, "Hi")
        data = engine.snapshot(session.id)

        assert engine.restore(data) is session
        assert engine.get_session(session.id) is session
        assert session.status == SessionStatus.STREAMING

        transport.push(text_turn("Hello"))
        assert session.status == SessionStatus.IDLE
        assert session.messages[-1].content == "Hello"


class TestComplete:
    def test_one_shot(self, engine, transport, ledger):
        transport.response = {
            "content": [{"type": "text", "text": "Short title"}],
            "usage": {"input_tokens": 100, "output_tokens": 10},
        }
        result = engine.complete("Name this chat", feature="title")

        assert result.text == "Short title"
        assert result.vendor == "anthropic"
        assert result.model == HAIKU
        assert result.usage.input_total == 100
        assert result.usage.cost == 0.00015
        assert "stream" not in transport.requests[0]
        assert ledger.summary()["by_feature"] == {"title": 0.00015}

    def test_no_access(self, transport, executor, catalog, ledger, telemetry, events):
        engine = _make_engine(transport, executor, catalog, ledger, telemetry, events, resolver=FakeResolver(None))
        with pytest.raises(NoAccessError):
            engine.complete("hi", strategy="ghost")

    def test_over_budget(self, transport, executor, catalog, temp_dir, telemetry, events):
        ledger = UsageLedger(base_dir=temp_dir / "budget", monthly_limit=0.01)
        ledger.record(UsageSnapshot(input_total=10, total=10, cost=0.02), "chat", "anthropic", HAIKU)
        engine = _make_engine(transport, executor, catalog, ledger, telemetry, events)
        with pytest.raises(QuotaExceededError):
            engine.complete("hi")

    def test_forced_tool_input(self, engine, transport):
        transport.response = {"content": [{"type": "tool_use", "name": "classify", "input": {"label": "bug"}}]}
        result = engine.complete("x", tool_defs=[READ_FILE], tool_choice={"type": "tool", "name": "classify"})
        assert result.tool_input() == {"label": "bug"}
        assert transport.requests[0]["tool_choice"] == {"type": "tool", "name": "classify"}


class TestCompletionResult:
    def _result(self, raw):
        return CompletionResult(text="", usage=UsageSnapshot(), model="m", vendor="v", raw=raw)

    def test_openai_shape(self):
        raw = {"output": [{"type": "function_call", "arguments": '{"a": 1}'}]}
        assert self._result(raw).tool_input() == {"a": 1}

    def test_google_shape(self):
        raw = {"candidates": [{"content": {"parts": [{"functionCall": {"name": "f", "args": {"b": 2}}}]}}]}
        assert self._result(raw).tool_input() == {"b": 2}

    def test_no_tool(self):
        assert self._result({"content": [{"type": "text", "text": "hi"}]}).tool_input() is None


class TestParseToolInput:
    @pytest.mark.parametrize(
        "raw,expected",
        [("", {}), ("   ", {}), ('{"a": 1}', {"a": 1}), ("{bad", {}), ("[1, 2]", {}), ('"text"', {})],
    )
    def test_parse(self, raw, expected):
        assert _parse_tool_input(raw) == expected
