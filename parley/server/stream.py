"""Bridge between engine listener events and the AI SDK wire format."""

from __future__ import annotations

import asyncio
import queue
import uuid
from typing import Any, AsyncGenerator

from parley.core.engine import SessionEngine
from parley.core.errors import SessionBusyError
from parley.core.session_store import SessionStore
from parley.server.protocol.base import StreamEncoder

_RESTING = ("idle", "error")


async def session_to_aisdk_stream(
    engine: SessionEngine,
    session_id: str,
    user_message: str,
    encoder: StreamEncoder,
    store: SessionStore | None = None,
) -> AsyncGenerator[bytes, None]:
    """
    Send ``user_message`` on a session and stream the engine's events.

    Engine listeners fire on transport and tool threads; a thread-safe queue
    carries them to this async generator. The stream ends when the session
    comes to rest.
    """
    message_id = uuid.uuid4().hex[:12]
    yield encoder.message_start(message_id)

    q: queue.Queue[tuple[str, Any]] = queue.Queue()

    def _listener(sid: str, kind: str, data: Any) -> None:
        if sid == session_id:
            q.put((kind, data))

    remove = engine.add_listener(_listener)
    usage = {"promptTokens": 0, "completionTokens": 0}
    failed = False

    try:
        try:
            engine.send(session_id, user_message)
        except SessionBusyError as e:
            yield encoder.error(str(e))
            yield encoder.message_finish(finish_reason="error")
            return

        while True:
            try:
                kind, data = q.get(timeout=0.05)
            except queue.Empty:
                await asyncio.sleep(0)
                continue

            if kind == "text":
                yield encoder.text_delta(data)

            elif kind == "thinking":
                yield encoder.reasoning_delta(data)

            elif kind == "tool_end":
                yield encoder.tool_call(data["id"], data["name"], data.get("input") or {})
                yield encoder.tool_result(data["id"], {"output": data["output"], "ok": data["ok"]})
                yield encoder.step_finish(finish_reason="tool-calls", usage=usage)

            elif kind == "usage":
                usage = {"promptTokens": data["input_total"], "completionTokens": data["output"]}

            elif kind == "error":
                failed = True
                yield encoder.error(data)

            elif kind == "state" and data in _RESTING:
                failed = failed or data == "error"
                break
    finally:
        remove()

    if store is not None:
        session = engine.get_session(session_id)
        if session is not None:
            store.save(session)

    reason = "error" if failed else "stop"
    yield encoder.step_finish(finish_reason=reason, usage=usage)
    yield encoder.message_finish(finish_reason=reason, usage=usage)
