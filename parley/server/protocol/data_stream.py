"""AI SDK Data Stream Protocol encoder.

Wire format: {type_code}:{json_data}\n

Type codes:
    f  message start
    0  text delta
    g  reasoning delta
    9  tool call
    a  tool result
    e  step finish
    d  message finish
    3  error
"""

import json
from typing import Any

from parley.server.protocol.base import StreamEncoder

_NO_USAGE = {"promptTokens": 0, "completionTokens": 0}


def _part(code: str, payload: Any) -> bytes:
    return f"{code}:{json.dumps(payload)}\n".encode()


class DataStreamEncoder(StreamEncoder):
    """Encodes events using the prefix-code Data Stream Protocol."""

    def message_start(self, message_id: str) -> bytes:
        return _part("f", {"messageId": message_id})

    def text_delta(self, text: str) -> bytes:
        return _part("0", text)

    def reasoning_delta(self, text: str) -> bytes:
        return _part("g", text)

    def tool_call(self, tool_call_id: str, tool_name: str, args: dict[str, Any]) -> bytes:
        return _part("9", {"toolCallId": tool_call_id, "toolName": tool_name, "args": args})

    def tool_result(self, tool_call_id: str, result: Any) -> bytes:
        return _part("a", {"toolCallId": tool_call_id, "result": result})

    def step_finish(self, finish_reason: str = "stop", usage: dict[str, int] | None = None) -> bytes:
        return _part(
            "e",
            {
                "finishReason": finish_reason,
                "usage": usage or _NO_USAGE,
                "isContinued": finish_reason == "tool-calls",
            },
        )

    def message_finish(self, finish_reason: str = "stop", usage: dict[str, int] | None = None) -> bytes:
        return _part("d", {"finishReason": finish_reason, "usage": usage or _NO_USAGE})

    def error(self, message: str) -> bytes:
        return _part("3", message)

    def content_type(self) -> str:
        return "text/plain; charset=utf-8"

    def extra_headers(self) -> dict[str, str]:
        return {"x-vercel-ai-data-stream": "v1"}
