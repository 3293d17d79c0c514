"""
OpenAI Responses API adapter.

The Responses API wants tool calls and tool results as top-level ``input``
items rather than nested inside messages, and manages reasoning itself, so
thinking blocks from earlier turns are dropped.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from parley.core.providers.base import (
    DEFAULT_MAX_TOKENS,
    FormattedRequest,
    ProviderAdapter,
    ReasoningConfig,
)
from parley.models.events import (
    BlockStart,
    BlockStop,
    MessageDelta,
    NormalizedEvent,
    TextDelta,
    ThinkingDelta,
    ToolInputDelta,
    UsageOnly,
)

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/responses"

# Known events that need no action
_IGNORED = {
    "response.in_progress",
    "response.output_item.done",
    "response.content_part.added",
    "response.content_part.done",
    "response.output_text.done",
    "response.reasoning_summary_part.added",
    "response.reasoning_summary_part.done",
    "response.reasoning_summary_text.done",
    "response.reasoning_text.done",
}


def _block_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content or "")


def to_openai_input(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert canonical messages to a Responses API ``input`` array."""
    items: list[dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")

        if not isinstance(content, list):
            items.append({"role": role, "content": content or ""})
            continue

        if role == "user":
            for block in content:
                if block.get("type") == "tool_result":
                    items.append({
                        "type": "function_call_output",
                        "call_id": block.get("tool_use_id"),
                        "output": _block_text(block.get("content")),
                    })
                elif block.get("type") == "text":
                    items.append({"role": "user", "content": block.get("text", "")})

        elif role == "assistant":
            text = "".join(b.get("text", "") for b in content if b.get("type") == "text")
            if text:
                items.append({"role": "assistant", "content": text})
            for block in content:
                if block.get("type") == "tool_use":
                    items.append({
                        "type": "function_call",
                        "call_id": block.get("id"),
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("input") or {}),
                    })
    return items


def to_openai_tools(tool_defs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": t["name"],
            "description": t.get("description", ""),
            "parameters": t.get("input_schema") or {"type": "object", "properties": {}},
            # Schemas without additionalProperties:false are rejected in strict mode
            "strict": False,
        }
        for t in tool_defs
    ]


def to_openai_tool_choice(tool_choice: dict[str, Any]) -> Any:
    kind = tool_choice.get("type")
    if kind == "tool":
        return {"type": "function", "name": tool_choice.get("name")}
    if kind == "any":
        return "required"
    if kind == "auto":
        return "auto"
    return None


class OpenAIAdapter(ProviderAdapter):
    """OpenAI Responses API with native reasoning summaries."""

    vendor = "openai"
    default_url = OPENAI_URL

    def format_request(
        self,
        endpoint: str | None,
        api_key: str,
        model: str,
        messages: list[dict[str, Any]],
        system_prompt: str | None = None,
        tool_defs: list[dict[str, Any]] | None = None,
        tool_choice: dict[str, Any] | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        reasoning: ReasoningConfig | None = None,
        stream: bool = True,
    ) -> FormattedRequest:
        body: dict[str, Any] = {
            "model": model,
            "input": to_openai_input(messages),
            "max_output_tokens": self._max_tokens(max_tokens, reasoning),
        }
        if stream:
            body["stream"] = True
        if system_prompt:
            body["instructions"] = system_prompt
        if tool_defs:
            body["tools"] = to_openai_tools(tool_defs)
        if tool_choice:
            mapped = to_openai_tool_choice(tool_choice)
            if mapped is not None:
                body["tool_choice"] = mapped

        if reasoning is not None and reasoning.mode == "openai":
            body["reasoning"] = {"effort": reasoning.effort or "medium", "summary": "auto"}
        elif not stream:
            # Reasoning tokens eat into max_output_tokens on quick calls
            body["reasoning"] = {"effort": "low"}

        return FormattedRequest(
            url=endpoint or self.default_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            body=body,
        )

    def _interpret(self, record: dict[str, Any]) -> NormalizedEvent | None:
        kind = record.get("type")
        if not kind:
            return None

        if kind == "response.created":
            usage = (record.get("response") or {}).get("usage")
            return UsageOnly(usage=usage) if usage else None

        if kind == "response.output_item.added":
            item = record.get("item") or {}
            if item.get("type") == "function_call":
                return BlockStart(
                    kind="tool_use",
                    tool_name=item.get("name"),
                    tool_id=item.get("call_id") or item.get("id"),
                )
            return None

        if kind == "response.output_text.delta":
            return TextDelta(text=record.get("delta", ""))

        if kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            return ThinkingDelta(text=record.get("delta", ""))

        if kind == "response.function_call_arguments.delta":
            return ToolInputDelta(json_fragment=record.get("delta", ""))

        if kind == "response.function_call_arguments.done":
            return BlockStop()

        if kind == "response.completed":
            response = record.get("response") or {}
            has_tool_calls = any(
                item.get("type") == "function_call" for item in response.get("output") or []
            )
            return MessageDelta(
                stop_reason="tool_use" if has_tool_calls else "end_turn",
                usage=response.get("usage"),
            )

        if kind in ("response.failed", "error"):
            logger.error("OpenAI stream failed: %.1000s", json.dumps(record))
            error = record if kind == "error" else (record.get("response") or {}).get("error") or {}
            return MessageDelta(
                stop_reason="error", error={"type": error.get("code"), "message": error.get("message")}
            )

        if kind == "response.incomplete":
            logger.warning("OpenAI response incomplete: %.500s", json.dumps(record))
            return MessageDelta(
                stop_reason="end_turn", usage=(record.get("response") or {}).get("usage")
            )

        if kind not in _IGNORED:
            logger.warning("Unhandled OpenAI event %s: %.500s", kind, json.dumps(record))
        return None

    def extract_text(self, response: dict[str, Any]) -> str | None:
        for item in response.get("output") or []:
            if item.get("type") != "message":
                continue
            for part in item.get("content") or []:
                if part.get("type") == "output_text":
                    return part.get("text")
        return None
