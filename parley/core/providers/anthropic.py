"""
Anthropic Messages API adapter.
"""

from __future__ import annotations

import logging
from typing import Any

from parley.core.providers.base import (
    DEFAULT_MAX_TOKENS,
    FormattedRequest,
    ProviderAdapter,
    ReasoningConfig,
    strip_private_fields,
)
from parley.models.events import (
    BlockStart,
    BlockStop,
    MessageDelta,
    MessageStop,
    NormalizedEvent,
    SignatureDelta,
    TextDelta,
    ThinkingDelta,
    ToolInputDelta,
    UsageOnly,
)

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_THINKING_BUDGET = 10_000

_EPHEMERAL = {"type": "ephemeral"}

# Records that carry nothing the engine needs
_IGNORED = {"ping"}
_IGNORED_DELTAS = {"citations_delta"}


def anthropic_reasoning_fields(reasoning: ReasoningConfig | None) -> dict[str, Any]:
    """Body fields for the two Anthropic reasoning modes; empty for others."""
    if reasoning is None:
        return {}
    if reasoning.mode == "adaptive":
        return {
            "thinking": {"type": "adaptive"},
            "output_config": {"effort": reasoning.effort or "medium"},
        }
    if reasoning.mode == "manual":
        return {
            "thinking": {
                "type": "enabled",
                "budget_tokens": reasoning.budget_tokens or DEFAULT_THINKING_BUDGET,
            }
        }
    return {}


def _drop_unsigned_thinking(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Thinking blocks produced by other vendors carry no Anthropic signature."""
    cleaned = []
    for msg in messages:
        content = msg.get("content")
        if msg.get("role") != "assistant" or not isinstance(content, list):
            cleaned.append(msg)
            continue
        blocks = [
            b for b in content
            if not (b.get("type") == "thinking" and not b.get("signature"))
        ]
        cleaned.append({**msg, "content": blocks or ""})
    return cleaned


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API with prompt caching and extended thinking."""

    vendor = "anthropic"
    default_url = ANTHROPIC_URL

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
            "max_tokens": self._max_tokens(max_tokens, reasoning),
            "messages": _drop_unsigned_thinking(strip_private_fields(messages)),
        }
        if stream:
            body["stream"] = True
        if system_prompt:
            body["system"] = [{"type": "text", "text": system_prompt, "cache_control": _EPHEMERAL}]
        if stream:
            body["cache_control"] = _EPHEMERAL
        if tool_defs:
            body["tools"] = tool_defs
        if tool_choice:
            body["tool_choice"] = tool_choice
        body.update(anthropic_reasoning_fields(reasoning))

        return FormattedRequest(
            url=endpoint or self.default_url,
            headers={
                "Content-Type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            body=body,
        )

    def _interpret(self, record: dict[str, Any]) -> NormalizedEvent | None:
        kind = record.get("type")

        if kind == "content_block_start":
            block = record.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "text":
                return BlockStart(kind="text")
            if block_type == "thinking":
                return BlockStart(kind="thinking")
            if block_type == "tool_use":
                return BlockStart(
                    kind="tool_use",
                    tool_name=block.get("name"),
                    tool_id=block.get("id"),
                    reasoning_signature=block.get("_thought_signature"),
                )
            logger.debug("Ignoring content block of type %s", block_type)
            return None

        if kind == "content_block_delta":
            delta = record.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return TextDelta(text=delta.get("text", ""))
            if delta_type == "input_json_delta":
                return ToolInputDelta(json_fragment=delta.get("partial_json", ""))
            if delta_type == "thinking_delta":
                return ThinkingDelta(text=delta.get("thinking", ""))
            if delta_type == "signature_delta":
                return SignatureDelta(signature=delta.get("signature", ""))
            if delta_type not in _IGNORED_DELTAS:
                logger.warning("Unhandled Anthropic delta type: %s", delta_type)
            return None

        if kind == "content_block_stop":
            return BlockStop()

        if kind == "message_delta":
            usage = record.get("usage")
            stop_reason = (record.get("delta") or {}).get("stop_reason")
            if stop_reason is None:
                return UsageOnly(usage=usage) if usage else None
            return MessageDelta(
                stop_reason="tool_use" if stop_reason == "tool_use" else "end_turn",
                usage=usage,
            )

        if kind == "message_stop":
            return MessageStop(usage=record.get("usage"))

        if kind == "message_start":
            usage = (record.get("message") or {}).get("usage")
            return UsageOnly(usage=usage) if usage else None

        if kind == "error":
            error = record.get("error")
            if not isinstance(error, dict):
                error = {"message": str(error)} if error else {}
            logger.error("Anthropic stream error %s: %.500s", error.get("type"), error.get("message"))
            return MessageDelta(
                stop_reason="error", error={"type": error.get("type"), "message": error.get("message")}
            )

        if kind not in _IGNORED:
            logger.warning("Unhandled Anthropic event: %.500s", record)
        return None

    def extract_text(self, response: dict[str, Any]) -> str | None:
        for block in response.get("content") or []:
            if block.get("type") == "text":
                return block.get("text")
        return None
