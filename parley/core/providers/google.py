"""
Google Generative Language (Gemini) adapter.

Gemini streams complete parts rather than deltas, several per record, and
sends tool calls whole. ``interpret_event`` therefore returns a list.
"""

from __future__ import annotations

import logging
from typing import Any

from parley.core.providers.base import (
    DEFAULT_MAX_TOKENS,
    FormattedRequest,
    ProviderAdapter,
    ReasoningConfig,
)
from parley.models.events import (
    DirectToolCall,
    MessageDelta,
    NormalizedEvent,
    SignatureDelta,
    TextDelta,
    ThinkingDelta,
    UsageOnly,
)

logger = logging.getLogger(__name__)

GOOGLE_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_THINKING_BUDGET = 8192


def google_thinking_config(reasoning: ReasoningConfig | None) -> dict[str, Any] | None:
    if reasoning is None:
        return None
    if reasoning.mode == "google":
        return {"thinkingLevel": reasoning.level or "high", "includeThoughts": True}
    if reasoning.mode == "google25":
        return {
            "thinkingBudget": reasoning.budget_tokens or DEFAULT_THINKING_BUDGET,
            "includeThoughts": True,
        }
    return None


def to_google_contents(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert canonical messages to Gemini ``contents``."""
    contents: list[dict[str, Any]] = []
    for msg in messages:
        content = msg.get("content")
        role = "model" if msg.get("role") == "assistant" else "user"

        if not isinstance(content, list):
            contents.append({"role": role, "parts": [{"text": content or ""}]})
            continue

        parts: list[dict[str, Any]] = []
        for block in content:
            block_type = block.get("type")
            if block_type == "text":
                parts.append({"text": block.get("text", "")})
            elif block_type == "thinking" and role == "model":
                part: dict[str, Any] = {"text": block.get("thinking", ""), "thought": True}
                if block.get("signature"):
                    part["thoughtSignature"] = block["signature"]
                parts.append(part)
            elif block_type == "tool_use" and role == "model":
                part = {"functionCall": {"name": block.get("name"), "args": block.get("input") or {}}}
                if block.get("_thought_signature"):
                    part["thoughtSignature"] = block["_thought_signature"]
                parts.append(part)
            elif block_type == "tool_result":
                parts.append({
                    "functionResponse": {
                        "name": block.get("_tool_name") or "tool",
                        "response": {"content": block.get("content") or ""},
                    }
                })
        contents.append({"role": role, "parts": parts})
    return contents


def to_google_tools(tool_defs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{
        "functionDeclarations": [
            {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema") or {"type": "object", "properties": {}},
            }
            for t in tool_defs
        ]
    }]


class GoogleAdapter(ProviderAdapter):
    """Gemini ``streamGenerateContent`` over SSE."""

    vendor = "google"
    default_url = GOOGLE_BASE_URL

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
            "contents": to_google_contents(messages),
            "generationConfig": {"maxOutputTokens": self._max_tokens(max_tokens, reasoning)},
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tool_defs:
            body["tools"] = to_google_tools(tool_defs)
        if tool_choice and tool_choice.get("type") == "tool":
            body["toolConfig"] = {
                "functionCallingConfig": {
                    "mode": "ANY",
                    "allowedFunctionNames": [tool_choice.get("name")],
                }
            }
        thinking = google_thinking_config(reasoning)
        if thinking:
            body["generationConfig"]["thinkingConfig"] = thinking

        base = (endpoint or self.default_url).rstrip("/")
        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        return FormattedRequest(
            url=f"{base}/{model}:{method}",
            headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
            body=body,
        )

    def _interpret(self, record: dict[str, Any]) -> list[NormalizedEvent] | None:
        usage = record.get("usageMetadata")
        candidates = record.get("candidates") or []
        if not candidates:
            return [UsageOnly(usage=usage)] if usage else None

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []

        events: list[NormalizedEvent] = []
        for part in parts:
            if "text" in part:
                if part.get("thought"):
                    events.append(ThinkingDelta(text=part["text"]))
                    if part.get("thoughtSignature"):
                        events.append(SignatureDelta(signature=part["thoughtSignature"]))
                else:
                    events.append(TextDelta(text=part["text"]))
            if "functionCall" in part:
                call = part["functionCall"] or {}
                events.append(
                    DirectToolCall(
                        tool_name=call.get("name", ""),
                        tool_input=call.get("args") or {},
                        reasoning_signature=part.get("thoughtSignature"),
                    )
                )

        finish_reason = candidate.get("finishReason")
        if not events:
            if finish_reason:
                if finish_reason not in ("STOP", "MAX_TOKENS"):
                    logger.warning("Gemini finished with reason %s", finish_reason)
                return [MessageDelta(stop_reason="end_turn", usage=usage)]
            return [UsageOnly(usage=usage)] if usage else None

        if usage:
            events.append(UsageOnly(usage=usage))
        return events

    def extract_text(self, response: dict[str, Any]) -> str | None:
        candidates = response.get("candidates") or []
        if not candidates:
            return None
        for part in (candidates[0].get("content") or {}).get("parts") or []:
            if "text" in part and not part.get("thought"):
                return part["text"]
        return None

    def extract_usage(self, response: dict[str, Any]) -> dict[str, Any] | None:
        return response.get("usageMetadata")
