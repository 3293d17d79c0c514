"""
Relay adapter: an Anthropic-shaped request proxied through a billing relay.

The relay forwards to the vendor named by ``vendor_hint`` and re-emits the
response as Anthropic SSE, adding a balance trailer before the terminal
sentinel. Private cross-vendor fields are passed through; the relay needs
them to talk to the inner vendor.
"""

from __future__ import annotations

import logging
from typing import Any

from parley.core.providers.anthropic import AnthropicAdapter, anthropic_reasoning_fields
from parley.core.providers.base import (
    DEFAULT_MAX_TOKENS,
    FormattedRequest,
    ProviderAdapter,
    ReasoningConfig,
)
from parley.core.providers.google import google_thinking_config
from parley.models.events import BalanceUpdate, NormalizedEvent

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://relay.parley.dev/api/v1/proxy"
BALANCE_TYPE = "relay_balance"


class RelayAdapter(ProviderAdapter):
    """Relay variant delegating stream interpretation to an inner adapter."""

    vendor = "relay"
    default_url = DEFAULT_RELAY_URL

    def __init__(self, vendor_hint: str = "anthropic", inner: ProviderAdapter | None = None):
        self.vendor_hint = vendor_hint or "anthropic"
        self.inner = inner or AnthropicAdapter()

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
        cache = self.vendor_hint == "anthropic"
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": self._max_tokens(max_tokens, reasoning),
            "messages": messages,
        }
        if stream:
            body["stream"] = True
        if system_prompt:
            if cache:
                body["system"] = [
                    {"type": "text", "text": system_prompt, "cache_control": {"type": "ephemeral"}}
                ]
            else:
                body["system"] = system_prompt
        if cache and stream:
            body["cache_control"] = {"type": "ephemeral"}
        if tool_defs:
            body["tools"] = tool_defs
        if tool_choice:
            body["tool_choice"] = tool_choice
        body.update(self._reasoning_fields(reasoning))

        return FormattedRequest(
            url=endpoint or self.default_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
                "X-Relay-Provider": self.vendor_hint,
            },
            body=body,
        )

    @staticmethod
    def _reasoning_fields(reasoning: ReasoningConfig | None) -> dict[str, Any]:
        if reasoning is None:
            return {}
        if reasoning.mode in ("adaptive", "manual"):
            return anthropic_reasoning_fields(reasoning)
        if reasoning.mode == "openai":
            effort = reasoning.effort or "medium"
            return {"reasoning_effort": effort, "reasoning": {"effort": effort, "summary": "auto"}}
        thinking = google_thinking_config(reasoning)
        return {"thinking_config": thinking} if thinking else {}

    def _interpret(
        self, record: dict[str, Any]
    ) -> NormalizedEvent | list[NormalizedEvent] | None:
        if record.get("type") == BALANCE_TYPE:
            return BalanceUpdate(credits=record.get("credits"), cost_cents=record.get("cost_cents"))
        return self.inner.interpret_event(record)

    def extract_text(self, response: dict[str, Any]) -> str | None:
        return self.inner.extract_text(response)

    def __repr__(self) -> str:
        return f"RelayAdapter(vendor_hint={self.vendor_hint!r})"
