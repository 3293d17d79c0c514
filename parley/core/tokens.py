"""
Token budget estimation and history truncation.

Uses a fast ~4 bytes/token heuristic. It is not accurate in an absolute
sense; it is monotonic and stable, which is all budget enforcement needs.
"""

from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from parley.core.model_registry import ModelCatalog

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 200_000
OUTPUT_RESERVE = 16_384
THINKING_OUTPUT_RESERVE = 32_768


def estimate_tokens(text: Any) -> int:
    """Estimate tokens as ceil(utf-8 byte length / 4)."""
    if not text:
        return 0
    if not isinstance(text, str):
        text = json.dumps(text, ensure_ascii=False)
    return math.ceil(len(text.encode("utf-8")) / 4)


def _estimate_message(message: dict[str, Any]) -> int:
    content = message.get("content")
    if isinstance(content, str):
        return estimate_tokens(content)

    tokens = 0
    for block in content or []:
        if not isinstance(block, dict):
            continue
        if block.get("text"):
            tokens += estimate_tokens(block["text"])
        if block.get("thinking"):
            tokens += estimate_tokens(block["thinking"])
        if block.get("content"):
            tokens += estimate_tokens(block["content"])
        if block.get("input"):
            tokens += estimate_tokens(json.dumps(block["input"], ensure_ascii=False))
    return tokens


def estimate_conversation(system: str | None, messages: list[dict[str, Any]]) -> int:
    """Sum the estimate over the system prompt and every message field."""
    total = estimate_tokens(system)
    for message in messages:
        total += _estimate_message(message)
    return total


def output_reserve(thinking: bool) -> int:
    """Tokens held back for the response; reasoning needs more headroom."""
    return THINKING_OUTPUT_RESERVE if thinking else OUTPUT_RESERVE


def _is_tool_result_turn(message: dict[str, Any]) -> bool:
    content = message.get("content")
    if message.get("role") != "user" or not isinstance(content, list) or not content:
        return False
    return all(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)


def _tool_use_ids(message: dict[str, Any]) -> set[str]:
    content = message.get("content")
    if message.get("role") != "assistant" or not isinstance(content, list):
        return set()
    return {b.get("id") for b in content if isinstance(b, dict) and b.get("type") == "tool_use"}


def _without_results(message: dict[str, Any], tool_use_ids: set[str]) -> dict[str, Any] | None:
    """A copy of ``message`` minus the results for ``tool_use_ids``; None if nothing is left."""
    content = message.get("content")
    if message.get("role") != "user" or not isinstance(content, list):
        return message
    kept = [
        b
        for b in content
        if not (isinstance(b, dict) and b.get("type") == "tool_result" and b.get("tool_use_id") in tool_use_ids)
    ]
    if len(kept) == len(content):
        return message
    return {**message, "content": kept} if kept else None


def truncate_to_fit_budget(
    messages: list[dict[str, Any]],
    budget: int,
    system: str | None = None,
) -> list[dict[str, Any]]:
    """
    Sliding-window truncation.

    Repeatedly drops the second message until the conversation fits
    ``budget`` or only two messages remain. The first message (environment
    context) and the last (the newest turn) are never removed. Dropping an
    assistant turn also drops the tool results that answer it; a turn left
    with nothing else is dropped whole. The newest turn is never separated
    from the tool call it answers.

    Returns:
        A new list; the input is not modified.
    """
    msgs = list(messages)
    estimate = estimate_conversation(system, msgs)

    while estimate > budget and len(msgs) > 2:
        if len(msgs) == 3 and _tool_use_ids(msgs[1]) and _is_tool_result_turn(msgs[2]):
            break
        answered = _tool_use_ids(msgs.pop(1))
        if answered:
            # Tool results must follow the assistant turn that asked for them
            trimmed = _without_results(msgs[1], answered)
            if trimmed is not None:
                msgs[1] = trimmed
            else:
                del msgs[1]
        while len(msgs) > 2 and _is_tool_result_turn(msgs[1]):
            del msgs[1]
        estimate = estimate_conversation(system, msgs)

    if estimate > budget:
        logger.warning(
            "Conversation still over budget after truncation (%d > %d tokens, %d messages)",
            estimate,
            budget,
            len(msgs),
        )
    return msgs


class TokenBudget:
    """
    Fits outbound history into a model's context window.

    Example:
        budget = TokenBudget(context_window=200_000, thinking=True)
        messages, estimate = budget.fit(system_prompt, api_messages)
    """

    def __init__(self, context_window: int = DEFAULT_CONTEXT_WINDOW, thinking: bool = False):
        self.context_window = context_window
        self.thinking = thinking

    @property
    def reserve(self) -> int:
        return output_reserve(self.thinking)

    @property
    def max_input(self) -> int:
        return max(self.context_window - self.reserve, 0)

    def fit(
        self, system: str | None, messages: list[dict[str, Any]]
    ) -> tuple[list[dict[str, Any]], int]:
        """Return (possibly truncated messages, their estimate)."""
        estimate = estimate_conversation(system, messages)
        if estimate <= self.max_input:
            return messages, estimate

        logger.info(
            "Estimated %d tokens exceeds budget %d; truncating %d messages",
            estimate,
            self.max_input,
            len(messages),
        )
        fitted = truncate_to_fit_budget(messages, self.max_input, system)
        return fitted, estimate_conversation(system, fitted)


def get_context_window(model: str, catalog: ModelCatalog | None = None) -> int:
    """
    Get the context window for a model.

    Strategy:
    1. The model catalog entry, when it declares one
    2. LiteLLM's model metadata
    3. DEFAULT_CONTEXT_WINDOW
    """
    if catalog is not None:
        entry = catalog.find(model)
        if entry and entry.context_window:
            return entry.context_window
        if entry:
            model = entry.model

    try:
        import litellm

        model_info = litellm.get_model_info(model)
        if model_info and model_info.get("max_input_tokens"):
            return model_info["max_input_tokens"]
    except Exception:
        # litellm raises for models it does not know
        pass

    logger.warning(
        "Unknown context window for model '%s'. Using default %d.",
        model,
        DEFAULT_CONTEXT_WINDOW,
    )
    return DEFAULT_CONTEXT_WINDOW
