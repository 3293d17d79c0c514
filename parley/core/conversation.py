"""
Session history to canonical API messages.

Canonical messages use Anthropic-style content blocks. Fields prefixed with
``_`` carry data only some vendors need (Google thought signatures, tool
names for function responses); adapters that reject them strip them.
"""

from __future__ import annotations

from typing import Any

from parley.models.session import Message, MessageStatus, ToolStatus


def _tool_result_block(tool_use_id: str, tool_name: str, content: str, is_error: bool) -> dict[str, Any]:
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
        "_tool_name": tool_name,
    }
    if is_error:
        block["is_error"] = True
    return block


def _assistant_content(msg: Message) -> str | list[dict[str, Any]]:
    if not msg.thinking_blocks and not msg.tool_calls:
        return msg.content

    blocks: list[dict[str, Any]] = []
    for thinking in msg.thinking_blocks:
        block: dict[str, Any] = {"type": "thinking", "thinking": thinking.text}
        if thinking.signature:
            block["signature"] = thinking.signature
        blocks.append(block)
    if msg.content:
        blocks.append({"type": "text", "text": msg.content})
    for call in msg.tool_calls:
        block = {"type": "tool_use", "id": call.id, "name": call.name, "input": call.input}
        if call.reasoning_signature:
            block["_thought_signature"] = call.reasoning_signature
        blocks.append(block)
    return blocks


def _unanswered_results(msg: Message) -> list[dict[str, Any]]:
    """Placeholder results for tool calls a later user turn interrupted."""
    blocks = []
    for call in msg.tool_calls:
        done = call.status == ToolStatus.DONE
        content = call.output or ("" if done else "Tool call was aborted.")
        blocks.append(_tool_result_block(call.id, call.name, content, not done))
    return blocks


def build_api_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """
    Convert session messages to canonical API messages.

    Every assistant tool_use is answered by a tool_result in the next user
    turn: a synthetic tool-result turn when the loop completed, or
    placeholder results prepended to the user's text when it was cut short.
    Assistant turns with no content at all are skipped.
    """
    api: list[dict[str, Any]] = []
    pending: Message | None = None  # Last assistant turn with tool calls

    for msg in messages:
        if msg.role == "assistant":
            if not msg.content and not msg.tool_calls and not msg.thinking_blocks:
                continue
            if msg.status == MessageStatus.STREAMING:
                continue
            api.append({"role": "assistant", "content": _assistant_content(msg)})
            pending = msg if msg.tool_calls else None
            continue

        if msg.is_tool_result:
            blocks = [
                _tool_result_block(r.tool_use_id, r.tool_name, r.content, r.is_error)
                for r in msg.tool_results or []
            ]
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            api.append({"role": "user", "content": blocks})
            pending = None
            continue

        if pending is not None:
            blocks = _unanswered_results(pending)
            blocks.append({"type": "text", "text": msg.content})
            api.append({"role": "user", "content": blocks})
            pending = None
        else:
            api.append({"role": "user", "content": msg.content})

    return api
