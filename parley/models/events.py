"""
Normalized stream events.

Every vendor stream is reduced to this closed set of event kinds before it
reaches the session engine. Events that can carry usage hold the raw vendor
counters; the engine normalizes them with the vendor it is talking to.
"""

from dataclasses import dataclass
from typing import Any, Literal, Union

BlockKind = Literal["text", "thinking", "tool_use"]
StopReason = Literal["tool_use", "end_turn", "error"]


@dataclass
class BlockStart:
    kind: BlockKind
    tool_name: str | None = None
    tool_id: str | None = None
    reasoning_signature: str | None = None


@dataclass
class TextDelta:
    text: str


@dataclass
class ThinkingDelta:
    text: str


@dataclass
class SignatureDelta:
    signature: str


@dataclass
class ToolInputDelta:
    json_fragment: str


@dataclass
class BlockStop:
    pass


@dataclass
class MessageDelta:
    stop_reason: StopReason
    usage: dict[str, Any] | None = None
    error: dict[str, Any] | None = None  # {"type", "message"} when stop_reason is "error"


@dataclass
class MessageStop:
    usage: dict[str, Any] | None = None


@dataclass
class UsageOnly:
    usage: dict[str, Any]


@dataclass
class BalanceUpdate:
    credits: float | None
    cost_cents: float | None = None


@dataclass
class DirectToolCall:
    tool_name: str
    tool_input: dict[str, Any]
    reasoning_signature: str | None = None


NormalizedEvent = Union[
    BlockStart,
    TextDelta,
    ThinkingDelta,
    SignatureDelta,
    ToolInputDelta,
    BlockStop,
    MessageDelta,
    MessageStop,
    UsageOnly,
    BalanceUpdate,
    DirectToolCall,
]


def event_usage(event: NormalizedEvent) -> dict[str, Any] | None:
    """Return the raw usage counters an event carries, if any."""
    return getattr(event, "usage", None)
