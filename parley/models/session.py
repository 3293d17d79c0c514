"""
Session models for streaming conversations.

A Session owns its messages by value. The engine addresses the open
assistant message by index, never through a long-lived reference.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from parley.models.usage import UsageSnapshot

ABORT_MARKER = "\n\n*[Aborted]*"


def _utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


def _tool_id() -> str:
    return f"tool-{uuid.uuid4().hex[:12]}"


class SessionStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_EXECUTION = "tool_execution"
    ERROR = "error"


class MessageStatus(str, Enum):
    STREAMING = "streaming"
    COMPLETE = "complete"
    ABORTED = "aborted"
    ERROR = "error"


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class ThinkingBlock(BaseModel):
    """Model-internal reasoning, with the vendor's opaque signature if any."""

    text: str = ""
    signature: str | None = None


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str = Field(default_factory=_tool_id)
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: str = ""
    status: ToolStatus = ToolStatus.PENDING
    reasoning_signature: str | None = None  # Echoed back to vendors that require it


class ToolResult(BaseModel):
    """One entry of a synthetic tool-result turn."""

    tool_use_id: str
    tool_name: str
    content: str = ""
    is_error: bool = False


class Message(BaseModel):
    """A single turn in the conversation."""

    id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4().hex[:12]}")
    role: Literal["user", "assistant"]
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    thinking_blocks: list[ThinkingBlock] = Field(default_factory=list)
    tool_results: list[ToolResult] | None = None  # Set on synthetic tool-result turns
    status: MessageStatus = MessageStatus.COMPLETE
    usage: UsageSnapshot | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_tool_result(self) -> bool:
        return self.tool_results is not None


class Session(BaseModel):
    """A conversation and its streaming lifecycle state."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    model: str
    title: str | None = None  # Set from the first user message
    system_prompt: str | None = None
    messages: list[Message] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.IDLE
    estimated_tokens: int = 0
    usage: UsageSnapshot = Field(default_factory=UsageSnapshot)
    background: bool = False
    loop_depth: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def recompute_usage(self) -> UsageSnapshot:
        """Sum per-turn usage across all assistant messages."""
        total = UsageSnapshot()
        for msg in self.messages:
            if msg.usage is not None:
                total = total.add(msg.usage)
        self.usage = total
        return total

    def snapshot(self) -> dict[str, Any]:
        """Serializable copy for persistence. Status is always stored as idle."""
        data = self.model_dump(mode="json", exclude={"background", "loop_depth"})
        data["status"] = SessionStatus.IDLE.value
        return data

    @classmethod
    def restore(cls, data: dict[str, Any]) -> "Session":
        """Rehydrate from a snapshot. The session always comes back idle."""
        session = cls.model_validate(data)
        session.status = SessionStatus.IDLE
        session.background = False
        session.loop_depth = 0
        for msg in session.messages:
            if msg.status == MessageStatus.STREAMING:
                msg.status = MessageStatus.ABORTED
        return session
