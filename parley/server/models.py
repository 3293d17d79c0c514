"""Pydantic models for the API layer."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """A message in the useChat format."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str | list[dict[str, Any]]
    id: str | None = None


class ChatRequest(BaseModel):
    """POST /api/chat request body from useChat."""

    messages: list[ChatMessage]
    model: str | None = Field(default=None, description="Catalog model id for new sessions")
    system: str | None = Field(default=None, description="System prompt for new sessions")
    session_id: str | None = Field(default=None, alias="sessionId", description="Session ID to resume")

    model_config = {"populate_by_name": True}


class SessionInfo(BaseModel):
    """Session summary for list responses."""

    session_id: str
    model: str
    title: str | None
    status: str
    created_at: str
    updated_at: str
    message_count: int
    cost: float
