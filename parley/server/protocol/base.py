"""Abstract base for AI SDK stream protocol encoders."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class StreamEncoder(ABC):
    """Encodes session engine events into AI SDK wire format bytes."""

    @abstractmethod
    def message_start(self, message_id: str) -> bytes:
        ...

    @abstractmethod
    def text_delta(self, text: str) -> bytes:
        ...

    @abstractmethod
    def reasoning_delta(self, text: str) -> bytes:
        """Encode a chunk of model reasoning."""
        ...

    @abstractmethod
    def tool_call(self, tool_call_id: str, tool_name: str, args: dict[str, Any]) -> bytes:
        ...

    @abstractmethod
    def tool_result(self, tool_call_id: str, result: Any) -> bytes:
        ...

    @abstractmethod
    def step_finish(self, finish_reason: str = "stop", usage: dict[str, int] | None = None) -> bytes:
        """Encode the end of one model step (one streamed turn)."""
        ...

    @abstractmethod
    def message_finish(self, finish_reason: str = "stop", usage: dict[str, int] | None = None) -> bytes:
        ...

    @abstractmethod
    def error(self, message: str) -> bytes:
        ...

    @abstractmethod
    def content_type(self) -> str:
        ...

    @abstractmethod
    def extra_headers(self) -> dict[str, str]:
        """Protocol-specific response headers."""
        ...
