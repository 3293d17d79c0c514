"""Data models for parley."""

from parley.models.config import CatalogFile, EngineConfig, ModelEntry, PriceEntry, ProviderEntry
from parley.models.session import (
    Message,
    MessageStatus,
    Session,
    SessionStatus,
    ThinkingBlock,
    ToolCall,
    ToolResult,
    ToolStatus,
)
from parley.models.usage import UsageSnapshot

__all__ = [
    "CatalogFile",
    "EngineConfig",
    "Message",
    "MessageStatus",
    "ModelEntry",
    "PriceEntry",
    "ProviderEntry",
    "Session",
    "SessionStatus",
    "ThinkingBlock",
    "ToolCall",
    "ToolResult",
    "ToolStatus",
    "UsageSnapshot",
]
