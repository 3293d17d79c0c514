"""Vendor adapters: one per wire format, plus the relay variant."""

from parley.core.providers.anthropic import AnthropicAdapter
from parley.core.providers.base import (
    FormattedRequest,
    ProviderAdapter,
    ReasoningConfig,
    parse_sse_chunk,
)
from parley.core.providers.google import GoogleAdapter
from parley.core.providers.openai import OpenAIAdapter
from parley.core.providers.relay import RelayAdapter

__all__ = [
    "AnthropicAdapter",
    "FormattedRequest",
    "GoogleAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ReasoningConfig",
    "RelayAdapter",
    "VENDORS",
    "get_adapter",
    "parse_sse_chunk",
]

VENDORS = ("anthropic", "openai", "google", "relay")


def get_adapter(vendor: str, vendor_hint: str | None = None) -> ProviderAdapter:
    """
    Get the adapter for a vendor.

    Args:
        vendor: "anthropic", "openai", "google" or "relay"
        vendor_hint: Inner vendor for the relay variant

    Raises:
        ValueError: For a vendor outside the fixed set
    """
    if vendor == "anthropic":
        return AnthropicAdapter()
    if vendor == "openai":
        return OpenAIAdapter()
    if vendor == "google":
        return GoogleAdapter()
    if vendor == "relay":
        return RelayAdapter(vendor_hint or "anthropic")
    raise ValueError(f"Unknown vendor: {vendor!r}. Expected one of: {', '.join(VENDORS)}")
