"""
Usage normalization and cost calculation.

Each vendor reports token counters under different names and bundles
reasoning tokens differently. ``normalize_usage`` reduces them all to a
``UsageSnapshot`` where thinking is an informational subset of output.
"""

import logging
import math
import re
from typing import Any

from parley.models.config import PriceEntry
from parley.models.usage import COUNTER_FIELDS, UsageSnapshot

logger = logging.getLogger(__name__)

# Prompts above this many input tokens use the long-context tier
LARGE_PROMPT_THRESHOLD = 200_000

# USD per million tokens
DEFAULT_PRICING: dict[str, PriceEntry] = {
    # Anthropic
    "claude-opus-4-6": PriceEntry(input=5.00, output=25.00, cache_write=6.25, cache_read=0.50),
    "claude-sonnet-4-6": PriceEntry(
        input=3.00,
        output=15.00,
        cache_write=3.75,
        cache_read=0.30,
        long_context=PriceEntry(input=6.00, output=22.50, cache_write=7.50, cache_read=0.60),
    ),
    "claude-haiku-4-5": PriceEntry(input=1.00, output=5.00, cache_write=1.25, cache_read=0.10),
    # Google
    "gemini-2.5-flash-lite": PriceEntry(input=0.10, output=0.40, cache_read=0.001),
    "gemini-3-flash": PriceEntry(input=0.50, output=3.00, cache_read=0.05),
    "gemini-3.1-pro": PriceEntry(
        input=2.00,
        output=12.00,
        cache_read=0.20,
        long_context=PriceEntry(input=4.00, output=18.00, cache_read=0.40),
    ),
    # OpenAI
    "gpt-5.2": PriceEntry(input=1.75, output=14.00, cache_read=0.175),
    "gpt-5-mini": PriceEntry(input=0.25, output=2.00, cache_read=0.025),
    "gpt-5-nano": PriceEntry(input=0.05, output=0.40, cache_read=0.005),
}

_SUFFIX_PATTERNS = (
    re.compile(r"-\d{8,}$"),  # -20251001
    re.compile(r"-\d{4}-\d{2}-\d{2}$"),  # -2025-08-07
    re.compile(r"-preview$"),
)


def _count(value: Any) -> int:
    """Coerce a raw counter to a non-negative int; garbage becomes 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


def _details(raw: dict[str, Any], *keys: str) -> dict[str, Any]:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, dict):
            return value
    return {}


def normalize_usage(vendor: str, raw: dict[str, Any] | None) -> UsageSnapshot:
    """
    Normalize raw vendor usage counters.

    Args:
        vendor: "anthropic", "relay", "openai" or "google"
        raw: The usage object exactly as the vendor sent it

    Returns:
        UsageSnapshot without cost (see calculate_cost)
    """
    if not raw:
        return UsageSnapshot()

    values: dict[str, int] = dict.fromkeys(COUNTER_FIELDS, 0)

    if vendor in ("anthropic", "relay"):
        values["input_cache_miss"] = _count(raw.get("input_tokens"))
        values["input_cache_hit"] = _count(raw.get("cache_read_input_tokens"))
        values["input_cache_write"] = _count(raw.get("cache_creation_input_tokens"))
        values["input_total"] = (
            values["input_cache_miss"] + values["input_cache_hit"] + values["input_cache_write"]
        )
        values["output"] = _count(raw.get("output_tokens"))
        # Thinking is already inside output_tokens and not reported apart
        values["total"] = values["input_total"] + values["output"]

    elif vendor == "openai":
        # Responses API uses input/output_tokens, Chat Completions prompt/completion_tokens
        prompt = _count(raw.get("prompt_tokens") or raw.get("input_tokens"))
        cached = _count(
            _details(raw, "prompt_tokens_details", "input_tokens_details").get("cached_tokens")
        )
        values["input_cache_hit"] = min(cached, prompt)
        values["input_cache_miss"] = prompt - values["input_cache_hit"]
        values["input_total"] = prompt
        values["output"] = _count(raw.get("completion_tokens") or raw.get("output_tokens"))
        values["thinking"] = _count(
            _details(raw, "completion_tokens_details", "output_tokens_details").get("reasoning_tokens")
        )
        values["total"] = _count(raw.get("total_tokens")) or values["input_total"] + values["output"]

    elif vendor == "google":
        prompt = _count(raw.get("promptTokenCount"))
        cached = min(_count(raw.get("cachedContentTokenCount")), prompt)
        thoughts = _count(raw.get("thoughtsTokenCount"))
        values["input_cache_hit"] = cached
        values["input_cache_miss"] = prompt - cached
        values["input_total"] = prompt
        values["output"] = _count(raw.get("candidatesTokenCount")) + thoughts
        values["thinking"] = thoughts
        values["total"] = _count(raw.get("totalTokenCount")) or values["input_total"] + values["output"]

    else:
        logger.warning("No usage mapping for vendor '%s'", vendor)

    return UsageSnapshot(**values)


def resolve_price_key(model: str, pricing: dict[str, PriceEntry] | None = None) -> str | None:
    """
    Map a vendor model id to a pricing-table key.

    'claude-haiku-4-5-20251001' -> 'claude-haiku-4-5'
    'gemini-3-flash-preview'    -> 'gemini-3-flash'
    'gpt-5-mini-2025-08-07'     -> 'gpt-5-mini'
    """
    if not model:
        return None
    table = pricing if pricing is not None else DEFAULT_PRICING

    key = model.split("/")[-1]
    for pattern in _SUFFIX_PATTERNS:
        key = pattern.sub("", key)

    if key in table:
        return key
    return None


def calculate_cost(
    usage: UsageSnapshot,
    model: str,
    pricing: dict[str, PriceEntry] | None = None,
) -> float:
    """
    Price a usage snapshot in USD, rounded to six decimals.

    Unknown models cost 0 and log a warning rather than raising.
    """
    table = pricing if pricing is not None else DEFAULT_PRICING
    key = resolve_price_key(model, table)
    if key is None:
        logger.warning("No pricing found for model '%s'; recording zero cost", model)
        return 0.0

    base = table[key]
    prices = base
    if usage.input_total > LARGE_PROMPT_THRESHOLD and base.long_context is not None:
        prices = base.long_context

    cache_write = prices.cache_write if prices.cache_write is not None else base.cache_write
    cache_read = prices.cache_read if prices.cache_read is not None else base.cache_read

    per_million = (
        usage.input_cache_miss * prices.input
        + usage.input_cache_write * (cache_write or 0.0)
        + usage.input_cache_hit * (cache_read or 0.0)
        + usage.output * prices.output
    )
    cost = round(per_million / 1_000_000, 6)
    if not math.isfinite(cost):
        return 0.0
    return cost


def price(usage: UsageSnapshot, model: str, pricing: dict[str, PriceEntry] | None = None) -> UsageSnapshot:
    """Return a copy of ``usage`` with its cost filled in."""
    return usage.model_copy(update={"cost": calculate_cost(usage, model, pricing)})


def format_cost(cost: float) -> str:
    """Format a USD amount: $0.0042, $0.123, $1.23."""
    if not cost:
        return "$0.00"
    if cost < 0.01:
        return f"${cost:.4f}"
    if cost < 1:
        return f"${cost:.3f}"
    return f"${cost:.2f}"
