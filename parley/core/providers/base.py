"""
Shared adapter contract and SSE framing.

Every vendor adapter turns canonical conversation history into a vendor
request, and turns the vendor's SSE records back into normalized events.
Canonical history uses Anthropic-style content blocks (text, thinking,
tool_use, tool_result); adapters translate from there.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from parley.models.events import MessageStop, NormalizedEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 16_384
THINKING_MAX_TOKENS = 32_768

# Terminal sentinel produced for "data: [DONE]"
DONE_TYPE = "stream.done"

# Carry-over larger than this is unparseable garbage, not a split record
MAX_CARRY_OVER = 1024 * 1024

# Canonical block fields that only make sense to some vendors
PRIVATE_PREFIX = "_"

_SSE_FIELDS = (b"data:", b"event:", b"id:", b"retry:", b":")

ReasoningMode = Literal["adaptive", "manual", "openai", "google", "google25"]


@dataclass
class ReasoningConfig:
    """
    A reasoning request in one vendor's vocabulary.

    Modes are not interchangeable: ``adaptive``/``manual`` are Anthropic,
    ``openai`` is an effort level, ``google`` a level enum and ``google25``
    a token budget.
    """

    mode: ReasoningMode
    effort: str | None = None
    level: str | None = None
    budget_tokens: int | None = None


@dataclass
class FormattedRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any] = field(default_factory=dict)

    def encoded_body(self) -> bytes:
        return json.dumps(self.body).encode("utf-8")


def strip_private_fields(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop ``_``-prefixed block fields before sending to a vendor that rejects them."""
    cleaned = []
    for msg in messages:
        content = msg.get("content")
        if not isinstance(content, list):
            cleaned.append(msg)
            continue
        blocks = [
            {k: v for k, v in block.items() if not k.startswith(PRIVATE_PREFIX)}
            if isinstance(block, dict)
            else block
            for block in content
        ]
        cleaned.append({**msg, "content": blocks})
    return cleaned


def _data_payload(line: bytes) -> bytes | None:
    if not line.startswith(b"data:"):
        return None
    return line[5:].strip()


def _is_continuation(line: bytes) -> bool:
    line = line.rstrip(b"\r")
    return bool(line.strip()) and not line.startswith(_SSE_FIELDS)


def _loads(payload: bytes) -> tuple[bool, Any]:
    try:
        return True, json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return False, None


def parse_sse_chunk(
    raw: bytes, carry_over: bytes = b"", final: bool = False
) -> tuple[list[dict[str, Any]], bytes]:
    """
    Split SSE bytes into JSON records.

    The trailing partial line is carried over. A complete ``data:`` line that
    fails to parse is joined with following continuation lines; if nothing
    follows it yet, it stays in the carry-over and is retried when more
    bytes arrive. Parsing a stream in any number of pieces yields the same
    records as parsing it whole.

    Args:
        raw: Newly received bytes
        carry_over: Carry-over returned by the previous call
        final: No more bytes will arrive; treat the tail as a complete line

    Returns:
        (records, new_carry_over)
    """
    data = carry_over + raw
    lines = data.split(b"\n")
    tail = lines.pop()
    if final:
        if tail:
            lines.append(tail)
        tail = b""

    records: list[dict[str, Any]] = []
    i = 0
    while i < len(lines):
        start = i
        payload = _data_payload(lines[i].rstrip(b"\r"))
        i += 1
        if payload is None:
            continue
        if payload == b"[DONE]":
            records.append({"type": DONE_TYPE})
            continue

        ok, record = _loads(payload)
        while not ok and i < len(lines) and _is_continuation(lines[i]):
            payload += b"\n" + lines[i].rstrip(b"\r")
            i += 1
            ok, record = _loads(payload)

        if ok:
            if isinstance(record, dict):
                records.append(record)
            else:
                logger.warning("Ignoring non-object SSE record: %.200r", record)
            continue

        if i == len(lines) and not final:
            carry = b"\n".join(lines[start:]) + b"\n" + tail
            if len(carry) > MAX_CARRY_OVER:
                logger.warning("Dropping %d bytes of unparseable stream data", len(carry))
                return records, b""
            return records, carry

        logger.warning("Dropping unparseable SSE line: %.200r", payload)

    if len(tail) > MAX_CARRY_OVER:
        logger.warning("Dropping %d bytes of unterminated stream data", len(tail))
        return records, b""
    return records, tail


class ProviderAdapter(ABC):
    """
    One vendor wire format.

    Subclasses implement request formatting and record interpretation;
    framing (``parse_chunk``) is shared SSE.
    """

    vendor: str = ""
    default_url: str = ""

    @abstractmethod
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
        """Build the vendor request for canonical ``messages``."""
        ...

    def parse_chunk(
        self, raw: bytes, carry_over: bytes = b"", final: bool = False
    ) -> tuple[list[dict[str, Any]], bytes]:
        return parse_sse_chunk(raw, carry_over, final=final)

    def interpret_event(
        self, record: dict[str, Any]
    ) -> NormalizedEvent | list[NormalizedEvent] | None:
        """Map one raw record to zero, one or several normalized events."""
        if record.get("type") == DONE_TYPE:
            return MessageStop()
        return self._interpret(record)

    @abstractmethod
    def _interpret(
        self, record: dict[str, Any]
    ) -> NormalizedEvent | list[NormalizedEvent] | None:
        ...

    @abstractmethod
    def extract_text(self, response: dict[str, Any]) -> str | None:
        """Text of a non-streaming response."""
        ...

    def extract_usage(self, response: dict[str, Any]) -> dict[str, Any] | None:
        """Raw usage counters of a non-streaming response."""
        usage = response.get("usage")
        return usage if isinstance(usage, dict) else None

    @staticmethod
    def _max_tokens(max_tokens: int, reasoning: ReasoningConfig | None) -> int:
        return THINKING_MAX_TOKENS if reasoning else max_tokens

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
