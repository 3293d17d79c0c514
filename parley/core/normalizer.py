"""
Event normalizer: transport bytes in, normalized events out.

Holds the carry-over buffer for one stream so that records split across
transport chunks are reassembled before interpretation.
"""

from __future__ import annotations

import logging

from parley.core.providers.base import DONE_TYPE, ProviderAdapter
from parley.models.events import NormalizedEvent

logger = logging.getLogger(__name__)


class EventNormalizer:
    """
    Per-stream frame buffer and interpreter.

    Example:
        normalizer = EventNormalizer(get_adapter("anthropic"))
        for event in normalizer.feed(chunk):
            ...
        for event in normalizer.flush():
            ...
    """

    def __init__(self, adapter: ProviderAdapter):
        self.adapter = adapter
        self.carry_over = b""
        self.bytes_received = 0
        self.records_parsed = 0
        self.finished = False  # Terminal sentinel seen; later bytes are ignored

    def feed(self, raw: bytes) -> list[NormalizedEvent]:
        """Consume a transport chunk and return the events it completes."""
        if self.finished:
            logger.debug("Ignoring %d byte(s) after the end of the %s stream", len(raw), self.adapter.vendor)
            return []
        self.bytes_received += len(raw)
        records, self.carry_over = self.adapter.parse_chunk(raw, self.carry_over)
        return self._interpret_all(records)

    def flush(self) -> list[NormalizedEvent]:
        """Drain whatever is buffered once the transport reports the end."""
        if self.finished or not self.carry_over:
            return []
        records, self.carry_over = self.adapter.parse_chunk(b"", self.carry_over, final=True)
        return self._interpret_all(records)

    @property
    def envelope_failed(self) -> bool:
        """Bytes arrived but not a single record could be parsed out of them."""
        return self.bytes_received > 0 and self.records_parsed == 0

    def _interpret_all(self, records: list[dict]) -> list[NormalizedEvent]:
        events: list[NormalizedEvent] = []
        for i, record in enumerate(records):
            if self.finished:
                logger.debug("Ignoring %d record(s) after the end of the stream", len(records) - i)
                break
            self.records_parsed += 1
            if record.get("type") == DONE_TYPE:
                self.finished = True
            try:
                interpreted = self.adapter.interpret_event(record)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Dropping %s record that could not be interpreted (%s): %.300r",
                    self.adapter.vendor,
                    e,
                    record,
                )
                continue
            if interpreted is None:
                continue
            if isinstance(interpreted, list):
                events.extend(interpreted)
            else:
                events.append(interpreted)
        return events
