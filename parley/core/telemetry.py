"""
Structured telemetry for session execution.

Tracks streamed turns, tool calls, one-shot calls and errors as structured
events. Events are stored locally as JSONL for inspection.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class Span:
    """A timed span of execution (e.g., a streamed turn or a tool call)."""

    def __init__(
        self,
        name: str,
        span_type: str,
        metadata: dict[str, Any] | None = None,
    ):
        self.name = name
        self.span_type = span_type
        self.metadata = metadata or {}
        self.start_time = time.monotonic()
        self.start_ts = datetime.now(UTC)
        self.end_time: float | None = None
        self.status: str = "running"
        self.error: str | None = None

    def finish(self, status: str = "ok", error: str | None = None) -> None:
        self.end_time = time.monotonic()
        self.status = status
        self.error = error

    @property
    def duration_ms(self) -> float:
        end = self.end_time or time.monotonic()
        return (end - self.start_time) * 1000

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        d: dict[str, Any] = {
            "name": self.name,
            "type": self.span_type,
            "status": self.status,
            "started_at": self.start_ts.isoformat(),
            "duration_ms": round(self.duration_ms, 1),
        }
        if self.metadata:
            d["metadata"] = self.metadata
        if self.error:
            d["error"] = self.error
        return d


class TelemetryCollector:
    """
    Collects and stores telemetry events across sessions.

    Events are stored as JSONL in ~/.parley/telemetry/<session>.jsonl.
    """

    def __init__(self, base_dir: Path | None = None, enabled: bool = True):
        self.enabled = enabled
        if base_dir is None:
            base_dir = Path.home() / ".parley" / "telemetry"
        self._base_dir = base_dir
        self._lock = threading.Lock()

    def _log_path(self, session_id: str) -> Path:
        self._base_dir.mkdir(parents=True, exist_ok=True)
        return self._base_dir / f"{session_id}.jsonl"

    def _write_event(self, session_id: str, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            with self._lock, open(self._log_path(session_id), "a") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.debug("Could not write telemetry for %s: %s", session_id, e)

    def start_span(self, name: str, span_type: str, **metadata: Any) -> Span:
        return Span(name=name, span_type=span_type, metadata=metadata)

    def end_span(self, session_id: str, span: Span, status: str = "ok", error: str | None = None) -> None:
        span.finish(status=status, error=error)
        self._write_event(session_id, span.to_dict())

    def track_llm_call(
        self,
        session_id: str,
        model: str,
        vendor: str,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cost: float | None = None,
        duration_ms: float | None = None,
        stream: bool = True,
    ) -> None:
        """Record one request to a vendor."""
        event: dict[str, Any] = {
            "type": "llm_call",
            "model": model,
            "vendor": vendor,
            "stream": stream,
            "ts": datetime.now(UTC).isoformat(),
        }
        if input_tokens is not None:
            event["input_tokens"] = input_tokens
        if output_tokens is not None:
            event["output_tokens"] = output_tokens
        if cost is not None:
            event["cost"] = cost
        if duration_ms is not None:
            event["duration_ms"] = round(duration_ms, 1)
        self._write_event(session_id, event)

    def track_tool_call(
        self,
        session_id: str,
        tool_name: str,
        duration_ms: float,
        ok: bool,
        error: str | None = None,
    ) -> None:
        event: dict[str, Any] = {
            "type": "tool_call",
            "tool": tool_name,
            "ok": ok,
            "duration_ms": round(duration_ms, 1),
            "ts": datetime.now(UTC).isoformat(),
        }
        if error:
            event["error"] = error
        self._write_event(session_id, event)

    def track_error(
        self,
        session_id: str,
        error_type: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        event: dict[str, Any] = {
            "type": "error",
            "error_type": error_type,
            "message": message,
            "ts": datetime.now(UTC).isoformat(),
        }
        if context:
            event["context"] = context
        self._write_event(session_id, event)

    def get_summary(self, session_id: str) -> dict[str, Any]:
        """Summarize what was recorded for one session."""
        log_path = self._base_dir / f"{session_id}.jsonl"
        summary: dict[str, Any] = {
            "turns": 0,
            "tool_calls": 0,
            "llm_calls": 0,
            "errors": 0,
            "total_tokens": 0,
            "total_cost": 0.0,
            "total_tool_time_ms": 0.0,
        }
        if not log_path.exists():
            return summary

        try:
            with open(log_path) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    event = json.loads(line)
                    etype = event.get("type")
                    if etype == "turn":
                        summary["turns"] += 1
                    elif etype == "tool_call":
                        summary["tool_calls"] += 1
                        summary["total_tool_time_ms"] += event.get("duration_ms", 0)
                    elif etype == "llm_call":
                        summary["llm_calls"] += 1
                        summary["total_tokens"] += event.get("input_tokens", 0) + event.get("output_tokens", 0)
                        summary["total_cost"] += event.get("cost", 0.0)
                    elif etype == "error":
                        summary["errors"] += 1
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Telemetry log %s is unreadable: %s", log_path, e)

        summary["total_tool_time_ms"] = round(summary["total_tool_time_ms"], 1)
        summary["total_cost"] = round(summary["total_cost"], 6)
        return summary
