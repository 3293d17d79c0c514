"""
Tests for the telemetry collector.
"""

import json

from parley.core.telemetry import Span, TelemetryCollector


class TestSpan:
    def test_to_dict(self):
        span = Span("turn_0", "turn", {"model": "m"})
        span.finish(status="error", error="boom")
        data = span.to_dict()
        assert data["name"] == "turn_0"
        assert data["type"] == "turn"
        assert data["status"] == "error"
        assert data["error"] == "boom"
        assert data["metadata"] == {"model": "m"}
        assert data["duration_ms"] >= 0


class TestTelemetryCollector:
    def test_summary(self, telemetry):
        span = telemetry.start_span("turn_0", "turn", model="m")
        telemetry.end_span("s1", span)
        telemetry.track_llm_call("s1", "m", "anthropic", input_tokens=10, output_tokens=5, cost=0.25)
        telemetry.track_tool_call("s1", "read_file", 12.0, ok=True)
        telemetry.track_tool_call("s1", "write_file", 3.0, ok=False, error="denied")
        telemetry.track_error("s1", "rate_limit", "slow down")

        summary = telemetry.get_summary("s1")
        assert summary["turns"] == 1
        assert summary["llm_calls"] == 1
        assert summary["total_tokens"] == 15
        assert summary["total_cost"] == 0.25
        assert summary["tool_calls"] == 2
        assert summary["total_tool_time_ms"] == 15.0
        assert summary["errors"] == 1

    def test_jsonl_file(self, telemetry, temp_dir):
        telemetry.track_error("s2", "auth", "bad key", context={"model": "m"})
        lines = (temp_dir / "telemetry" / "s2.jsonl").read_text().splitlines()
        event = json.loads(lines[0])
        assert event["type"] == "error"
        assert event["context"] == {"model": "m"}

    def test_disabled(self, temp_dir):
        telemetry = TelemetryCollector(base_dir=temp_dir / "off", enabled=False)
        telemetry.track_error("s1", "auth", "bad key")
        assert not (temp_dir / "off").exists()
        assert telemetry.get_summary("s1")["errors"] == 0

    def test_unknown_session(self, telemetry):
        assert telemetry.get_summary("nobody")["llm_calls"] == 0
