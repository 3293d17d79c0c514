"""
Monthly usage ledger.

Every priced call is appended to ~/.parley/usage/<YYYY-MM>.json. The running
monthly total drives the budget gate in front of each send.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from parley.models.usage import UsageSnapshot

logger = logging.getLogger(__name__)

NEAR_BUDGET_RATIO = 0.8


def _month_key(when: datetime | None = None) -> str:
    return (when or datetime.now(UTC)).strftime("%Y-%m")


class UsageLedger:
    """
    Records per-call usage grouped by month and feature.

    Args:
        base_dir: Storage directory (default: ~/.parley/usage)
        monthly_limit: Spend limit in USD, or None for no limit
    """

    def __init__(self, base_dir: Path | None = None, monthly_limit: float | None = None):
        if base_dir is None:
            base_dir = Path.home() / ".parley" / "usage"
        self.base_dir = base_dir
        self.monthly_limit = monthly_limit
        self._lock = threading.Lock()

    def _month_path(self, month: str) -> Path:
        return self.base_dir / f"{month}.json"

    def _load(self, month: str) -> list[dict[str, Any]]:
        path = self._month_path(month)
        if not path.exists():
            return []
        try:
            with open(path) as f:
                entries = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Usage ledger %s is unreadable: %s", path, e)
            return []
        return entries if isinstance(entries, list) else []

    def record(
        self,
        usage: UsageSnapshot,
        feature: str,
        vendor: str,
        model: str,
        session_id: str | None = None,
    ) -> None:
        """Append one call to the current month."""
        if usage.is_empty:
            return
        month = _month_key()
        entry = {
            "ts": datetime.now(UTC).isoformat(),
            "feature": feature,
            "vendor": vendor,
            "model": model,
            "session_id": session_id,
            **usage.model_dump(),
        }
        with self._lock:
            entries = self._load(month)
            entries.append(entry)
            self.base_dir.mkdir(parents=True, exist_ok=True)
            with open(self._month_path(month), "w") as f:
                json.dump(entries, f)
        logger.debug("Recorded %s usage for %s: $%.6f", feature, model, usage.cost)

    def month_total(self, month: str | None = None) -> float:
        """Total spend in USD for a month (default: the current one)."""
        entries = self._load(month or _month_key())
        return round(sum(e.get("cost", 0.0) for e in entries), 6)

    def is_over_budget(self) -> bool:
        if not self.monthly_limit:
            return False
        return self.month_total() >= self.monthly_limit

    def is_near_budget(self) -> bool:
        if not self.monthly_limit:
            return False
        return self.month_total() >= self.monthly_limit * NEAR_BUDGET_RATIO

    def summary(self, month: str | None = None) -> dict[str, Any]:
        """Per-feature and per-model cost breakdown for a month."""
        month = month or _month_key()
        entries = self._load(month)
        by_feature: dict[str, float] = {}
        by_model: dict[str, float] = {}
        tokens = 0
        for e in entries:
            cost = e.get("cost", 0.0)
            by_feature[e.get("feature", "unknown")] = by_feature.get(e.get("feature", "unknown"), 0.0) + cost
            by_model[e.get("model", "unknown")] = by_model.get(e.get("model", "unknown"), 0.0) + cost
            tokens += e.get("total", 0)

        return {
            "month": month,
            "calls": len(entries),
            "total_tokens": tokens,
            "total_cost": round(sum(by_feature.values()), 6),
            "limit": self.monthly_limit,
            "by_feature": {k: round(v, 6) for k, v in by_feature.items()},
            "by_model": {k: round(v, 6) for k, v in by_model.items()},
        }
