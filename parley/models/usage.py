"""
Token usage snapshot shared by every vendor.

Vendors report usage as partial, overlapping counters. Two combination rules
apply and must not be confused:

- ``merge``: per-field maximum, for successive cumulative snapshots of the
  same turn (an initial estimate followed by the final count).
- ``add``: per-field sum, for separate turns of the same tool loop.
"""

from pydantic import BaseModel

COUNTER_FIELDS = (
    "input_cache_miss",
    "input_cache_hit",
    "input_cache_write",
    "input_total",
    "output",
    "thinking",
    "total",
)


class UsageSnapshot(BaseModel):
    """Normalized token counters for one turn (or a sum of turns)."""

    input_cache_miss: int = 0
    input_cache_hit: int = 0
    input_cache_write: int = 0
    input_total: int = 0
    output: int = 0
    thinking: int = 0  # Informational subset of output
    total: int = 0
    cost: float = 0.0

    def merge(self, other: "UsageSnapshot") -> "UsageSnapshot":
        """Combine two cumulative snapshots of the same turn (field-wise max)."""
        values = {name: max(getattr(self, name), getattr(other, name)) for name in COUNTER_FIELDS}
        # A partial snapshot may report input and output in separate records
        values["total"] = max(values["total"], values["input_total"] + values["output"])
        return UsageSnapshot(**values, cost=max(self.cost, other.cost))

    def add(self, other: "UsageSnapshot") -> "UsageSnapshot":
        """Combine snapshots of separate turns (field-wise sum)."""
        values = {name: getattr(self, name) + getattr(other, name) for name in COUNTER_FIELDS}
        return UsageSnapshot(**values, cost=round(self.cost + other.cost, 6))

    def since(self, earlier: "UsageSnapshot") -> "UsageSnapshot":
        """What this cumulative snapshot adds over an earlier one of the same turn."""
        values = {name: max(getattr(self, name) - getattr(earlier, name), 0) for name in COUNTER_FIELDS}
        return UsageSnapshot(**values, cost=round(max(self.cost - earlier.cost, 0.0), 6))

    @property
    def is_empty(self) -> bool:
        return self.total == 0 and self.input_total == 0 and self.output == 0
