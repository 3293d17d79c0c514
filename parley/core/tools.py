"""
Tool execution seam.

The engine never knows what a tool does. It hands a name and parsed input to
a ToolExecutor and gets back output text plus a success flag.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    output: str
    ok: bool = True


class ToolExecutor(ABC):
    @abstractmethod
    def execute(self, name: str, tool_input: dict[str, Any]) -> ToolOutcome:
        """Run one tool. Implementations report failures in the outcome, not by raising."""
        ...


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class FunctionToolExecutor(ToolExecutor):
    """
    Maps tool names to plain Python callables.

    Each callable receives the tool input as keyword arguments. Return values
    that are not strings are JSON-encoded; exceptions become error outcomes.

    Example:
        executor = FunctionToolExecutor({"read_file": lambda path: open(path).read()})
    """

    def __init__(self, functions: dict[str, Callable[..., Any]] | None = None):
        self.functions: dict[str, Callable[..., Any]] = dict(functions or {})

    def register(self, name: str, func: Callable[..., Any]) -> None:
        self.functions[name] = func

    def execute(self, name: str, tool_input: dict[str, Any]) -> ToolOutcome:
        func = self.functions.get(name)
        if func is None:
            return ToolOutcome(f"Unknown tool: {name}", ok=False)
        try:
            result = func(**tool_input)
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolOutcome(f"{type(e).__name__}: {e}", ok=False)
        return ToolOutcome(_to_text(result))
