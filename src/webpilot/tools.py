"""Tool registry contract.

Concrete browser tools live outside this package. A tool is any callable
``tool(target, timeout_ms)`` returning (or awaiting to) a ``ToolResult`` or a
``{"success", "data", "error"}`` mapping.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

ToolCallable = Callable[[str, int], "ToolResult | Mapping[str, Any] | Awaitable[Any]"]
ToolRegistry = Mapping[str, ToolCallable]


@dataclass(frozen=True, slots=True)
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None

    @property
    def url(self) -> str | None:
        if isinstance(self.data, Mapping):
            value = self.data.get("url")
            if isinstance(value, str) and value:
                return value
        return None

    @property
    def text(self) -> str | None:
        if isinstance(self.data, str):
            return self.data
        if isinstance(self.data, Mapping):
            for key in ("answer", "text", "content"):
                value = self.data.get(key)
                if isinstance(value, str) and value.strip():
                    return value
        return None


def coerce_tool_result(raw: Any) -> ToolResult:
    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, Mapping):
        error = raw.get("error")
        return ToolResult(
            success=bool(raw.get("success", error is None)),
            data=raw.get("data"),
            error=str(error) if error is not None else None,
        )
    if isinstance(raw, bool):
        return ToolResult(success=raw)
    return ToolResult(success=True, data=raw)


async def call_tool(tool: ToolCallable, target: str, timeout_ms: int) -> ToolResult:
    # Sync tools run off the event loop.
    if inspect.iscoroutinefunction(tool):
        outcome = await tool(target, timeout_ms)
    else:
        outcome = await asyncio.to_thread(tool, target, timeout_ms)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return coerce_tool_result(outcome)
