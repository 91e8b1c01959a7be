from __future__ import annotations

import asyncio
import logging
from importlib.metadata import entry_points
from typing import Any

from agentchat.errors import ToolExecutionError
from agentchat.tools.base import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self, timeout: float | None = 30.0):
        self._tools: dict[str, Tool] = {}
        self.timeout = timeout

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def list_schemas(self) -> list[dict]:
        return [t.to_openai_schema() for t in self.list()]

    async def execute(self, name: str, arguments: dict) -> Any:
        """Run one tool.  Every failure surfaces as ``ToolExecutionError``."""
        tool = self.get(name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {name}", details={"tool": name})

        problem = tool.check_arguments(arguments)
        if problem is not None:
            raise ToolExecutionError(
                f"Invalid arguments for {name}: {problem}", details={"tool": name}
            )

        try:
            if self.timeout:
                return await asyncio.wait_for(tool.execute(**arguments), timeout=self.timeout)
            return await tool.execute(**arguments)
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(
                f"{name} timed out after {self.timeout}s", details={"tool": name}
            ) from exc
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(str(exc) or type(exc).__name__, details={"tool": name}) from exc

    def load_plugins(
        self,
        *,
        enabled: bool,
        group: str = "agentchat.tools",
        allow_tools: set[str] | None = None,
    ) -> int:
        """Register tools advertised through entry points."""
        if not enabled:
            return 0
        loaded = 0
        for ep in entry_points(group=group):
            if allow_tools and ep.name not in allow_tools:
                continue
            tool_cls = ep.load()
            self.register(tool_cls())
            logger.info("Loaded tool plugin %s from %s", ep.name, ep.value)
            loaded += 1
        return loaded
