"""Tool registry: lookup, validation, and bounded concurrent dispatch.

dispatch never raises. Unknown tools, bad parameters, timeouts and tool
exceptions all come back as ToolResult(success=False) with metadata filled.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any

import httpx

from config.config_loader import ToolsConfig
from src.models import ToolMetadata, ToolResult
from src.tools.base import BaseTool

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SEC = 15.0


class ToolRegistry:
    """Holds tools by name and dispatches calls to them."""

    def __init__(self, default_timeout: float = _DEFAULT_TIMEOUT_SEC) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._default_timeout = default_timeout

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %s already registered, replacing", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> str:
        """Prompt-ready description of every registered tool."""
        return "\n\n".join(self._tools[n].to_prompt_string() for n in self.names())

    async def dispatch(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Validate and run one tool call.

        Args:
            name: Registered tool name.
            params: Tool parameters; defaults fill in missing optional ones.
            timeout: Seconds before the call is abandoned. Registry default
                when None.

        Returns:
            ToolResult. Failed results carry an error string and zero cost.
        """
        params = params or {}
        tool = self._tools.get(name)
        if tool is None:
            available = ", ".join(self.names()) or "none"
            return ToolResult(
                success=False,
                error=f"Tool not found: {name}. Available tools: {available}",
                metadata=ToolMetadata(source=name),
            )

        errors = tool.validate(params)
        if errors:
            logger.debug("Tool %s rejected params: %s", name, errors)
            return ToolResult(
                success=False,
                error="; ".join(errors),
                metadata=ToolMetadata(source=tool.source),
            )

        limit = timeout if timeout is not None else self._default_timeout
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(tool.execute(tool.with_defaults(params)), timeout=limit)
        except TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", name, limit)
            return self._failed(tool, f"Tool {name} timed out after {limit:g}s", start)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return self._failed(tool, str(exc) or type(exc).__name__, start)

        elapsed = time.monotonic() - start
        metadata = replace(
            result.metadata,
            duration=elapsed,
            source=result.metadata.source or tool.source,
            cost=result.metadata.cost if result.success else 0.0,
        )
        return replace(result, metadata=metadata)

    @staticmethod
    def _failed(tool: BaseTool, error: str, start: float) -> ToolResult:
        return ToolResult(
            success=False,
            error=error,
            metadata=ToolMetadata(duration=time.monotonic() - start, cost=0.0, source=tool.source),
        )

    async def dispatch_many(
        self,
        calls: list[tuple[str, dict[str, Any]]],
        max_concurrency: int = 5,
        timeout: float | None = None,
    ) -> list[ToolResult]:
        """Run calls concurrently, at most ``max_concurrency`` at a time.

        Results are returned in call order once all calls have settled.
        """
        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def _bounded(name: str, params: dict[str, Any]) -> ToolResult:
            async with semaphore:
                return await self.dispatch(name, params, timeout=timeout)

        return list(await asyncio.gather(*(_bounded(n, p) for n, p in calls)))


def build_default_registry(tools_config: ToolsConfig, client: httpx.AsyncClient) -> ToolRegistry:
    """Registry with the web, GitHub, npm and Stack Overflow search tools."""
    from src.tools.github_search import GitHubSearchTool
    from src.tools.npm_search import NpmSearchTool
    from src.tools.stackoverflow_search import StackOverflowSearchTool
    from src.tools.web_search import WebSearchTool

    registry = ToolRegistry(default_timeout=tools_config.timeout_sec)
    registry.register(WebSearchTool(client, api_key_env=tools_config.exa_api_key_env))
    registry.register(GitHubSearchTool(client, token_env=tools_config.github_token_env))
    registry.register(NpmSearchTool(client))
    registry.register(StackOverflowSearchTool(client))
    return registry
