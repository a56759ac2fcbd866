"""Exa neural web search."""

import logging
import os
from typing import Any

import httpx

from src.errors import ToolExecutionError
from src.models import ToolMetadata, ToolParameter, ToolResult
from src.tools.base import BaseTool, fetch_json

logger = logging.getLogger(__name__)

_EXA_URL = "https://api.exa.ai/search"
_COST_PER_SEARCH = 0.01
_MAX_RESULTS = 20


class WebSearchTool(BaseTool):
    name = "web_search"
    description = "Search the web for current information. Use it to verify technology recommendations are up to date."
    source = "exa"
    parameters = (
        ToolParameter("query", "string", "Search query, be specific about what you need to find", required=True),
        ToolParameter("num_results", "number", "Number of results to return (1-20)", default=8),
    )

    def __init__(self, client: httpx.AsyncClient, api_key_env: str = "EXA_API_KEY") -> None:
        self._client = client
        self._api_key_env = api_key_env

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        api_key = os.environ.get(self._api_key_env, "").strip()
        if not api_key:
            raise ToolExecutionError(self.name, f"{self._api_key_env} not configured")

        query = params["query"]
        data = await fetch_json(
            self._client,
            self.name,
            "POST",
            _EXA_URL,
            headers={"Authorization": f"Bearer {api_key}"},
            json={
                "query": query,
                "type": "neural",
                "useAutoprompt": True,
                "numResults": min(int(params["num_results"]), _MAX_RESULTS),
            },
        )

        results = [
            {
                "title": r.get("title"),
                "url": r.get("url"),
                "snippet": r.get("text") or r.get("snippet"),
                "published_date": r.get("publishedDate"),
                "score": r.get("score"),
            }
            for r in data.get("results", [])
        ]
        logger.debug("Exa returned %d results for %r", len(results), query)
        return ToolResult(
            success=True,
            data={"results": results, "query": query, "total_results": len(results)},
            metadata=ToolMetadata(cost=_COST_PER_SEARCH, source=self.source),
        )
