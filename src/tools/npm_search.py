"""npm registry package search."""

from typing import Any

import httpx

from src.models import ToolMetadata, ToolParameter, ToolResult
from src.tools.base import BaseTool, fetch_json

_NPM_SEARCH_URL = "https://registry.npmjs.org/-/v1/search"


class NpmSearchTool(BaseTool):
    name = "npm_search"
    description = "Search the npm registry for JavaScript packages and compare their quality scores."
    source = "npm"
    parameters = (
        ToolParameter("query", "string", "Package search text", required=True),
        ToolParameter("size", "number", "Number of packages to return (max 20)", default=10),
    )

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        data = await fetch_json(
            self._client,
            self.name,
            "GET",
            _NPM_SEARCH_URL,
            params={"text": params["query"], "size": min(int(params["size"]), 20)},
        )

        packages = []
        for item in data.get("objects", []):
            pkg = item.get("package", {})
            detail = item.get("score", {}).get("detail", {})
            packages.append(
                {
                    "name": pkg.get("name"),
                    "description": pkg.get("description") or "No description",
                    "version": pkg.get("version"),
                    "url": f"https://www.npmjs.com/package/{pkg.get('name')}",
                    "quality": detail.get("quality", 0),
                    "maintenance": detail.get("maintenance", 0),
                    "score": item.get("score", {}).get("final", 0),
                }
            )
        packages.sort(key=lambda p: p["score"], reverse=True)

        return ToolResult(
            success=True,
            data={"packages": packages, "total_count": data.get("total", 0), "query": params["query"]},
            metadata=ToolMetadata(cost=0.0, source=self.source),
        )
