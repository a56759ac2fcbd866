"""GitHub repository search."""

import os
from typing import Any

import httpx

from src.models import ToolMetadata, ToolParameter, ToolResult
from src.tools.base import BaseTool, fetch_json

_GITHUB_SEARCH_URL = "https://api.github.com/search/repositories"


class GitHubSearchTool(BaseTool):
    name = "github_search"
    description = "Search GitHub for open-source projects, libraries and frameworks relevant to the idea."
    source = "github"
    parameters = (
        ToolParameter("query", "string", "Search query, e.g. 'fitness tracking app'", required=True),
        ToolParameter("language", "string", "Programming language filter, e.g. 'python'"),
        ToolParameter("sort", "string", "Sort by: stars, updated, created", default="stars"),
    )

    def __init__(self, client: httpx.AsyncClient, token_env: str = "GITHUB_TOKEN") -> None:
        self._client = client
        self._token_env = token_env

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        search = params["query"]
        if params.get("language"):
            search += f" language:{params['language']}"

        headers = {"Accept": "application/vnd.github+json"}
        token = os.environ.get(self._token_env, "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        data = await fetch_json(
            self._client,
            self.name,
            "GET",
            _GITHUB_SEARCH_URL,
            params={"q": search, "sort": params["sort"], "per_page": 10},
            headers=headers,
        )

        repositories = [
            {
                "name": repo.get("full_name"),
                "description": repo.get("description") or "No description",
                "stars": repo.get("stargazers_count", 0),
                "url": repo.get("html_url"),
                "language": repo.get("language"),
                "last_updated": repo.get("updated_at"),
                "topics": repo.get("topics", []),
            }
            for repo in data.get("items", [])
            if not repo.get("archived")
        ]
        return ToolResult(
            success=True,
            data={"repositories": repositories, "total_count": data.get("total_count", 0), "query": search},
            metadata=ToolMetadata(cost=0.0, source=self.source),
        )
