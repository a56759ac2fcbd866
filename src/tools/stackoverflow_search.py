"""Stack Overflow question search via the StackExchange API."""

import re
from typing import Any

import httpx

from src.models import ToolMetadata, ToolParameter, ToolResult
from src.tools.base import BaseTool, fetch_json

_SEARCH_URL = "https://api.stackexchange.com/2.3/search/advanced"
_TAG_RE = re.compile(r"<[^>]*>")


class StackOverflowSearchTool(BaseTool):
    name = "stackoverflow_search"
    description = "Search Stack Overflow for known pitfalls, error messages and best practices."
    source = "stackoverflow"
    parameters = (
        ToolParameter("query", "string", "Error message, technical question, or technology", required=True),
        ToolParameter("tags", "string", "Tag filter separated by ';', e.g. 'python;django'"),
        ToolParameter("sort", "string", "Sort by: relevance, votes, activity, creation", default="votes"),
    )

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        query_params = {
            "order": "desc",
            "sort": params["sort"],
            "q": params["query"],
            "site": "stackoverflow",
            "pagesize": 10,
            "filter": "withbody",
        }
        if params.get("tags"):
            query_params["tagged"] = params["tags"]

        data = await fetch_json(self._client, self.name, "GET", _SEARCH_URL, params=query_params)

        results = [
            {
                "title": item.get("title"),
                "link": item.get("link"),
                "score": item.get("score", 0),
                "answer_count": item.get("answer_count", 0),
                "is_answered": item.get("is_answered", False),
                "accepted": bool(item.get("accepted_answer_id")),
                "tags": item.get("tags", []),
                "excerpt": _TAG_RE.sub("", item.get("body", ""))[:300],
            }
            for item in data.get("items", [])[:5]
        ]
        return ToolResult(
            success=True,
            data={"query": params["query"], "results_count": len(results), "results": results},
            metadata=ToolMetadata(cost=0.0, source=self.source),
        )
