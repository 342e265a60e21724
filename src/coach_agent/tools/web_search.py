"""
Web search tool using Tavily.
"""

import httpx
import structlog

from .base import Tool, ToolParameter, ToolResult

logger = structlog.get_logger()

TAVILY_SEARCH_URL = "https://api.tavily.com/search"


class TavilySearch:
    """Thin async client for the Tavily search API."""

    def __init__(self, api_key: str, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self.api_key = api_key
        self._client = client
        self.timeout = timeout

    async def _post(self, payload: dict) -> dict:
        if self._client is not None:
            response = await self._client.post(TAVILY_SEARCH_URL, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

        async with httpx.AsyncClient() as client:
            response = await client.post(TAVILY_SEARCH_URL, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

    async def search(self, user_id: str | None, query: str, max_results: int = 5) -> ToolResult:
        """Execute web search."""
        if not query or not query.strip():
            return ToolResult(success=False, error="A non-empty 'query' argument is required.")

        try:
            data = await self._post({
                "api_key": self.api_key,
                "query": query,
                "max_results": max_results,
                "search_depth": "basic",
                "include_answer": True,
                "topic": "general",
            })
        except httpx.HTTPError as e:
            logger.error("Web search error", user_id=user_id, error=str(e))
            return ToolResult(success=False, error="Failed to perform search.")

        results = []
        if data.get("answer"):
            results.append(f"**Summary:** {data['answer']}\n")

        for result in data.get("results", [])[:max_results]:
            results.append(
                f"**{result.get('title', '')}**\n"
                f"URL: {result.get('url', '')}\n"
                f"{result.get('content', '')[:500]}\n"
            )

        output = "\n---\n".join(results) if results else "No results found."

        return ToolResult(
            success=True,
            output=output,
        )


def create_web_search_tool(user_id: str, search: TavilySearch) -> Tool:
    """Web search tool bound to one user."""
    return Tool(
        name="web_search",
        description=(
            "Search the web for up-to-date information (news, events, facts not in your "
            "training data). Always provide a non-empty 'query'."
        ),
        parameters=(
            ToolParameter(
                name="query",
                param_type="string",
                description="The search query",
            ),
            ToolParameter(
                name="max_results",
                param_type="integer",
                description="Maximum number of results to return (default: 5)",
                required=False,
                default=5,
            ),
        ),
        handler=search.search,
        user_id=user_id,
    )
