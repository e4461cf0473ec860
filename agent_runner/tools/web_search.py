"""google_search 工具：调用 Google Custom Search JSON API。

需要同时配置 GOOGLE_SEARCH_API_KEY 与 GOOGLE_SEARCH_ENGINE_ID，否则工具不可用。
"""

from typing import Any, Dict, List

import httpx
from pydantic import BaseModel, Field

from agent_runner.config.settings import settings
from agent_runner.domain.exceptions import ExecutionFailed
from agent_runner.infrastructure.logging.logger import logger
from .base import Tool

SEARCH_RESULT_COUNT = 5
SEARCH_TIMEOUT = 10.0


class GoogleSearchArgs(BaseModel):
    query: str = Field(..., min_length=1, description="Search query")


class GoogleSearchTool(Tool):
    name = "google_search"
    description = "Search the web with Google and return the top results as a Markdown list."
    args_model = GoogleSearchArgs

    def __init__(self, cfg=settings, enabled: bool = True):
        super().__init__(enabled=enabled)
        self._settings = cfg

    def is_available(self) -> bool:
        return bool(self._settings.google_search_api_key and self._settings.google_search_engine_id)

    async def run(self, args: GoogleSearchArgs) -> str:
        if not self.is_available():
            raise ExecutionFailed("Google Search is not configured")
        params = {
            "key": self._settings.google_search_api_key,
            "cx": self._settings.google_search_engine_id,
            "q": args.query,
            "num": SEARCH_RESULT_COUNT,
        }
        try:
            async with httpx.AsyncClient(timeout=SEARCH_TIMEOUT, trust_env=False) as client:
                resp = await client.get(self._settings.google_search_base_url, params=params)
        except httpx.RequestError as e:
            raise ExecutionFailed(f"Search request failed: {e}") from e

        if resp.status_code == 403:
            raise ExecutionFailed("Google Search API access denied. Check the API key and search engine ID.")
        if resp.status_code == 429:
            raise ExecutionFailed("Google Search API quota exceeded. Try again later.")
        if resp.status_code >= 400:
            raise ExecutionFailed(f"Google Search API returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ExecutionFailed("Invalid response from Google Search API") from e

        items = data.get("items") or []
        logger.info("Google search finished", extra={"extra": {"query": args.query, "results": len(items)}})
        return format_results(args.query, items)


def format_results(query: str, items: List[Dict[str, Any]]) -> str:
    if not items:
        return f"No search results found for '{query}'."
    lines = ["🔍 **Search Results:**", ""]
    for i, item in enumerate(items, start=1):
        title = item.get("title") or "Untitled"
        link = item.get("link") or ""
        snippet = (item.get("snippet") or "").replace("\n", " ").strip()
        lines.append(f"{i}. **[{title}]({link})**")
        if snippet:
            lines.append(f"   {snippet}")
        lines.append("")
    return "\n".join(lines).rstrip()
