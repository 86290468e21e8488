"""Web search tool powered by the Brave Search API."""

import os
import re
from typing import Any

import httpx

from helmsman import __version__
from helmsman.config import get_config
from helmsman.logging import get_logger
from helmsman.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def _clean_text(value: str, max_chars: int = 500) -> str:
    """Normalize whitespace and bound output size."""
    cleaned = re.sub(r"\s+", " ", value or "").strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "... [truncated]"


class WebSearchTool(Tool):
    """Search the web using the Brave Search API."""

    name = "web_search"
    description = "Search the web and return ranked results with titles, links, and snippets."
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query text",
            },
            "count": {
                "type": "integer",
                "description": "Maximum results to return (max 20)",
            },
            "offset": {
                "type": "integer",
                "description": "Result offset for pagination",
                "default": 0,
            },
            "freshness": {
                "type": "string",
                "description": "Freshness filter: past day, week, month or year",
                "enum": ["pd", "pw", "pm", "py"],
            },
        },
        "required": ["query"],
    }

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": f"Helmsman/{__version__} (web_search)"},
        )

    async def execute(
        self,
        query: str,
        count: int | None = None,
        offset: int = 0,
        freshness: str = "",
        **kwargs: Any,
    ) -> ToolResult:
        q = (query or "").strip()
        if not q:
            return ToolResult(success=False, error="Query must not be empty")

        search_cfg = get_config().tools.web_search
        if search_cfg.provider.strip().lower() != "brave":
            return ToolResult(success=False, error=f"Unsupported web_search provider: {search_cfg.provider}")

        api_key = search_cfg.api_key.strip() or os.environ.get("BRAVE_API_KEY", "").strip()
        if not api_key:
            return ToolResult(
                success=False,
                error="Missing Brave API key. Set tools.web_search.api_key or BRAVE_API_KEY.",
            )

        effective_count = min(max(search_cfg.max_results if count is None else int(count), 1), 20)
        safesearch = search_cfg.safesearch if search_cfg.safesearch in {"off", "moderate", "strict"} else "moderate"
        params: dict[str, Any] = {
            "q": q,
            "count": effective_count,
            "offset": max(0, int(offset)),
            "safesearch": safesearch,
        }
        if freshness:
            params["freshness"] = freshness

        try:
            response = await self.client.get(
                search_cfg.base_url,
                params=params,
                headers={"Accept": "application/json", "X-Subscription-Token": api_key},
                timeout=float(search_cfg.timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"HTTP {e.response.status_code}"
            body = _clean_text(e.response.text or "", max_chars=300)
            if body:
                detail = f"{detail}: {body}"
            log.error("Web search failed", query=q, error=detail)
            return ToolResult(success=False, error=detail)
        except (httpx.HTTPError, ValueError) as e:
            log.error("Web search failed", query=q, error=str(e))
            return ToolResult(success=False, error=str(e))

        web_block = payload.get("web", {}) if isinstance(payload, dict) else {}
        results = web_block.get("results", []) if isinstance(web_block, dict) else []
        if not isinstance(results, list):
            results = []

        lines = [f"[QUERY: {q}]", f"[RESULTS: {len(results)}]", ""]
        if not results:
            lines.append("No results found.")
        for idx, item in enumerate(results, start=1):
            if not isinstance(item, dict):
                continue
            lines.append(f"{idx}. {_clean_text(str(item.get('title') or 'Untitled'), max_chars=180)}")
            lines.append(f"   URL: {str(item.get('url') or '-').strip()}")
            lines.append(f"   Snippet: {_clean_text(str(item.get('description') or '')) or '-'}")
            lines.append("")
        return ToolResult(success=True, content="\n".join(lines).strip())

    async def close(self) -> None:
        await self.client.aclose()
