"""Web fetch tool for retrieving web page content."""

import re
from typing import Any
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from helmsman import __version__
from helmsman.config import get_config
from helmsman.logging import get_logger
from helmsman.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def extract_readable_text(html: str, base_url: str | None = None) -> str:
    """Extract human-readable text from raw HTML, keeping link targets inline."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
        tag.decompose()

    for anchor in soup.find_all("a"):
        href = (anchor.get("href") or "").strip()
        if not href:
            continue
        label = anchor.get_text(" ", strip=True)
        absolute = urljoin(base_url, href) if base_url else href
        anchor.replace_with(f"{label} ({absolute})" if label else absolute)

    title = soup.title.string.strip() if soup.title and soup.title.string else ""
    lines = [
        cleaned
        for line in soup.get_text(separator="\n").splitlines()
        if (cleaned := re.sub(r"\s+", " ", line).strip())
    ]
    text = "\n".join(lines)
    if title and not text.startswith(title):
        return f"{title}\n\n{text}" if text else title
    return text


class WebFetchTool(Tool):
    """Fetch web page content."""

    name = "web_fetch"
    description = "Fetch a URL and return its readable text content."
    timeout_seconds = 45.0
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "URL to fetch (http or https)",
            },
            "max_chars": {
                "type": "integer",
                "description": "Maximum characters to return (default from config)",
            },
        },
        "required": ["url"],
    }

    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client or httpx.AsyncClient(
            timeout=30.0,
            follow_redirects=True,
            headers={"User-Agent": f"Helmsman/{__version__} (web_fetch)"},
        )

    async def execute(self, url: str, max_chars: int | None = None, **kwargs: Any) -> ToolResult:
        if not url.lower().startswith(("http://", "https://")):
            return ToolResult(success=False, error=f"Unsupported URL scheme: {url}")

        configured_max = get_config().tools.web_fetch.max_chars
        limit = max(1, configured_max if max_chars is None else int(max_chars))

        try:
            log.info("Fetching URL", url=url)
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return ToolResult(success=False, error=f"HTTP {e.response.status_code} for {url}")
        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=url, error=str(e))
            return ToolResult(success=False, error=f"HTTP error: {e}")

        content_type = response.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            text = extract_readable_text(response.text, base_url=str(response.url))
        else:
            text = response.text
        if len(text) > limit:
            text = text[:limit] + "\n... [truncated]"

        header = f"[URL: {response.url}]\n[Status: {response.status_code}]\n[Size: {len(response.text)} chars]\n\n"
        return ToolResult(success=True, content=header + text)

    async def close(self) -> None:
        await self.client.aclose()
