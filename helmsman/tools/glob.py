"""Glob tool for finding files by pattern."""

import asyncio
import glob
from pathlib import Path
from typing import Any

from helmsman.logging import get_logger
from helmsman.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class GlobTool(Tool):
    """Find files by pattern."""

    name = "glob"
    description = "Find files matching a glob pattern."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Glob pattern (e.g., '**/*.py', 'src/**/*.ts')",
            },
            "root": {
                "type": "string",
                "description": "Root directory to search from (default: workspace)",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of results",
                "default": 100,
            },
        },
        "required": ["pattern"],
    }

    async def execute(
        self,
        pattern: str,
        root: str | None = None,
        limit: int = 100,
        **kwargs: Any,
    ) -> ToolResult:
        base = Path(root).expanduser() if root else Path(kwargs.get("_workspace") or Path.cwd())
        if not base.is_absolute() and kwargs.get("_workspace"):
            base = Path(kwargs["_workspace"]) / base

        try:
            matches = await asyncio.to_thread(
                glob.glob, pattern, root_dir=str(base), recursive=True
            )
        except OSError as e:
            log.error("Glob failed", pattern=pattern, error=str(e))
            return ToolResult(success=False, error=str(e))

        matches = sorted(matches)
        total = len(matches)
        matches = matches[: max(1, int(limit))]
        if not matches:
            return ToolResult(success=True, content=f"No files found matching: {pattern} (in {base})")

        output = f"Found {total} file(s) in {base}"
        if total > len(matches):
            output += f", showing first {len(matches)}"
        output += ":\n" + "\n".join(f"  {m}" for m in matches)
        return ToolResult(success=True, content=output)
