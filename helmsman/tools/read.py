"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from helmsman.logging import get_logger
from helmsman.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_FILE_BYTES = 100_000


def resolve_workspace_path(path: str, workspace: Path | str | None) -> Path:
    """Resolve a tool path argument relative to the workspace directory."""
    requested = Path(path).expanduser()
    if not requested.is_absolute() and workspace:
        requested = Path(workspace) / requested
    return requested.resolve()


class ReadTool(Tool):
    """Read file contents."""

    name = "read"
    description = "Read the contents of a text file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "integer",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, limit: int | None = None, offset: int | None = None, **kwargs: Any) -> ToolResult:
        file_path = resolve_workspace_path(path, kwargs.get("_workspace"))

        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {path}")

        file_size = file_path.stat().st_size
        if file_size > MAX_FILE_BYTES:
            return ToolResult(
                success=False,
                error=f"File too large: {file_size} bytes (max {MAX_FILE_BYTES}); use offset/limit with shell tools",
            )

        try:
            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except UnicodeDecodeError:
            return ToolResult(success=False, error=f"Not a UTF-8 text file: {path}")
        except OSError as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        lines = content.splitlines()
        total = len(lines)
        start = max(1, int(offset or 1))
        selected = lines[start - 1:]
        if limit:
            selected = selected[: int(limit)]

        info = f"[{file_path} {total} lines]"
        if offset or limit:
            info += f" [lines {start}-{start + len(selected) - 1}]"
        return ToolResult(success=True, content=f"{info}\n" + "\n".join(selected))
