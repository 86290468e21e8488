"""Write tool for writing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from helmsman.logging import get_logger
from helmsman.tools.read import resolve_workspace_path
from helmsman.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class WriteTool(Tool):
    """Write content to files inside the workspace."""

    name = "write"
    description = "Create or overwrite a file in the workspace with the given content."
    requires_confirmation = True
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "Append to file instead of overwriting",
                "default": False,
            },
        },
        "required": ["path", "content"],
    }

    @staticmethod
    def _inside_workspace(file_path: Path, workspace: Path | str | None) -> bool:
        if not workspace:
            return True
        try:
            file_path.relative_to(Path(workspace).resolve())
        except ValueError:
            return False
        return True

    @staticmethod
    def _write(file_path: Path, content: str, append: bool) -> None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "a" if append else "w", encoding="utf-8") as f:
            f.write(content)

    async def execute(self, path: str, content: str, append: bool = False, **kwargs: Any) -> ToolResult:
        workspace = kwargs.get("_workspace")
        file_path = resolve_workspace_path(path, workspace)
        if not self._inside_workspace(file_path, workspace):
            return ToolResult(success=False, error=f"Refusing to write outside the workspace: {path}")

        try:
            await asyncio.to_thread(self._write, file_path, content, append)
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        verb = "Appended" if append else "Wrote"
        return ToolResult(success=True, content=f"{verb} {len(content)} chars to {file_path}")
