"""Shell tool for executing commands."""

import asyncio
import os
from typing import Any

from helmsman.cancellation import CancellationToken
from helmsman.config import get_config
from helmsman.logging import get_logger
from helmsman.tools.policy import extract_shell_base_commands
from helmsman.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 10000


class ShellTool(Tool):
    """Execute shell commands."""

    name = "shell"
    description = "Execute a shell command in the workspace and return its output."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self):
        self.config = get_config()
        self.timeout_seconds = float(self.config.tools.shell.timeout or 30) + 5.0

    def _check_allowed_commands(self, command: str) -> str | None:
        """Return a refusal reason when an allow-list is configured and not met."""
        allowed = {item.strip() for item in self.config.tools.shell.allowed_commands if item.strip()}
        if not allowed:
            return None
        base_commands = extract_shell_base_commands(command)
        if not base_commands:
            return "Command is not parseable"
        for base_cmd in base_commands:
            if base_cmd not in allowed and base_cmd.split("/")[-1] not in allowed:
                return f"Command not in allowed list: {base_cmd}"
        return None

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()

    @classmethod
    async def _stop(cls, process: asyncio.subprocess.Process, communicate_task: asyncio.Task[Any]) -> None:
        """Kill the process and wait for its pipes to close."""
        await cls._kill(process)
        communicate_task.cancel()
        try:
            await communicate_task
        except asyncio.CancelledError:
            pass

    async def execute(self, command: str, timeout: int | None = None, **kwargs: Any) -> ToolResult:
        """Run ``command`` with ``/bin/sh`` inside the workspace directory."""
        refusal = self._check_allowed_commands(command)
        if refusal:
            log.warning("Refused shell command", command=command, reason=refusal)
            return ToolResult(success=False, error=f"Command blocked: {refusal}")

        if timeout is None:
            timeout = self.config.tools.shell.timeout
        timeout = max(1, int(timeout))

        token = kwargs.get("_cancel_token")
        if isinstance(token, CancellationToken) and token.cancelled:
            return ToolResult(success=False, error="Command aborted")

        cwd = kwargs.get("_workspace") or None
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=command, timeout=timeout)
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=env,
        )

        communicate_task = asyncio.create_task(process.communicate())
        wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
        token_task: asyncio.Task[str] | None = None
        if isinstance(token, CancellationToken):
            token_task = asyncio.create_task(token.wait())
            wait_tasks.add(token_task)
        try:
            done, _ = await asyncio.wait(wait_tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if communicate_task not in done:
                await self._stop(process, communicate_task)
                if token_task is not None and token_task in done:
                    return ToolResult(success=False, error="Command aborted")
                return ToolResult(success=False, error=f"Command timed out after {timeout}s")
            stdout, stderr = communicate_task.result()
        except asyncio.CancelledError:
            await self._stop(process, communicate_task)
            raise
        finally:
            if token_task is not None and not token_task.done():
                token_task.cancel()
                try:
                    await token_task
                except asyncio.CancelledError:
                    pass

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"

        if process.returncode != 0:
            return ToolResult(
                success=False,
                content=output,
                error=f"Exit code {process.returncode}\n{output or '[no output]'}",
            )
        return ToolResult(success=True, content=output or "[no output]")
