"""Terminal UI built on rich."""

import asyncio
import json
from typing import Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

from helmsman.commands.models import CommandResult
from helmsman.orchestrator import ConfirmationDecision, ConfirmationRequest
from helmsman.tools.calls import ToolCallResult

_RESULT_PREVIEW_CHARS = 600

_CONFIRM_CHOICES = {
    "y": ConfirmationDecision.PROCEED_ONCE,
    "a": ConfirmationDecision.PROCEED_ALWAYS,
    "n": ConfirmationDecision.CANCEL,
}


class ConsoleUI:
    """Renders conversation output and asks the user to approve tool calls."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._confirm_lock = asyncio.Lock()

    def print_welcome(self, model: str, tools: int, plugins: int) -> None:
        self.console.print(
            Panel.fit(
                f"[bold]Helmsman[/bold]  model={escape(model)}  tools={tools}  plugins={plugins}\n"
                "Type /help for commands, Ctrl+C cancels the current turn.",
                border_style="cyan",
            )
        )

    def prompt(self) -> str:
        return Prompt.ask("[bold cyan]>[/bold cyan]", console=self.console)

    def show_content(self, content: str) -> None:
        self.console.print(escape(content or "[no content]"))

    def show_tool_results(self, results: Sequence[ToolCallResult]) -> None:
        for result in results:
            if result.outcome == "success":
                style, label = "green", "ok"
                body = result.payload
            elif result.outcome == "cancelled":
                style, label = "yellow", "cancelled"
                body = result.message
            else:
                style = "red"
                label = result.error_kind.value if result.error_kind else "error"
                body = result.message
            preview = body if len(body) <= _RESULT_PREVIEW_CHARS else body[:_RESULT_PREVIEW_CHARS] + " ..."
            self.console.print(
                f"[{style}]● {escape(result.tool_name)}[/{style}] "
                f"[dim]({label}, {result.duration_ms} ms)[/dim]"
            )
            if preview.strip():
                self.console.print(f"[dim]{escape(preview)}[/dim]")

    def show_notice(self, text: str) -> None:
        self.console.print(f"[yellow]{escape(text)}[/yellow]")

    def show_error(self, text: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {escape(text)}")

    def show_command_result(self, result: CommandResult) -> None:
        if result.text:
            self.console.print(escape(result.text))

    def _ask(self, request: ConfirmationRequest) -> ConfirmationDecision:
        args = json.dumps(request.arguments, ensure_ascii=False, indent=2)
        self.console.print(
            Panel(
                f"{escape(args)}\n\n[dim]{escape(request.reason)}[/dim]",
                title=f"Run {escape(request.descriptor.name)}? ({escape(request.descriptor.source.label)})",
                border_style="yellow",
            )
        )
        answer = Prompt.ask(
            "Proceed? [y]es / [a]lways / [n]o",
            choices=list(_CONFIRM_CHOICES),
            default="n",
            console=self.console,
        )
        return _CONFIRM_CHOICES.get(answer, ConfirmationDecision.CANCEL)

    async def confirm(self, request: ConfirmationRequest) -> ConfirmationDecision:
        """One prompt at a time; other calls in the batch keep running meanwhile."""
        async with self._confirm_lock:
            return await asyncio.to_thread(self._ask, request)
