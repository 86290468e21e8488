"""Wiring for one interactive session and its read-eval loop."""

import asyncio
import signal
import uuid
from pathlib import Path

from pydantic import ValidationError

from helmsman.cancellation import CancellationToken
from helmsman.commands import (
    BuiltinCommands,
    CommandContext,
    CommandResolver,
    CommandResult,
    Extension,
    collect_file_commands,
    discover_extensions,
    extension_plugin_specs,
    plugin_prompt_commands,
)
from helmsman.config import Config
from helmsman.console import ConsoleUI
from helmsman.conversation import ConversationLoop, LoopState, TurnOutcome
from helmsman.events import EventChannel, EventKind, SessionEvent
from helmsman.exceptions import BudgetExceededError, CommandError, LLMError, PluginConnectionError
from helmsman.llm import LLMProvider, create_provider
from helmsman.logging import bind_session, get_logger
from helmsman.orchestrator import ExecutionOrchestrator
from helmsman.plugins import PluginManager, PluginSpec, PluginStatus
from helmsman.plugins.client import TransportFactory
from helmsman.session import SessionManager, SessionRecorder
from helmsman.tools import ConfirmationPolicy, ToolRegistry, register_builtin_tools

log = get_logger(__name__)


def plugin_specs_from_config(config: Config, extensions: list[Extension]) -> list[PluginSpec]:
    """Configured plugins first, then those declared by extensions."""
    specs: list[PluginSpec] = []
    for plugin_id, server in config.plugins.servers.items():
        try:
            specs.append(PluginSpec.from_config(plugin_id, server))
        except ValidationError as e:
            log.warning("Skipping invalid plugin config", plugin=plugin_id, error=str(e))
    specs.extend(extension_plugin_specs(extensions))
    return specs


class HelmsmanShell:
    """Everything one session needs, created in ``start`` and torn down in ``aclose``."""

    def __init__(
        self,
        config: Config,
        *,
        provider: LLMProvider | None = None,
        ui: ConsoleUI | None = None,
        transport_factory: TransportFactory | None = None,
        cwd: Path | None = None,
    ):
        self.config = config
        self.cwd = (cwd or Path.cwd()).resolve()
        self.ui = ui or ConsoleUI()
        self.events = EventChannel()
        self.registry = ToolRegistry(events=self.events)
        self.plugins = PluginManager(
            self.registry,
            events=self.events,
            transport_factory=transport_factory,
            close_timeout=config.plugins.close_timeout,
        )
        self.resolver = CommandResolver(events=self.events)
        self.builtins = BuiltinCommands(
            self.registry,
            self.resolver,
            self.plugins,
            on_plugins_changed=self.reload_commands,
        )
        self.policy = ConfirmationPolicy(config.tools)
        self.provider = provider
        self.extensions: list[Extension] = []
        self.session_manager: SessionManager | None = None
        self.recorder: SessionRecorder | None = None
        self.session_id = ""
        self.loop: ConversationLoop | None = None
        self._active_token: CancellationToken | None = None
        self.events.subscribe(self._on_plugin_status, [EventKind.PLUGIN_STATUS])

    async def start(self) -> None:
        """Register tools, start plugins, load commands and open the session.

        Raises:
            PluginConnectionError if a required plugin cannot start
        """
        register_builtin_tools(self.registry, self.config.tools)

        self.extensions = discover_extensions(self.config.commands.extensions_dir)
        report = await self.plugins.start(plugin_specs_from_config(self.config, self.extensions))
        for plugin_id, error in report.failed.items():
            self.ui.show_notice(f"Plugin '{plugin_id}' unavailable: {error}")
        for plugin_id, merge in report.merged.items():
            for name, reason in merge.rejected.items():
                self.ui.show_notice(f"Plugin '{plugin_id}' tool '{name}' rejected: {reason}")

        await self.reload_commands()

        if self.config.session.auto_save:
            self.session_manager = SessionManager(self.config.session.path)
            session = await self.session_manager.create_session(name=self.cwd.name or "default")
            self.session_id = session.id
            self.recorder = SessionRecorder(self.session_manager)
        else:
            self.session_id = str(uuid.uuid4())
        bind_session(self.session_id)

        if self.provider is None:
            self.provider = create_provider(self.config.model)

        orchestrator = ExecutionOrchestrator(
            self.registry,
            plugins=self.plugins,
            policy=self.policy,
            confirmation=self.ui,
            events=self.events,
            tools_config=self.config.tools,
            session_id=self.session_id,
            workspace=self.cwd,
        )
        self.loop = ConversationLoop(
            self.provider,
            self.registry,
            orchestrator,
            session_id=self.session_id,
            session_config=self.config.session,
            system_prompt=self.config.model.system_prompt,
            ui=self.ui,
            recorder=self.recorder,
            events=self.events,
            grace_period=self.config.tools.grace_period,
        )
        log.info("Session started", session_id=self.session_id, tools=len(self.registry.catalog()))

    def _on_plugin_status(self, event: SessionEvent) -> None:
        if event.payload.get("status") != PluginStatus.DEGRADED.value:
            return
        plugin_id = event.payload.get("plugin_id")
        self.ui.show_notice(f"Plugin '{plugin_id}' degraded: {event.payload.get('error')}. Its tools were removed.")

    async def reload_commands(self) -> None:
        descriptors = self.builtins.descriptors()
        descriptors.extend(collect_file_commands(self.config.commands, self.cwd, self.extensions))
        descriptors.extend(plugin_prompt_commands(self.plugins))
        report = self.resolver.load(descriptors)
        for conflict in report.conflicts:
            self.ui.show_notice(f"Command /{conflict.path} from {conflict.origin.identifier} ignored: {conflict.reason}")

    def _context(self) -> CommandContext:
        return CommandContext(cwd=self.cwd, session_id=self.session_id)

    def _install_interrupt(self, token: CancellationToken) -> bool:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, token.cancel, "Interrupted by user")
        except (NotImplementedError, RuntimeError):
            return False
        return True

    def _remove_interrupt(self) -> None:
        try:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    def cancel_active(self, reason: str = "Interrupted by user") -> None:
        if self._active_token is not None:
            self._active_token.cancel(reason)

    async def run_prompt(self, text: str) -> TurnOutcome | None:
        """Run one model turn; Ctrl+C cancels it instead of exiting."""
        assert self.loop is not None, "start() must be called first"
        token = CancellationToken()
        self._active_token = token
        installed = self._install_interrupt(token)
        try:
            return await self.loop.run(text, token)
        except BudgetExceededError as e:
            self.ui.show_notice(f"{e}. Start a new session to continue.")
            return None
        except LLMError as e:
            self.ui.show_error(f"Model request failed: {e}")
            return None
        finally:
            self._active_token = None
            if installed:
                self._remove_interrupt()

    async def handle_line(self, line: str) -> bool:
        """Process one input line; False means the shell should exit."""
        text = line.strip()
        if not text:
            return True
        if not text.startswith("/"):
            await self.run_prompt(text)
            return True

        try:
            result = await self.resolver.execute(text, self._context())
        except CommandError as e:
            self.ui.show_error(str(e))
            return True
        return await self.apply_command_result(result)

    async def apply_command_result(self, result: CommandResult) -> bool:
        self.ui.show_command_result(result)
        if result.action == "exit":
            return False
        if result.action == "clear" and self.loop is not None:
            self.loop.clear()
        elif result.action == "submit_prompt" and result.submit_prompt:
            await self.run_prompt(result.submit_prompt)
        return True

    async def repl(self) -> None:
        assert self.provider is not None
        model = getattr(self.provider, "model", self.config.model.model)
        self.ui.print_welcome(str(model), len(self.registry.catalog()), len(self.plugins.connections()))
        while True:
            try:
                line = await asyncio.to_thread(self.ui.prompt)
            except (EOFError, KeyboardInterrupt):
                break
            if not await self.handle_line(line):
                break

    async def aclose(self) -> None:
        if self.loop is not None:
            await self.loop.flush()
        await self.plugins.close_all()
        await self.registry.close()
        if self.provider is not None:
            await self.provider.close()
        if self.recorder is not None:
            await self.recorder.aclose()
        elif self.session_manager is not None:
            await self.session_manager.close()


async def run_shell(
    config: Config,
    prompt: str | None = None,
    provider: LLMProvider | None = None,
) -> int:
    """Start a session, run one prompt or the REPL, and shut down; returns an exit code."""
    shell = HelmsmanShell(config, provider=provider)
    try:
        try:
            await shell.start()
        except PluginConnectionError as e:
            shell.ui.show_error(str(e))
            return 1
        if prompt:
            outcome = await shell.run_prompt(prompt)
            return 0 if outcome is not None and outcome.state == LoopState.HAS_CONTENT else 1
        await shell.repl()
        return 0
    finally:
        await shell.aclose()
