from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from helmsman import __version__
from helmsman.config import Config, PluginServerConfig
from helmsman.exceptions import PluginConnectionError
from helmsman.llm import LLMProvider, LLMResponse, ToolCall
from helmsman.main import app
from helmsman.orchestrator import ConfirmationDecision
from helmsman.plugins.models import InvokeResult, PluginCapabilities, PluginSpec, RemotePrompt, RemoteTool
from helmsman.plugins.transport import PluginTransport
from helmsman.shell import HelmsmanShell, plugin_specs_from_config


class _Provider(LLMProvider):
    def __init__(self, *responses: LLMResponse):
        self.responses = list(responses)
        self.prompts: list[str] = []
        self.model = "fake-model"

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None) -> LLMResponse:
        self.prompts.append(messages[-1].content)
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


class _UI:
    def __init__(self):
        self.lines: list[str] = []
        self.errors: list[str] = []
        self.notices: list[str] = []
        self.confirmations = 0

    def show_content(self, content: str) -> None:
        self.lines.append(content)

    def show_tool_results(self, results) -> None:
        self.lines.extend(f"{r.tool_name}:{r.outcome}" for r in results)

    def show_notice(self, text: str) -> None:
        self.notices.append(text)

    def show_error(self, text: str) -> None:
        self.errors.append(text)

    def show_command_result(self, result) -> None:
        if result.text:
            self.lines.append(result.text)

    async def confirm(self, request) -> ConfirmationDecision:
        self.confirmations += 1
        return ConfirmationDecision.PROCEED_ONCE


class _Transport(PluginTransport):
    def __init__(self, spec: PluginSpec):
        self.spec = spec
        self._alive = False

    async def open(self) -> None:
        if self.spec.id == "broken":
            raise OSError("no such binary")
        self._alive = True

    async def list_capabilities(self) -> PluginCapabilities:
        return PluginCapabilities(
            tools=(RemoteTool(name="deploy"), RemoteTool(name="read")),
            prompts=(RemotePrompt(name="standup"),),
        )

    async def invoke(self, call_id: str, name: str, arguments: dict[str, Any]) -> InvokeResult:
        if arguments.get("env") == "unreachable":
            raise ConnectionResetError("pipe closed")
        return InvokeResult(text=f"deployed {arguments.get('env', '?')}")

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> str:
        return "Summarize yesterday's work."

    async def close(self) -> None:
        self._alive = False

    @property
    def alive(self) -> bool:
        return self._alive


def _config(tmp_path: Path, **servers: PluginServerConfig) -> Config:
    cfg = Config()
    cfg.session.auto_save = False
    cfg.session.max_turns = 5
    cfg.tools.enabled = ["read", "write", "glob"]
    cfg.commands.user_dir = str(tmp_path / "user-commands")
    cfg.commands.extensions_dir = str(tmp_path / "extensions")
    cfg.plugins.servers = dict(servers)
    return cfg


async def _started_shell(tmp_path: Path, provider: LLMProvider, **servers: PluginServerConfig) -> tuple[HelmsmanShell, _UI]:
    ui = _UI()
    shell = HelmsmanShell(
        _config(tmp_path, **servers),
        provider=provider,
        ui=ui,
        transport_factory=_Transport,
        cwd=tmp_path,
    )
    await shell.start()
    return shell, ui


@pytest.mark.asyncio
async def test_start_merges_plugins_and_reports_rejections(tmp_path: Path):
    shell, ui = await _started_shell(
        tmp_path,
        _Provider(LLMResponse(content="hi")),
        acme=PluginServerConfig(command="acme-server"),
        broken=PluginServerConfig(command="missing-binary"),
    )
    try:
        assert shell.registry.lookup("deploy").source.plugin_id == "acme"
        assert shell.registry.lookup("read").source.kind == "builtin"
        assert any("tool 'read' rejected" in n for n in ui.notices)
        assert any("Plugin 'broken' unavailable" in n for n in ui.notices)
        assert "standup" in shell.resolver.names()
    finally:
        await shell.aclose()


@pytest.mark.asyncio
async def test_required_plugin_failure_stops_start(tmp_path: Path):
    ui = _UI()
    shell = HelmsmanShell(
        _config(tmp_path, broken=PluginServerConfig(command="missing-binary", required=True)),
        provider=_Provider(LLMResponse(content="hi")),
        ui=ui,
        transport_factory=_Transport,
        cwd=tmp_path,
    )
    try:
        with pytest.raises(PluginConnectionError):
            await shell.start()
    finally:
        await shell.aclose()


@pytest.mark.asyncio
async def test_prompt_runs_plugin_tool_after_confirmation(tmp_path: Path):
    provider = _Provider(
        LLMResponse(content="", tool_calls=[ToolCall(id="c1", name="deploy", arguments={"env": "staging"})]),
        LLMResponse(content="Deployed."),
    )
    shell, ui = await _started_shell(tmp_path, provider, acme=PluginServerConfig(command="acme-server"))
    try:
        keep_going = await shell.handle_line("deploy to staging")
    finally:
        await shell.aclose()

    assert keep_going is True
    assert ui.confirmations == 1
    assert ui.lines == ["deploy:success", "Deployed."]
    assert provider.prompts[1] == "deployed staging"


@pytest.mark.asyncio
async def test_degraded_plugin_is_reported_and_its_tools_removed(tmp_path: Path):
    provider = _Provider(
        LLMResponse(content="", tool_calls=[ToolCall(id="c1", name="deploy", arguments={"env": "unreachable"})]),
        LLMResponse(content="The deploy server is down."),
    )
    shell, ui = await _started_shell(tmp_path, provider, acme=PluginServerConfig(command="acme-server"))
    try:
        await shell.handle_line("deploy it")

        assert ui.lines == ["deploy:error", "The deploy server is down."]
        assert any(n.startswith("Plugin 'acme' degraded: pipe closed") for n in ui.notices)
        assert not shell.registry.has_tool("deploy")
    finally:
        await shell.aclose()


@pytest.mark.asyncio
async def test_project_command_submits_prompt_to_model(tmp_path: Path):
    commands = tmp_path / ".helmsman" / "commands"
    commands.mkdir(parents=True)
    (commands / "review.toml").write_text('prompt = "Review {{args}} for bugs"\n', encoding="utf-8")
    provider = _Provider(LLMResponse(content="Looks fine."))
    shell, ui = await _started_shell(tmp_path, provider)
    try:
        await shell.handle_line("/review app.py")
    finally:
        await shell.aclose()

    assert provider.prompts == ["Review app.py for bugs"]
    assert ui.lines == ["Looks fine."]


@pytest.mark.asyncio
async def test_plugin_prompt_command_submits_rendered_prompt(tmp_path: Path):
    provider = _Provider(LLMResponse(content="Here is the summary."))
    shell, _ = await _started_shell(tmp_path, provider, acme=PluginServerConfig(command="acme-server"))
    try:
        await shell.handle_line("/standup")
    finally:
        await shell.aclose()

    assert provider.prompts == ["Summarize yesterday's work."]


@pytest.mark.asyncio
async def test_clear_quit_and_unknown_commands(tmp_path: Path):
    shell, ui = await _started_shell(tmp_path, _Provider(LLMResponse(content="hi")))
    try:
        await shell.handle_line("hello")
        assert len(shell.loop.history) == 2

        assert await shell.handle_line("/clear") is True
        assert shell.loop.history == ()

        assert await shell.handle_line("/nope") is True
        assert ui.errors == ["Unknown command: /nope"]

        assert await shell.handle_line("/quit") is False
    finally:
        await shell.aclose()


@pytest.mark.asyncio
async def test_budget_exhaustion_is_reported_as_notice(tmp_path: Path):
    provider = _Provider(LLMResponse(content="", tool_calls=[ToolCall(id="", name="glob", arguments={"pattern": "*"})]))
    shell, ui = await _started_shell(tmp_path, provider)
    try:
        outcome = await shell.run_prompt("list files forever")
    finally:
        await shell.aclose()

    assert outcome is None
    assert len(provider.prompts) == 5
    assert any("budget exceeded" in n for n in ui.notices)


def test_plugin_specs_from_config_skips_invalid_entries(tmp_path: Path):
    cfg = _config(
        tmp_path,
        good=PluginServerConfig(command="server"),
        bad=PluginServerConfig(),
    )

    specs = plugin_specs_from_config(cfg, [])

    assert [s.id for s in specs] == ["good"]


def test_version_command():
    result = CliRunner().invoke(app, ["version"])

    assert result.exit_code == 0
    assert f"Helmsman v{__version__}" in result.output
