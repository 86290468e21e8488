from pathlib import Path

import pytest

from helmsman.commands.loader import (
    MANIFEST_FILENAME,
    collect_file_commands,
    discover_extensions,
    extension_plugin_specs,
    load_command_dir,
    parse_prompt_arguments,
    plugin_prompt_commands,
    render_prompt,
)
from helmsman.commands.models import CommandContext, CommandOrigin, CommandTier
from helmsman.commands.resolver import CommandResolver
from helmsman.config import CommandsConfig
from helmsman.exceptions import CommandError
from helmsman.plugins.models import PromptArgument, PromptDescriptor

CTX = CommandContext(cwd=Path("."), session_id="s1")


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_render_prompt_substitutes_or_appends():
    assert render_prompt("Review {{args}} carefully", " src/app.py ") == "Review src/app.py carefully"
    assert render_prompt("Summarize the diff.", "focus on tests") == "Summarize the diff.\n\nfocus on tests"
    assert render_prompt("Summarize the diff.", "") == "Summarize the diff."


@pytest.mark.asyncio
async def test_toml_command_submits_rendered_prompt(tmp_path: Path):
    _write(tmp_path / "review.toml", 'description = "Review a file"\nprompt = "Please review {{args}}"\n')

    commands = load_command_dir(tmp_path, CommandOrigin.user())
    resolver = CommandResolver()
    resolver.load(commands)

    result = await resolver.execute("/review main.py", CTX)

    assert commands[0].description == "Review a file"
    assert commands[0].source_path == str(tmp_path / "review.toml")
    assert result.action == "submit_prompt"
    assert result.submit_prompt == "Please review main.py"


@pytest.mark.asyncio
async def test_nested_directories_become_subcommands(tmp_path: Path):
    _write(tmp_path / "git" / "commit.toml", 'prompt = "Write a commit message for {{args}}"\n')
    _write(tmp_path / "git" / "pr" / "open.toml", 'prompt = "Open a pull request"\n')
    _write(tmp_path / "git.toml", 'prompt = "Explain the git state"\n')

    resolver = CommandResolver()
    resolver.load(load_command_dir(tmp_path, CommandOrigin.project()))

    git = resolver.resolve("git")
    assert git.action is not None
    assert [sub.name for sub in git.subcommands] == ["commit", "pr"]
    assert resolver.resolve("git pr open").origin.tier == CommandTier.PROJECT

    commit = await resolver.execute("/git commit staged files", CTX)
    assert commit.submit_prompt == "Write a commit message for staged files"
    top = await resolver.execute("/git", CTX)
    assert top.submit_prompt == "Explain the git state"


def test_invalid_command_files_are_skipped(tmp_path: Path):
    _write(tmp_path / "broken.toml", "prompt = \n")
    _write(tmp_path / "empty.toml", 'description = "no prompt"\n')
    _write(tmp_path / "notes.md", "not a command")
    _write(tmp_path / "ok.toml", 'prompt = "Fine"\n')

    commands = load_command_dir(tmp_path, CommandOrigin.user())

    assert [c.name for c in commands] == ["ok"]
    assert commands[0].description == "Fine"


def test_missing_directory_yields_nothing(tmp_path: Path):
    assert load_command_dir(tmp_path / "absent", CommandOrigin.user()) == []


def _make_extension(root: Path, name: str, manifest: str | None = None) -> Path:
    ext_dir = root / name
    _write(ext_dir / MANIFEST_FILENAME, manifest or f"name: {name}\nversion: 1.0.0\n")
    return ext_dir


def test_discover_extensions_reads_manifests_and_skips_invalid(tmp_path: Path):
    _make_extension(tmp_path, "acme")
    _make_extension(tmp_path, "bad", "name: 'has space'\n")
    (tmp_path / "plain-dir").mkdir()

    extensions = discover_extensions(tmp_path)

    assert [e.id for e in extensions] == ["acme"]
    assert extensions[0].commands_path == tmp_path / "acme" / "commands"


def test_extension_plugin_specs_default_to_extension_directory(tmp_path: Path):
    ext_dir = _make_extension(
        tmp_path,
        "acme",
        "name: acme\nmcp_servers:\n  acme-tools:\n    command: node\n    args: [server.js]\n  remote:\n    url: https://mcp.example.com\n",
    )

    specs = extension_plugin_specs(discover_extensions(tmp_path))

    by_id = {spec.id: spec for spec in specs}
    assert by_id["acme-tools"].cwd == str(ext_dir)
    assert by_id["acme-tools"].extension_id == "acme"
    assert by_id["acme-tools"].transport == "stdio"
    assert by_id["remote"].transport == "http"
    assert by_id["remote"].cwd == ""


def test_collect_file_commands_orders_tiers(tmp_path: Path):
    user_dir = tmp_path / "user"
    _write(user_dir / "deploy.toml", 'prompt = "user deploy"\n')
    project_root = tmp_path / "project"
    _write(project_root / ".helmsman" / "commands" / "deploy.toml", 'prompt = "project deploy"\n')
    ext_dir = _make_extension(tmp_path / "exts", "acme")
    _write(ext_dir / "commands" / "deploy.toml", 'prompt = "acme deploy"\n')
    config = CommandsConfig(user_dir=str(user_dir), project_dir=".helmsman/commands", extensions_dir=str(tmp_path / "exts"))

    commands = collect_file_commands(config, project_root, discover_extensions(config.extensions_dir))
    resolver = CommandResolver()
    resolver.load(commands)

    assert [c.origin.identifier for c in commands] == ["user", "project", "acme"]
    assert resolver.names() == ["deploy", "project.deploy", "acme.deploy"]


def test_parse_prompt_arguments_keywords_positionals_and_surplus():
    prompt = PromptDescriptor(
        name="review",
        plugin_id="acme",
        arguments=(PromptArgument("file", required=True), PromptArgument("focus")),
    )

    assert parse_prompt_arguments(prompt, "focus=security app.py") == {"focus": "security", "file": "app.py"}
    assert parse_prompt_arguments(prompt, "app.py error handling") == {"file": "app.py", "focus": "error handling"}
    assert parse_prompt_arguments(prompt, '"my file.py"') == {"file": "my file.py"}
    with pytest.raises(CommandError):
        parse_prompt_arguments(prompt, "focus=style")
    with pytest.raises(CommandError):
        parse_prompt_arguments(prompt, '"unbalanced')


@pytest.mark.asyncio
async def test_plugin_prompts_become_extension_commands():
    class _Manager:
        def __init__(self):
            self.requests = []

        def prompts(self):
            return [PromptDescriptor(name="review", plugin_id="acme", arguments=(PromptArgument("file"),))]

        async def get_prompt(self, plugin_id, name, arguments):
            self.requests.append((plugin_id, name, arguments))
            return f"Review {arguments['file']}"

    manager = _Manager()
    commands = plugin_prompt_commands(manager)
    resolver = CommandResolver()
    resolver.load(commands)

    result = await resolver.execute("/review app.py", CTX)

    assert commands[0].origin == CommandOrigin.extension("acme")
    assert result.submit_prompt == "Review app.py"
    assert manager.requests == [("acme", "review", {"file": "app.py"})]
