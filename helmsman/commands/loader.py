"""Discover command files, extension manifests and plugin prompts.

Command files are TOML::

    description = "Review the staged diff"
    prompt = "Review these changes: {{args}}"

A directory next to (or instead of) a file holds its subcommands, so
``git/commit.toml`` becomes ``/git commit``.
"""

import re
import shlex
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from helmsman.commands.models import CommandContext, CommandDescriptor, CommandOrigin, CommandResult
from helmsman.config import CommandsConfig, PluginServerConfig
from helmsman.exceptions import CommandError
from helmsman.logging import get_logger
from helmsman.plugins.models import PluginSpec, PromptDescriptor

if TYPE_CHECKING:
    from helmsman.plugins.manager import PluginManager

log = get_logger(__name__)

ARGS_PLACEHOLDER = "{{args}}"
MANIFEST_FILENAME = "helmsman-extension.yaml"
_EXTENSION_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def render_prompt(template: str, args: str) -> str:
    """Fill ``{{args}}``; without the placeholder, arguments are appended."""
    args = args.strip()
    if ARGS_PLACEHOLDER in template:
        return template.replace(ARGS_PLACEHOLDER, args)
    if args:
        return f"{template.rstrip()}\n\n{args}"
    return template


def _prompt_action(template: str):
    def _action(args: str, context: CommandContext) -> CommandResult:
        return CommandResult.submit(render_prompt(template, args))

    return _action


def _load_command_file(path: Path, origin: CommandOrigin) -> CommandDescriptor | None:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        log.warning("Skipping unreadable command file", path=str(path), error=str(e))
        return None

    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        log.warning("Skipping command file without a prompt", path=str(path))
        return None
    description = str(data.get("description") or "").strip()
    return CommandDescriptor(
        name=path.stem,
        origin=origin,
        description=description or prompt.strip().splitlines()[0][:80],
        action=_prompt_action(prompt),
        source_path=str(path),
    )


def load_command_dir(root: Path | str, origin: CommandOrigin) -> list[CommandDescriptor]:
    """Load every command under ``root``, sorted by name."""
    root = Path(root).expanduser()
    if not root.is_dir():
        return []

    files: dict[str, Path] = {}
    dirs: dict[str, Path] = {}
    for entry in sorted(root.iterdir(), key=lambda item: item.name.lower()):
        if entry.name.startswith("."):
            continue
        if entry.is_file() and entry.suffix == ".toml":
            files[entry.stem] = entry
        elif entry.is_dir():
            dirs[entry.name] = entry

    commands: list[CommandDescriptor] = []
    for name in sorted(set(files) | set(dirs), key=str.lower):
        subcommands = tuple(load_command_dir(dirs[name], origin)) if name in dirs else ()
        if name in files:
            descriptor = _load_command_file(files[name], origin)
            if descriptor is None:
                continue
            descriptor = descriptor.with_subcommands(subcommands)
        elif subcommands:
            descriptor = CommandDescriptor(
                name=name,
                origin=origin,
                description=f"{name} commands",
                subcommands=subcommands,
                source_path=str(dirs[name]),
            )
        else:
            continue
        commands.append(descriptor)
    return commands


class ExtensionManifest(BaseModel):
    """Contents of ``helmsman-extension.yaml``."""

    name: str
    version: str = "0.0.0"
    description: str = ""
    commands_dir: str = "commands"
    mcp_servers: dict[str, PluginServerConfig] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _EXTENSION_NAME_RE.match(value):
            raise ValueError(f"extension name {value!r} must match [A-Za-z0-9_-]+")
        return value


@dataclass(frozen=True)
class Extension:
    manifest: ExtensionManifest
    path: Path

    @property
    def id(self) -> str:
        return self.manifest.name

    @property
    def commands_path(self) -> Path:
        return self.path / self.manifest.commands_dir


def load_extension(path: Path) -> Extension | None:
    manifest_path = path / MANIFEST_FILENAME
    try:
        with open(manifest_path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}
        manifest = ExtensionManifest(**data)
    except (OSError, yaml.YAMLError, ValidationError, TypeError) as e:
        log.warning("Skipping invalid extension", path=str(path), error=str(e))
        return None
    return Extension(manifest=manifest, path=path)


def discover_extensions(extensions_dir: Path | str) -> list[Extension]:
    """Extensions installed under ``extensions_dir``, in directory-name order."""
    root = Path(extensions_dir).expanduser()
    if not root.is_dir():
        return []

    extensions: list[Extension] = []
    seen: set[str] = set()
    for child in sorted(root.iterdir(), key=lambda item: item.name.lower()):
        if not (child / MANIFEST_FILENAME).is_file():
            continue
        extension = load_extension(child)
        if extension is None:
            continue
        if extension.id in seen:
            log.warning("Skipping duplicate extension", extension=extension.id, path=str(child))
            continue
        seen.add(extension.id)
        extensions.append(extension)
    return extensions


def extension_plugin_specs(extensions: list[Extension]) -> list[PluginSpec]:
    """Plugin specs declared by extension manifests."""
    specs: list[PluginSpec] = []
    for extension in extensions:
        for server_id, server in extension.manifest.mcp_servers.items():
            if not server.cwd and server.command:
                server = server.model_copy(update={"cwd": str(extension.path)})
            try:
                specs.append(PluginSpec.from_config(server_id, server, extension_id=extension.id))
            except ValidationError as e:
                log.warning("Skipping invalid extension plugin", extension=extension.id, plugin=server_id, error=str(e))
    return specs


def collect_file_commands(
    config: CommandsConfig,
    cwd: Path,
    extensions: list[Extension] | None = None,
) -> list[CommandDescriptor]:
    """User, project and extension commands, in tier then load order."""
    commands: list[CommandDescriptor] = []
    commands.extend(load_command_dir(config.user_dir, CommandOrigin.user()))

    project_dir = Path(config.project_dir).expanduser()
    if not project_dir.is_absolute():
        project_dir = cwd / project_dir
    commands.extend(load_command_dir(project_dir, CommandOrigin.project()))

    for extension in extensions or []:
        commands.extend(load_command_dir(extension.commands_path, CommandOrigin.extension(extension.id)))
    return commands


def parse_prompt_arguments(prompt: PromptDescriptor, args: str) -> dict[str, str]:
    """Map ``key=value`` pairs and positional words onto a prompt's declared arguments.

    Raises:
        CommandError on unbalanced quoting or a missing required argument
    """
    try:
        words = shlex.split(args)
    except ValueError as e:
        raise CommandError(f"Could not parse arguments: {e}") from e

    declared = [arg.name for arg in prompt.arguments]
    values: dict[str, str] = {}
    positional: list[str] = []
    for word in words:
        key, sep, value = word.partition("=")
        if sep and key in declared:
            values[key] = value
        else:
            positional.append(word)

    remaining = [name for name in declared if name not in values]
    for name, value in zip(remaining, positional):
        values[name] = value
    extra = positional[len(remaining):]
    if extra:
        if not declared:
            raise CommandError(f"{prompt.name} takes no arguments")
        # Surplus words belong to the last argument.
        target = remaining[-1] if remaining else declared[-1]
        values[target] = " ".join([values[target], *extra])

    missing = [arg.name for arg in prompt.arguments if arg.required and arg.name not in values]
    if missing:
        raise CommandError(f"Missing required argument(s) for {prompt.name}: {', '.join(missing)}")
    return values


def plugin_prompt_commands(manager: "PluginManager") -> list[CommandDescriptor]:
    """Expose every ready plugin's prompts as extension-tier commands keyed by plugin id."""
    commands: list[CommandDescriptor] = []
    for prompt in manager.prompts():

        def _make_action(prompt: PromptDescriptor = prompt):
            async def _action(args: str, context: CommandContext) -> CommandResult:
                values = parse_prompt_arguments(prompt, args)
                text = await manager.get_prompt(prompt.plugin_id, prompt.name, values)
                if not text.strip():
                    return CommandResult.message(f"Prompt '{prompt.name}' returned no text.")
                return CommandResult.submit(text)

            return _action

        commands.append(
            CommandDescriptor(
                name=prompt.name,
                origin=CommandOrigin.extension(prompt.plugin_id),
                description=prompt.description or f"Prompt from plugin {prompt.plugin_id}",
                action=_make_action(),
            )
        )
    return commands
