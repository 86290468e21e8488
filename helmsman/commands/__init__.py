"""Slash commands for Helmsman."""

from helmsman.commands.builtin import BuiltinCommands
from helmsman.commands.loader import (
    Extension,
    ExtensionManifest,
    collect_file_commands,
    discover_extensions,
    extension_plugin_specs,
    load_command_dir,
    plugin_prompt_commands,
    render_prompt,
)
from helmsman.commands.models import (
    CommandContext,
    CommandDescriptor,
    CommandOrigin,
    CommandResult,
    CommandTier,
)
from helmsman.commands.resolver import CommandConflict, CommandRename, CommandResolver, ResolutionReport

__all__ = [
    "BuiltinCommands",
    "CommandConflict",
    "CommandContext",
    "CommandDescriptor",
    "CommandOrigin",
    "CommandRename",
    "CommandResolver",
    "CommandResult",
    "CommandTier",
    "Extension",
    "ExtensionManifest",
    "ResolutionReport",
    "collect_file_commands",
    "discover_extensions",
    "extension_plugin_specs",
    "load_command_dir",
    "plugin_prompt_commands",
    "render_prompt",
]
