"""Slash-command descriptors and the values passed to and from their actions."""

from dataclasses import dataclass, field, replace
from enum import IntEnum
from pathlib import Path
from typing import Awaitable, Callable, Literal, Union


class CommandTier(IntEnum):
    """Command sources, highest priority first."""

    BUILTIN = 0
    USER = 1
    PROJECT = 2
    EXTENSION = 3


@dataclass(frozen=True)
class CommandOrigin:
    tier: CommandTier
    extension_id: str | None = None

    @classmethod
    def builtin(cls) -> "CommandOrigin":
        return cls(CommandTier.BUILTIN)

    @classmethod
    def user(cls) -> "CommandOrigin":
        return cls(CommandTier.USER)

    @classmethod
    def project(cls) -> "CommandOrigin":
        return cls(CommandTier.PROJECT)

    @classmethod
    def extension(cls, extension_id: str) -> "CommandOrigin":
        return cls(CommandTier.EXTENSION, extension_id)

    @property
    def identifier(self) -> str:
        """Prefix used when a command from this origin has to be renamed."""
        if self.tier == CommandTier.EXTENSION:
            return self.extension_id or "extension"
        return self.tier.name.lower()


@dataclass(frozen=True)
class CommandContext:
    """Read-only view handed to command actions."""

    cwd: Path
    session_id: str


@dataclass(frozen=True)
class CommandResult:
    text: str = ""
    action: Literal["none", "submit_prompt", "clear", "exit"] = "none"
    submit_prompt: str | None = None

    @classmethod
    def message(cls, text: str) -> "CommandResult":
        return cls(text=text)

    @classmethod
    def submit(cls, prompt: str, text: str = "") -> "CommandResult":
        """Send ``prompt`` to the model as if the user had typed it."""
        return cls(text=text, action="submit_prompt", submit_prompt=prompt)

    @classmethod
    def clear(cls, text: str = "Conversation cleared.") -> "CommandResult":
        return cls(text=text, action="clear")

    @classmethod
    def exit(cls, text: str = "") -> "CommandResult":
        return cls(text=text, action="exit")


CommandAction = Callable[[str, CommandContext], Union[CommandResult, Awaitable[CommandResult]]]


@dataclass(frozen=True)
class CommandDescriptor:
    """One slash command; ``action`` may be None for a pure group of subcommands."""

    name: str
    origin: CommandOrigin
    description: str = ""
    action: CommandAction | None = field(default=None, compare=False)
    subcommands: tuple["CommandDescriptor", ...] = ()
    source_path: str = ""

    def renamed(self, name: str) -> "CommandDescriptor":
        return replace(self, name=name)

    def with_subcommands(self, subcommands: tuple["CommandDescriptor", ...]) -> "CommandDescriptor":
        return replace(self, subcommands=subcommands)

    def subcommand(self, name: str) -> "CommandDescriptor | None":
        for sub in self.subcommands:
            if sub.name == name:
                return sub
        return None
