"""Merge slash commands from ranked sources into one namespace."""

import inspect
import re
import threading
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from helmsman.commands.models import CommandContext, CommandDescriptor, CommandOrigin, CommandResult
from helmsman.events import EventChannel, EventKind
from helmsman.exceptions import CommandError, CommandNotFoundError
from helmsman.logging import get_logger

log = get_logger(__name__)

_COMMAND_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.:-]*$")


@dataclass(frozen=True)
class CommandConflict:
    """A definition dropped because its own tier already has that name."""

    name: str
    origin: CommandOrigin
    reason: str
    scope: str = ""
    source_path: str = ""

    @property
    def path(self) -> str:
        return f"{self.scope} {self.name}".strip()


@dataclass(frozen=True)
class CommandRename:
    """A lower-priority command kept under a prefixed name."""

    original: str
    renamed: str
    origin: CommandOrigin
    scope: str = ""


@dataclass
class ResolutionReport:
    conflicts: list[CommandConflict] = field(default_factory=list)
    renames: list[CommandRename] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


def _unique_name(base: str, taken: dict[str, CommandDescriptor]) -> str:
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


class CommandResolver:
    """Single namespace over built-in, user, project and extension commands.

    Sources are ranked by tier. Inside one origin a repeated name is a
    configuration conflict and the later definition is dropped; across origins
    the lower-ranked command is kept under ``<origin-id>.<name>``.
    """

    def __init__(self, events: EventChannel | None = None):
        self._events = events
        self._lock = threading.Lock()
        self._commands: dict[str, CommandDescriptor] = {}
        self._report = ResolutionReport()

    def _merge(
        self,
        descriptors: Sequence[CommandDescriptor],
        report: ResolutionReport,
        scope: str = "",
    ) -> dict[str, CommandDescriptor]:
        ordered = sorted(descriptors, key=lambda d: d.origin.tier)
        taken: dict[str, CommandDescriptor] = {}
        seen: dict[CommandOrigin, set[str]] = {}

        for descriptor in ordered:
            if not _COMMAND_NAME_RE.match(descriptor.name):
                report.conflicts.append(
                    CommandConflict(
                        descriptor.name,
                        descriptor.origin,
                        "invalid command name",
                        scope,
                        descriptor.source_path,
                    )
                )
                continue

            names = seen.setdefault(descriptor.origin, set())
            if descriptor.name in names:
                report.conflicts.append(
                    CommandConflict(
                        descriptor.name,
                        descriptor.origin,
                        f"defined more than once by {descriptor.origin.identifier}",
                        scope,
                        descriptor.source_path,
                    )
                )
                continue
            names.add(descriptor.name)

            sub_scope = f"{scope} {descriptor.name}".strip()
            subcommands = self._merge(descriptor.subcommands, report, sub_scope)
            resolved = descriptor.with_subcommands(tuple(subcommands.values()))

            name = descriptor.name
            if name in taken:
                name = _unique_name(f"{descriptor.origin.identifier}.{descriptor.name}", taken)
                report.renames.append(CommandRename(descriptor.name, name, descriptor.origin, scope))
                resolved = resolved.renamed(name)
            taken[name] = resolved

        return taken

    def load(self, descriptors: Iterable[CommandDescriptor]) -> ResolutionReport:
        """Replace the namespace with the given commands.

        Descriptors are taken in load order; the tier decides priority and,
        within the extension tier, the earlier extension wins.
        """
        report = ResolutionReport()
        merged = self._merge(list(descriptors), report)
        with self._lock:
            self._commands = merged
            self._report = report

        for conflict in report.conflicts:
            log.warning(
                "Command definition dropped",
                command=conflict.path,
                origin=conflict.origin.identifier,
                reason=conflict.reason,
                source=conflict.source_path or None,
            )
        for rename in report.renames:
            log.info(
                "Command renamed to avoid a collision",
                command=rename.original,
                renamed=rename.renamed,
                origin=rename.origin.identifier,
                scope=rename.scope or None,
            )
        if self._events is not None:
            self._events.publish(EventKind.COMMANDS_CHANGED, count=len(merged), conflicts=len(report.conflicts))
        return report

    @property
    def report(self) -> ResolutionReport:
        return self._report

    def commands(self) -> list[CommandDescriptor]:
        return list(self._commands.values())

    def names(self) -> list[str]:
        return list(self._commands)

    def resolve(self, path: str | Sequence[str]) -> CommandDescriptor:
        """Walk an invocation path such as ``plugins refresh``.

        Raises:
            CommandNotFoundError if any segment does not match
        """
        segments = path.split() if isinstance(path, str) else list(path)
        if segments and segments[0].startswith("/"):
            segments[0] = segments[0][1:]
        if not segments or not segments[0]:
            raise CommandNotFoundError(" ".join(segments))

        current = self._commands.get(segments[0])
        for segment in segments[1:]:
            if current is None:
                break
            current = current.subcommand(segment)
        if current is None:
            raise CommandNotFoundError(" ".join(segments))
        return current

    def parse(self, line: str) -> tuple[CommandDescriptor, str]:
        """Split a slash line into the deepest matching command and its argument text.

        Raises:
            CommandNotFoundError if the first word is not a command
        """
        text = line.strip()
        if text.startswith("/"):
            text = text[1:]
        head, _, rest = text.partition(" ")
        if not head:
            raise CommandNotFoundError("")
        descriptor = self._commands.get(head)
        if descriptor is None:
            raise CommandNotFoundError(head)

        args = rest.strip()
        while args and descriptor.subcommands:
            word, _, remainder = args.partition(" ")
            sub = descriptor.subcommand(word)
            if sub is None:
                break
            descriptor = sub
            args = remainder.strip()
        return descriptor, args

    async def execute(self, line: str, context: CommandContext) -> CommandResult:
        """Run the command named by a slash line.

        Raises:
            CommandNotFoundError if no command matches
            CommandError if the command action fails
        """
        descriptor, args = self.parse(line)
        if descriptor.action is None:
            lines = [f"/{descriptor.name}: {descriptor.description}".rstrip(": ")]
            for sub in descriptor.subcommands:
                lines.append(f"  {sub.name:<16} {sub.description}".rstrip())
            return CommandResult.message("\n".join(lines))

        log.debug("Executing command", command=descriptor.name, origin=descriptor.origin.identifier)
        try:
            result = descriptor.action(args, context)
            if inspect.isawaitable(result):
                result = await result
        except CommandError:
            raise
        except Exception as e:
            raise CommandError(f"/{descriptor.name} failed: {e}") from e
        if not isinstance(result, CommandResult):
            raise CommandError(f"/{descriptor.name} returned {type(result).__name__}, expected CommandResult")
        return result
