"""Commands that ship with the shell."""

from typing import Awaitable, Callable

from helmsman.commands.models import CommandContext, CommandDescriptor, CommandOrigin, CommandResult
from helmsman.commands.resolver import CommandResolver
from helmsman.exceptions import CommandError, PluginError
from helmsman.plugins.manager import PluginManager
from helmsman.tools.registry import ToolRegistry

ReloadCallback = Callable[[], Awaitable[None]]


class BuiltinCommands:
    """Built-in command actions bound to the running session's services."""

    def __init__(
        self,
        registry: ToolRegistry,
        resolver: CommandResolver,
        plugins: PluginManager | None = None,
        on_plugins_changed: ReloadCallback | None = None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.plugins = plugins
        self._on_plugins_changed = on_plugins_changed

    def descriptors(self) -> list[CommandDescriptor]:
        origin = CommandOrigin.builtin()
        return [
            CommandDescriptor("help", origin, "Show available commands", self.help),
            CommandDescriptor("tools", origin, "List tools visible to the model", self.tools),
            CommandDescriptor(
                "plugins",
                origin,
                "Show plugin status",
                self.plugins_list,
                subcommands=(
                    CommandDescriptor("list", origin, "Show plugin status", self.plugins_list),
                    CommandDescriptor("refresh", origin, "Reconnect a plugin: /plugins refresh <id>", self.plugins_refresh),
                ),
            ),
            CommandDescriptor("commands", origin, "Show renamed and conflicting commands", self.commands),
            CommandDescriptor("clear", origin, "Start a fresh conversation", self.clear),
            CommandDescriptor("quit", origin, "Exit the shell", self.quit),
        ]

    def help(self, args: str, context: CommandContext) -> CommandResult:
        if args:
            descriptor = self.resolver.resolve(args)
            lines = [f"/{args.strip()} - {descriptor.description or 'no description'}"]
            for sub in descriptor.subcommands:
                lines.append(f"  {sub.name:<18} {sub.description}".rstrip())
            return CommandResult.message("\n".join(lines))

        lines = ["Commands:"]
        for descriptor in self.resolver.commands():
            origin = "" if descriptor.origin == CommandOrigin.builtin() else f" [{descriptor.origin.identifier}]"
            lines.append(f"  /{descriptor.name:<18} {descriptor.description}{origin}".rstrip())
        return CommandResult.message("\n".join(lines))

    def tools(self, args: str, context: CommandContext) -> CommandResult:
        catalog = self.registry.catalog()
        if not len(catalog):
            return CommandResult.message("No tools registered.")
        lines = [f"Tools ({len(catalog)}):"]
        for descriptor in catalog:
            flag = " (asks)" if descriptor.requires_confirmation else ""
            lines.append(f"  {descriptor.name:<20} {descriptor.source.label}{flag}")
        return CommandResult.message("\n".join(lines))

    def plugins_list(self, args: str, context: CommandContext) -> CommandResult:
        if self.plugins is None:
            return CommandResult.message("Plugins are not enabled.")
        rows = self.plugins.describe()
        if not rows:
            return CommandResult.message("No plugins configured.")
        lines = ["Plugins:"]
        for row in rows:
            line = f"  {row['id']:<16} {row['status']:<10} tools={len(row['tools'])} prompts={len(row['prompts'])}"
            if row["error"]:
                line += f" error={row['error']}"
            lines.append(line)
        return CommandResult.message("\n".join(lines))

    async def plugins_refresh(self, args: str, context: CommandContext) -> CommandResult:
        if self.plugins is None:
            raise CommandError("Plugins are not enabled.")
        plugin_id = args.strip()
        if not plugin_id:
            raise CommandError("Usage: /plugins refresh <id>")
        try:
            report = await self.plugins.refresh(plugin_id)
        except PluginError as e:
            raise CommandError(str(e)) from e
        if self._on_plugins_changed is not None:
            await self._on_plugins_changed()

        text = f"Plugin '{plugin_id}' reconnected with {len(report.accepted)} tool(s)."
        for name, reason in report.rejected.items():
            text += f"\n  rejected {name}: {reason}"
        return CommandResult.message(text)

    def commands(self, args: str, context: CommandContext) -> CommandResult:
        report = self.resolver.report
        if not report.renames and not report.conflicts:
            return CommandResult.message("No command collisions.")
        lines: list[str] = []
        if report.renames:
            lines.append("Renamed:")
            for rename in report.renames:
                scope = f"{rename.scope} " if rename.scope else ""
                lines.append(f"  /{scope}{rename.original} -> /{scope}{rename.renamed} ({rename.origin.identifier})")
        if report.conflicts:
            lines.append("Dropped:")
            for conflict in report.conflicts:
                lines.append(f"  /{conflict.path} ({conflict.origin.identifier}): {conflict.reason}")
        return CommandResult.message("\n".join(lines))

    def clear(self, args: str, context: CommandContext) -> CommandResult:
        return CommandResult.clear()

    def quit(self, args: str, context: CommandContext) -> CommandResult:
        return CommandResult.exit("Goodbye.")
