from pathlib import Path

import pytest

from helmsman.commands.models import CommandContext, CommandDescriptor, CommandOrigin, CommandResult
from helmsman.commands.resolver import CommandResolver
from helmsman.events import EventChannel, EventKind
from helmsman.exceptions import CommandError, CommandNotFoundError

CTX = CommandContext(cwd=Path("."), session_id="s1")


def _reply(text: str):
    def _action(args: str, context: CommandContext) -> CommandResult:
        return CommandResult.message(f"{text}|{args}")

    return _action


def _cmd(name: str, origin: CommandOrigin, text: str = "", **kwargs) -> CommandDescriptor:
    return CommandDescriptor(name, origin, f"{name} command", _reply(text or name), **kwargs)


@pytest.mark.asyncio
async def test_extension_command_colliding_with_builtin_is_prefixed():
    resolver = CommandResolver()

    report = resolver.load(
        [
            _cmd("deploy", CommandOrigin.extension("acme"), "ext"),
            _cmd("deploy", CommandOrigin.builtin(), "builtin"),
        ]
    )

    assert resolver.names() == ["deploy", "acme.deploy"]
    assert (await resolver.execute("/deploy now", CTX)).text == "builtin|now"
    assert (await resolver.execute("/acme.deploy now", CTX)).text == "ext|now"
    assert report.renames[0].renamed == "acme.deploy"
    assert report.conflicts == []


def test_tier_order_decides_which_command_keeps_the_name():
    resolver = CommandResolver()

    resolver.load(
        [
            _cmd("review", CommandOrigin.project(), "project"),
            _cmd("review", CommandOrigin.user(), "user"),
        ]
    )

    assert resolver.resolve("review").origin == CommandOrigin.user()
    assert resolver.resolve("project.review").origin == CommandOrigin.project()


def test_two_extensions_with_same_name_both_survive():
    resolver = CommandResolver()

    resolver.load(
        [
            _cmd("lint", CommandOrigin.extension("alpha")),
            _cmd("lint", CommandOrigin.extension("beta")),
        ]
    )

    assert resolver.resolve("lint").origin.extension_id == "alpha"
    assert resolver.resolve("beta.lint").origin.extension_id == "beta"


def test_prefixed_name_that_still_collides_gets_numeric_suffix():
    resolver = CommandResolver()

    resolver.load(
        [
            _cmd("deploy", CommandOrigin.builtin()),
            _cmd("acme.deploy", CommandOrigin.user()),
            _cmd("deploy", CommandOrigin.extension("acme")),
        ]
    )

    assert resolver.names() == ["deploy", "acme.deploy", "acme.deploy-2"]
    assert resolver.resolve("acme.deploy-2").origin.extension_id == "acme"


def test_duplicate_within_one_origin_is_a_conflict():
    events = EventChannel()
    seen = []
    events.subscribe(seen.append, [EventKind.COMMANDS_CHANGED])
    resolver = CommandResolver(events=events)

    report = resolver.load(
        [
            _cmd("review", CommandOrigin.user(), "first", source_path="/u/review.toml"),
            _cmd("review", CommandOrigin.user(), "second", source_path="/u/other/review.toml"),
        ]
    )

    assert resolver.names() == ["review"]
    assert report.has_conflicts
    conflict = report.conflicts[0]
    assert conflict.origin == CommandOrigin.user()
    assert conflict.source_path == "/u/other/review.toml"
    assert seen[0].payload == {"count": 1, "conflicts": 1}


def test_invalid_name_is_reported():
    resolver = CommandResolver()

    report = resolver.load([_cmd("bad name", CommandOrigin.project())])

    assert resolver.names() == []
    assert report.conflicts[0].reason == "invalid command name"


@pytest.mark.asyncio
async def test_subcommands_are_merged_and_walked():
    resolver = CommandResolver()
    git = CommandDescriptor(
        "git",
        CommandOrigin.user(),
        "git helpers",
        subcommands=(
            _cmd("commit", CommandOrigin.user(), "commit"),
            _cmd("commit", CommandOrigin.user(), "dup"),
            _cmd("push", CommandOrigin.user(), "push"),
        ),
    )

    report = resolver.load([git])

    assert [sub.name for sub in resolver.resolve("git").subcommands] == ["commit", "push"]
    assert report.conflicts[0].path == "git commit"
    descriptor, args = resolver.parse("/git commit -m fix")
    assert descriptor.name == "commit"
    assert args == "-m fix"
    assert (await resolver.execute("/git push origin", CTX)).text == "push|origin"


@pytest.mark.asyncio
async def test_group_without_action_lists_subcommands():
    resolver = CommandResolver()
    resolver.load(
        [
            CommandDescriptor(
                "git",
                CommandOrigin.user(),
                "git helpers",
                subcommands=(_cmd("commit", CommandOrigin.user()),),
            )
        ]
    )

    result = await resolver.execute("/git", CTX)

    assert result.action == "none"
    assert result.text.splitlines()[0] == "/git: git helpers"
    assert "commit" in result.text


@pytest.mark.asyncio
async def test_unknown_command_raises_not_found():
    resolver = CommandResolver()
    resolver.load([_cmd("help", CommandOrigin.builtin())])

    with pytest.raises(CommandNotFoundError) as exc_info:
        await resolver.execute("/nope", CTX)

    assert str(exc_info.value) == "Unknown command: /nope"
    with pytest.raises(CommandNotFoundError):
        resolver.resolve("help missing")


@pytest.mark.asyncio
async def test_failing_action_is_wrapped_in_command_error():
    def _boom(args: str, context: CommandContext) -> CommandResult:
        raise RuntimeError("kaboom")

    async def _not_a_result(args: str, context: CommandContext):
        return "text"

    resolver = CommandResolver()
    resolver.load(
        [
            CommandDescriptor("boom", CommandOrigin.user(), action=_boom),
            CommandDescriptor("odd", CommandOrigin.user(), action=_not_a_result),
        ]
    )

    with pytest.raises(CommandError) as exc_info:
        await resolver.execute("/boom", CTX)
    assert "kaboom" in str(exc_info.value)

    with pytest.raises(CommandError) as exc_info:
        await resolver.execute("/odd", CTX)
    assert "expected CommandResult" in str(exc_info.value)


def test_reload_replaces_namespace():
    resolver = CommandResolver()
    resolver.load([_cmd("one", CommandOrigin.user())])

    resolver.load([_cmd("two", CommandOrigin.user())])

    assert resolver.names() == ["two"]
