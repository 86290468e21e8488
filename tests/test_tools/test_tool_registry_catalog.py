import pytest

from helmsman.events import EventChannel, EventKind
from helmsman.exceptions import DuplicateNameError, PluginConnectionError, ToolNotFoundError
from helmsman.plugins.models import PluginConnection, PluginSpec, PluginStatus
from helmsman.tools.registry import Tool, ToolRegistry, ToolResult
from helmsman.tools.schema import ToolDescriptor, ToolSource


class _EchoTool(Tool):
    name = "echo"
    description = "Echo text back"
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, text: str = "", **kwargs):
        return ToolResult(success=True, content=text)


class _OtherEchoTool(_EchoTool):
    description = "Another echo"


class _ClosingTool(_EchoTool):
    name = "closer"

    def __init__(self):
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _plugin_connection(plugin_id: str, *names: str, status: PluginStatus = PluginStatus.READY) -> PluginConnection:
    return PluginConnection(
        id=plugin_id,
        spec=PluginSpec(id=plugin_id, command="fake-server"),
        status=status,
        offered_tools=tuple(
            ToolDescriptor(name=name, description=f"{name} from {plugin_id}", source=ToolSource.plugin(plugin_id))
            for name in names
        ),
    )


def test_registering_duplicate_name_raises():
    registry = ToolRegistry()
    registry.register(_EchoTool())

    with pytest.raises(DuplicateNameError):
        registry.register(_OtherEchoTool())

    assert registry.lookup("echo").description == "Echo text back"


def test_register_rejects_invalid_names():
    class _BadName(_EchoTool):
        name = "has space"

    with pytest.raises(ValueError):
        ToolRegistry().register(_BadName())


def test_lookup_unknown_tool_lists_available_names():
    registry = ToolRegistry()
    registry.register(_EchoTool())

    with pytest.raises(ToolNotFoundError) as exc_info:
        registry.lookup("missing")

    assert exc_info.value.available == ["echo"]


def test_plugin_tool_named_like_builtin_is_rejected_and_builtin_kept():
    registry = ToolRegistry()
    registry.register(_EchoTool())

    report = registry.merge_plugin(_plugin_connection("acme", "echo", "deploy"))

    assert report.accepted == ["deploy"]
    assert "echo" in report.rejected
    assert "builtin" in report.rejected["echo"]
    assert registry.lookup("echo").source.kind == "builtin"
    assert registry.lookup("deploy").source.plugin_id == "acme"


def test_two_plugins_offering_same_name_keep_first():
    registry = ToolRegistry()
    registry.merge_plugin(_plugin_connection("alpha", "search"))

    report = registry.merge_plugin(_plugin_connection("beta", "search"))

    assert report.accepted == []
    assert report.rejected["search"] == "name already provided by plugin:alpha"
    assert registry.lookup("search").source.plugin_id == "alpha"


def test_plugin_offering_same_name_twice_keeps_one():
    registry = ToolRegistry()

    report = registry.merge_plugin(_plugin_connection("acme", "deploy", "deploy"))

    assert report.accepted == ["deploy"]
    assert report.rejected["deploy"] == "offered more than once by this plugin"


def test_merge_requires_ready_connection():
    registry = ToolRegistry()

    with pytest.raises(PluginConnectionError):
        registry.merge_plugin(_plugin_connection("acme", "deploy", status=PluginStatus.CONNECTING))


def test_remerge_replaces_plugin_tools():
    registry = ToolRegistry()
    registry.merge_plugin(_plugin_connection("acme", "deploy", "rollback"))

    report = registry.merge_plugin(_plugin_connection("acme", "deploy"))

    assert report.accepted == ["deploy"]
    assert registry.list_tools() == ["deploy"]


def test_catalog_snapshot_is_unaffected_by_later_changes():
    registry = ToolRegistry()
    registry.register(_EchoTool())
    registry.merge_plugin(_plugin_connection("acme", "deploy"))

    snapshot = registry.catalog()
    registry.remove_plugin("acme")

    assert "deploy" in snapshot
    assert snapshot.lookup("deploy").source.plugin_id == "acme"
    assert not registry.has_tool("deploy")
    assert snapshot.implementation("echo") is not None
    assert snapshot.implementation("deploy") is None


def test_remove_plugin_returns_names_and_publishes_event():
    events = EventChannel()
    seen = []
    events.subscribe(seen.append, [EventKind.CATALOG_CHANGED])
    registry = ToolRegistry(events=events)
    registry.merge_plugin(_plugin_connection("acme", "deploy", "rollback"))

    removed = registry.remove_plugin("acme")

    assert removed == ["deploy", "rollback"]
    assert registry.plugin_tools("acme") == []
    assert registry.remove_plugin("acme") == []
    assert seen[-1].payload == {"removed": ["deploy", "rollback"], "source": "plugin:acme"}


def test_catalog_definitions_follow_registration_order():
    registry = ToolRegistry()
    registry.register(_EchoTool())
    registry.merge_plugin(_plugin_connection("acme", "deploy"))

    definitions = registry.catalog().get_definitions()

    assert [d["name"] for d in definitions] == ["echo", "deploy"]
    assert definitions[0]["parameters"]["properties"] == {"text": {"type": "string"}}


@pytest.mark.asyncio
async def test_close_closes_builtin_tools():
    registry = ToolRegistry()
    tool = _ClosingTool()
    registry.register(tool)

    await registry.close()

    assert tool.closed is True


def test_tool_result_failure_always_has_error():
    result = ToolResult(success=False, content="partial output")
    assert result.error == "partial output"

    assert ToolResult(success=False).error == "Tool execution failed"
