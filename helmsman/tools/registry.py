"""Tool registry and base tool class."""

from __future__ import annotations

import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterator, Mapping

from pydantic import BaseModel, Field, model_validator

from helmsman.events import EventChannel, EventKind
from helmsman.exceptions import DuplicateNameError, PluginConnectionError, ToolNotFoundError
from helmsman.logging import get_logger
from helmsman.tools.schema import ToolDescriptor, ToolSource

if TYPE_CHECKING:
    from helmsman.plugins.models import PluginConnection

log = get_logger(__name__)

_TOOL_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]{0,63}$")


class ToolResult(BaseModel):
    """Result from a built-in tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class Tool(ABC):
    """Base class for built-in tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0
    requires_confirmation: bool = False

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Besides its declared parameters every tool receives ``_cancel_token``,
        ``_session_id`` and ``_workspace`` keyword arguments.

        Returns:
            ToolResult with success status and content
        """
        pass

    def descriptor(self) -> ToolDescriptor:
        """Model-visible descriptor for this tool."""
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=self.parameters or {"type": "object", "properties": {}},
            requires_confirmation=self.requires_confirmation,
            source=ToolSource.builtin(),
        )

    async def close(self) -> None:
        """Release resources held by the tool."""
        return None


class MergeReport(BaseModel):
    """Outcome of merging one plugin's tools into the registry."""

    plugin_id: str
    accepted: list[str] = Field(default_factory=list)
    rejected: dict[str, str] = Field(default_factory=dict)

    @property
    def has_rejections(self) -> bool:
        return bool(self.rejected)


@dataclass(frozen=True)
class ToolCatalog:
    """Immutable snapshot of the tool namespace for one turn."""

    descriptors: tuple[ToolDescriptor, ...] = ()
    builtins: Mapping[str, Tool] = field(default_factory=lambda: MappingProxyType({}))
    _by_name: Mapping[str, ToolDescriptor] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "_by_name",
            MappingProxyType({descriptor.name: descriptor for descriptor in self.descriptors}),
        )

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self.descriptors)

    def __len__(self) -> int:
        return len(self.descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def names(self) -> list[str]:
        return [descriptor.name for descriptor in self.descriptors]

    def lookup(self, name: str) -> ToolDescriptor:
        descriptor = self._by_name.get(name)
        if descriptor is None:
            raise ToolNotFoundError(name, self.names)
        return descriptor

    def implementation(self, name: str) -> Tool | None:
        """In-process implementation for a built-in tool, None for plugin tools."""
        return self.builtins.get(name)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [descriptor.get_definition() for descriptor in self.descriptors]


class ToolRegistry:
    """Single namespace over built-in tools and tools offered by plugins.

    Writers build a new catalog and swap it in under a lock; readers always
    see one complete snapshot.
    """

    def __init__(self, events: EventChannel | None = None):
        self._events = events
        self._lock = threading.Lock()
        self._builtins: dict[str, Tool] = {}
        self._descriptors: dict[str, ToolDescriptor] = {}
        self._plugin_tools: dict[str, list[str]] = {}
        self._catalog = ToolCatalog()

    def _publish_locked(self) -> None:
        self._catalog = ToolCatalog(
            descriptors=tuple(self._descriptors.values()),
            builtins=MappingProxyType(dict(self._builtins)),
        )

    def _notify(self, **payload: Any) -> None:
        if self._events is not None:
            self._events.publish(EventKind.CATALOG_CHANGED, **payload)

    def register(self, tool: Tool) -> ToolDescriptor:
        """Register a built-in tool.

        Raises:
            DuplicateNameError if the name is already taken
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        if not _TOOL_NAME_RE.match(tool.name):
            raise ValueError(f"Invalid tool name: {tool.name!r}")

        descriptor = tool.descriptor()
        with self._lock:
            if tool.name in self._descriptors:
                raise DuplicateNameError(tool.name, "tool")
            self._builtins[tool.name] = tool
            self._descriptors[tool.name] = descriptor
            self._publish_locked()
        log.debug("Registered tool", tool=tool.name)
        self._notify(added=[tool.name], source="builtin")
        return descriptor

    def merge_plugin(self, connection: PluginConnection) -> MergeReport:
        """Add the tools offered by a ready plugin connection.

        Names that collide with an existing tool are rejected, never renamed:
        the model already knows the existing name.

        Raises:
            PluginConnectionError if the connection is not ready
        """
        if connection.status.value != "ready":
            raise PluginConnectionError(connection.id, f"cannot merge tools while {connection.status.value}")

        report = MergeReport(plugin_id=connection.id)
        with self._lock:
            descriptors = dict(self._descriptors)
            for name in self._plugin_tools.get(connection.id, []):
                descriptors.pop(name, None)

            accepted: list[str] = []
            for descriptor in connection.offered_tools:
                name = descriptor.name
                if not _TOOL_NAME_RE.match(name):
                    report.rejected[name] = "invalid tool name"
                elif name in accepted:
                    report.rejected[name] = "offered more than once by this plugin"
                elif name in descriptors:
                    owner = descriptors[name].source.label
                    report.rejected[name] = f"name already provided by {owner}"
                else:
                    descriptors[name] = descriptor
                    accepted.append(name)

            report.accepted = accepted
            self._descriptors = descriptors
            self._plugin_tools[connection.id] = accepted
            self._publish_locked()

        for name, reason in report.rejected.items():
            log.warning("Plugin tool unavailable", plugin=connection.id, tool=name, reason=reason)
        log.info("Merged plugin tools", plugin=connection.id, accepted=len(report.accepted), rejected=len(report.rejected))
        self._notify(added=list(report.accepted), source=f"plugin:{connection.id}")
        return report

    def remove_plugin(self, plugin_id: str) -> list[str]:
        """Drop every tool merged from one plugin; returns the removed names."""
        with self._lock:
            removed = self._plugin_tools.pop(plugin_id, [])
            if not removed:
                return []
            descriptors = dict(self._descriptors)
            for name in removed:
                descriptors.pop(name, None)
            self._descriptors = descriptors
            self._publish_locked()
        log.info("Removed plugin tools", plugin=plugin_id, count=len(removed))
        self._notify(removed=list(removed), source=f"plugin:{plugin_id}")
        return removed

    def lookup(self, name: str) -> ToolDescriptor:
        """Resolve a tool name.

        Raises:
            ToolNotFoundError if not found
        """
        return self._catalog.lookup(name)

    def has_tool(self, name: str) -> bool:
        return name in self._catalog

    def catalog(self) -> ToolCatalog:
        """Frozen view of the namespace for the current turn."""
        return self._catalog

    def list_tools(self) -> list[str]:
        return self._catalog.names

    def plugin_tools(self, plugin_id: str) -> list[str]:
        return list(self._plugin_tools.get(plugin_id, []))

    async def close(self) -> None:
        """Close built-in tools that hold resources."""
        for tool in list(self._builtins.values()):
            try:
                await tool.close()
            except Exception as e:
                log.warning("Failed to close tool", tool=tool.name, error=str(e))
