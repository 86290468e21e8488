"""Plugin specs, connection state and the data exchanged with providers."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, model_validator

from helmsman.config import PluginServerConfig
from helmsman.tools.schema import ToolDescriptor

if TYPE_CHECKING:
    from helmsman.plugins.transport import PluginTransport

_PLUGIN_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class PluginStatus(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


class PluginSpec(BaseModel):
    """How to reach one external tool provider."""

    id: str
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str = ""
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    transport: Literal["stdio", "sse", "http"] = "stdio"
    timeout: float = 600.0
    connect_timeout: float = 30.0
    trust: bool = False
    include_tools: list[str] | None = None
    exclude_tools: list[str] = Field(default_factory=list)
    required: bool = False
    description: str = ""
    extension_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _infer_transport(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("transport"):
            data = dict(data)
            data["transport"] = "http" if data.get("url") else "stdio"
        return data

    @model_validator(mode="after")
    def _check_endpoint(self) -> "PluginSpec":
        if not _PLUGIN_ID_RE.match(self.id):
            raise ValueError(f"Plugin id {self.id!r} must match [A-Za-z0-9_-]+")
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"Plugin {self.id!r} uses stdio transport but has no command")
        if self.transport in {"sse", "http"} and not self.url:
            raise ValueError(f"Plugin {self.id!r} uses {self.transport} transport but has no url")
        return self

    @classmethod
    def from_config(cls, plugin_id: str, server: PluginServerConfig, extension_id: str | None = None) -> "PluginSpec":
        data = server.model_dump(exclude_none=True)
        return cls(id=plugin_id, extension_id=extension_id, **data)

    def offers_tool(self, name: str) -> bool:
        """Apply include/exclude filters to a provider-side tool name."""
        if name in self.exclude_tools:
            return False
        if self.include_tools is not None:
            return name in self.include_tools
        return True


@dataclass(frozen=True)
class RemoteTool:
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PromptArgument:
    name: str
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class RemotePrompt:
    name: str
    description: str = ""
    arguments: tuple[PromptArgument, ...] = ()


@dataclass(frozen=True)
class PluginCapabilities:
    """Answer to the capability handshake."""

    tools: tuple[RemoteTool, ...] = ()
    prompts: tuple[RemotePrompt, ...] = ()
    server_name: str = ""
    protocol_version: str = ""


@dataclass(frozen=True)
class InvokeResult:
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class PromptDescriptor:
    """A prompt template offered by a plugin."""

    name: str
    plugin_id: str
    description: str = ""
    arguments: tuple[PromptArgument, ...] = ()


@dataclass
class PluginConnection:
    """Live state of one provider; mutated only by the PluginClient that owns it."""

    id: str
    spec: PluginSpec
    transport: "PluginTransport | None" = None
    status: PluginStatus = PluginStatus.CONNECTING
    offered_tools: tuple[ToolDescriptor, ...] = ()
    offered_prompts: tuple[PromptDescriptor, ...] = ()
    server_name: str = ""
    error: str = ""
