"""External tool providers (plugins) for Helmsman."""

from helmsman.plugins.client import PluginClient, sanitize_tool_name
from helmsman.plugins.manager import PluginManager, PluginStartupReport
from helmsman.plugins.models import (
    InvokeResult,
    PluginCapabilities,
    PluginConnection,
    PluginSpec,
    PluginStatus,
    PromptArgument,
    PromptDescriptor,
    RemotePrompt,
    RemoteTool,
)
from helmsman.plugins.transport import McpTransport, PluginTransport, create_transport

__all__ = [
    "InvokeResult",
    "McpTransport",
    "PluginCapabilities",
    "PluginClient",
    "PluginConnection",
    "PluginManager",
    "PluginSpec",
    "PluginStartupReport",
    "PluginStatus",
    "PluginTransport",
    "PromptArgument",
    "PromptDescriptor",
    "RemotePrompt",
    "RemoteTool",
    "create_transport",
    "sanitize_tool_name",
]
