"""Tools package for Helmsman."""

from helmsman.config import ToolsConfig
from helmsman.logging import get_logger
from helmsman.tools.calls import ErrorKind, ToolCallRequest, ToolCallResult
from helmsman.tools.glob import GlobTool
from helmsman.tools.policy import ConfirmationPolicy, PolicyDecision, requires_confirmation
from helmsman.tools.read import ReadTool
from helmsman.tools.registry import MergeReport, Tool, ToolCatalog, ToolRegistry, ToolResult
from helmsman.tools.schema import ToolDescriptor, ToolSource, ValidatedArguments, validate
from helmsman.tools.shell import ShellTool
from helmsman.tools.web_fetch import WebFetchTool
from helmsman.tools.web_search import WebSearchTool
from helmsman.tools.write import WriteTool

log = get_logger(__name__)

BUILTIN_TOOL_CLASSES: dict[str, type[Tool]] = {
    "shell": ShellTool,
    "read": ReadTool,
    "write": WriteTool,
    "glob": GlobTool,
    "web_fetch": WebFetchTool,
    "web_search": WebSearchTool,
}


def register_builtin_tools(registry: ToolRegistry, tools_config: ToolsConfig) -> list[str]:
    """Register the enabled built-in tools, honoring the exclude list."""
    excluded = {name.strip() for name in tools_config.exclude}
    registered: list[str] = []
    for name in tools_config.enabled:
        if name in excluded:
            continue
        tool_cls = BUILTIN_TOOL_CLASSES.get(name)
        if tool_cls is None:
            log.warning("Unknown built-in tool in config", tool=name)
            continue
        registry.register(tool_cls())
        registered.append(name)
    return registered


__all__ = [
    "BUILTIN_TOOL_CLASSES",
    "ConfirmationPolicy",
    "ErrorKind",
    "GlobTool",
    "MergeReport",
    "PolicyDecision",
    "ReadTool",
    "ShellTool",
    "Tool",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolResult",
    "ToolSource",
    "ValidatedArguments",
    "WebFetchTool",
    "WebSearchTool",
    "WriteTool",
    "register_builtin_tools",
    "requires_confirmation",
    "validate",
]
