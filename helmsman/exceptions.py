"""Custom exceptions for Helmsman."""


class HelmsmanError(Exception):
    """Base exception for Helmsman."""

    pass


class ConfigurationError(HelmsmanError):
    """Configuration-related errors."""

    pass


class LLMError(HelmsmanError):
    """Model backend errors."""

    pass


class LLMAPIError(LLMError):
    """Model API errors (rate limit, auth, server failure)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(HelmsmanError):
    """Tool execution errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str, available: list[str] | None = None):
        message = f"Tool not found: {tool_name}"
        if available:
            message += f". Available tools: {', '.join(available)}"
        super().__init__(message)
        self.tool_name = tool_name
        self.available = list(available or [])


class SchemaError(ToolError):
    """Tool arguments do not match the declared parameter schema."""

    def __init__(self, tool_name: str, field_path: str, expected: str, message: str):
        location = field_path or "<arguments>"
        super().__init__(
            f"Invalid arguments for tool '{tool_name}': field '{location}' {message} (expected {expected})"
        )
        self.tool_name = tool_name
        self.field_path = field_path
        self.expected = expected
        self.detail = message


class DuplicateNameError(HelmsmanError):
    """A name was registered twice in a namespace that must stay unique."""

    def __init__(self, name: str, scope: str = "tool"):
        super().__init__(f"Duplicate {scope} name: {name}")
        self.name = name
        self.scope = scope


class PluginError(HelmsmanError):
    """Plugin (external tool provider) errors."""

    pass


class PluginConnectionError(PluginError):
    """Plugin could not be spawned, handshaked, or reached."""

    def __init__(self, plugin_id: str, message: str):
        super().__init__(f"Plugin '{plugin_id}' connection failed: {message}")
        self.plugin_id = plugin_id


class PluginProtocolError(PluginError):
    """Plugin answered with something that does not follow the protocol."""

    pass


class CommandError(HelmsmanError):
    """Slash-command errors."""

    pass


class CommandNotFoundError(CommandError):
    """No command matches the invocation path."""

    def __init__(self, path: str):
        super().__init__(f"Unknown command: /{path}")
        self.path = path


class BudgetExceededError(HelmsmanError):
    """Session turn or token ceiling reached."""

    def __init__(self, kind: str, limit: int, used: int):
        super().__init__(f"Session {kind} budget exceeded: {used} used, limit {limit}")
        self.kind = kind
        self.limit = limit
        self.used = used
