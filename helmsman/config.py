"""Configuration management for Helmsman."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_HOME_DIR = Path("~/.helmsman").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_HOME_DIR / "config.yaml"
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "sessions.db"
LOCAL_CONFIG_FILENAME = "helmsman.yaml"


class ModelConfig(BaseModel):
    """Model backend configuration."""

    provider: str = "ollama"
    model: str = "qwen3:32b"
    temperature: float = 0.7
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    system_prompt: str = (
        "You are Helmsman, an agent working in the user's terminal. "
        "Use the available tools when they help answer the request."
    )


class SessionConfig(BaseModel):
    """Session storage and per-session budgets."""

    path: str = str(DEFAULT_DB_PATH)
    auto_save: bool = True
    # Ceilings on model requests / total tokens per session; 0 disables.
    max_turns: int = 50
    max_tokens: int = 0


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 30
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]
    allowed_commands: list[str] = []
    allow_patterns: list[str] = []
    deny_patterns: list[str] = []
    default_policy: Literal["allow", "ask", "deny"] = "ask"


class WebFetchToolConfig(BaseModel):
    """Web fetch tool configuration."""

    max_chars: int = 100000


class WebSearchToolConfig(BaseModel):
    """Web search tool configuration."""

    provider: str = "brave"
    api_key: str = ""
    base_url: str = "https://api.search.brave.com/res/v1/web/search"
    max_results: int = 5
    timeout: int = 20
    safesearch: str = "moderate"


class ToolsConfig(BaseModel):
    """Built-in tools and execution policy."""

    enabled: list[str] = [
        "shell",
        "read",
        "write",
        "glob",
        "web_fetch",
        "web_search",
    ]
    exclude: list[str] = []
    require_confirmation: list[str] = ["shell", "write"]
    approval_mode: Literal["default", "yolo"] = "default"
    default_timeout: float = 120.0
    grace_period: float = 2.0
    max_parallel: int = 8
    max_output_chars: int = 30000
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    web_fetch: WebFetchToolConfig = Field(default_factory=WebFetchToolConfig)
    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)


class PluginServerConfig(BaseModel):
    """One external tool provider, as written in the config file."""

    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str = ""
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    transport: Literal["stdio", "sse", "http"] | None = None
    timeout: float = 600.0
    connect_timeout: float = 30.0
    trust: bool = False
    include_tools: list[str] | None = None
    exclude_tools: list[str] = Field(default_factory=list)
    required: bool = False
    description: str = ""


class PluginsConfig(BaseModel):
    """Plugin (external tool provider) configuration."""

    servers: dict[str, PluginServerConfig] = Field(default_factory=dict)
    close_timeout: float = 5.0


class CommandsConfig(BaseModel):
    """Slash-command discovery locations."""

    user_dir: str = str(DEFAULT_HOME_DIR / "commands")
    project_dir: str = ".helmsman/commands"
    extensions_dir: str = str(DEFAULT_HOME_DIR / "extensions")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: Literal["console", "json"] = "console"
    # Empty logs to stderr.
    file: str = ""


class Config(BaseSettings):
    """Main configuration for Helmsman."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="HELMSMAN_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
