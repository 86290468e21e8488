"""Startup, dispatch and teardown for every configured plugin."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from helmsman.cancellation import CancellationToken
from helmsman.events import EventChannel
from helmsman.exceptions import PluginConnectionError, PluginError
from helmsman.logging import get_logger
from helmsman.plugins.client import PluginClient, TransportFactory
from helmsman.plugins.models import PluginConnection, PluginSpec, PluginStatus, PromptDescriptor
from helmsman.tools.calls import ErrorKind, ToolCallResult
from helmsman.tools.registry import MergeReport, ToolRegistry

log = get_logger(__name__)


@dataclass
class PluginStartupReport:
    """What happened when the configured plugins were started."""

    merged: dict[str, MergeReport] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed and not any(report.has_rejections for report in self.merged.values())


class PluginManager:
    """Owns every PluginClient of a session and keeps the registry in step with them."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        events: EventChannel | None = None,
        transport_factory: TransportFactory | None = None,
        close_timeout: float = 5.0,
    ):
        self.registry = registry
        self._events = events
        self._transport_factory = transport_factory
        self.close_timeout = close_timeout
        self._clients: dict[str, PluginClient] = {}
        self._failures: dict[str, str] = {}

    def _on_status(self, connection: PluginConnection) -> None:
        if connection.status in {PluginStatus.DEGRADED, PluginStatus.CLOSED}:
            removed = self.registry.remove_plugin(connection.id)
            if removed:
                log.warning(
                    "Plugin tools marked unavailable",
                    plugin=connection.id,
                    status=connection.status.value,
                    tools=removed,
                )

    def _make_client(self, spec: PluginSpec) -> PluginClient:
        return PluginClient(
            spec,
            transport_factory=self._transport_factory,
            events=self._events,
            on_status=self._on_status,
        )

    async def _start_one(self, client: PluginClient) -> MergeReport:
        connection = await client.connect()
        return self.registry.merge_plugin(connection)

    async def start(self, specs: list[PluginSpec]) -> PluginStartupReport:
        """Connect all plugins concurrently and merge the ready ones.

        A failed plugin is recorded and skipped unless its spec is ``required``.

        Raises:
            PluginConnectionError if a required plugin could not connect
        """
        report = PluginStartupReport()
        if not specs:
            return report

        clients: list[PluginClient] = []
        for spec in specs:
            if spec.id in self._clients:
                log.warning("Duplicate plugin id; keeping the first", plugin=spec.id)
                report.failed[spec.id] = "duplicate plugin id"
                continue
            client = self._make_client(spec)
            self._clients[spec.id] = client
            clients.append(client)

        results = await asyncio.gather(
            *(self._start_one(client) for client in clients),
            return_exceptions=True,
        )

        required_failure: PluginConnectionError | None = None
        for client, result in zip(clients, results):
            if isinstance(result, MergeReport):
                report.merged[client.id] = result
                self._failures.pop(client.id, None)
                continue
            if isinstance(result, asyncio.CancelledError):
                raise result
            message = str(result)
            report.failed[client.id] = message
            self._failures[client.id] = message
            log.warning("Plugin failed to start", plugin=client.id, error=message, required=client.spec.required)
            if client.spec.required and required_failure is None:
                if isinstance(result, PluginConnectionError):
                    required_failure = result
                else:
                    required_failure = PluginConnectionError(client.id, message)

        if required_failure is not None:
            await self.close_all()
            raise required_failure
        return report

    def client(self, plugin_id: str) -> PluginClient | None:
        return self._clients.get(plugin_id)

    def connections(self) -> list[PluginConnection]:
        return [client.connection for client in self._clients.values() if client.connection is not None]

    def failures(self) -> dict[str, str]:
        return dict(self._failures)

    def describe(self) -> list[dict[str, Any]]:
        """Status rows for every known plugin, failed ones included."""
        rows: list[dict[str, Any]] = []
        for plugin_id, client in self._clients.items():
            conn = client.connection
            rows.append(
                {
                    "id": plugin_id,
                    "status": client.status.value,
                    "tools": self.registry.plugin_tools(plugin_id),
                    "prompts": [p.name for p in conn.offered_prompts] if conn else [],
                    "error": (conn.error if conn else "") or self._failures.get(plugin_id, ""),
                    "extension": client.spec.extension_id,
                }
            )
        return rows

    async def call_tool(
        self,
        plugin_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        token: CancellationToken,
        *,
        call_id: str = "",
    ) -> ToolCallResult:
        """Route a call to the owning plugin client."""
        client = self._clients.get(plugin_id)
        if client is None:
            return ToolCallResult.error(
                call_id,
                ErrorKind.CONNECTION_ERROR,
                f"Plugin '{plugin_id}' is not configured; tool '{tool_name}' is unavailable",
                tool_name=tool_name,
            )
        return await client.call(tool_name, arguments, token, call_id=call_id)

    def prompts(self) -> list[PromptDescriptor]:
        prompts: list[PromptDescriptor] = []
        for client in self._clients.values():
            conn = client.connection
            if conn is not None and conn.status == PluginStatus.READY:
                prompts.extend(conn.offered_prompts)
        return prompts

    async def get_prompt(self, plugin_id: str, name: str, arguments: dict[str, str]) -> str:
        client = self._clients.get(plugin_id)
        if client is None:
            raise PluginError(f"Unknown plugin: {plugin_id}")
        return await client.get_prompt(name, arguments)

    async def refresh(self, plugin_id: str) -> MergeReport:
        """Reconnect one plugin and merge its tools again.

        Raises:
            PluginError if the plugin is unknown
            PluginConnectionError if it cannot reconnect
        """
        client = self._clients.get(plugin_id)
        if client is None:
            raise PluginError(f"Unknown plugin: {plugin_id}")
        await client.close(self.close_timeout)
        try:
            connection = await client.connect()
        except PluginConnectionError as e:
            self._failures[plugin_id] = str(e)
            raise
        self._failures.pop(plugin_id, None)
        return self.registry.merge_plugin(connection)

    async def close_all(self) -> None:
        """Shut every plugin down concurrently."""
        clients = list(self._clients.values())
        if not clients:
            return
        results = await asyncio.gather(
            *(client.close(self.close_timeout) for client in clients),
            return_exceptions=True,
        )
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                log.warning("Plugin close failed", plugin=client.id, error=str(result))
        log.info("Closed plugins", count=len(clients))
