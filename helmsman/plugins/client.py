"""Client owning one external tool provider and its connection."""

import asyncio
import re
import time
from typing import Any, Callable

from helmsman.cancellation import CancellationToken, race
from helmsman.events import EventChannel, EventKind
from helmsman.exceptions import PluginConnectionError, PluginProtocolError
from helmsman.logging import get_logger
from helmsman.plugins.models import (
    PluginCapabilities,
    PluginConnection,
    PluginSpec,
    PluginStatus,
    PromptDescriptor,
)
from helmsman.plugins.transport import PluginTransport, create_transport
from helmsman.tools.calls import ErrorKind, ToolCallResult
from helmsman.tools.schema import ToolDescriptor, ToolSource

log = get_logger(__name__)

_SANITIZE_RE = re.compile(r"[^A-Za-z0-9_.-]")
_CANCEL_GRACE_SECONDS = 0.5

TransportFactory = Callable[[PluginSpec], PluginTransport]
StatusListener = Callable[[PluginConnection], None]


def sanitize_tool_name(name: str) -> str:
    """Make a provider tool name usable as a model-visible identifier."""
    cleaned = _SANITIZE_RE.sub("_", name).strip("_")
    if cleaned and not (cleaned[0].isalpha() or cleaned[0] == "_"):
        cleaned = f"_{cleaned}"
    return cleaned


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PluginClient:
    """Connect to, call into, and shut down one provider.

    ``call`` never raises: every transport failure becomes an error result,
    and a fired token becomes a cancelled result without waiting for the
    provider.
    """

    def __init__(
        self,
        spec: PluginSpec,
        *,
        transport_factory: TransportFactory | None = None,
        events: EventChannel | None = None,
        on_status: StatusListener | None = None,
    ):
        self.spec = spec
        self._transport_factory = transport_factory or create_transport
        self._events = events
        self._on_status = on_status
        self._connection: PluginConnection | None = None
        self._remote_names: dict[str, str] = {}
        self._cancel_tasks: set[asyncio.Task[None]] = set()

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def connection(self) -> PluginConnection | None:
        return self._connection

    @property
    def status(self) -> PluginStatus:
        return self._connection.status if self._connection else PluginStatus.CLOSED

    def _set_status(self, status: PluginStatus, error: str = "") -> None:
        conn = self._connection
        if conn is None or conn.status == status:
            return
        conn.status = status
        if error:
            conn.error = error
        log.info("Plugin status changed", plugin=conn.id, status=status.value, error=error or None)
        if self._events is not None:
            self._events.publish(EventKind.PLUGIN_STATUS, plugin_id=conn.id, status=status.value, error=error)
        if self._on_status is not None:
            self._on_status(conn)

    def _build_descriptors(self, capabilities: PluginCapabilities) -> tuple[ToolDescriptor, ...]:
        descriptors: list[ToolDescriptor] = []
        self._remote_names = {}
        for tool in capabilities.tools:
            if not self.spec.offers_tool(tool.name):
                continue
            name = sanitize_tool_name(tool.name)
            if not name:
                log.warning("Skipping plugin tool with unusable name", plugin=self.id, tool=tool.name)
                continue
            self._remote_names.setdefault(name, tool.name)
            descriptors.append(
                ToolDescriptor(
                    name=name,
                    description=tool.description or f"Tool from plugin {self.id}",
                    parameters=tool.input_schema or {"type": "object", "properties": {}},
                    requires_confirmation=not self.spec.trust,
                    source=ToolSource.plugin(self.id),
                    remote_name=tool.name if tool.name != name else None,
                )
            )
        return tuple(descriptors)

    async def _handshake(self, transport: PluginTransport) -> PluginCapabilities:
        await transport.open()
        return await transport.list_capabilities()

    async def connect(self) -> PluginConnection:
        """Spawn or attach to the provider and perform the capability handshake.

        Raises:
            PluginConnectionError on spawn failure, handshake timeout, or
            protocol mismatch
        """
        if self._connection is not None and self._connection.status == PluginStatus.READY:
            return self._connection

        transport = self._transport_factory(self.spec)
        connection = PluginConnection(id=self.id, spec=self.spec, transport=transport)
        self._connection = connection
        log.info("Connecting plugin", plugin=self.id, transport=self.spec.transport)

        try:
            capabilities = await asyncio.wait_for(
                self._handshake(transport),
                timeout=self.spec.connect_timeout,
            )
        except asyncio.TimeoutError:
            failure = f"handshake timed out after {self.spec.connect_timeout}s"
        except PluginProtocolError as e:
            failure = f"protocol mismatch: {e}"
        except PluginConnectionError as e:
            failure = str(e)
        except Exception as e:
            failure = f"{type(e).__name__}: {e}"
        else:
            failure = ""

        if failure:
            await self._shutdown_transport(transport, timeout=1.0)
            self._set_status(PluginStatus.CLOSED, failure)
            raise PluginConnectionError(self.id, failure)

        connection.offered_tools = self._build_descriptors(capabilities)
        connection.offered_prompts = tuple(
            PromptDescriptor(
                name=prompt.name,
                plugin_id=self.id,
                description=prompt.description,
                arguments=prompt.arguments,
            )
            for prompt in capabilities.prompts
        )
        connection.server_name = capabilities.server_name or self.id
        self._set_status(PluginStatus.READY)
        log.info(
            "Plugin connected",
            plugin=self.id,
            tools=len(connection.offered_tools),
            prompts=len(connection.offered_prompts),
        )
        return connection

    def _unavailable(self, call_id: str, tool_name: str, started: float) -> ToolCallResult | None:
        conn = self._connection
        if conn is None:
            reason = "is not connected"
        elif conn.status != PluginStatus.READY:
            reason = f"is {conn.status.value}"
            if conn.error:
                reason += f" ({conn.error})"
        elif conn.transport is None or not conn.transport.alive:
            self._set_status(PluginStatus.DEGRADED, "connection dropped")
            reason = "is degraded (connection dropped)"
        else:
            return None
        return ToolCallResult.error(
            call_id,
            ErrorKind.CONNECTION_ERROR,
            f"Plugin '{self.id}' {reason}; tool '{tool_name}' is unavailable",
            tool_name=tool_name,
            duration_ms=_elapsed_ms(started),
        )

    def _send_cancel(self, transport: PluginTransport, call_id: str) -> None:
        if not transport.supports_cancel:
            return

        async def _notify() -> None:
            try:
                await asyncio.wait_for(transport.cancel(call_id), timeout=_CANCEL_GRACE_SECONDS)
            except Exception as e:
                log.debug("Plugin cancel notice failed", plugin=self.id, call_id=call_id, error=str(e))

        task = asyncio.create_task(_notify())
        self._cancel_tasks.add(task)
        task.add_done_callback(self._cancel_tasks.discard)

    async def call(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        token: CancellationToken,
        *,
        call_id: str = "",
    ) -> ToolCallResult:
        """Invoke a tool on the provider, bounded by the plugin timeout and the token."""
        started = time.monotonic()
        unavailable = self._unavailable(call_id, tool_name, started)
        if unavailable is not None:
            return unavailable

        conn = self._connection
        assert conn is not None and conn.transport is not None
        transport = conn.transport
        remote_name = self._remote_names.get(tool_name, tool_name)

        try:
            outcome = await race(
                transport.invoke(call_id, remote_name, dict(arguments)),
                token,
                timeout=self.spec.timeout,
                grace=_CANCEL_GRACE_SECONDS,
                label=f"plugin:{self.id}:{tool_name}",
            )
        except PluginProtocolError as e:
            log.warning("Malformed plugin response", plugin=self.id, tool=tool_name, error=str(e))
            return ToolCallResult.error(
                call_id,
                ErrorKind.CONNECTION_ERROR,
                f"Plugin '{self.id}' sent a malformed response for '{tool_name}': {e}",
                tool_name=tool_name,
                duration_ms=_elapsed_ms(started),
            )
        except Exception as e:
            self._set_status(PluginStatus.DEGRADED, str(e) or type(e).__name__)
            return ToolCallResult.error(
                call_id,
                ErrorKind.CONNECTION_ERROR,
                f"Plugin '{self.id}' failed while running '{tool_name}': {e or type(e).__name__}",
                tool_name=tool_name,
                duration_ms=_elapsed_ms(started),
            )

        if outcome.status == "cancelled":
            self._send_cancel(transport, call_id)
            return ToolCallResult.cancelled(
                call_id,
                outcome.reason,
                tool_name=tool_name,
                duration_ms=_elapsed_ms(started),
            )
        if outcome.status == "timeout":
            self._send_cancel(transport, call_id)
            return ToolCallResult.error(
                call_id,
                ErrorKind.CONNECTION_ERROR,
                f"Plugin '{self.id}' did not answer '{tool_name}' within {self.spec.timeout}s",
                tool_name=tool_name,
                duration_ms=_elapsed_ms(started),
            )

        result = outcome.value
        assert result is not None
        if result.is_error:
            return ToolCallResult.error(
                call_id,
                ErrorKind.EXECUTION_ERROR,
                result.text,
                tool_name=tool_name,
                duration_ms=_elapsed_ms(started),
            )
        return ToolCallResult.success(call_id, result.text, tool_name=tool_name, duration_ms=_elapsed_ms(started))

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> str:
        """Render a prompt offered by the provider.

        Raises:
            PluginConnectionError if the provider is not ready
        """
        conn = self._connection
        if conn is None or conn.status != PluginStatus.READY or conn.transport is None:
            raise PluginConnectionError(self.id, "not ready")
        return await asyncio.wait_for(conn.transport.get_prompt(name, arguments), timeout=self.spec.timeout)

    async def _shutdown_transport(self, transport: PluginTransport, timeout: float) -> None:
        try:
            await asyncio.wait_for(transport.close(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Plugin did not close in time; forcing termination", plugin=self.id, timeout=timeout)
            transport.abort()
        except Exception as e:
            log.warning("Error closing plugin", plugin=self.id, error=str(e))
            transport.abort()

    async def close(self, timeout: float = 5.0) -> None:
        """Graceful shutdown with a forced fallback; safe to call repeatedly."""
        conn = self._connection
        if conn is None or conn.status == PluginStatus.CLOSED:
            return
        self._set_status(PluginStatus.CLOSED)
        if conn.transport is not None:
            await self._shutdown_transport(conn.transport, timeout)
        for task in list(self._cancel_tasks):
            task.cancel()
