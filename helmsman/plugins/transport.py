"""Request/response channels to external tool providers.

``McpTransport`` speaks the Model Context Protocol through the ``mcp`` SDK.
The SDK's transports use anyio cancel scopes, which must be entered and
exited inside the same task, so each connection is owned by one long-lived
lifecycle task that holds the exit stack from connect until shutdown.
Requests are issued from the callers' tasks.
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Any

from helmsman.exceptions import PluginConnectionError, PluginProtocolError
from helmsman.logging import get_logger
from helmsman.plugins.models import (
    InvokeResult,
    PluginCapabilities,
    PluginSpec,
    PromptArgument,
    RemotePrompt,
    RemoteTool,
)

log = get_logger(__name__)


class PluginTransport(ABC):
    """One request/response channel to a provider process or endpoint."""

    supports_cancel: bool = False

    @abstractmethod
    async def open(self) -> None:
        """Spawn or attach to the provider."""

    @abstractmethod
    async def list_capabilities(self) -> PluginCapabilities:
        """Capability handshake: tools and prompts on offer."""

    @abstractmethod
    async def invoke(self, call_id: str, name: str, arguments: dict[str, Any]) -> InvokeResult:
        """Call one tool and wait for its correlated response."""

    async def cancel(self, call_id: str) -> None:
        """Best-effort notice that a call is no longer wanted."""
        return None

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> str:
        raise PluginProtocolError(f"Prompt '{name}' is not supported by this transport")

    @abstractmethod
    async def close(self) -> None:
        """Graceful shutdown."""

    def abort(self) -> None:
        """Forced termination after a graceful close timed out."""
        return None

    @property
    @abstractmethod
    def alive(self) -> bool:
        """Whether the channel can still carry requests."""


def convert_input_schema(input_schema: dict[str, Any] | None) -> dict[str, Any]:
    """Normalize a provider's input schema into a model-facing parameter schema."""
    schema = copy.deepcopy(input_schema or {})
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.pop("$schema", None)
    schema.pop("$id", None)
    return schema


def normalize_call_result(result: Any) -> InvokeResult:
    """Convert an MCP ``CallToolResult`` into text plus an error flag."""
    content = getattr(result, "content", None)
    if content is None:
        raise PluginProtocolError("Tool result has no content field")

    for block in content:
        if getattr(block, "type", None) != "text" or not isinstance(getattr(block, "text", None), str):
            continue
        try:
            payload = json.loads(block.text)
        except (TypeError, json.JSONDecodeError):
            continue
        if not isinstance(payload, dict) or "ok" not in payload:
            continue
        if payload.get("ok") is False:
            message = payload.get("error") or payload.get("message") or "Plugin tool returned an error"
            return InvokeResult(text=str(message), is_error=True)
        if payload.get("ok") is True and "result" in payload:
            return InvokeResult(text=json.dumps(payload["result"], ensure_ascii=False))

    parts: list[str] = []
    for block in content:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            parts.append(block.text)
        elif block_type in {"image", "audio"}:
            mime = getattr(block, "mimeType", "unknown")
            data = getattr(block, "data", "") or ""
            parts.append(f"[{block_type}: {mime}, {len(data)} bytes]")
        elif block_type == "resource":
            resource = getattr(block, "resource", None)
            text = getattr(resource, "text", None) if resource is not None else None
            parts.append(text or f"[resource: {getattr(resource, 'uri', 'unknown')}]")
        else:
            parts.append(f"[{block_type or 'unknown'}: unsupported content type]")

    text = "\n".join(parts)
    if getattr(result, "isError", False):
        return InvokeResult(text=text or "Plugin tool returned an error", is_error=True)
    return InvokeResult(text=text or "(empty result)")


class McpTransport(PluginTransport):
    """MCP client over stdio, SSE or streamable HTTP."""

    def __init__(self, spec: PluginSpec):
        self.spec = spec
        self._session: Any = None
        self._init_result: Any = None
        self._lifecycle: asyncio.Task[None] | None = None
        self._ready: asyncio.Event | None = None
        self._shutdown: asyncio.Event | None = None
        self._startup_error: BaseException | None = None

    @property
    def alive(self) -> bool:
        return (
            self._session is not None
            and self._lifecycle is not None
            and not self._lifecycle.done()
        )

    async def _open_streams(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        spec = self.spec
        if spec.transport == "sse":
            from mcp.client.sse import sse_client

            return await stack.enter_async_context(
                sse_client(url=spec.url, headers=spec.headers or None, timeout=spec.connect_timeout)
            )
        if spec.transport == "http":
            from mcp.client.streamable_http import streamablehttp_client

            read_stream, write_stream, _ = await stack.enter_async_context(
                streamablehttp_client(spec.url, headers=spec.headers or None)
            )
            return read_stream, write_stream

        from mcp import StdioServerParameters
        from mcp.client.stdio import stdio_client

        params = StdioServerParameters(
            command=spec.command,
            args=list(spec.args),
            env=dict(spec.env) or None,
            cwd=spec.cwd or None,
        )
        return await stack.enter_async_context(stdio_client(params))

    async def _run(self) -> None:
        """Own the connection from connect through shutdown."""
        from mcp import ClientSession

        assert self._ready is not None and self._shutdown is not None
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await self._open_streams(stack)
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                self._init_result = await session.initialize()
                self._session = session
                self._ready.set()
                await self._shutdown.wait()
        except Exception as e:
            if not self._ready.is_set():
                self._startup_error = e
            else:
                log.warning("Plugin connection ended with error", plugin=self.spec.id, error=str(e))
        finally:
            self._session = None
            self._ready.set()

    async def open(self) -> None:
        self._ready = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._lifecycle = asyncio.create_task(self._run(), name=f"plugin-{self.spec.id}")
        await self._ready.wait()
        if self._startup_error is not None:
            raise PluginConnectionError(self.spec.id, str(self._startup_error)) from self._startup_error
        if self._session is None:
            raise PluginConnectionError(self.spec.id, "provider exited during startup")

    def _require_session(self) -> Any:
        if self._session is None:
            raise PluginConnectionError(self.spec.id, "connection is not open")
        return self._session

    async def list_capabilities(self) -> PluginCapabilities:
        session = self._require_session()
        capabilities = getattr(self._init_result, "capabilities", None)
        server_info = getattr(self._init_result, "serverInfo", None)

        tools: tuple[RemoteTool, ...] = ()
        if capabilities is None or getattr(capabilities, "tools", None) is not None:
            listed = await session.list_tools()
            tools = tuple(
                RemoteTool(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=convert_input_schema(tool.inputSchema),
                )
                for tool in listed.tools
            )

        prompts: tuple[RemotePrompt, ...] = ()
        if capabilities is not None and getattr(capabilities, "prompts", None) is not None:
            listed_prompts = await session.list_prompts()
            prompts = tuple(
                RemotePrompt(
                    name=prompt.name,
                    description=prompt.description or "",
                    arguments=tuple(
                        PromptArgument(
                            name=arg.name,
                            description=arg.description or "",
                            required=bool(arg.required),
                        )
                        for arg in (prompt.arguments or [])
                    ),
                )
                for prompt in listed_prompts.prompts
            )

        return PluginCapabilities(
            tools=tools,
            prompts=prompts,
            server_name=getattr(server_info, "name", "") or self.spec.id,
            protocol_version=str(getattr(self._init_result, "protocolVersion", "") or ""),
        )

    async def invoke(self, call_id: str, name: str, arguments: dict[str, Any]) -> InvokeResult:
        session = self._require_session()
        result = await session.call_tool(name, arguments)
        return normalize_call_result(result)

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> str:
        session = self._require_session()
        result = await session.get_prompt(name, arguments=arguments or None)
        parts: list[str] = []
        for message in result.messages:
            content = message.content
            text = getattr(content, "text", None)
            if text:
                parts.append(text)
        return "\n\n".join(parts)

    async def close(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()
        if self._lifecycle is not None and not self._lifecycle.done():
            await asyncio.gather(self._lifecycle, return_exceptions=True)

    def abort(self) -> None:
        if self._lifecycle is not None and not self._lifecycle.done():
            self._lifecycle.cancel()


def create_transport(spec: PluginSpec) -> PluginTransport:
    """Default transport factory."""
    return McpTransport(spec)
