"""Run one model turn's tool calls: resolve, validate, approve, dispatch."""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, Sequence

from helmsman.cancellation import CancellationToken, race
from helmsman.config import ToolsConfig, get_config
from helmsman.events import EventChannel, EventKind
from helmsman.exceptions import SchemaError, ToolNotFoundError
from helmsman.logging import get_logger
from helmsman.tools.calls import ErrorKind, ToolCallRequest, ToolCallResult
from helmsman.tools.policy import ConfirmationPolicy
from helmsman.tools.registry import ToolCatalog, ToolRegistry, ToolResult
from helmsman.tools.schema import ToolDescriptor, validate

if TYPE_CHECKING:
    from helmsman.plugins.manager import PluginManager

log = get_logger(__name__)


class ConfirmationDecision(str, Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    CANCEL = "cancel"


@dataclass(frozen=True)
class ConfirmationRequest:
    """A single call waiting for the user's approval."""

    call_id: str
    descriptor: ToolDescriptor
    arguments: dict[str, Any]
    reason: str = ""


class ConfirmationHandler(Protocol):
    async def confirm(self, request: ConfirmationRequest) -> ConfirmationDecision: ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def truncate_output(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated, {len(text)} total chars]"


class ExecutionOrchestrator:
    """Execute a batch of tool calls against one catalog snapshot.

    Every request gets exactly one result, in request order. Calls run
    concurrently; a call waiting for confirmation does not hold up its
    siblings, and one call's failure never cancels another.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        plugins: "PluginManager | None" = None,
        policy: ConfirmationPolicy | None = None,
        confirmation: ConfirmationHandler | None = None,
        events: EventChannel | None = None,
        tools_config: ToolsConfig | None = None,
        session_id: str = "",
        workspace: Path | str | None = None,
    ):
        self.registry = registry
        self.plugins = plugins
        self.config = tools_config or get_config().tools
        self.policy = policy or ConfirmationPolicy(self.config)
        self.confirmation = confirmation
        self._events = events
        self.session_id = session_id
        self.workspace = Path(workspace) if workspace else Path.cwd()

    def _publish(self, kind: EventKind, **payload: Any) -> None:
        if self._events is not None:
            self._events.publish(kind, session_id=self.session_id, **payload)

    async def execute_batch(
        self,
        requests: Sequence[ToolCallRequest],
        token: CancellationToken,
        catalog: ToolCatalog | None = None,
    ) -> list[ToolCallResult]:
        """Run every request and return their results in request order.

        Raises:
            ValueError if two requests share a call id
        """
        seen: set[str] = set()
        for request in requests:
            if request.call_id in seen:
                raise ValueError(f"Duplicate call id in batch: {request.call_id}")
            seen.add(request.call_id)
        if not requests:
            return []

        snapshot = catalog or self.registry.catalog()
        semaphore = asyncio.Semaphore(max(1, int(self.config.max_parallel)))
        batch_token = token.child()
        try:
            results = await asyncio.gather(
                *(self._run_call(request, snapshot, batch_token, semaphore) for request in requests)
            )
        finally:
            batch_token.release()

        log.info(
            "Tool batch finished",
            calls=len(results),
            failed=sum(1 for r in results if r.outcome == "error"),
            cancelled=sum(1 for r in results if r.outcome == "cancelled"),
        )
        return list(results)

    async def _run_call(
        self,
        request: ToolCallRequest,
        catalog: ToolCatalog,
        token: CancellationToken,
        semaphore: asyncio.Semaphore,
    ) -> ToolCallResult:
        started = time.monotonic()
        self._publish(EventKind.TOOL_CALL_STARTED, call_id=request.call_id, tool=request.tool_name)
        try:
            result = await self._execute_call(request, catalog, token, semaphore)
        except Exception as e:
            log.error("Tool call failed unexpectedly", tool=request.tool_name, call_id=request.call_id, error=str(e))
            result = ToolCallResult.error(
                request.call_id,
                ErrorKind.EXECUTION_ERROR,
                f"Tool '{request.tool_name}' failed: {e}",
                tool_name=request.tool_name,
            )
        result = result.with_duration(_elapsed_ms(started))
        self._publish(
            EventKind.TOOL_CALL_FINISHED,
            call_id=request.call_id,
            tool=request.tool_name,
            outcome=result.outcome,
            duration_ms=result.duration_ms,
        )
        return result

    async def _execute_call(
        self,
        request: ToolCallRequest,
        catalog: ToolCatalog,
        token: CancellationToken,
        semaphore: asyncio.Semaphore,
    ) -> ToolCallResult:
        call_id, name = request.call_id, request.tool_name
        if token.cancelled:
            return ToolCallResult.cancelled(call_id, token.reason, tool_name=name)

        try:
            descriptor = catalog.lookup(name)
        except ToolNotFoundError as e:
            return ToolCallResult.error(call_id, ErrorKind.TOOL_NOT_FOUND, str(e), tool_name=name)

        try:
            arguments = validate(descriptor, request.arguments).values
        except SchemaError as e:
            log.info("Rejected tool arguments", tool=name, field=e.field_path, expected=e.expected)
            return ToolCallResult.error(call_id, ErrorKind.SCHEMA_ERROR, str(e), tool_name=name)

        decision = self.policy.evaluate(descriptor, arguments)
        if decision.action == "deny":
            log.warning("Tool call denied by policy", tool=name, reason=decision.reason)
            return ToolCallResult.error(
                call_id,
                ErrorKind.POLICY_DENIED,
                f"Tool '{name}' blocked: {decision.reason}",
                tool_name=name,
            )
        if decision.action == "ask":
            denial = await self._confirm(request, descriptor, arguments, decision.reason, token)
            if denial is not None:
                return denial

        async with semaphore:
            if token.cancelled:
                return ToolCallResult.cancelled(call_id, token.reason, tool_name=name)
            if descriptor.source.kind == "plugin":
                return await self._dispatch_plugin(request, descriptor, arguments, token)
            return await self._dispatch_builtin(request, catalog, arguments, token)

    async def _confirm(
        self,
        request: ToolCallRequest,
        descriptor: ToolDescriptor,
        arguments: dict[str, Any],
        reason: str,
        token: CancellationToken,
    ) -> ToolCallResult | None:
        """Wait for approval; returns a cancelled result unless the call may proceed."""
        call_id, name = request.call_id, request.tool_name
        if self.confirmation is None:
            log.warning("Tool requires confirmation but no handler is available", tool=name)
            return ToolCallResult.cancelled(call_id, "Confirmation required but no approver is available", tool_name=name)

        confirm_request = ConfirmationRequest(call_id=call_id, descriptor=descriptor, arguments=arguments, reason=reason)
        outcome = await race(
            self.confirmation.confirm(confirm_request),
            token,
            grace=self.config.grace_period,
            label=f"confirm:{name}",
        )
        if outcome.status != "done":
            return ToolCallResult.cancelled(call_id, outcome.reason, tool_name=name)

        if outcome.value == ConfirmationDecision.PROCEED_ALWAYS:
            self.policy.remember(descriptor, arguments)
            return None
        if outcome.value == ConfirmationDecision.PROCEED_ONCE:
            return None
        log.info("Tool call declined by user", tool=name, call_id=call_id)
        return ToolCallResult.cancelled(call_id, "Declined by user", tool_name=name)

    def _deadline_for(self, tool: Any, arguments: dict[str, Any]) -> float:
        deadline = float(getattr(tool, "timeout_seconds", 0) or self.config.default_timeout)
        override = arguments.get("timeout")
        if isinstance(override, (int, float)) and not isinstance(override, bool) and override > 0:
            # The tool enforces its own timeout; leave it room to report first.
            deadline = max(deadline, float(override) + 5.0)
        return max(1.0, deadline)

    async def _dispatch_builtin(
        self,
        request: ToolCallRequest,
        catalog: ToolCatalog,
        arguments: dict[str, Any],
        token: CancellationToken,
    ) -> ToolCallResult:
        call_id, name = request.call_id, request.tool_name
        tool = catalog.implementation(name)
        if tool is None:
            return ToolCallResult.error(
                call_id,
                ErrorKind.TOOL_NOT_FOUND,
                f"Tool '{name}' has no implementation in this session",
                tool_name=name,
            )

        call_token = token.child()
        deadline = self._deadline_for(tool, arguments)
        log.info("Executing tool", tool=name, call_id=call_id, timeout=deadline)
        try:
            outcome = await race(
                tool.execute(
                    **arguments,
                    _cancel_token=call_token,
                    _session_id=self.session_id,
                    _workspace=self.workspace,
                ),
                call_token,
                timeout=deadline,
                grace=self.config.grace_period,
                label=f"tool:{name}",
            )
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return ToolCallResult.error(call_id, ErrorKind.EXECUTION_ERROR, f"Tool '{name}' failed: {e}", tool_name=name)
        finally:
            call_token.release()

        if outcome.status == "cancelled":
            return ToolCallResult.cancelled(call_id, outcome.reason, tool_name=name)
        if outcome.status == "timeout":
            call_token.cancel(outcome.reason)
            return ToolCallResult.cancelled(call_id, outcome.reason, tool_name=name)

        result = outcome.value
        if not isinstance(result, ToolResult):
            return ToolCallResult.error(
                call_id,
                ErrorKind.EXECUTION_ERROR,
                f"Tool '{name}' returned an invalid result payload",
                tool_name=name,
            )
        log.info("Tool executed", tool=name, success=result.success)
        if not result.success:
            message = truncate_output(result.error or "Tool execution failed", self.config.max_output_chars)
            return ToolCallResult.error(call_id, ErrorKind.EXECUTION_ERROR, message, tool_name=name)
        return ToolCallResult.success(
            call_id,
            truncate_output(result.content, self.config.max_output_chars),
            tool_name=name,
        )

    async def _dispatch_plugin(
        self,
        request: ToolCallRequest,
        descriptor: ToolDescriptor,
        arguments: dict[str, Any],
        token: CancellationToken,
    ) -> ToolCallResult:
        call_id, name = request.call_id, request.tool_name
        plugin_id = descriptor.source.plugin_id or ""
        if self.plugins is None:
            return ToolCallResult.error(
                call_id,
                ErrorKind.CONNECTION_ERROR,
                f"Plugin '{plugin_id}' is not available; tool '{name}' cannot run",
                tool_name=name,
            )

        call_token = token.child()
        log.info("Calling plugin tool", plugin=plugin_id, tool=name, call_id=call_id)
        try:
            result = await self.plugins.call_tool(plugin_id, name, arguments, call_token, call_id=call_id)
        finally:
            call_token.release()

        if result.outcome == "success" and len(result.payload) > self.config.max_output_chars > 0:
            result = result.model_copy(update={"payload": truncate_output(result.payload, self.config.max_output_chars)})
        return result
