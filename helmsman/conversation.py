"""The turn cycle: model request, tool batch, repeat until the model answers."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Sequence

from helmsman.cancellation import CancellationToken, race
from helmsman.config import SessionConfig, get_config
from helmsman.events import EventChannel, EventKind
from helmsman.exceptions import BudgetExceededError
from helmsman.llm import LLMProvider, Message, ToolCall, ToolDefinition
from helmsman.logging import get_logger
from helmsman.orchestrator import ExecutionOrchestrator
from helmsman.session import SessionRecorder
from helmsman.tools.calls import ToolCallRequest, ToolCallResult
from helmsman.tools.registry import ToolCatalog, ToolRegistry

log = get_logger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    HAS_TOOL_CALLS = "has_tool_calls"
    HAS_CONTENT = "has_content"
    CANCELLED = "cancelled"
    BUDGET_EXCEEDED = "budget_exceeded"


@dataclass(frozen=True)
class HistoryEntry:
    """One element of the conversation history."""

    role: str
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_results: tuple[ToolCallResult, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "tool_calls": [call.model_dump() for call in self.tool_calls],
            "tool_results": [result.model_dump(mode="json") for result in self.tool_results],
        }

    def to_messages(self) -> list[Message]:
        if self.role == "tool":
            return [
                Message(
                    role="tool",
                    content=result.to_model_content(),
                    tool_call_id=result.call_id,
                    tool_name=result.tool_name,
                )
                for result in self.tool_results
            ]
        if self.tool_calls:
            return [
                Message(
                    role=self.role,
                    content=self.content,
                    tool_calls=[ToolCall(id=c.call_id, name=c.tool_name, arguments=dict(c.arguments)) for c in self.tool_calls],
                )
            ]
        return [Message(role=self.role, content=self.content)]


@dataclass
class TurnOutcome:
    state: LoopState
    content: str = ""
    reason: str = ""
    model_requests: int = 0
    tool_results: list[ToolCallResult] = field(default_factory=list)


class ConversationUI(Protocol):
    def show_content(self, content: str) -> None: ...

    def show_tool_results(self, results: Sequence[ToolCallResult]) -> None: ...

    def show_notice(self, text: str) -> None: ...


class ConversationLoop:
    """Owns the history of one session and drives its turns.

    Only this class appends to the history. Tool results are appended
    together with the assistant's tool-call entry once the whole batch has
    returned, so a cancelled batch leaves no partial record behind.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        orchestrator: ExecutionOrchestrator,
        *,
        session_id: str = "",
        session_config: SessionConfig | None = None,
        system_prompt: str | None = None,
        ui: ConversationUI | None = None,
        recorder: SessionRecorder | None = None,
        events: EventChannel | None = None,
        grace_period: float = 2.0,
    ):
        cfg = get_config()
        self.provider = provider
        self.registry = registry
        self.orchestrator = orchestrator
        self.session_id = session_id
        self.session_config = session_config or cfg.session
        self.system_prompt = cfg.model.system_prompt if system_prompt is None else system_prompt
        self.ui = ui
        self.recorder = recorder
        self._events = events
        self.grace_period = grace_period
        self._history: list[HistoryEntry] = []
        self.state = LoopState.IDLE
        self.model_requests = 0
        self.tokens_used = 0

    @property
    def history(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._history)

    def clear(self) -> None:
        """Forget the conversation; budgets keep counting for the session."""
        self._history = []
        self.state = LoopState.IDLE

    def _append(self, *entries: HistoryEntry) -> None:
        self._history.extend(entries)
        if self.recorder is not None and self.session_id:
            self.recorder.record(self.session_id, entries)

    def _check_budget(self) -> None:
        max_turns = int(self.session_config.max_turns or 0)
        if max_turns and self.model_requests >= max_turns:
            self.state = LoopState.BUDGET_EXCEEDED
            raise BudgetExceededError("turn", max_turns, self.model_requests)
        max_tokens = int(self.session_config.max_tokens or 0)
        if max_tokens and self.tokens_used >= max_tokens:
            self.state = LoopState.BUDGET_EXCEEDED
            raise BudgetExceededError("token", max_tokens, self.tokens_used)

    def _build_messages(self) -> list[Message]:
        messages: list[Message] = []
        if self.system_prompt:
            messages.append(Message(role="system", content=self.system_prompt))
        for entry in self._history:
            messages.extend(entry.to_messages())
        return messages

    @staticmethod
    def _tool_definitions(catalog: ToolCatalog) -> list[ToolDefinition]:
        return [
            ToolDefinition(name=d.name, description=d.description, parameters=d.parameters)
            for d in catalog
        ]

    def _to_requests(self, tool_calls: Sequence[ToolCall]) -> list[ToolCallRequest]:
        """Build requests, assigning ids where the backend left them empty or repeated them."""
        requests: list[ToolCallRequest] = []
        used: set[str] = set()
        for index, call in enumerate(tool_calls):
            call_id = (call.id or "").strip()
            if not call_id or call_id in used:
                call_id = f"call_{self.model_requests}_{index}"
                while call_id in used:
                    call_id += "_"
            used.add(call_id)
            requests.append(
                ToolCallRequest(
                    call_id=call_id,
                    tool_name=call.name,
                    arguments=dict(call.arguments or {}),
                )
            )
        return requests

    def _cancelled(self, reason: str, requests: int, results: list[ToolCallResult] | None = None) -> TurnOutcome:
        self.state = LoopState.CANCELLED
        log.info("Turn cancelled", session_id=self.session_id, reason=reason)
        if self._events is not None:
            self._events.publish(EventKind.SESSION_CANCELLED, session_id=self.session_id, reason=reason)
        if self.ui is not None:
            self.ui.show_notice(f"Cancelled: {reason}")
        return TurnOutcome(
            state=LoopState.CANCELLED,
            reason=reason,
            model_requests=requests,
            tool_results=results or [],
        )

    async def run(self, user_input: str, token: CancellationToken) -> TurnOutcome:
        """Process one user turn until the model answers with content.

        Raises:
            BudgetExceededError when the session ceiling is reached
            LLMError when the model backend fails
        """
        if token.cancelled:
            return self._cancelled(token.reason, 0)

        requests_this_turn = 0
        all_results: list[ToolCallResult] = []

        try:
            self._check_budget()
            self._append(HistoryEntry(role="user", content=user_input))
            while True:
                if token.cancelled:
                    return self._cancelled(token.reason, requests_this_turn, all_results)
                self._check_budget()

                catalog = self.registry.catalog()
                self.state = LoopState.AWAITING_MODEL
                self.model_requests += 1
                requests_this_turn += 1
                log.debug("Requesting model turn", session_id=self.session_id, request=self.model_requests, tools=len(catalog))
                outcome = await race(
                    self.provider.complete(self._build_messages(), tools=self._tool_definitions(catalog) or None),
                    token,
                    grace=self.grace_period,
                    label="model",
                )
                if outcome.status != "done":
                    return self._cancelled(outcome.reason or token.reason, requests_this_turn, all_results)

                response = outcome.value
                assert response is not None
                self.tokens_used += int(response.usage.get("total_tokens", 0) or 0)

                if not response.tool_calls:
                    self.state = LoopState.HAS_CONTENT
                    self._append(HistoryEntry(role="assistant", content=response.content))
                    if self.ui is not None:
                        self.ui.show_content(response.content)
                    return TurnOutcome(
                        state=LoopState.HAS_CONTENT,
                        content=response.content,
                        model_requests=requests_this_turn,
                        tool_results=all_results,
                    )

                self.state = LoopState.HAS_TOOL_CALLS
                requests = self._to_requests(response.tool_calls)
                results = await self.orchestrator.execute_batch(requests, token, catalog)
                if token.cancelled:
                    return self._cancelled(token.reason, requests_this_turn, all_results + results)

                self._append(
                    HistoryEntry(role="assistant", content=response.content, tool_calls=tuple(requests)),
                    HistoryEntry(role="tool", tool_results=tuple(results)),
                )
                all_results.extend(results)
                if self.ui is not None:
                    self.ui.show_tool_results(results)
        except BudgetExceededError as e:
            log.warning("Session budget exceeded", session_id=self.session_id, kind=e.kind, limit=e.limit, used=e.used)
            raise
        except Exception:
            self.state = LoopState.IDLE
            raise

    async def flush(self) -> None:
        if self.recorder is not None:
            await self.recorder.flush()
