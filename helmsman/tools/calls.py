"""Tool-call requests issued by the model and the results fed back to it."""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ErrorKind(str, Enum):
    """Recoverable failure classes surfaced to the model."""

    SCHEMA_ERROR = "schema_error"
    TOOL_NOT_FOUND = "tool_not_found"
    CONNECTION_ERROR = "connection_error"
    EXECUTION_ERROR = "execution_error"
    POLICY_DENIED = "policy_denied"


class ToolCallRequest(BaseModel):
    """One tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    issued_by: str = "model"


class ToolCallResult(BaseModel):
    """Terminal outcome of one tool call."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    tool_name: str = ""
    outcome: Literal["success", "error", "cancelled"]
    payload: str = ""
    error_kind: ErrorKind | None = None
    message: str = ""
    duration_ms: int = 0

    @model_validator(mode="before")
    @classmethod
    def _require_error_details(cls, data: Any) -> Any:
        """Errors always carry a kind and a readable message."""
        if isinstance(data, dict) and data.get("outcome") == "error":
            data = dict(data)
            if data.get("error_kind") is None:
                data["error_kind"] = ErrorKind.EXECUTION_ERROR
            if not str(data.get("message") or "").strip():
                data["message"] = "Tool execution failed"
        return data

    @classmethod
    def success(cls, call_id: str, payload: str, *, tool_name: str = "", duration_ms: int = 0) -> "ToolCallResult":
        return cls(
            call_id=call_id,
            tool_name=tool_name,
            outcome="success",
            payload=payload,
            duration_ms=duration_ms,
        )

    @classmethod
    def error(
        cls,
        call_id: str,
        kind: ErrorKind,
        message: str,
        *,
        tool_name: str = "",
        duration_ms: int = 0,
    ) -> "ToolCallResult":
        return cls(
            call_id=call_id,
            tool_name=tool_name,
            outcome="error",
            error_kind=kind,
            message=message,
            duration_ms=duration_ms,
        )

    @classmethod
    def cancelled(
        cls,
        call_id: str,
        reason: str = "Cancelled",
        *,
        tool_name: str = "",
        duration_ms: int = 0,
    ) -> "ToolCallResult":
        return cls(
            call_id=call_id,
            tool_name=tool_name,
            outcome="cancelled",
            message=reason,
            duration_ms=duration_ms,
        )

    def with_duration(self, duration_ms: int) -> "ToolCallResult":
        return self.model_copy(update={"duration_ms": duration_ms})

    @property
    def ok(self) -> bool:
        return self.outcome == "success"

    def to_model_content(self) -> str:
        """Text the model sees for this result."""
        if self.outcome == "success":
            return self.payload or "[no output]"
        if self.outcome == "cancelled":
            return f"Cancelled: {self.message or 'the call was cancelled'}"
        kind = self.error_kind.value if self.error_kind else ErrorKind.EXECUTION_ERROR.value
        return f"Error ({kind}): {self.message}"
