"""Cooperative cancellation tokens threaded through every suspending call."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, TypeVar

from helmsman.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class CancelledByToken(Exception):
    """Raised by ``raise_if_cancelled`` when the token has fired."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """Cancellation signal shared by a session, a batch, or a single call.

    A child token fires whenever its parent does; cancelling a child never
    affects the parent or its siblings.
    """

    def __init__(self, parent: "CancellationToken | None" = None):
        self._event = asyncio.Event()
        self._reason = ""
        self._callbacks: list[Callable[["CancellationToken"], None]] = []
        self._detach_parent: Callable[[], None] | None = None
        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.reason)
            else:
                self._detach_parent = parent.add_callback(lambda p: self.cancel(p.reason))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Cancelled") -> None:
        """Fire the token; later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason or "Cancelled"
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                log.warning("Cancellation callback failed", error=str(e))

    def add_callback(self, callback: Callable[["CancellationToken"], None]) -> Callable[[], None]:
        """Run callback when the token fires; returns a function that removes it."""
        if self.cancelled:
            callback(self)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def child(self) -> "CancellationToken":
        """Create a token scoped below this one."""
        return CancellationToken(parent=self)

    def release(self) -> None:
        """Detach from the parent once this scope is finished."""
        if self._detach_parent is not None:
            self._detach_parent()
            self._detach_parent = None

    async def wait(self) -> str:
        """Suspend until the token fires and return the reason."""
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledByToken(self._reason)


@dataclass
class RaceOutcome(Generic[T]):
    """Result of racing one awaitable against a token and a deadline."""

    status: Literal["done", "cancelled", "timeout"]
    value: T | None = None
    reason: str = ""
    abandoned: bool = False


async def _cancel_task(task: asyncio.Task[Any] | None, grace: float) -> bool:
    """Cancel task and wait up to ``grace`` seconds; True when it had to be abandoned."""
    if task is None or task.done():
        return False
    task.cancel()
    done, _ = await asyncio.wait({task}, timeout=max(0.0, grace))
    if task in done:
        if not task.cancelled():
            # Retrieve the exception so it is not reported as never retrieved.
            task.exception()
        return False
    return True


async def race(
    work: Awaitable[T],
    token: CancellationToken,
    *,
    timeout: float | None = None,
    grace: float = 2.0,
    label: str = "",
) -> RaceOutcome[T]:
    """Run ``work`` until it finishes, the token fires, or the deadline passes.

    Exceptions raised by ``work`` propagate to the caller. On cancellation or
    timeout the work task is cancelled and given ``grace`` seconds to unwind;
    a task that ignores cancellation is abandoned.
    """
    work_task: asyncio.Task[T] = asyncio.ensure_future(work)
    if token.cancelled:
        abandoned = await _cancel_task(work_task, grace)
        return RaceOutcome(status="cancelled", reason=token.reason, abandoned=abandoned)

    token_task = asyncio.create_task(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work_task, token_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if work_task in done:
            error = work_task.exception()
            if isinstance(error, CancelledByToken) and token.cancelled:
                return RaceOutcome(status="cancelled", reason=token.reason)
            return RaceOutcome(status="done", value=work_task.result())

        if token_task in done:
            abandoned = await _cancel_task(work_task, grace)
            if abandoned:
                log.warning("Abandoned non-cooperating task after cancellation", task=label)
            return RaceOutcome(status="cancelled", reason=token.reason, abandoned=abandoned)

        abandoned = await _cancel_task(work_task, grace)
        if abandoned:
            log.warning("Abandoned non-cooperating task after timeout", task=label)
        timeout_label = int(timeout) if timeout is not None and float(timeout).is_integer() else timeout
        return RaceOutcome(
            status="timeout",
            reason=f"Timed out after {timeout_label}s",
            abandoned=abandoned,
        )
    except asyncio.CancelledError:
        await _cancel_task(work_task, grace)
        raise
    finally:
        if not token_task.done():
            token_task.cancel()
            try:
                await token_task
            except asyncio.CancelledError:
                pass
