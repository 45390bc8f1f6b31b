"""
The asynchronous operation contract shared by every state machine.

An operation is advanced only by `OperationSystem.update()`. Each call runs
the work reachable without suspension and returns; I/O is delegated to
background asyncio tasks that are polled on later ticks.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import TYPE_CHECKING, Any

from bundlesync.exceptions import BundleSyncError, ContractViolationError

if TYPE_CHECKING:
    from .system import OperationSystem

log = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    PENDING = "pending"
    SUCCEED = "succeed"
    FAILED = "failed"


def describe_exception(exc: BaseException) -> str:
    """A readable message even for exceptions with empty text, like timeouts."""
    text = str(exc)
    if isinstance(exc, BundleSyncError):
        return text
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _consume_task_result(task: asyncio.Task) -> None:
    # Abandoned tasks free-run; retrieve their outcome so nothing is reported unhandled.
    if not task.cancelled():
        task.exception()


class AsyncOperation(ABC):
    """
    Base class for every operation driven by the scheduler.

    Subclasses implement `_start` and `_update`, and finish by calling
    `_succeed()` or `_fail(error)`. Once done, further ticks are no-ops.
    """

    def __init__(self) -> None:
        self.status = OperationStatus.PENDING
        self.error = ""
        self.progress = 0.0
        self.system: "OperationSystem | None" = None
        self._started = False
        self._notified = False
        self._callbacks: list[Callable[["AsyncOperation"], None]] = []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} status={self.status.value}>"

    @property
    def is_done(self) -> bool:
        return self.status != OperationStatus.PENDING

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def succeeded(self) -> bool:
        return self.status == OperationStatus.SUCCEED

    def add_done_callback(self, callback: Callable[["AsyncOperation"], None]) -> None:
        """Registers a callback; it runs immediately if the operation already finished."""
        if self._notified:
            callback(self)
        else:
            self._callbacks.append(callback)

    # Scheduler hooks
    def start_operation(self) -> None:
        if self._started:
            return
        self._started = True
        self._start()

    def update_operation(self) -> None:
        """Advances one step. An unexpected exception fails the operation instead of the tick."""
        if self.is_done:
            return
        try:
            self._update()
        except ContractViolationError:
            raise
        except Exception as e:
            error = describe_exception(e)
            log.error(f"[red]{type(self).__name__} failed unexpectedly: {error}[/red]")
            log.debug("Full traceback:", exc_info=True)
            self._on_abort()
            self._fail(error)

    def abort(self) -> None:
        """Force-completes the operation. Work already handed to the network free-runs."""
        if self.is_done:
            return
        log.debug(f"{type(self).__name__} aborted.")
        self._on_abort()
        self._fail("user abort")

    # Subclass API
    @abstractmethod
    def _start(self) -> None: ...

    @abstractmethod
    def _update(self) -> None: ...

    def _on_abort(self) -> None:
        """Aborts any child operations. Optional."""

    def _succeed(self) -> None:
        self.progress = 1.0
        self.status = OperationStatus.SUCCEED
        self._notify_completed()

    def _fail(self, error: str) -> None:
        self.error = error
        self.status = OperationStatus.FAILED
        self._notify_completed()

    def _notify_completed(self) -> None:
        if self._notified:
            return
        self._notified = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def _start_child(self, operation: "AsyncOperation") -> "AsyncOperation":
        """Registers a sub-operation with the same scheduler as this one."""
        if self.system is None:
            raise ContractViolationError(
                f"{type(self).__name__} must be started through an OperationSystem."
            )
        self.system.start_operation(operation)
        return operation

    @staticmethod
    def _run_in_background(coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Schedules I/O on the running event loop. Requires ticks inside the loop."""
        task = asyncio.get_running_loop().create_task(coro)
        task.add_done_callback(_consume_task_result)
        return task

    @staticmethod
    def _task_error(task: asyncio.Task) -> str:
        """Returns the task's failure message, or an empty string on success."""
        if task.cancelled():
            return "CancelledError"
        exc = task.exception()
        return describe_exception(exc) if exc else ""


class CompletedOperation(AsyncOperation):
    """An operation that is finished the moment it is started."""

    def __init__(self, error: str = ""):
        super().__init__()
        self._error_on_start = error

    def _start(self) -> None:
        if self._error_on_start:
            self._fail(self._error_on_start)
        else:
            self._succeed()

    def _update(self) -> None:
        pass
