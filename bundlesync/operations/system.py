"""
The cooperative scheduler: advances every registered operation once per tick.
"""

import asyncio
import logging

from bundlesync.exceptions import ContractViolationError

from .base import AsyncOperation

log = logging.getLogger(__name__)


class OperationSystem:
    """
    A registry of in-flight operations, advanced in registration order.

    Operations started during a tick join the registry at the next tick. Done
    operations are dropped at the end of the tick that observed them.
    """

    def __init__(self) -> None:
        self._operations: list[AsyncOperation] = []
        self._new_operations: list[AsyncOperation] = []

    def __len__(self) -> int:
        return len(self._operations) + len(self._new_operations)

    def start_operation(self, operation: AsyncOperation) -> AsyncOperation:
        operation.system = self
        self._new_operations.append(operation)
        operation.start_operation()
        return operation

    def update(self) -> None:
        """One tick."""
        if self._new_operations:
            self._operations.extend(self._new_operations)
            self._new_operations.clear()

        for operation in self._operations:
            if not operation.is_done:
                operation.update_operation()

        self._operations = [op for op in self._operations if not op.is_done]

    def clear(self) -> None:
        """Aborts and forgets every registered operation."""
        for operation in [*self._operations, *self._new_operations]:
            operation.abort()
        self._operations.clear()
        self._new_operations.clear()

    async def wait(self, operation: AsyncOperation, interval: float = 0.0) -> AsyncOperation:
        """
        Ticks the scheduler until `operation` is done, yielding to the event loop
        between ticks so background transfers make progress.
        """
        if not operation.is_started:
            raise ContractViolationError(
                f"{type(operation).__name__} was never started; nothing will advance it."
            )
        while not operation.is_done:
            self.update()
            await asyncio.sleep(interval)
        return operation

    async def run(self, stop: asyncio.Event, interval: float = 0.01) -> None:
        """Drives ticks until `stop` is set."""
        while not stop.is_set():
            self.update()
            await asyncio.sleep(interval)
