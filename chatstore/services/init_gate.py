from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable

from chatstore.errors import InitializationFailure


class GateState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


def _consume_result(task: asyncio.Task) -> None:
    # Waiters may all have been cancelled; keep asyncio from reporting an unretrieved error.
    if not task.cancelled():
        task.exception()


class InitializationGate:
    """Runs an async initializer once and makes every caller share that run.

    Concurrent callers of ``ensure_ready`` await the same in-flight task. If
    the initializer fails, every waiter receives ``InitializationFailure``
    and the gate drops back to UNINITIALIZED so the next call retries.
    """

    def __init__(
        self,
        initializer: Callable[[], Awaitable[None]],
        *,
        name: str = "store",
        logger: logging.Logger | None = None,
    ):
        self._initializer = initializer
        self.name = name
        self._logger = logger or logging.getLogger(__name__)
        self._state = GateState.UNINITIALIZED
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> GateState:
        return self._state

    async def ensure_ready(self) -> None:
        if self._state is GateState.READY:
            return
        if self._task is None:
            self._state = GateState.INITIALIZING
            self._task = asyncio.ensure_future(self._run())
            self._task.add_done_callback(_consume_result)
        # One waiter being cancelled must not cancel the shared run.
        await asyncio.shield(self._task)

    def reset(self) -> None:
        if self._state is GateState.INITIALIZING:
            raise RuntimeError(f"Cannot reset {self.name} gate while initialization is in flight")
        self._state = GateState.UNINITIALIZED
        self._task = None

    async def _run(self) -> None:
        self._logger.info("Initializing %s", self.name)
        try:
            await self._initializer()
        except Exception as exc:
            self._state = GateState.UNINITIALIZED
            self._task = None
            self._logger.error("Initialization of %s failed: %s", self.name, exc, exc_info=True)
            if isinstance(exc, InitializationFailure):
                raise
            raise InitializationFailure(f"Failed to initialize {self.name}: {exc}") from exc
        except asyncio.CancelledError:
            self._state = GateState.UNINITIALIZED
            self._task = None
            self._logger.warning("Initialization of %s was cancelled", self.name)
            raise
        self._state = GateState.READY
        self._logger.info("%s ready", self.name.capitalize())
