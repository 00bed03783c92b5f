"""
Lazy, idempotent, retryable initialization for async components.

An InitializationCoordinator guards one expensive, fallible setup
coroutine (opening a database, rebuilding indexes). Any number of tasks
may call ensure_ready() concurrently:

- READY: returns immediately.
- IN_PROGRESS: the caller waits on the run that is already going.
- NOT_STARTED (fresh, or after a failed run): the caller starts a run.

A failed run delivers the same InitializationError to every task that
waited on it, then the coordinator drops back to NOT_STARTED so the
next caller retries.

The bookkeeping lock is only ever taken inside synchronous helpers
(_claim, _settle, reset). Nothing awaits while holding it.
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import Awaitable, Callable, Optional

from .errors import InitializationError

logger = logging.getLogger(__name__)


class InitState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


class InitializationCoordinator:
    """
    Run-once-at-a-time guard around an async setup callable.

    Example:
        coordinator = InitializationCoordinator(self._open_and_rebuild, name="memory")
        await coordinator.ensure_ready()
    """

    def __init__(self, setup: Callable[[], Awaitable[None]], *, name: str = "component"):
        """
        Args:
            setup: Coroutine function performing the startup work. It is
                called with no arguments; bind it to its owner.
            name: Label used in log messages and errors.
        """
        self._setup = setup
        self._name = name
        self._lock = threading.Lock()
        self._state = InitState.NOT_STARTED
        self._task: Optional[asyncio.Task] = None
        self._attempts = 0
        self._last_error: Optional[InitializationError] = None

    @property
    def state(self) -> InitState:
        """Current state. FAILED is reported until the next caller retries."""
        return self._state

    @property
    def attempts(self) -> int:
        """Number of setup runs started so far."""
        return self._attempts

    @property
    def last_error(self) -> Optional[InitializationError]:
        """Error from the most recent failed run, if any."""
        return self._last_error

    @property
    def is_ready(self) -> bool:
        return self._state is InitState.READY

    async def ensure_ready(self) -> None:
        """
        Return once setup has completed successfully.

        Raises:
            InitializationError: If the run this caller waited on failed
        """
        task = self._claim()
        if task is None:
            return
        # Shield: one waiter being cancelled must not cancel the shared run
        await asyncio.shield(task)

    def reset(self) -> None:
        """Forget a completed setup so the next ensure_ready() runs it again."""
        with self._lock:
            if self._state is InitState.IN_PROGRESS:
                raise RuntimeError(f"{self._name}: cannot reset while initialization is in progress")
            self._state = InitState.NOT_STARTED
            self._task = None

    def _claim(self) -> Optional[asyncio.Task]:
        """Decide what this caller waits on. Bookkeeping only, no awaits."""
        with self._lock:
            if self._state is InitState.READY:
                return None
            if self._state is InitState.IN_PROGRESS and self._task is not None:
                return self._task
            # NOT_STARTED or FAILED: start a fresh run
            self._attempts += 1
            attempt = self._attempts
            self._state = InitState.IN_PROGRESS
            self._task = asyncio.get_running_loop().create_task(
                self._run(attempt), name=f"{self._name}-init-{attempt}"
            )
            # Mark the outcome retrieved even if every waiter was cancelled
            self._task.add_done_callback(_consume_result)
            return self._task

    async def wait_idle(self) -> None:
        """Wait for an in-progress run (if any) to finish, ignoring its outcome."""
        with self._lock:
            task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def _run(self, attempt: int) -> None:
        logger.debug("%s: initialization attempt %d started", self._name, attempt)
        try:
            await self._setup()
        except asyncio.CancelledError:
            self._settle(attempt, None, cancelled=True)
            raise
        except Exception as e:
            error = InitializationError(
                f"{self._name} initialization failed (attempt {attempt}): {e}",
                attempt=attempt,
            )
            error.__cause__ = e
            # Logged once per attempt, however many tasks are waiting
            logger.warning("%s", error, exc_info=(type(e), e, e.__traceback__))
            self._settle(attempt, error)
            raise error
        self._settle(attempt, None)
        logger.info("%s: ready (attempt %d)", self._name, attempt)

    def _settle(
        self,
        attempt: int,
        error: Optional[InitializationError],
        *,
        cancelled: bool = False,
    ) -> None:
        """Record the outcome of a run. Bookkeeping only, no awaits."""
        with self._lock:
            if attempt != self._attempts:
                return
            self._task = None
            if cancelled:
                self._state = InitState.NOT_STARTED
            elif error is None:
                self._state = InitState.READY
                self._last_error = None
            else:
                # FAILED is observable; _claim() treats it like NOT_STARTED
                self._state = InitState.FAILED
                self._last_error = error


def _consume_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
