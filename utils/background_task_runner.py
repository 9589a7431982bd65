"""
BackgroundTaskRunner for detached async work with an observable completion channel

Post-approval execution and reconciliation monitors run as tracked asyncio
tasks. Every task publishes a TaskOutcome on a queue when it finishes, so
callers can tell "not started yet", "running" and "finished/failed" apart
without the submitting coroutine awaiting the work itself.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Coroutine, Dict, List, Optional

from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class TaskState(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskOutcome:
    """Completion record published for every submitted task"""
    name: str
    state: TaskState
    result: Any = None
    error: Optional[BaseException] = None
    finished_at: Any = field(default_factory=get_naive_utc_now)

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.SUCCEEDED


class BackgroundTaskRunner:
    """
    Tracks detached tasks by name.

    - submit(): schedule a coroutine, returns the asyncio.Task immediately
    - completions: asyncio.Queue of TaskOutcome, one per finished task
    - wait_idle(): block until nothing is running (tests, graceful drain)
    - shutdown(): cancel everything still running
    """

    def __init__(self, keep_history: int = 500):
        self._active_tasks: Dict[asyncio.Task, str] = {}
        self._history: List[TaskOutcome] = []
        self._keep_history = keep_history
        self.completions: "asyncio.Queue[TaskOutcome]" = asyncio.Queue()
        self._closed = False

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise RuntimeError(f"BackgroundTaskRunner is shut down, refusing task {name}")

        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._active_tasks[task] = name
        task.add_done_callback(self._on_done)
        logger.debug(f"🚀 BACKGROUND_TASK_SUBMITTED: {name}")
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        name = self._active_tasks.pop(task, task.get_name())
        if task.cancelled():
            outcome = TaskOutcome(name=name, state=TaskState.CANCELLED)
            logger.info(f"🛑 BACKGROUND_TASK_CANCELLED: {name}")
        elif task.exception() is not None:
            error = task.exception()
            outcome = TaskOutcome(name=name, state=TaskState.FAILED, error=error)
            logger.error(f"❌ BACKGROUND_TASK_FAILED: {name}: {error}")
        else:
            outcome = TaskOutcome(name=name, state=TaskState.SUCCEEDED, result=task.result())
            logger.debug(f"✅ BACKGROUND_TASK_DONE: {name}")

        self._history.append(outcome)
        if len(self._history) > self._keep_history:
            self._history = self._history[-self._keep_history:]
        self.completions.put_nowait(outcome)

    def is_running(self, name: str) -> bool:
        return name in self._active_tasks.values()

    @property
    def active_count(self) -> int:
        return len(self._active_tasks)

    def outcomes_for(self, name: str) -> List[TaskOutcome]:
        return [o for o in self._history if o.name == name]

    def last_outcome(self, name: str) -> Optional[TaskOutcome]:
        matches = self.outcomes_for(name)
        return matches[-1] if matches else None

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no tracked task is running, including tasks spawned meanwhile"""
        async def _drain():
            while self._active_tasks:
                await asyncio.gather(*list(self._active_tasks), return_exceptions=True)
                # let done-callbacks run
                await asyncio.sleep(0)

        await asyncio.wait_for(_drain(), timeout=timeout)

    async def shutdown(self) -> None:
        """Cancel pending background tasks; called during process shutdown"""
        self._closed = True
        if not self._active_tasks:
            return

        logger.info(f"BackgroundTaskRunner: Cancelling {len(self._active_tasks)} active tasks")
        tasks = list(self._active_tasks)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.sleep(0)
        logger.debug("BackgroundTaskRunner: Shutdown completed")
