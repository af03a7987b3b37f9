"""Background task execution for the Nexus lifecycle engine.

Used by the event bus for fire-and-forget dispatch so webhook handlers never
wait on scoring or automation work.

Usage:
    from nexus.core.tasks import TaskManager

    manager = TaskManager(max_workers=4)
    future = manager.submit("dispatch:c-1", bus.publish, event)
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from nexus.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TaskResult:
    """Result of a background task.

    Attributes:
        task_name: Name of the task
        success: Whether task completed successfully
        result: Return value if successful
        error: Exception if failed
        started_at: When task started
        completed_at: When task finished
    """

    task_name: str
    success: bool
    result: Any = None
    error: Optional[Exception] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate task duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class TaskManager:
    """Thread pool with named task tracking.

    Task failures are captured in the TaskResult, never raised into the
    submitting thread.

    Attributes:
        max_workers: Maximum concurrent tasks
    """

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._tasks: dict[str, Future] = {}
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="nexus-task"
            )
        return self._executor

    def submit(
        self,
        task_name: str,
        func: Callable[..., Any],
        *args: Any,
        callback: Optional[Callable[[TaskResult], None]] = None,
        **kwargs: Any,
    ) -> "Future[TaskResult]":
        """Submit a task for execution.

        Args:
            task_name: Name for tracking
            func: Function to execute
            *args: Positional arguments
            callback: Function to call with TaskResult when complete
            **kwargs: Keyword arguments

        Returns:
            Future resolving to a TaskResult
        """

        def wrapper() -> TaskResult:
            started_at = datetime.now()
            try:
                result = func(*args, **kwargs)
                return TaskResult(
                    task_name=task_name,
                    success=True,
                    result=result,
                    started_at=started_at,
                    completed_at=datetime.now(),
                )
            except Exception as e:
                logger.error(
                    f"Task {task_name} failed: {e}",
                    extra={"context": {"task": task_name}},
                    exc_info=True,
                )
                return TaskResult(
                    task_name=task_name,
                    success=False,
                    error=e,
                    started_at=started_at,
                    completed_at=datetime.now(),
                )

        with self._lock:
            self._prune()
            future = self._get_executor().submit(wrapper)
            self._tasks[task_name] = future

        if callback:
            future.add_done_callback(lambda f: callback(f.result()))

        return future

    def _prune(self) -> None:
        # Dispatch names are per contact; keep only futures still in flight
        for name in [name for name, future in self._tasks.items() if future.done()]:
            del self._tasks[name]

    def pending_count(self) -> int:
        """Tasks submitted and not yet finished."""
        with self._lock:
            return sum(1 for future in self._tasks.values() if not future.done())

    def is_running(self, task_name: str) -> bool:
        """Check if a task is currently running."""
        with self._lock:
            future = self._tasks.get(task_name)
            return future is not None and not future.done()

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the task manager.

        Args:
            wait: Wait for pending tasks to complete
        """
        with self._lock:
            executor = self._executor
            self._executor = None
            self._tasks.clear()
        if executor:
            executor.shutdown(wait=wait)
