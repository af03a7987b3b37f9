"""Orchestrator - the scheduler service.

Runs the engine's recurring tasks:
    - Workflow tick (NEXUS_WORKFLOW_TICK_SECONDS, default 60s)
    - Sequence tick (NEXUS_SEQUENCE_TICK_SECONDS, default 60s)
    - Lead score decay (NEXUS_DECAY_INTERVAL_HOURS, default 24h)

Runs on a daemon thread next to an API process, or headless via
``nexus_engine.py --orchestrator``.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from nexus.core.clock import Clock, SystemClock
from nexus.core.config import Config, get_config
from nexus.core.logging import get_logger

logger = get_logger(__name__)

# Longest the loop sleeps between due-checks (seconds)
_MAX_CHECK_INTERVAL_SECONDS = 30


class Orchestrator:
    """Background task coordinator.

    A task that is still running when it comes due again is skipped for
    that round.
    """

    def __init__(self, config: Optional[Config] = None, clock: Optional[Clock] = None) -> None:
        self._config = config or get_config()
        self._clock = clock or SystemClock()
        self._running: bool = False
        self._tasks: dict[str, dict[str, Any]] = {}
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def config(self) -> Config:
        return self._config

    def start(self) -> None:
        """Start orchestrator in a background daemon thread."""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        self._running = True
        self._stop_event.clear()

        self._thread = threading.Thread(
            target=self._run_loop,
            name="nexus-orchestrator",
            daemon=True,
        )
        self._thread.start()

        logger.info(
            "Orchestrator started (background)",
            extra={"context": {"tasks": list(self._tasks.keys())}},
        )

    def stop(self) -> None:
        """Signal the loop to stop and wait up to 10 seconds for it."""
        if not self._running:
            return

        logger.info("Orchestrator stopping...")
        self._running = False
        self._stop_event.set()

        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning("Orchestrator thread did not stop within timeout")

        self._thread = None
        logger.info("Orchestrator stopped")

    def register_task(self, name: str, func: Callable[[], Any], interval: timedelta) -> None:
        """Register a recurring task.

        Args:
            name: Unique task name (e.g. 'workflow_tick', 'score_decay')
            func: Callable taking no arguments
            interval: How often to run the task
        """
        if interval <= timedelta(0):
            raise ValueError(f"Task interval must be positive: {name}")
        self._tasks[name] = {
            "func": func,
            "interval": interval,
            "last_run": None,
            "lock": threading.Lock(),
        }
        logger.info(
            "Task registered",
            extra={"context": {"name": name, "interval_seconds": interval.total_seconds()}},
        )

    def run_headless(self) -> None:
        """Run the loop on the calling thread until stop() or Ctrl+C."""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        self._running = True
        self._stop_event.clear()

        logger.info(
            "Orchestrator started (headless)",
            extra={"context": {"tasks": list(self._tasks.keys())}},
        )

        try:
            self._run_loop()
        except KeyboardInterrupt:
            logger.info("Orchestrator interrupted by keyboard")
        finally:
            self._running = False
            logger.info("Orchestrator headless mode stopped")

    def is_running(self) -> bool:
        return self._running

    def is_task_running(self, name: str) -> bool:
        return self._tasks[name]["lock"].locked()

    def run_due_tasks(self, now: Optional[datetime] = None) -> list[str]:
        """Run every task whose interval has elapsed.

        Returns:
            Names of the tasks that ran
        """
        now = now or self._clock.now()
        ran: list[str] = []

        for name, task in list(self._tasks.items()):
            last_run = task["last_run"]
            if last_run is not None and now - last_run < task["interval"]:
                continue

            lock: threading.Lock = task["lock"]
            if not lock.acquire(blocking=False):
                logger.info(
                    f"Task still running, skipping: {name}",
                    extra={"context": {"task": name}},
                )
                continue

            try:
                logger.debug(f"Running task: {name}", extra={"context": {"task": name}})
                task["func"]()
                logger.debug(f"Task completed: {name}", extra={"context": {"task": name}})
            except Exception as exc:
                # One failing task never stops the loop
                logger.error(
                    f"Task failed: {name}",
                    extra={"context": {"task": name, "error": str(exc)}},
                    exc_info=True,
                )
            finally:
                task["last_run"] = now
                lock.release()
            ran.append(name)

        return ran

    def _check_interval(self) -> float:
        intervals = [task["interval"].total_seconds() for task in self._tasks.values()]
        return min([_MAX_CHECK_INTERVAL_SECONDS, *intervals])

    def _run_loop(self) -> None:
        logger.debug("Orchestrator loop started")

        while self._running:
            self.run_due_tasks()
            if self._stop_event.wait(timeout=self._check_interval()):
                break

        logger.debug("Orchestrator loop ended")
