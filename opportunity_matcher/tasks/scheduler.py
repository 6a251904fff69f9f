"""
Recurring task scheduler.

Each registered task runs in its own asyncio loop at a fixed interval. A
task never runs twice at once: a cadence tick that finds the task busy is
skipped, and a manual ``run_now`` request is rejected. Every run is bounded
by a timeout, timed, logged, and isolated so a failure never stops the loop.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import NotFound
from opportunity_matcher.log.logging import logger
from opportunity_matcher.metrics.tasks import report_task_outcome


@dataclass
class ScheduledTask:
    """A named coroutine factory with its cadence."""

    name: str
    func: Callable[[], Awaitable[Any]]
    interval_seconds: float
    timeout_seconds: Optional[float] = None
    run_on_start: bool = False


@dataclass
class TaskRunResult:
    """Outcome of one task execution."""

    task: str
    success: bool
    duration_ms: float = 0.0
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"task": self.task, "success": self.success, "duration_ms": round(self.duration_ms, 2)}
        if self.success:
            data["result"] = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        else:
            data["error"] = self.error
        return data


@dataclass
class _TaskState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_run_at: Optional[float] = None
    last_run_at: Optional[float] = None
    last_duration_ms: Optional[float] = None
    last_success: Optional[bool] = None
    last_error: Optional[str] = None
    run_count: int = 0
    skipped_ticks: int = 0


def _iso(timestamp: Optional[float]) -> Optional[str]:
    return datetime.fromtimestamp(timestamp, UTC).isoformat() if timestamp is not None else None


class TaskScheduler:
    """Runs named tasks on independent intervals."""

    def __init__(
        self,
        tasks: Iterable[ScheduledTask] = (),
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        default_timeout: float = settings.task_timeout_seconds,
    ):
        """
        Initialize the scheduler.

        Args:
            tasks: Tasks to register
            clock: Wall-clock source in epoch seconds
            sleep: Awaitable sleep used between ticks
            default_timeout: Timeout for tasks that do not set their own
        """
        self._clock = clock
        self._sleep = sleep
        self.default_timeout = default_timeout
        self._tasks: Dict[str, ScheduledTask] = {}
        self._states: Dict[str, _TaskState] = {}
        self._loops: Dict[str, asyncio.Task] = {}
        self._started_at: Optional[float] = None
        for task in tasks:
            self.register(task)

    @property
    def running(self) -> bool:
        return self._started_at is not None

    @property
    def task_names(self):
        return list(self._tasks)

    def register(self, task: ScheduledTask) -> None:
        if task.name in self._tasks:
            raise ValueError(f"Task {task.name} is already registered")
        if task.interval_seconds <= 0:
            raise ValueError(f"Task {task.name} needs a positive interval")
        self._tasks[task.name] = task
        self._states[task.name] = _TaskState()
        if self.running:
            self._loops[task.name] = asyncio.create_task(self._loop(task), name=f"scheduler:{task.name}")

    async def start(self) -> Dict[str, Any]:
        """Start every task loop. Starting a running scheduler is a reported no-op."""
        if self.running:
            logger.warning("Scheduler is already running")
            return {"changed": False, "message": "Scheduler is already running"}

        self._started_at = self._clock()
        for name, task in self._tasks.items():
            self._loops[name] = asyncio.create_task(self._loop(task), name=f"scheduler:{name}")
            logger.info(
                "Scheduled task",
                task=name,
                interval_seconds=task.interval_seconds,
                run_on_start=task.run_on_start,
            )
        logger.info("Scheduler started", tasks=list(self._tasks))
        return {"changed": True, "message": f"Scheduler started with {len(self._tasks)} tasks"}

    async def stop(self) -> Dict[str, Any]:
        """Cancel every task loop. Stopping a stopped scheduler is a reported no-op."""
        if not self.running:
            logger.warning("Scheduler is not running")
            return {"changed": False, "message": "Scheduler is not running"}

        loops = list(self._loops.values())
        for loop_task in loops:
            loop_task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        self._loops.clear()
        self._started_at = None
        for state in self._states.values():
            state.next_run_at = None
        logger.info("Scheduler stopped")
        return {"changed": True, "message": "Scheduler stopped"}

    async def run_now(self, name: str) -> TaskRunResult:
        """
        Run a task immediately, outside its cadence.

        Raises:
            NotFound: No task with that name is registered
        """
        task = self._tasks.get(name)
        if task is None:
            raise NotFound(f"Unknown task: {name}", context={"task": name})

        if self._states[name].lock.locked():
            logger.warning("Manual run rejected, task already running", task=name)
            return TaskRunResult(task=name, success=False, error=f"Task {name} is already running")

        logger.info("Manually triggering task", task=name)
        return await self._execute(task, trigger="manual")

    def status(self) -> Dict[str, Any]:
        tasks = {}
        for name, task in self._tasks.items():
            state = self._states[name]
            tasks[name] = {
                "interval_seconds": task.interval_seconds,
                "running": state.lock.locked(),
                "next_run_at": _iso(state.next_run_at),
                "last_run_at": _iso(state.last_run_at),
                "last_success": state.last_success,
                "last_duration_ms": state.last_duration_ms,
                "last_error": state.last_error,
                "run_count": state.run_count,
                "skipped_ticks": state.skipped_ticks,
            }
        return {
            "running": self.running,
            "started_at": _iso(self._started_at),
            "uptime_seconds": round(self._clock() - self._started_at, 3) if self.running else 0,
            "tasks": tasks,
        }

    async def _loop(self, task: ScheduledTask) -> None:
        state = self._states[task.name]
        state.next_run_at = self._clock() + (0 if task.run_on_start else task.interval_seconds)
        try:
            while True:
                delay = state.next_run_at - self._clock()
                if delay > 0:
                    await self._sleep(delay)

                if state.lock.locked():
                    state.skipped_ticks += 1
                    logger.warning("Skipping tick, task still running", task=task.name)
                else:
                    await self._execute(task, trigger="schedule")

                state.next_run_at = self._clock() + task.interval_seconds
        except asyncio.CancelledError:
            logger.debug("Task loop cancelled", task=task.name)
            raise

    async def _execute(self, task: ScheduledTask, trigger: str) -> TaskRunResult:
        state = self._states[task.name]
        timeout = task.timeout_seconds or self.default_timeout

        async with state.lock:
            started = self._clock()
            perf_start = time.perf_counter()
            logger.info("Task started", task=task.name, trigger=trigger)

            error: Optional[BaseException] = None
            result = None
            try:
                result = await asyncio.wait_for(task.func(), timeout=timeout)
            except asyncio.TimeoutError as e:
                error = e
                message = f"Task {task.name} timed out after {timeout}s"
            except Exception as e:
                error = e
                message = f"{type(e).__name__}: {str(e)}"

            duration_ms = (time.perf_counter() - perf_start) * 1000
            state.last_run_at = started
            state.last_duration_ms = round(duration_ms, 2)
            state.last_success = error is None
            state.last_error = None if error is None else message
            state.run_count += 1

        report_task_outcome(task.name, duration_ms / 1000, error is None, error, {"trigger": trigger})

        if error is None:
            logger.info("Task completed", task=task.name, trigger=trigger, duration_ms=round(duration_ms, 2))
            return TaskRunResult(task=task.name, success=True, duration_ms=duration_ms, result=result)

        logger.error(
            "Task failed",
            task=task.name,
            trigger=trigger,
            duration_ms=round(duration_ms, 2),
            error=message,
            error_type=type(error).__name__,
        )
        return TaskRunResult(task=task.name, success=False, duration_ms=duration_ms, error=message)
