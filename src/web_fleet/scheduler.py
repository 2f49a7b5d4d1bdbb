from __future__ import annotations

import asyncio
import logging
from collections import deque
from functools import partial
from typing import Any, Callable, Iterable, Optional, Sequence

from .config import Settings, get_settings
from .errors import ProvisioningError
from .models import (
    DebugEndpoint,
    Environment,
    LogLevel,
    OutcomeStatus,
    RoutineOutcome,
    RoutineRef,
    RunStats,
    RunSummary,
    ScheduleMode,
    TaskState,
)
from .reporter import RunReporter
from .routines import RoutineContext, RoutineRegistry, invoke_routine, normalize_level
from .task_queue import Task, build_task_queue

logger = logging.getLogger(__name__)

LogListener = Callable[[str, LogLevel], None]
StatusListener = Callable[[RunStats], None]

_LOG_LEVELS = {
    LogLevel.info: logging.INFO,
    LogLevel.success: logging.INFO,
    LogLevel.warning: logging.WARNING,
    LogLevel.error: logging.ERROR,
}

STOPPED_MESSAGE = "run stopped before routine finished"


class Scheduler:
    """Run routines against provider environments with at most N sessions open.

    A task holds its concurrency slot from admission until its environment has
    been closed (or closing was given up on), so the limit bounds open sessions
    rather than routine execution alone.
    """

    def __init__(
        self,
        client: Any,
        registry: RoutineRegistry,
        settings: Settings | None = None,
        *,
        max_concurrent: int | None = None,
        reporter: RunReporter | None = None,
        routine_config: dict[str, Any] | None = None,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.registry = registry
        self.max_concurrent = (
            self.settings.max_concurrent if max_concurrent is None else max_concurrent
        )
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1.")
        self.reporter = reporter or RunReporter(self.settings.runs_dir)
        self.routine_config = dict(
            routine_config if routine_config is not None else self.settings.routine_config
        )
        self._queue: deque[Task] = deque()
        self._running: dict[str, Task] = {}
        self._admitted: list[Task] = []
        self._stats = RunStats()
        self._stopped = False
        self._active = False
        self._wakeup: Optional[asyncio.Event] = None
        self._outstanding_closes: set[asyncio.Task] = set()
        self._log_listeners: list[LogListener] = []
        self._status_listeners: list[StatusListener] = []

    # -- observability -------------------------------------------------

    def add_log_listener(self, listener: LogListener) -> None:
        self._log_listeners.append(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def remove_log_listener(self, listener: LogListener) -> None:
        if listener in self._log_listeners:
            self._log_listeners.remove(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    @property
    def stats(self) -> RunStats:
        return self._stats.model_copy()

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def in_flight(self) -> list[str]:
        return list(self._running)

    def _emit_log(self, message: str, level: LogLevel = LogLevel.info) -> None:
        logger.log(_LOG_LEVELS[level], message)
        for listener in list(self._log_listeners):
            try:
                listener(message, level)
            except Exception:
                logger.exception("Log listener failed")

    def _emit_status(self) -> None:
        snapshot = self.stats
        for listener in list(self._status_listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Status listener failed")

    def _task_log(self, task: Task, message: str, level: LogLevel = LogLevel.info) -> None:
        self._emit_log(f"{task.label} {message}", level)

    # -- run -----------------------------------------------------------

    async def run(
        self,
        environments: Optional[Sequence[Environment]],
        routines: Iterable[RoutineRef | str],
        mode: ScheduleMode | str = ScheduleMode.per_environment,
    ) -> RunSummary:
        """Execute ``routines`` against ``environments`` and return the run summary.

        Passing ``environments=None`` runs against every environment the provider lists.
        Only queue construction errors propagate; everything that happens inside a
        task ends up as an outcome record and a log event.
        """
        if self._active:
            raise RuntimeError("A run is already in progress.")
        mode = ScheduleMode(mode)
        refs = [self.registry.resolve(routine) for routine in routines]

        if environments is None:
            self._emit_log("Fetching environment list...")
            environments = await self.client.list_all_environments()
            self._emit_log(f"Found {len(environments)} environment(s)")
        tasks = build_task_queue(environments, refs, mode)

        self._queue = deque(tasks)
        self._running = {}
        self._admitted = []
        self._stats = RunStats()
        self._stopped = False
        self._wakeup = asyncio.Event()
        self._active = True
        self.reporter.begin(mode, [ref.name for ref in refs])

        if len(environments) > self.max_concurrent:
            self._emit_log(
                f"{len(environments)} environments selected with max concurrency "
                f"{self.max_concurrent}; they will run in turns",
                LogLevel.warning,
            )
        self._emit_log(
            f"Starting {len(tasks)} task(s) over {len(environments)} environment(s) "
            f"in {mode.value} mode"
        )
        self._emit_status()

        try:
            await self._process_queue()
        except asyncio.CancelledError:
            await self.stop()
            raise
        finally:
            summary = await self._finalize()
            self._active = False
        return summary

    async def _process_queue(self) -> None:
        while (self._queue or self._running) and not self._stopped:
            while (
                self._queue
                and len(self._running) < self.max_concurrent
                and not self._stopped
            ):
                self._admit(self._queue.popleft())
            if self._running:
                self._wakeup.clear()
                await self._wakeup.wait()

        if self._stopped:
            self._emit_log("Stop requested; no further tasks will be started", LogLevel.warning)
        # Admitted tasks still get to finish their cleanup.
        while self._running:
            self._wakeup.clear()
            await self._wakeup.wait()

    def _admit(self, task: Task) -> None:
        self._running[task.id] = task
        self._admitted.append(task)
        self._stats.running += len(task.pending_routines)
        handle = asyncio.create_task(self._run_task(task), name=f"fleet-task-{task.id}")
        task.asyncio_task = handle
        handle.add_done_callback(partial(self._on_task_done, task))
        self._emit_status()

    def _on_task_done(self, task: Task, handle: asyncio.Task) -> None:
        if not handle.cancelled() and handle.exception() is not None:
            logger.error(
                "Task %s crashed outside its error boundary",
                task.id,
                exc_info=handle.exception(),
            )
        if task.detached or self._running.get(task.id) is not task:
            return
        del self._running[task.id]
        if self._wakeup is not None:
            self._wakeup.set()

    # -- per-task lifecycle ---------------------------------------------

    async def _run_task(self, task: Task) -> None:
        env = task.environment
        if self._stopped or task.detached:
            self._fail_pending(task, STOPPED_MESSAGE)
            task.state = TaskState.closed
            return
        try:
            self._task_log(task, f"Starting environment {env.label} (ID: {env.id})")
            task.state = TaskState.starting
            task.start_attempted = True
            result = await self.client.start_environment(env.id)
            if result.debug_endpoint is None:
                raise ProvisioningError("environment start returned no debug port")
        except Exception as exc:
            self._task_log(task, f"Environment {env.label} failed to start: {exc}", LogLevel.error)
            self._fail_pending(task, f"environment start failed: {exc}")
        else:
            task.state = TaskState.running
            self._task_log(
                task,
                f"Environment open (debug port {result.debug_endpoint.debug_port}, "
                f"running {len(self._running)}/{self.max_concurrent})",
                LogLevel.success,
            )
            await self._run_routines(task, result.debug_endpoint)
        finally:
            await self._close_environment(task)

    async def _run_routines(self, task: Task, endpoint: DebugEndpoint) -> None:
        env = task.environment
        for ref in task.routines:
            if self._stopped:
                self._fail_pending(task, STOPPED_MESSAGE)
                return
            context = RoutineContext(
                environment_id=env.id,
                environment=env,
                debug_endpoint=endpoint,
                client=self.client,
                log=partial(self._routine_log, task),
                config=self.routine_config,
                task_label=task.label,
            )
            self._task_log(task, f"Running routine {ref.label}")
            try:
                fn = await asyncio.to_thread(self.registry.load, ref)
                failure = await invoke_routine(fn, context)
            except Exception as exc:
                logger.debug("Routine %s raised on %s", ref.name, env.id, exc_info=True)
                failure = str(exc) or exc.__class__.__name__
            if failure is None:
                self._record(task, ref, OutcomeStatus.success)
                self._task_log(task, f"Routine {ref.label} finished on {env.label}", LogLevel.success)
            else:
                self._record(task, ref, OutcomeStatus.failed, failure)
                self._task_log(
                    task, f"Routine {ref.label} failed on {env.label}: {failure}", LogLevel.error
                )

    def _routine_log(self, task: Task, message: str, level: LogLevel | str = LogLevel.info) -> None:
        self._task_log(task, str(message), normalize_level(level))

    async def _close_environment(self, task: Task) -> None:
        if task.closed or not task.start_attempted:
            task.state = TaskState.closed
            return
        task.state = TaskState.closing
        env = task.environment

        if await self._confirmed_stopped(task):
            self._task_log(task, "Environment already stopped; skipping close")
            self._mark_closed(task)
            return

        attempts = self.settings.close_attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            self._task_log(task, f"Closing environment (attempt {attempt}/{attempts})")
            try:
                result = await self.client.close_environment(env.id)
            except Exception as exc:
                last_error = exc
                logger.debug("Close attempt %d for %s failed", attempt, env.id, exc_info=True)
                if attempt < attempts:
                    await asyncio.sleep(self.settings.close_retry_delay_seconds)
                continue
            note = "was already closed" if result.already_closed else "closed"
            self._task_log(
                task,
                f"Environment {note}, releasing slot "
                f"(running {max(0, len(self._running) - 1)}/{self.max_concurrent})",
            )
            self._mark_closed(task)
            return

        if await self._confirmed_stopped(task):
            self._task_log(task, "Close failed but the provider reports the environment stopped")
            self._mark_closed(task)
            return

        self._task_log(
            task,
            f"Could not close environment {env.label} after {attempts} attempts: {last_error}. "
            "Check the provider client manually; it may still be running.",
            LogLevel.warning,
        )
        if not task.detached:
            self.reporter.mark_unclosed(env.id)
        task.state = TaskState.closed

    async def _confirmed_stopped(self, task: Task) -> bool:
        try:
            status = await self.client.get_environment_status(task.environment.id)
        except Exception:
            logger.debug("Status check for %s failed", task.environment.id, exc_info=True)
            return False
        return status.is_stopped

    @staticmethod
    def _mark_closed(task: Task) -> None:
        task.closed = True
        task.state = TaskState.closed

    # -- outcomes --------------------------------------------------------

    def _record(
        self,
        task: Task,
        ref: RoutineRef,
        status: OutcomeStatus,
        error: str | None = None,
        *,
        force: bool = False,
    ) -> None:
        if task.detached and not force:
            logger.debug("Dropping late outcome of %s for detached task %s", ref.name, task.id)
            return
        if ref in task.pending_routines:
            task.pending_routines.remove(ref)
        self.reporter.record(
            RoutineOutcome(
                task_id=task.id,
                environment_id=task.environment.id,
                environment_name=task.environment.name,
                routine=ref.name,
                status=status,
                error=error,
                round=task.round,
            )
        )
        self._stats.running = max(0, self._stats.running - 1)
        if status == OutcomeStatus.success:
            self._stats.completed += 1
        else:
            self._stats.failed += 1
        self._emit_status()

    def _fail_pending(self, task: Task, reason: str, *, force: bool = False) -> None:
        for ref in list(task.pending_routines):
            self._record(task, ref, OutcomeStatus.failed, reason, force=force)

    async def _finalize(self) -> RunSummary:
        for task in self._admitted:
            self._fail_pending(task, STOPPED_MESSAGE, force=True)
        self._stats.running = 0
        summary = self.reporter.finalize(self._stats, stopped=self._stopped)
        try:
            path = await self.reporter.save_async(summary)
        except OSError:
            logger.exception("Failed to persist run summary %s", summary.run_id)
        else:
            logger.info("Run summary written to %s", path)
        self._emit_log(
            f"Run finished: {self._stats.completed} succeeded, {self._stats.failed} failed",
            LogLevel.warning if self._stats.failed else LogLevel.success,
        )
        self._emit_status()
        return summary

    # -- cancellation ----------------------------------------------------

    def request_stop(self) -> None:
        """Stop admitting tasks; in-flight tasks run on to their cleanup."""
        self._stopped = True
        self._queue.clear()
        if self._wakeup is not None:
            self._wakeup.set()

    async def stop(self) -> None:
        """Stop admission and actively close every environment still in use.

        Waits at most ``stop_timeout_seconds`` for the close requests. After that the
        in-flight set is cleared even if some closes are still outstanding.
        """
        self.request_stop()
        if not self._active:
            return
        self._emit_log("Stopping run...", LogLevel.warning)
        targets = [
            task
            for task in self._running.values()
            if task.holds_environment
            and task.state in (TaskState.starting, TaskState.running)
        ]
        if targets:
            closers = [asyncio.create_task(self._close_on_stop(task)) for task in targets]
            _, pending = await asyncio.wait(closers, timeout=self.settings.stop_timeout_seconds)
            if pending:
                self._emit_log(
                    f"{len(pending)} close request(s) still outstanding after "
                    f"{self.settings.stop_timeout_seconds:g}s; not waiting for them",
                    LogLevel.warning,
                )
                for closer in pending:
                    self._outstanding_closes.add(closer)
                    closer.add_done_callback(self._outstanding_closes.discard)

        for task in self._running.values():
            task.detached = True
        self._running.clear()
        self._stats.running = 0
        self._emit_status()
        if self._wakeup is not None:
            self._wakeup.set()

    async def _close_on_stop(self, task: Task) -> None:
        env = task.environment
        # A start still in flight may complete after this close lands.
        was_open = task.state == TaskState.running
        try:
            result = await self.client.close_environment(env.id)
        except Exception as exc:
            self._task_log(task, f"Close during stop failed for {env.label}: {exc}", LogLevel.warning)
            return
        if was_open:
            task.closed = True
        note = "was already closed" if result.already_closed else "closed"
        self._task_log(task, f"Environment {env.label} {note} during stop")


__all__ = ["Scheduler", "STOPPED_MESSAGE"]
