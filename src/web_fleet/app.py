from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query

from .config import Settings, get_settings
from .errors import ProviderError, RoutineLoadError
from .models import (
    Environment,
    LogEvent,
    LogLevel,
    RunRequest,
    RunStats,
    RunSummary,
    ScheduleMode,
)
from .provider import EnvironmentClient
from .reporter import RunReporter
from .routines import RoutineRegistry
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class RunState:
    """The single run the service drives at a time, plus its recent log lines."""

    def __init__(self, log_buffer_size: int):
        self.scheduler: Optional[Scheduler] = None
        self.task: Optional[asyncio.Task] = None
        self.logs: deque[LogEvent] = deque(maxlen=log_buffer_size)
        self.stats = RunStats()
        self.last_summary: Optional[RunSummary] = None

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    def on_log(self, message: str, level: LogLevel) -> None:
        self.logs.append(LogEvent(message=message, level=level))

    def on_status(self, stats: RunStats) -> None:
        self.stats = stats

    def on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Run crashed", exc_info=exc)
            self.on_log(f"Run failed: {exc}", LogLevel.error)
            return
        self.last_summary = task.result()


def _select_environments(available: list[Environment], wanted: list[str]) -> list[Environment]:
    by_id = {env.id: env for env in available}
    # Unknown ids still get a task; the provider decides whether they exist.
    return [
        by_id.get(env_id) or Environment(id=env_id, name=f"environment {env_id}")
        for env_id in wanted
    ]


def create_app(
    settings: Settings | None = None,
    *,
    client: Any = None,
    registry: RoutineRegistry | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    client = client or EnvironmentClient(settings)
    registry = registry or RoutineRegistry(settings.routines_dir, settings.routine_alias_file)
    reporter = RunReporter(settings.runs_dir)
    run_state = RunState(settings.log_buffer_size)

    app = FastAPI(title="Web Fleet", version="0.1.0")
    app.state.settings = settings
    app.state.client = client
    app.state.registry = registry
    app.state.reporter = reporter
    app.state.run_state = run_state

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - FastAPI hook
        if run_state.active and run_state.scheduler is not None:
            await run_state.scheduler.stop()
        if hasattr(client, "aclose"):
            await client.aclose()

    def get_run_state() -> RunState:
        return app.state.run_state

    def _current_payload() -> dict[str, Any]:
        return {
            "active": run_state.active,
            "stats": run_state.stats.model_dump(),
            "in_flight": run_state.scheduler.in_flight if run_state.scheduler else [],
            "logs": [event.model_dump(mode="json") for event in run_state.logs],
            "last_summary": (
                run_state.last_summary.model_dump(mode="json")
                if run_state.last_summary
                else None
            ),
        }

    @app.get("/healthz")
    async def healthcheck():
        issues: list[str] = []
        if not settings.provider_api_id or not settings.provider_api_key:
            issues.append("provider_credentials_missing")
        return {"status": "ok", "ready": not issues, "issues": issues}

    @app.get("/api/provider/check")
    async def provider_check():
        result = await client.check_connection()
        return result.model_dump()

    @app.get("/api/environments")
    async def list_environments(
        page: int = Query(1, ge=1),
        page_size: int = Query(100, ge=1, le=1000),
        env_name: Optional[str] = Query(None),
        group_id: Optional[int] = Query(None),
    ):
        try:
            result = await client.list_environments(
                page, page_size, env_name=env_name, group_id=group_id
            )
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        return result.model_dump()

    @app.get("/api/routines")
    async def list_routines():
        return [ref.model_dump() for ref in registry.discover()]

    @app.post("/api/runs", status_code=202)
    async def start_run(
        payload: RunRequest = Body(...),
        state: RunState = Depends(get_run_state),
    ):
        if state.active:
            raise HTTPException(status_code=409, detail="A run is already in progress.")
        try:
            refs = [registry.resolve(name) for name in payload.routines]
        except RoutineLoadError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

        check = await client.check_connection()
        if not check.success:
            raise HTTPException(status_code=503, detail=check.message)
        try:
            available = await client.list_all_environments()
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        environments = (
            _select_environments(available, payload.environment_ids)
            if payload.environment_ids
            else available
        )
        if not environments:
            raise HTTPException(status_code=400, detail="No environments to run against.")

        mode = payload.mode or ScheduleMode(settings.schedule_mode)
        scheduler = Scheduler(
            client,
            registry,
            settings,
            max_concurrent=payload.max_concurrent,
            reporter=reporter,
        )
        scheduler.add_log_listener(state.on_log)
        scheduler.add_status_listener(state.on_status)
        state.logs.clear()
        state.stats = RunStats()
        state.scheduler = scheduler
        state.task = asyncio.create_task(scheduler.run(environments, refs, mode))
        state.task.add_done_callback(state.on_done)
        return {
            "active": True,
            "environments": len(environments),
            "routines": [ref.name for ref in refs],
            "mode": mode.value,
            "max_concurrent": scheduler.max_concurrent,
        }

    @app.post("/api/runs/stop")
    async def stop_run(state: RunState = Depends(get_run_state)):
        if not state.active or state.scheduler is None:
            raise HTTPException(status_code=409, detail="No run is in progress.")
        await state.scheduler.stop()
        return _current_payload()

    @app.get("/api/runs/current")
    async def current_run():
        return _current_payload()

    @app.get("/api/runs")
    async def list_runs():
        summaries = await reporter.load_all_async()
        return [summary.model_dump(mode="json") for summary in summaries]

    return app
