from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Iterable

from .models import (
    RoutineOutcome,
    RunStats,
    RunSummary,
    ScheduleMode,
    utcnow,
)

logger = logging.getLogger(__name__)


class RunReporter:
    """Collect per-(environment, routine) outcomes and persist one summary per run."""

    def __init__(self, runs_dir: Path):
        self.runs_dir = runs_dir
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self._summary: RunSummary | None = None

    @property
    def summary(self) -> RunSummary | None:
        return self._summary

    def begin(self, mode: ScheduleMode, routines: Iterable[str]) -> RunSummary:
        started_at = utcnow()
        run_id = f"{started_at:%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"
        self._summary = RunSummary(
            run_id=run_id,
            started_at=started_at,
            mode=mode,
            routines=list(routines),
        )
        return self._summary

    def record(self, outcome: RoutineOutcome) -> None:
        if self._summary is None:
            raise RuntimeError("RunReporter.begin() must be called before recording.")
        self._summary.outcomes.append(outcome)

    def mark_unclosed(self, environment_id: str) -> None:
        if self._summary is None:
            raise RuntimeError("RunReporter.begin() must be called before recording.")
        if environment_id not in self._summary.unclosed_environments:
            self._summary.unclosed_environments.append(environment_id)

    def finalize(self, stats: RunStats, *, stopped: bool = False) -> RunSummary:
        if self._summary is None:
            raise RuntimeError("RunReporter.begin() must be called before finalize().")
        self._summary.finished_at = utcnow()
        self._summary.stats = stats.model_copy()
        self._summary.stopped = stopped
        return self._summary

    def _summary_file(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def save(self, summary: RunSummary) -> Path:
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        target = self._summary_file(summary.run_id)
        payload = summary.model_dump(mode="json")
        with target.open("w", encoding="utf-8") as fp:
            json.dump(payload, fp, indent=2, ensure_ascii=False)
        return target

    def load_all(self) -> list[RunSummary]:
        summaries: list[RunSummary] = []
        for entry in self.runs_dir.glob("*.json"):
            try:
                with entry.open("r", encoding="utf-8") as fp:
                    summaries.append(RunSummary.model_validate(json.load(fp)))
            except (OSError, ValueError):
                logger.warning("Skipping unreadable run summary %s", entry)
                continue
        summaries.sort(key=lambda item: item.started_at, reverse=True)
        return summaries

    async def save_async(self, summary: RunSummary) -> Path:
        return await asyncio.to_thread(self.save, summary)

    async def load_all_async(self) -> list[RunSummary]:
        return await asyncio.to_thread(self.load_all)


__all__ = ["RunReporter"]
