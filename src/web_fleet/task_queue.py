from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import QueueBuildError
from .models import Environment, RoutineRef, ScheduleMode, TaskState


@dataclass
class Task:
    id: str
    environment: Environment
    routines: list[RoutineRef]
    index: int
    total: int
    round: Optional[int] = None
    state: TaskState = TaskState.pending
    asyncio_task: Optional[asyncio.Task] = None
    start_attempted: bool = False
    closed: bool = False
    # Set once a stop gives up on the task; its late outcomes are dropped.
    detached: bool = False
    # Routines with no recorded outcome yet.
    pending_routines: list[RoutineRef] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.pending_routines:
            self.pending_routines = list(self.routines)

    @property
    def label(self) -> str:
        return f"[{self.index}/{self.total}]"

    @property
    def holds_environment(self) -> bool:
        return self.start_attempted and not self.closed


def build_task_queue(
    environments: Sequence[Environment],
    routines: Sequence[RoutineRef],
    mode: ScheduleMode | str = ScheduleMode.per_environment,
) -> list[Task]:
    """Expand environments x routines into independent tasks, in admission order."""
    if not environments:
        raise QueueBuildError("No environments to run against.")
    if not routines:
        raise QueueBuildError("At least one routine is required.")
    mode = ScheduleMode(mode)

    if mode == ScheduleMode.per_environment:
        total = len(environments)
        return [
            Task(
                id=f"{position}:{env.id}",
                environment=env,
                routines=list(routines),
                index=position,
                total=total,
            )
            for position, env in enumerate(environments, start=1)
        ]

    total = len(environments) * len(routines)
    tasks: list[Task] = []
    for round_number, routine in enumerate(routines, start=1):
        for env in environments:
            tasks.append(
                Task(
                    id=f"{len(tasks) + 1}:{env.id}:r{round_number}",
                    environment=env,
                    routines=[routine],
                    index=len(tasks) + 1,
                    total=total,
                    round=round_number,
                )
            )
    return tasks


__all__ = ["Task", "build_task_queue"]
