from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_ID_KEYS = ("Id", "id", "envId", "environment_id")
_NAME_KEYS = ("envName", "name")


class ScheduleMode(str, Enum):
    per_environment = "per_environment"
    per_round = "per_round"


class TaskState(str, Enum):
    pending = "pending"
    starting = "starting"
    running = "running"
    closing = "closing"
    closed = "closed"


class LogLevel(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


class OutcomeStatus(str, Enum):
    success = "success"
    failed = "failed"


class Environment(BaseModel):
    """A provider-managed browser sandbox, referenced but never mutated by a run."""

    model_config = {"frozen": True}

    id: str
    name: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_provider(cls, raw: dict[str, Any], index: int = 0) -> "Environment":
        env_id = next((raw[key] for key in _ID_KEYS if raw.get(key) not in (None, "")), index)
        name = next((raw[key] for key in _NAME_KEYS if raw.get(key)), "")
        return cls(id=str(env_id), name=str(name), metadata=dict(raw))

    @property
    def label(self) -> str:
        return self.name or self.id


class RoutineRef(BaseModel):
    model_config = {"frozen": True}

    path: str
    name: str
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.name


class RunStats(BaseModel):
    running: int = 0
    completed: int = 0
    failed: int = 0


class RoutineOutcome(BaseModel):
    task_id: str
    environment_id: str
    environment_name: str = ""
    routine: str
    status: OutcomeStatus
    error: Optional[str] = None
    round: Optional[int] = None
    finished_at: datetime = Field(default_factory=utcnow)


class DebugEndpoint(BaseModel):
    host: str = "127.0.0.1"
    debug_port: int
    webdriver: Optional[str] = None

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.debug_port}/devtools/browser"

    @property
    def version_url(self) -> str:
        return f"http://{self.host}:{self.debug_port}/json/version"


class StartResult(BaseModel):
    debug_endpoint: Optional[DebugEndpoint] = None
    driver_info: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class CloseResult(BaseModel):
    already_closed: bool = False


class EnvironmentStatus(BaseModel):
    status: Optional[str] = None
    local_status: Optional[str] = None

    @property
    def is_stopped(self) -> bool:
        values = {
            str(value).strip().lower()
            for value in (self.status, self.local_status)
            if value is not None
        }
        if not values:
            return False
        return values <= {"stopped", "stop", "closed", "not_running", "0"}


class EnvironmentPage(BaseModel):
    items: list[Environment]
    total: int = 0


class ConnectionCheck(BaseModel):
    success: bool
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class RunSummary(BaseModel):
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    mode: ScheduleMode
    routines: list[str]
    outcomes: list[RoutineOutcome] = Field(default_factory=list)
    stats: RunStats = Field(default_factory=RunStats)
    stopped: bool = False
    unclosed_environments: list[str] = Field(default_factory=list)


class LogEvent(BaseModel):
    message: str
    level: LogLevel
    created_at: datetime = Field(default_factory=utcnow)


class RunRequest(BaseModel):
    routines: list[str] = Field(..., min_length=1)
    environment_ids: list[str] = Field(default_factory=list)
    mode: Optional[ScheduleMode] = None
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=100)

    @field_validator("environment_ids")
    @classmethod
    def _strip_ids(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item and item.strip()]
