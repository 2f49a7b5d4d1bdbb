import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT_DIR / "src"))

from web_fleet.config import Settings
from web_fleet.errors import ProviderError
from web_fleet.models import (
    CloseResult,
    ConnectionCheck,
    DebugEndpoint,
    Environment,
    EnvironmentPage,
    EnvironmentStatus,
    StartResult,
)


class FakeProvider:
    """In-memory provisioning service that records every call it receives."""

    def __init__(self, environments=None):
        self.environments = list(environments or [])
        self.open: set[str] = set()
        self.max_open = 0
        self.events: list[tuple[str, str]] = []
        self.fail_start: set[str] = set()
        self.no_debug_port: set[str] = set()
        self.close_failures: dict[str, int] = {}
        self.status_script: dict[str, list[str]] = {}
        self.start_delay = 0.0
        self.close_delay = 0.0
        self._ports = 9200

    def calls(self, kind: str, env_id: str | None = None) -> list[str]:
        return [
            target
            for name, target in self.events
            if name == kind and (env_id is None or target == env_id)
        ]

    async def check_connection(self):
        return ConnectionCheck(success=True, message="Connected")

    async def list_environments(self, page=1, page_size=None, **filters):
        return EnvironmentPage(items=list(self.environments), total=len(self.environments))

    async def list_all_environments(self, **filters):
        return list(self.environments)

    async def start_environment(self, env_id):
        self.events.append(("start", env_id))
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if env_id in self.fail_start:
            raise ProviderError("Start environment failed: profile is locked", code=1)
        self.open.add(env_id)
        self.max_open = max(self.max_open, len(self.open))
        if env_id in self.no_debug_port:
            return StartResult(raw={"envId": env_id})
        self._ports += 1
        return StartResult(
            debug_endpoint=DebugEndpoint(debug_port=self._ports),
            raw={"envId": env_id, "debugPort": self._ports},
        )

    async def close_environment(self, env_id):
        self.events.append(("close", env_id))
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        remaining = self.close_failures.get(env_id, 0)
        if remaining:
            self.close_failures[env_id] = remaining - 1
            raise ProviderError("Close environment failed: busy", code=500)
        if env_id not in self.open:
            return CloseResult(already_closed=True)
        self.open.discard(env_id)
        return CloseResult()

    async def get_environment_status(self, env_id):
        self.events.append(("status", env_id))
        script = self.status_script.get(env_id)
        if script:
            return EnvironmentStatus(status=script.pop(0))
        return EnvironmentStatus(status="running" if env_id in self.open else "stopped")


def make_environments(count: int) -> list[Environment]:
    return [Environment(id=f"env-{i}", name=f"Profile {i}") for i in range(1, count + 1)]


@pytest.fixture
def settings(tmp_path, monkeypatch):
    for name in ("BASE_DATA_DIR", "MAX_CONCURRENT", "ROUTINES_DIR", "ROUTINE_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    config = Settings(
        base_data_dir=tmp_path / "data",
        routines_dir=tmp_path / "routines",
        max_concurrent=2,
        close_retry_delay_seconds=0,
        stop_timeout_seconds=0.5,
        provider_api_id="api-id",
        provider_api_key="api-key",
    )
    config.ensure_directories()
    return config


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def envs():
    return make_environments
