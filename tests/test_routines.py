import json
import os

import pytest

from web_fleet.errors import RoutineLoadError
from web_fleet.models import DebugEndpoint, Environment
from web_fleet.routines import RoutineContext, RoutineRegistry, invoke_routine


def _write_routine(path, body: str) -> None:
    path.write_text(body, encoding="utf-8")


def _context(port: int = 9222) -> RoutineContext:
    env = Environment(id="env-1", name="Profile 1")
    return RoutineContext(
        environment_id=env.id,
        environment=env,
        debug_endpoint=DebugEndpoint(debug_port=port),
        client=None,
        log=lambda message, level="info": None,
    )


def test_discover_uses_aliases_and_skips_private_files(tmp_path):
    _write_routine(tmp_path / "login.py", "def execute(ctx):\n    return True\n")
    _write_routine(tmp_path / "checkout.py", "def execute(ctx):\n    return True\n")
    _write_routine(tmp_path / "_helpers.py", "VALUE = 1\n")
    (tmp_path / "routine-alias.json").write_text(
        json.dumps({"login.py": "Daily login"}), encoding="utf-8"
    )

    registry = RoutineRegistry(tmp_path)
    refs = registry.discover()

    assert [ref.name for ref in refs] == ["checkout", "login"]
    assert refs[1].label == "Daily login"
    assert refs[0].label == "checkout"


def test_file_routine_is_reloaded_after_edit(tmp_path):
    routine_file = tmp_path / "greet.py"
    _write_routine(routine_file, "def execute(ctx):\n    return {'success': True, 'message': 'v1'}\n")
    registry = RoutineRegistry(tmp_path)
    ref = registry.resolve("greet")

    first = registry.load(ref)
    assert first(None)["message"] == "v1"
    assert registry.version("greet") == 1

    _write_routine(routine_file, "def execute(ctx):\n    return {'success': True, 'message': 'v2'}\n")
    stat = routine_file.stat()
    os.utime(routine_file, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

    second = registry.load(ref)
    assert second(None)["message"] == "v2"
    assert registry.version("greet") == 2


def test_file_without_execute_is_rejected(tmp_path):
    _write_routine(tmp_path / "broken.py", "def run(ctx):\n    return True\n")
    registry = RoutineRegistry(tmp_path)

    with pytest.raises(RoutineLoadError, match="execute"):
        registry.load(registry.resolve("broken"))


def test_file_with_syntax_error_is_reported(tmp_path):
    _write_routine(tmp_path / "typo.py", "def execute(ctx)\n    return True\n")
    registry = RoutineRegistry(tmp_path)

    with pytest.raises(RoutineLoadError, match="typo"):
        registry.load(registry.resolve("typo"))


def test_unknown_routine_cannot_be_resolved(tmp_path):
    registry = RoutineRegistry(tmp_path)
    with pytest.raises(RoutineLoadError, match="Unknown routine"):
        registry.resolve("does-not-exist")


def test_registered_routine_returns_latest_definition():
    registry = RoutineRegistry()
    ref = registry.register("ping", lambda ctx: "old")
    registry.register("ping", lambda ctx: "new", display_name="Ping")

    assert registry.load(ref)(None) == "new"
    assert registry.resolve("ping").label == "Ping"
    assert registry.version("ping") == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result, expected",
    [
        (None, None),
        (True, None),
        ({"success": True}, None),
        (False, "routine reported failure"),
        ({"success": False, "message": "captcha shown"}, "captcha shown"),
        ({"success": False}, "routine reported failure"),
    ],
)
async def test_invoke_routine_interprets_return_values(result, expected):
    async def routine(ctx):
        return result

    assert await invoke_routine(routine, _context()) == expected


@pytest.mark.asyncio
async def test_invoke_routine_supports_sync_callables():
    seen = []

    def routine(ctx):
        seen.append(ctx.ws_url)

    assert await invoke_routine(routine, _context(9444)) is None
    assert seen == ["ws://127.0.0.1:9444/devtools/browser"]


@pytest.mark.asyncio
async def test_invoke_routine_propagates_exceptions():
    def routine(ctx):
        raise RuntimeError("selector not found")

    with pytest.raises(RuntimeError, match="selector not found"):
        await invoke_routine(routine, _context())


@pytest.mark.asyncio
async def test_resolve_ws_endpoint_falls_back_when_browser_unreachable():
    context = _context(port=1)
    url = await context.resolve_ws_endpoint(timeout=0.5)
    assert url == "ws://127.0.0.1:1/devtools/browser"
