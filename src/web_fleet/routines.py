"""Routine discovery, fresh loading and invocation.

A routine is a Python file (or importable module) exposing ``execute(context)``.
The callable may be sync or async. It signals failure by raising, by returning
``False``, or by returning a mapping with ``success`` set to false.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import itertools
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import httpx

from .errors import RoutineLoadError
from .models import DebugEndpoint, Environment, LogLevel, RoutineRef

logger = logging.getLogger(__name__)

RoutineCallable = Callable[["RoutineContext"], Any]
LogFunction = Callable[..., None]

_REGISTERED_PREFIX = "registered:"
_module_counter = itertools.count(1)


@dataclass
class RoutineContext:
    """Everything a routine gets to see about the environment it runs against."""

    environment_id: str
    environment: Environment
    debug_endpoint: DebugEndpoint
    client: Any
    log: LogFunction
    config: Mapping[str, Any] = field(default_factory=dict)
    task_label: str = ""

    @property
    def ws_url(self) -> str:
        return self.debug_endpoint.ws_url

    async def resolve_ws_endpoint(self, timeout: float = 3.0) -> str:
        """Ask the browser for its debugger URL, falling back to the conventional one."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as http:
                response = await http.get(self.debug_endpoint.version_url)
                response.raise_for_status()
                url = response.json().get("webSocketDebuggerUrl")
        except (httpx.HTTPError, ValueError):
            logger.debug(
                "Could not resolve debugger URL for %s", self.environment_id, exc_info=True
            )
            url = None
        return url or self.debug_endpoint.ws_url


class RoutineRegistry:
    """Resolve routine references to callables, loading the current definition every time."""

    def __init__(self, routines_dir: Path | None = None, alias_file: str = "routine-alias.json"):
        self.routines_dir = Path(routines_dir).resolve() if routines_dir else None
        self.alias_file = alias_file
        self._registered: dict[str, tuple[RoutineRef, RoutineCallable]] = {}
        self._versions: dict[str, int] = {}
        self._mtimes: dict[str, int] = {}

    def register(
        self, name: str, fn: RoutineCallable, display_name: str | None = None
    ) -> RoutineRef:
        if not callable(fn):
            raise RoutineLoadError(f"Routine {name!r} is not callable")
        ref = RoutineRef(
            path=f"{_REGISTERED_PREFIX}{name}",
            name=name,
            display_name=display_name or name,
        )
        self._registered[name] = (ref, fn)
        self._versions[name] = self._versions.get(name, 0) + 1
        return ref

    def version(self, name: str) -> int:
        return self._versions.get(name, 0)

    def _load_aliases(self) -> dict[str, str]:
        if not self.routines_dir:
            return {}
        alias_path = self.routines_dir / self.alias_file
        if not alias_path.exists():
            return {}
        try:
            with alias_path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
        except (OSError, ValueError):
            logger.warning("Could not read routine aliases from %s", alias_path, exc_info=True)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def discover(self) -> list[RoutineRef]:
        refs: list[RoutineRef] = []
        if self.routines_dir and self.routines_dir.is_dir():
            aliases = self._load_aliases()
            for entry in sorted(self.routines_dir.glob("*.py")):
                if entry.name.startswith("_"):
                    continue
                name = entry.stem
                display = aliases.get(entry.name) or aliases.get(name) or name
                refs.append(RoutineRef(path=str(entry), name=name, display_name=display))
        known = {ref.name for ref in refs}
        refs.extend(ref for name, (ref, _) in self._registered.items() if name not in known)
        return refs

    def resolve(self, routine: str | RoutineRef) -> RoutineRef:
        if isinstance(routine, RoutineRef):
            return routine
        if routine in self._registered:
            return self._registered[routine][0]
        for ref in self.discover():
            if routine in (ref.name, ref.path):
                return ref
        candidate = Path(routine)
        if candidate.suffix == ".py" and candidate.exists():
            return RoutineRef(path=str(candidate.resolve()), name=candidate.stem)
        if all(part.isidentifier() for part in routine.split(".")):
            try:
                found = importlib.util.find_spec(routine)
            except (ImportError, ValueError):
                found = None
            if found is not None:
                return RoutineRef(path=routine, name=routine.rsplit(".", 1)[-1])
        raise RoutineLoadError(f"Unknown routine: {routine}")

    def load(self, ref: RoutineRef) -> RoutineCallable:
        if ref.path.startswith(_REGISTERED_PREFIX):
            entry = self._registered.get(ref.name)
            if entry is None:
                raise RoutineLoadError(f"Routine {ref.name!r} is no longer registered")
            return entry[1]
        if ref.path.endswith(".py"):
            module = self._load_file(ref)
        else:
            module = self._load_module(ref)
        fn = getattr(module, "execute", None)
        if not callable(fn):
            raise RoutineLoadError(
                f"Routine {ref.name!r} must define a callable named 'execute'"
            )
        return fn

    def _load_file(self, ref: RoutineRef):
        path = Path(ref.path)
        if not path.exists():
            raise RoutineLoadError(f"Routine file not found: {path}")
        mtime = path.stat().st_mtime_ns
        if self._mtimes.get(ref.name) != mtime:
            self._mtimes[ref.name] = mtime
            self._versions[ref.name] = self._versions.get(ref.name, 0) + 1

        module_name = f"web_fleet_routine_{path.stem}_{next(_module_counter)}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise RoutineLoadError(f"Cannot load routine from {path}")
        module = importlib.util.module_from_spec(spec)
        # Registered only while executing so dataclasses and friends can find it.
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise RoutineLoadError(f"Failed to load routine {ref.name!r}: {exc}") from exc
        finally:
            sys.modules.pop(module_name, None)
        return module

    def _load_module(self, ref: RoutineRef):
        try:
            module = importlib.import_module(ref.path)
            return importlib.reload(module)
        except Exception as exc:
            raise RoutineLoadError(f"Failed to load routine {ref.name!r}: {exc}") from exc


async def invoke_routine(fn: RoutineCallable, context: RoutineContext) -> Optional[str]:
    """Run a routine and return a failure message, or ``None`` on success."""
    result = fn(context)
    if inspect.isawaitable(result):
        result = await result
    if result is False:
        return "routine reported failure"
    if isinstance(result, Mapping) and result.get("success") is False:
        return str(result.get("message") or "routine reported failure")
    return None


def normalize_level(level: LogLevel | str | None) -> LogLevel:
    if isinstance(level, LogLevel):
        return level
    try:
        return LogLevel(str(level or "info").lower())
    except ValueError:
        return LogLevel.info


__all__ = [
    "RoutineCallable",
    "RoutineContext",
    "RoutineRegistry",
    "invoke_routine",
    "normalize_level",
]
