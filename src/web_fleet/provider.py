from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .config import Settings, get_settings
from .errors import ProviderError
from .models import (
    CloseResult,
    ConnectionCheck,
    DebugEndpoint,
    Environment,
    EnvironmentPage,
    EnvironmentStatus,
    StartResult,
)

logger = logging.getLogger(__name__)

# Failure messages that mean the session is already gone.
_ALREADY_CLOSED_MARKERS = (
    "not found",
    "already closed",
    "not running",
    "不存在",
    "已关闭",
)


def _looks_already_closed(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _ALREADY_CLOSED_MARKERS)


class EnvironmentClient:
    """Async wrapper around the provisioning service's local HTTP API."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.provider_base_url
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url)

    async def __aenter__(self) -> "EnvironmentClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "X-API-ID": self.settings.provider_api_id or "",
            "X-API-KEY": self.settings.provider_api_key or "",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url.rstrip('/')}{path}"

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        action: str,
        timeout: float | None = None,
    ) -> Any:
        timeout = timeout if timeout is not None else self.settings.request_timeout_seconds
        try:
            response = await self._http.post(
                self._url(path),
                json=payload,
                headers=self._headers(),
                timeout=timeout,
            )
        except httpx.ConnectError as exc:
            raise ProviderError(
                f"{action} failed: connection refused, make sure the provider is running "
                f"on port {self.settings.provider_port}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{action} failed: request timed out") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"{action} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            detail = body.get("msg") if isinstance(body, dict) else None
            raise ProviderError(
                f"{action} failed: {detail or f'HTTP {response.status_code}'}",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise ProviderError(
                f"{action} failed: unexpected response body",
                status_code=response.status_code,
            )
        code = body.get("code")
        if code != 0:
            message = body.get("msg") or f"provider returned code={code}"
            raise ProviderError(
                f"{action} failed: {message}",
                status_code=response.status_code,
                code=code,
            )
        return body.get("data")

    async def list_environments(
        self,
        page: int = 1,
        page_size: int | None = None,
        *,
        env_name: str | None = None,
        group_id: int | None = None,
        env_id: str | None = None,
    ) -> EnvironmentPage:
        payload: dict[str, Any] = {
            "pageNo": page,
            "pageSize": page_size or self.settings.provider_page_size,
        }
        if env_name:
            payload["envName"] = env_name
        if group_id is not None:
            payload["groupId"] = group_id
        if env_id:
            payload["envId"] = env_id

        data = await self._post("/api/env/page", payload, action="List environments") or {}
        raw_items = data.get("dataList") or []
        offset = (page - 1) * payload["pageSize"]
        items = [
            Environment.from_provider(raw, index=offset + idx)
            for idx, raw in enumerate(raw_items, start=1)
        ]
        return EnvironmentPage(items=items, total=int(data.get("total") or 0))

    async def list_all_environments(self, **filters: Any) -> list[Environment]:
        """Walk every page of the environment listing."""
        collected: list[Environment] = []
        page = 1
        while True:
            result = await self.list_environments(page, **filters)
            collected.extend(result.items)
            if not result.items or len(collected) >= result.total:
                return collected
            page += 1

    async def start_environment(
        self,
        env_id: str,
        *,
        headless: Optional[bool] = None,
        cdp_evasion: Optional[bool] = None,
        encrypt_key: Optional[str] = None,
    ) -> StartResult:
        if not env_id:
            raise ValueError("env_id is required to start an environment.")
        payload: dict[str, Any] = {"envId": str(env_id)}
        if headless is not None:
            payload["isHeadless"] = headless
        if cdp_evasion is not None:
            payload["cdpEvasion"] = cdp_evasion
        if encrypt_key:
            payload["encryptKey"] = encrypt_key

        data = await self._post(
            "/api/env/start",
            payload,
            action="Start environment",
            timeout=self.settings.start_timeout_seconds,
        ) or {}
        endpoint = None
        debug_port = data.get("debugPort")
        if debug_port not in (None, ""):
            endpoint = DebugEndpoint(
                host=self.settings.provider_host,
                debug_port=int(debug_port),
                webdriver=data.get("webdriver"),
            )
        return StartResult(
            debug_endpoint=endpoint,
            driver_info=data.get("webdriver"),
            raw=data,
        )

    async def close_environment(self, env_id: str) -> CloseResult:
        try:
            await self._post("/api/env/close", {"envId": str(env_id)}, action="Close environment")
        except ProviderError as exc:
            # Transport failures carry neither a status nor a provider code.
            answered = exc.status_code is not None or exc.code is not None
            if exc.status_code == 404 or (answered and _looks_already_closed(str(exc))):
                logger.debug("Environment %s already closed: %s", env_id, exc)
                return CloseResult(already_closed=True)
            raise
        return CloseResult(already_closed=False)

    async def get_environment_status(self, env_id: str) -> EnvironmentStatus:
        data = await self._post(
            "/api/env/status", {"envId": str(env_id)}, action="Get environment status"
        ) or {}
        return EnvironmentStatus(
            status=data.get("status"),
            local_status=data.get("localStatus"),
        )

    async def get_environment_detail(self, env_id: str) -> dict[str, Any]:
        data = await self._post(
            "/api/env/detail", {"envId": str(env_id)}, action="Get environment detail"
        )
        return data or {}

    async def check_connection(self) -> ConnectionCheck:
        """Probe configuration, reachability and credentials in that order."""
        details: dict[str, Any] = {
            "base_url": self.base_url,
            "port": self.settings.provider_port,
            "has_api_id": bool(self.settings.provider_api_id),
            "has_api_key": bool(self.settings.provider_api_key),
        }
        if not self.settings.provider_api_id or not self.settings.provider_api_key:
            return ConnectionCheck(
                success=False,
                message="API ID or API key is not configured",
                details=details,
            )

        try:
            await self._http.get(self._url("/"), timeout=self.settings.probe_timeout_seconds)
        except httpx.ConnectError:
            details["suggestion"] = "Start the provider client and enable its local API"
            return ConnectionCheck(
                success=False,
                message=f"Cannot reach the provider on port {self.settings.provider_port}",
                details=details,
            )
        except httpx.TimeoutException:
            details["suggestion"] = "Check that the provider service is responsive"
            return ConnectionCheck(
                success=False,
                message=f"Connection to port {self.settings.provider_port} timed out",
                details=details,
            )
        except httpx.RequestError:
            logger.debug("Provider root probe failed", exc_info=True)

        try:
            result = await self.list_environments(1, 1)
        except ProviderError as exc:
            suggestion = "Check the API ID and API key"
            if exc.status_code in (401, 403):
                suggestion = "The API ID or API key was rejected; regenerate them in the provider client"
            details.update(error=str(exc), suggestion=suggestion)
            return ConnectionCheck(
                success=False,
                message=f"API verification failed: {exc}",
                details=details,
            )
        details["total_environments"] = result.total
        return ConnectionCheck(success=True, message="Connected", details=details)


__all__ = ["EnvironmentClient"]
