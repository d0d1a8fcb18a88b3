"""Client for the backend's onboarding and profile endpoints.

Failures come back as values rather than exceptions so callers can decide
what a failed write means for them: a best-effort auto-save logs and moves
on, finalization surfaces the failure to the user.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Union

import httpx
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class RemoteOk:
    data: Any = None

    ok = True


@dataclass(frozen=True)
class RemoteNetworkError:
    message: str
    status_code: int | None = None

    ok = False


@dataclass(frozen=True)
class RemoteValidationError:
    message: str
    details: list[dict[str, str]] = field(default_factory=list)

    ok = False

    def field_errors(self) -> list[str]:
        return [f"{d.get('path')}: {d.get('msg')}" for d in self.details]


RemoteResult = Union[RemoteOk, RemoteNetworkError, RemoteValidationError]


class RemoteOnboardingClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        token_provider: Callable[[], str | None] | None = None,
    ) -> None:
        self._http = http
        self._token_provider = token_provider

    async def get_onboarding_data(self) -> RemoteResult:
        return await self._request("GET", "/onboarding/data", allow_missing=True)

    async def save_onboarding_data(self, payload: dict[str, Any], *, token: str | None = None) -> RemoteResult:
        return await self._request("PUT", "/onboarding/data", json=payload, token=token)

    async def complete_onboarding(self) -> RemoteResult:
        return await self._request("POST", "/onboarding/complete")

    async def get_onboarding_status(self) -> RemoteResult:
        return await self._request("GET", "/onboarding/status")

    async def get_user_profile(self) -> RemoteResult:
        return await self._request("GET", "/users/profile", allow_missing=True)

    async def get_user_babies(self) -> RemoteResult:
        return await self._request("GET", "/users/babies", allow_missing=True)

    def current_token(self) -> str | None:
        return self._token_provider() if self._token_provider else None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        allow_missing: bool = False,
        token: str | None = None,
    ) -> RemoteResult:
        token = token or self.current_token()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = await self._http.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("backend unreachable", method=method, path=path, error=str(exc))
            return RemoteNetworkError(message=str(exc) or exc.__class__.__name__)

        if allow_missing and response.status_code == 404:
            return RemoteOk(None)
        if response.status_code >= 500:
            return RemoteNetworkError(
                message=f"backend returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"success": response.is_success, "data": body}

        if response.status_code in (400, 422) or not response.is_success or body.get("success") is False:
            details = body.get("details")
            return RemoteValidationError(
                message=str(body.get("error") or body.get("message") or f"backend returned {response.status_code}"),
                details=details if isinstance(details, list) else [],
            )
        return RemoteOk(body.get("data"))
