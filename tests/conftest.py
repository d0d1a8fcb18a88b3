"""Shared fixtures: a scripted backend, an in-process cache on a fake clock."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from intake.config import Settings
from intake.persistence import PersistenceCoordinator
from intake.remote import RemoteOnboardingClient
from intake.session import OnboardingSession
from intake.storage import LocalCache

BACKEND_URL = "http://backend.test/api"
ACCESS_TOKEN = "token-123"
START_MS = 1_760_000_000_000


class FakeBackend:
    """Scripted stand-in for the onboarding and profile endpoints."""

    def __init__(self) -> None:
        self.onboarding: dict[str, Any] | None = None
        self.profile: dict[str, Any] | None = None
        self.babies: list[dict[str, Any]] = []
        self.completed = False
        self.save_status: int | None = None
        self.complete_status: int | None = None
        self.unreachable = False
        self.requests: list[tuple[str, str, Any]] = []
        self.auth_headers: list[str | None] = []

    def calls(self, method: str, path: str) -> list[Any]:
        return [body for m, p, body in self.requests if m == method and p == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))
        self.auth_headers.append(request.headers.get("Authorization"))

        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        if request.method == "GET" and path == "/onboarding/data":
            if self.onboarding is None:
                return httpx.Response(404, json={"success": False, "error": "Not found"})
            return httpx.Response(200, json={"success": True, "data": self.onboarding})

        if request.method == "PUT" and path == "/onboarding/data":
            if self.save_status == 400:
                return httpx.Response(
                    400,
                    json={
                        "success": False,
                        "error": "Validation failed",
                        "details": [{"path": "personal_info.email", "msg": "Invalid email"}],
                    },
                )
            if self.save_status is not None:
                return httpx.Response(self.save_status, json={"success": False, "error": "boom"})
            self.onboarding = body
            return httpx.Response(200, json={"success": True, "data": body})

        if request.method == "POST" and path == "/onboarding/complete":
            if self.complete_status is not None:
                return httpx.Response(self.complete_status, json={"success": False, "error": "boom"})
            self.completed = True
            return httpx.Response(200, json={"success": True, "data": {"is_completed": True}})

        if request.method == "GET" and path == "/onboarding/status":
            return httpx.Response(200, json={"success": True, "data": {"is_completed": self.completed}})

        if request.method == "GET" and path == "/users/profile":
            if self.profile is None:
                return httpx.Response(404, json={"success": False, "error": "Not found"})
            return httpx.Response(200, json={"success": True, "data": self.profile})

        if request.method == "GET" and path == "/users/babies":
            return httpx.Response(200, json={"success": True, "data": self.babies})

        return httpx.Response(404, json={"success": False, "error": "Unknown route"})


class FakeClock:
    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> LocalCache:
    return LocalCache(clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(backend_url=BACKEND_URL, resync_delay_seconds=0.0)


@pytest.fixture
def http(backend: FakeBackend) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=BACKEND_URL, transport=httpx.MockTransport(backend.handler))


@pytest.fixture
def remote(http: httpx.AsyncClient) -> RemoteOnboardingClient:
    return RemoteOnboardingClient(http, token_provider=lambda: ACCESS_TOKEN)


@pytest.fixture
def coordinator(cache: LocalCache, remote: RemoteOnboardingClient) -> PersistenceCoordinator:
    return PersistenceCoordinator(cache, remote)


@pytest.fixture
def session(coordinator: PersistenceCoordinator, settings: Settings) -> OnboardingSession:
    return OnboardingSession(coordinator, settings=settings)
