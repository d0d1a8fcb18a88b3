from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from intake.config import Settings, get_settings
from intake.graph import CompletionError, FinalizationError
from intake.persistence import PersistenceCoordinator
from intake.remote import RemoteOnboardingClient
from intake.schema import TOTAL_STEPS, StepSchema, get_steps
from intake.session import FieldUpdateError, OnboardingSession
from intake.storage import LocalCache

logger = structlog.get_logger()


class _Entry:
    """A session plus the bearer token its backend calls carry."""

    def __init__(self, http: httpx.AsyncClient, cache: LocalCache, settings: Settings) -> None:
        self.access_token: str | None = None
        remote = RemoteOnboardingClient(http, token_provider=self.token)
        self.session = OnboardingSession(PersistenceCoordinator(cache, remote), settings=settings)

    def token(self) -> str | None:
        return self.access_token


class IdentityRequest(BaseModel):
    user_id: str | None = None
    placeholder: bool = False
    access_token: str | None = None


class FieldRequest(BaseModel):
    step: int
    field: str
    value: Any = None


class StepRequest(BaseModel):
    data: dict[str, Any]


def _step_payload(schema: StepSchema) -> dict[str, Any]:
    return {
        "number": schema.number,
        "id": schema.id,
        "label": schema.label,
        "required": list(schema.required),
        "rules": [
            {"id": rule.id, "when": rule.when.field, "require": list(rule.require)}
            for rule in schema.rules
        ],
    }


def _snapshot(session_id: str, session: OnboardingSession) -> dict[str, Any]:
    state = session.get_state().model_dump(mode="json")
    state["session_id"] = session_id
    state["load_source"] = session.load_source
    state["onboarding_completed"] = session.is_onboarding_completed()
    state["can_schedule_consultation"] = session.can_schedule_consultation()
    return state


def _require_real(session: OnboardingSession) -> None:
    if not session.scope.is_real:
        raise HTTPException(status_code=409, detail="Session has no authenticated user")


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    cache: LocalCache | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    cache = cache if cache is not None else LocalCache.from_settings(settings)
    http = httpx.AsyncClient(
        base_url=settings.backend_url,
        timeout=settings.remote_timeout_seconds,
        transport=transport,
    )
    sessions: dict[str, _Entry] = {}

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        for entry in list(sessions.values()):
            await entry.session.close()
        sessions.clear()
        await http.aclose()

    app = FastAPI(title="intake", lifespan=lifespan)
    app.state.sessions = sessions
    app.state.http = http

    def _entry(session_id: str) -> _Entry:
        entry = sessions.get(session_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return entry

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/steps")
    def steps() -> dict[str, Any]:
        return {"total_steps": TOTAL_STEPS, "steps": [_step_payload(s) for s in get_steps()]}

    @app.post("/sessions")
    async def start() -> dict[str, Any]:
        session_id = str(uuid.uuid4())
        entry = _Entry(http, cache, settings)
        sessions[session_id] = entry
        logger.info("session started", session_id=session_id)
        return _snapshot(session_id, entry.session)

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str) -> dict[str, Any]:
        return _snapshot(session_id, _entry(session_id).session)

    @app.delete("/sessions/{session_id}")
    async def end_session(session_id: str) -> dict[str, str]:
        entry = _entry(session_id)
        await entry.session.close()
        del sessions[session_id]
        logger.info("session ended", session_id=session_id)
        return {"status": "deleted"}

    @app.post("/sessions/{session_id}/identity")
    async def change_identity(session_id: str, req: IdentityRequest) -> dict[str, Any]:
        entry = _entry(session_id)
        entry.access_token = req.access_token
        transition = await entry.session.change_identity(req.user_id, placeholder=req.placeholder)
        out = _snapshot(session_id, entry.session)
        out["action"] = transition.action.value
        return out

    @app.patch("/sessions/{session_id}/fields")
    async def update_field(session_id: str, req: FieldRequest) -> dict[str, Any]:
        session = _entry(session_id).session
        _require_real(session)
        try:
            accepted = session.update_field(req.step, req.field, req.value)
        except FieldUpdateError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        if not accepted:
            raise HTTPException(status_code=409, detail="Update rejected")
        out = _snapshot(session_id, session)
        out["validation"] = session.validate_step(req.step).model_dump()
        return out

    @app.put("/sessions/{session_id}/steps/{step}")
    async def update_step(session_id: str, step: int, req: StepRequest) -> dict[str, Any]:
        session = _entry(session_id).session
        _require_real(session)
        try:
            accepted = session.update_step(step, req.data)
        except FieldUpdateError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        if not accepted:
            raise HTTPException(status_code=409, detail="Update rejected")
        out = _snapshot(session_id, session)
        out["validation"] = session.validate_step(step).model_dump()
        return out

    @app.get("/sessions/{session_id}/steps/{step}/validation")
    def validation(session_id: str, step: int) -> dict[str, Any]:
        session = _entry(session_id).session
        try:
            result = session.validate_step(step)
            conditional = session.conditional_requirements(step)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return {**result.model_dump(), "conditional_requirements": conditional}

    @app.post("/sessions/{session_id}/next")
    async def next_step(session_id: str) -> dict[str, Any]:
        session = _entry(session_id).session
        _require_real(session)
        moved, result = session.next()
        out = _snapshot(session_id, session)
        out["moved"] = moved
        out["validation"] = result.model_dump()
        return out

    @app.post("/sessions/{session_id}/previous")
    async def previous_step(session_id: str) -> dict[str, Any]:
        session = _entry(session_id).session
        _require_real(session)
        moved = session.previous()
        out = _snapshot(session_id, session)
        out["moved"] = moved
        return out

    @app.post("/sessions/{session_id}/goto/{step}")
    async def go_to(session_id: str, step: int) -> dict[str, Any]:
        session = _entry(session_id).session
        _require_real(session)
        if not session.go_to(step):
            raise HTTPException(status_code=422, detail=f"Unknown step {step}")
        out = _snapshot(session_id, session)
        out["moved"] = True
        return out

    @app.post("/sessions/{session_id}/complete")
    async def complete(session_id: str) -> dict[str, Any]:
        session = _entry(session_id).session
        _require_real(session)
        try:
            await session.complete()
        except CompletionError as exc:
            raise HTTPException(
                status_code=422,
                detail={
                    "message": str(exc),
                    "failing_steps": exc.failing_steps,
                    "errors": {str(k): v for k, v in exc.as_dict().items()},
                },
            )
        except FinalizationError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        return _snapshot(session_id, session)

    @app.post("/sessions/{session_id}/reset")
    async def reset(session_id: str) -> dict[str, Any]:
        session = _entry(session_id).session
        session.reset()
        return _snapshot(session_id, session)

    return app


app = create_app()
