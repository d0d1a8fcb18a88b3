"""Per-device onboarding session.

One ``OnboardingSession`` owns the in-memory record for whichever identity
is currently active. Identity changes go through the scope guard under a
lock, so no field update can land while the record is being swapped.
Consumers either poll ``get_state()`` or ``subscribe()`` to transition
events.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

import structlog

from intake import engine
from intake.config import Settings, get_settings
from intake.graph import CompletionError, CompletionGate
from intake.identity import IdentityAction, IdentityScopeGuard, IdentityTransition
from intake.persistence import LoadSource, PersistenceCoordinator
from intake.remote import RemoteResult
from intake.sections import form_from_sections
from intake.state import IdentityScope, OnboardingRecord, Progress, SessionSnapshot, ValidationResult

logger = structlog.get_logger()

EventKind = Literal["identity_changed", "loaded", "field_updated", "step_changed", "completed", "reset"]


class FieldUpdateError(ValueError):
    """A field value that does not fit its step's section shape."""


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    snapshot: SessionSnapshot


Listener = Callable[[SessionEvent], None]


class OnboardingSession:
    def __init__(
        self,
        coordinator: PersistenceCoordinator,
        *,
        settings: Settings | None = None,
        gate: CompletionGate | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.coordinator = coordinator
        self.gate = gate or CompletionGate(coordinator)
        self.guard = IdentityScopeGuard()
        self.machine = engine.StepStateMachine()
        self.record = OnboardingRecord()
        self.load_source: LoadSource = "empty"
        self._listeners: list[Listener] = []
        self._lock = asyncio.Lock()
        self._transitioning = False
        self._pending: set[asyncio.Task] = set()
        self._resync: asyncio.Task | None = None

    @property
    def scope(self) -> IdentityScope:
        return self.guard.scope

    # -- identity -----------------------------------------------------------

    async def change_identity(self, user_id: str | None, *, placeholder: bool = False) -> IdentityTransition:
        identity = IdentityScope.resolve(
            user_id,
            placeholder=placeholder,
            placeholder_prefixes=self.settings.placeholder_prefixes,
        )
        async with self._lock:
            self._transitioning = True
            try:
                await self.flush()
                transition = self.guard.observe(identity)
                await self._apply_transition(transition)
            finally:
                self._transitioning = False
        self._emit("identity_changed")
        return transition

    async def _apply_transition(self, transition: IdentityTransition) -> None:
        if transition.action is IdentityAction.NOOP:
            return
        self._cancel_resync()
        self._clear_memory()
        if transition.action is IdentityAction.CLEAR:
            return

        if transition.action is IdentityAction.MIGRATE:
            self.coordinator.adopt_placeholder(transition.current)
        else:
            self.coordinator.sweep_placeholders()

        loaded = await self.coordinator.load(transition.current)
        self.record = loaded.record
        self.load_source = loaded.source
        if loaded.source in ("remote", "prefill"):
            self.coordinator.save_local(transition.current, self.record)
        logger.info("onboarding loaded", scope=str(transition.current), source=loaded.source)
        self._emit("loaded")

    # -- field mutation -----------------------------------------------------

    def update_field(self, step: int, field: str, value: Any) -> bool:
        if not self._accepts_mutation("update_field"):
            return False
        try:
            record = self.record.with_field(step, field, value)
        except ValueError as exc:
            raise FieldUpdateError(f"Invalid value for step {step} field {field!r}: {exc}") from exc
        self._commit(step, record)
        return True

    def update_step(self, step: int, data: dict[str, Any]) -> bool:
        if not self._accepts_mutation("update_step"):
            return False
        try:
            record = self.record.with_step_data(step, data)
        except ValueError as exc:
            raise FieldUpdateError(f"Invalid data for step {step}: {exc}") from exc
        self._commit(step, record)
        return True

    def _accepts_mutation(self, operation: str) -> bool:
        if self._transitioning:
            logger.warning("mutation dropped during identity transition", operation=operation)
            return False
        if not self.guard.permits(operation):
            return False
        if self.record.is_completed:
            logger.warning("mutation dropped after completion", operation=operation, scope=str(self.scope))
            return False
        return True

    def _commit(self, step: int, record: OnboardingRecord) -> None:
        result = engine.validate(step, record)
        if not result.is_valid:
            self.machine.record_result(result)
        self.record = record
        self._sync_completed()
        self._persist()
        self._emit("field_updated")

    def _persist(self) -> None:
        scope = self.scope
        self.coordinator.save_local(
            scope,
            self.record,
            completed_steps=self.machine.completed_steps,
            progress=self.machine.progress(),
        )
        self._schedule(self.coordinator.push_remote(scope, self.record, token=self._token()))

    def _token(self) -> str | None:
        return self.coordinator.remote.current_token()

    def _sync_completed(self) -> None:
        self.record = self.record.model_copy(update={"completed_steps": self.machine.completed_steps})

    # -- navigation ---------------------------------------------------------

    def next(self) -> tuple[bool, ValidationResult]:
        if not self.guard.permits("next"):
            return False, engine.validate(self.machine.current_step, self.record)
        moved, result = self.machine.next(self.record)
        self._sync_completed()
        # a finalized record has no cache entry; don't bring it back
        if not self.record.is_completed:
            self.coordinator.save_local(
                self.scope,
                self.record,
                completed_steps=self.machine.completed_steps,
                progress=self.machine.progress(),
            )
        if moved:
            self._on_step_changed()
        return moved, result

    def previous(self) -> bool:
        if not self.guard.permits("previous"):
            return False
        moved = self.machine.previous()
        if moved:
            self._on_step_changed()
        return moved

    def go_to(self, step: int) -> bool:
        if not self.guard.permits("go_to"):
            return False
        moved = self.machine.go_to(step)
        if moved:
            self._on_step_changed()
        return moved

    def _on_step_changed(self) -> None:
        self._emit("step_changed")
        if self.machine.is_last_step and not self.record.is_completed:
            self._schedule_resync()

    # -- queries ------------------------------------------------------------

    def validate_step(self, step: int | None = None) -> ValidationResult:
        return engine.validate(self._step_or_current(step), self.record)

    def conditional_requirements(self, step: int | None = None) -> dict[str, bool]:
        return engine.conditional_requirements(self._step_or_current(step), self.record)

    def _step_or_current(self, step: int | None) -> int:
        return self.machine.current_step if step is None else step

    def can_proceed(self) -> bool:
        if self.machine.is_last_step:
            return self.gate.can_complete(self.record)
        return self.validate_step().is_valid

    def progress(self) -> Progress:
        fraction = self.machine.progress()
        return Progress(
            total_steps=self.machine.total_steps,
            completed_steps=len(self.machine.completed_steps),
            current_step=self.machine.current_step,
            percent_complete=round(fraction * 100, 2),
            can_proceed=self.can_proceed(),
        )

    def get_state(self) -> SessionSnapshot:
        return SessionSnapshot(
            identity=self.scope,
            current_step=self.machine.current_step,
            record=self.record,
            progress=self.progress(),
            form=form_from_sections(self.record.sections),
        )

    def is_onboarding_completed(self) -> bool:
        return self.record.is_completed

    def can_schedule_consultation(self) -> bool:
        return self.is_onboarding_completed()

    async def remote_status(self) -> RemoteResult:
        return await self.coordinator.remote_status(self.scope)

    # -- completion & reset -------------------------------------------------

    async def complete(self) -> OnboardingRecord | None:
        if not self.guard.permits("complete"):
            return None
        if self.record.is_completed:
            logger.info("onboarding already completed", scope=str(self.scope))
            return self.record
        scope = self.scope
        await self.flush()
        try:
            record = await self.gate.complete(scope, self.record)
        except CompletionError as exc:
            for result in exc.failures:
                self.machine.record_result(result)
            self._sync_completed()
            raise
        self._cancel_resync()
        self.record = record
        self.machine.restore(record.completed_steps)
        self._emit("completed")
        return record

    def reset(self) -> None:
        self._cancel_resync()
        if self.scope.is_real:
            self.coordinator.purge(self.scope)
        self._clear_memory()
        self._emit("reset")

    def _clear_memory(self) -> None:
        self.record = OnboardingRecord()
        self.machine.reset()
        self.load_source = "empty"

    # -- listeners ----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: EventKind) -> None:
        if not self._listeners:
            return
        event = SessionEvent(kind=kind, snapshot=self.get_state())
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error("session listener failed", kind=kind, error=str(exc))

    # -- background work ----------------------------------------------------

    def _schedule(self, coro: Awaitable[Any]) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("no running event loop; remote save skipped", scope=str(self.scope))
            return None
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background remote write crashed", error=str(exc))

    def _schedule_resync(self) -> None:
        self._cancel_resync()
        self._resync = self._schedule(self._deferred_resync(self.scope, self._token()))

    async def _deferred_resync(self, scope: IdentityScope, token: str | None) -> None:
        await asyncio.sleep(self.settings.resync_delay_seconds)
        if self.scope != scope or self.record.is_completed:
            return
        logger.info("re-syncing all steps", scope=str(scope))
        await self.coordinator.push_remote(scope, self.record, token=token)

    def _cancel_resync(self) -> None:
        if self._resync is not None and not self._resync.done():
            self._resync.cancel()
        self._resync = None

    async def flush(self) -> None:
        """Wait for in-flight remote writes (not the deferred re-sync)."""
        while True:
            pending = [t for t in self._pending if t is not self._resync and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        self._cancel_resync()
        await self.flush()
        self._listeners.clear()
