from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List

import structlog
from langgraph.graph import END, StateGraph
from pydantic import BaseModel, ConfigDict, Field

from intake import engine
from intake.persistence import PersistenceCoordinator
from intake.remote import RemoteResult
from intake.schema import TOTAL_STEPS
from intake.state import IdentityScope, OnboardingRecord, ValidationResult

logger = structlog.get_logger()


class CompletionError(Exception):
    """Raised when one or more steps fail the final validation pass."""

    def __init__(self, failures: list[ValidationResult]) -> None:
        self.failures = failures
        summary = "; ".join(
            f"step {r.step_number}: {', '.join(sorted(r.errors))}" for r in failures
        )
        super().__init__(f"Onboarding is incomplete ({summary})")

    @property
    def failing_steps(self) -> list[int]:
        return [r.step_number for r in self.failures]

    def as_dict(self) -> dict[int, dict[str, str]]:
        return {r.step_number: dict(r.errors) for r in self.failures}


class FinalizationError(Exception):
    """Raised when the backend refuses or never receives the final submit."""

    def __init__(self, result: RemoteResult) -> None:
        self.result = result
        super().__init__(getattr(result, "message", "Failed to complete onboarding"))


class CompletionState(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    scope: IdentityScope
    record: OnboardingRecord
    failures: List[ValidationResult] = Field(default_factory=list)
    remote_error: Any = None
    completed: bool = False


class CompletionGate:
    """Final cross-step validation followed by the two-phase remote finalize."""

    def __init__(self, coordinator: PersistenceCoordinator) -> None:
        self.coordinator = coordinator
        self._graph = self._build()

    def can_complete(self, record: OnboardingRecord) -> bool:
        return engine.can_complete(record)

    async def complete(self, scope: IdentityScope, record: OnboardingRecord) -> OnboardingRecord:
        out = await self._graph.ainvoke(CompletionState(scope=scope, record=record))
        state = out if isinstance(out, CompletionState) else CompletionState.model_validate(out)
        if state.failures:
            raise CompletionError(state.failures)
        if state.remote_error is not None:
            raise FinalizationError(state.remote_error)
        return state.record

    def _validate(self, state: CompletionState) -> CompletionState:
        state.failures = engine.failing_steps(state.record)
        if state.failures:
            logger.info(
                "completion blocked",
                scope=str(state.scope),
                steps=[r.step_number for r in state.failures],
            )
        return state

    async def _finalize(self, state: CompletionState) -> CompletionState:
        result = await self.coordinator.finalize(state.scope, state.record)
        if not result.ok:
            state.remote_error = result
        return state

    def _seal(self, state: CompletionState) -> CompletionState:
        state.record = state.record.model_copy(
            update={
                "is_completed": True,
                "completed_at": datetime.now(timezone.utc),
                "completed_steps": list(range(1, TOTAL_STEPS + 1)),
            }
        )
        self.coordinator.purge(state.scope)
        state.completed = True
        logger.info("onboarding completed", scope=str(state.scope))
        return state

    def _build(self):
        builder = StateGraph(CompletionState)
        builder.add_node("validate", self._validate)
        builder.add_node("finalize", self._finalize)
        builder.add_node("seal", self._seal)

        builder.set_entry_point("validate")
        builder.add_conditional_edges(
            "validate",
            lambda s: END if s.failures else "finalize",
            {"finalize": "finalize", END: END},
        )
        builder.add_conditional_edges(
            "finalize",
            lambda s: END if s.remote_error is not None else "seal",
            {"seal": "seal", END: END},
        )
        builder.add_edge("seal", END)
        return builder.compile()
