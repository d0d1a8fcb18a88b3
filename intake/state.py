from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from intake.schema import STEPS_BY_ID, TOTAL_STEPS
from intake.sections import Section, build_section, dump_section, set_path


class OnboardingRecord(BaseModel):
    sections: Dict[int, Section] = Field(default_factory=dict)
    completed_steps: List[int] = Field(default_factory=list)
    is_completed: bool = False
    completed_at: Optional[datetime] = None

    @field_validator("completed_steps")
    @classmethod
    def _clamp_steps(cls, value: List[int]) -> List[int]:
        return sorted({s for s in value if 1 <= s <= TOTAL_STEPS})

    @model_validator(mode="after")
    def _completion_timestamp(self) -> "OnboardingRecord":
        if self.is_completed != (self.completed_at is not None):
            raise ValueError("completed_at must be set exactly when is_completed is true")
        return self

    def section(self, step: int) -> Any:
        return self.sections.get(step)

    def section_data(self, section_id: str) -> dict[str, Any]:
        step = STEPS_BY_ID.get(section_id)
        if step is None:
            return {}
        return dump_section(self.sections.get(step.number))

    def with_field(self, step: int, field_path: str, value: Any) -> "OnboardingRecord":
        current = dump_section(self.sections.get(step))
        updated = build_section(step, set_path(current, field_path, value))
        return self.model_copy(update={"sections": {**self.sections, step: updated}})

    def with_step_data(self, step: int, data: dict[str, Any]) -> "OnboardingRecord":
        current = dump_section(self.sections.get(step))
        for key, value in data.items():
            current = set_path(current, key, value)
        updated = build_section(step, current)
        return self.model_copy(update={"sections": {**self.sections, step: updated}})

    def without_completion(self) -> "OnboardingRecord":
        return self.model_copy(update={"completed_steps": [], "is_completed": False, "completed_at": None})


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_number: int
    is_valid: bool
    required_fields: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)


class IdentityScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["none", "placeholder", "real"] = "none"
    user_id: Optional[str] = None

    @classmethod
    def none(cls) -> "IdentityScope":
        return cls(kind="none")

    @classmethod
    def placeholder(cls, user_id: str | None = None) -> "IdentityScope":
        return cls(kind="placeholder", user_id=user_id)

    @classmethod
    def real(cls, user_id: str) -> "IdentityScope":
        if not user_id:
            raise ValueError("a real identity needs a user id")
        return cls(kind="real", user_id=user_id)

    @classmethod
    def resolve(
        cls,
        user_id: str | None,
        *,
        placeholder: bool = False,
        placeholder_prefixes: tuple[str, ...] = ("mock-user",),
    ) -> "IdentityScope":
        if not user_id:
            return cls.none()
        if placeholder or any(user_id.startswith(p) for p in placeholder_prefixes):
            return cls.placeholder(user_id)
        return cls.real(user_id)

    @property
    def is_real(self) -> bool:
        return self.kind == "real"

    def cache_key(self, namespace: str) -> str:
        if self.kind == "real":
            return f"{namespace}:user:{self.user_id}"
        if self.kind == "placeholder":
            return f"{namespace}:placeholder:{self.user_id or 'anonymous'}"
        raise ValueError("no cache key for an empty identity")

    def __str__(self) -> str:
        return self.kind if self.user_id is None else f"{self.kind}:{self.user_id}"


class CacheEntry(BaseModel):
    record: OnboardingRecord
    completed_steps: List[int] = Field(default_factory=list)
    progress: float = 0.0
    timestamp: int


class Progress(BaseModel):
    total_steps: int
    completed_steps: int
    current_step: int
    percent_complete: float
    can_proceed: bool


class SessionSnapshot(BaseModel):
    identity: IdentityScope
    current_step: int
    record: OnboardingRecord
    progress: Progress
    form: Dict[str, Any] = Field(default_factory=dict)
