from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Condition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str
    equals: Any = None
    contains: str | None = None

    def matches(self, section: dict[str, Any]) -> bool:
        actual = get_path(section, self.field)
        if self.contains is not None:
            if not isinstance(actual, (list, tuple, set)):
                return False
            needle = self.contains.strip().lower()
            return any(str(item).strip().lower() == needle for item in actual)
        if "equals" not in self.model_fields_set:
            return not is_missing(actual)
        if isinstance(self.equals, bool):
            return actual is self.equals
        if actual is None:
            return False
        return str(actual) == str(self.equals)


class ConditionalRule(BaseModel):
    """A pure function of the record returning extra required fields."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    when: Condition
    require: tuple[str, ...]

    def __call__(self, record: Any, section_id: str) -> tuple[str, ...]:
        section = _section_dict(record, section_id)
        if self.when.matches(section):
            return self.require
        return ()


class StepSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    number: int
    id: str
    label: str
    required: tuple[str, ...] = ()
    rules: tuple[ConditionalRule, ...] = ()
    messages: dict[str, str] = Field(default_factory=dict)

    def message_for(self, field_key: str) -> str:
        return self.messages.get(field_key) or f"{field_key} is required"

    def required_fields(self, record: Any) -> list[str]:
        fields: list[str] = list(self.required)
        for rule in self.rules:
            for field_key in rule(record, self.id):
                if field_key not in fields:
                    fields.append(field_key)
        return fields


def _section_dict(record: Any, section_id: str) -> dict[str, Any]:
    section = record.section_data(section_id) if record is not None else None
    return section if isinstance(section, dict) else {}


def get_path(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool) or isinstance(value, (int, float)):
        return False
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, dict):
        return all(is_missing(v) for v in value.values())
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def _load_steps() -> tuple[int, list[StepSchema]]:
    steps_path = Path(__file__).with_name("steps.json")
    raw = json.loads(steps_path.read_text(encoding="utf-8"))
    steps = sorted((StepSchema.model_validate(s) for s in raw["steps"]), key=lambda s: s.number)
    total = int(raw.get("total_steps") or len(steps))
    if [s.number for s in steps] != list(range(1, total + 1)):
        raise ValueError("steps.json must define steps 1..total_steps exactly once")
    return total, steps


TOTAL_STEPS, STEPS = _load_steps()
STEPS_BY_NUMBER: dict[int, StepSchema] = {s.number: s for s in STEPS}
STEPS_BY_ID: dict[str, StepSchema] = {s.id: s for s in STEPS}


def get_steps() -> list[StepSchema]:
    return STEPS


def get_step(number: int) -> StepSchema:
    step = STEPS_BY_NUMBER.get(number)
    if step is None:
        raise ValueError(f"Unknown step {number}; expected 1..{TOTAL_STEPS}")
    return step
