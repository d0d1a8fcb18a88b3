from __future__ import annotations

import structlog

from intake.schema import TOTAL_STEPS, get_path, get_step, get_steps, is_missing
from intake.state import OnboardingRecord, ValidationResult

logger = structlog.get_logger()


def validate(step: int, record: OnboardingRecord) -> ValidationResult:
    """Check one step of ``record`` against its schema.

    Starts from the static required set, then adds whatever each conditional
    rule asks for given the values already entered. Every missing field is
    reported; nothing short-circuits.
    """
    schema = get_step(step)
    section = record.section_data(schema.id)
    required = schema.required_fields(record)
    errors: dict[str, str] = {}
    for field_key in required:
        if is_missing(get_path(section, field_key)):
            errors[field_key] = schema.message_for(field_key)
    return ValidationResult(
        step_number=step,
        is_valid=not errors,
        required_fields=required,
        errors=errors,
    )


def validate_all(record: OnboardingRecord) -> list[ValidationResult]:
    return [validate(s.number, record) for s in get_steps()]


def failing_steps(record: OnboardingRecord) -> list[ValidationResult]:
    return [r for r in validate_all(record) if not r.is_valid]


def can_complete(record: OnboardingRecord) -> bool:
    return not failing_steps(record)


def conditional_requirements(step: int, record: OnboardingRecord) -> dict[str, bool]:
    """Which conditional rules of ``step`` are currently switched on."""
    schema = get_step(step)
    return {rule.id: bool(rule(record, schema.id)) for rule in schema.rules}


class StepStateMachine:
    """Current wizard step plus the set of steps that passed validation.

    Forward moves are gated on the current step validating; backward and
    direct jumps are not. ``completed_steps`` only ever holds in-range steps
    whose most recent validation passed.
    """

    def __init__(self, total_steps: int = TOTAL_STEPS, *, current_step: int = 1) -> None:
        if total_steps < 1:
            raise ValueError("total_steps must be positive")
        self.total_steps = total_steps
        self.current_step = min(max(current_step, 1), total_steps)
        self._completed: set[int] = set()

    @property
    def completed_steps(self) -> list[int]:
        return sorted(self._completed)

    @property
    def is_last_step(self) -> bool:
        return self.current_step == self.total_steps

    def progress(self) -> float:
        counted = {s for s in self._completed if 1 <= s <= self.total_steps}
        return min(len(counted) / self.total_steps, 1.0)

    def restore(self, completed_steps: list[int]) -> None:
        self._completed = {s for s in completed_steps if 1 <= s <= self.total_steps}

    def reset(self) -> None:
        self.current_step = 1
        self._completed.clear()

    def record_result(self, result: ValidationResult) -> None:
        if not 1 <= result.step_number <= self.total_steps:
            return
        if result.is_valid:
            self._completed.add(result.step_number)
        else:
            self._completed.discard(result.step_number)

    def next(self, record: OnboardingRecord) -> tuple[bool, ValidationResult]:
        result = validate(self.current_step, record)
        self.record_result(result)
        if not result.is_valid:
            logger.info("step rejected", step=self.current_step, errors=sorted(result.errors))
            return False, result
        if self.is_last_step:
            return False, result
        self.current_step += 1
        return True, result

    def previous(self) -> bool:
        if self.current_step <= 1:
            return False
        self.current_step -= 1
        return True

    def go_to(self, step: int) -> bool:
        if not 1 <= step <= self.total_steps:
            logger.info("step out of range", step=step, total_steps=self.total_steps)
            return False
        self.current_step = step
        return True
