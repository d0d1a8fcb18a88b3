"""Section payloads for each onboarding step.

Every step owns one section shape. Sections are a tagged union keyed by the
step number (the ``step`` literal), so a record can hold any mix of partially
filled sections and still round-trip through JSON unambiguously.

All leaf fields are optional: a section is built up one field at a time and
completeness is decided by the validation engine, not by the model.
"""

from __future__ import annotations

import copy
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from intake.schema import STEPS_BY_ID, STEPS_BY_NUMBER


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BabyInfo(_Payload):
    name: str | None = None
    date_of_birth: str | None = None
    gender: Literal["male", "female", "other"] | None = None
    birth_weight: float | None = None
    birth_height: float | None = None
    delivery_type: Literal["vaginal", "c_section", "assisted"] | None = None
    gestational_age: int | None = None
    current_weight: float | None = None
    weight_check_date: str | None = None


class BreastfeedingDetails(_Payload):
    direct_feeds_per_day: int | None = None
    latch_quality: str | None = None
    offers_both_breasts: bool | None = None
    time_per_breast: str | None = None


class BabyOutput(_Payload):
    pee_count_24h: int | None = None
    poop_count_24h: int | None = None


class FormulaDetails(_Payload):
    formula_brand: str | None = None
    times_offered_per_day: int | None = None
    amount_per_feed: float | None = None
    reason_for_formula: str | None = None


class BottleDetails(_Payload):
    bottle_brand: str | None = None
    bottle_brand_other: str | None = None
    feed_duration: str | None = None
    uses_paced_bottle_feeding: bool | None = None
    bottle_contents: Literal["breast_milk", "formula", "both"] | None = None


class PumpingDetails(_Payload):
    pump_brand: str | None = None
    pump_brand_other: str | None = None
    pump_type: Literal["manual", "electric_single", "electric_double"] | None = None
    pumps_both_breasts: bool | None = None
    sessions_per_day: int | None = None
    minutes_per_session: int | None = None
    average_output_ml: float | None = None


class PersonalInfo(_Payload):
    step: Literal[1] = 1
    email: str | None = None
    full_name: str | None = None
    phone_number: str | None = None
    employment_status: Literal["employed", "unemployed", "maternity_leave", "student"] | None = None
    languages_spoken: list[str] | None = None


class PregnancyInfo(_Payload):
    step: Literal[2] = 2
    mother_type: Literal["pregnant", "new_mom"] | None = None
    due_date: str | None = None
    is_first_child: bool | None = None
    baby_info: BabyInfo | None = None


class BreastfeedingInfo(_Payload):
    step: Literal[3] = 3
    experience_level: str | None = None
    currently_breastfeeding: bool | None = None
    breastfeeding_details: BreastfeedingDetails | None = None
    baby_output: BabyOutput | None = None


class MedicalInfo(_Payload):
    step: Literal[4] = 4
    mother_medical_conditions: list[str] | None = None
    mother_medical_conditions_other: str | None = None
    allergies: str | None = None
    nipple_anatomical_issues: bool | None = None
    nipple_issues_description: str | None = None
    baby_medical_conditions: str | None = None
    baby_hospitalized: bool | None = None
    baby_hospitalization_reason: str | None = None


class FeedingInfo(_Payload):
    step: Literal[5] = 5
    uses_formula: bool | None = None
    formula_details: FormulaDetails | None = None
    uses_bottle: bool | None = None
    bottle_details: BottleDetails | None = None
    owns_pump: bool | None = None
    pumping_details: PumpingDetails | None = None
    uses_breastmilk_supplements: bool | None = None
    supplements_details: str | None = None


class SupportInfo(_Payload):
    step: Literal[6] = 6
    current_support_system: list[str] | None = None
    current_support_system_other: str | None = None
    family_structure: str | None = None
    education_level: str | None = None
    household_income: str | None = None


class PreferencesInfo(_Payload):
    step: Literal[7] = 7
    current_challenges: list[str] | None = None
    breastfeeding_goals: list[str] | None = None
    breastfeeding_goals_other: str | None = None
    expectations_from_program: str | None = None


Section = Annotated[
    Union[
        PersonalInfo,
        PregnancyInfo,
        BreastfeedingInfo,
        MedicalInfo,
        FeedingInfo,
        SupportInfo,
        PreferencesInfo,
    ],
    Field(discriminator="step"),
]

SECTION_MODELS: dict[int, type[_Payload]] = {
    1: PersonalInfo,
    2: PregnancyInfo,
    3: BreastfeedingInfo,
    4: MedicalInfo,
    5: FeedingInfo,
    6: SupportInfo,
    7: PreferencesInfo,
}


def section_id_for(step: int) -> str:
    return STEPS_BY_NUMBER[step].id


def dump_section(section: BaseModel | None) -> dict[str, Any]:
    if section is None:
        return {}
    data = section.model_dump(mode="json", exclude_none=True)
    data.pop("step", None)
    return data


def build_section(step: int, data: dict[str, Any]) -> BaseModel:
    """Validate a plain mapping into the section variant for ``step``.

    Raises pydantic's ``ValidationError`` for unknown fields or bad values.
    """
    model = SECTION_MODELS.get(step)
    if model is None:
        raise ValueError(f"Unknown step {step}")
    payload = {k: v for k, v in data.items() if k != "step"}
    return model.model_validate({**payload, "step": step})


def set_path(data: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    updated = copy.deepcopy(data)
    parts = path.split(".")
    cursor = updated
    for part in parts[:-1]:
        child = cursor.get(part)
        if not isinstance(child, dict):
            child = {}
            cursor[part] = child
        cursor = child
    if value is None:
        cursor.pop(parts[-1], None)
    else:
        cursor[parts[-1]] = value
    return updated


def _flatten(prefix: str, data: dict[str, Any], out: dict[str, Any]) -> None:
    for key, value in data.items():
        flat_key = f"{prefix}.{key}"
        if isinstance(value, dict):
            _flatten(flat_key, value, out)
        else:
            out[flat_key] = value


def extract_step_data(step: int, form: dict[str, Any]) -> BaseModel:
    """Build a section from the wizard's flat field set.

    ``form`` keys look like ``pregnancy_info.baby_info.name``; keys belonging
    to other sections are ignored.
    """
    prefix = section_id_for(step) + "."
    data: dict[str, Any] = {}
    for key, value in form.items():
        if not key.startswith(prefix):
            continue
        data = set_path(data, key[len(prefix):], value)
    return build_section(step, data)


def form_from_sections(sections: dict[int, BaseModel]) -> dict[str, Any]:
    """Flatten sections back into the wizard's flat field set."""
    out: dict[str, Any] = {}
    for step in sorted(sections):
        _flatten(section_id_for(step), dump_section(sections[step]), out)
    return out


def to_remote_payload(sections: dict[int, BaseModel], *, complete: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for step in sorted(sections):
        payload[section_id_for(step)] = dump_section(sections[step])
    payload["complete_onboarding"] = complete
    return payload


def sections_from_remote(payload: dict[str, Any]) -> dict[int, BaseModel]:
    """Read section payloads out of a backend record.

    Unknown keys (and any completion markers) are ignored; a section that no
    longer validates against the current shape is skipped rather than failing
    the whole load.
    """
    sections: dict[int, BaseModel] = {}
    for section_id, raw in payload.items():
        step = STEPS_BY_ID.get(section_id)
        if step is None or not isinstance(raw, dict) or not raw:
            continue
        try:
            sections[step.number] = build_section(step.number, raw)
        except ValueError:
            continue
    return sections


def sections_from_profile(profile: dict[str, Any] | None, babies: list[dict[str, Any]] | None) -> dict[int, BaseModel]:
    sections: dict[int, BaseModel] = {}
    if profile:
        full_name = f"{profile.get('firstName') or ''} {profile.get('lastName') or ''}".strip()
        personal: dict[str, Any] = {
            "email": profile.get("email") or None,
            "full_name": full_name or None,
            "phone_number": profile.get("phoneNumber") or None,
            "languages_spoken": profile.get("languages") or None,
        }
        employment = profile.get("employmentStatus")
        if employment in {"employed", "unemployed", "maternity_leave", "student"}:
            personal["employment_status"] = employment
        personal = {k: v for k, v in personal.items() if v is not None}
        if personal:
            sections[1] = build_section(1, personal)

    if profile and babies:
        baby = babies[0]
        delivery = baby.get("deliveryType")
        baby_info = {
            "name": baby.get("name"),
            "date_of_birth": baby.get("dateOfBirth"),
            "gender": baby.get("gender") if baby.get("gender") in {"male", "female", "other"} else None,
            "birth_weight": baby.get("birthWeight"),
            "birth_height": baby.get("birthHeight"),
            "delivery_type": delivery if delivery in {"vaginal", "c_section", "assisted"} else "vaginal",
            "gestational_age": baby.get("gestationalAge") or 40,
        }
        sections[2] = build_section(
            2,
            {
                "mother_type": "new_mom",
                "is_first_child": len(babies) == 1,
                "baby_info": {k: v for k, v in baby_info.items() if v is not None},
            },
        )
    return sections
