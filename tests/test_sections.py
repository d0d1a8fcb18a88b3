"""Tests for section shapes, the flat form mapping and wire payloads."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from intake.sections import (
    FeedingInfo,
    PregnancyInfo,
    extract_step_data,
    form_from_sections,
    sections_from_profile,
    sections_from_remote,
    to_remote_payload,
)
from intake.state import OnboardingRecord
from tests.factories import NEW_MOM_BABY, record_with


class TestRecordUpdates:
    def test_with_field_sets_nested_path(self) -> None:
        record = OnboardingRecord().with_field(2, "baby_info.name", "Zara")

        section = record.section(2)
        assert isinstance(section, PregnancyInfo)
        assert section.baby_info is not None
        assert section.baby_info.name == "Zara"

    def test_with_field_returns_new_record(self) -> None:
        before = record_with(1)

        updated = before.with_field(1, "full_name", "Ada Okafor")

        assert before.section(1).full_name == "Ada Obi"
        assert updated.section(1).full_name == "Ada Okafor"

    def test_setting_none_clears_the_field(self) -> None:
        record = record_with(2).with_field(2, "due_date", None)

        assert record.section(2).due_date is None

    def test_unknown_field_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            OnboardingRecord().with_field(1, "favourite_colour", "blue")

    def test_bad_literal_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            OnboardingRecord().with_field(2, "mother_type", "grandmother")

    def test_unknown_step_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown step"):
            OnboardingRecord().with_field(9, "email", "a@b.c")

    def test_completed_at_must_match_flag(self) -> None:
        with pytest.raises(ValidationError):
            OnboardingRecord(is_completed=True)
        with pytest.raises(ValidationError):
            OnboardingRecord(completed_at=datetime.now(timezone.utc))

    def test_completed_steps_are_clamped(self) -> None:
        record = OnboardingRecord(completed_steps=[3, 0, 1, 9, 3])

        assert record.completed_steps == [1, 3]

    def test_json_round_trip_keeps_section_variants(self) -> None:
        record = record_with(2, 5, step_5={"uses_formula": True, "formula_details": {"formula_brand": "A"}})

        restored = OnboardingRecord.model_validate_json(record.model_dump_json())

        assert restored == record
        assert isinstance(restored.section(5), FeedingInfo)


class TestFlatForm:
    def test_extract_step_data_ignores_other_sections(self) -> None:
        form = {
            "pregnancy_info.mother_type": "new_mom",
            "pregnancy_info.baby_info.name": "Zara",
            "personal_info.email": "ada@example.com",
        }

        section = extract_step_data(2, form)

        assert section.mother_type == "new_mom"
        assert section.baby_info.name == "Zara"

    def test_form_from_sections_flattens_nested_values(self) -> None:
        record = OnboardingRecord().with_step_data(
            2, {"mother_type": "new_mom", "is_first_child": True, "baby_info": NEW_MOM_BABY}
        )

        form = form_from_sections(record.sections)

        assert form["pregnancy_info.mother_type"] == "new_mom"
        assert form["pregnancy_info.baby_info.birth_weight"] == 3.2


class TestRemotePayload:
    def test_payload_is_keyed_by_section_id(self) -> None:
        record = record_with(1, 2)

        payload = to_remote_payload(record.sections)

        assert set(payload) == {"personal_info", "pregnancy_info", "complete_onboarding"}
        assert payload["complete_onboarding"] is False
        assert "step" not in payload["personal_info"]

    def test_complete_flag(self) -> None:
        assert to_remote_payload({}, complete=True) == {"complete_onboarding": True}

    def test_sections_from_remote_skips_unknown_and_invalid(self) -> None:
        payload = {
            "personal_info": {"email": "ada@example.com"},
            "pregnancy_info": {"mother_type": "grandmother"},
            "legacy_section": {"x": 1},
            "complete_onboarding": True,
            "feeding_info": {},
        }

        sections = sections_from_remote(payload)

        assert list(sections) == [1]
        assert sections[1].email == "ada@example.com"


class TestProfilePrefill:
    def test_profile_fills_personal_info(self) -> None:
        profile = {
            "firstName": "Ada",
            "lastName": "Obi",
            "email": "ada@example.com",
            "phoneNumber": "+234",
            "employmentStatus": "retired",
        }

        sections = sections_from_profile(profile, [])

        assert sections[1].full_name == "Ada Obi"
        assert sections[1].employment_status is None
        assert 2 not in sections

    def test_babies_mark_new_mom(self) -> None:
        babies = [
            {"name": "Zara", "dateOfBirth": "2026-09-01", "gender": "female", "deliveryType": "water"},
            {"name": "Tobi"},
        ]

        sections = sections_from_profile({"email": "ada@example.com"}, babies)

        pregnancy = sections[2]
        assert pregnancy.mother_type == "new_mom"
        assert pregnancy.is_first_child is False
        assert pregnancy.baby_info.name == "Zara"
        assert pregnancy.baby_info.delivery_type == "vaginal"
        assert pregnancy.baby_info.gestational_age == 40

    def test_no_profile_means_no_prefill(self) -> None:
        assert sections_from_profile(None, [{"name": "Zara"}]) == {}
