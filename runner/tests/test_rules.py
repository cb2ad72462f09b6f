from __future__ import annotations

import pytest

from arachnid_runner.rules import (
    MISSION_ORDER,
    count_words,
    mission_id_for_number,
    mission_is_active,
    normalize_mission_payload,
    predecessor_of,
    validate_mission,
)


M1_VALID = {"feel": " ".join(["grip"] * 25), "feelRating": 4}
M2_VALID = {
    "flight": "Long straight flight with late fade.",
    "flightRating": 5,
    "videoUrl": "https://video.example/m2",
    "shirtSize": "L",
    "confirmDistance200": True,
    "confirmRights": True,
}
M3_VALID = {
    "aceUrl": "https://video.example/ace",
    "hoodieSize": "M",
    "confirmDistance200": True,
    "confirmRights": True,
}


def _locked(*mission_ids: str, data: dict | None = None) -> dict:
    stored = {mission_id: {"status": "NOT_STARTED"} for mission_id in MISSION_ORDER}
    for mission_id in mission_ids:
        stored[mission_id] = {"status": "LOCKED", "data": dict((data or {}).get(mission_id, {}))}
    return stored


def test_predecessors_follow_mission_order() -> None:
    assert predecessor_of("m1") is None
    assert predecessor_of("m2") == "m1"
    assert predecessor_of("m3") == "m2"
    with pytest.raises(KeyError):
        predecessor_of("m4")


def test_count_words_ignores_extra_whitespace() -> None:
    assert count_words("  a   b\tc\n d ") == 4
    assert count_words("") == 0


def test_m1_word_boundary() -> None:
    letters = "abcdefghijklmnopqrstuvwxyz"
    too_short = " ".join(letters[:24])
    just_enough = " ".join(letters[:25])
    assert [v.field for v in validate_mission("m1", {"feel": too_short}, None)] == ["feel"]
    assert validate_mission("m1", {"feel": just_enough}, None) == []


def test_m1_rejects_text_over_2000_characters() -> None:
    long_text = " ".join(["word"] * 25) + " " + ("x" * 2000)
    violations = validate_mission("m1", {"feel": long_text}, None)
    assert violations[0].message == "Mission 1 notes must be at least 25 words (max 2000 characters)."


def test_m1_rating_must_be_whole_number_in_range() -> None:
    for bad in (0, 6, True, "4", 2.5):
        violations = validate_mission("m1", {**M1_VALID, "feelRating": bad}, None)
        assert [v.field for v in violations] == ["feelRating"], bad
    assert validate_mission("m1", {**M1_VALID, "feelRating": 5.0}, None) == []


def test_m2_requires_m1_locked_and_short_circuits() -> None:
    violations = validate_mission("m2", {}, _locked())
    assert len(violations) == 1
    assert violations[0].code == "MISSION_SEQUENCE"
    assert violations[0].message == "Complete Mission 1 before submitting Mission 2."


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("flight", "too short", "Mission 2 flight notes must be at least 10 characters."),
        ("flight", "", "Provide flight details to complete Mission 2."),
        ("videoUrl", "ftp://video.example/m2", "Video URL must start with http."),
        ("videoUrl", "", "Add a public video URL for Mission 2."),
        ("shirtSize", "XXL", "Select a T-shirt size."),
        ("confirmDistance200", False, "Confirm the authorization toggles for Mission 2."),
        ("confirmRights", "true", "Confirm the authorization toggles for Mission 2."),
    ],
)
def test_m2_single_field_violations(field: str, value: object, message: str) -> None:
    violations = validate_mission("m2", {**M2_VALID, field: value}, _locked("m1"))
    assert [(v.code, v.field, v.message) for v in violations] == [("MISSION_INVALID", field, message)]


def test_m2_valid_payload_passes() -> None:
    assert validate_mission("m2", M2_VALID, _locked("m1")) == []


def test_m2_long_flight_notes_are_accepted() -> None:
    payload = {**M2_VALID, "flight": "x" * 2500, "flightNote": "y" * 5000}
    assert validate_mission("m2", payload, _locked("m1")) == []


def test_m1_long_optional_note_does_not_invalidate() -> None:
    assert validate_mission("m1", {**M1_VALID, "feelNote": "z" * 5000}, None) == []


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("aceUrl", "", "Add a public ace video URL."),
        ("aceUrl", "video.example/ace", "Ace URL must start with http."),
        ("hoodieSize", "", "Select a hoodie size."),
        ("hoodieSize", "XXXL", "Select a hoodie size."),
        ("confirmDistance200", False, "Confirm the authorization toggles for Mission 3."),
        ("confirmRights", None, "Confirm the authorization toggles for Mission 3."),
    ],
)
def test_m3_single_field_violations(field: str, value: object, message: str) -> None:
    stored = _locked("m1", "m2", data={"m2": {"videoUrl": "https://video.example/m2"}})
    violations = validate_mission("m3", {**M3_VALID, field: value}, stored)
    assert [(v.code, v.field, v.message) for v in violations] == [("MISSION_INVALID", field, message)]


def test_m3_requires_m2_locked() -> None:
    violations = validate_mission("m3", M3_VALID, _locked("m1"))
    assert [(v.code, v.message) for v in violations] == [
        ("MISSION_SEQUENCE", "Complete Mission 2 before submitting Mission 3.")
    ]


def test_m3_video_must_differ_from_stored_m2_video() -> None:
    stored = _locked("m1", "m2", data={"m2": {"videoUrl": "https://video.example/same"}})
    violations = validate_mission("m3", {**M3_VALID, "aceUrl": "https://video.example/same"}, stored)
    assert [v.message for v in violations] == ["Mission 3 video must be different from Mission 2."]
    assert validate_mission("m3", {**M3_VALID, "aceUrl": " https://video.example/other "}, stored) == []


def test_m3_distinct_check_skipped_when_url_already_invalid() -> None:
    stored = _locked("m1", "m2", data={"m2": {"videoUrl": "nope"}})
    violations = validate_mission("m3", {**M3_VALID, "aceUrl": "nope"}, stored)
    assert [v.message for v in violations] == ["Ace URL must start with http."]


def test_unknown_mission_is_reported() -> None:
    violations = validate_mission("m9", {}, None)
    assert violations[0].code == "MISSION_UNKNOWN"
    assert violations[0].field == "missionId"


def test_normalize_trims_defaults_and_drops_unknown_keys() -> None:
    data = normalize_mission_payload("m1", {"feel": "  hello  ", "extra": "x"})
    assert data == {"feel": "hello", "feelRating": 3, "feelNote": ""}


def test_mission_activity_ignores_ratings_and_notes() -> None:
    assert mission_is_active("m1", {"feelRating": 5, "feelNote": "note"}) is False
    assert mission_is_active("m1", {"feel": "x"}) is True
    assert mission_is_active("m2", {"confirmRights": True}) is True


def test_mission_id_for_number_bounds() -> None:
    assert mission_id_for_number(3) == "m3"
    for bad in (0, 4, True):
        with pytest.raises(ValueError):
            mission_id_for_number(bad)
