from __future__ import annotations

"""Declarative mission acceptance rules shared by the API and the client board.

The rule table is the single source of truth: `validate_mission` is the only
interpreter, so a payload accepted by `MissionBoard` is accepted by the service
and vice versa.
"""

from dataclasses import dataclass
from typing import Any, Mapping


MISSION_ORDER: tuple[str, ...] = ("m1", "m2", "m3")
PREDECESSORS: dict[str, str | None] = {
    mission_id: (MISSION_ORDER[index - 1] if index else None) for index, mission_id in enumerate(MISSION_ORDER)
}

STORED_NOT_STARTED = "NOT_STARTED"
STORED_LOCKED = "LOCKED"
STORED_STATUSES = {STORED_NOT_STARTED, STORED_LOCKED}

SIZE_OPTIONS: tuple[str, ...] = ("XS", "S", "M", "L", "XL", "2XL")
RATING_MIN = 1
RATING_MAX = 5
DEFAULT_RATING = 3

FIELD_KINDS = {"text", "url", "choice", "confirm", "rating"}


@dataclass(frozen=True)
class RuleViolation:
    code: str
    field: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "field": self.field, "message": self.message}


@dataclass(frozen=True)
class FieldRule:
    """One submitted field and the predicate it must satisfy."""

    name: str
    kind: str
    required: bool = True
    tracks_activity: bool = True
    min_words: int = 0
    min_chars: int = 0
    max_chars: int | None = None
    options: tuple[str, ...] = ()
    missing_message: str = ""
    invalid_message: str = ""


@dataclass(frozen=True)
class DistinctFrom:
    """Cross-mission constraint: `field` must differ from a stored value of another mission."""

    field: str
    other_mission: str
    other_field: str
    message: str


@dataclass(frozen=True)
class MissionRule:
    mission_id: str
    number: int
    title: str
    fields: tuple[FieldRule, ...]
    distinct: tuple[DistinctFrom, ...] = ()

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(rule.name for rule in self.fields)


def _rating(name: str, label: str) -> FieldRule:
    return FieldRule(
        name=name,
        kind="rating",
        required=False,
        tracks_activity=False,
        invalid_message=f"{label} rating must be a whole number from {RATING_MIN} to {RATING_MAX}.",
    )


def _note(name: str) -> FieldRule:
    return FieldRule(name=name, kind="text", required=False, tracks_activity=False)


def _confirm(name: str, mission_number: int) -> FieldRule:
    message = f"Confirm the authorization toggles for Mission {mission_number}."
    return FieldRule(name=name, kind="confirm", missing_message=message, invalid_message=message)


MISSION_RULES: dict[str, MissionRule] = {
    "m1": MissionRule(
        mission_id="m1",
        number=1,
        title="Shape Assessment",
        fields=(
            FieldRule(
                name="feel",
                kind="text",
                min_words=25,
                max_chars=2000,
                missing_message="Mission 1 notes must be at least 25 words (max 2000 characters).",
                invalid_message="Mission 1 notes must be at least 25 words (max 2000 characters).",
            ),
            _rating("feelRating", "Feel"),
            _note("feelNote"),
        ),
    ),
    "m2": MissionRule(
        mission_id="m2",
        number=2,
        title="Flight Test",
        fields=(
            FieldRule(
                name="flight",
                kind="text",
                min_chars=10,
                missing_message="Provide flight details to complete Mission 2.",
                invalid_message="Mission 2 flight notes must be at least 10 characters.",
            ),
            _rating("flightRating", "Flight"),
            _note("flightNote"),
            FieldRule(
                name="videoUrl",
                kind="url",
                missing_message="Add a public video URL for Mission 2.",
                invalid_message="Video URL must start with http.",
            ),
            FieldRule(
                name="shirtSize",
                kind="choice",
                options=SIZE_OPTIONS,
                missing_message="Select a T-shirt size.",
                invalid_message="Select a T-shirt size.",
            ),
            _confirm("confirmDistance200", 2),
            _confirm("confirmRights", 2),
        ),
    ),
    "m3": MissionRule(
        mission_id="m3",
        number=3,
        title="Sharpshooter",
        fields=(
            FieldRule(
                name="aceUrl",
                kind="url",
                missing_message="Add a public ace video URL.",
                invalid_message="Ace URL must start with http.",
            ),
            FieldRule(
                name="hoodieSize",
                kind="choice",
                options=SIZE_OPTIONS,
                missing_message="Select a hoodie size.",
                invalid_message="Select a hoodie size.",
            ),
            _confirm("confirmDistance200", 3),
            _confirm("confirmRights", 3),
        ),
        distinct=(
            DistinctFrom(
                field="aceUrl",
                other_mission="m2",
                other_field="videoUrl",
                message="Mission 3 video must be different from Mission 2.",
            ),
        ),
    ),
}


def predecessor_of(mission_id: str) -> str | None:
    if mission_id not in PREDECESSORS:
        raise KeyError(f"Unknown mission: {mission_id}")
    return PREDECESSORS[mission_id]


def mission_number(mission_id: str) -> int:
    return MISSION_ORDER.index(mission_id) + 1


def mission_id_for_number(number: int) -> str:
    if not isinstance(number, int) or isinstance(number, bool) or not 1 <= number <= len(MISSION_ORDER):
        raise ValueError(f"Mission number must be 1-{len(MISSION_ORDER)}.")
    return MISSION_ORDER[number - 1]


def count_words(value: str) -> int:
    return len(value.split())


def is_http_url(value: str) -> bool:
    return value.startswith("http")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _as_rating(value: Any) -> Any:
    if value is None:
        return DEFAULT_RATING
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def normalize_mission_payload(mission_id: str, raw: Mapping[str, Any] | None) -> dict[str, Any]:
    """Project a raw payload onto the mission's fields with trimmed strings and rating defaults."""

    rule = MISSION_RULES[mission_id]
    source = raw or {}
    data: dict[str, Any] = {}
    for field_rule in rule.fields:
        value = source.get(field_rule.name)
        if field_rule.kind == "confirm":
            data[field_rule.name] = value is True
        elif field_rule.kind == "rating":
            data[field_rule.name] = _as_rating(value)
        else:
            data[field_rule.name] = _as_text(value)
    return data


def _stored_entry(stored: Mapping[str, Any] | None, mission_id: str) -> Mapping[str, Any]:
    if not stored:
        return {}
    entry = stored.get(mission_id)
    return entry if isinstance(entry, Mapping) else {}


def stored_is_locked(stored: Mapping[str, Any] | None, mission_id: str) -> bool:
    return _stored_entry(stored, mission_id).get("status") == STORED_LOCKED


def _check_field(field_rule: FieldRule, value: Any) -> RuleViolation | None:
    def violation(message: str) -> RuleViolation:
        return RuleViolation("MISSION_INVALID", field_rule.name, message)

    kind = field_rule.kind
    if kind == "rating":
        if isinstance(value, bool) or not isinstance(value, int) or not RATING_MIN <= value <= RATING_MAX:
            return violation(field_rule.invalid_message)
        return None
    if kind == "confirm":
        return None if value is True else violation(field_rule.missing_message)

    text = value if isinstance(value, str) else _as_text(value)
    if not text:
        return violation(field_rule.missing_message) if field_rule.required else None
    if kind == "url" and not is_http_url(text):
        return violation(field_rule.invalid_message)
    if kind == "choice" and text not in field_rule.options:
        return violation(field_rule.invalid_message)
    if kind == "text":
        if field_rule.min_words and count_words(text) < field_rule.min_words:
            return violation(field_rule.invalid_message)
        if field_rule.min_chars and len(text) < field_rule.min_chars:
            return violation(field_rule.invalid_message)
        if field_rule.max_chars is not None and len(text) > field_rule.max_chars:
            return violation(field_rule.invalid_message or f"{field_rule.name} is too long.")
    return None


def validate_mission(
    mission_id: str,
    payload: Mapping[str, Any] | None,
    stored_missions: Mapping[str, Any] | None,
) -> list[RuleViolation]:
    """Evaluate one mission payload against the rule table and the stored progress.

    Returns an empty list when the submission is acceptable. A sequencing
    failure short-circuits the field checks.
    """

    rule = MISSION_RULES.get(mission_id)
    if rule is None:
        return [RuleViolation("MISSION_UNKNOWN", "missionId", "Unknown mission.")]

    predecessor = predecessor_of(mission_id)
    if predecessor is not None and not stored_is_locked(stored_missions, predecessor):
        return [
            RuleViolation(
                "MISSION_SEQUENCE",
                None,
                f"Complete Mission {mission_number(predecessor)} before submitting Mission {rule.number}.",
            )
        ]

    data = normalize_mission_payload(mission_id, payload)
    violations: list[RuleViolation] = []
    failed_fields: set[str] = set()
    for field_rule in rule.fields:
        found = _check_field(field_rule, data[field_rule.name])
        if found is not None:
            violations.append(found)
            failed_fields.add(field_rule.name)

    for constraint in rule.distinct:
        if constraint.field in failed_fields:
            continue
        other_data = _stored_entry(stored_missions, constraint.other_mission).get("data")
        other_value = _as_text(other_data.get(constraint.other_field)) if isinstance(other_data, Mapping) else ""
        if other_value and data[constraint.field] == other_value:
            violations.append(RuleViolation("MISSION_INVALID", constraint.field, constraint.message))
    return violations


def mission_is_active(mission_id: str, payload: Mapping[str, Any] | None) -> bool:
    """True when any activity-tracking field has content."""

    data = normalize_mission_payload(mission_id, payload)
    for field_rule in MISSION_RULES[mission_id].fields:
        if not field_rule.tracks_activity:
            continue
        value = data[field_rule.name]
        if field_rule.kind == "confirm":
            if value is True:
                return True
        elif value:
            return True
    return False
