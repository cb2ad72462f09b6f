from __future__ import annotations

"""Agent progress record: the store's unit of persistence."""

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .rules import MISSION_ORDER, STORED_LOCKED, STORED_NOT_STARTED, STORED_STATUSES


RECORD_SCHEMA_VERSION = "0.1"
DEFAULT_CODENAME_SOURCE = "tester"
ACTION_VIEWED_PAGE = "Viewed page"
ACTION_INTRO_VIEWED = "Intro viewed"
ACTION_INTRO_ACCEPTED = "Intro accepted"
ACTION_INTRO_RESET = "Intro reset"


def now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def mission_sent_action(number: int) -> str:
    return f"Mission {number} sent"


def strip_handle(value: str | None) -> str:
    return (value or "").strip().lstrip("@").strip()


def derive_codename(*, handle: str | None = None, token: str | None = None, first: str | None = None) -> str:
    """`@handle`, else `@token`, else `@first`, else `@tester`."""

    for candidate in (strip_handle(handle), strip_handle(token), (first or "").strip()):
        if candidate:
            return f"@{candidate}"
    return f"@{DEFAULT_CODENAME_SOURCE}"


def default_missions() -> dict[str, dict[str, Any]]:
    return {mission_id: {"status": STORED_NOT_STARTED} for mission_id in MISSION_ORDER}


def _normalize_missions(raw: Any) -> dict[str, dict[str, Any]]:
    missions = default_missions()
    if not isinstance(raw, dict):
        return missions
    for mission_id in MISSION_ORDER:
        entry = raw.get(mission_id)
        if not isinstance(entry, dict):
            continue
        status = entry.get("status")
        normalized: dict[str, Any] = {"status": status if status in STORED_STATUSES else STORED_NOT_STARTED}
        if isinstance(entry.get("lastSubmittedAt"), str):
            normalized["lastSubmittedAt"] = entry["lastSubmittedAt"]
        if isinstance(entry.get("data"), dict):
            normalized["data"] = dict(entry["data"])
        missions[mission_id] = normalized
    return missions


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def _as_optional_text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass
class AgentRecord:
    token: str
    first: str = ""
    last: str = ""
    codename: str = ""
    intro_viewed: bool = False
    intro_viewed_at: str | None = None
    intro_accepted: bool = False
    intro_accepted_at: str | None = None
    missions: dict[str, dict[str, Any]] = field(default_factory=default_missions)
    submission_count: int = 0
    visit_count: int = 0
    update_action: str = ACTION_VIEWED_PAGE
    created_at: str = field(default_factory=now_iso)
    updated_at: str | None = None
    last_seen_at: str | None = None

    @classmethod
    def new(cls, token: str, *, first: str = "", last: str = "", handle: str | None = None, now: str | None = None) -> "AgentRecord":
        timestamp = now or now_iso()
        return cls(
            token=token,
            first=first,
            last=last,
            codename=derive_codename(handle=handle, token=token, first=first),
            created_at=timestamp,
            updated_at=timestamp,
            last_seen_at=timestamp,
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AgentRecord":
        token = payload.get("token")
        if not isinstance(token, str) or not token:
            raise ValueError("Agent record is missing its token.")
        intro_accepted = payload.get("introAccepted") is True
        record = cls(
            token=token,
            first=str(payload.get("first") or ""),
            last=str(payload.get("last") or ""),
            codename=str(payload.get("codename") or ""),
            intro_viewed=payload.get("introViewed") is True or intro_accepted,
            intro_viewed_at=_as_optional_text(payload.get("introViewedAt")),
            intro_accepted=intro_accepted,
            intro_accepted_at=_as_optional_text(payload.get("introAcceptedAt")),
            missions=_normalize_missions(payload.get("missions")),
            submission_count=_as_count(payload.get("submissionCount")),
            visit_count=_as_count(payload.get("visitCount")),
            update_action=str(payload.get("updateAction") or ACTION_VIEWED_PAGE),
            created_at=str(payload.get("createdAt") or now_iso()),
            updated_at=_as_optional_text(payload.get("updatedAt")),
            last_seen_at=_as_optional_text(payload.get("lastSeenAt")),
        )
        if not record.codename:
            record.codename = derive_codename(token=record.token, first=record.first)
        return record

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": RECORD_SCHEMA_VERSION,
            "token": self.token,
            "first": self.first,
            "last": self.last,
            "codename": self.codename,
            "introViewed": self.intro_viewed,
            "introViewedAt": self.intro_viewed_at,
            "introAccepted": self.intro_accepted,
            "introAcceptedAt": self.intro_accepted_at,
            "missions": copy.deepcopy(self.missions),
            "submissionCount": self.submission_count,
            "visitCount": self.visit_count,
            "updateAction": self.update_action,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastSeenAt": self.last_seen_at,
        }

    def apply_identity(self, *, first: str | None = None, last: str | None = None, handle: str | None = None) -> None:
        """Refresh advisory name parts from non-empty inputs and recompute the codename.

        The codename is derived, never remembered: a call without a handle falls back to `@token`.
        """

        if first and first.strip():
            self.first = first.strip()
        if last and last.strip():
            self.last = last.strip()
        self.codename = derive_codename(handle=handle, token=self.token, first=self.first)

    def locked_count(self) -> int:
        return sum(1 for mission_id in MISSION_ORDER if self.missions[mission_id].get("status") == STORED_LOCKED)

    def intro_view(self) -> dict[str, Any]:
        return {
            "introViewed": self.intro_viewed,
            "introViewedAt": self.intro_viewed_at,
            "introAccepted": self.intro_accepted,
            "introAcceptedAt": self.intro_accepted_at,
        }

    def progress_view(self) -> dict[str, Any]:
        """Payload returned by `/api/status`."""

        return {
            "token": self.token,
            "codename": self.codename,
            "missions": copy.deepcopy(self.missions),
            **self.intro_view(),
            "updateAction": self.update_action,
            "updatedAt": self.updated_at,
            "lastSeenAt": self.last_seen_at,
        }
