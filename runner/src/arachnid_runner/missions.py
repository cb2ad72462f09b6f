from __future__ import annotations

"""Mission progression: agent rank, badge metadata, and the client status machine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .records import derive_codename
from .rules import (
    MISSION_ORDER,
    MISSION_RULES,
    STORED_LOCKED,
    STORED_NOT_STARTED,
    mission_is_active,
    normalize_mission_payload,
    predecessor_of,
    stored_is_locked,
    validate_mission,
)


AGENT_RANKS: tuple[str, ...] = ("Candidate", "Qualified", "Operator", "Tier One")
BADGE_RANKS: dict[str, str] = {"m1": "FIELD TESTER", "m2": "OPERATIVE", "m3": "SHARPSHOOTER"}
STAGE_DELAY_SECONDS = 0.45
MIN_VISIBLE_LATENCY_SECONDS = 0.9
TRANSMISSION_FAILED = "Transmission failed"


class MissionStatus(str, Enum):
    NOT_STARTED = "NOT STARTED"
    IN_PROGRESS = "IN PROGRESS"
    READY = "READY"
    SENDING = "SENDING"
    LOCKED = "LOCKED"
    ERROR = "ERROR"


class SubmitStage(str, Enum):
    IDLE = "idle"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    SENT = "sent"


class MissionStateError(RuntimeError):
    """Operation not allowed in the mission's current client status."""


@dataclass(frozen=True)
class SuccessMeta:
    mission_number: int
    rank: str


def locked_count(missions: Mapping[str, Any] | None) -> int:
    return sum(1 for mission_id in MISSION_ORDER if stored_is_locked(missions, mission_id))


def agent_rank(missions: Mapping[str, Any] | None) -> str:
    """Rank depends only on how many missions are locked."""

    return AGENT_RANKS[locked_count(missions)]


def success_meta(mission_id: str) -> SuccessMeta:
    if mission_id not in MISSION_RULES:
        raise KeyError(f"Unknown mission: {mission_id}")
    return SuccessMeta(mission_number=MISSION_RULES[mission_id].number, rank=BADGE_RANKS[mission_id])


def derive_status(active: bool, ready: bool) -> MissionStatus:
    if not active:
        return MissionStatus.NOT_STARTED
    return MissionStatus.READY if ready else MissionStatus.IN_PROGRESS


def _blank_fields(mission_id: str) -> dict[str, Any]:
    return normalize_mission_payload(mission_id, {})


@dataclass
class MissionBoard:
    """Client-observable mission state for one agent.

    Pure model: it never performs I/O. `CampaignClient` drives it through
    `begin_submit` / `advance_stage` / `complete_submit` / `fail_submit`.
    """

    token: str = ""
    first: str = ""
    last: str = ""
    handle: str = ""
    honeypot: str = ""
    fields: dict[str, dict[str, Any]] = field(default_factory=lambda: {mid: _blank_fields(mid) for mid in MISSION_ORDER})
    status: dict[str, MissionStatus] = field(default_factory=lambda: {mid: MissionStatus.NOT_STARTED for mid in MISSION_ORDER})
    stages: dict[str, SubmitStage] = field(default_factory=lambda: {mid: SubmitStage.IDLE for mid in MISSION_ORDER})
    errors: dict[str, str] = field(default_factory=lambda: {mid: "" for mid in MISSION_ORDER})
    touched: dict[str, bool] = field(default_factory=lambda: {mid: False for mid in MISSION_ORDER})
    editing: set[str] = field(default_factory=set)
    stored: dict[str, dict[str, Any]] = field(
        default_factory=lambda: {mid: {"status": STORED_NOT_STARTED} for mid in MISSION_ORDER}
    )

    @property
    def token_missing(self) -> bool:
        return not self.token.strip()

    @property
    def codename(self) -> str:
        return derive_codename(handle=self.handle, token=self.token, first=self.first)

    @property
    def rank(self) -> str:
        return agent_rank(self.stored)

    def success_meta(self, mission_id: str) -> SuccessMeta:
        return success_meta(mission_id)

    def _require(self, mission_id: str) -> None:
        if mission_id not in MISSION_RULES:
            raise KeyError(f"Unknown mission: {mission_id}")

    def is_disabled(self, mission_id: str) -> bool:
        return self.status[mission_id] in (MissionStatus.SENDING, MissionStatus.LOCKED)

    def is_ready(self, mission_id: str) -> bool:
        return not validate_mission(mission_id, self.fields[mission_id], self.stored)

    def can_submit(self, mission_id: str) -> bool:
        return self.is_ready(mission_id) and not self.is_disabled(mission_id) and not self.token_missing

    def recompute(self) -> None:
        for mission_id in MISSION_ORDER:
            current = self.status[mission_id]
            if current in (MissionStatus.LOCKED, MissionStatus.SENDING):
                continue
            if current is MissionStatus.ERROR and not self.touched[mission_id]:
                continue
            active = mission_is_active(mission_id, self.fields[mission_id])
            predecessor = predecessor_of(mission_id)
            gate_open = predecessor is None or stored_is_locked(self.stored, predecessor)
            self.status[mission_id] = derive_status(active, gate_open and self.is_ready(mission_id))

    def update_field(self, mission_id: str, name: str, value: Any) -> None:
        self._require(mission_id)
        if name not in MISSION_RULES[mission_id].field_names:
            raise KeyError(f"Unknown field {name!r} for {mission_id}")
        if self.is_disabled(mission_id):
            raise MissionStateError(f"{mission_id} is {self.status[mission_id].value}; edit it first.")
        self.fields[mission_id][name] = value
        self.touched[mission_id] = True
        self.errors[mission_id] = ""
        self.recompute()

    def edit(self, mission_id: str) -> None:
        """Re-open a locked mission locally; the server keeps LOCKED until a new submission lands."""

        self._require(mission_id)
        if self.status[mission_id] is not MissionStatus.LOCKED:
            raise MissionStateError(f"{mission_id} is not locked.")
        self.status[mission_id] = MissionStatus.IN_PROGRESS
        self.stages[mission_id] = SubmitStage.IDLE
        self.errors[mission_id] = ""
        self.touched[mission_id] = True
        self.editing.add(mission_id)

    def begin_submit(self, mission_id: str) -> dict[str, Any] | None:
        """Validate and enter SENDING; returns the wire payload, or None when rejected locally."""

        self._require(mission_id)
        if self.status[mission_id] is MissionStatus.SENDING:
            raise MissionStateError(f"{mission_id} is already sending.")
        if self.status[mission_id] is MissionStatus.LOCKED and mission_id not in self.editing:
            raise MissionStateError(f"{mission_id} is locked; press Edit to change it.")
        if self.token_missing:
            raise MissionStateError("Add token to submit.")

        violations = validate_mission(mission_id, self.fields[mission_id], self.stored)
        if violations:
            self.status[mission_id] = MissionStatus.ERROR
            self.errors[mission_id] = violations[0].message
            self.touched[mission_id] = False
            return None

        self.status[mission_id] = MissionStatus.SENDING
        self.errors[mission_id] = ""
        self.stages[mission_id] = SubmitStage.ENCRYPTING
        return {
            "token": self.token.strip(),
            "first": self.first,
            "last": self.last,
            "handle": self.handle,
            "codename": self.codename,
            "missionMeta": {"missionId": mission_id},
            "mission": normalize_mission_payload(mission_id, self.fields[mission_id]),
            "honeypot": self.honeypot.strip(),
        }

    def advance_stage(self, mission_id: str) -> None:
        if self.stages[mission_id] is SubmitStage.ENCRYPTING:
            self.stages[mission_id] = SubmitStage.UPLOADING

    def complete_submit(self, mission_id: str, progress: Mapping[str, Any] | None = None) -> None:
        self.stages[mission_id] = SubmitStage.SENT
        self.status[mission_id] = MissionStatus.LOCKED
        self.editing.discard(mission_id)
        self.touched[mission_id] = False
        if progress:
            self.reconcile(progress)
        else:
            self.stored[mission_id] = {"status": STORED_LOCKED}
            self.recompute()

    def fail_submit(self, mission_id: str, message: str = TRANSMISSION_FAILED) -> None:
        self.status[mission_id] = MissionStatus.ERROR
        self.stages[mission_id] = SubmitStage.IDLE
        self.errors[mission_id] = message
        self.touched[mission_id] = False

    def reconcile(self, progress: Mapping[str, Any]) -> None:
        """Adopt canonical server progress (`/api/status` or a submission response)."""

        missions = progress.get("missions")
        if not isinstance(missions, Mapping):
            return
        for mission_id in MISSION_ORDER:
            entry = missions.get(mission_id)
            if not isinstance(entry, Mapping):
                continue
            server_status = entry.get("status")
            self.stored[mission_id] = dict(entry)
            current = self.status[mission_id]
            if server_status == STORED_LOCKED:
                if current is not MissionStatus.LOCKED and current is not MissionStatus.SENDING and mission_id not in self.editing:
                    self.status[mission_id] = MissionStatus.LOCKED
                    self.stages[mission_id] = SubmitStage.SENT
            elif server_status == STORED_NOT_STARTED and current is MissionStatus.LOCKED:
                self.status[mission_id] = MissionStatus.NOT_STARTED
                self.stages[mission_id] = SubmitStage.IDLE
            self._hydrate(mission_id, entry.get("data"))
        self.recompute()

    def _hydrate(self, mission_id: str, data: Any) -> None:
        if not isinstance(data, Mapping) or self.touched[mission_id]:
            return
        current = self.fields[mission_id]
        for name in MISSION_RULES[mission_id].field_names:
            if name not in data:
                continue
            value = data[name]
            existing = current.get(name)
            if isinstance(existing, str) and existing:
                continue
            if existing is True:
                continue
            current[name] = value
