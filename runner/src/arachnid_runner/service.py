from __future__ import annotations

"""Campaign service: server-authoritative progress, intro flags, admin listing, and badges."""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .badge import BadgeCompositor, BadgeRequest, Rasterizer, RenderedBadge
from .errors import AdminAuthError, AdminNotConfiguredError, BadgeError, SubmissionError
from .missions import agent_rank, success_meta
from .paths import ensure_home_dirs
from .records import (
    ACTION_INTRO_ACCEPTED,
    ACTION_INTRO_RESET,
    ACTION_INTRO_VIEWED,
    AgentRecord,
    mission_sent_action,
    now_iso,
)
from .rules import MISSION_RULES, STORED_LOCKED, mission_id_for_number, normalize_mission_payload, validate_mission
from .security import admin_token_matches, feedback_token_acceptable, honeypot_filled
from .settings import Settings
from .store import AgentRepository, JsonFileStore, MemoryStore, ProgressStore
from .telemetry import TelemetryLogger, token_fingerprint


MAX_TOKEN_CHARS = 200
MAX_NAME_CHARS = 120

logger = logging.getLogger(__name__)


def _text(value: Any, *, max_chars: int = MAX_NAME_CHARS) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_chars]


def _require_token(token: Any) -> str:
    value = token.strip() if isinstance(token, str) else ""
    if not value:
        raise SubmissionError("TOKEN_MISSING", "Missing token.", field="token")
    if len(value) > MAX_TOKEN_CHARS:
        raise SubmissionError("INVALID_PAYLOAD", f"Token must be at most {MAX_TOKEN_CHARS} characters.", field="token")
    return value


def _store_for(settings: Settings, agents_dir: Path) -> ProgressStore:
    if settings.store_kind == "memory":
        return MemoryStore()
    return JsonFileStore(agents_dir)


@dataclass
class CampaignService:
    """Stateless per call apart from the progress store; every mutation is read-modify-write."""

    settings: Settings
    dirs: dict[str, Path]
    agents: AgentRepository
    telemetry: TelemetryLogger
    badges: BadgeCompositor

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        store: ProgressStore | None = None,
        rasterizer: Rasterizer | None = None,
    ) -> "CampaignService":
        """Build a service from settings, initialize the home directory, and log startup."""

        settings = settings or Settings.from_env()
        dirs = ensure_home_dirs(settings.home)
        telemetry = TelemetryLogger(events_path=dirs["telemetry"] / "events.jsonl")
        service = cls(
            settings=settings,
            dirs=dirs,
            agents=AgentRepository(store or _store_for(settings, dirs["agents"])),
            telemetry=telemetry,
            badges=BadgeCompositor.from_manifest_path(settings.badge_manifest, rasterizer=rasterizer),
        )
        telemetry.log_event(
            "service.started",
            source="api",
            data={
                "home_path_hash": hashlib.sha256(str(settings.home).encode("utf-8")).hexdigest(),
                "store_kind": settings.store_kind,
                "legacy_token_check": settings.legacy_token_check,
                "admin_configured": bool(settings.admin_token),
            },
        )
        return service

    def _load_or_create(self, token: str, *, first: str = "", last: str = "", handle: str = "") -> tuple[AgentRecord, bool]:
        record = self.agents.get(token)
        if record is not None:
            return record, False
        return AgentRecord.new(token, first=first, last=last, handle=handle, now=now_iso()), True

    def touch_status(
        self,
        token: Any,
        *,
        first: Any = None,
        last: Any = None,
        handle: Any = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Return canonical progress, creating the record on first contact and counting the visit."""

        token_value = _require_token(token)
        first_value, last_value, handle_value = _text(first), _text(last), _text(handle)
        record, created = self._load_or_create(token_value, first=first_value, last=last_value, handle=handle_value)
        if not created:
            record.apply_identity(first=first_value, last=last_value, handle=handle_value)
        now = now_iso()
        record.visit_count += 1
        record.last_seen_at = now
        self.agents.save(record)
        self.telemetry.log_event(
            "agent.visited",
            trace_id=trace_id,
            data={"agent": token_fingerprint(token_value), "created": created, "visit_count": record.visit_count},
        )
        return record.progress_view()

    def submit_mission(
        self,
        payload: Mapping[str, Any],
        *,
        feedback_token: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate one mission submission and lock it. Nothing is written unless every check passes."""

        mission_id: str | None = None
        token_value: str | None = None
        try:
            token_value = _require_token(payload.get("token"))
            if not feedback_token_acceptable(feedback_token, self.settings.feedback_token_min_length):
                raise SubmissionError("FEEDBACK_TOKEN_INVALID", "Invalid token")
            if honeypot_filled(payload.get("honeypot")):
                raise SubmissionError("HONEYPOT_FILLED", "Invalid submission")

            meta = payload.get("missionMeta")
            raw_mission_id = meta.get("missionId") if isinstance(meta, Mapping) else None
            if not isinstance(raw_mission_id, str) or raw_mission_id not in MISSION_RULES:
                raise SubmissionError("MISSION_UNKNOWN", "Unknown mission.", field="missionId")
            mission_id = raw_mission_id

            mission_payload = payload.get("mission")
            if mission_payload is not None and not isinstance(mission_payload, Mapping):
                raise SubmissionError("INVALID_PAYLOAD", "Mission payload must be an object.", field="mission")

            existing = self.agents.get(token_value)
            stored_missions = existing.missions if existing is not None else None
            violations = validate_mission(mission_id, mission_payload, stored_missions)
            if violations:
                first_violation = violations[0]
                raise SubmissionError(
                    first_violation.code,
                    first_violation.message,
                    field=first_violation.field,
                    missionId=mission_id,
                )
        except SubmissionError as exc:
            self.telemetry.log_event(
                "mission.rejected",
                trace_id=trace_id,
                data={"agent": token_fingerprint(token_value), "mission_id": mission_id, "code": exc.code, "field": exc.field},
            )
            raise

        first_value, last_value, handle_value = _text(payload.get("first")), _text(payload.get("last")), _text(payload.get("handle"))
        if existing is None:
            record = AgentRecord.new(token_value, first=first_value, last=last_value, handle=handle_value)
        else:
            record = existing
            record.apply_identity(first=first_value, last=last_value, handle=handle_value)

        now = now_iso()
        rule = MISSION_RULES[mission_id]
        record.missions[mission_id] = {
            "status": STORED_LOCKED,
            "lastSubmittedAt": now,
            "data": normalize_mission_payload(mission_id, mission_payload),
        }
        record.submission_count += 1
        record.updated_at = now
        record.last_seen_at = now
        record.update_action = mission_sent_action(rule.number)
        self.agents.save(record)
        self.telemetry.log_event(
            "mission.locked",
            trace_id=trace_id,
            data={
                "agent": token_fingerprint(token_value),
                "mission_id": mission_id,
                "submission_count": record.submission_count,
                "rank": agent_rank(record.missions),
            },
        )
        return {"missions": record.to_dict()["missions"], "updatedAt": record.updated_at, "lastSeenAt": record.last_seen_at}

    def _update_intro(self, token: Any, action: str, event_type: str, trace_id: str | None) -> dict[str, Any]:
        token_value = _require_token(token)
        record, _ = self._load_or_create(token_value)
        now = now_iso()
        if action == ACTION_INTRO_RESET:
            record.intro_viewed = False
            record.intro_viewed_at = None
            record.intro_accepted = False
            record.intro_accepted_at = None
        else:
            if not record.intro_viewed:
                record.intro_viewed = True
                record.intro_viewed_at = now
            if action == ACTION_INTRO_ACCEPTED and not record.intro_accepted:
                record.intro_accepted = True
                record.intro_accepted_at = now
        record.update_action = action
        record.updated_at = now
        record.last_seen_at = now
        self.agents.save(record)
        self.telemetry.log_event(event_type, trace_id=trace_id, data={"agent": token_fingerprint(token_value)})
        return record.intro_view()

    def mark_intro_viewed(self, token: Any, *, trace_id: str | None = None) -> dict[str, Any]:
        return self._update_intro(token, ACTION_INTRO_VIEWED, "intro.viewed", trace_id)

    def accept_intro(self, token: Any, *, trace_id: str | None = None) -> dict[str, Any]:
        """Accepting implies viewing; both timestamps are set once."""

        return self._update_intro(token, ACTION_INTRO_ACCEPTED, "intro.accepted", trace_id)

    def reset_intro(self, token: Any, *, trace_id: str | None = None) -> dict[str, Any]:
        return self._update_intro(token, ACTION_INTRO_RESET, "intro.reset", trace_id)

    def list_agents(self, admin_token: str | None, *, trace_id: str | None = None) -> list[dict[str, Any]]:
        """Every record, most recently seen first. Requires the configured admin secret."""

        expected = self.settings.admin_token
        if not expected:
            raise AdminNotConfiguredError("Admin token is not configured.")
        if not admin_token_matches(admin_token, expected):
            self.telemetry.log_event("admin.denied", trace_id=trace_id, data={"reason": "missing" if not admin_token else "mismatch"})
            raise AdminAuthError("Unauthorized")
        records = self.agents.list_all()
        records.sort(key=lambda record: record.last_seen_at or "", reverse=True)
        self.telemetry.log_event("admin.listed", trace_id=trace_id, data={"agent_count": len(records)})
        return [record.to_dict() for record in records]

    def render_badge(
        self,
        token: Any,
        mission_number: Any,
        *,
        handle: Any = None,
        rank: Any = None,
        timestamp: Any = None,
        trace_id: str | None = None,
    ) -> RenderedBadge:
        """Render the completion badge for one mission. Lock status is not consulted."""

        token_value = _require_token(token)
        try:
            mission_id = mission_id_for_number(mission_number)
        except ValueError as exc:
            raise SubmissionError("MISSION_UNKNOWN", str(exc), field="missionNumber") from exc

        handle_value = _text(handle)
        if not handle_value:
            record = self.agents.get(token_value)
            if record is not None:
                handle_value = record.codename
        request = BadgeRequest(
            token=token_value,
            mission_number=mission_number,
            handle=handle_value or token_value,
            rank=_text(rank) or success_meta(mission_id).rank,
            timestamp=timestamp if isinstance(timestamp, str) else None,
        )
        try:
            badge = self.badges.render(request)
        except BadgeError as exc:
            logger.error("Badge render failed for mission %s: %s", mission_number, exc)
            self.telemetry.log_event(
                "badge.failed",
                trace_id=trace_id,
                data={"agent": token_fingerprint(token_value), "mission_id": mission_id, "error_type": exc.__class__.__name__},
            )
            raise
        self.telemetry.log_event(
            "badge.rendered",
            trace_id=trace_id,
            data={
                "agent": token_fingerprint(token_value),
                "mission_id": mission_id,
                "fallbacks": badge.fallbacks,
                "template_version": badge.template_version,
            },
        )
        return badge

    def save_badge(self, badge: RenderedBadge, out_path: Path | None = None) -> Path:
        target = out_path or self.dirs["badges"] / badge.filename
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(badge.png)
        return target

    def telemetry_summary(self, range_value: str, out_path: Path | None = None) -> dict[str, Any]:
        return self.telemetry.export_summary(range_value=range_value, out_path=out_path)
