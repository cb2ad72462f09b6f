from __future__ import annotations

"""Campaign telemetry: sanitized JSONL events and windowed summary export."""

import hashlib
import json
import platform
import re
import sys
import unicodedata
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any, Iterable, Iterator

from .security import payload_contains_pii, payload_contains_secrets


EVENT_SCHEMA = "0.1"
EVENT_TYPES = frozenset(
    {
        "service.started",
        "agent.visited",
        "intro.viewed",
        "intro.accepted",
        "intro.reset",
        "mission.locked",
        "mission.rejected",
        "badge.rendered",
        "badge.failed",
        "admin.listed",
        "admin.denied",
        "risk.flagged",
    }
)
EVENT_SOURCES = frozenset({"api", "cli", "client"})
FIELD_LIMIT = 200
REDACTED = "[redacted]"
TRUNCATED_SUFFIX = "...[truncated]"
WINDOW_PATTERN = re.compile(r"(\d+)([a-z])")
WINDOW_UNITS = {"d": "days", "h": "hours"}


def _timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(tz=UTC)
    return moment.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _event_time(raw: Any) -> datetime | None:
    if not isinstance(raw, str):
        return None
    try:
        moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return moment.astimezone(UTC) if moment.tzinfo else moment.replace(tzinfo=UTC)


def token_fingerprint(token: str | None) -> str | None:
    """Short stable digest so events can be correlated without storing raw tokens."""

    if not token:
        return None
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


@dataclass
class SanitizeStats:
    redacted_fields: int = 0
    truncated_fields: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.redacted_fields or self.truncated_fields)


def _clean_text(value: str, stats: SanitizeStats) -> str:
    text = "".join(ch for ch in value if unicodedata.category(ch)[0] != "C").strip()
    if payload_contains_secrets(text) or payload_contains_pii(text):
        stats.redacted_fields += 1
        return REDACTED
    if len(text) > FIELD_LIMIT:
        stats.truncated_fields += 1
        return text[:FIELD_LIMIT] + TRUNCATED_SUFFIX
    return text


def _clean(value: Any, stats: SanitizeStats) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, dict):
        return {_clean_text(str(key), stats): _clean(item, stats) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(item, stats) for item in value]
    return _clean_text(str(value), stats)


def sanitize_event_data(data: Any) -> tuple[Any, SanitizeStats]:
    """Recursively drop control characters, redact secret/PII-like strings, truncate long ones."""

    stats = SanitizeStats()
    return _clean(data, stats), stats


def parse_range(range_value: str) -> timedelta:
    match = WINDOW_PATTERN.fullmatch(range_value.strip().lower())
    if match is None or match.group(2) not in WINDOW_UNITS:
        raise ValueError(f"range must look like 7d or 24h, got {range_value!r}")
    amount = int(match.group(1))
    if amount == 0:
        raise ValueError("range must cover a positive window")
    return timedelta(**{WINDOW_UNITS[match.group(2)]: amount})


def detect_runner_version() -> str:
    try:
        return package_version("arachnid-runner")
    except PackageNotFoundError:
        return "0.1.0"


def _tally(values: Iterable[Any]) -> dict[str, int]:
    return dict(sorted(Counter(str(value) if value else "unknown" for value in values).items()))


class TelemetryLogger:
    """Append-only JSONL event log. Logging failures never reach the caller."""

    def __init__(self, events_path: Path) -> None:
        self.events_path = events_path
        events_path.parent.mkdir(parents=True, exist_ok=True)
        self.build = {
            "runner_version": detect_runner_version(),
            "python_version": platform.python_version(),
            "platform": platform.platform(),
        }

    def _envelope(self, event_type: str, source: str, trace_id: str | None, data: Any) -> dict[str, Any]:
        return {
            "schema_version": EVENT_SCHEMA,
            "event_id": str(uuid.uuid4()),
            "ts": _timestamp(),
            "event_type": event_type,
            "source": source if source in EVENT_SOURCES else "api",
            "trace_id": trace_id,
            "build": self.build,
            "data": data,
        }

    def _write(self, envelopes: list[dict[str, Any]]) -> None:
        lines = "".join(json.dumps(item, sort_keys=True, separators=(",", ":")) + "\n" for item in envelopes)
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(lines)

    def log_event(
        self,
        event_type: str,
        *,
        source: str = "api",
        data: dict[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Record one event; a sanitized payload is followed by a `telemetry_sanitized` flag."""

        try:
            if event_type in EVENT_TYPES:
                payload: dict[str, Any] = dict(data or {})
            else:
                payload = {
                    "reason": "invalid_event_type",
                    "invalid_event_type_hash": hashlib.sha256(event_type.encode("utf-8")).hexdigest(),
                }
                event_type = "risk.flagged"
            sanitized, stats = sanitize_event_data(payload)
            envelopes = [self._envelope(event_type, source, trace_id, sanitized)]
            if stats.changed:
                flag = {
                    "reason": "telemetry_sanitized",
                    "trigger_event_type": event_type,
                    "fields_redacted_count": stats.redacted_fields,
                    "fields_truncated_count": stats.truncated_fields,
                }
                envelopes.append(self._envelope("risk.flagged", source, trace_id, flag))
            self._write(envelopes)
        except (OSError, TypeError, ValueError) as exc:
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def events(self) -> Iterator[dict[str, Any]]:
        """Stored events in file order; blank and corrupt lines are skipped."""

        if not self.events_path.exists():
            return
        for raw in self.events_path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict):
                yield event

    def export_summary(self, *, range_value: str, out_path: Path | None = None) -> dict[str, Any]:
        """Aggregate campaign activity inside the trailing `range_value` window."""

        end = datetime.now(tz=UTC)
        start = end - parse_range(range_value)
        by_type: dict[str, list[dict[str, Any]]] = {}
        considered = 0
        for event in self.events():
            moment = _event_time(event.get("ts"))
            if moment is None or not start <= moment <= end:
                continue
            considered += 1
            data = event.get("data")
            by_type.setdefault(str(event.get("event_type")), []).append(data if isinstance(data, dict) else {})

        locked = by_type.get("mission.locked", [])
        rejected = by_type.get("mission.rejected", [])
        attempts = len(locked) + len(rejected)
        agents = {data["agent"] for data in by_type.get("agent.visited", []) if isinstance(data.get("agent"), str)}

        summary = {
            "schema_version": EVENT_SCHEMA,
            "generated_at": _timestamp(),
            "range": range_value,
            "window_start": _timestamp(start),
            "window_end": _timestamp(end),
            "events_considered": considered,
            "events_by_type": {name: len(items) for name, items in sorted(by_type.items())},
            "unique_agents": len(agents),
            "missions_locked": _tally(data.get("mission_id") for data in locked),
            "rejections_by_code": _tally(data.get("code") for data in rejected),
            "submission_success_rate": round(len(locked) / attempts, 4) if attempts else 0.0,
            "intro_accepted": len(by_type.get("intro.accepted", [])),
            "badges_rendered": len(by_type.get("badge.rendered", [])),
            "badges_failed": len(by_type.get("badge.failed", [])),
            "admin_denied": len(by_type.get("admin.denied", [])),
            "risk_flags_count": len(by_type.get("risk.flagged", [])),
        }
        if out_path is not None:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        return summary
