from __future__ import annotations

"""HTTP client for the campaign API, including paced mission submission."""

import json
import logging
import re
import time
import uuid
from http.client import HTTPException
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlsplit
from urllib.request import Request, urlopen

from .errors import ApiRequestError
from .missions import (
    MIN_VISIBLE_LATENCY_SECONDS,
    STAGE_DELAY_SECONDS,
    TRANSMISSION_FAILED,
    MissionBoard,
)


REQUEST_TIMEOUT_SECONDS = 10
LEGACY_FEEDBACK_SUFFIX = re.compile(r"/api/feedback/?$")

logger = logging.getLogger(__name__)


def validate_api_base(api_base: str) -> str:
    """Require an http(s) URL with a host and no userinfo; a trailing `/api/feedback` is dropped."""

    parsed = urlsplit(api_base.strip())
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("api-base must use http or https scheme.")
    if parsed.username or parsed.password:
        raise ValueError("api-base must not include userinfo.")
    if not parsed.hostname:
        raise ValueError("api-base must include a host.")
    base = api_base.strip().rstrip("/")
    return LEGACY_FEEDBACK_SUFFIX.sub("", base).rstrip("/")


def _error_message(payload: bytes) -> str | None:
    try:
        decoded = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if isinstance(decoded, dict) and isinstance(decoded.get("error"), str) and decoded["error"].strip():
        return decoded["error"].strip()
    return None


class CampaignClient:
    """Thin API client. After `close()` any response that arrives is dropped."""

    def __init__(
        self,
        api_base: str,
        *,
        feedback_token: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_base = validate_api_base(api_base)
        self.feedback_token = feedback_token
        self.alive = True
        self._clock = clock
        self._sleep = sleep

    def close(self) -> None:
        self.alive = False

    def _new_trace_id(self) -> str:
        return f"client:{uuid.uuid4()}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        url = f"{self.api_base}{path}"
        if params:
            url = f"{url}?{urlencode({key: value for key, value in params.items() if value is not None})}"
        request_headers = {"Content-Type": "application/json", "X-Arachnid-Trace-Id": self._new_trace_id()}
        request_headers.update(headers or {})
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = Request(url=url, method=method, headers=request_headers, data=data)
        try:
            with urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:  # nosec B310
                return response.read(), {key.lower(): value for key, value in response.headers.items()}
        except HTTPError as exc:
            detail = exc.read()
            error = _error_message(detail)
            raise ApiRequestError(f"API HTTP error {exc.code}: {error or 'no detail'}", status=exc.code, error=error) from exc
        except URLError as exc:
            raise ApiRequestError(f"API request failed: {exc.reason}") from exc
        except (OSError, HTTPException) as exc:
            raise ApiRequestError(f"API request failed: {exc.__class__.__name__}: {exc}") from exc

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        raw, _ = self._send(method, path, **kwargs)
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ApiRequestError("API returned a non-JSON response") from exc
        if not isinstance(payload, dict):
            raise ApiRequestError("API returned an unexpected response shape")
        return payload

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/api/health")

    def fetch_status(
        self,
        token: str,
        *,
        first: str | None = None,
        last: str | None = None,
        handle: str | None = None,
    ) -> dict[str, Any]:
        payload = self._request(
            "GET",
            "/api/status",
            params={"token": token, "first": first, "last": last, "handle": handle},
        )
        return payload.get("progress") or {}

    def sync(self, board: MissionBoard) -> bool:
        """Reconcile `board` from `/api/status`; False when the response was dropped."""

        progress = self.fetch_status(board.token, first=board.first, last=board.last, handle=board.handle)
        if not self.alive:
            return False
        board.reconcile(progress)
        return True

    def mark_intro_viewed(self, token: str) -> dict[str, Any]:
        return self._request("POST", "/api/intro-viewed", body={"token": token})

    def accept_intro(self, token: str) -> dict[str, Any]:
        return self._request("POST", "/api/intro-accept", body={"token": token})

    def reset_intro(self, token: str) -> dict[str, Any]:
        return self._request("POST", "/api/intro-reset", body={"token": token})

    def list_agents(self, admin_token: str) -> list[dict[str, Any]]:
        payload = self._request("GET", "/api/admin/agents", headers={"X-Admin-Token": admin_token})
        agents = payload.get("agents")
        return agents if isinstance(agents, list) else []

    def fetch_badge(
        self,
        token: str,
        mission_number: int,
        *,
        handle: str | None = None,
        rank: str | None = None,
        timestamp: str | None = None,
    ) -> tuple[bytes, str] | None:
        """Return `(png, filename)`, or None if the client was closed before the response landed."""

        body = {"token": token, "missionNumber": mission_number, "handle": handle, "rank": rank, "timestamp": timestamp}
        raw, headers = self._send("POST", "/api/badge", body={key: value for key, value in body.items() if value is not None})
        if not self.alive:
            return None
        match = re.search(r'filename="([^"]+)"', headers.get("content-disposition", ""))
        return raw, match.group(1) if match else "badge.png"

    def submit_mission(self, board: MissionBoard, mission_id: str) -> bool:
        """Submit one mission through the board's staged protocol.

        The `encrypting` stage is held for at least `STAGE_DELAY_SECONDS` and the whole
        exchange for at least `MIN_VISIBLE_LATENCY_SECONDS`. There is no retry.
        """

        payload = board.begin_submit(mission_id)
        if payload is None:
            return False
        started = self._clock()
        self._sleep(STAGE_DELAY_SECONDS)
        if not self.alive:
            return False
        board.advance_stage(mission_id)

        headers = {"X-Feedback-Token": self.feedback_token} if self.feedback_token else None
        response: dict[str, Any] | None = None
        failure: ApiRequestError | None = None
        try:
            response = self._request("POST", "/api/feedback", body=payload, headers=headers)
        except ApiRequestError as exc:
            failure = exc

        remaining = MIN_VISIBLE_LATENCY_SECONDS - (self._clock() - started)
        if remaining > 0:
            self._sleep(remaining)
        if not self.alive:
            logger.debug("Dropping late submission response for %s", mission_id)
            return False

        if failure is not None:
            validation = failure.status is not None and 400 <= failure.status < 500 and failure.error
            board.fail_submit(mission_id, failure.error if validation else TRANSMISSION_FAILED)
            return False
        if response is None or response.get("ok") is not True:
            board.fail_submit(mission_id, TRANSMISSION_FAILED)
            return False
        board.complete_submit(mission_id, response.get("progress"))
        return True
