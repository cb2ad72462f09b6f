from __future__ import annotations

"""HTTP API for the mission campaign."""

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import AdminAuthError, AdminNotConfiguredError, BadgeError, StoreUnavailableError, SubmissionError
from .service import CampaignService
from .telemetry import detect_runner_version, sanitize_event_data


TRACE_HEADER = "X-Arachnid-Trace-Id"
CORS_METHODS = ["GET", "POST", "OPTIONS"]
CORS_HEADERS = ["Content-Type", "X-Feedback-Token", "X-Admin-Token"]
MAX_TRACE_ID_CHARS = 128


class MissionMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mission_id: str | None = Field(default=None, alias="missionId")


class FeedbackRequest(BaseModel):
    """Mission submission. Unknown top-level keys are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str | None = None
    first: str | None = None
    last: str | None = None
    handle: str | None = None
    codename: str | None = None
    mission_meta: MissionMeta | None = Field(default=None, alias="missionMeta")
    mission: dict[str, Any] | None = None
    honeypot: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "first": self.first,
            "last": self.last,
            "handle": self.handle,
            "missionMeta": {"missionId": self.mission_meta.mission_id} if self.mission_meta else None,
            "mission": self.mission,
            "honeypot": self.honeypot,
        }


class TokenRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str | None = None


class BadgeRenderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str | None = None
    handle: str | None = None
    mission_number: int = Field(alias="missionNumber")
    rank: str | None = Field(default=None, max_length=40)
    timestamp: str | None = None


def _failure(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error, **extra})


def _is_preflight(request: Request) -> bool:
    return "origin" in request.headers and "access-control-request-method" in request.headers


class NoContentPreflightMiddleware(CORSMiddleware):
    """CORS handling with accepted preflights answered as 204 No Content."""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {key: value for key, value in response.headers.items() if key not in ("content-length", "content-type")}
        return Response(status_code=204, headers=headers)


def _clean_trace_id(value: str) -> str | None:
    cleaned, _ = sanitize_event_data(value[:MAX_TRACE_ID_CHARS])
    if not cleaned or cleaned == "[redacted]":
        return None
    return str(cleaned)


def create_app(service: CampaignService) -> FastAPI:
    """Create API routes backed by `CampaignService`."""

    app = FastAPI(title="Arachnid Mission Control API", version=detect_runner_version())
    app.add_middleware(
        NoContentPreflightMiddleware,
        allow_origins=list(service.settings.cors_origins),
        allow_methods=CORS_METHODS,
        allow_headers=CORS_HEADERS,
    )

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get(TRACE_HEADER) or "").strip()
        trace_id = (_clean_trace_id(incoming) if incoming else None) or f"api:{uuid4()}"
        request.state.trace_id = trace_id
        if request.method == "OPTIONS" and request.url.path.startswith("/api/") and not _is_preflight(request):
            response: Response = Response(status_code=204)
        else:
            try:
                response = await call_next(request)
            except Exception as exc:  # noqa: BLE001
                service.telemetry.log_event(
                    "risk.flagged",
                    trace_id=trace_id,
                    data={
                        "reason": "api_internal_error",
                        "endpoint": request.url.path,
                        "error_type": exc.__class__.__name__,
                    },
                )
                response = _failure(500, "Internal server error", trace_id=trace_id)
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _failure(404, "Not found")
        if exc.status_code == 405:
            return _failure(405, "Method not allowed")
        return _failure(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _failure(400, "Invalid JSON payload", code="INVALID_PAYLOAD")

    @app.exception_handler(SubmissionError)
    async def submission_error_handler(request: Request, exc: SubmissionError) -> JSONResponse:
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(AdminAuthError)
    async def admin_auth_handler(request: Request, exc: AdminAuthError) -> JSONResponse:
        return _failure(401, "Unauthorized")

    @app.exception_handler(AdminNotConfiguredError)
    async def admin_config_handler(request: Request, exc: AdminNotConfiguredError) -> JSONResponse:
        return _failure(500, "Admin access is not configured")

    @app.exception_handler(StoreUnavailableError)
    async def store_error_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        return _failure(500, "Storage unavailable")

    @app.exception_handler(BadgeError)
    async def badge_error_handler(request: Request, exc: BadgeError) -> JSONResponse:
        return _failure(500, "Unable to generate badge")

    def request_trace_id(request: Request) -> str:
        value = getattr(request.state, "trace_id", None)
        if isinstance(value, str) and value:
            return value
        return f"api:{uuid4()}"

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "version": detect_runner_version()}

    @app.get("/api/status")
    def status(
        request: Request,
        token: str | None = None,
        first: str | None = None,
        last: str | None = None,
        handle: str | None = None,
    ) -> dict[str, Any]:
        progress = service.touch_status(token, first=first, last=last, handle=handle, trace_id=request_trace_id(request))
        return {"ok": True, "progress": progress}

    @app.post("/api/feedback")
    def submit_feedback(
        body: FeedbackRequest,
        request: Request,
        x_feedback_token: str | None = Header(default=None),
    ) -> dict[str, Any]:
        progress = service.submit_mission(
            body.to_payload(),
            feedback_token=x_feedback_token,
            trace_id=request_trace_id(request),
        )
        return {"ok": True, "progress": progress}

    @app.post("/api/intro-viewed")
    def intro_viewed(body: TokenRequest, request: Request) -> dict[str, Any]:
        return {"ok": True, **service.mark_intro_viewed(body.token, trace_id=request_trace_id(request))}

    @app.post("/api/intro-accept")
    def intro_accept(body: TokenRequest, request: Request) -> dict[str, Any]:
        return {"ok": True, **service.accept_intro(body.token, trace_id=request_trace_id(request))}

    @app.post("/api/intro-reset")
    def intro_reset(body: TokenRequest, request: Request) -> dict[str, Any]:
        return {"ok": True, **service.reset_intro(body.token, trace_id=request_trace_id(request))}

    @app.get("/api/admin/agents")
    def admin_agents(request: Request, x_admin_token: str | None = Header(default=None)) -> dict[str, Any]:
        return {"ok": True, "agents": service.list_agents(x_admin_token, trace_id=request_trace_id(request))}

    @app.post("/api/badge")
    def render_badge(body: BadgeRenderRequest, request: Request) -> Response:
        badge = service.render_badge(
            body.token,
            body.mission_number,
            handle=body.handle,
            rank=body.rank,
            timestamp=body.timestamp,
            trace_id=request_trace_id(request),
        )
        headers = {"Content-Disposition": f'attachment; filename="{badge.filename}"'}
        if badge.fallbacks:
            headers["X-Badge-Fallbacks"] = ",".join(badge.fallbacks)
        return Response(content=badge.png, media_type="image/png", headers=headers)

    return app
