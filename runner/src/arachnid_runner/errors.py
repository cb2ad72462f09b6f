from __future__ import annotations

"""Typed failures shared by the service, API, client, and badge compositor."""

from typing import Any


class SubmissionError(ValueError):
    """Structured input rejection for stable `{ok: false, error, code}` responses."""

    def __init__(self, code: str, message: str, *, field: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.field = field
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "error": self.message, "code": self.code}
        if self.field:
            payload["field"] = self.field
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


class AdminAuthError(PermissionError):
    """Admin token missing or mismatched."""


class AdminNotConfiguredError(RuntimeError):
    """No admin secret configured for the aggregate view."""


class StoreUnavailableError(RuntimeError):
    """Progress store could not be read or written."""


class BadgeError(RuntimeError):
    """Base class for hard badge compositor failures."""


class BadgeTemplateError(BadgeError):
    """Template could not be loaded or left placeholders unfilled."""


class BadgeRenderError(BadgeError):
    """Composited document could not be rasterized or exported."""


class ApiRequestError(RuntimeError):
    """Non-2xx or transport failure observed by the HTTP client."""

    def __init__(self, message: str, *, status: int | None = None, error: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.error = error
