from __future__ import annotations

import hmac
import re
from typing import Any


SECRET_VALUE_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\b[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\b"),  # JWT-like
    re.compile(r"\b(?:Bearer|Token)\s+[A-Za-z0-9\-_\.]{16,}\b", re.IGNORECASE),
    re.compile(r"-----BEGIN (?:RSA|EC|OPENSSH|PRIVATE) KEY-----"),
]

PII_PATTERNS = [
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN-like
    re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w{2,}\b"),  # email
    re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),  # IPv4
]


def _matches_any(payload: Any, patterns: list[re.Pattern[str]]) -> bool:
    if isinstance(payload, str):
        return any(pattern.search(payload) for pattern in patterns)
    if isinstance(payload, list):
        return any(_matches_any(item, patterns) for item in payload)
    if isinstance(payload, dict):
        return any(_matches_any(value, patterns) for value in payload.values())
    return False


def payload_contains_secrets(payload: Any) -> bool:
    return _matches_any(payload, SECRET_VALUE_PATTERNS)


def payload_contains_pii(payload: Any) -> bool:
    return _matches_any(payload, PII_PATTERNS)


def honeypot_filled(value: Any) -> bool:
    """The hidden anti-automation field must stay empty."""

    if value is None:
        return False
    return bool(str(value).strip())


def feedback_token_acceptable(token: str | None, min_length: int) -> bool:
    if min_length <= 0:
        return True
    return isinstance(token, str) and len(token) >= min_length


def admin_token_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.strip().encode("utf-8"), expected.encode("utf-8"))
