from __future__ import annotations

"""Environment-driven runtime configuration for the campaign runner."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .paths import assets_dir, campaign_home


TRUTHY = {"1", "true", "yes", "on"}
LEGACY_FEEDBACK_TOKEN_MIN_LENGTH = 16
VALID_STORE_KINDS = {"file", "memory"}


def _env_flag(name: str, fallback: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return fallback
    return raw in TRUTHY


def _env_text(name: str) -> str | None:
    raw = os.environ.get(name, "").strip()
    return raw or None


def _env_origins(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return ("*",)
    origins = tuple(item.strip() for item in raw.split(",") if item.strip())
    return origins or ("*",)


@dataclass(frozen=True)
class Settings:
    """Resolved settings; construct directly in tests, `from_env()` elsewhere."""

    home: Path
    admin_token: str | None = None
    legacy_token_check: bool = False
    badge_manifest: Path = field(default_factory=lambda: assets_dir() / "badge_assets.yaml")
    cors_origins: tuple[str, ...] = ("*",)
    store_kind: str = "file"

    @classmethod
    def from_env(cls) -> "Settings":
        manifest = _env_text("ARACHNID_BADGE_MANIFEST")
        store_kind = (_env_text("ARACHNID_STORE") or "file").lower()
        if store_kind not in VALID_STORE_KINDS:
            raise ValueError(f"ARACHNID_STORE must be one of {sorted(VALID_STORE_KINDS)}, got {store_kind!r}.")
        return cls(
            home=campaign_home(),
            admin_token=_env_text("ARACHNID_ADMIN_TOKEN"),
            legacy_token_check=_env_flag("ARACHNID_LEGACY_TOKEN_CHECK"),
            badge_manifest=Path(manifest).expanduser().resolve() if manifest else assets_dir() / "badge_assets.yaml",
            cors_origins=_env_origins("ARACHNID_CORS_ORIGINS"),
            store_kind=store_kind,
        )

    @property
    def feedback_token_min_length(self) -> int:
        return LEGACY_FEEDBACK_TOKEN_MIN_LENGTH if self.legacy_token_check else 0
