from __future__ import annotations

import os
from pathlib import Path


def package_root() -> Path:
    return Path(__file__).resolve().parent


def assets_dir() -> Path:
    return package_root() / "assets"


def campaign_home() -> Path:
    configured = os.environ.get("ARACHNID_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".arachnid"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    agents = base / "agents"
    telemetry = base / "telemetry"
    badges = base / "badges"
    for path in (base, agents, telemetry, badges):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "agents": agents, "telemetry": telemetry, "badges": badges}
