from __future__ import annotations

import json
import sys
from pathlib import Path

from PIL import Image

from arachnid_runner import cli
from arachnid_runner.errors import AdminAuthError
from arachnid_runner.service import CampaignService
from arachnid_runner.settings import Settings


class _DummyService:
    def __init__(self) -> None:
        self.trace_id: str | None = None
        self.calls: list[tuple] = []

    def touch_status(self, token, *, first=None, last=None, handle=None, trace_id=None):  # noqa: ANN001, ANN202
        self.trace_id = trace_id
        self.calls.append((token, first, last, handle))
        return {"token": token, "codename": "@spinner", "missions": {"m1": {"status": "LOCKED"}}}

    def list_agents(self, admin_token, *, trace_id=None):  # noqa: ANN001, ANN202
        raise AdminAuthError("Unauthorized")


class _FakeRasterizer:
    def render(self, svg: str, width: int, height: int) -> Image.Image:
        return Image.new("RGBA", (width, height), (0, 0, 0, 0))


def test_cli_status_generates_trace_id(monkeypatch, capsys) -> None:  # type: ignore[no-untyped-def]
    service = _DummyService()
    monkeypatch.setattr(cli, "_service", lambda: service)
    monkeypatch.setattr(sys, "argv", ["cli.py", "status", "--token", "agent-7", "--handle", "spinner", "--json"])
    assert cli.main() == 0
    assert service.calls == [("agent-7", None, None, "spinner")]
    assert isinstance(service.trace_id, str)
    assert service.trace_id.startswith("cli:")
    assert json.loads(capsys.readouterr().out)["codename"] == "@spinner"


def test_cli_agents_reports_denied_access(monkeypatch, capsys) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(cli, "_service", _DummyService)
    monkeypatch.setattr(sys, "argv", ["cli.py", "agents", "--admin-token", "wrong"])
    assert cli.main() == 3
    assert "Admin access denied" in capsys.readouterr().err


def test_cli_badge_writes_png(monkeypatch, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    service = CampaignService.create(Settings(home=tmp_path / "home", store_kind="memory"), rasterizer=_FakeRasterizer())
    monkeypatch.setattr(cli, "_service", lambda: service)
    out = tmp_path / "badge.png"
    monkeypatch.setattr(
        sys,
        "argv",
        ["cli.py", "badge", "--token", "agent-7", "--mission", "2", "--timestamp", "2025-03-07T14:05:09", "--out", str(out)],
    )
    assert cli.main() == 0
    assert out.read_bytes().startswith(b"\x89PNG")


def test_cli_telemetry_export(monkeypatch, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    service = CampaignService.create(Settings(home=tmp_path / "home", store_kind="memory"), rasterizer=_FakeRasterizer())
    service.touch_status("agent-7")
    monkeypatch.setattr(cli, "_service", lambda: service)
    out = tmp_path / "summary.json"
    monkeypatch.setattr(sys, "argv", ["cli.py", "telemetry", "export", "--range", "24h", "--out", str(out)])
    assert cli.main() == 0
    summary = json.loads(out.read_text(encoding="utf-8"))
    assert summary["unique_agents"] == 1
    assert summary["events_by_type"]["service.started"] == 1
