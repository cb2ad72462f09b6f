from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from uuid import uuid4

import uvicorn

from .api import create_app
from .errors import AdminAuthError, AdminNotConfiguredError, BadgeError, StoreUnavailableError, SubmissionError
from .service import CampaignService
from .settings import Settings


def _service() -> CampaignService:
    return CampaignService.create(Settings.from_env())


def _print_status(progress: dict) -> None:
    print(f"Agent: {progress.get('codename')}")
    for mission_id, mission in sorted((progress.get("missions") or {}).items()):
        stamp = mission.get("lastSubmittedAt") or "-"
        print(f"- {mission_id}: {mission.get('status')} ({stamp})")
    print(f"Intro viewed: {progress.get('introViewed')}  accepted: {progress.get('introAccepted')}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Arachnid mission campaign runner")
    parser.add_argument("--log-level", default=os.environ.get("ARACHNID_LOG_LEVEL", "WARNING"), help="Python logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    api_cmd = sub.add_parser("api", help="Run the campaign API server")
    api_cmd.add_argument("--host", default="127.0.0.1")
    api_cmd.add_argument("--port", type=int, default=8000)

    status_cmd = sub.add_parser("status", help="Show (and touch) one agent's progress")
    status_cmd.add_argument("--token", required=True, help="Agent token")
    status_cmd.add_argument("--first", default=None)
    status_cmd.add_argument("--last", default=None)
    status_cmd.add_argument("--handle", default=None)
    status_cmd.add_argument("--json", action="store_true", help="Print raw JSON")

    agents_cmd = sub.add_parser("agents", help="List every agent record (admin)")
    agents_cmd.add_argument("--admin-token", default=os.environ.get("ARACHNID_ADMIN_TOKEN"), help="Admin secret")

    badge_cmd = sub.add_parser("badge", help="Render a mission completion badge")
    badge_cmd.add_argument("--token", required=True, help="Agent token")
    badge_cmd.add_argument("--mission", type=int, required=True, choices=[1, 2, 3])
    badge_cmd.add_argument("--handle", default=None)
    badge_cmd.add_argument("--rank", default=None)
    badge_cmd.add_argument("--timestamp", default=None, help="ISO timestamp to print on the badge")
    badge_cmd.add_argument("--out", default=None, help="Output PNG path")

    telemetry_cmd = sub.add_parser("telemetry", help="Telemetry operations")
    telemetry_sub = telemetry_cmd.add_subparsers(dest="telemetry_command", required=True)
    telemetry_export = telemetry_sub.add_parser("export", help="Export aggregated telemetry summary")
    telemetry_export.add_argument("--range", default="7d", help="Range window like 7d or 24h")
    telemetry_export.add_argument("--out", required=True, help="Output JSON path")

    args = parser.parse_args()
    logging.basicConfig(level=str(args.log_level).upper(), format="%(levelname)s %(name)s: %(message)s")
    service = _service()
    trace_id = f"cli:{uuid4()}"

    try:
        if args.command == "api":
            app = create_app(service)
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "status":
            progress = service.touch_status(
                args.token,
                first=args.first,
                last=args.last,
                handle=args.handle,
                trace_id=trace_id,
            )
            if args.json:
                print(json.dumps(progress, indent=2))
            else:
                _print_status(progress)
            return 0

        if args.command == "agents":
            print(json.dumps(service.list_agents(args.admin_token, trace_id=trace_id), indent=2))
            return 0

        if args.command == "badge":
            badge = service.render_badge(
                args.token,
                args.mission,
                handle=args.handle,
                rank=args.rank,
                timestamp=args.timestamp,
                trace_id=trace_id,
            )
            target = service.save_badge(badge, Path(args.out) if args.out else None)
            print(f"Badge written to {target}")
            for fallback in badge.fallbacks:
                print(f"  fallback used: {fallback}")
            return 0

        if args.command == "telemetry" and args.telemetry_command == "export":
            summary = service.telemetry_summary(args.range, out_path=Path(args.out))
            print(json.dumps(summary, indent=2))
            return 0
    except SubmissionError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 2
    except (AdminAuthError, AdminNotConfiguredError) as exc:
        print(f"Admin access denied: {exc}", file=sys.stderr)
        return 3
    except (StoreUnavailableError, BadgeError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
