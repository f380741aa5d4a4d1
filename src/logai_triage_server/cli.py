from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from logai_triage_server.core.models import ClusterStatus
from logai_triage_server.core.sources import read_records
from logai_triage_server.tools.triage import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_LOOKBACK_HOURS,
    analyze_impl,
    create_application_impl,
    generate_patch_impl,
    ingest_logs_impl,
    list_applications_impl,
    list_clusters_impl,
    scan_history_impl,
    scan_impl,
    update_cluster_status_impl,
)

_STATUS_CHOICES = [s.value for s in ClusterStatus]


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _fail(payload: dict[str, Any]) -> None:
    err = payload.get("error") or {}
    print(f"Error [{err.get('code', 'error')}]: {err.get('message', '')}", file=sys.stderr)
    raise SystemExit(2)


async def _cmd_apps(args: argparse.Namespace) -> dict[str, Any]:
    if args.create:
        return await create_application_impl(name=args.create, description=args.description)
    return await list_applications_impl()


async def _cmd_ingest(args: argparse.Namespace) -> dict[str, Any]:
    path = Path(args.log_path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    records, skipped = await read_records(path)
    if skipped:
        print(f"Skipped {skipped} non-JSON lines.", file=sys.stderr)
    return await ingest_logs_impl(application_id=args.application_id, records=records)


async def _cmd_scan(args: argparse.Namespace) -> dict[str, Any]:
    return await scan_impl(
        application_id=args.application_id, lookback_hours=args.hours, analyze=args.analyze
    )


async def _cmd_clusters(args: argparse.Namespace) -> dict[str, Any]:
    return await list_clusters_impl(application_id=args.application_id, status=args.status)


async def _cmd_analyze(args: argparse.Namespace) -> dict[str, Any]:
    return await analyze_impl(cluster_id=args.cluster_id)


async def _cmd_patch(args: argparse.Namespace) -> dict[str, Any]:
    source_code = None
    if args.source:
        source_code = Path(args.source).read_text(encoding="utf-8", errors="replace")
    return await generate_patch_impl(cluster_id=args.cluster_id, source_code=source_code)


async def _cmd_status(args: argparse.Namespace) -> dict[str, Any]:
    return await update_cluster_status_impl(cluster_id=args.cluster_id, status=args.status)


async def _cmd_history(args: argparse.Namespace) -> dict[str, Any]:
    return await scan_history_impl(application_id=args.application_id, limit=args.limit)


def _render(command: str, payload: dict[str, Any], args: argparse.Namespace) -> None:
    if command == "apps":
        if "application" in payload:
            app = payload["application"]
            print(f"Created application {app['name']} ({app['id']})")
            return
        for app in payload["applications"]:
            print(f"{app['id']}  {app['name']}  {app['description'] or ''}".rstrip())
        print(f"\n{payload['count']} applications.")
    elif command == "ingest":
        print(f"Inserted {payload['inserted']} events, rejected {len(payload['rejected'])}.")
    elif command == "scan":
        print(
            f"Scan {payload['scan_id']} {payload['status']}: "
            f"{payload['logs_scanned']} logs, {payload['errors_found']} errors, "
            f"{payload['clusters_found']} clusters ({payload['clusters_created']} new, "
            f"{payload['clusters_analyzed']} analysed)"
        )
    elif command == "clusters":
        for c in payload["clusters"]:
            print(
                f"{c['id']}  {c['severity']:<8} {c['status']:<12} x{c['occurrence_count']:<6} "
                f"{c['exception_class'] or '-'}  {c['message_pattern'] or ''}"
            )
        print(f"\n{payload['count']} clusters.")
    elif command == "analyze":
        print(f"Confidence: {payload['confidence']} ({payload['model_used']})")
        print(f"\nExplanation: {payload['explanation']}")
        print(f"\nRoot cause: {payload['root_cause']}")
        print(f"\nRecommendation: {payload['recommendation']}")
    elif command == "patch":
        if args.out:
            Path(args.out).write_text(payload["patch"], encoding="utf-8")
            print(f"Wrote patch for {payload['patch_file_name']} to {args.out}")
        else:
            print(f"# {payload['patch_file_name']}")
            print(payload["patch"], end="")
    elif command == "status":
        c = payload["cluster"]
        print(f"Cluster {c['id']} is now {c['status']}")
    elif command == "history":
        for s in payload["scans"]:
            line = (
                f"{s['scan_id']}  {s['status']:<9} {s['started_at']}  "
                f"logs={s['logs_scanned']} errors={s['errors_found']} "
                f"created={s['clusters_created']}"
            )
            if s["error_message"]:
                line += f"  ({s['error_message']})"
            print(line)


_COMMANDS = {
    "apps": _cmd_apps,
    "ingest": _cmd_ingest,
    "scan": _cmd_scan,
    "clusters": _cmd_clusters,
    "analyze": _cmd_analyze,
    "patch": _cmd_patch,
    "status": _cmd_status,
    "history": _cmd_history,
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Error clustering and AI-assisted triage for application logs.",
        epilog="Storage and model settings come from LOGAI_* environment variables.",
    )
    p.add_argument("--json", action="store_true", help="Print the raw JSON result")
    sub = p.add_subparsers(dest="command", required=True)

    apps = sub.add_parser("apps", help="List applications or register one")
    apps.add_argument("--create", metavar="NAME", default=None, help="Register an application")
    apps.add_argument("--description", default=None)

    ingest = sub.add_parser("ingest", help="Append a JSON-lines log file (.jsonl or .gz)")
    ingest.add_argument("application_id")
    ingest.add_argument("log_path")

    scan = sub.add_parser("scan", help="Cluster recent errors of an application")
    scan.add_argument("application_id")
    scan.add_argument("--hours", type=int, default=DEFAULT_LOOKBACK_HOURS, help="Look back N hours")
    scan.add_argument("--analyze", action="store_true", help="Analyse newly created clusters")

    clusters = sub.add_parser("clusters", help="List clusters, most frequent first")
    clusters.add_argument("application_id")
    clusters.add_argument("--status", type=str.upper, choices=_STATUS_CHOICES, default=None)

    analyze = sub.add_parser("analyze", help="Analyse one cluster")
    analyze.add_argument("cluster_id")

    patch = sub.add_parser("patch", help="Generate a patch for an analysed cluster")
    patch.add_argument("cluster_id")
    patch.add_argument("--source", default=None, help="File whose content is sent as context")
    patch.add_argument("--out", default=None, help="Write the diff here instead of stdout")

    status = sub.add_parser("status", help="Change a cluster's status")
    status.add_argument("cluster_id")
    status.add_argument("status", type=str.upper, choices=_STATUS_CHOICES)

    history = sub.add_parser("history", help="Show recent scans of an application")
    history.add_argument("application_id")
    history.add_argument("--limit", type=int, default=DEFAULT_HISTORY_LIMIT)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOGAI_LOG_LEVEL", "WARNING").upper(), logging.WARNING),
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        payload = asyncio.run(_COMMANDS[args.command](args))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        raise SystemExit(2)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(2)

    if args.json:
        _print_json(payload)
        if not payload.get("success"):
            raise SystemExit(2)
        return
    if not payload.get("success"):
        _fail(payload)
    _render(args.command, payload, args)


if __name__ == "__main__":
    main()
