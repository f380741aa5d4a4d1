"""MCP tool implementations.

This module contains the *implementation* behind the exposed MCP tools.
Keep this layer thin: validate inputs, translate them into core calls, and
return JSON-serializable data structures. Domain errors are reported as
``{"success": false, "error": {"code": ..., "message": ...}}`` so callers can
tell a busy cluster from a missing one without parsing messages.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, ParamSpec

from logai_triage_server.core.analysis import (
    AnalysisConfig,
    GeminiReasoningClient,
    ReasoningClient,
    analyze_cluster,
    generate_patch,
    resolve_analysis_config,
)
from logai_triage_server.core.config import TriageConfig, resolve_triage_config
from logai_triage_server.core.errors import InputValidationError, NotFoundError, TriageError
from logai_triage_server.core.models import (
    AnalysisResult,
    Application,
    ErrorCluster,
    ScanRun,
    StatusChange,
)
from logai_triage_server.core.scan import run_scan
from logai_triage_server.core.sources import (
    JsonlLogSource,
    LogSource,
    StoreLogSource,
    parse_log_record,
)
from logai_triage_server.core.status import parse_status
from logai_triage_server.core.store import TriageStore, open_store

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_HOURS = 24
DEFAULT_HISTORY_LIMIT = 10
HARD_HISTORY_LIMIT = 200
MAX_INGEST_RECORDS = 5000

P = ParamSpec("P")


@dataclass(slots=True)
class TriageServices:
    """Everything a tool call needs: store, log source, reasoning client, config."""

    store: TriageStore
    source: LogSource
    client: ReasoningClient
    cfg: TriageConfig
    analysis_cfg: AnalysisConfig


def build_services(
    cfg: TriageConfig | None = None,
    analysis_cfg: AnalysisConfig | None = None,
) -> TriageServices:
    """Build services from config (with env overrides applied)."""
    cfg = resolve_triage_config(cfg)
    analysis_cfg = resolve_analysis_config(analysis_cfg)
    store = open_store(cfg.database_url)
    source: LogSource
    if cfg.log_dir:
        source = JsonlLogSource(Path(cfg.log_dir))
    else:
        source = StoreLogSource(store)
    logger.debug(
        "Services ready (store=%s, source=%s, model=%s)",
        type(store).__name__,
        type(source).__name__,
        analysis_cfg.model,
    )
    return TriageServices(
        store=store,
        source=source,
        client=GeminiReasoningClient(analysis_cfg),
        cfg=cfg,
        analysis_cfg=analysis_cfg,
    )


_services: TriageServices | None = None


def get_services() -> TriageServices:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: TriageServices | None) -> None:
    """Replace the process-wide services (None resets to lazy construction)."""
    global _services
    _services = services


def error_payload(err: TriageError) -> dict[str, Any]:
    return {"success": False, "error": {"code": err.code, "message": str(err)}}


def _boundary(
    fn: Callable[P, Awaitable[dict[str, Any]]],
) -> Callable[P, Awaitable[dict[str, Any]]]:
    """Convert TriageError raised by an implementation into an error payload."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> dict[str, Any]:
        try:
            return await fn(*args, **kwargs)
        except TriageError as e:
            logger.info("%s rejected: %s (%s)", fn.__name__, e, e.code)
            return error_payload(e)

    return wrapper


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _cluster_to_dict(c: ErrorCluster) -> dict[str, Any]:
    return {
        "id": c.id,
        "application_id": c.app_id,
        "fingerprint": c.fingerprint,
        "exception_class": c.exception_class,
        "message_pattern": c.message_pattern,
        "primary_file": c.primary_file,
        "primary_class": c.primary_class,
        "primary_method": c.primary_method,
        "primary_line": c.primary_line,
        "occurrence_count": c.occurrence_count,
        "severity": c.severity.value,
        "status": c.status.value,
        "first_seen": _dt(c.first_seen),
        "last_seen": _dt(c.last_seen),
        "sample_message": c.sample_message,
        "sample_stack_trace": c.sample_stack_trace,
    }


def _analysis_to_dict(a: AnalysisResult) -> dict[str, Any]:
    return {
        "analysis_id": a.id,
        "cluster_id": a.cluster_id,
        "explanation": a.explanation,
        "root_cause": a.root_cause,
        "recommendation": a.recommendation,
        "confidence": a.confidence.value,
        "model_used": a.model_used,
        "tokens_used": a.tokens_used,
        "created_at": _dt(a.created_at),
        "patch": a.patch,
        "patch_file_name": a.patch_file_name,
    }


def _scan_to_dict(s: ScanRun) -> dict[str, Any]:
    return {
        "scan_id": s.id,
        "application_id": s.app_id,
        "status": s.status.value,
        "started_at": _dt(s.started_at),
        "completed_at": _dt(s.completed_at),
        "logs_scanned": s.logs_scanned,
        "errors_found": s.errors_found,
        "clusters_created": s.clusters_created,
        "clusters_analyzed": s.clusters_analyzed,
        "error_message": s.error_message,
    }


def _app_to_dict(a: Application) -> dict[str, Any]:
    return {
        "id": a.id,
        "name": a.name,
        "description": a.description,
        "created_at": _dt(a.created_at),
    }


def _status_change_to_dict(ch: StatusChange) -> dict[str, Any]:
    return {
        "from": ch.from_status.value,
        "to": ch.to_status.value,
        "reason": ch.reason,
        "changed_at": _dt(ch.changed_at),
    }


def _require_id(value: str | None, name: str) -> str:
    if not value or not str(value).strip():
        raise InputValidationError(f"{name} is required")
    return str(value).strip()


async def _require_application(store: TriageStore, app_id: str) -> Application:
    app = await asyncio.to_thread(store.get_application, app_id)
    if app is None:
        raise NotFoundError(f"Application not found: {app_id}")
    return app


async def _require_cluster(store: TriageStore, cluster_id: str) -> ErrorCluster:
    cluster = await asyncio.to_thread(store.get_cluster, cluster_id)
    if cluster is None:
        raise NotFoundError(f"Cluster not found: {cluster_id}")
    return cluster


# Workflow tools


@_boundary
async def scan_impl(
    *,
    application_id: str,
    lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
    analyze: bool = False,
    services: TriageServices | None = None,
) -> dict[str, Any]:
    """Implementation for the `scan` MCP tool."""
    svc = services or get_services()
    report = await run_scan(
        _require_id(application_id, "application_id"),
        lookback_hours,
        store=svc.store,
        source=svc.source,
        cfg=svc.cfg,
        analyze=analyze,
        client=svc.client if analyze else None,
        analysis_cfg=svc.analysis_cfg,
    )
    return {
        "success": True,
        "scan_id": report.scan.id,
        "status": report.scan.status.value,
        "logs_scanned": report.scan.logs_scanned,
        "errors_found": report.scan.errors_found,
        "clusters_found": report.clusters_found,
        "clusters_created": report.scan.clusters_created,
        "clusters_analyzed": report.scan.clusters_analyzed,
        "cluster_ids": report.cluster_ids,
    }


@_boundary
async def analyze_impl(
    *, cluster_id: str, services: TriageServices | None = None
) -> dict[str, Any]:
    """Implementation for the `analyze` MCP tool."""
    svc = services or get_services()
    result = await analyze_cluster(
        _require_id(cluster_id, "cluster_id"),
        store=svc.store,
        client=svc.client,
        cfg=svc.analysis_cfg,
    )
    payload = _analysis_to_dict(result)
    payload.pop("patch")
    payload.pop("patch_file_name")
    return {"success": True, **payload}


@_boundary
async def generate_patch_impl(
    *,
    cluster_id: str,
    source_code: str | None = None,
    services: TriageServices | None = None,
) -> dict[str, Any]:
    """Implementation for the `generate_patch` MCP tool."""
    svc = services or get_services()
    result = await generate_patch(
        _require_id(cluster_id, "cluster_id"),
        source_code,
        store=svc.store,
        client=svc.client,
        cfg=svc.analysis_cfg,
    )
    return {
        "success": True,
        "analysis_id": result.id,
        "patch": result.patch,
        "patch_file_name": result.patch_file_name,
    }


# Cluster tools


@_boundary
async def list_clusters_impl(
    *,
    application_id: str,
    status: str | None = None,
    services: TriageServices | None = None,
) -> dict[str, Any]:
    """Implementation for the `list_clusters` MCP tool."""
    svc = services or get_services()
    app_id = _require_id(application_id, "application_id")
    try:
        wanted = parse_status(status) if status else None
    except ValueError as e:
        raise InputValidationError(str(e)) from e
    await _require_application(svc.store, app_id)
    clusters = await asyncio.to_thread(svc.store.list_clusters, app_id, status=wanted)
    return {
        "success": True,
        "count": len(clusters),
        "clusters": [_cluster_to_dict(c) for c in clusters],
    }


@_boundary
async def get_cluster_impl(
    *, cluster_id: str, services: TriageServices | None = None
) -> dict[str, Any]:
    """Implementation for the `get_cluster` MCP tool."""
    svc = services or get_services()
    cluster = await _require_cluster(svc.store, _require_id(cluster_id, "cluster_id"))
    analyses = await asyncio.to_thread(svc.store.list_analyses, cluster.id)
    history = await asyncio.to_thread(svc.store.status_history, cluster.id)
    return {
        "success": True,
        "cluster": _cluster_to_dict(cluster),
        "analysis": _analysis_to_dict(analyses[0]) if analyses else None,
        "analysis_count": len(analyses),
        "status_history": [_status_change_to_dict(ch) for ch in history],
    }


@_boundary
async def update_cluster_status_impl(
    *, cluster_id: str, status: str, services: TriageServices | None = None
) -> dict[str, Any]:
    """Implementation for the `update_cluster_status` MCP tool."""
    svc = services or get_services()
    try:
        target = parse_status(status)
    except ValueError as e:
        raise InputValidationError(str(e)) from e
    cluster = await asyncio.to_thread(
        svc.store.set_cluster_status, _require_id(cluster_id, "cluster_id"), target
    )
    return {"success": True, "cluster": _cluster_to_dict(cluster)}


@_boundary
async def scan_history_impl(
    *,
    application_id: str,
    limit: int = DEFAULT_HISTORY_LIMIT,
    services: TriageServices | None = None,
) -> dict[str, Any]:
    """Implementation for the `scan_history` MCP tool."""
    svc = services or get_services()
    if limit <= 0:
        raise InputValidationError("limit must be > 0")
    limit = min(limit, HARD_HISTORY_LIMIT)
    app_id = _require_id(application_id, "application_id")
    await _require_application(svc.store, app_id)
    runs = await asyncio.to_thread(svc.store.list_scan_runs, app_id, limit=limit)
    return {"success": True, "count": len(runs), "scans": [_scan_to_dict(r) for r in runs]}


# Application tools


@_boundary
async def list_applications_impl(*, services: TriageServices | None = None) -> dict[str, Any]:
    svc = services or get_services()
    apps = await asyncio.to_thread(svc.store.list_applications)
    return {"success": True, "count": len(apps), "applications": [_app_to_dict(a) for a in apps]}


@_boundary
async def create_application_impl(
    *,
    name: str,
    description: str | None = None,
    services: TriageServices | None = None,
) -> dict[str, Any]:
    svc = services or get_services()
    app = await asyncio.to_thread(
        svc.store.create_application, _require_id(name, "name"), description
    )
    logger.info("Application %s created (%s)", app.name, app.id)
    return {"success": True, "application": _app_to_dict(app)}


@_boundary
async def delete_application_impl(
    *, application_id: str, services: TriageServices | None = None
) -> dict[str, Any]:
    """Delete an application with its logs, clusters, analyses and scan history."""
    svc = services or get_services()
    app_id = _require_id(application_id, "application_id")
    deleted = await asyncio.to_thread(svc.store.delete_application, app_id)
    if not deleted:
        raise NotFoundError(f"Application not found: {app_id}")
    logger.info("Application %s deleted", app_id)
    return {"success": True, "application_id": app_id}


@_boundary
async def app_stats_impl(
    *, application_id: str, services: TriageServices | None = None
) -> dict[str, Any]:
    svc = services or get_services()
    app = await _require_application(svc.store, _require_id(application_id, "application_id"))
    stats = await asyncio.to_thread(svc.store.app_stats, app.id)
    return {
        "success": True,
        "application": _app_to_dict(app),
        "total_logs": stats.total_logs,
        "error_logs": stats.error_logs,
        "cluster_count": stats.cluster_count,
        "critical_count": stats.critical_count,
        "last_error": _dt(stats.last_error),
    }


@_boundary
async def ingest_logs_impl(
    *,
    application_id: str,
    records: Sequence[Mapping[str, Any]],
    services: TriageServices | None = None,
) -> dict[str, Any]:
    """Implementation for the `ingest_logs` MCP tool.

    Records use the appender's column names (see ``core.sources.jsonl``).
    Unusable records are skipped and reported by index.
    """
    svc = services or get_services()
    app_id = _require_id(application_id, "application_id")
    if len(records) > MAX_INGEST_RECORDS:
        raise InputValidationError(f"At most {MAX_INGEST_RECORDS} records per call")
    await _require_application(svc.store, app_id)

    events = []
    rejected: list[dict[str, Any]] = []
    for i, rec in enumerate(records):
        try:
            events.append(parse_log_record(rec))
        except (ValueError, TypeError) as e:
            rejected.append({"index": i, "reason": str(e)})

    inserted = await asyncio.to_thread(svc.store.insert_log_events, app_id, events)
    if rejected:
        logger.warning("Ingest for %s skipped %s unusable records", app_id, len(rejected))
    return {"success": True, "inserted": inserted, "rejected": rejected}
