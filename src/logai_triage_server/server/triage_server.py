"""MCP server entrypoint (stdio transport).

This module wires together:
- Tools: scan, analyze and patch workflows plus cluster/application management
- Resources: help, reply schemas, effective severity config, cluster details
- Prompts: reusable triage and bug-report templates for one cluster

Run locally (stdio):
    python -m logai_triage_server.server.triage_server
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Sequence
from typing import Any

from mcp.server.fastmcp import FastMCP

from logai_triage_server.prompts.registry import register_prompts
from logai_triage_server.resources.registry import register_resources
from logai_triage_server.tools.triage import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_LOOKBACK_HOURS,
    analyze_impl,
    app_stats_impl,
    create_application_impl,
    delete_application_impl,
    generate_patch_impl,
    get_cluster_impl,
    ingest_logs_impl,
    list_applications_impl,
    list_clusters_impl,
    scan_history_impl,
    scan_impl,
    update_cluster_status_impl,
)

LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure logging to stderr.

    stdout carries the MCP stdio transport, so nothing else may write to it.
    """
    level_name = os.getenv("LOGAI_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


mcp = FastMCP("logai-triage", json_response=True)

register_resources(mcp)
register_prompts(mcp)


@mcp.tool()
async def scan(
    application_id: str,
    lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
    analyze: bool = False,
) -> dict[str, Any]:
    """Scan recent logs of an application and cluster its errors.

    Parameters
    ----------
    application_id:
        Application whose logs are scanned.
    lookback_hours:
        Window size; the scan covers [now - lookback_hours, now]. Must be >= 1.
    analyze:
        When true, every newly created cluster is analysed before returning.

    Returns
    -------
    dict:
        {"success", "scan_id", "logs_scanned", "clusters_found",
         "clusters_created", "cluster_ids", ...}
    """
    return await scan_impl(
        application_id=application_id, lookback_hours=lookback_hours, analyze=analyze
    )


@mcp.tool()
async def analyze(cluster_id: str) -> dict[str, Any]:
    """Explain an error cluster: root cause, recommendation and confidence.

    Only one analysis per cluster runs at a time; a concurrent request returns
    an error with code "busy" and can be retried later.
    """
    return await analyze_impl(cluster_id=cluster_id)


@mcp.tool()
async def generate_patch(cluster_id: str, source_code: str | None = None) -> dict[str, Any]:
    """Generate a unified diff fixing an analysed cluster.

    Parameters
    ----------
    cluster_id:
        Cluster to fix. It must have been analysed first.
    source_code:
        Optional content of the failing file, used as context for the fix.

    Returns
    -------
    dict:
        {"success", "patch", "patch_file_name", "analysis_id"}
    """
    return await generate_patch_impl(cluster_id=cluster_id, source_code=source_code)


@mcp.tool()
async def list_clusters(application_id: str, status: str | None = None) -> dict[str, Any]:
    """List an application's error clusters, most frequent first.

    status filters by OPEN, ACKNOWLEDGED, RESOLVED or IGNORED (case-insensitive).
    """
    return await list_clusters_impl(application_id=application_id, status=status)


@mcp.tool()
async def get_cluster(cluster_id: str) -> dict[str, Any]:
    """Return one cluster with its current analysis and status history."""
    return await get_cluster_impl(cluster_id=cluster_id)


@mcp.tool()
async def update_cluster_status(cluster_id: str, status: str) -> dict[str, Any]:
    """Set a cluster's status (OPEN, ACKNOWLEDGED, RESOLVED or IGNORED)."""
    return await update_cluster_status_impl(cluster_id=cluster_id, status=status)


@mcp.tool()
async def scan_history(application_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> dict[str, Any]:
    """Return the most recent scan runs of an application."""
    return await scan_history_impl(application_id=application_id, limit=limit)


@mcp.tool()
async def list_applications() -> dict[str, Any]:
    """List registered applications."""
    return await list_applications_impl()


@mcp.tool()
async def create_application(name: str, description: str | None = None) -> dict[str, Any]:
    """Register an application whose logs will be triaged."""
    return await create_application_impl(name=name, description=description)


@mcp.tool()
async def delete_application(application_id: str) -> dict[str, Any]:
    """Delete an application and everything recorded for it."""
    return await delete_application_impl(application_id=application_id)


@mcp.tool()
async def app_stats(application_id: str) -> dict[str, Any]:
    """Return log, error and cluster counts for an application."""
    return await app_stats_impl(application_id=application_id)


@mcp.tool()
async def ingest_logs(application_id: str, records: list[dict[str, Any]]) -> dict[str, Any]:
    """Append structured log records for an application.

    Each record needs at least "timestamp" (ISO-8601 or epoch millis) and
    "level"; "message", "logger", "stack_trace", "class_name", "method_name",
    "file_name", "line_number", "trace_id" and "mdc_context" are optional.
    """
    return await ingest_logs_impl(application_id=application_id, records=records)


def main(argv: Sequence[str] | None = None) -> None:
    """Start the MCP server over stdio."""
    _configure_logging()
    LOGGER.debug("Starting MCP server (transport=stdio)")
    _ = argv or sys.argv[1:]
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
