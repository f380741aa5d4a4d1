"""MCP resource registry.

Resources are addressable by URI and can be fetched by the MCP client on demand.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any

from mcp.server.fastmcp import FastMCP

from logai_triage_server.core.analysis import AnalysisFindings, PatchProposal
from logai_triage_server.tools.triage import get_services


def _format_cluster(cluster_id: str) -> str:
    """Render a cluster and its current analysis as Markdown."""
    store = get_services().store
    cluster = store.get_cluster(cluster_id)
    if cluster is None:
        raise ValueError(f"Cluster not found: {cluster_id}")
    analysis = store.latest_analysis(cluster_id)

    where = ".".join(p for p in (cluster.primary_class, cluster.primary_method) if p) or "unknown"
    if cluster.primary_line is not None:
        where += f":{cluster.primary_line}"
    lines = [
        f"# {cluster.exception_class or 'Unknown error'}",
        "",
        f"- id: {cluster.id}",
        f"- status: {cluster.status.value}",
        f"- severity: {cluster.severity.value}",
        f"- occurrences: {cluster.occurrence_count}",
        f"- first seen: {cluster.first_seen.isoformat()}",
        f"- last seen: {cluster.last_seen.isoformat()}",
        f"- location: {where} ({cluster.primary_file or '-'})",
        f"- message pattern: {cluster.message_pattern or '-'}",
        "",
        "## Sample",
        "",
        "```",
        cluster.sample_message or "",
        cluster.sample_stack_trace or "",
        "```",
    ]
    if analysis is None:
        lines += ["", "## Analysis", "", "Not analysed yet."]
    else:
        lines += [
            "",
            "## Analysis",
            "",
            f"Confidence: {analysis.confidence.value} ({analysis.model_used or 'unknown model'})",
            "",
            f"**Explanation.** {analysis.explanation or '-'}",
            "",
            f"**Root cause.** {analysis.root_cause or '-'}",
            "",
            f"**Recommendation.** {analysis.recommendation or '-'}",
        ]
        if analysis.patch:
            lines += ["", f"## Patch ({analysis.patch_file_name})", "", "```diff", analysis.patch, "```"]
    return "\n".join(lines) + "\n"


def register_resources(mcp: FastMCP) -> None:
    """Register resource handlers on the MCP server."""

    @mcp.resource("app://logai-triage/help")
    def help_resource() -> str:
        """Return a short list of available resource URIs."""
        return (
            "Resources:\n"
            "- app://logai-triage/help\n"
            "- app://logai-triage/config/severity\n"
            "- app://logai-triage/schemas/analysis\n"
            "- app://logai-triage/schemas/patch\n"
            "- cluster://{cluster_id} (cluster details with current analysis)\n"
            "\nWorkflow: create_application -> ingest_logs -> scan -> analyze -> generate_patch\n"
        )

    @mcp.resource("app://logai-triage/config/severity")
    def severity_config() -> dict[str, Any]:
        """Return the effective severity thresholds and dangerous exception list."""
        cfg = get_services().cfg.severity
        out = asdict(cfg)
        out["dangerous_exceptions"] = list(cfg.dangerous_exceptions)
        return out

    @mcp.resource("app://logai-triage/schemas/analysis")
    def analysis_schema() -> dict[str, Any]:
        """Return the JSON schema for analysis replies."""
        return AnalysisFindings.model_json_schema()

    @mcp.resource("app://logai-triage/schemas/patch")
    def patch_schema() -> dict[str, Any]:
        """Return the JSON schema for patch replies."""
        return PatchProposal.model_json_schema()

    @mcp.resource("cluster://{cluster_id}")
    async def cluster_resource(cluster_id: str) -> str:
        """Return one cluster with its current analysis as Markdown."""
        return await asyncio.to_thread(_format_cluster, cluster_id)
