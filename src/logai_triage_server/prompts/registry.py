"""MCP prompt registry.

Prompts are predefined conversation/workflow templates that the client can invoke explicitly.
"""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.prompts.base import Message, UserMessage

_SYSTEM_TRIAGE = (
    "You are a senior incident triage assistant for backend services. "
    "Provide concise, evidence-based summaries from error cluster data. "
    "Do not invent details; if the evidence is insufficient, say so."
)


def _cluster_reference(cluster_id: str) -> Message:
    return UserMessage(
        f"Cluster details (with current analysis, if any) are available as resource "
        f"cluster://{cluster_id}."
    )


def register_prompts(mcp: FastMCP) -> None:
    """Register prompt templates on the MCP server."""

    @mcp.prompt()
    def triage_cluster(cluster_id: str, with_patch: bool = False) -> list[Message]:
        """Build a prompt that walks one error cluster through triage."""
        steps = [
            "- Call get_cluster first to read occurrences, severity, status and any analysis.",
            "- If the cluster has no analysis, call analyze once. If it returns error code "
            "\"busy\", another analysis is running: wait and call get_cluster again instead "
            "of retrying analyze.",
        ]
        if with_patch:
            steps.append(
                "- Then call generate_patch. If it returns \"invalid_artifact\", report that the "
                "generated diff was rejected; the analysis itself is still valid."
            )
        steps.append(
            "- Use only tool output or the cluster resource for evidence; do not fabricate "
            "stack frames."
        )
        return [
            UserMessage(
                f"{_SYSTEM_TRIAGE}\n\n"
                f"Triage error cluster {cluster_id}. Follow this workflow:\n"
                + "\n".join(steps)
                + "\n\nReturn this structure:\n"
                "1) What is failing (1-3 bullets; exception class and location)\n"
                "2) Impact (occurrences, first/last seen, severity)\n"
                "3) Root cause (1-2 sentences; say 'Unknown' if unclear)\n"
                "4) Next actions (2-4 bullets; suggest a status change if appropriate)\n"
            ),
            _cluster_reference(cluster_id),
        ]

    @mcp.prompt()
    def create_bug_report(
        cluster_id: str,
        title: str = "",
        steps: str = "",
    ) -> list[Message]:
        """Build a prompt that produces a Markdown bug report for a cluster."""
        heading = f"Title: {title}\n\n" if title else ""
        return [
            UserMessage(
                "Create a high-quality bug report in Markdown. Redact secrets, credentials, "
                "or PII if present.\n\n"
                f"{heading}"
                "Please create a bug report with sections:\n"
                "- Summary\n"
                "- Environment (if missing, say 'unknown')\n"
                "- Steps to Reproduce\n"
                "- Expected vs Actual\n"
                "- Evidence (sample message and stack trace)\n"
                "- Frequency (occurrences, first/last seen)\n"
                "- Suspected Cause\n"
                "- Suggested Fix / Next Actions (include the patch if one exists)\n\n"
                f"Steps provided:\n{steps}\n\n"
                f"Use tool get_cluster with cluster_id={cluster_id}.\n"
            ),
            _cluster_reference(cluster_id),
        ]
