"""Prompt construction for cluster analysis and patch generation."""

from __future__ import annotations

from ..models import AnalysisResult, ErrorCluster
from .redaction import redact_text


def _location(cluster: ErrorCluster) -> str:
    owner = cluster.primary_class or cluster.primary_file or "unknown"
    method = cluster.primary_method or "?"
    line = cluster.primary_line if cluster.primary_line is not None else "?"
    where = f"{owner}.{method}:{line}"
    if cluster.primary_file and cluster.primary_class:
        where += f" ({cluster.primary_file})"
    return where


def _cluster_block(cluster: ErrorCluster, *, redact: bool) -> str:
    sample_msg = cluster.sample_message or ""
    sample_trace = cluster.sample_stack_trace or ""
    if redact:
        sample_msg = redact_text(sample_msg)
        sample_trace = redact_text(sample_trace)
    return (
        f"Exception class: {cluster.exception_class or 'unknown'}\n"
        f"Message pattern: {cluster.message_pattern or '-'}\n"
        f"Location: {_location(cluster)}\n"
        f"Occurrences: {cluster.occurrence_count} "
        f"(first {cluster.first_seen.isoformat()}, last {cluster.last_seen.isoformat()})\n"
        f"Severity: {cluster.severity.value}\n"
        f"Sample message:\n{sample_msg or '-'}\n"
        f"Sample stack trace:\n{sample_trace or '-'}\n"
    )


def build_analysis_prompt(cluster: ErrorCluster, *, redact: bool = True) -> str:
    """Build the prompt asking for an explanation and root cause of one cluster."""
    return (
        "You are a production error triage assistant.\n"
        "You will be given one recurring application error, grouped from many log events.\n"
        "Explain what it means, identify the most likely root cause and recommend a fix.\n"
        "Return ONLY valid JSON that matches the provided schema.\n"
        "Rules:\n"
        "- Only use evidence from the error details below.\n"
        "- Set confidence to UNKNOWN if the evidence does not support a root cause.\n"
        "- Keep the recommendation concrete and actionable.\n\n"
        f"ERROR:\n{_cluster_block(cluster, redact=redact)}"
    )


def build_patch_prompt(
    cluster: ErrorCluster,
    analysis: AnalysisResult,
    *,
    source_code: str | None = None,
    redact: bool = True,
) -> str:
    """Build the prompt asking for a unified diff fixing an analysed cluster."""
    source_block = ""
    if source_code:
        source_block = f"SOURCE CODE:\n{source_code}\n"
    return (
        "You are a senior engineer writing a minimal fix for a production error.\n"
        "Return ONLY valid JSON that matches the provided schema.\n"
        "Rules:\n"
        "- `diff` must be a unified diff with ---/+++ headers and @@ hunks.\n"
        "- Change as little code as possible.\n"
        "- Only touch the file named in `file_name`.\n"
        "- Do not wrap the diff in markdown code fences.\n\n"
        f"ERROR:\n{_cluster_block(cluster, redact=redact)}\n"
        "ANALYSIS:\n"
        f"Explanation: {analysis.explanation or '-'}\n"
        f"Root cause: {analysis.root_cause or '-'}\n"
        f"Recommendation: {analysis.recommendation or '-'}\n\n"
        f"{source_block}"
    )
