"""Patch workflow: turn the current analysis into a validated unified diff."""

from __future__ import annotations

import asyncio
import logging
import re

from ..errors import InvalidArtifactError, NotFoundError, PreconditionFailedError
from ..leases import hold_lease
from ..models import AnalysisResult, ErrorCluster
from ..store.base import TriageStore
from .client import ReasoningClient
from .models import AnalysisConfig, PatchProposal, resolve_analysis_config
from .prompt import build_patch_prompt

logger = logging.getLogger(__name__)

DEFAULT_PATCH_FILE_NAME = "fix.diff"

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)
_NEW_FILE_RE = re.compile(r"^\+\+\+ (?:b/)?(\S+)", re.MULTILINE)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if present."""
    m = _FENCE_RE.match(text.strip())
    return m.group(1) if m else text


def is_valid_diff(text: str) -> bool:
    """Check unified-diff shape: header pair, a hunk marker and a changed line.

    Inside a hunk, ``---``/``+++`` lines are removals/additions; a ``--- `` line
    directly followed by ``+++ `` starts the next file section.
    """
    if not text or not text.strip():
        return False

    lines = text.splitlines()
    has_old = has_new = has_hunk = has_change = False
    in_hunk = False
    for i, line in enumerate(lines):
        next_line = lines[i + 1] if i + 1 < len(lines) else ""
        if line.startswith("@@"):
            in_hunk = has_hunk = True
        elif in_hunk and not (line.startswith("--- ") and next_line.startswith("+++ ")):
            if line.startswith(("+", "-")):
                has_change = True
        elif line.startswith("---"):
            has_old = True
            in_hunk = False
        elif line.startswith("+++"):
            has_new = True
    return has_old and has_new and has_hunk and has_change


def patch_file_name(diff: str, proposal: PatchProposal, cluster: ErrorCluster) -> str:
    if proposal.file_name and proposal.file_name.strip():
        return proposal.file_name.strip()
    m = _NEW_FILE_RE.search(diff)
    if m and m.group(1) != "/dev/null":
        return m.group(1)
    if cluster.primary_file:
        return cluster.primary_file
    return DEFAULT_PATCH_FILE_NAME


def patch_lease_key(cluster_id: str) -> str:
    return f"patch:{cluster_id}"


async def generate_patch(
    cluster_id: str,
    source_code: str | None = None,
    *,
    store: TriageStore,
    client: ReasoningClient,
    cfg: AnalysisConfig | None = None,
) -> AnalysisResult:
    """Generate a patch for a cluster and attach it to its current analysis."""
    cfg = resolve_analysis_config(cfg)

    cluster = await asyncio.to_thread(store.get_cluster, cluster_id)
    if cluster is None:
        raise NotFoundError(f"Cluster not found: {cluster_id}")

    analysis = await asyncio.to_thread(store.latest_analysis, cluster_id)
    if analysis is None:
        raise PreconditionFailedError(
            f"Cluster {cluster_id} has no analysis; analyze before patching"
        )

    if source_code is not None and len(source_code) > cfg.max_source_chars:
        logger.warning(
            "Source code for cluster %s truncated to %s chars", cluster_id, cfg.max_source_chars
        )
        source_code = source_code[: cfg.max_source_chars]

    async with hold_lease(store, patch_lease_key(cluster_id), ttl_s=cfg.lease_ttl_s):
        prompt = build_patch_prompt(
            cluster, analysis, source_code=source_code, redact=cfg.redact
        )
        reply = await client.complete_json(prompt, PatchProposal)

        diff = strip_code_fences(reply.parsed.diff)
        if not is_valid_diff(diff):
            raise InvalidArtifactError(
                f"Generated patch for cluster {cluster_id} is not a valid unified diff"
            )
        if not diff.endswith("\n"):
            diff += "\n"

        file_name = patch_file_name(diff, reply.parsed, cluster)
        saved = await asyncio.to_thread(store.attach_patch, analysis.id, diff, file_name)
        logger.info("Patch for cluster %s attached to analysis %s", cluster_id, analysis.id)
        return saved
