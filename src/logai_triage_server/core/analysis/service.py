"""Analysis workflow: one explicit, leased reasoning call per request."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from ..errors import NotFoundError
from ..leases import hold_lease
from ..models import AnalysisResult
from ..store.base import TriageStore
from ..time_window import utcnow
from .client import ReasoningClient
from .models import AnalysisConfig, AnalysisFindings, resolve_analysis_config
from .prompt import build_analysis_prompt

logger = logging.getLogger(__name__)


def analysis_lease_key(cluster_id: str) -> str:
    return f"analysis:{cluster_id}"


async def analyze_cluster(
    cluster_id: str,
    *,
    store: TriageStore,
    client: ReasoningClient,
    cfg: AnalysisConfig | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AnalysisResult:
    """Analyse one cluster and append the result to its history.

    At most one analysis per cluster runs at a time; a concurrent request
    fails fast with ConcurrencyConflictError. Nothing is persisted when the
    reasoning call fails.
    """
    cfg = resolve_analysis_config(cfg)

    cluster = await asyncio.to_thread(store.get_cluster, cluster_id)
    if cluster is None:
        raise NotFoundError(f"Cluster not found: {cluster_id}")

    async with hold_lease(store, analysis_lease_key(cluster_id), ttl_s=cfg.lease_ttl_s):
        prompt = build_analysis_prompt(cluster, redact=cfg.redact)
        logger.info("Analyzing cluster %s with %s", cluster_id, cfg.model)
        reply = await client.complete_json(prompt, AnalysisFindings)

        findings = reply.parsed
        result = AnalysisResult(
            id=str(uuid.uuid4()),
            cluster_id=cluster_id,
            explanation=findings.explanation,
            root_cause=findings.root_cause,
            recommendation=findings.recommendation,
            confidence=findings.confidence_level(),
            model_used=reply.model,
            tokens_used=reply.tokens_used,
            raw_response=reply.raw_text,
            created_at=clock(),
        )
        saved = await asyncio.to_thread(store.append_analysis, result)
        logger.info(
            "Cluster %s analysed (confidence=%s, tokens=%s)",
            cluster_id,
            saved.confidence.value,
            saved.tokens_used,
        )
        return saved
