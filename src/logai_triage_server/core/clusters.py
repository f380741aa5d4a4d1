"""Cluster upsert/merge rules.

Store backends call :func:`merge_occurrence` (or mirror it with atomic SQL)
inside their serialized section for one ``(app_id, fingerprint)`` key.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime

from .config import SeverityConfig
from .fingerprint import Fingerprint
from .models import ClusterStatus, ErrorCluster, LogEvent
from .severity import score_severity
from .status import status_after_occurrence

MAX_SAMPLE_CHARS = 8000


@dataclass(frozen=True, slots=True)
class ClusterCandidate:
    """Fields proposed for a cluster by one occurrence."""

    fingerprint: str
    exception_class: str | None
    message_pattern: str | None
    primary_file: str | None = None
    primary_class: str | None = None
    primary_method: str | None = None
    primary_line: int | None = None
    sample_message: str | None = None
    sample_stack_trace: str | None = None

    @classmethod
    def from_event(cls, fp: Fingerprint, event: LogEvent) -> ClusterCandidate:
        return cls(
            fingerprint=fp.key,
            exception_class=fp.exception_class,
            message_pattern=fp.message_pattern,
            primary_file=fp.primary_file,
            primary_class=fp.primary_class,
            primary_method=fp.primary_method,
            primary_line=fp.primary_line,
            sample_message=(event.message or None),
            sample_stack_trace=(event.stack_trace or "")[:MAX_SAMPLE_CHARS] or None,
        )


@dataclass(frozen=True, slots=True)
class UpsertOutcome:
    cluster: ErrorCluster
    created: bool
    reopened: bool = False
    previous_status: ClusterStatus | None = None


def new_cluster_id() -> str:
    return str(uuid.uuid4())


def merge_occurrence(
    existing: ErrorCluster | None,
    *,
    app_id: str,
    candidate: ClusterCandidate,
    occurred_at: datetime,
    now: datetime,
    severity_cfg: SeverityConfig,
) -> UpsertOutcome:
    """Fold one occurrence into a cluster (or create it).

    Not safe on its own under concurrency: the caller must hold the per-key
    serialization for ``(app_id, candidate.fingerprint)``.
    """
    if existing is None:
        cluster = ErrorCluster(
            id=new_cluster_id(),
            app_id=app_id,
            fingerprint=candidate.fingerprint,
            exception_class=candidate.exception_class,
            message_pattern=candidate.message_pattern,
            primary_file=candidate.primary_file,
            primary_class=candidate.primary_class,
            primary_method=candidate.primary_method,
            primary_line=candidate.primary_line,
            occurrence_count=1,
            severity=score_severity(1, candidate.exception_class, cfg=severity_cfg),
            status=ClusterStatus.OPEN,
            first_seen=occurred_at,
            last_seen=occurred_at,
            sample_message=candidate.sample_message,
            sample_stack_trace=candidate.sample_stack_trace,
            created_at=now,
            updated_at=now,
        )
        return UpsertOutcome(cluster=cluster, created=True)

    count = existing.occurrence_count + 1
    status = status_after_occurrence(existing.status)
    cluster = replace(
        existing,
        occurrence_count=count,
        last_seen=max(existing.last_seen, occurred_at),
        severity=score_severity(
            count, existing.exception_class, previous=existing.severity, cfg=severity_cfg
        ),
        status=status,
        updated_at=now,
    )
    return UpsertOutcome(
        cluster=cluster,
        created=False,
        reopened=status is not existing.status,
        previous_status=existing.status,
    )
