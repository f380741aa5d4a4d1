"""Store interface.

The durable store is external to the triage core; this protocol is the CRUD
surface the workflows rely on. Two backends ship with the package: an
in-process :class:`~.memory.MemoryStore` and a SQLAlchemy-backed
:class:`~.sql.SqlStore`.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from ..clusters import ClusterCandidate, UpsertOutcome
from ..config import SeverityConfig
from ..models import (
    AnalysisResult,
    Application,
    AppStats,
    ClusterStatus,
    ErrorCluster,
    LogEvent,
    ScanRun,
    ScanStatus,
    StatusChange,
)


class TriageStore(Protocol):
    # Applications

    def create_application(self, name: str, description: str | None = None) -> Application: ...

    def get_application(self, app_id: str) -> Application | None: ...

    def list_applications(self) -> list[Application]: ...

    def delete_application(self, app_id: str) -> bool:
        """Delete an application and everything recorded for it."""
        ...

    # Log events

    def insert_log_events(self, app_id: str, events: Sequence[LogEvent]) -> int: ...

    def fetch_log_events(
        self, app_id: str, *, since: datetime, until: datetime, limit: int
    ) -> list[LogEvent]:
        """Events with since <= timestamp <= until, oldest first, at most ``limit``."""
        ...

    def app_stats(self, app_id: str) -> AppStats: ...

    # Clusters

    def upsert_cluster(
        self,
        app_id: str,
        candidate: ClusterCandidate,
        occurred_at: datetime,
        *,
        severity_cfg: SeverityConfig,
    ) -> UpsertOutcome:
        """Insert or merge one occurrence. Must not lose updates under concurrency."""
        ...

    def get_cluster(self, cluster_id: str) -> ErrorCluster | None: ...

    def list_clusters(
        self, app_id: str, *, status: ClusterStatus | None = None
    ) -> list[ErrorCluster]:
        """Clusters for an app, most frequent first."""
        ...

    def set_cluster_status(self, cluster_id: str, status: ClusterStatus) -> ErrorCluster: ...

    def status_history(self, cluster_id: str) -> list[StatusChange]: ...

    # Scan runs

    def create_scan_run(self, app_id: str, started_at: datetime) -> ScanRun: ...

    def finish_scan_run(
        self,
        scan_id: str,
        *,
        status: ScanStatus,
        completed_at: datetime,
        logs_scanned: int,
        errors_found: int,
        clusters_created: int,
        clusters_analyzed: int,
        error_message: str | None = None,
    ) -> ScanRun:
        """Move a RUNNING scan to its final state. Finished scans are immutable."""
        ...

    def get_scan_run(self, scan_id: str) -> ScanRun | None: ...

    def list_scan_runs(self, app_id: str, *, limit: int = 10) -> list[ScanRun]: ...

    # Analyses

    def append_analysis(self, result: AnalysisResult) -> AnalysisResult: ...

    def latest_analysis(self, cluster_id: str) -> AnalysisResult | None: ...

    def list_analyses(self, cluster_id: str) -> list[AnalysisResult]: ...

    def attach_patch(self, analysis_id: str, patch: str, file_name: str) -> AnalysisResult: ...

    # Leases

    def acquire_lease(self, key: str, holder: str, ttl_s: float) -> bool: ...

    def release_lease(self, key: str, holder: str) -> None: ...
