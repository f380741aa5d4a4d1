"""In-process store backend (tests, demos and single-process deployments)."""

from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta

from ..clusters import ClusterCandidate, UpsertOutcome, merge_occurrence
from ..config import SeverityConfig
from ..errors import NotFoundError, PreconditionFailedError
from ..models import (
    AnalysisResult,
    Application,
    AppStats,
    ClusterStatus,
    ErrorCluster,
    LogEvent,
    ScanRun,
    ScanStatus,
    Severity,
    StatusChange,
)
from ..status import REASON_OPERATOR, REASON_RECURRENCE, transition
from ..time_window import ensure_utc, in_window, utcnow


class MemoryStore:
    """Thread-safe dict-backed store.

    ``self._lock`` guards the tables; it is held only for short reads and
    writes. Upserts additionally take a per ``(app_id, fingerprint)`` lock so
    occurrences of one fingerprint are merged strictly one at a time while
    distinct fingerprints proceed in parallel.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}

        self._apps: dict[str, Application] = {}
        self._logs: dict[str, list[LogEvent]] = defaultdict(list)
        self._clusters: dict[str, ErrorCluster] = {}
        self._cluster_index: dict[tuple[str, str], str] = {}
        self._status_changes: dict[str, list[StatusChange]] = defaultdict(list)
        self._scans: dict[str, ScanRun] = {}
        self._analyses: dict[str, list[AnalysisResult]] = defaultdict(list)
        self._leases: dict[str, tuple[str, datetime]] = {}

    # Applications

    def create_application(self, name: str, description: str | None = None) -> Application:
        app = Application(
            id=str(uuid.uuid4()), name=name, description=description, created_at=self._clock()
        )
        with self._lock:
            self._apps[app.id] = app
        return app

    def get_application(self, app_id: str) -> Application | None:
        with self._lock:
            return self._apps.get(app_id)

    def list_applications(self) -> list[Application]:
        with self._lock:
            return sorted(self._apps.values(), key=lambda a: a.created_at, reverse=True)

    def delete_application(self, app_id: str) -> bool:
        with self._lock:
            if self._apps.pop(app_id, None) is None:
                return False
            self._logs.pop(app_id, None)
            doomed = [c.id for c in self._clusters.values() if c.app_id == app_id]
            for cid in doomed:
                cluster = self._clusters.pop(cid)
                self._cluster_index.pop((app_id, cluster.fingerprint), None)
                self._status_changes.pop(cid, None)
                self._analyses.pop(cid, None)
            for key in [k for k in self._key_locks if k[0] == app_id]:
                del self._key_locks[key]
            for sid in [s.id for s in self._scans.values() if s.app_id == app_id]:
                del self._scans[sid]
            return True

    # Log events

    def insert_log_events(self, app_id: str, events: Sequence[LogEvent]) -> int:
        with self._lock:
            self._logs[app_id].extend(events)
        return len(events)

    def fetch_log_events(
        self, app_id: str, *, since: datetime, until: datetime, limit: int
    ) -> list[LogEvent]:
        with self._lock:
            rows = [e for e in self._logs.get(app_id, []) if in_window(e.timestamp, since, until)]
        rows.sort(key=lambda e: ensure_utc(e.timestamp))
        # Over the cap, keep the newest events.
        return rows[max(0, len(rows) - limit):]

    def app_stats(self, app_id: str) -> AppStats:
        with self._lock:
            logs = list(self._logs.get(app_id, []))
            clusters = [c for c in self._clusters.values() if c.app_id == app_id]
        errors = [e for e in logs if e.level.is_error]
        return AppStats(
            total_logs=len(logs),
            error_logs=len(errors),
            cluster_count=len(clusters),
            critical_count=sum(1 for c in clusters if c.severity is Severity.CRITICAL),
            last_error=max((ensure_utc(e.timestamp) for e in errors), default=None),
        )

    # Clusters

    def _key_lock(self, key: tuple[str, str]) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def upsert_cluster(
        self,
        app_id: str,
        candidate: ClusterCandidate,
        occurred_at: datetime,
        *,
        severity_cfg: SeverityConfig,
    ) -> UpsertOutcome:
        key = (app_id, candidate.fingerprint)
        # Single synchronization point for occurrence_count: read-merge-write
        # of one fingerprint never interleaves with another writer of the same key.
        with self._key_lock(key):
            with self._lock:
                cid = self._cluster_index.get(key)
                existing = self._clusters.get(cid) if cid else None

            now = self._clock()
            outcome = merge_occurrence(
                existing,
                app_id=app_id,
                candidate=candidate,
                occurred_at=ensure_utc(occurred_at),
                now=now,
                severity_cfg=severity_cfg,
            )

            with self._lock:
                self._clusters[outcome.cluster.id] = outcome.cluster
                self._cluster_index[key] = outcome.cluster.id
                if outcome.reopened and outcome.previous_status is not None:
                    self._status_changes[outcome.cluster.id].append(
                        StatusChange(
                            cluster_id=outcome.cluster.id,
                            from_status=outcome.previous_status,
                            to_status=outcome.cluster.status,
                            reason=REASON_RECURRENCE,
                            changed_at=now,
                        )
                    )
        return replace(outcome, cluster=replace(outcome.cluster))

    def get_cluster(self, cluster_id: str) -> ErrorCluster | None:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            return replace(cluster) if cluster else None

    def list_clusters(
        self, app_id: str, *, status: ClusterStatus | None = None
    ) -> list[ErrorCluster]:
        with self._lock:
            rows = [
                replace(c)
                for c in self._clusters.values()
                if c.app_id == app_id and (status is None or c.status is status)
            ]
        rows.sort(key=lambda c: c.occurrence_count, reverse=True)
        return rows

    def set_cluster_status(self, cluster_id: str, status: ClusterStatus) -> ErrorCluster:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            if cluster is None:
                raise NotFoundError(f"Cluster not found: {cluster_id}")
        # Serialize with concurrent upserts of the same fingerprint.
        with self._key_lock((cluster.app_id, cluster.fingerprint)):
            with self._lock:
                cluster = self._clusters[cluster_id]
                target = transition(cluster.status, status)
                if target is cluster.status:
                    return replace(cluster)
                now = self._clock()
                updated = replace(cluster, status=target, updated_at=now)
                self._clusters[cluster_id] = updated
                self._status_changes[cluster_id].append(
                    StatusChange(
                        cluster_id=cluster_id,
                        from_status=cluster.status,
                        to_status=target,
                        reason=REASON_OPERATOR,
                        changed_at=now,
                    )
                )
                return replace(updated)

    def status_history(self, cluster_id: str) -> list[StatusChange]:
        with self._lock:
            return list(self._status_changes.get(cluster_id, []))

    # Scan runs

    def create_scan_run(self, app_id: str, started_at: datetime) -> ScanRun:
        run = ScanRun(
            id=str(uuid.uuid4()),
            app_id=app_id,
            status=ScanStatus.RUNNING,
            started_at=ensure_utc(started_at),
        )
        with self._lock:
            self._scans[run.id] = run
        return replace(run)

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
        if status is ScanStatus.RUNNING:
            raise ValueError("finish_scan_run needs a final status")
        with self._lock:
            run = self._scans.get(scan_id)
            if run is None:
                raise NotFoundError(f"Scan run not found: {scan_id}")
            if run.status is not ScanStatus.RUNNING:
                raise PreconditionFailedError(f"Scan run {scan_id} already {run.status.value}")
            done = replace(
                run,
                status=status,
                completed_at=ensure_utc(completed_at),
                logs_scanned=logs_scanned,
                errors_found=errors_found,
                clusters_created=clusters_created,
                clusters_analyzed=clusters_analyzed,
                error_message=error_message,
            )
            self._scans[scan_id] = done
            return replace(done)

    def get_scan_run(self, scan_id: str) -> ScanRun | None:
        with self._lock:
            run = self._scans.get(scan_id)
            return replace(run) if run else None

    def list_scan_runs(self, app_id: str, *, limit: int = 10) -> list[ScanRun]:
        with self._lock:
            runs = [replace(s) for s in self._scans.values() if s.app_id == app_id]
        runs.sort(key=lambda s: s.started_at, reverse=True)
        return runs[:limit]

    # Analyses

    def append_analysis(self, result: AnalysisResult) -> AnalysisResult:
        with self._lock:
            if result.cluster_id not in self._clusters:
                raise NotFoundError(f"Cluster not found: {result.cluster_id}")
            self._analyses[result.cluster_id].append(replace(result))
        return result

    def latest_analysis(self, cluster_id: str) -> AnalysisResult | None:
        with self._lock:
            history = self._analyses.get(cluster_id)
            if not history:
                return None
            # Ties on created_at resolve to the later append.
            latest = max(enumerate(history), key=lambda p: (p[1].created_at, p[0]))[1]
            return replace(latest)

    def list_analyses(self, cluster_id: str) -> list[AnalysisResult]:
        with self._lock:
            history = list(enumerate(self._analyses.get(cluster_id, [])))
        history.sort(key=lambda p: (p[1].created_at, p[0]), reverse=True)
        return [replace(a) for _, a in history]

    def attach_patch(self, analysis_id: str, patch: str, file_name: str) -> AnalysisResult:
        with self._lock:
            for history in self._analyses.values():
                for i, a in enumerate(history):
                    if a.id == analysis_id:
                        history[i] = replace(a, patch=patch, patch_file_name=file_name)
                        return replace(history[i])
        raise NotFoundError(f"Analysis not found: {analysis_id}")

    # Leases

    def acquire_lease(self, key: str, holder: str, ttl_s: float) -> bool:
        now = self._clock()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[0] != holder and current[1] > now:
                return False
            self._leases[key] = (holder, now + timedelta(seconds=ttl_s))
            return True

    def release_lease(self, key: str, holder: str) -> None:
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[0] == holder:
                del self._leases[key]
