from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from logai_triage_server.core.clusters import ClusterCandidate
from logai_triage_server.core.config import SeverityConfig
from logai_triage_server.core.errors import NotFoundError, PreconditionFailedError
from logai_triage_server.core.models import (
    AnalysisResult,
    ClusterStatus,
    Confidence,
    LogEvent,
    LogLevel,
    ScanStatus,
    SourceLocation,
)
from logai_triage_server.core.store import SqlStore, open_store

T0 = datetime(2025, 12, 30, 8, tzinfo=UTC)
CFG = SeverityConfig()


@pytest.fixture
def sql_store(tmp_path: Path):
    s = SqlStore(f"sqlite:///{tmp_path / 'triage.db'}")
    yield s
    s.close()


def _candidate(fp: str = "c" * 32) -> ClusterCandidate:
    return ClusterCandidate(
        fingerprint=fp,
        exception_class="java.lang.OutOfMemoryError",
        message_pattern="Java heap space",
        primary_file="Cache.java",
        primary_class="com.acme.Cache",
        primary_method="load",
        primary_line=7,
        sample_message="Java heap space",
    )


def test_open_store_sql_url(tmp_path: Path) -> None:
    s = open_store(f"sqlite:///{tmp_path / 'x.db'}")
    assert isinstance(s, SqlStore)
    s.close()


def test_log_events_round_trip_within_window(sql_store: SqlStore) -> None:
    app = sql_store.create_application("svc")
    events = [
        LogEvent(
            timestamp=T0 + timedelta(minutes=i),
            level=LogLevel.ERROR if i % 2 else LogLevel.INFO,
            message=f"m{i}",
            location=SourceLocation(file="A.java", class_name="a.A", method="m", line=i),
            context={"traceId": f"t{i}"},
        )
        for i in range(5)
    ]
    assert sql_store.insert_log_events(app.id, events) == 5

    got = sql_store.fetch_log_events(
        app.id, since=T0 + timedelta(minutes=1), until=T0 + timedelta(minutes=3), limit=10
    )
    assert [e.message for e in got] == ["m1", "m2", "m3"]
    assert got[0].timestamp == T0 + timedelta(minutes=1)
    assert got[0].location == SourceLocation(file="A.java", class_name="a.A", method="m", line=1)
    assert got[0].context == {"traceId": "t1"}

    capped = sql_store.fetch_log_events(app.id, since=T0, until=T0 + timedelta(hours=1), limit=2)
    assert [e.message for e in capped] == ["m3", "m4"]

    stats = sql_store.app_stats(app.id)
    assert (stats.total_logs, stats.error_logs) == (5, 2)
    assert stats.last_error == T0 + timedelta(minutes=3)


def test_upsert_counts_and_severity(sql_store: SqlStore) -> None:
    app = sql_store.create_application("svc")
    first = sql_store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG)
    assert first.created
    assert first.cluster.severity.value == "HIGH"  # dangerous class

    for i in range(1, 20):
        out = sql_store.upsert_cluster(
            app.id, _candidate(), T0 + timedelta(seconds=i), severity_cfg=CFG
        )
    assert not out.created
    assert out.cluster.occurrence_count == 20
    assert out.cluster.severity.value == "CRITICAL"
    assert out.cluster.first_seen == T0
    assert out.cluster.last_seen == T0 + timedelta(seconds=19)

    older = sql_store.upsert_cluster(app.id, _candidate(), T0 - timedelta(hours=1), severity_cfg=CFG)
    assert older.cluster.last_seen == T0 + timedelta(seconds=19)
    assert older.cluster.first_seen == T0


def test_concurrent_upserts_same_fingerprint(sql_store: SqlStore) -> None:
    app = sql_store.create_application("svc")
    n_threads, per_thread = 4, 10
    barrier = threading.Barrier(n_threads)
    errors: list[BaseException] = []

    def worker() -> None:
        barrier.wait()
        try:
            for _ in range(per_thread):
                sql_store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG)
        except BaseException as e:  # surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    clusters = sql_store.list_clusters(app.id)
    assert len(clusters) == 1
    assert clusters[0].occurrence_count == n_threads * per_thread


def test_reopen_resolved_but_not_ignored(sql_store: SqlStore) -> None:
    app = sql_store.create_application("svc")
    resolved = sql_store.upsert_cluster(app.id, _candidate("r" * 32), T0, severity_cfg=CFG).cluster
    ignored = sql_store.upsert_cluster(app.id, _candidate("i" * 32), T0, severity_cfg=CFG).cluster
    sql_store.set_cluster_status(resolved.id, ClusterStatus.RESOLVED)
    sql_store.set_cluster_status(ignored.id, ClusterStatus.IGNORED)

    out_r = sql_store.upsert_cluster(app.id, _candidate("r" * 32), T0, severity_cfg=CFG)
    out_i = sql_store.upsert_cluster(app.id, _candidate("i" * 32), T0, severity_cfg=CFG)

    assert out_r.reopened and out_r.cluster.status is ClusterStatus.OPEN
    assert not out_i.reopened and out_i.cluster.status is ClusterStatus.IGNORED
    reasons = [h.reason for h in sql_store.status_history(resolved.id)]
    assert reasons == ["operator", "recurrence"]


def test_scan_runs(sql_store: SqlStore) -> None:
    app = sql_store.create_application("svc")
    run = sql_store.create_scan_run(app.id, T0)
    failed = sql_store.finish_scan_run(
        run.id,
        status=ScanStatus.FAILED,
        completed_at=T0 + timedelta(seconds=5),
        logs_scanned=0,
        errors_found=0,
        clusters_created=0,
        clusters_analyzed=0,
        error_message="Log directory not found",
    )
    assert failed.status is ScanStatus.FAILED
    assert failed.error_message == "Log directory not found"
    with pytest.raises(PreconditionFailedError):
        sql_store.finish_scan_run(
            run.id,
            status=ScanStatus.COMPLETED,
            completed_at=T0,
            logs_scanned=1,
            errors_found=1,
            clusters_created=1,
            clusters_analyzed=0,
        )
    assert [r.id for r in sql_store.list_scan_runs(app.id)] == [run.id]


def test_analyses_append_and_patch(sql_store: SqlStore) -> None:
    app = sql_store.create_application("svc")
    cid = sql_store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG).cluster.id
    for i, aid in enumerate(("a1", "a2")):
        sql_store.append_analysis(
            AnalysisResult(
                id=aid,
                cluster_id=cid,
                explanation="e",
                root_cause="r",
                recommendation="x",
                confidence=Confidence.HIGH,
                model_used="m",
                tokens_used=5,
                raw_response="{}",
                created_at=T0 + timedelta(minutes=i),
            )
        )
    assert sql_store.latest_analysis(cid).id == "a2"
    assert len(sql_store.list_analyses(cid)) == 2

    patched = sql_store.attach_patch("a2", "--- a/X\n+++ b/X\n", "X.java")
    assert patched.patch_file_name == "X.java"
    assert sql_store.latest_analysis(cid).patch == "--- a/X\n+++ b/X\n"
    with pytest.raises(NotFoundError):
        sql_store.attach_patch("missing", "", "")


def test_leases(tmp_path: Path) -> None:
    now = [T0]
    s = SqlStore(f"sqlite:///{tmp_path / 'lease.db'}", clock=lambda: now[0])
    try:
        assert s.acquire_lease("analysis:c", "h1", 30)
        assert not s.acquire_lease("analysis:c", "h2", 30)
        now[0] = T0 + timedelta(seconds=31)
        assert s.acquire_lease("analysis:c", "h2", 30)
        s.release_lease("analysis:c", "h2")
        assert s.acquire_lease("analysis:c", "h3", 30)
    finally:
        s.close()


def test_delete_application_cascades(sql_store: SqlStore) -> None:
    app = sql_store.create_application("svc")
    cid = sql_store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG).cluster.id
    assert sql_store.delete_application(app.id)
    assert sql_store.get_cluster(cid) is None
    assert sql_store.list_applications() == []
