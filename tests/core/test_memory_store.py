from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

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
    Severity,
)
from logai_triage_server.core.store import MemoryStore, open_store

T0 = datetime(2025, 12, 30, 8, tzinfo=UTC)
CFG = SeverityConfig()


def _candidate(fp: str = "a" * 32) -> ClusterCandidate:
    return ClusterCandidate(
        fingerprint=fp,
        exception_class="java.lang.IllegalStateException",
        message_pattern="boom <num>",
    )


def _analysis(cluster_id: str, *, at: datetime, aid: str) -> AnalysisResult:
    return AnalysisResult(
        id=aid,
        cluster_id=cluster_id,
        explanation="e",
        root_cause="r",
        recommendation="fix",
        confidence=Confidence.MEDIUM,
        model_used="m",
        tokens_used=10,
        raw_response="{}",
        created_at=at,
    )


def test_open_store_memory_url() -> None:
    assert isinstance(open_store("memory://"), MemoryStore)


def test_concurrent_upserts_do_not_lose_updates(store: MemoryStore) -> None:
    app = store.create_application("svc")
    n_threads, per_thread = 8, 25
    barrier = threading.Barrier(n_threads)

    def worker() -> None:
        barrier.wait()
        for i in range(per_thread):
            store.upsert_cluster(app.id, _candidate(), T0 + timedelta(seconds=i), severity_cfg=CFG)

    threads = [threading.Thread(target=worker) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    clusters = store.list_clusters(app.id)
    assert len(clusters) == 1
    assert clusters[0].occurrence_count == n_threads * per_thread
    assert clusters[0].severity is Severity.CRITICAL


def test_resolved_cluster_reopens_and_records_history(store: MemoryStore) -> None:
    app = store.create_application("svc")
    created = store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG)
    assert created.created

    store.set_cluster_status(created.cluster.id, ClusterStatus.RESOLVED)
    out = store.upsert_cluster(app.id, _candidate(), T0 + timedelta(minutes=1), severity_cfg=CFG)

    assert out.reopened
    assert out.cluster.status is ClusterStatus.OPEN
    history = store.status_history(created.cluster.id)
    assert [(h.from_status, h.to_status, h.reason) for h in history] == [
        (ClusterStatus.OPEN, ClusterStatus.RESOLVED, "operator"),
        (ClusterStatus.RESOLVED, ClusterStatus.OPEN, "recurrence"),
    ]


def test_ignored_cluster_stays_ignored(store: MemoryStore) -> None:
    app = store.create_application("svc")
    cid = store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG).cluster.id
    store.set_cluster_status(cid, ClusterStatus.IGNORED)
    out = store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG)
    assert out.cluster.status is ClusterStatus.IGNORED
    assert out.cluster.occurrence_count == 2


def test_set_status_unknown_cluster(store: MemoryStore) -> None:
    with pytest.raises(NotFoundError):
        store.set_cluster_status("missing", ClusterStatus.RESOLVED)


def test_list_clusters_orders_by_frequency_and_filters(store: MemoryStore) -> None:
    app = store.create_application("svc")
    store.upsert_cluster(app.id, _candidate("a" * 32), T0, severity_cfg=CFG)
    for _ in range(3):
        store.upsert_cluster(app.id, _candidate("b" * 32), T0, severity_cfg=CFG)

    clusters = store.list_clusters(app.id)
    assert [c.fingerprint for c in clusters] == ["b" * 32, "a" * 32]
    store.set_cluster_status(clusters[1].id, ClusterStatus.ACKNOWLEDGED)
    acked = store.list_clusters(app.id, status=ClusterStatus.ACKNOWLEDGED)
    assert [c.fingerprint for c in acked] == ["a" * 32]


def test_scan_run_transitions_exactly_once(store: MemoryStore) -> None:
    app = store.create_application("svc")
    run = store.create_scan_run(app.id, T0)
    assert run.status is ScanStatus.RUNNING
    assert run.completed_at is None

    done = store.finish_scan_run(
        run.id,
        status=ScanStatus.COMPLETED,
        completed_at=T0,
        logs_scanned=3,
        errors_found=2,
        clusters_created=1,
        clusters_analyzed=0,
    )
    assert done.status is ScanStatus.COMPLETED
    with pytest.raises(PreconditionFailedError):
        store.finish_scan_run(
            run.id,
            status=ScanStatus.FAILED,
            completed_at=T0,
            logs_scanned=0,
            errors_found=0,
            clusters_created=0,
            clusters_analyzed=0,
            error_message="late",
        )
    assert store.get_scan_run(run.id).status is ScanStatus.COMPLETED


def test_latest_analysis_and_history(store: MemoryStore) -> None:
    app = store.create_application("svc")
    cid = store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG).cluster.id
    store.append_analysis(_analysis(cid, at=T0, aid="a1"))
    store.append_analysis(_analysis(cid, at=T0 + timedelta(minutes=1), aid="a2"))
    store.append_analysis(_analysis(cid, at=T0 + timedelta(minutes=1), aid="a3"))

    assert store.latest_analysis(cid).id == "a3"
    assert [a.id for a in store.list_analyses(cid)] == ["a3", "a2", "a1"]

    patched = store.attach_patch("a2", "--- a\n", "X.java")
    assert patched.patch_file_name == "X.java"
    assert store.latest_analysis(cid).patch is None


def test_append_analysis_needs_cluster(store: MemoryStore) -> None:
    with pytest.raises(NotFoundError):
        store.append_analysis(_analysis("missing", at=T0, aid="x"))


def test_leases_are_exclusive_until_released_or_expired() -> None:
    now = [T0]
    store = MemoryStore(clock=lambda: now[0])
    assert store.acquire_lease("analysis:c1", "h1", 60)
    assert not store.acquire_lease("analysis:c1", "h2", 60)
    assert store.acquire_lease("analysis:c2", "h2", 60)

    store.release_lease("analysis:c1", "h2")  # not the holder
    assert not store.acquire_lease("analysis:c1", "h2", 60)

    now[0] = T0 + timedelta(seconds=61)
    assert store.acquire_lease("analysis:c1", "h2", 60)
    store.release_lease("analysis:c1", "h2")
    assert store.acquire_lease("analysis:c1", "h3", 60)


def test_delete_application_cascades(store: MemoryStore) -> None:
    app = store.create_application("svc")
    cid = store.upsert_cluster(app.id, _candidate(), T0, severity_cfg=CFG).cluster.id
    store.create_scan_run(app.id, T0)
    store.append_analysis(_analysis(cid, at=T0, aid="a1"))

    assert store.delete_application(app.id)
    assert store.get_application(app.id) is None
    assert store.get_cluster(cid) is None
    assert store.list_scan_runs(app.id) == []
    assert store.latest_analysis(cid) is None
    assert not store.delete_application(app.id)
    assert not any(key[0] == app.id for key in store._key_locks)


def test_fetch_log_events_keeps_newest_over_cap(store: MemoryStore) -> None:
    app = store.create_application("svc")
    events = [
        LogEvent(timestamp=T0 + timedelta(minutes=i), level=LogLevel.ERROR, message=f"m{i}")
        for i in (3, 0, 4, 1, 2)
    ]
    store.insert_log_events(app.id, events)

    got = store.fetch_log_events(app.id, since=T0, until=T0 + timedelta(hours=1), limit=3)

    assert [e.message for e in got] == ["m2", "m3", "m4"]
