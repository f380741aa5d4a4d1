"""Scan orchestration: one bounded pass over recent log events for one application."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from .analysis import AnalysisConfig, ReasoningClient, analyze_cluster
from .clusters import ClusterCandidate, UpsertOutcome
from .config import TriageConfig
from .errors import InputValidationError, NotFoundError, TriageError, UpstreamUnavailableError
from .fingerprint import fingerprint_event
from .models import LogEvent, ScanReport, ScanRun, ScanStatus
from .retry import acall_with_retries
from .sources.base import LogSource
from .sources.store_source import StoreLogSource
from .store.base import TriageStore
from .time_window import lookback_window, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Tally:
    logs_scanned: int = 0
    errors_found: int = 0
    clusters_created: int = 0
    clusters_analyzed: int = 0
    cluster_ids: list[str] = field(default_factory=list)
    created_cluster_ids: list[str] = field(default_factory=list)

    def record(self, outcome: UpsertOutcome) -> None:
        cid = outcome.cluster.id
        if cid not in self.cluster_ids:
            self.cluster_ids.append(cid)
        if outcome.created:
            self.clusters_created += 1
            self.created_cluster_ids.append(cid)


def validate_lookback(lookback_hours: int, *, max_hours: int) -> int:
    if isinstance(lookback_hours, bool) or not isinstance(lookback_hours, int):
        raise InputValidationError("lookback_hours must be an integer")
    if lookback_hours < 1:
        raise InputValidationError("lookback_hours must be >= 1")
    if lookback_hours > max_hours:
        raise InputValidationError(f"lookback_hours must be <= {max_hours}")
    return lookback_hours


def group_by_fingerprint(
    events: list[LogEvent], cfg: TriageConfig
) -> dict[str, list[tuple[ClusterCandidate, datetime]]]:
    """Group fingerprint-eligible events by key, preserving event order within each group."""
    groups: dict[str, list[tuple[ClusterCandidate, datetime]]] = {}
    for event in events:
        fp = fingerprint_event(event, cfg.fingerprint)
        if fp is None:
            continue
        groups.setdefault(fp.key, []).append(
            (ClusterCandidate.from_event(fp, event), event.timestamp)
        )
    return groups


async def _upsert_group(
    store: TriageStore,
    app_id: str,
    occurrences: list[tuple[ClusterCandidate, datetime]],
    *,
    cfg: TriageConfig,
    sem: asyncio.Semaphore,
    tally: _Tally,
) -> None:
    # One task per fingerprint: occurrences of the same key are applied in
    # sequence, distinct keys run concurrently up to the semaphore bound.
    async with sem:
        for candidate, occurred_at in occurrences:
            outcome = await asyncio.to_thread(
                store.upsert_cluster,
                app_id,
                candidate,
                occurred_at,
                severity_cfg=cfg.severity,
            )
            tally.record(outcome)


async def _upsert_all(
    store: TriageStore,
    app_id: str,
    groups: dict[str, list[tuple[ClusterCandidate, datetime]]],
    *,
    cfg: TriageConfig,
    tally: _Tally,
) -> None:
    sem = asyncio.Semaphore(cfg.upsert_concurrency)
    try:
        async with asyncio.TaskGroup() as tg:
            for occurrences in groups.values():
                tg.create_task(
                    _upsert_group(store, app_id, occurrences, cfg=cfg, sem=sem, tally=tally)
                )
    except BaseExceptionGroup as eg:
        raise eg.exceptions[0] from None


async def _analyze_created(
    cluster_ids: list[str],
    *,
    store: TriageStore,
    client: ReasoningClient,
    analysis_cfg: AnalysisConfig | None,
) -> int:
    analyzed = 0
    for cid in cluster_ids:
        try:
            await analyze_cluster(cid, store=store, client=client, cfg=analysis_cfg)
        except TriageError as e:
            logger.warning("Inline analysis of cluster %s failed: %s", cid, e)
            continue
        except Exception:
            logger.exception("Inline analysis of cluster %s failed", cid)
            continue
        analyzed += 1
    return analyzed


async def _finish(
    store: TriageStore,
    run: ScanRun,
    tally: _Tally,
    *,
    status: ScanStatus,
    completed_at: datetime,
    error_message: str | None = None,
) -> ScanRun:
    return await asyncio.to_thread(
        store.finish_scan_run,
        run.id,
        status=status,
        completed_at=completed_at,
        logs_scanned=tally.logs_scanned,
        errors_found=tally.errors_found,
        clusters_created=tally.clusters_created,
        clusters_analyzed=tally.clusters_analyzed,
        error_message=error_message,
    )


async def _fail(
    store: TriageStore,
    run: ScanRun,
    tally: _Tally,
    message: str,
    *,
    clock: Callable[[], datetime],
) -> None:
    try:
        await asyncio.shield(
            _finish(
                store,
                run,
                tally,
                status=ScanStatus.FAILED,
                completed_at=clock(),
                error_message=message,
            )
        )
    except Exception:
        logger.exception("Could not record failure of scan %s", run.id)


async def run_scan(
    app_id: str,
    lookback_hours: int,
    *,
    store: TriageStore,
    source: LogSource | None = None,
    cfg: TriageConfig | None = None,
    analyze: bool = False,
    client: ReasoningClient | None = None,
    analysis_cfg: AnalysisConfig | None = None,
    timeout_s: float | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> ScanReport:
    """Scan ``[now - lookback_hours, now]`` for one application.

    The scan run is recorded RUNNING up front and moves exactly once to
    COMPLETED or FAILED. Cluster upserts made before a failure stay
    committed; the failure (including timeout and cancellation) is recorded
    on the run and then propagated.
    """
    if cfg is None:
        cfg = TriageConfig()
    validate_lookback(lookback_hours, max_hours=cfg.max_lookback_hours)
    if analyze and client is None:
        raise InputValidationError("analyze=True needs a reasoning client")

    app = await asyncio.to_thread(store.get_application, app_id)
    if app is None:
        raise NotFoundError(f"Application not found: {app_id}")
    if source is None:
        source = StoreLogSource(store)

    since, until = lookback_window(lookback_hours, now=clock())
    run = await asyncio.to_thread(store.create_scan_run, app_id, until)
    logger.info(
        "Scan %s started for %s (%s, window %s .. %s)",
        run.id,
        app.name,
        app_id,
        since.isoformat(),
        until.isoformat(),
    )

    tally = _Tally()
    try:
        async with asyncio.timeout(timeout_s):
            events = await acall_with_retries(
                lambda: source.fetch_events(app_id, since=since, until=until, limit=cfg.max_events),
                what="Log fetch",
                max_attempts=cfg.max_retries,
                base_delay=cfg.retry_base_delay,
            )
            tally.logs_scanned = len(events)
            if len(events) >= cfg.max_events:
                logger.warning(
                    "Scan %s hit the %s event cap; only the newest events were scanned",
                    run.id,
                    cfg.max_events,
                )
            errors = [e for e in events if e.level.is_error]
            tally.errors_found = len(errors)

            groups = group_by_fingerprint(errors, cfg)
            await _upsert_all(store, app_id, groups, cfg=cfg, tally=tally)

            if analyze and client is not None and tally.created_cluster_ids:
                tally.clusters_analyzed = await _analyze_created(
                    tally.created_cluster_ids,
                    store=store,
                    client=client,
                    analysis_cfg=analysis_cfg,
                )
    except asyncio.CancelledError:
        await _fail(store, run, tally, "Scan cancelled before completion", clock=clock)
        logger.warning("Scan %s cancelled", run.id)
        raise
    except TimeoutError as e:
        message = f"Scan timed out after {timeout_s}s"
        await _fail(store, run, tally, message, clock=clock)
        logger.warning("Scan %s timed out", run.id)
        raise UpstreamUnavailableError(message) from e
    except Exception as e:
        await _fail(store, run, tally, str(e) or type(e).__name__, clock=clock)
        logger.error("Scan %s failed: %s", run.id, e)
        raise

    done = await _finish(
        store, run, tally, status=ScanStatus.COMPLETED, completed_at=clock()
    )
    logger.info(
        "Scan %s completed: logs=%s errors=%s clusters=%s created=%s analyzed=%s",
        done.id,
        done.logs_scanned,
        done.errors_found,
        len(tally.cluster_ids),
        done.clusters_created,
        done.clusters_analyzed,
    )
    return ScanReport(
        scan=done,
        clusters_found=len(tally.cluster_ids),
        cluster_ids=list(tally.cluster_ids),
        created_cluster_ids=list(tally.created_cluster_ids),
    )
