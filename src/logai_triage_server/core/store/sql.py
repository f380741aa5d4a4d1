"""Relational store backend (SQLAlchemy 2.0 ORM).

Timestamps are stored as naive UTC datetimes (portable across SQLite and
server databases) and converted back to timezone-aware UTC on read.

Concurrency notes
-----------------
``occurrence_count`` is only ever changed with an in-database increment
(``SET occurrence_count = occurrence_count + 1``); the row lock taken by that
UPDATE also covers the re-open compare-and-set and the severity recompute
that follow in the same transaction. Two writers racing to create the same
cluster are resolved by the ``(app_id, fingerprint)`` unique constraint: the
loser retries and merges into the winner's row.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from ..clusters import ClusterCandidate, UpsertOutcome, merge_occurrence
from ..config import SeverityConfig
from ..errors import NotFoundError, PreconditionFailedError
from ..models import (
    AnalysisResult,
    Application,
    AppStats,
    ClusterStatus,
    Confidence,
    ErrorCluster,
    LogEvent,
    LogLevel,
    ScanRun,
    ScanStatus,
    Severity,
    SourceLocation,
    StatusChange,
)
from ..severity import score_severity
from ..status import REASON_OPERATOR, REASON_RECURRENCE, status_after_occurrence, transition
from ..time_window import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_UPSERT_ATTEMPTS = 3
_ERROR_LEVELS = (LogLevel.ERROR.value, LogLevel.FATAL.value)


class Base(DeclarativeBase):
    pass


class ApplicationRow(Base):
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class LogEntryRow(Base):
    __tablename__ = "log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    app_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    level: Mapped[str] = mapped_column(String(8), index=True, nullable=False)
    logger: Mapped[str | None] = mapped_column(String(512), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    exception_class: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    line_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    class_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    method_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    thread_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    mdc_context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


class ClusterRow(Base):
    __tablename__ = "error_clusters"
    __table_args__ = (UniqueConstraint("app_id", "fingerprint", name="uq_cluster_fingerprint"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    app_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    exception_class: Mapped[str | None] = mapped_column(String(512), nullable=True)
    message_pattern: Mapped[str | None] = mapped_column(Text, nullable=True)
    primary_file: Mapped[str | None] = mapped_column(String(512), nullable=True)
    primary_class: Mapped[str | None] = mapped_column(String(512), nullable=True)
    primary_method: Mapped[str | None] = mapped_column(String(256), nullable=True)
    primary_line: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    first_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    sample_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sample_stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class StatusChangeRow(Base):
    __tablename__ = "cluster_status_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cluster_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ScanRunRow(Base):
    __tablename__ = "scan_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    app_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    logs_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clusters_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clusters_analyzed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class AnalysisRow(Base):
    __tablename__ = "analysis_results"

    # seq orders analyses created within the same clock tick.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    cluster_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    root_cause: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommendation: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[str] = mapped_column(String(16), nullable=False)
    model_used: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    raw_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    patch: Mapped[str | None] = mapped_column(Text, nullable=True)
    patch_file_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)


class LeaseRow(Base):
    __tablename__ = "leases"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


def _db_dt(dt: datetime) -> datetime:
    return ensure_utc(dt).replace(tzinfo=None)


def _py_dt(dt: datetime | None) -> datetime | None:
    return dt.replace(tzinfo=UTC) if dt is not None else None


def _app(row: ApplicationRow) -> Application:
    return Application(
        id=row.id, name=row.name, description=row.description, created_at=_py_dt(row.created_at)
    )


def _event(row: LogEntryRow) -> LogEvent:
    location = None
    if row.file_name or row.class_name or row.method_name or row.line_number is not None:
        location = SourceLocation(
            file=row.file_name,
            class_name=row.class_name,
            method=row.method_name,
            line=row.line_number,
        )
    return LogEvent(
        timestamp=_py_dt(row.timestamp),
        level=LogLevel(row.level),
        message=row.message or "",
        logger=row.logger,
        stack_trace=row.stack_trace,
        location=location,
        trace_id=row.trace_id,
        thread_name=row.thread_name,
        context=row.mdc_context,
        exception_class=row.exception_class,
    )


def _cluster(row: ClusterRow) -> ErrorCluster:
    return ErrorCluster(
        id=row.id,
        app_id=row.app_id,
        fingerprint=row.fingerprint,
        exception_class=row.exception_class,
        message_pattern=row.message_pattern,
        primary_file=row.primary_file,
        primary_class=row.primary_class,
        primary_method=row.primary_method,
        primary_line=row.primary_line,
        occurrence_count=row.occurrence_count,
        severity=Severity(row.severity),
        status=ClusterStatus(row.status),
        first_seen=_py_dt(row.first_seen),
        last_seen=_py_dt(row.last_seen),
        sample_message=row.sample_message,
        sample_stack_trace=row.sample_stack_trace,
        created_at=_py_dt(row.created_at),
        updated_at=_py_dt(row.updated_at),
    )


def _cluster_row(c: ErrorCluster) -> ClusterRow:
    return ClusterRow(
        id=c.id,
        app_id=c.app_id,
        fingerprint=c.fingerprint,
        exception_class=c.exception_class,
        message_pattern=c.message_pattern,
        primary_file=c.primary_file,
        primary_class=c.primary_class,
        primary_method=c.primary_method,
        primary_line=c.primary_line,
        occurrence_count=c.occurrence_count,
        severity=c.severity.value,
        status=c.status.value,
        first_seen=_db_dt(c.first_seen),
        last_seen=_db_dt(c.last_seen),
        sample_message=c.sample_message,
        sample_stack_trace=c.sample_stack_trace,
        created_at=_db_dt(c.created_at or c.first_seen),
        updated_at=_db_dt(c.updated_at or c.first_seen),
    )


def _scan(row: ScanRunRow) -> ScanRun:
    return ScanRun(
        id=row.id,
        app_id=row.app_id,
        status=ScanStatus(row.status),
        started_at=_py_dt(row.started_at),
        completed_at=_py_dt(row.completed_at),
        logs_scanned=row.logs_scanned,
        errors_found=row.errors_found,
        clusters_created=row.clusters_created,
        clusters_analyzed=row.clusters_analyzed,
        error_message=row.error_message,
    )


def _analysis(row: AnalysisRow) -> AnalysisResult:
    return AnalysisResult(
        id=row.id,
        cluster_id=row.cluster_id,
        explanation=row.explanation,
        root_cause=row.root_cause,
        recommendation=row.recommendation,
        confidence=Confidence(row.confidence),
        model_used=row.model_used,
        tokens_used=row.tokens_used,
        raw_response=row.raw_response,
        created_at=_py_dt(row.created_at),
        patch=row.patch,
        patch_file_name=row.patch_file_name,
    )


def _status_change(row: StatusChangeRow) -> StatusChange:
    return StatusChange(
        cluster_id=row.cluster_id,
        from_status=ClusterStatus(row.from_status),
        to_status=ClusterStatus(row.to_status),
        reason=row.reason,
        changed_at=_py_dt(row.changed_at),
    )


class SqlStore:
    """TriageStore backed by any SQLAlchemy-supported database."""

    def __init__(
        self,
        url: str = "sqlite:///logai.db",
        *,
        clock: Callable[[], datetime] = utcnow,
        create_schema: bool = True,
        echo: bool = False,
    ) -> None:
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            # Workflows call the store from worker threads.
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._clock = clock
        if create_schema:
            Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # Applications

    def create_application(self, name: str, description: str | None = None) -> Application:
        row = ApplicationRow(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            created_at=_db_dt(self._clock()),
        )
        with self._sessions.begin() as s:
            s.add(row)
        return _app(row)

    def get_application(self, app_id: str) -> Application | None:
        with self._sessions() as s:
            row = s.get(ApplicationRow, app_id)
            return _app(row) if row else None

    def list_applications(self) -> list[Application]:
        with self._sessions() as s:
            rows = s.scalars(select(ApplicationRow).order_by(ApplicationRow.created_at.desc()))
            return [_app(r) for r in rows]

    def delete_application(self, app_id: str) -> bool:
        with self._sessions.begin() as s:
            if s.get(ApplicationRow, app_id) is None:
                return False
            cluster_ids = select(ClusterRow.id).where(ClusterRow.app_id == app_id)
            s.execute(delete(AnalysisRow).where(AnalysisRow.cluster_id.in_(cluster_ids)))
            s.execute(delete(StatusChangeRow).where(StatusChangeRow.cluster_id.in_(cluster_ids)))
            s.execute(delete(ClusterRow).where(ClusterRow.app_id == app_id))
            s.execute(delete(LogEntryRow).where(LogEntryRow.app_id == app_id))
            s.execute(delete(ScanRunRow).where(ScanRunRow.app_id == app_id))
            s.execute(delete(ApplicationRow).where(ApplicationRow.id == app_id))
        logger.info("Deleted application %s and its triage data", app_id)
        return True

    # Log events

    def insert_log_events(self, app_id: str, events: Sequence[LogEvent]) -> int:
        rows = []
        for e in events:
            loc = e.location or SourceLocation()
            rows.append(
                LogEntryRow(
                    app_id=app_id,
                    timestamp=_db_dt(e.timestamp),
                    level=e.level.value,
                    logger=e.logger,
                    message=e.message,
                    stack_trace=e.stack_trace,
                    exception_class=e.exception_class,
                    file_name=loc.file,
                    line_number=loc.line,
                    class_name=loc.class_name,
                    method_name=loc.method,
                    trace_id=e.trace_id,
                    thread_name=e.thread_name,
                    mdc_context=e.context,
                )
            )
        with self._sessions.begin() as s:
            s.add_all(rows)
        return len(rows)

    def fetch_log_events(
        self, app_id: str, *, since: datetime, until: datetime, limit: int
    ) -> list[LogEvent]:
        stmt = (
            select(LogEntryRow)
            .where(
                LogEntryRow.app_id == app_id,
                LogEntryRow.timestamp >= _db_dt(since),
                LogEntryRow.timestamp <= _db_dt(until),
            )
            .order_by(LogEntryRow.timestamp.desc(), LogEntryRow.id.desc())
            .limit(limit)
        )
        with self._sessions() as s:
            newest = [_event(r) for r in s.scalars(stmt)]
        newest.reverse()
        return newest

    def app_stats(self, app_id: str) -> AppStats:
        with self._sessions() as s:
            total = s.scalar(
                select(func.count()).select_from(LogEntryRow).where(LogEntryRow.app_id == app_id)
            )
            errors, last_error = s.execute(
                select(func.count(), func.max(LogEntryRow.timestamp)).where(
                    LogEntryRow.app_id == app_id, LogEntryRow.level.in_(_ERROR_LEVELS)
                )
            ).one()
            clusters = s.scalar(
                select(func.count()).select_from(ClusterRow).where(ClusterRow.app_id == app_id)
            )
            critical = s.scalar(
                select(func.count())
                .select_from(ClusterRow)
                .where(ClusterRow.app_id == app_id, ClusterRow.severity == Severity.CRITICAL.value)
            )
        return AppStats(
            total_logs=total or 0,
            error_logs=errors or 0,
            cluster_count=clusters or 0,
            critical_count=critical or 0,
            last_error=_py_dt(last_error),
        )

    # Clusters

    def upsert_cluster(
        self,
        app_id: str,
        candidate: ClusterCandidate,
        occurred_at: datetime,
        *,
        severity_cfg: SeverityConfig,
    ) -> UpsertOutcome:
        last_err: IntegrityError | None = None
        for _ in range(_UPSERT_ATTEMPTS):
            try:
                with self._sessions.begin() as s:
                    return self._upsert_once(s, app_id, candidate, occurred_at, severity_cfg)
            except IntegrityError as e:
                # Another writer created the cluster first; merge into its row.
                last_err = e
                logger.debug("Cluster insert race on %s/%s; retrying", app_id, candidate.fingerprint)
        raise RuntimeError(
            f"Could not upsert cluster {app_id}/{candidate.fingerprint}: {last_err}"
        ) from last_err

    def _upsert_once(
        self,
        s: Session,
        app_id: str,
        candidate: ClusterCandidate,
        occurred_at: datetime,
        severity_cfg: SeverityConfig,
    ) -> UpsertOutcome:
        now = self._clock()
        occurred = _db_dt(occurred_at)
        key = (ClusterRow.app_id == app_id, ClusterRow.fingerprint == candidate.fingerprint)

        bumped = s.execute(
            update(ClusterRow)
            .where(*key)
            .values(
                occurrence_count=ClusterRow.occurrence_count + 1,
                last_seen=case((ClusterRow.last_seen < occurred, occurred), else_=ClusterRow.last_seen),
                updated_at=_db_dt(now),
            )
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 0:
            outcome = merge_occurrence(
                None,
                app_id=app_id,
                candidate=candidate,
                occurred_at=ensure_utc(occurred_at),
                now=now,
                severity_cfg=severity_cfg,
            )
            s.add(_cluster_row(outcome.cluster))
            s.flush()
            return outcome

        # The increment above holds the row lock for the rest of this transaction.
        reopened_status = status_after_occurrence(ClusterStatus.RESOLVED)
        reopened = (
            s.execute(
                update(ClusterRow)
                .where(*key, ClusterRow.status == ClusterStatus.RESOLVED.value)
                .values(status=reopened_status.value)
                .execution_options(synchronize_session=False)
            ).rowcount
            == 1
        )

        row = s.scalars(select(ClusterRow).where(*key)).one()
        severity = score_severity(
            row.occurrence_count,
            row.exception_class,
            previous=Severity(row.severity),
            cfg=severity_cfg,
        )
        if severity.value != row.severity:
            row.severity = severity.value
        if reopened:
            s.add(
                StatusChangeRow(
                    cluster_id=row.id,
                    from_status=ClusterStatus.RESOLVED.value,
                    to_status=reopened_status.value,
                    reason=REASON_RECURRENCE,
                    changed_at=_db_dt(now),
                )
            )
            logger.info("Cluster %s re-opened by a new occurrence", row.id)
        s.flush()
        cluster = _cluster(row)
        return UpsertOutcome(
            cluster=cluster,
            created=False,
            reopened=reopened,
            previous_status=ClusterStatus.RESOLVED if reopened else cluster.status,
        )

    def get_cluster(self, cluster_id: str) -> ErrorCluster | None:
        with self._sessions() as s:
            row = s.get(ClusterRow, cluster_id)
            return _cluster(row) if row else None

    def list_clusters(
        self, app_id: str, *, status: ClusterStatus | None = None
    ) -> list[ErrorCluster]:
        stmt = select(ClusterRow).where(ClusterRow.app_id == app_id)
        if status is not None:
            stmt = stmt.where(ClusterRow.status == status.value)
        stmt = stmt.order_by(ClusterRow.occurrence_count.desc())
        with self._sessions() as s:
            return [_cluster(r) for r in s.scalars(stmt)]

    def set_cluster_status(self, cluster_id: str, status: ClusterStatus) -> ErrorCluster:
        with self._sessions.begin() as s:
            row = s.scalars(
                select(ClusterRow).where(ClusterRow.id == cluster_id).with_for_update()
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Cluster not found: {cluster_id}")
            current = ClusterStatus(row.status)
            target = transition(current, status)
            if target is not current:
                now = _db_dt(self._clock())
                row.status = target.value
                row.updated_at = now
                s.add(
                    StatusChangeRow(
                        cluster_id=cluster_id,
                        from_status=current.value,
                        to_status=target.value,
                        reason=REASON_OPERATOR,
                        changed_at=now,
                    )
                )
            s.flush()
            return _cluster(row)

    def status_history(self, cluster_id: str) -> list[StatusChange]:
        stmt = (
            select(StatusChangeRow)
            .where(StatusChangeRow.cluster_id == cluster_id)
            .order_by(StatusChangeRow.id)
        )
        with self._sessions() as s:
            return [_status_change(r) for r in s.scalars(stmt)]

    # Scan runs

    def create_scan_run(self, app_id: str, started_at: datetime) -> ScanRun:
        row = ScanRunRow(
            id=str(uuid.uuid4()),
            app_id=app_id,
            status=ScanStatus.RUNNING.value,
            started_at=_db_dt(started_at),
            logs_scanned=0,
            errors_found=0,
            clusters_created=0,
            clusters_analyzed=0,
        )
        with self._sessions.begin() as s:
            s.add(row)
        return _scan(row)

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
        with self._sessions.begin() as s:
            done = s.execute(
                update(ScanRunRow)
                .where(ScanRunRow.id == scan_id, ScanRunRow.status == ScanStatus.RUNNING.value)
                .values(
                    status=status.value,
                    completed_at=_db_dt(completed_at),
                    logs_scanned=logs_scanned,
                    errors_found=errors_found,
                    clusters_created=clusters_created,
                    clusters_analyzed=clusters_analyzed,
                    error_message=error_message,
                )
                .execution_options(synchronize_session=False)
            )
            row = s.get(ScanRunRow, scan_id)
            if row is None:
                raise NotFoundError(f"Scan run not found: {scan_id}")
            if done.rowcount == 0:
                raise PreconditionFailedError(f"Scan run {scan_id} already {row.status}")
            return _scan(row)

    def get_scan_run(self, scan_id: str) -> ScanRun | None:
        with self._sessions() as s:
            row = s.get(ScanRunRow, scan_id)
            return _scan(row) if row else None

    def list_scan_runs(self, app_id: str, *, limit: int = 10) -> list[ScanRun]:
        stmt = (
            select(ScanRunRow)
            .where(ScanRunRow.app_id == app_id)
            .order_by(ScanRunRow.started_at.desc())
            .limit(limit)
        )
        with self._sessions() as s:
            return [_scan(r) for r in s.scalars(stmt)]

    # Analyses

    def append_analysis(self, result: AnalysisResult) -> AnalysisResult:
        with self._sessions.begin() as s:
            if s.get(ClusterRow, result.cluster_id) is None:
                raise NotFoundError(f"Cluster not found: {result.cluster_id}")
            s.add(
                AnalysisRow(
                    id=result.id,
                    cluster_id=result.cluster_id,
                    explanation=result.explanation,
                    root_cause=result.root_cause,
                    recommendation=result.recommendation,
                    confidence=result.confidence.value,
                    model_used=result.model_used,
                    tokens_used=result.tokens_used,
                    raw_response=result.raw_response,
                    patch=result.patch,
                    patch_file_name=result.patch_file_name,
                    created_at=_db_dt(result.created_at),
                )
            )
        return result

    def latest_analysis(self, cluster_id: str) -> AnalysisResult | None:
        stmt = (
            select(AnalysisRow)
            .where(AnalysisRow.cluster_id == cluster_id)
            .order_by(AnalysisRow.created_at.desc(), AnalysisRow.seq.desc())
            .limit(1)
        )
        with self._sessions() as s:
            row = s.scalars(stmt).first()
            return _analysis(row) if row else None

    def list_analyses(self, cluster_id: str) -> list[AnalysisResult]:
        stmt = (
            select(AnalysisRow)
            .where(AnalysisRow.cluster_id == cluster_id)
            .order_by(AnalysisRow.created_at.desc(), AnalysisRow.seq.desc())
        )
        with self._sessions() as s:
            return [_analysis(r) for r in s.scalars(stmt)]

    def attach_patch(self, analysis_id: str, patch: str, file_name: str) -> AnalysisResult:
        with self._sessions.begin() as s:
            row = s.scalars(select(AnalysisRow).where(AnalysisRow.id == analysis_id)).one_or_none()
            if row is None:
                raise NotFoundError(f"Analysis not found: {analysis_id}")
            row.patch = patch
            row.patch_file_name = file_name
            s.flush()
            return _analysis(row)

    # Leases

    def acquire_lease(self, key: str, holder: str, ttl_s: float) -> bool:
        now = self._clock()
        expires = _db_dt(now + timedelta(seconds=ttl_s))
        try:
            with self._sessions.begin() as s:
                taken = s.execute(
                    update(LeaseRow)
                    .where(
                        LeaseRow.key == key,
                        or_(LeaseRow.expires_at <= _db_dt(now), LeaseRow.holder == holder),
                    )
                    .values(holder=holder, expires_at=expires)
                    .execution_options(synchronize_session=False)
                )
                if taken.rowcount == 1:
                    return True
                if s.get(LeaseRow, key) is not None:
                    return False
                s.add(LeaseRow(key=key, holder=holder, expires_at=expires))
            return True
        except IntegrityError:
            return False

    def release_lease(self, key: str, holder: str) -> None:
        with self._sessions.begin() as s:
            s.execute(delete(LeaseRow).where(LeaseRow.key == key, LeaseRow.holder == holder))
