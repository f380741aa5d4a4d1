"""Core data models for error clustering and triage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class LogLevel(str, Enum):
    """Log levels as written by the application appenders."""

    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"

    @classmethod
    def parse(cls, value: str) -> LogLevel:
        """Parse a level name, accepting common aliases."""
        name = (value or "").strip().upper()
        name = _LEVEL_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError as e:
            valid = ", ".join(lvl.value for lvl in cls)
            raise ValueError(f"Unknown log level '{value}'. Valid values: {valid}.") from e

    @property
    def is_error(self) -> bool:
        return self in (LogLevel.ERROR, LogLevel.FATAL)


_LEVEL_ALIASES = {
    "WARNING": "WARN",
    "ERR": "ERROR",
    "CRITICAL": "FATAL",
    "SEVERE": "FATAL",
    "PANIC": "FATAL",
}


class ClusterStatus(str, Enum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"


class Severity(str, Enum):
    """Severity tiers, ordered LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)


class ScanStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Confidence(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class SourceLocation:
    """Where a log call (or the throwing frame) lives in application code."""

    file: str | None = None
    class_name: str | None = None
    method: str | None = None
    line: int | None = None


@dataclass(frozen=True, slots=True)
class LogEvent:
    """One collected log row. Read-only to the triage pipeline."""

    timestamp: datetime
    level: LogLevel
    message: str
    logger: str | None = None
    stack_trace: str | None = None
    location: SourceLocation | None = None
    trace_id: str | None = None
    thread_name: str | None = None
    context: dict[str, Any] | None = None  # MDC / structured extras
    exception_class: str | None = None


@dataclass(frozen=True, slots=True)
class Application:
    id: str
    name: str
    description: str | None
    created_at: datetime


@dataclass(slots=True)
class ErrorCluster:
    """Aggregate of all occurrences sharing one fingerprint within an application."""

    id: str
    app_id: str
    fingerprint: str
    exception_class: str | None
    message_pattern: str | None
    primary_file: str | None
    primary_class: str | None
    primary_method: str | None
    primary_line: int | None
    occurrence_count: int
    severity: Severity
    status: ClusterStatus
    first_seen: datetime
    last_seen: datetime
    sample_message: str | None = None
    sample_stack_trace: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class StatusChange:
    """Audit record of a cluster status transition."""

    cluster_id: str
    from_status: ClusterStatus
    to_status: ClusterStatus
    reason: str  # "operator" or "recurrence"
    changed_at: datetime


@dataclass(slots=True)
class ScanRun:
    id: str
    app_id: str
    status: ScanStatus
    started_at: datetime
    completed_at: datetime | None = None
    logs_scanned: int = 0
    errors_found: int = 0
    clusters_created: int = 0
    clusters_analyzed: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class AnalysisResult:
    """One analysis of a cluster. Appended, never overwritten (except the patch addendum)."""

    id: str
    cluster_id: str
    explanation: str | None
    root_cause: str | None
    recommendation: str | None
    confidence: Confidence
    model_used: str | None
    tokens_used: int | None
    raw_response: str | None
    created_at: datetime
    patch: str | None = None
    patch_file_name: str | None = None


@dataclass(frozen=True, slots=True)
class AppStats:
    total_logs: int
    error_logs: int
    cluster_count: int
    critical_count: int
    last_error: datetime | None


@dataclass(frozen=True, slots=True)
class ScanReport:
    """Outcome of one scan, as returned to callers."""

    scan: ScanRun
    clusters_found: int
    cluster_ids: list[str] = field(default_factory=list)
    created_cluster_ids: list[str] = field(default_factory=list)
