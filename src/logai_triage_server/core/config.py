"""Runtime configuration.

All knobs are frozen dataclasses with defaults; ``resolve_*`` helpers apply
environment overrides so operators can tune a deployment without code changes.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

DEFAULT_DANGEROUS_EXCEPTIONS: tuple[str, ...] = (
    "OutOfMemoryError",
    "StackOverflowError",
    "MemoryError",
    "RecursionError",
    "DeadlockLoserDataAccessException",
    "CannotAcquireLockException",
    "LockAcquisitionException",
    "PessimisticLockingFailureException",
)

DEFAULT_FRAMEWORK_PREFIXES: tuple[str, ...] = (
    "java.",
    "javax.",
    "jakarta.",
    "jdk.",
    "sun.",
    "com.sun.",
    "kotlin.",
    "scala.",
    "org.springframework.",
    "org.apache.",
    "org.hibernate.",
    "org.eclipse.jetty.",
    "org.slf4j.",
    "ch.qos.logback.",
    "com.fasterxml.",
    "io.netty.",
    "reactor.",
    "feign.",
    "com.zaxxer.",
)

DEFAULT_FRAMEWORK_PATH_MARKERS: tuple[str, ...] = (
    "site-packages/",
    "dist-packages/",
    "/lib/python",
    "<frozen ",
)


@dataclass(frozen=True, slots=True)
class SeverityConfig:
    medium_threshold: int = 5
    high_threshold: int = 20
    critical_threshold: int = 100
    # A dangerous class is HIGH on sight and CRITICAL at this many occurrences.
    dangerous_critical_threshold: int = 20
    dangerous_exceptions: tuple[str, ...] = DEFAULT_DANGEROUS_EXCEPTIONS

    def __post_init__(self) -> None:
        if not (1 <= self.medium_threshold <= self.high_threshold <= self.critical_threshold):
            raise ValueError(
                "severity thresholds must satisfy 1 <= medium <= high <= critical"
            )
        if self.dangerous_critical_threshold < 1:
            raise ValueError("dangerous_critical_threshold must be >= 1")


@dataclass(frozen=True, slots=True)
class FingerprintConfig:
    framework_prefixes: tuple[str, ...] = DEFAULT_FRAMEWORK_PREFIXES
    framework_path_markers: tuple[str, ...] = DEFAULT_FRAMEWORK_PATH_MARKERS
    max_pattern_chars: int = 500


@dataclass(frozen=True, slots=True)
class TriageConfig:
    database_url: str = "sqlite:///logai.db"
    log_dir: str | None = None  # JSONL log source directory; None = store-backed logs
    max_events: int = 10_000
    max_lookback_hours: int = 24 * 30
    upsert_concurrency: int = 8
    max_retries: int = 3
    retry_base_delay: float = 1.0
    severity: SeverityConfig = field(default_factory=SeverityConfig)
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)


def _env_int(name: str, *, minimum: int) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _split_names(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def load_severity_config(path: str | Path) -> SeverityConfig:
    """Load severity thresholds / dangerous classes from a JSON file.

    Example::

        {"medium_threshold": 3, "dangerous_exceptions": ["OutOfMemoryError"]}
    """
    p = Path(path)
    try:
        data: dict[str, Any] = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValueError(f"Severity config not found: {p}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Severity config is not valid JSON: {p}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Severity config must be a JSON object")

    known = set(SeverityConfig.__dataclass_fields__)
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown severity config keys: {', '.join(sorted(unknown))}")

    if "dangerous_exceptions" in data:
        data["dangerous_exceptions"] = tuple(str(x) for x in data["dangerous_exceptions"])
    return SeverityConfig(**data)


def resolve_severity_config(cfg: SeverityConfig | None = None) -> SeverityConfig:
    """Return severity config with LOGAI_SEVERITY_CONFIG / LOGAI_DANGEROUS_EXCEPTIONS applied."""
    path = os.getenv("LOGAI_SEVERITY_CONFIG")
    if path:
        cfg = load_severity_config(path)
    elif cfg is None:
        cfg = SeverityConfig()

    dangerous = os.getenv("LOGAI_DANGEROUS_EXCEPTIONS")
    if dangerous is not None and dangerous != "":
        cfg = replace(cfg, dangerous_exceptions=_split_names(dangerous))
    return cfg


def resolve_triage_config(cfg: TriageConfig | None = None) -> TriageConfig:
    """Return config with optional env overrides applied."""
    if cfg is None:
        cfg = TriageConfig()

    overrides: dict[str, Any] = {}

    url = os.getenv("LOGAI_DATABASE_URL")
    if url:
        overrides["database_url"] = url
    log_dir = os.getenv("LOGAI_LOG_DIR")
    if log_dir:
        overrides["log_dir"] = log_dir

    for attr, env, minimum in (
        ("max_events", "LOGAI_MAX_EVENTS", 1),
        ("max_lookback_hours", "LOGAI_MAX_LOOKBACK_HOURS", 1),
        ("upsert_concurrency", "LOGAI_UPSERT_CONCURRENCY", 1),
        ("max_retries", "LOGAI_MAX_RETRIES", 1),
    ):
        value = _env_int(env, minimum=minimum)
        if value is not None:
            overrides[attr] = value

    overrides["severity"] = resolve_severity_config(cfg.severity)
    return replace(cfg, **overrides)
