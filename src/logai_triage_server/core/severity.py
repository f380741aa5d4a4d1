"""Severity scoring for error clusters."""

from __future__ import annotations

from .config import SeverityConfig
from .models import Severity


def simple_class_name(exception_class: str) -> str:
    """Strip package/module qualifiers and inner-class markers."""
    name = exception_class.strip().rsplit(".", 1)[-1]
    return name.rsplit("$", 1)[-1]


def is_dangerous(exception_class: str | None, cfg: SeverityConfig) -> bool:
    """True when the class matches the dangerous list by full or simple name."""
    if not exception_class:
        return False
    full = exception_class.strip()
    simple = simple_class_name(full)
    for entry in cfg.dangerous_exceptions:
        if entry == full or entry == simple:
            return True
    return False


def score_severity(
    occurrence_count: int,
    exception_class: str | None,
    *,
    previous: Severity | None = None,
    cfg: SeverityConfig | None = None,
) -> Severity:
    """Derive the severity tier; never lower than ``previous``."""
    cfg = cfg or SeverityConfig()
    dangerous = is_dangerous(exception_class, cfg)

    if occurrence_count >= cfg.critical_threshold or (
        dangerous and occurrence_count >= cfg.dangerous_critical_threshold
    ):
        tier = Severity.CRITICAL
    elif occurrence_count >= cfg.high_threshold or dangerous:
        tier = Severity.HIGH
    elif occurrence_count >= cfg.medium_threshold:
        tier = Severity.MEDIUM
    else:
        tier = Severity.LOW

    if previous is not None and previous.rank > tier.rank:
        return previous
    return tier
