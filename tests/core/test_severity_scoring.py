from __future__ import annotations

import pytest

from logai_triage_server.core.config import SeverityConfig
from logai_triage_server.core.models import Severity
from logai_triage_server.core.severity import is_dangerous, score_severity


@pytest.mark.parametrize(
    ("count", "expected"),
    [
        (1, Severity.LOW),
        (4, Severity.LOW),
        (5, Severity.MEDIUM),
        (19, Severity.MEDIUM),
        (20, Severity.HIGH),
        (99, Severity.HIGH),
        (100, Severity.CRITICAL),
    ],
)
def test_count_thresholds(count: int, expected: Severity) -> None:
    assert score_severity(count, "java.lang.IllegalStateException") is expected


def test_dangerous_class_is_high_then_critical() -> None:
    assert score_severity(1, "java.lang.OutOfMemoryError") is Severity.HIGH
    assert score_severity(19, "java.lang.OutOfMemoryError") is Severity.HIGH
    assert score_severity(20, "java.lang.OutOfMemoryError") is Severity.CRITICAL


def test_dangerous_matches_full_or_simple_name() -> None:
    cfg = SeverityConfig(dangerous_exceptions=("com.acme.PoisonPill", "DeadlockError"))
    assert is_dangerous("com.acme.PoisonPill", cfg)
    assert is_dangerous("org.db.DeadlockError", cfg)
    assert is_dangerous("org.db.Outer$DeadlockError", cfg)
    assert not is_dangerous("org.other.PoisonPill", cfg)
    assert not is_dangerous(None, cfg)


def test_thresholds_are_configurable() -> None:
    cfg = SeverityConfig(medium_threshold=2, high_threshold=3, critical_threshold=4)
    assert score_severity(2, None, cfg=cfg) is Severity.MEDIUM
    assert score_severity(4, None, cfg=cfg) is Severity.CRITICAL


def test_invalid_thresholds_rejected() -> None:
    with pytest.raises(ValueError):
        SeverityConfig(medium_threshold=50, high_threshold=20)


def test_never_lower_than_previous() -> None:
    assert score_severity(1, None, previous=Severity.HIGH) is Severity.HIGH


def test_repeated_scoring_never_decreases() -> None:
    previous = None
    for count in range(1, 150):
        tier = score_severity(count, "IllegalStateException", previous=previous)
        if previous is not None:
            assert tier.rank >= previous.rank
        previous = tier
    assert previous is Severity.CRITICAL
