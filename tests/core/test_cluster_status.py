from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from logai_triage_server.core.clusters import ClusterCandidate, merge_occurrence
from logai_triage_server.core.config import SeverityConfig
from logai_triage_server.core.models import ClusterStatus, Severity
from logai_triage_server.core.status import parse_status, status_after_occurrence, transition

T0 = datetime(2025, 12, 30, 8, tzinfo=UTC)
CANDIDATE = ClusterCandidate(
    fingerprint="f" * 32,
    exception_class="java.lang.IllegalStateException",
    message_pattern="Order <num> not found",
    primary_class="com.acme.orders.OrderService",
    primary_method="place",
    primary_line=42,
)


@pytest.mark.parametrize(
    ("current", "expected"),
    [
        (ClusterStatus.OPEN, ClusterStatus.OPEN),
        (ClusterStatus.ACKNOWLEDGED, ClusterStatus.ACKNOWLEDGED),
        (ClusterStatus.RESOLVED, ClusterStatus.OPEN),
        (ClusterStatus.IGNORED, ClusterStatus.IGNORED),
    ],
)
def test_status_after_occurrence(current: ClusterStatus, expected: ClusterStatus) -> None:
    assert status_after_occurrence(current) is expected


def test_operator_transitions_are_unconditional() -> None:
    for current in ClusterStatus:
        for target in ClusterStatus:
            assert transition(current, target) is target


def test_parse_status_is_case_insensitive() -> None:
    assert parse_status(" resolved ") is ClusterStatus.RESOLVED
    with pytest.raises(ValueError, match="Valid values"):
        parse_status("closed")


def test_merge_creates_new_cluster() -> None:
    out = merge_occurrence(
        None,
        app_id="app",
        candidate=CANDIDATE,
        occurred_at=T0,
        now=T0,
        severity_cfg=SeverityConfig(),
    )
    assert out.created
    c = out.cluster
    assert (c.occurrence_count, c.status, c.severity) == (1, ClusterStatus.OPEN, Severity.LOW)
    assert c.first_seen == c.last_seen == T0


def test_merge_reopens_resolved_and_keeps_first_seen() -> None:
    first = merge_occurrence(
        None, app_id="app", candidate=CANDIDATE, occurred_at=T0, now=T0,
        severity_cfg=SeverityConfig(),
    ).cluster
    first.status = ClusterStatus.RESOLVED

    later = T0 + timedelta(hours=2)
    out = merge_occurrence(
        first, app_id="app", candidate=CANDIDATE, occurred_at=later, now=later,
        severity_cfg=SeverityConfig(),
    )
    assert not out.created
    assert out.reopened
    assert out.previous_status is ClusterStatus.RESOLVED
    assert out.cluster.status is ClusterStatus.OPEN
    assert out.cluster.occurrence_count == 2
    assert out.cluster.first_seen == T0
    assert out.cluster.last_seen == later


def test_merge_out_of_order_occurrence_keeps_last_seen() -> None:
    first = merge_occurrence(
        None, app_id="app", candidate=CANDIDATE, occurred_at=T0, now=T0,
        severity_cfg=SeverityConfig(),
    ).cluster
    earlier = T0 - timedelta(minutes=5)
    out = merge_occurrence(
        first, app_id="app", candidate=CANDIDATE, occurred_at=earlier, now=T0,
        severity_cfg=SeverityConfig(),
    )
    assert out.cluster.last_seen == T0
    assert out.cluster.first_seen <= out.cluster.last_seen


def test_merge_does_not_reopen_ignored() -> None:
    first = merge_occurrence(
        None, app_id="app", candidate=CANDIDATE, occurred_at=T0, now=T0,
        severity_cfg=SeverityConfig(),
    ).cluster
    first.status = ClusterStatus.IGNORED
    out = merge_occurrence(
        first, app_id="app", candidate=CANDIDATE, occurred_at=T0, now=T0,
        severity_cfg=SeverityConfig(),
    )
    assert not out.reopened
    assert out.cluster.status is ClusterStatus.IGNORED
