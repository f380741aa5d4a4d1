"""Cluster status transitions."""

from __future__ import annotations

from .models import ClusterStatus

REASON_OPERATOR = "operator"
REASON_RECURRENCE = "recurrence"


def transition(current: ClusterStatus, target: ClusterStatus) -> ClusterStatus:
    """Apply an operator-driven status change.

    Operator transitions are unconditional: any state may move to any other.
    """
    _ = current
    return ClusterStatus(target)


def status_after_occurrence(current: ClusterStatus) -> ClusterStatus:
    """Status after a new matching occurrence is merged into the cluster.

    A RESOLVED cluster that recurs is re-opened. IGNORED is a deliberate
    suppression and ACKNOWLEDGED is already being worked on; both stay put.
    """
    if current is ClusterStatus.RESOLVED:
        return ClusterStatus.OPEN
    return current


def parse_status(value: str) -> ClusterStatus:
    name = (value or "").strip().upper()
    try:
        return ClusterStatus(name)
    except ValueError as e:
        valid = ", ".join(s.value for s in ClusterStatus)
        raise ValueError(f"Unknown cluster status '{value}'. Valid values: {valid}.") from e
