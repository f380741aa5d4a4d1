"""Log source interface."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..models import LogEvent


class LogSource(Protocol):
    """Where a scan reads collected log events from."""

    async def fetch_events(
        self, app_id: str, *, since: datetime, until: datetime, limit: int
    ) -> list[LogEvent]:
        """Events with since <= timestamp <= until, oldest first, at most ``limit``."""
        ...
