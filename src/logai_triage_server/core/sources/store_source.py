"""Log source backed by the store's log table."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime

from ..models import LogEvent
from ..store.base import TriageStore


@dataclass(frozen=True, slots=True)
class StoreLogSource:
    store: TriageStore

    async def fetch_events(
        self, app_id: str, *, since: datetime, until: datetime, limit: int
    ) -> list[LogEvent]:
        return await asyncio.to_thread(
            self.store.fetch_log_events, app_id, since=since, until=until, limit=limit
        )
