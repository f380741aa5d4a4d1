"""Per-key leases guarding expensive, non-idempotent work."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .errors import ConcurrencyConflictError
from .store.base import TriageStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def hold_lease(store: TriageStore, key: str, *, ttl_s: float) -> AsyncIterator[str]:
    """Hold ``key`` for the duration of the block or raise ConcurrencyConflictError.

    The lease is released on success, failure and cancellation alike; the TTL
    only matters if the process dies while holding it.
    """
    holder = uuid.uuid4().hex
    acquired = await asyncio.to_thread(store.acquire_lease, key, holder, ttl_s)
    if not acquired:
        raise ConcurrencyConflictError(f"Work already in progress for {key}")
    logger.debug("Lease %s acquired by %s", key, holder)
    try:
        yield holder
    finally:
        # Shielded so a cancelled caller still frees the lease.
        await asyncio.shield(asyncio.to_thread(store.release_lease, key, holder))
        logger.debug("Lease %s released by %s", key, holder)
