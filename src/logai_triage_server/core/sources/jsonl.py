"""JSON-lines log source.

One file per application under a log directory: ``<app_id>.jsonl`` (or
``.jsonl.gz``), one JSON object per line using the appender's column names::

    {"timestamp": "2025-12-30T08:12:04Z", "level": "ERROR",
     "logger": "com.acme.OrderService", "message": "...",
     "stack_trace": "...", "class_name": "...", "method_name": "...",
     "file_name": "...", "line_number": 42, "trace_id": "...",
     "thread_name": "...", "mdc_context": {...}}
"""

from __future__ import annotations

import gzip
import heapq
import json
import logging
from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
from aiofiles.threadpool import wrap

from ..errors import UpstreamUnavailableError
from ..models import LogEvent, LogLevel, SourceLocation
from ..time_window import in_window, parse_iso_dt

logger = logging.getLogger(__name__)

TIME_KEYS: Sequence[str] = ("timestamp", "time", "ts", "@timestamp")
LEVEL_KEYS: Sequence[str] = ("level", "severity", "log_level")
MSG_KEYS: Sequence[str] = ("message", "msg")


@asynccontextmanager
async def _open_text(path: Path, *, encoding: str = "utf-8", decode_errors: str = "replace"):
    """Open a log file for async text reading (plain or gzip)."""
    if path.suffix.lower() == ".gz":
        f = gzip.open(path, mode="rt", encoding=encoding, errors=decode_errors)
        af = wrap(f)
        try:
            yield af
        finally:
            await af.close()
    else:
        async with aiofiles.open(path, encoding=encoding, errors=decode_errors) as f:
            yield f


def _first(obj: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for k in keys:
        if k in obj and obj[k] is not None:
            return obj[k]
    return None


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def parse_log_record(obj: Mapping[str, Any]) -> LogEvent:
    """Build a LogEvent from one JSON record. Raises ValueError when unusable."""
    ts_val = _first(obj, TIME_KEYS)
    if isinstance(ts_val, str):
        ts = parse_iso_dt(ts_val)
    elif isinstance(ts_val, (int, float)):
        # Epoch milliseconds, as emitted by the Java appender.
        try:
            ts = datetime.fromtimestamp(ts_val / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"timestamp out of range: {ts_val}") from e
    else:
        raise ValueError("record has no timestamp")

    lvl_val = _first(obj, LEVEL_KEYS)
    if not isinstance(lvl_val, str):
        raise ValueError("record has no level")
    level = LogLevel.parse(lvl_val)

    line_val = obj.get("line_number")
    line = int(line_val) if isinstance(line_val, (int, str)) and str(line_val).isdigit() else None
    location = None
    if any(obj.get(k) for k in ("file_name", "class_name", "method_name")) or line is not None:
        location = SourceLocation(
            file=_opt_str(obj.get("file_name")),
            class_name=_opt_str(obj.get("class_name")),
            method=_opt_str(obj.get("method_name")),
            line=line,
        )

    context = obj.get("mdc_context") or obj.get("context")
    if context is not None and not isinstance(context, dict):
        context = None

    trace_id = _opt_str(obj.get("trace_id"))
    if trace_id is None and context:
        trace_id = _opt_str(context.get("traceId"))

    msg = _first(obj, MSG_KEYS)
    return LogEvent(
        timestamp=ts,
        level=level,
        message=str(msg) if msg is not None else "",
        logger=_opt_str(obj.get("logger")),
        stack_trace=_opt_str(obj.get("stack_trace")),
        location=location,
        trace_id=trace_id,
        thread_name=_opt_str(obj.get("thread_name")),
        context=context,
        exception_class=_opt_str(obj.get("exception_class")),
    )


def parse_log_line(line: str) -> LogEvent | None:
    """Parse one JSON line; None for blank, non-JSON or unusable lines."""
    s = line.strip()
    if not s or not (s.startswith("{") and s.endswith("}")):
        return None
    try:
        obj = json.loads(s)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    try:
        return parse_log_record(obj)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class JsonlLogSource:
    log_dir: Path

    def path_for(self, app_id: str) -> Path | None:
        for suffix in (".jsonl", ".jsonl.gz", ".log", ".log.gz"):
            p = self.log_dir / f"{app_id}{suffix}"
            if p.is_file():
                return p
        return None

    async def fetch_events(
        self, app_id: str, *, since: datetime, until: datetime, limit: int
    ) -> list[LogEvent]:
        if not self.log_dir.is_dir():
            raise UpstreamUnavailableError(f"Log directory not found: {self.log_dir}")
        path = self.path_for(app_id)
        if path is None:
            logger.debug("No log file for application %s under %s", app_id, self.log_dir)
            return []

        # Min-heap of the newest `limit` events; the line number breaks timestamp ties.
        newest: list[tuple[datetime, int, LogEvent]] = []
        skipped = dropped = 0
        async with _open_text(path) as f:
            lineno = 0
            async for line in f:
                lineno += 1
                event = parse_log_line(line)
                if event is None:
                    if line.strip():
                        skipped += 1
                    continue
                if not in_window(event.timestamp, since, until):
                    continue
                item = (event.timestamp, lineno, event)
                if len(newest) < limit:
                    heapq.heappush(newest, item)
                else:
                    heapq.heappushpop(newest, item)
                    dropped += 1

        if skipped:
            logger.debug("Skipped %s unparseable lines in %s", skipped, path)
        if dropped:
            logger.warning(
                "Log fetch for %s capped at %s events; %s older events dropped",
                app_id,
                limit,
                dropped,
            )
        return [event for _, _, event in sorted(newest)]


async def read_records(path: Path) -> tuple[list[dict[str, Any]], int]:
    """Read every JSON object from a JSON-lines file.

    Returns the objects and the number of non-blank lines that were not JSON
    objects. No validation beyond that; see :func:`parse_log_record`.
    """
    records: list[dict[str, Any]] = []
    skipped = 0
    async with _open_text(path) as f:
        async for line in f:
            s = line.strip()
            if not s:
                continue
            try:
                obj = json.loads(s)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if isinstance(obj, dict):
                records.append(obj)
            else:
                skipped += 1
    return records, skipped
