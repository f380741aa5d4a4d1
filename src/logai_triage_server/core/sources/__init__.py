"""Log sources a scan can read from."""

from __future__ import annotations

from .base import LogSource
from .jsonl import JsonlLogSource, parse_log_line, parse_log_record, read_records
from .store_source import StoreLogSource

__all__ = [
    "JsonlLogSource",
    "LogSource",
    "StoreLogSource",
    "parse_log_line",
    "parse_log_record",
    "read_records",
]
