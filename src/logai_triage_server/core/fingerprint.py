"""Structural fingerprinting of error events.

An error's fingerprint is a hash over three parts:

- the exception class,
- the primary application frame (``class.method:line``),
- the message with interpolated values (numbers, UUIDs, quoted literals)
  replaced by placeholders.

Events that differ only in interpolated values therefore land in the same
cluster. Everything here is pure: no I/O, no hidden state.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from .config import FingerprintConfig
from .models import LogEvent

_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)
_QUOTED_RE = re.compile(r"'[^'\n]*'|\"[^\"\n]*\"|`[^`\n]*`")
_HEX_RE = re.compile(r"\b0[xX][0-9a-fA-F]+\b")
_DIGITS_RE = re.compile(r"\d+")
_WS_RE = re.compile(r"\s+")

# "Exception in thread "main" java.lang.IllegalStateException: boom"
_THREAD_PREFIX_RE = re.compile(r'^Exception in thread "[^"]*"\s+')
_EXC_HEAD_RE = re.compile(r"^(?P<cls>[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*)\s*(?::|$)")

# Java: "\tat com.acme.Foo.bar(Foo.java:42)"
_JAVA_FRAME_RE = re.compile(
    r"^\s*at\s+(?P<qual>[\w$.<>/]+)\((?P<src>[^)]*)\)"
)
# Python: '  File "/app/svc/orders.py", line 42, in place'
_PY_FRAME_RE = re.compile(
    r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+), in (?P<func>\S+)'
)

_CONTEXT_CLASS_KEYS = ("exception.type", "exception_class", "exceptionClass", "error.type")

UNKNOWN_FRAME = "unknown"


@dataclass(frozen=True, slots=True)
class Frame:
    class_name: str | None
    method: str | None
    file: str | None
    line: int | None

    def render(self) -> str:
        owner = self.class_name or self.file or "?"
        method = self.method or "?"
        line = "" if self.line is None else str(self.line)
        return f"{owner}.{method}:{line}"


@dataclass(frozen=True, slots=True)
class Fingerprint:
    """Cluster key plus the fields derived while computing it."""

    key: str
    exception_class: str | None
    message_pattern: str
    primary_frame: str
    primary_file: str | None
    primary_class: str | None
    primary_method: str | None
    primary_line: int | None


def is_eligible(event: LogEvent) -> bool:
    """ERROR/FATAL events that carry an exception class or a stack trace."""
    if not event.level.is_error:
        return False
    return bool(_structured_exception_class(event) or (event.stack_trace or "").strip())


def normalize_message(message: str, *, max_chars: int = 500) -> str:
    """Collapse interpolated values into placeholder tokens."""
    s = _UUID_RE.sub("<uuid>", message)
    s = _QUOTED_RE.sub("<str>", s)
    s = _HEX_RE.sub("<hex>", s)
    s = _DIGITS_RE.sub("<num>", s)
    s = _WS_RE.sub(" ", s).strip()
    return s[:max_chars]


def parse_exception_class(stack_trace: str) -> str | None:
    """Exception class from the head of a Java-style or Python-style trace."""
    lines = [ln for ln in stack_trace.splitlines() if ln.strip()]
    if not lines:
        return None

    if lines[0].startswith("Traceback"):
        # Python puts the exception on the last unindented line.
        for ln in reversed(lines):
            if ln[:1].isspace():
                continue
            m = _EXC_HEAD_RE.match(ln)
            if m and not ln.startswith("Traceback"):
                return m.group("cls")
        return None

    head = _THREAD_PREFIX_RE.sub("", lines[0].strip())
    m = _EXC_HEAD_RE.match(head)
    return m.group("cls") if m else None


def _parse_java_frame(line: str) -> Frame | None:
    m = _JAVA_FRAME_RE.match(line)
    if not m:
        return None
    qual = m.group("qual")
    # Strip JPMS module prefix: "java.base/java.lang.Thread.run"
    if "/" in qual:
        qual = qual.rsplit("/", 1)[-1]
    class_name, _, method = qual.rpartition(".")
    src = m.group("src")
    file: str | None = None
    line_no: int | None = None
    if ":" in src:
        file, _, raw_line = src.rpartition(":")
        line_no = int(raw_line) if raw_line.isdigit() else None
    elif src and src not in ("Native Method", "Unknown Source"):
        file = src
    return Frame(class_name=class_name or None, method=method or None, file=file, line=line_no)


def _parse_python_frame(line: str) -> Frame | None:
    m = _PY_FRAME_RE.match(line)
    if not m:
        return None
    file = m.group("file").replace("\\", "/")
    module = file.rsplit("/", 1)[-1]
    if module.endswith(".py"):
        module = module[:-3]
    return Frame(class_name=module, method=m.group("func"), file=file, line=int(m.group("line")))


def _is_framework(frame: Frame, cfg: FingerprintConfig) -> bool:
    if frame.class_name and frame.class_name.startswith(cfg.framework_prefixes):
        return True
    if frame.file:
        path = frame.file.replace("\\", "/")
        return any(marker in path for marker in cfg.framework_path_markers)
    return False


def extract_primary_frame(stack_trace: str, cfg: FingerprintConfig | None = None) -> Frame | None:
    """First application frame, closest to where the error was raised.

    Java traces list the throwing frame first; Python tracebacks list it last.
    """
    cfg = cfg or FingerprintConfig()
    frames: list[Frame] = []
    python_style = False
    for ln in stack_trace.splitlines():
        if ln.startswith("Caused by:"):
            # Only the outermost exception's frames identify the call site.
            break
        frame = _parse_java_frame(ln)
        if frame is None:
            frame = _parse_python_frame(ln)
            if frame is not None:
                python_style = True
        if frame is not None:
            frames.append(frame)

    if python_style:
        frames.reverse()

    for frame in frames:
        if not _is_framework(frame, cfg):
            return frame
    return None


def _structured_exception_class(event: LogEvent) -> str | None:
    if event.exception_class:
        return event.exception_class.strip() or None
    if event.context:
        for key in _CONTEXT_CLASS_KEYS:
            value = event.context.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _exception_message(stack_trace: str) -> str:
    lines = [ln for ln in stack_trace.splitlines() if ln.strip()]
    if not lines:
        return ""
    head = lines[-1] if lines[0].startswith("Traceback") else lines[0]
    _, sep, rest = head.partition(":")
    return rest.strip() if sep else ""


def fingerprint_event(event: LogEvent, cfg: FingerprintConfig | None = None) -> Fingerprint | None:
    """Compute the cluster key for an event, or None if it is not eligible."""
    if not is_eligible(event):
        return None
    cfg = cfg or FingerprintConfig()
    stack_trace = event.stack_trace or ""

    exception_class = _structured_exception_class(event)
    if exception_class is None and stack_trace:
        exception_class = parse_exception_class(stack_trace)

    frame = extract_primary_frame(stack_trace, cfg) if stack_trace else None
    if frame is None and event.location is not None:
        loc = event.location
        if loc.class_name or loc.method or loc.file:
            frame = Frame(
                class_name=loc.class_name,
                method=loc.method,
                file=loc.file,
                line=loc.line,
            )
    primary_frame = frame.render() if frame is not None else UNKNOWN_FRAME

    message = event.message or _exception_message(stack_trace)
    pattern = normalize_message(message, max_chars=cfg.max_pattern_chars)

    material = "|".join((exception_class or "", primary_frame, pattern))
    key = hashlib.sha256(material.encode("utf-8", errors="replace")).hexdigest()[:32]

    return Fingerprint(
        key=key,
        exception_class=exception_class,
        message_pattern=pattern,
        primary_frame=primary_frame,
        primary_file=frame.file if frame else None,
        primary_class=frame.class_name if frame else None,
        primary_method=frame.method if frame else None,
        primary_line=frame.line if frame else None,
    )
