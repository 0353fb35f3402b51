"""Unified event schema and module-level emit helpers.

All timestamps use UTC ISO-8601 with ``Z`` suffix.  The ``emit()``
family of functions is safe to call from any context -- failures are
swallowed and printed to stderr.
"""

from __future__ import annotations

import re
import sys
import time
import traceback
from enum import Enum
from typing import Any
from urllib.parse import urlparse, urlunparse

from pydantic import BaseModel, Field

from bugdesk.models import utc_now


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Import lifecycle
    import_started = "import_started"
    import_previewed = "import_previewed"
    import_completed = "import_completed"
    import_partial = "import_partial"
    import_failed = "import_failed"
    sequence_collision = "sequence_collision"

    # Tracker writes
    project_created = "project_created"
    project_updated = "project_updated"
    project_deleted = "project_deleted"
    bug_created = "bug_created"
    bug_create_failed = "bug_create_failed"
    bug_updated = "bug_updated"
    bug_deleted = "bug_deleted"
    attachments_linked = "attachments_linked"
    attachment_deleted = "attachment_deleted"
    comment_deleted = "comment_deleted"

    # Exports
    export_written = "export_written"


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

# Parse
PARSE_EMPTY_INPUT = "parse_empty_input"
PARSE_UNSUPPORTED_FORMAT = "parse_unsupported_format"
PARSE_ROW_LIMIT = "parse_row_limit"

# Commit
PROJECT_LOOKUP_FAILED = "project_lookup_failed"
BUG_INSERT_FAILED = "bug_insert_failed"
ATTACHMENT_INSERT_FAILED = "attachment_insert_failed"
SEQUENCE_COLLISION = "sequence_collision"


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

_SENSITIVE_KEY_RE = re.compile(
    r"(password|passwd|secret|token|api_key|apikey|authorization|cookie"
    r"|set.cookie|session|bearer|dsn|connection_string)",
    re.IGNORECASE,
)

_SAFE_HEADER_KEYS = frozenset({"user-agent", "accept", "content-type"})

_MAX_VALUE_LEN = 256


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* with sensitive values redacted.

    Rules:
    - Keys matching sensitive patterns have their values replaced with
      ``"[REDACTED]"``.
    - String values that look like URLs have query params stripped
      (attachment links often carry signed-URL tokens).
    - String values longer than 256 chars are truncated.
    - A ``headers`` sub-dict keeps only safe header keys.
    """
    return _redact_dict(context)


def _redact_dict(d: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in d.items():
        if _SENSITIVE_KEY_RE.search(k):
            out[k] = "[REDACTED]"
        elif k.lower() == "headers" and isinstance(v, dict):
            out[k] = {
                hk: hv for hk, hv in v.items()
                if hk.lower() in _SAFE_HEADER_KEYS
            }
        elif isinstance(v, dict):
            out[k] = _redact_dict(v)
        elif isinstance(v, list):
            out[k] = [_redact_value(item) for item in v]
        else:
            out[k] = _redact_value(v)
    return out


def _redact_value(v: Any) -> Any:
    if isinstance(v, dict):
        return _redact_dict(v)
    if isinstance(v, str):
        if "://" in v:
            try:
                parsed = urlparse(v)
            except ValueError:
                parsed = None
            if parsed is not None and parsed.scheme in ("http", "https", "sqlite", "file"):
                # Strip query, fragment, and userinfo
                clean = urlunparse((
                    parsed.scheme,
                    parsed.hostname or "",
                    parsed.path,
                    "",  # params
                    "",  # query
                    "",  # fragment
                ))
                return clean + "?[REDACTED]" if parsed.query else clean
        if len(v) > _MAX_VALUE_LEN:
            return v[:_MAX_VALUE_LEN] + "...[truncated]"
    return v


# ---------------------------------------------------------------------------
# Attribution invariants
# ---------------------------------------------------------------------------

_IMPORT_EVENT_REQUIRED = {"import_id", "project_id"}

_EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    EventType.import_started.value: _IMPORT_EVENT_REQUIRED,
    EventType.import_previewed.value: set(),  # previews are not bound to a project
    EventType.import_completed.value: _IMPORT_EVENT_REQUIRED,
    EventType.import_partial.value: _IMPORT_EVENT_REQUIRED,
    EventType.import_failed.value: {"import_id"},
    EventType.sequence_collision.value: {"project_id"},
    EventType.project_created.value: {"project_id"},
    EventType.project_updated.value: {"project_id"},
    EventType.project_deleted.value: {"project_id"},
    EventType.bug_created.value: {"project_id", "bug_id"},
    EventType.bug_create_failed.value: {"project_id"},
    EventType.bug_updated.value: {"bug_id"},
    EventType.bug_deleted.value: {"bug_id"},
    EventType.attachments_linked.value: set(),
    EventType.attachment_deleted.value: {"bug_id"},
    EventType.comment_deleted.value: {"bug_id"},
    EventType.export_written.value: set(),
}


def _validate_attribution(event: BugdeskEvent) -> BugdeskEvent:
    """Check required context keys; downgrade to warning if missing."""
    raw_type = event.event_type.value if isinstance(event.event_type, EventType) else event.event_type
    required = _EVENT_REQUIRED_KEYS.get(raw_type, set())
    if not required:
        return event
    missing = required - set(event.context.keys())
    if missing:
        ctx = dict(event.context)
        ctx["_missing_attribution"] = sorted(missing)
        return BugdeskEvent(
            schema_version=event.schema_version,
            ts=event.ts,
            level=EventLevel.warning,
            event_type=event.event_type,
            context=ctx,
            message=event.message,
            error_code=event.error_code,
        )
    return event


# ---------------------------------------------------------------------------
# Helper constructors for consistent attribution
# ---------------------------------------------------------------------------


def make_import_event(
    event_type: EventType,
    level: EventLevel,
    message: str,
    *,
    import_id: str | None = None,
    project_id: str | None = None,
    filename: str | None = None,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> BugdeskEvent:
    """Build an event with guaranteed import attribution context."""
    ctx: dict[str, Any] = {}
    if import_id is not None:
        ctx["import_id"] = import_id
    if project_id is not None:
        ctx["project_id"] = project_id
    if filename is not None:
        ctx["filename"] = filename
    if extra:
        ctx.update(extra)
    return BugdeskEvent(
        level=level,
        event_type=event_type,
        message=message,
        context=ctx,
        error_code=error_code,
    )


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


class BugdeskEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Module-level sink reference
# ---------------------------------------------------------------------------

# Lazily initialised when ``set_workspace_dir`` is called.
_sink: Any = None  # EventSink | None


def set_workspace_dir(workspace_dir: Any) -> None:
    """Configure the module-level event sink for a workspace directory.

    This should be called early in a CLI command or server startup.  If
    it is never called, ``emit()`` silently discards events.

    Reads ``logging_fsync`` and ``logging_tail_bytes`` from the workspace
    config (``bugdesk.yaml``) to configure the sink.
    """
    global _sink
    from pathlib import Path

    from bugdesk.logging.sink import EventSink

    fsync = False
    tail_bytes = None
    try:
        from bugdesk.workspace import load_workspace_config

        cfg = load_workspace_config(Path(workspace_dir))
        fsync = bool(cfg.get("logging_fsync", False))
        tb = cfg.get("logging_tail_bytes")
        if tb is not None:
            tail_bytes = int(tb)
    except (OSError, ValueError, TypeError) as exc:
        _stderr_warning(f"could not read logging config: {exc}")

    _sink = EventSink(Path(workspace_dir), fsync=fsync, tail_bytes=tail_bytes)


def clear_workspace_dir() -> None:
    """Detach the module-level sink (used when a server shuts down)."""
    global _sink
    _sink = None


def _get_sink() -> Any:
    """Return the module-level sink, or None."""
    return _sink


# ---------------------------------------------------------------------------
# Rate-limited stderr warnings
# ---------------------------------------------------------------------------

_last_stderr_ts: float = 0.0
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Print a warning to stderr, rate-limited to one per 60 seconds."""
    global _last_stderr_ts
    now = time.monotonic()
    if now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[bugdesk] {msg}", file=sys.stderr)
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Safe emit helpers
# ---------------------------------------------------------------------------


def emit(event: BugdeskEvent, *, import_id: str | None = None) -> None:
    """Write an event to the global log and optionally to a per-import log.

    **Never raises.**  On failure, prints a rate-limited warning to stderr.

    Applies secret redaction and attribution validation before writing.
    """
    try:
        sink = _get_sink()
        if sink is None:
            return
        event = BugdeskEvent(
            schema_version=event.schema_version,
            ts=event.ts,
            level=event.level,
            event_type=event.event_type,
            context=redact_context(event.context),
            message=event.message,
            error_code=event.error_code,
        )
        event = _validate_attribution(event)
        sink.write(event, import_id=import_id)
    except Exception:
        _stderr_warning(f"logging failed: {traceback.format_exc()}")


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    import_id: str | None = None,
) -> None:
    """Convenience: emit an info-level event."""
    emit(
        BugdeskEvent(
            level=EventLevel.info,
            event_type=event_type,
            message=message,
            context=context or {},
        ),
        import_id=import_id,
    )


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    import_id: str | None = None,
) -> None:
    """Convenience: emit a warning-level event."""
    emit(
        BugdeskEvent(
            level=EventLevel.warning,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        ),
        import_id=import_id,
    )


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
    import_id: str | None = None,
) -> None:
    """Convenience: emit an error-level event."""
    emit(
        BugdeskEvent(
            level=EventLevel.error,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        ),
        import_id=import_id,
    )
