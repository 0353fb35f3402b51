"""Structured event logging for bugdesk.

Provides a unified event schema, filesystem NDJSON sink, and safe
emit helpers that never raise uncaught exceptions.
"""

from bugdesk.logging.events import (
    BugdeskEvent,
    EventLevel,
    EventType,
    clear_workspace_dir,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    make_import_event,
    redact_context,
    set_workspace_dir,
)
from bugdesk.logging.sink import EventSink

__all__ = [
    "BugdeskEvent",
    "EventLevel",
    "EventSink",
    "EventType",
    "clear_workspace_dir",
    "emit",
    "emit_error",
    "emit_info",
    "emit_warning",
    "make_import_event",
    "redact_context",
    "set_workspace_dir",
]
