"""CSV export of bug lists and reports.

Files are UTF-8 with a byte-order mark so spreadsheet applications pick
the right encoding.  The header row is plain; every data cell is quoted
with embedded quotes doubled.
"""

from __future__ import annotations

import codecs
import re
from datetime import date, datetime, timezone
from pathlib import Path

import polars as pl

from bugdesk.logging.events import EventType, emit_info

BUG_LIST_COLUMNS: dict[str, str] = {
    "bug_id": "Bug ID",
    "title": "Title",
    "description": "Description",
    "severity": "Severity",
    "priority": "Priority",
    "status": "Status",
    "result": "Result",
    "steps_to_reproduce": "Steps to Reproduce",
    "expected_result": "Expected Result",
    "actual_result": "Actual Result",
    "created_at": "Created At",
}

REPORT_COLUMNS: dict[str, str] = {
    "bug_id": "Bug ID",
    "project_name": "Project",
    "title": "Title",
    "severity": "Severity",
    "priority": "Priority",
    "status": "Status",
    "result": "Result",
    "created_at": "Created At",
}

UNKNOWN_PROJECT = "Unknown"

_WS_RE = re.compile(r"\s+")


def _today(today: date | None) -> str:
    return (today or datetime.now(timezone.utc).date()).isoformat()


def project_export_filename(project_name: str, today: date | None = None) -> str:
    """``<Project_Name>_bugs_<YYYY-MM-DD>.csv``; whitespace runs become ``_``."""
    return f"{_WS_RE.sub('_', project_name)}_bugs_{_today(today)}.csv"


def all_bugs_export_filename(today: date | None = None) -> str:
    return f"all_bugs_{_today(today)}.csv"


def report_export_filename(date_range: str, today: date | None = None) -> str:
    return f"bug_reports_{date_range}_{_today(today)}.csv"


def _created_at_display() -> pl.Expr:
    # 2026-03-04T05:06:07.123456Z -> 2026-03-04 05:06:07
    return pl.col("created_at").str.slice(0, 19).str.replace("T", " ", literal=True)


def _render(df: pl.DataFrame, columns: dict[str, str]) -> bytes:
    header = ",".join(columns.values())
    body = df.select(list(columns)).write_csv(
        include_header=False,
        quote_style="always",
        line_terminator="\n",
    )
    text = header + "\n" + body if body else header + "\n"
    return codecs.BOM_UTF8 + text.encode("utf-8")


def bug_list_csv(df: pl.DataFrame) -> bytes:
    """Render a bug list frame (see :func:`bugdesk.views.bugs_frame`) as CSV."""
    shaped = df.with_columns(_created_at_display()).with_columns(
        [pl.col(c).cast(pl.String).fill_null("") for c in BUG_LIST_COLUMNS]
    )
    return _render(shaped, BUG_LIST_COLUMNS)


def report_csv(df: pl.DataFrame) -> bytes:
    """Render the bugs behind a report, with project name, as CSV."""
    shaped = df.with_columns(
        _created_at_display(),
        pl.col("project_name").fill_null(UNKNOWN_PROJECT),
    ).with_columns([pl.col(c).cast(pl.String).fill_null("") for c in REPORT_COLUMNS])
    return _render(shaped, REPORT_COLUMNS)


def write_export(output_dir: Path, filename: str, content: bytes, *, rows: int | None = None) -> Path:
    """Write *content* to ``output_dir / filename`` and log an event."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    path.write_bytes(content)
    emit_info(
        EventType.export_written,
        f"Export written: {filename}",
        {"path": str(path), "rows": rows, "bytes": len(content)},
    )
    return path
