"""Bug statistics by severity, status and priority."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Literal

import polars as pl
from pydantic import BaseModel

from bugdesk.models import Priority, Severity, Status

DateRange = Literal["all", "week", "month", "year"]
DATE_RANGES: tuple[str, ...] = ("all", "week", "month", "year")

RESOLVED_STATUSES = (Status.fixed.value, Status.will_not_fix.value)
OPEN_STATUSES = (
    Status.new.value,
    Status.open.value,
    Status.blocked.value,
    Status.in_progress.value,
)


class BugReport(BaseModel):
    date_range: str
    project_id: str | None = None
    total: int
    by_severity: dict[str, int]
    by_status: dict[str, int]
    by_priority: dict[str, int]
    resolved: int
    open: int
    resolution_rate: str


def _shift_months(ts: datetime, months: int) -> datetime:
    """Move *ts* back by *months*, clamping the day to the target month."""
    index = ts.year * 12 + (ts.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    day = min(ts.day, calendar.monthrange(year, month)[1])
    return ts.replace(year=year, month=month, day=day)


def range_cutoff(date_range: str, now: datetime | None = None) -> datetime | None:
    """Earliest creation time included by *date_range*; None for ``all``.

    Raises:
        ValueError: Unknown range name.
    """
    if date_range not in DATE_RANGES:
        raise ValueError(
            f"Unknown date range {date_range!r}; expected one of {', '.join(DATE_RANGES)}"
        )
    if date_range == "all":
        return None
    now = now or datetime.now(timezone.utc)
    if date_range == "week":
        return now - timedelta(days=7)
    if date_range == "month":
        return _shift_months(now, 1)
    return _shift_months(now, 12)


def _cutoff_text(cutoff: datetime) -> str:
    """Render *cutoff* in the stored ``created_at`` format for comparison."""
    if cutoff.tzinfo is not None:
        cutoff = cutoff.astimezone(timezone.utc)
    return cutoff.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def filter_report_frame(
    df: pl.DataFrame,
    date_range: str = "all",
    project_id: str | None = None,
    *,
    now: datetime | None = None,
) -> pl.DataFrame:
    """Rows of *df* inside *date_range* and, if given, *project_id*.

    Bugs without ``created_at`` are excluded from any bounded range.
    """
    if project_id and project_id != "all":
        df = df.filter(pl.col("project_id") == project_id)
    cutoff = range_cutoff(date_range, now)
    if cutoff is not None:
        df = df.filter(pl.col("created_at").is_not_null() & (pl.col("created_at") >= _cutoff_text(cutoff)))
    return df


def _bucket(df: pl.DataFrame, column: str, keys: list[str]) -> dict[str, int]:
    counts = {k: 0 for k in keys}
    if df.height == 0:
        return counts
    grouped = df.group_by(column).agg(pl.len().alias("n"))
    for value, n in grouped.iter_rows():
        if value in counts:
            counts[value] = int(n)
    return counts


def bug_report(
    df: pl.DataFrame,
    date_range: str = "all",
    project_id: str | None = None,
    *,
    now: datetime | None = None,
) -> BugReport:
    """Summarise a frame built by :func:`bugdesk.views.bugs_frame`.

    Every severity, status and priority appears in its bucket, with zero
    when no bug has it.  Values outside the known enums are counted in
    ``total`` only.
    """
    scoped = filter_report_frame(df, date_range, project_id, now=now)
    total = scoped.height
    by_status = _bucket(scoped, "status", [s.value for s in Status])
    resolved = sum(by_status[s] for s in RESOLVED_STATUSES)
    open_count = sum(by_status[s] for s in OPEN_STATUSES)
    rate = f"{resolved / total * 100:.1f}" if total > 0 else "0"
    return BugReport(
        date_range=date_range,
        project_id=project_id if project_id != "all" else None,
        total=total,
        by_severity=_bucket(scoped, "severity", [s.value for s in Severity]),
        by_status=by_status,
        by_priority=_bucket(scoped, "priority", [p.value for p in Priority]),
        resolved=resolved,
        open=open_count,
        resolution_rate=rate,
    )
