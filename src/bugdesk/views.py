"""View-only bug list search/filter/sort transforms.

Provides Pydantic models and a pure Polars transform function.
Stored bugs are never mutated; transforms produce new DataFrames.
"""

from __future__ import annotations

from typing import Any, Literal

import polars as pl
from pydantic import BaseModel

from bugdesk.models import Bug, Project, format_bug_id


# ────────────────────────────────────────────────────────────────
# Frame construction
# ────────────────────────────────────────────────────────────────

BUG_SCHEMA: dict[str, Any] = {
    "id": pl.String,
    "bug_id": pl.String,
    "bug_number": pl.Int64,
    "project_id": pl.String,
    "project_name": pl.String,
    "title": pl.String,
    "description": pl.String,
    "severity": pl.String,
    "priority": pl.String,
    "status": pl.String,
    "result": pl.String,
    "steps_to_reproduce": pl.String,
    "expected_result": pl.String,
    "actual_result": pl.String,
    "assigned_to": pl.String,
    "created_by": pl.String,
    "created_at": pl.String,
    "updated_at": pl.String,
}


def bugs_frame(
    bugs: list[Bug],
    projects: list[Project] | None = None,
    *,
    bug_id_prefix: str = "SCB",
) -> pl.DataFrame:
    """Build a DataFrame of *bugs* with display id and project name.

    ``bug_id`` is recomputed from the owning project's number so rows
    imported before a project was renumbered still display consistently.
    """
    by_id = {p.id: p for p in projects or []}
    records: list[dict[str, Any]] = []
    for bug in bugs:
        project = by_id.get(bug.project_id)
        row = bug.model_dump()
        if project is not None:
            row["bug_id"] = format_bug_id(bug_id_prefix, project.project_number, bug.bug_number)
            row["project_name"] = project.name
        else:
            row["bug_id"] = bug.bug_id or format_bug_id(bug_id_prefix, None, bug.bug_number)
            row["project_name"] = None
        records.append({k: row.get(k) for k in BUG_SCHEMA})
    return pl.DataFrame(records, schema=BUG_SCHEMA)


# ────────────────────────────────────────────────────────────────
# Sort spec
# ────────────────────────────────────────────────────────────────


class SortSpec(BaseModel):
    column: str
    descending: bool = False


# ────────────────────────────────────────────────────────────────
# Filter specs (discriminated union)
# ────────────────────────────────────────────────────────────────


class SearchFilter(BaseModel):
    """Case-insensitive substring match against any of *columns*."""

    type: Literal["search"] = "search"
    columns: list[str]
    value: str


class ValueListFilter(BaseModel):
    type: Literal["value_list"] = "value_list"
    column: str
    values: list[Any]


class SinceFilter(BaseModel):
    """Keep rows whose ISO timestamp column is at or after *since*."""

    type: Literal["since"] = "since"
    column: str = "created_at"
    since: str


FilterSpec = SearchFilter | ValueListFilter | SinceFilter


# ────────────────────────────────────────────────────────────────
# Request model
# ────────────────────────────────────────────────────────────────

SEARCH_COLUMNS = ["title", "description", "status", "result", "bug_id"]
SORTABLE_COLUMNS = frozenset(BUG_SCHEMA) - {"id"}


class BugListQuery(BaseModel):
    """Search/filter/sort parameters of the bug list."""

    search: str | None = None
    severity: str | None = None
    status: str | None = None
    result: str | None = None
    project_id: str | None = None
    since: str | None = None
    sort: str = "bug_number"
    descending: bool = True
    limit: int | None = None

    def to_specs(self) -> tuple[list[SortSpec], list[FilterSpec]]:
        """Translate into sort and filter specs.

        ``"all"`` or an empty value disables an equality filter.

        Raises:
            ValueError: Unknown sort column.
        """
        if self.sort not in SORTABLE_COLUMNS:
            raise ValueError(f"Cannot sort by {self.sort!r}")
        filters: list[FilterSpec] = []
        if self.search and self.search.strip():
            filters.append(SearchFilter(columns=SEARCH_COLUMNS, value=self.search.strip()))
        for column in ("severity", "status", "result", "project_id"):
            value = getattr(self, column)
            if value and value != "all":
                filters.append(ValueListFilter(column=column, values=[value]))
        if self.since:
            filters.append(SinceFilter(since=self.since))
        return [SortSpec(column=self.sort, descending=self.descending)], filters


def query_bugs(df: pl.DataFrame, query: BugListQuery) -> pl.DataFrame:
    """Apply *query* to a frame built by :func:`bugs_frame`."""
    sorts, filters = query.to_specs()
    result = apply_view_transforms(df, sorts, filters)
    if query.limit is not None:
        result = result.head(max(query.limit, 0))
    return result


# ────────────────────────────────────────────────────────────────
# Transform engine
# ────────────────────────────────────────────────────────────────

_ROW_IDX_COL = "__view_row_idx__"


def apply_view_transforms(
    df: pl.DataFrame,
    sorts: list[SortSpec] | None = None,
    filters: list[FilterSpec] | None = None,
) -> pl.DataFrame:
    """Apply view-only sort/filter transforms to a DataFrame.

    Transform order: inject row index -> filter -> sort.
    String columns sort case-insensitively; the row index keeps ties
    in their original order.

    Args:
        df: Source DataFrame (not mutated).
        sorts: Sort specifications (applied in order).
        filters: Filter specifications (applied in order).

    Returns:
        Transformed DataFrame (without the internal row index column).
    """
    sorts = sorts or []
    filters = filters or []

    result = df.with_row_index(_ROW_IDX_COL)

    for f in filters:
        result = _apply_filter(result, f)

    if sorts:
        for s in sorts:
            if s.column not in result.columns:
                raise ValueError(f"Unknown column {s.column!r}")
        by = [_sort_key(result, s.column) for s in sorts] + [pl.col(_ROW_IDX_COL)]
        descending = [s.descending for s in sorts] + [False]
        result = result.sort(
            by=by,
            descending=descending,
            nulls_last=True,
            maintain_order=True,
        )

    return result.drop(_ROW_IDX_COL)


def _sort_key(df: pl.DataFrame, column: str) -> pl.Expr:
    if df.schema[column] == pl.String:
        return pl.col(column).str.to_lowercase()
    return pl.col(column)


def _apply_filter(df: pl.DataFrame, spec: FilterSpec) -> pl.DataFrame:
    """Apply a single filter spec to a DataFrame."""
    if isinstance(spec, SearchFilter):
        needle = spec.value.lower()
        matches = [
            pl.col(c).cast(pl.String).str.to_lowercase().str.contains(needle, literal=True).fill_null(False)
            for c in spec.columns
        ]
        return df.filter(pl.any_horizontal(matches))

    if isinstance(spec, ValueListFilter):
        return df.filter(pl.col(spec.column).is_in(spec.values))

    if isinstance(spec, SinceFilter):
        return df.filter(pl.col(spec.column) >= spec.since)

    return df
