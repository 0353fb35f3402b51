"""Field mapping from raw import rows to :class:`ParsedBug` records.

The mapper is pure and total: unknown enum values fall back to their
defaults, a blank title becomes ``"Untitled Bug"``, and no row is ever
rejected.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, TypeVar

from bugdesk.models import (
    UNTITLED_BUG,
    ParsedBug,
    Priority,
    ProjectContext,
    Result,
    Severity,
    Status,
    format_bug_id,
)

# Recognized import columns (case-sensitive header names)
COL_TITLE = "Title"
COL_DESCRIPTION = "Description"
COL_SEVERITY = "Severity"
COL_PRIORITY = "Priority"
COL_STATUS = "Status"
COL_RESULT = "Result"
COL_STEPS = "Steps_to_reproduce"
COL_EXPECTED = "Expected_result"
COL_ACTUAL = "Actual_result"
COL_ATTACHMENT = "Attachment"

RECOGNIZED_COLUMNS = (
    COL_TITLE,
    COL_DESCRIPTION,
    COL_SEVERITY,
    COL_PRIORITY,
    COL_STATUS,
    COL_RESULT,
    COL_STEPS,
    COL_EXPECTED,
    COL_ACTUAL,
    COL_ATTACHMENT,
)

E = TypeVar("E", bound=Enum)


def cell_text(value: Any) -> str:
    """Render a cell as stripped text; None becomes ``""``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def coerce_enum(enum_cls: type[E], value: Any, default: E) -> E:
    """Match *value* to a member of *enum_cls*, else return *default*.

    Exact matches win; otherwise the comparison ignores case and
    surrounding whitespace.
    """
    text = cell_text(value)
    if not text:
        return default
    try:
        return enum_cls(text)
    except ValueError:
        pass
    folded = text.casefold()
    for member in enum_cls:
        if str(member.value).casefold() == folded:
            return member
    return default


def map_row(
    row: dict[str, Any],
    context: ProjectContext,
    bug_number: int,
    *,
    created_by: str | None = None,
) -> ParsedBug:
    """Map one import row to a :class:`ParsedBug`.

    Args:
        row: Column header -> raw cell value.
        context: Resolved project identifier, number and id prefix.
        bug_number: Sequence number claimed for this row.
        created_by: Optional author recorded on the bug.
    """
    attachment = cell_text(row.get(COL_ATTACHMENT))
    return ParsedBug(
        title=cell_text(row.get(COL_TITLE)) or UNTITLED_BUG,
        description=cell_text(row.get(COL_DESCRIPTION)),
        severity=coerce_enum(Severity, row.get(COL_SEVERITY), Severity.medium),
        priority=coerce_enum(Priority, row.get(COL_PRIORITY), Priority.medium),
        status=coerce_enum(Status, row.get(COL_STATUS), Status.new),
        result=coerce_enum(Result, row.get(COL_RESULT), Result.todo),
        steps_to_reproduce=cell_text(row.get(COL_STEPS)),
        expected_result=cell_text(row.get(COL_EXPECTED)),
        actual_result=cell_text(row.get(COL_ACTUAL)),
        bug_number=bug_number,
        bug_id=format_bug_id(context.bug_id_prefix, context.project_number, bug_number),
        project_id=context.project_id,
        attachment_url=attachment or None,
        created_by=created_by,
    )


def map_rows(
    rows: list[dict[str, Any]],
    context: ProjectContext,
    numbers: range,
    *,
    created_by: str | None = None,
) -> list[ParsedBug]:
    """Map rows in file order, pairing each with the next claimed number."""
    if len(numbers) != len(rows):
        raise ValueError(
            f"Allocated {len(numbers)} sequence numbers for {len(rows)} rows"
        )
    return [
        map_row(row, context, number, created_by=created_by)
        for row, number in zip(rows, numbers)
    ]
