"""Typed records shared by the store, the import pipeline and the API."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    crash = "Crash/Undoable"
    high = "High"
    medium = "Medium"
    low = "Low"
    suggestion = "Suggestion"


class Priority(str, Enum):
    highest = "Highest"
    high = "High"
    medium = "Medium"
    low = "Low"


class Status(str, Enum):
    new = "New"
    open = "Open"
    blocked = "Blocked"
    fixed = "Fixed"
    to_fix_in_update = "To Fix in Update"
    will_not_fix = "Will Not Fix"
    in_progress = "In Progress"


class Result(str, Enum):
    confirmed = "Confirmed"
    closed = "Closed"
    unresolved = "Unresolved"
    todo = "To-Do"


UNTITLED_BUG = "Untitled Bug"


def utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def format_bug_id(prefix: str, project_number: int | None, bug_number: int | None) -> str:
    """Build the composite bug identifier, e.g. ``SCB-02-007``.

    A project without a number is displayed as project 1.
    """
    pn = project_number if project_number is not None else 1
    bn = bug_number if bug_number is not None else 0
    return f"{prefix}-{pn:02d}-{bn:03d}"


# ---------------------------------------------------------------------------
# Persistent records
# ---------------------------------------------------------------------------


class Project(BaseModel):
    id: str
    name: str
    description: str = ""
    project_number: int | None = None
    created_at: str | None = None


class ProjectContext(BaseModel):
    """Project facts the field mapper needs, resolved once per import."""

    project_id: str
    project_number: int = 1
    bug_id_prefix: str = "SCB"


class ParsedBug(BaseModel):
    """A normalized bug ready for insertion."""

    title: str = UNTITLED_BUG
    description: str = ""
    severity: Severity = Severity.medium
    priority: Priority = Priority.medium
    status: Status = Status.new
    result: Result = Result.todo
    steps_to_reproduce: str = ""
    expected_result: str = ""
    actual_result: str = ""
    bug_number: int = Field(ge=1)
    bug_id: str
    project_id: str
    attachment_url: str | None = None
    created_by: str | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: str) -> str:
        v = v.strip()
        return v or UNTITLED_BUG


class Bug(BaseModel):
    id: str
    project_id: str
    bug_number: int | None = None
    bug_id: str | None = None
    title: str
    description: str | None = None
    severity: str | None = None
    priority: str | None = None
    status: str | None = None
    result: str | None = None
    steps_to_reproduce: str | None = None
    expected_result: str | None = None
    actual_result: str | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class AttachmentCandidate(BaseModel):
    bug_id: str
    type: str = "link"
    url: str


class Attachment(BaseModel):
    id: str
    bug_id: str
    type: str | None = None
    url: str
    created_at: str | None = None


class Comment(BaseModel):
    id: str
    bug_id: str
    content: str
    author: str | None = None
    created_at: str | None = None
