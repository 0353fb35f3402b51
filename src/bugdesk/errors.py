"""Error types for the bulk import pipeline and the backing store."""

from __future__ import annotations

from enum import Enum


class ImportErrorKind(str, Enum):
    empty_input = "EmptyInput"
    unsupported_format = "UnsupportedFormat"
    row_limit_exceeded = "RowLimitExceeded"
    project_lookup_failure = "ProjectLookupFailure"
    bug_insert_failure = "BugInsertFailure"
    attachment_insert_failure = "AttachmentInsertFailure"
    sequence_collision = "SequenceCollision"


class BugImportError(Exception):
    """Base class for all import pipeline errors.

    Attributes:
        kind: The :class:`ImportErrorKind` reported to callers.
    """

    kind: ImportErrorKind

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ParseUpstreamFailure(BugImportError):
    """The uploaded file could not be turned into import rows."""


class EmptyInput(ParseUpstreamFailure):
    kind = ImportErrorKind.empty_input

    def __init__(self, message: str = "No data rows found in file") -> None:
        super().__init__(message)


class UnsupportedFormat(ParseUpstreamFailure):
    kind = ImportErrorKind.unsupported_format


class RowLimitExceeded(ParseUpstreamFailure):
    """The file holds more data rows than ``max_import_rows`` allows.

    Attributes:
        row_count: Data rows found in the file.
        limit: Configured maximum.
    """

    kind = ImportErrorKind.row_limit_exceeded

    def __init__(self, row_count: int, limit: int) -> None:
        self.row_count = row_count
        self.limit = limit
        super().__init__(f"File has {row_count} data rows (max {limit})")


class ProjectLookupFailure(BugImportError):
    kind = ImportErrorKind.project_lookup_failure

    def __init__(self, project_id: str, reason: str | None = None) -> None:
        self.project_id = project_id
        msg = f"Project not found: {project_id!r}"
        if reason:
            msg = f"Could not resolve project {project_id!r}: {reason}"
        super().__init__(msg)


class BugInsertFailure(BugImportError):
    """The bug batch insert failed; nothing from the batch was committed."""

    kind = ImportErrorKind.bug_insert_failure


class AttachmentInsertFailure(BugImportError):
    """Bugs were committed but their attachments were not.

    Attributes:
        committed_bug_ids: Identifiers of the bugs that are committed.
    """

    kind = ImportErrorKind.attachment_insert_failure

    def __init__(self, message: str, committed_bug_ids: list[str]) -> None:
        self.committed_bug_ids = list(committed_bug_ids)
        super().__init__(message)


class SequenceCollision(BugImportError):
    kind = ImportErrorKind.sequence_collision


# ---------------------------------------------------------------------------
# Store errors
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """A store operation failed."""


class SequenceCollisionError(StoreError):
    """An insert violated the ``(project_id, bug_number)`` uniqueness rule.

    Attributes:
        project_id: Project whose numbering collided.
    """

    def __init__(self, project_id: str | None, message: str | None = None) -> None:
        self.project_id = project_id
        super().__init__(message or f"bug_number collision in project {project_id!r}")
