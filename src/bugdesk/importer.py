"""Bulk bug import pipeline.

Stages, in order::

    parse -> (preview) -> resolve project -> allocate + map -> insert bugs
          -> insert attachments -> report

The bug batch is committed atomically.  Attachments are a second,
best-effort batch: if it fails the bugs stay committed and the result
is ``PartiallySucceeded`` with the pending attachments listed so they
can be re-linked by bug identifier.  Every failure is converted into an
:class:`ImportResult`; nothing is raised past :func:`run_import`.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from bugdesk.errors import (
    BugImportError,
    ImportErrorKind,
    ParseUpstreamFailure,
    ProjectLookupFailure,
    SequenceCollisionError,
    StoreError,
)
from bugdesk.logging.events import (
    ATTACHMENT_INSERT_FAILED,
    BUG_INSERT_FAILED,
    PARSE_EMPTY_INPUT,
    PARSE_ROW_LIMIT,
    PARSE_UNSUPPORTED_FORMAT,
    PROJECT_LOOKUP_FAILED,
    SEQUENCE_COLLISION,
    EventLevel,
    EventType,
    emit,
    make_import_event,
)
from bugdesk.mapping import map_rows
from bugdesk.models import AttachmentCandidate, ParsedBug, ProjectContext
from bugdesk.sequence import SequenceAllocator, get_allocator
from bugdesk.spreadsheet import ParsedSheet, build_preview, parse_spreadsheet
from bugdesk.store import BugStore
from bugdesk.workspace import DEFAULT_CONFIG


class ImportState(str, Enum):
    idle = "Idle"
    file_selected = "FileSelected"
    previewing = "Previewing"
    importing = "Importing"
    succeeded = "Succeeded"
    partially_succeeded = "PartiallySucceeded"
    failed = "Failed"


TERMINAL_STATES = frozenset({
    ImportState.succeeded,
    ImportState.partially_succeeded,
    ImportState.failed,
})

_ERROR_CODES: dict[ImportErrorKind, str] = {
    ImportErrorKind.empty_input: PARSE_EMPTY_INPUT,
    ImportErrorKind.unsupported_format: PARSE_UNSUPPORTED_FORMAT,
    ImportErrorKind.row_limit_exceeded: PARSE_ROW_LIMIT,
    ImportErrorKind.project_lookup_failure: PROJECT_LOOKUP_FAILED,
    ImportErrorKind.bug_insert_failure: BUG_INSERT_FAILED,
    ImportErrorKind.attachment_insert_failure: ATTACHMENT_INSERT_FAILED,
    ImportErrorKind.sequence_collision: SEQUENCE_COLLISION,
}


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class CommittedBug(BaseModel):
    id: str
    bug_number: int
    bug_id: str
    title: str


class CommitOutcome(BaseModel):
    """What the committer achieved; failures are fields, not exceptions."""

    committed_bugs: list[CommittedBug] = Field(default_factory=list)
    attachment_ids: list[str] = Field(default_factory=list)
    pending_attachments: list[AttachmentCandidate] = Field(default_factory=list)
    error_kind: ImportErrorKind | None = None
    error_message: str | None = None
    failed_stage: str | None = None


class ImportResult(BaseModel):
    """Summary handed back to the caller for user feedback."""

    import_id: str
    project_id: str
    filename: str | None = None
    state: ImportState
    total_rows: int = 0
    inserted_count: int = 0
    failure_reason: ImportErrorKind | None = None
    failed_stage: str | None = None
    message: str = ""
    committed_bugs: list[CommittedBug] = Field(default_factory=list)
    attachment_count: int = 0
    pending_attachments: list[AttachmentCandidate] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is ImportState.succeeded

    def summary(self) -> dict[str, Any]:
        return {
            "inserted_count": self.inserted_count,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
        }


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def resolve_project_context(
    store: BugStore,
    project_id: str,
    bug_id_prefix: str = "SCB",
) -> ProjectContext:
    """Look up the project's number for composite bug identifiers.

    Raises:
        ProjectLookupFailure: Unknown project or store failure.
    """
    try:
        project = store.get_project(project_id)
    except StoreError as exc:
        raise ProjectLookupFailure(project_id, str(exc)) from exc
    if project is None:
        raise ProjectLookupFailure(project_id)
    return ProjectContext(
        project_id=project.id,
        project_number=project.project_number if project.project_number is not None else 1,
        bug_id_prefix=bug_id_prefix,
    )


def commit_batch(store: BugStore, bugs: list[ParsedBug]) -> CommitOutcome:
    """Insert *bugs* as one batch, then their link attachments as a second.

    Attachment candidates are built only from identifiers returned by a
    successful bug insert, matched by input order.
    """
    try:
        ids = store.insert_bugs(bugs)
    except SequenceCollisionError as exc:
        return CommitOutcome(
            error_kind=ImportErrorKind.sequence_collision,
            error_message=str(exc),
            failed_stage="insert_bugs",
        )
    except Exception as exc:
        import logging

        logging.getLogger(__name__).debug("Bug batch insert failed", exc_info=True)
        return CommitOutcome(
            error_kind=ImportErrorKind.bug_insert_failure,
            error_message=str(exc),
            failed_stage="insert_bugs",
        )

    if bugs and not ids:
        return CommitOutcome(
            error_kind=ImportErrorKind.bug_insert_failure,
            error_message="No bugs were inserted",
            failed_stage="insert_bugs",
        )

    committed = [
        CommittedBug(id=bid, bug_number=bug.bug_number, bug_id=bug.bug_id, title=bug.title)
        for bid, bug in zip(ids, bugs)
    ]
    candidates = [
        AttachmentCandidate(bug_id=bid, type="link", url=bug.attachment_url)
        for bid, bug in zip(ids, bugs)
        if bug.attachment_url
    ]
    if not candidates:
        return CommitOutcome(committed_bugs=committed)

    try:
        attachment_ids = store.insert_attachments(candidates)
    except Exception as exc:
        import logging

        logging.getLogger(__name__).debug(
            "Attachment batch insert failed (bugs kept)", exc_info=True
        )
        return CommitOutcome(
            committed_bugs=committed,
            pending_attachments=candidates,
            error_kind=ImportErrorKind.attachment_insert_failure,
            error_message=str(exc),
            failed_stage="insert_attachments",
        )
    return CommitOutcome(committed_bugs=committed, attachment_ids=attachment_ids)


def report_outcome(
    import_id: str,
    project_id: str,
    *,
    filename: str | None = None,
    total_rows: int = 0,
    outcome: CommitOutcome | None = None,
    error: BugImportError | None = None,
    failed_stage: str | None = None,
) -> ImportResult:
    """Fold a commit outcome or an early error into an :class:`ImportResult`."""
    base: dict[str, Any] = {
        "import_id": import_id,
        "project_id": project_id,
        "filename": filename,
        "total_rows": total_rows,
    }

    if error is not None:
        return ImportResult(
            **base,
            state=ImportState.failed,
            failure_reason=error.kind,
            failed_stage=failed_stage,
            message=f"Import failed at {failed_stage}: {error.message}",
        )

    if outcome is None:
        raise ValueError("report_outcome needs either an outcome or an error")

    inserted = len(outcome.committed_bugs)
    noun = "bug" if inserted == 1 else "bugs"

    if outcome.error_kind is None:
        message = f"Imported {inserted} {noun}."
        if outcome.attachment_ids:
            message = f"Imported {inserted} {noun} with {len(outcome.attachment_ids)} attachment(s)."
        return ImportResult(
            **base,
            state=ImportState.succeeded,
            inserted_count=inserted,
            message=message,
            committed_bugs=outcome.committed_bugs,
            attachment_count=len(outcome.attachment_ids),
        )

    if outcome.error_kind is ImportErrorKind.attachment_insert_failure:
        return ImportResult(
            **base,
            state=ImportState.partially_succeeded,
            inserted_count=inserted,
            failure_reason=outcome.error_kind,
            failed_stage=outcome.failed_stage,
            message=(
                f"Imported {inserted} {noun}, but {len(outcome.pending_attachments)} "
                f"attachment(s) failed: {outcome.error_message}. "
                "Re-link them by bug id; re-running the import would duplicate the bugs."
            ),
            committed_bugs=outcome.committed_bugs,
            pending_attachments=outcome.pending_attachments,
        )

    return ImportResult(
        **base,
        state=ImportState.failed,
        failure_reason=outcome.error_kind,
        failed_stage=outcome.failed_stage,
        message=f"Import failed at {outcome.failed_stage}: {outcome.error_message}",
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def run_import(
    store: BugStore,
    project_id: str,
    data: bytes,
    filename: str | None = None,
    *,
    config: dict[str, Any] | None = None,
    created_by: str | None = None,
    allocator: SequenceAllocator | None = None,
) -> ImportResult:
    """Import every row of a spreadsheet into *project_id*.

    Args:
        store: Backing store used for every read and write.
        project_id: Project that owns the new bugs.
        data: Raw bytes of the uploaded file.
        filename: Original file name, for reporting.
        config: Workspace config (defaults when None).
        created_by: Optional author recorded on each bug.
        allocator: Override the configured sequence allocator.

    Returns:
        The :class:`ImportResult`; its ``state`` is always terminal.
    """
    cfg = dict(DEFAULT_CONFIG)
    if config:
        cfg.update(config)
    import_id = str(uuid.uuid4())

    emit(make_import_event(
        EventType.import_started,
        EventLevel.info,
        f"Import started: {filename or '<upload>'} ({len(data)} bytes)",
        import_id=import_id,
        project_id=project_id,
        filename=filename,
    ), import_id=import_id)

    report: dict[str, Any] = {"filename": filename}

    try:
        sheet = parse_spreadsheet(data, filename, max_rows=int(cfg["max_import_rows"]))
    except ParseUpstreamFailure as exc:
        return _finish(report_outcome(
            import_id, project_id, **report, error=exc, failed_stage="parse",
        ))
    report["total_rows"] = len(sheet)

    try:
        context = resolve_project_context(store, project_id, str(cfg["bug_id_prefix"]))
    except ProjectLookupFailure as exc:
        return _finish(report_outcome(
            import_id, project_id, **report, error=exc, failed_stage="project_lookup",
        ))

    outcome = _allocate_and_commit(
        store,
        sheet,
        context,
        allocator or get_allocator(store, cfg),
        retry_limit=int(cfg["sequence_retry_limit"]),
        created_by=created_by,
        import_id=import_id,
    )
    return _finish(report_outcome(import_id, project_id, **report, outcome=outcome))


def _allocate_and_commit(
    store: BugStore,
    sheet: ParsedSheet,
    context: ProjectContext,
    allocator: SequenceAllocator,
    *,
    retry_limit: int,
    created_by: str | None,
    import_id: str,
) -> CommitOutcome:
    """Claim numbers, map rows and commit; retry the claim on collision."""
    rows = list(sheet)
    attempt = 0
    while True:
        try:
            numbers = allocator.allocate(context.project_id, len(rows))
        except Exception as exc:
            return CommitOutcome(
                error_kind=ImportErrorKind.bug_insert_failure,
                error_message=f"sequence allocation failed: {exc}",
                failed_stage="allocate",
            )

        bugs = map_rows(rows, context, numbers, created_by=created_by)
        outcome = commit_batch(store, bugs)
        if outcome.failed_stage == "insert_bugs":
            release_numbers(allocator, context.project_id, numbers)

        if outcome.error_kind is not ImportErrorKind.sequence_collision or attempt >= retry_limit:
            return outcome

        attempt += 1
        emit(make_import_event(
            EventType.sequence_collision,
            EventLevel.warning,
            f"bug_number collision on {numbers.start}..{numbers.stop - 1}; "
            f"retrying allocation ({attempt}/{retry_limit})",
            import_id=import_id,
            project_id=context.project_id,
            error_code=SEQUENCE_COLLISION,
        ), import_id=import_id)


def release_numbers(allocator: SequenceAllocator, project_id: str, numbers: range) -> None:
    """Hand an unused block back to *allocator*; a failed release only leaves a gap."""
    try:
        allocator.release(project_id, numbers)
    except Exception:
        import logging

        logging.getLogger(__name__).debug(
            "Could not release bug numbers %d..%d", numbers.start, numbers.stop - 1,
            exc_info=True,
        )


def _finish(result: ImportResult) -> ImportResult:
    """Emit the terminal event for *result* and return it."""
    if result.state is ImportState.succeeded:
        event_type, level, code = EventType.import_completed, EventLevel.info, None
    elif result.state is ImportState.partially_succeeded:
        event_type, level = EventType.import_partial, EventLevel.warning
        code = _ERROR_CODES.get(result.failure_reason) if result.failure_reason else None
    else:
        event_type, level = EventType.import_failed, EventLevel.error
        code = _ERROR_CODES.get(result.failure_reason) if result.failure_reason else None

    extra: dict[str, Any] = {
        "total_rows": result.total_rows,
        "inserted_count": result.inserted_count,
        "attachment_count": result.attachment_count,
    }
    if result.failed_stage:
        extra["failed_stage"] = result.failed_stage
    if result.pending_attachments:
        extra["pending_bug_ids"] = [c.bug_id for c in result.pending_attachments]

    emit(make_import_event(
        event_type,
        level,
        result.message,
        import_id=result.import_id,
        project_id=result.project_id,
        filename=result.filename,
        error_code=code,
        extra=extra,
    ), import_id=result.import_id)
    return result


# ---------------------------------------------------------------------------
# Session state machine
# ---------------------------------------------------------------------------


class SessionStateError(RuntimeError):
    """An import session action is not valid in the current state."""


class ImportSession:
    """One user-driven import: select a file, preview it, confirm.

    ``Idle -> FileSelected -> Previewing -> Importing -> terminal``.
    Terminal states are left only by selecting a new file (or
    :meth:`reset`).  The preview is display-only; :meth:`confirm`
    imports every row of the selected file.
    """

    def __init__(
        self,
        store: BugStore,
        project_id: str,
        *,
        config: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> None:
        self.store = store
        self.project_id = project_id
        self.config = dict(DEFAULT_CONFIG)
        if config:
            self.config.update(config)
        self.created_by = created_by
        self.state = ImportState.idle
        self.filename: str | None = None
        self.result: ImportResult | None = None
        self._data: bytes | None = None

    def _require(self, *allowed: ImportState) -> None:
        if self.state not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise SessionStateError(
                f"Cannot do this while {self.state.value}; expected one of: {names}"
            )

    def _selected_data(self) -> bytes:
        if self._data is None:
            raise SessionStateError("No file has been selected")
        return self._data

    def select_file(self, data: bytes, filename: str | None = None) -> None:
        if self.state is ImportState.importing:
            raise SessionStateError("Cannot select a file while an import is running")
        if self.state in TERMINAL_STATES:
            self.reset()
        self._data = data
        self.filename = filename
        self.result = None
        self.state = ImportState.file_selected

    def preview(self, n: int | None = None) -> dict[str, Any]:
        """Parse the selected file and return its first rows.

        Raises:
            ParseUpstreamFailure: The file cannot be imported; the session
                moves to ``Failed`` and :attr:`result` explains why.
        """
        self._require(ImportState.file_selected, ImportState.previewing)
        data = self._selected_data()
        try:
            sheet = parse_spreadsheet(
                data, self.filename, max_rows=int(self.config["max_import_rows"]),
            )
        except ParseUpstreamFailure as exc:
            self.state = ImportState.failed
            self.result = report_outcome(
                str(uuid.uuid4()), self.project_id,
                filename=self.filename, error=exc, failed_stage="parse",
            )
            raise
        self.state = ImportState.previewing
        count = n if n is not None else int(self.config["preview_rows"])
        payload = build_preview(sheet, count)
        emit(make_import_event(
            EventType.import_previewed,
            EventLevel.info,
            f"Previewed {payload['preview_count']} of {payload['total_rows']} rows",
            project_id=self.project_id,
            filename=self.filename,
        ))
        return payload

    def confirm(self) -> ImportResult:
        """Run the import for the selected file."""
        self._require(ImportState.file_selected, ImportState.previewing)
        data = self._selected_data()
        self.state = ImportState.importing
        try:
            result = run_import(
                self.store,
                self.project_id,
                data,
                self.filename,
                config=self.config,
                created_by=self.created_by,
            )
        except BaseException:
            self.state = ImportState.failed
            raise
        self.result = result
        self.state = result.state
        return result

    def reset(self) -> None:
        """Return a finished session to ``Idle``."""
        if self.state is ImportState.importing:
            raise SessionStateError("Cannot reset while an import is running")
        self.state = ImportState.idle
        self._data = None
        self.filename = None
        self.result = None
