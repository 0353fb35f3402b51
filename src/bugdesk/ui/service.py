"""Service layer behind the bugdesk HTTP API.

Wraps one workspace: its config, its store and the event sink.  Routes
in :mod:`bugdesk.ui.server` are thin wrappers over this class.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any

from bugdesk import tracker
from bugdesk.errors import ProjectLookupFailure
from bugdesk.export import (
    all_bugs_export_filename,
    bug_list_csv,
    project_export_filename,
    report_csv,
    report_export_filename,
)
from bugdesk.importer import ImportResult, ImportSession
from bugdesk.logging.events import set_workspace_dir
from bugdesk.logging.sink import EventSink
from bugdesk.models import Attachment, AttachmentCandidate, Bug, Comment, Project
from bugdesk.reports import BugReport, bug_report, filter_report_frame
from bugdesk.store import open_store
from bugdesk.views import BugListQuery, bugs_frame, query_bugs
from bugdesk.workspace import load_workspace_config

ACCEPTED_EXTENSIONS = (".xlsx", ".xls", ".csv")


def validate_upload(filename: str | None, data: bytes, max_bytes: int) -> None:
    """Reject uploads the importer should never see.

    Raises:
        ValueError: Wrong extension, empty file, or larger than *max_bytes*.
    """
    fname = (filename or "").lower()
    if not fname.endswith(ACCEPTED_EXTENSIONS):
        raise ValueError("Only .xlsx, .xls and .csv files are accepted")
    if len(data) == 0:
        raise ValueError("Uploaded file is empty")
    if len(data) > max_bytes:
        raise ValueError(f"File too large (max {max_bytes // (1024 * 1024)} MB)")


class WorkspaceService:
    """Operations on a single bugdesk workspace.

    Parameters
    ----------
    workspace_dir : Path
        Directory holding ``bugdesk.yaml``.
    """

    def __init__(self, workspace_dir: Path | None = None) -> None:
        if workspace_dir is None:
            raise ValueError("workspace_dir is required")
        self.workspace_dir = workspace_dir.resolve()
        if not (self.workspace_dir / "bugdesk.yaml").exists():
            raise FileNotFoundError(f"No bugdesk.yaml in {self.workspace_dir}")
        self.config: dict[str, Any] = load_workspace_config(self.workspace_dir)
        self.store = open_store(self.workspace_dir, self.config)
        set_workspace_dir(self.workspace_dir)

    def close(self) -> None:
        self.store.close()

    @property
    def max_upload_bytes(self) -> int:
        return int(self.config["max_upload_bytes"])

    # -- Projects --

    def list_projects(self) -> list[Project]:
        return self.store.list_projects()

    def create_project(self, name: str, description: str = "") -> Project:
        return tracker.create_project(self.store, name, description)

    def get_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectLookupFailure(project_id)
        return project

    def update_project(self, project_id: str, name: str, description: str = "") -> Project:
        return tracker.update_project(self.store, project_id, name, description)

    def delete_project(self, project_id: str) -> int:
        return tracker.delete_project(self.store, project_id)

    # -- Bugs --

    def _frame(self, project_id: str | None = None):
        return bugs_frame(
            self.store.list_bugs(project_id),
            self.store.list_projects(),
            bug_id_prefix=str(self.config["bug_id_prefix"]),
        )

    def list_bugs(self, query: BugListQuery) -> list[dict[str, Any]]:
        if query.project_id:
            self.get_project(query.project_id)
        return query_bugs(self._frame(query.project_id), query).to_dicts()

    def create_bug(self, project_id: str, draft: tracker.BugDraft) -> Bug:
        return tracker.create_bug(self.store, project_id, draft, config=self.config)

    def get_bug(self, bug_id: str) -> Bug:
        return tracker.get_bug(self.store, bug_id)

    def bug_detail(self, bug_id: str) -> dict[str, Any]:
        """One bug with its project name, attachments and comments."""
        bug = tracker.get_bug(self.store, bug_id)
        project = self.store.get_project(bug.project_id)
        return {
            **bug.model_dump(),
            "project_name": project.name if project else None,
            "attachments": [a.model_dump() for a in self.store.list_attachments(bug_id)],
            "comments": [c.model_dump() for c in self.store.list_comments(bug_id)],
        }

    def update_bug(self, bug_id: str, update: tracker.BugUpdate) -> Bug:
        return tracker.update_bug(self.store, bug_id, update)

    def delete_bug(self, bug_id: str) -> None:
        tracker.delete_bug(self.store, bug_id)

    def list_comments(self, bug_id: str) -> list[Comment]:
        if self.store.get_bug(bug_id) is None:
            raise LookupError(f"Bug not found: {bug_id!r}")
        return self.store.list_comments(bug_id)

    def add_comment(self, bug_id: str, content: str, author: str | None = None) -> Comment:
        return tracker.add_comment(self.store, bug_id, content, author)

    def delete_comment(self, comment_id: str) -> Comment:
        return tracker.delete_comment(self.store, comment_id)

    def list_attachments(self, bug_id: str) -> list[Attachment]:
        tracker.get_bug(self.store, bug_id)
        return self.store.list_attachments(bug_id)

    def link_attachments(self, candidates: list[AttachmentCandidate]) -> list[str]:
        return tracker.link_attachments(self.store, candidates)

    def delete_attachment(self, attachment_id: str) -> Attachment:
        return tracker.delete_attachment(self.store, attachment_id)

    # -- Import --

    def preview_upload(self, project_id: str, data: bytes, filename: str | None) -> dict[str, Any]:
        """Parse an upload and return its first rows without importing."""
        self.get_project(project_id)
        session = ImportSession(self.store, project_id, config=self.config)
        session.select_file(data, filename)
        return session.preview()

    def import_upload(
        self,
        project_id: str,
        data: bytes,
        filename: str | None,
        created_by: str | None = None,
    ) -> ImportResult:
        session = ImportSession(self.store, project_id, config=self.config, created_by=created_by)
        session.select_file(data, filename)
        return session.confirm()

    # -- Export / reports --

    def export_project_bugs(
        self, project_id: str, query: BugListQuery | None = None, today: date | None = None,
    ) -> tuple[str, bytes]:
        project = self.get_project(project_id)
        query = (query or BugListQuery()).model_copy(update={"project_id": project_id})
        df = query_bugs(self._frame(project_id), query)
        return project_export_filename(project.name, today), bug_list_csv(df)

    def export_all_bugs(
        self, query: BugListQuery | None = None, today: date | None = None,
    ) -> tuple[str, bytes]:
        df = query_bugs(self._frame(), query or BugListQuery())
        return all_bugs_export_filename(today), bug_list_csv(df)

    def report(self, date_range: str = "all", project_id: str | None = None) -> BugReport:
        if project_id and project_id != "all":
            self.get_project(project_id)
        return bug_report(self._frame(), date_range, project_id)

    def export_report(
        self, date_range: str = "all", project_id: str | None = None, today: date | None = None,
    ) -> tuple[str, bytes]:
        if project_id and project_id != "all":
            self.get_project(project_id)
        df = filter_report_frame(self._frame(), date_range, project_id)
        return report_export_filename(date_range, today), report_csv(df)

    # -- Events --

    def read_events(self, **filters: Any) -> list[dict[str, Any]]:
        sink = EventSink(self.workspace_dir)
        return sink.read_global(**filters)

    def read_import_log(self, import_id: str) -> list[dict[str, Any]]:
        return EventSink(self.workspace_dir).read_import_log(import_id)
