"""Tests for single-record tracker operations."""

from __future__ import annotations

from pathlib import Path

import pytest

from bugdesk.errors import StoreError
from bugdesk.store import SqliteStore


@pytest.fixture
def store(tmp_path: Path):
    s = SqliteStore(tmp_path / "bugdesk.db")
    yield s
    s.close()


@pytest.fixture
def project(store):
    from bugdesk.tracker import create_project

    return create_project(store, "  Mobile App ", "iOS and Android")


class TestCreateProject:
    def test_name_is_stripped(self, project) -> None:
        assert project.name == "Mobile App"
        assert project.project_number == 1

    def test_blank_name_rejected(self, store) -> None:
        from bugdesk.tracker import create_project

        with pytest.raises(ValueError, match="name is required"):
            create_project(store, "   ")


class TestCreateBug:
    def test_defaults_and_composite_id(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, create_bug

        bug = create_bug(store, project.id, BugDraft(title="Login spins"), created_by="qa")
        assert bug.bug_number == 1
        assert bug.bug_id == "SCB-01-001"
        assert bug.severity == "Medium"
        assert bug.priority == "Medium"
        assert bug.status == "New"
        assert bug.result == "To-Do"
        assert bug.created_by == "qa"

    def test_blank_title_rejected(self) -> None:
        from pydantic import ValidationError

        from bugdesk.tracker import BugDraft

        with pytest.raises(ValidationError):
            BugDraft(title="  ")

    def test_invalid_enum_rejected(self) -> None:
        from pydantic import ValidationError

        from bugdesk.tracker import BugDraft

        with pytest.raises(ValidationError):
            BugDraft(title="x", severity="Catastrophic")

    def test_shares_sequence_with_import(self, store, project) -> None:
        from bugdesk.importer import run_import
        from bugdesk.tracker import BugDraft, create_bug

        run_import(store, project.id, b"Title\na\nb\n")
        bug = create_bug(store, project.id, BugDraft(title="manual"))
        assert bug.bug_number == 3
        result = run_import(store, project.id, b"Title\nc\n")
        assert result.committed_bugs[0].bug_number == 4

    def test_attachment_url_linked(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, create_bug

        bug = create_bug(store, project.id, BugDraft(title="x", attachment_url=" https://x/a.png "))
        (att,) = store.list_attachments(bug.id)
        assert att.url == "https://x/a.png"

    def test_unknown_project(self, store) -> None:
        from bugdesk.errors import ProjectLookupFailure
        from bugdesk.tracker import BugDraft, create_bug

        with pytest.raises(ProjectLookupFailure):
            create_bug(store, "nope", BugDraft(title="x"))

    def test_attachment_failure_keeps_bug(self, tmp_path: Path) -> None:
        from bugdesk.errors import AttachmentInsertFailure
        from bugdesk.tracker import BugDraft, create_bug, create_project

        class NoAttachments(SqliteStore):
            def insert_attachments(self, candidates):
                raise StoreError("locked")

        store = NoAttachments(tmp_path / "x.db")
        project = create_project(store, "P")
        with pytest.raises(AttachmentInsertFailure) as exc_info:
            create_bug(store, project.id, BugDraft(title="x", attachment_url="https://x"))
        (bug_id,) = exc_info.value.committed_bug_ids
        assert store.get_bug(bug_id) is not None
        store.close()

    def test_read_max_continues_after_unclaimed_rows(self, store, project) -> None:
        from bugdesk.models import ParsedBug
        from bugdesk.tracker import BugDraft, create_bug

        # Written without claiming through the counter
        store.insert_bugs([ParsedBug(title="x", bug_number=1, bug_id="SCB-01-001", project_id=project.id)])
        bug = create_bug(store, project.id, BugDraft(title="y"), config={"sequence_allocator": "read_max"})
        assert bug.bug_number == 2


class TestDeleteAndComments:
    def test_delete_missing_bug(self, store) -> None:
        from bugdesk.tracker import delete_bug

        with pytest.raises(LookupError):
            delete_bug(store, "ghost")

    def test_comment_lifecycle(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, add_comment, create_bug, delete_bug

        bug = create_bug(store, project.id, BugDraft(title="x"))
        comment = add_comment(store, bug.id, "  reproduced on 1.2  ", author="dev")
        assert comment.content == "reproduced on 1.2"
        delete_bug(store, bug.id)
        assert store.list_comments(bug.id) == []

    def test_empty_comment_rejected(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, add_comment, create_bug

        bug = create_bug(store, project.id, BugDraft(title="x"))
        with pytest.raises(ValueError):
            add_comment(store, bug.id, "   ")

    def test_comment_on_missing_bug(self, store) -> None:
        from bugdesk.tracker import add_comment

        with pytest.raises(LookupError):
            add_comment(store, "ghost", "hello")


class TestLinkAttachments:
    def test_skips_existing_links(self, store, project) -> None:
        from bugdesk.models import AttachmentCandidate
        from bugdesk.tracker import BugDraft, create_bug, link_attachments

        bug = create_bug(store, project.id, BugDraft(title="x", attachment_url="https://x/1"))
        ids = link_attachments(store, [
            AttachmentCandidate(bug_id=bug.id, url="https://x/1"),
            AttachmentCandidate(bug_id=bug.id, url="https://x/2"),
            AttachmentCandidate(bug_id=bug.id, url="https://x/2"),
        ])
        assert len(ids) == 1
        assert sorted(a.url for a in store.list_attachments(bug.id)) == ["https://x/1", "https://x/2"]

    def test_unknown_bug(self, store) -> None:
        from bugdesk.models import AttachmentCandidate
        from bugdesk.tracker import link_attachments

        with pytest.raises(LookupError):
            link_attachments(store, [AttachmentCandidate(bug_id="ghost", url="https://x")])


class TestCreateBugFailures:
    def test_insert_failure_releases_number(self, tmp_path: Path) -> None:
        from bugdesk.errors import BugInsertFailure
        from bugdesk.tracker import BugDraft, create_bug, create_project

        class BrokenOnce(SqliteStore):
            broken = True

            def insert_bugs(self, bugs):
                if self.broken:
                    self.broken = False
                    raise StoreError("disk I/O error")
                return super().insert_bugs(bugs)

        store = BrokenOnce(tmp_path / "x.db")
        project = create_project(store, "P")
        with pytest.raises(BugInsertFailure, match="disk I/O error"):
            create_bug(store, project.id, BugDraft(title="x"))
        assert create_bug(store, project.id, BugDraft(title="y")).bug_number == 1
        store.close()

    def test_insert_failure_logged_as_error(self, tmp_path: Path) -> None:
        from bugdesk.errors import BugInsertFailure
        from bugdesk.logging.events import clear_workspace_dir, set_workspace_dir
        from bugdesk.logging.sink import EventSink
        from bugdesk.tracker import BugDraft, create_bug, create_project
        from bugdesk.workspace import resolve_db_path, scaffold_workspace

        class Broken(SqliteStore):
            def insert_bugs(self, bugs):
                raise StoreError("disk I/O error")

        ws = scaffold_workspace(tmp_path / "ws")
        set_workspace_dir(ws)
        store = Broken(resolve_db_path(ws))
        try:
            project = create_project(store, "P")
            with pytest.raises(BugInsertFailure):
                create_bug(store, project.id, BugDraft(title="x"))
        finally:
            store.close()
            clear_workspace_dir()

        (event,) = EventSink(ws).read_global(event_type="bug_create_failed")
        assert event["level"] == "error"
        assert event["error_code"] == "bug_insert_failed"
        assert event["context"]["project_id"] == project.id


class TestGetAndUpdateBug:
    def test_get_missing_bug(self, store) -> None:
        from bugdesk.tracker import get_bug

        with pytest.raises(LookupError):
            get_bug(store, "ghost")

    def test_update_fields_and_workflow(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, BugUpdate, create_bug, update_bug

        bug = create_bug(store, project.id, BugDraft(title="Login spins"))
        updated = update_bug(store, bug.id, BugUpdate(
            title=" Login spins forever ", status="Fixed", result="Closed", assigned_to=" dev ",
        ))
        assert updated.title == "Login spins forever"
        assert updated.status == "Fixed"
        assert updated.result == "Closed"
        assert updated.assigned_to == "dev"
        assert updated.severity == "Medium"
        assert (updated.bug_number, updated.bug_id) == (bug.bug_number, bug.bug_id)
        assert updated.updated_at >= bug.updated_at

    def test_empty_assignee_clears(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, BugUpdate, create_bug, update_bug

        bug = create_bug(store, project.id, BugDraft(title="x"))
        update_bug(store, bug.id, BugUpdate(assigned_to="dev"))
        assert update_bug(store, bug.id, BugUpdate(assigned_to="")).assigned_to is None

    def test_empty_update_is_noop(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, BugUpdate, create_bug, update_bug

        bug = create_bug(store, project.id, BugDraft(title="x"))
        assert update_bug(store, bug.id, BugUpdate()) == bug

    def test_update_validation(self) -> None:
        from pydantic import ValidationError

        from bugdesk.tracker import BugUpdate

        with pytest.raises(ValidationError):
            BugUpdate(title="  ")
        with pytest.raises(ValidationError):
            BugUpdate(status="Done")

    def test_update_missing_bug(self, store) -> None:
        from bugdesk.tracker import BugUpdate, update_bug

        with pytest.raises(LookupError):
            update_bug(store, "ghost", BugUpdate(status="Open"))

    def test_store_rejects_non_editable_columns(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, create_bug

        bug = create_bug(store, project.id, BugDraft(title="x"))
        with pytest.raises(ValueError, match="bug_number"):
            store.update_bug(bug.id, {"bug_number": 9})


class TestEditProjects:
    def test_update_project(self, store, project) -> None:
        from bugdesk.tracker import update_project

        updated = update_project(store, project.id, " Mobile ", " apps ")
        assert (updated.name, updated.description) == ("Mobile", "apps")
        assert updated.project_number == project.project_number

    def test_update_project_errors(self, store, project) -> None:
        from bugdesk.tracker import update_project

        with pytest.raises(ValueError):
            update_project(store, project.id, " ")
        with pytest.raises(LookupError):
            update_project(store, "ghost", "name")

    def test_delete_project_removes_its_bugs(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, add_comment, create_bug, create_project, delete_project

        other = create_project(store, "Other")
        kept = create_bug(store, other.id, BugDraft(title="keep"))
        bug = create_bug(store, project.id, BugDraft(title="x", attachment_url="https://x/1"))
        add_comment(store, bug.id, "seen")
        create_bug(store, project.id, BugDraft(title="y"))

        assert delete_project(store, project.id) == 2
        assert store.get_project(project.id) is None
        assert store.list_bugs(project.id) == []
        assert store.list_attachments(bug.id) == []
        assert store.list_comments(bug.id) == []
        assert [b.id for b in store.list_bugs()] == [kept.id]
        with pytest.raises(LookupError):
            delete_project(store, project.id)

    def test_project_numbers_not_reissued(self, store, project) -> None:
        from bugdesk.tracker import create_project, delete_project

        delete_project(store, project.id)
        assert create_project(store, "Next").project_number == 2


class TestDeleteSingleRecords:
    def test_delete_attachment(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, create_bug, delete_attachment

        bug = create_bug(store, project.id, BugDraft(title="x", attachment_url="https://x/1"))
        (att,) = store.list_attachments(bug.id)
        assert delete_attachment(store, att.id).url == "https://x/1"
        assert store.list_attachments(bug.id) == []
        with pytest.raises(LookupError):
            delete_attachment(store, att.id)

    def test_delete_comment(self, store, project) -> None:
        from bugdesk.tracker import BugDraft, add_comment, create_bug, delete_comment

        bug = create_bug(store, project.id, BugDraft(title="x"))
        first = add_comment(store, bug.id, "first")
        add_comment(store, bug.id, "second")
        assert delete_comment(store, first.id).bug_id == bug.id
        assert [c.content for c in store.list_comments(bug.id)] == ["second"]
        with pytest.raises(LookupError):
            delete_comment(store, first.id)
