"""Single-record tracker operations: projects, bugs, comments, links.

Manual bug creation goes through the same allocator as bulk import so
the two paths cannot hand out the same ``bug_number``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator

from bugdesk.errors import (
    AttachmentInsertFailure,
    BugInsertFailure,
    SequenceCollision,
    SequenceCollisionError,
    StoreError,
)
from bugdesk.importer import release_numbers, resolve_project_context
from bugdesk.logging.events import (
    BUG_INSERT_FAILED,
    SEQUENCE_COLLISION,
    EventType,
    emit_error,
    emit_info,
    emit_warning,
)
from bugdesk.models import (
    Attachment,
    AttachmentCandidate,
    Bug,
    Comment,
    ParsedBug,
    Priority,
    Project,
    Result,
    Severity,
    Status,
    format_bug_id,
)
from bugdesk.sequence import get_allocator
from bugdesk.store import BugStore
from bugdesk.workspace import DEFAULT_CONFIG


class BugDraft(BaseModel):
    """Fields a user supplies when filing one bug."""

    title: str
    description: str = ""
    severity: Severity = Severity.medium
    priority: Priority = Priority.medium
    status: Status = Status.new
    result: Result = Result.todo
    steps_to_reproduce: str = ""
    expected_result: str = ""
    actual_result: str = ""
    attachment_url: str | None = None

    @field_validator("title")
    @classmethod
    def _title_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Bug title is required")
        return v

    @field_validator("description", "steps_to_reproduce", "expected_result", "actual_result")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("attachment_url")
    @classmethod
    def _blank_url_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


def create_project(store: BugStore, name: str, description: str = "") -> Project:
    """Create a project with the next ``project_number``.

    Raises:
        ValueError: *name* is blank.
    """
    name = name.strip()
    if not name:
        raise ValueError("Project name is required")
    project = store.insert_project(name, description.strip())
    emit_info(
        EventType.project_created,
        f"Project created: {project.name} (#{project.project_number})",
        {"project_id": project.id, "project_number": project.project_number},
    )
    return project


def create_bug(
    store: BugStore,
    project_id: str,
    draft: BugDraft,
    *,
    config: dict[str, Any] | None = None,
    created_by: str | None = None,
) -> Bug:
    """File one bug, claiming its number from the project's sequence.

    Raises:
        ProjectLookupFailure: Unknown project.
        SequenceCollision: Numbers kept colliding after the retry limit.
        AttachmentInsertFailure: The bug was saved but its link was not.
        BugInsertFailure: The bug insert failed; its number is handed back.
    """
    cfg = dict(DEFAULT_CONFIG)
    if config:
        cfg.update(config)
    context = resolve_project_context(store, project_id, str(cfg["bug_id_prefix"]))
    allocator = get_allocator(store, cfg)
    retry_limit = int(cfg["sequence_retry_limit"])

    fields = draft.model_dump(exclude={"attachment_url"})
    attempt = 0
    while True:
        numbers = allocator.allocate(project_id, 1)
        number = numbers.start
        parsed = ParsedBug(
            **fields,
            bug_number=number,
            bug_id=format_bug_id(context.bug_id_prefix, context.project_number, number),
            project_id=project_id,
            attachment_url=draft.attachment_url,
            created_by=created_by,
        )
        try:
            (new_id,) = store.insert_bugs([parsed])
            break
        except SequenceCollisionError as exc:
            release_numbers(allocator, project_id, numbers)
            if attempt >= retry_limit:
                raise SequenceCollision(str(exc)) from exc
            attempt += 1
            emit_warning(
                EventType.sequence_collision,
                f"bug_number {number} already taken; retrying ({attempt}/{retry_limit})",
                {"project_id": project_id, "bug_number": number},
                error_code=SEQUENCE_COLLISION,
            )
        except StoreError as exc:
            release_numbers(allocator, project_id, numbers)
            emit_error(
                EventType.bug_create_failed,
                f"Bug insert failed: {exc}",
                {"project_id": project_id, "bug_number": number},
                error_code=BUG_INSERT_FAILED,
            )
            raise BugInsertFailure(str(exc)) from exc

    emit_info(
        EventType.bug_created,
        f"Bug created: {parsed.bug_id} {parsed.title}",
        {"project_id": project_id, "bug_id": new_id, "bug_number": number},
    )

    if parsed.attachment_url:
        try:
            store.insert_attachments([
                AttachmentCandidate(bug_id=new_id, type="link", url=parsed.attachment_url)
            ])
        except StoreError as exc:
            raise AttachmentInsertFailure(
                f"Bug {parsed.bug_id} saved but its attachment failed: {exc}",
                [new_id],
            ) from exc

    return get_bug(store, new_id)


def get_bug(store: BugStore, bug_id: str) -> Bug:
    """Fetch one bug.

    Raises:
        LookupError: No such bug.
    """
    bug = store.get_bug(bug_id)
    if bug is None:
        raise LookupError(f"Bug not found: {bug_id!r}")
    return bug


class BugUpdate(BaseModel):
    """Editable bug fields; only the fields that are set are written."""

    title: str | None = None
    description: str | None = None
    severity: Severity | None = None
    priority: Priority | None = None
    status: Status | None = None
    result: Result | None = None
    steps_to_reproduce: str | None = None
    expected_result: str | None = None
    actual_result: str | None = None
    assigned_to: str | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("Bug title cannot be blank")
        return v

    @field_validator(
        "description", "steps_to_reproduce", "expected_result", "actual_result", "assigned_to",
    )
    @classmethod
    def _strip(cls, v: str | None) -> str | None:
        return v.strip() if v is not None else None

    def changes(self) -> dict[str, Any]:
        # assigned_to="" clears the assignee
        out = self.model_dump(mode="json", exclude_unset=True, exclude_none=True)
        if out.get("assigned_to") == "":
            out["assigned_to"] = None
        return out


def update_bug(store: BugStore, bug_id: str, update: BugUpdate) -> Bug:
    """Apply *update* to one bug.  ``bug_number`` and ``bug_id`` never change.

    Raises:
        LookupError: No such bug.
    """
    changes = update.changes()
    if not changes:
        return get_bug(store, bug_id)
    bug = store.update_bug(bug_id, changes)
    if bug is None:
        raise LookupError(f"Bug not found: {bug_id!r}")
    emit_info(
        EventType.bug_updated,
        f"Bug updated: {bug.bug_id} ({', '.join(sorted(changes))})",
        {"bug_id": bug.id, "project_id": bug.project_id, "fields": sorted(changes)},
    )
    return bug


def update_project(store: BugStore, project_id: str, name: str, description: str = "") -> Project:
    """Rename a project or change its description.

    Raises:
        ValueError: *name* is blank.
        LookupError: No such project.
    """
    name = name.strip()
    if not name:
        raise ValueError("Project name is required")
    project = store.update_project(project_id, name, description.strip())
    if project is None:
        raise LookupError(f"Project not found: {project_id!r}")
    emit_info(
        EventType.project_updated,
        f"Project updated: {project.name}",
        {"project_id": project.id},
    )
    return project


def delete_project(store: BugStore, project_id: str) -> int:
    """Delete a project together with all of its bugs.

    Returns:
        Number of bugs removed with the project.

    Raises:
        LookupError: No such project.
    """
    removed = len(store.list_bugs(project_id))
    if not store.delete_project(project_id):
        raise LookupError(f"Project not found: {project_id!r}")
    emit_info(
        EventType.project_deleted,
        f"Project deleted with {removed} bug(s)",
        {"project_id": project_id, "bug_count": removed},
    )
    return removed


def delete_bug(store: BugStore, bug_id: str) -> None:
    """Delete a bug with its attachments and comments.

    Raises:
        LookupError: No such bug.
    """
    if not store.delete_bug(bug_id):
        raise LookupError(f"Bug not found: {bug_id!r}")
    emit_info(EventType.bug_deleted, f"Bug deleted: {bug_id}", {"bug_id": bug_id})


def add_comment(store: BugStore, bug_id: str, content: str, author: str | None = None) -> Comment:
    content = content.strip()
    if not content:
        raise ValueError("Comment cannot be empty")
    if store.get_bug(bug_id) is None:
        raise LookupError(f"Bug not found: {bug_id!r}")
    return store.add_comment(bug_id, content, author)


def link_attachments(store: BugStore, candidates: list[AttachmentCandidate]) -> list[str]:
    """Insert link attachments that are not already present.

    Keyed by ``(bug_id, url)``, so re-sending the pending attachments of a
    partially successful import links each one exactly once.

    Returns:
        Identifiers of the newly inserted attachments.

    Raises:
        LookupError: A candidate references an unknown bug.
    """
    existing: dict[str, set[str]] = {}
    missing: list[AttachmentCandidate] = []
    for c in candidates:
        if c.bug_id not in existing:
            if store.get_bug(c.bug_id) is None:
                raise LookupError(f"Bug not found: {c.bug_id!r}")
            existing[c.bug_id] = {a.url for a in store.list_attachments(c.bug_id)}
        if c.url in existing[c.bug_id]:
            continue
        existing[c.bug_id].add(c.url)
        missing.append(c)

    if not missing:
        return []
    ids = store.insert_attachments(missing)
    emit_info(
        EventType.attachments_linked,
        f"Linked {len(ids)} attachment(s) to {len({c.bug_id for c in missing})} bug(s)",
        {"bug_ids": sorted({c.bug_id for c in missing}), "skipped": len(candidates) - len(missing)},
    )
    return ids


def delete_attachment(store: BugStore, attachment_id: str) -> Attachment:
    """Remove one attachment from its bug.

    Raises:
        LookupError: No such attachment.
    """
    removed = store.delete_attachment(attachment_id)
    if removed is None:
        raise LookupError(f"Attachment not found: {attachment_id!r}")
    emit_info(
        EventType.attachment_deleted,
        f"Attachment deleted from bug {removed.bug_id}",
        {"bug_id": removed.bug_id, "attachment_id": removed.id},
    )
    return removed


def delete_comment(store: BugStore, comment_id: str) -> Comment:
    """Remove one comment.

    Raises:
        LookupError: No such comment.
    """
    removed = store.delete_comment(comment_id)
    if removed is None:
        raise LookupError(f"Comment not found: {comment_id!r}")
    emit_info(
        EventType.comment_deleted,
        f"Comment deleted from bug {removed.bug_id}",
        {"bug_id": removed.bug_id, "comment_id": removed.id},
    )
    return removed
