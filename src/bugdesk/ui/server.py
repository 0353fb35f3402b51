"""FastAPI server for the bugdesk HTTP API.

Routes are thin wrappers over the shared :class:`WorkspaceService`.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel

from bugdesk.errors import (
    AttachmentInsertFailure,
    BugInsertFailure,
    ParseUpstreamFailure,
    ProjectLookupFailure,
    SequenceCollision,
    StoreError,
)
from bugdesk.models import AttachmentCandidate
from bugdesk.tracker import BugDraft, BugUpdate
from bugdesk.ui.service import WorkspaceService, validate_upload
from bugdesk.views import BugListQuery

# The singleton service is set at startup by ``create_app()``.
_service: WorkspaceService | None = None

_SAFE_IMPORT_ID = re.compile(r"^[A-Za-z0-9_\-]+$")


def create_app(workspace_dir: Path) -> FastAPI:
    """Create the FastAPI application for a given workspace.

    Args:
        workspace_dir: Root of the bugdesk workspace.

    Returns:
        Configured FastAPI instance.
    """
    global _service
    if _service is not None:
        _service.close()
    _service = WorkspaceService(workspace_dir=workspace_dir)

    from bugdesk import __version__

    app = FastAPI(title="bugdesk", version=__version__)
    app.include_router(_api_router())
    return app


def _svc() -> WorkspaceService:
    """Get the singleton service, raising if not initialised."""
    if _service is None:
        raise HTTPException(500, "Service not initialised")
    return _service


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ProjectCreateRequest(BaseModel):
    name: str
    description: str = ""


class ProjectUpdateRequest(BaseModel):
    name: str
    description: str = ""


class CommentRequest(BaseModel):
    content: str
    author: str | None = None


class AttachRequest(BaseModel):
    attachments: list[AttachmentCandidate]


def _csv_response(filename: str, content: bytes) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _bug_query(
    search: str | None,
    severity: str | None,
    status: str | None,
    result: str | None,
    since: str | None,
    sort: str,
    descending: bool,
    limit: int | None,
    project_id: str | None = None,
) -> BugListQuery:
    return BugListQuery(
        search=search,
        severity=severity,
        status=status,
        result=result,
        since=since,
        sort=sort,
        descending=descending,
        limit=limit,
        project_id=project_id,
    )


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def _api_router():
    from fastapi import APIRouter

    router = APIRouter(prefix="/api")

    # -- Projects --

    @router.get("/projects")
    async def list_projects() -> list[dict[str, Any]]:
        return [p.model_dump() for p in _svc().list_projects()]

    @router.post("/projects", status_code=201)
    async def create_project(req: ProjectCreateRequest) -> dict[str, Any]:
        try:
            return _svc().create_project(req.name, req.description).model_dump()
        except ValueError as exc:
            raise HTTPException(400, str(exc))

    @router.patch("/projects/{project_id}")
    async def update_project(project_id: str, req: ProjectUpdateRequest) -> dict[str, Any]:
        try:
            return _svc().update_project(project_id, req.name, req.description).model_dump()
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        except ValueError as exc:
            raise HTTPException(400, str(exc))

    @router.delete("/projects/{project_id}")
    async def delete_project(project_id: str) -> dict[str, Any]:
        try:
            removed = _svc().delete_project(project_id)
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        except StoreError as exc:
            raise HTTPException(500, str(exc))
        return {"deleted": project_id, "deleted_bugs": removed}

    # -- Bugs --

    @router.get("/projects/{project_id}/bugs")
    async def list_project_bugs(
        project_id: str,
        search: str | None = Query(None),
        severity: str | None = Query(None),
        status: str | None = Query(None),
        result: str | None = Query(None),
        since: str | None = Query(None),
        sort: str = Query("bug_number"),
        descending: bool = Query(True),
        limit: int | None = Query(None, ge=0),
    ) -> list[dict[str, Any]]:
        query = _bug_query(
            search, severity, status, result, since, sort, descending, limit, project_id,
        )
        try:
            return _svc().list_bugs(query)
        except ProjectLookupFailure as exc:
            raise HTTPException(404, exc.message)
        except ValueError as exc:
            raise HTTPException(400, str(exc))

    @router.post("/projects/{project_id}/bugs", status_code=201)
    async def create_bug(project_id: str, draft: BugDraft) -> dict[str, Any]:
        try:
            return _svc().create_bug(project_id, draft).model_dump()
        except ProjectLookupFailure as exc:
            raise HTTPException(404, exc.message)
        except AttachmentInsertFailure as exc:
            # The bug is committed; report the link failure alongside it
            bug = _svc().get_bug(exc.committed_bug_ids[0])
            return {
                **bug.model_dump(),
                "attachment_error": exc.message,
                "committed_bug_ids": exc.committed_bug_ids,
            }
        except SequenceCollision as exc:
            raise HTTPException(409, exc.message)
        except BugInsertFailure as exc:
            raise HTTPException(500, exc.message)
        except StoreError as exc:
            raise HTTPException(500, str(exc))

    @router.patch("/bugs/{bug_id}")
    async def update_bug(bug_id: str, update: BugUpdate) -> dict[str, Any]:
        try:
            return _svc().update_bug(bug_id, update).model_dump()
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        except StoreError as exc:
            raise HTTPException(500, str(exc))

    @router.delete("/bugs/{bug_id}")
    async def delete_bug(bug_id: str) -> dict[str, Any]:
        try:
            _svc().delete_bug(bug_id)
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        return {"deleted": bug_id}

    @router.get("/bugs/{bug_id}/comments")
    async def list_comments(bug_id: str) -> list[dict[str, Any]]:
        try:
            return [c.model_dump() for c in _svc().list_comments(bug_id)]
        except LookupError as exc:
            raise HTTPException(404, str(exc))

    @router.post("/bugs/{bug_id}/comments", status_code=201)
    async def add_comment(bug_id: str, req: CommentRequest) -> dict[str, Any]:
        try:
            return _svc().add_comment(bug_id, req.content, req.author).model_dump()
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        except ValueError as exc:
            raise HTTPException(400, str(exc))

    @router.delete("/comments/{comment_id}")
    async def delete_comment(comment_id: str) -> dict[str, Any]:
        try:
            _svc().delete_comment(comment_id)
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        return {"deleted": comment_id}

    @router.get("/bugs/{bug_id}/attachments")
    async def list_attachments(bug_id: str) -> list[dict[str, Any]]:
        try:
            return [a.model_dump() for a in _svc().list_attachments(bug_id)]
        except LookupError as exc:
            raise HTTPException(404, str(exc))

    @router.post("/bugs/attachments")
    async def link_attachments(req: AttachRequest) -> dict[str, Any]:
        try:
            ids = _svc().link_attachments(req.attachments)
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        except StoreError as exc:
            raise HTTPException(500, str(exc))
        return {"inserted": len(ids), "attachment_ids": ids}

    @router.delete("/attachments/{attachment_id}")
    async def delete_attachment(attachment_id: str) -> dict[str, Any]:
        try:
            _svc().delete_attachment(attachment_id)
        except LookupError as exc:
            raise HTTPException(404, str(exc))
        return {"deleted": attachment_id}

    # -- Import --

    async def _read_upload(file: UploadFile) -> tuple[str, bytes]:
        fname = file.filename or ""
        data = await file.read()
        try:
            validate_upload(fname, data, _svc().max_upload_bytes)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return fname, data

    @router.post("/projects/{project_id}/import/preview")
    async def preview_import(
        project_id: str,
        file: UploadFile = File(...),
    ) -> dict[str, Any]:
        fname, data = await _read_upload(file)
        try:
            return _svc().preview_upload(project_id, data, fname)
        except ProjectLookupFailure as exc:
            raise HTTPException(404, exc.message)
        except ParseUpstreamFailure as exc:
            raise HTTPException(400, exc.message)

    @router.post("/projects/{project_id}/import")
    async def run_import(
        project_id: str,
        file: UploadFile = File(...),
        created_by: str | None = Form(None),
    ) -> dict[str, Any]:
        fname, data = await _read_upload(file)
        result = _svc().import_upload(project_id, data, fname, created_by=created_by or None)
        return result.model_dump(mode="json")

    # -- Export --

    @router.get("/projects/{project_id}/bugs/export")
    async def export_project_bugs(
        project_id: str,
        search: str | None = Query(None),
        severity: str | None = Query(None),
        status: str | None = Query(None),
        result: str | None = Query(None),
        since: str | None = Query(None),
        sort: str = Query("bug_number"),
        descending: bool = Query(True),
    ) -> Response:
        query = _bug_query(search, severity, status, result, since, sort, descending, None)
        try:
            filename, content = _svc().export_project_bugs(project_id, query)
        except ProjectLookupFailure as exc:
            raise HTTPException(404, exc.message)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return _csv_response(filename, content)

    @router.get("/bugs/export")
    async def export_all_bugs(
        search: str | None = Query(None),
        severity: str | None = Query(None),
        status: str | None = Query(None),
        result: str | None = Query(None),
        project_id: str | None = Query(None),
        sort: str = Query("bug_number"),
        descending: bool = Query(True),
    ) -> Response:
        query = _bug_query(
            search, severity, status, result, None, sort, descending, None, project_id,
        )
        try:
            filename, content = _svc().export_all_bugs(query)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return _csv_response(filename, content)

    # Must stay below /bugs/export
    @router.get("/bugs/{bug_id}")
    async def get_bug(bug_id: str) -> dict[str, Any]:
        try:
            return _svc().bug_detail(bug_id)
        except LookupError as exc:
            raise HTTPException(404, str(exc))

    # -- Reports --

    @router.get("/reports")
    async def get_report(
        date_range: str = Query("all", alias="range"),
        project_id: str | None = Query(None),
    ) -> dict[str, Any]:
        try:
            return _svc().report(date_range, project_id).model_dump()
        except ProjectLookupFailure as exc:
            raise HTTPException(404, exc.message)
        except ValueError as exc:
            raise HTTPException(400, str(exc))

    @router.get("/reports/export")
    async def export_report(
        date_range: str = Query("all", alias="range"),
        project_id: str | None = Query(None),
    ) -> Response:
        try:
            filename, content = _svc().export_report(date_range, project_id)
        except ProjectLookupFailure as exc:
            raise HTTPException(404, exc.message)
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return _csv_response(filename, content)

    # -- Event logs --

    @router.get("/events")
    async def get_events(
        level: str | None = Query(None),
        event_type: str | None = Query(None),
        import_id: str | None = Query(None),
        project_id: str | None = Query(None),
        limit: int = Query(200, ge=1, le=2000),
    ) -> list[dict[str, Any]]:
        return _svc().read_events(
            level=level,
            event_type=event_type,
            import_id=import_id,
            project_id=project_id,
            limit=limit,
        )

    @router.get("/events/imports/{import_id}")
    async def get_import_log(import_id: str) -> list[dict[str, Any]]:
        if not _SAFE_IMPORT_ID.match(import_id):
            raise HTTPException(400, "Invalid import_id")
        return _svc().read_import_log(import_id)

    return router
