"""Command-line interface for bugdesk."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click

from bugdesk import __version__
from bugdesk.models import Priority, Result, Severity, Status


@click.group()
@click.version_option(version=__version__, prog_name="bugdesk")
def main() -> None:
    """bugdesk -- bug tracker with bulk spreadsheet import.

    Import flow: Select file -> Preview -> Confirm -> Result
    """


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _open_workspace(directory: str) -> tuple[Path, dict[str, Any], Any]:
    """Load config, open the store and attach the event sink."""
    from bugdesk.logging.events import set_workspace_dir
    from bugdesk.store import open_store
    from bugdesk.workspace import load_workspace_config

    workspace_dir = Path(directory)
    if not (workspace_dir / "bugdesk.yaml").exists():
        raise click.ClickException(f"No bugdesk.yaml in {workspace_dir}")
    try:
        config = load_workspace_config(workspace_dir)
    except ValueError as e:
        raise click.ClickException(str(e))
    set_workspace_dir(workspace_dir)
    return workspace_dir, config, open_store(workspace_dir, config)


def _echo_events(events: list[dict[str, Any]]) -> None:
    for evt in events:
        ts = evt.get("ts", "")
        lvl = evt.get("level", "").upper()
        etype = evt.get("event_type", "")
        msg = evt.get("message", "")
        err = evt.get("error_code")
        line = f"[{ts}] {lvl:7s} {etype}: {msg}"
        if err:
            line += f"  ({err})"
        click.echo(line)


def _echo_rows(rows: list[dict[str, Any]]) -> None:
    for i, row in enumerate(rows, start=1):
        cells = ", ".join(f"{k}={v!r}" for k, v in row.items() if v is not None)
        click.echo(f"  {i}. {cells}")


# ---------------------------------------------------------------------------
# Init
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path())
def init(directory: str) -> None:
    """Create a new workspace at DIRECTORY."""
    from bugdesk.workspace import scaffold_workspace

    try:
        path = scaffold_workspace(Path(directory))
    except FileExistsError as e:
        raise click.ClickException(str(e))
    click.echo(f"Created workspace at {path}")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@main.group()
def project() -> None:
    """Manage projects."""


@project.command("create")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("name")
@click.option("--description", default="", help="Project description.")
def project_create(directory: str, name: str, description: str) -> None:
    """Create project NAME in DIRECTORY."""
    from bugdesk.tracker import create_project

    _, _, store = _open_workspace(directory)
    try:
        proj = create_project(store, name, description)
    except ValueError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Project #{proj.project_number}: {proj.name}")
    click.echo(f"  id: {proj.id}")


@project.command("list")
@click.argument("directory", type=click.Path(exists=True))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def project_list(directory: str, as_json: bool) -> None:
    """List projects in DIRECTORY."""
    _, _, store = _open_workspace(directory)
    try:
        projects = store.list_projects()
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps([p.model_dump() for p in projects], indent=2))
        return
    if not projects:
        click.echo("No projects found.")
        return
    for p in projects:
        click.echo(f"  #{p.project_number or 1:<3d} {p.name:30s} {p.id}")


@project.command("update")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("project_id")
@click.option("--name", default=None, help="New project name.")
@click.option("--description", default=None, help="New project description.")
def project_update(directory: str, project_id: str, name: str | None, description: str | None) -> None:
    """Rename PROJECT_ID or change its description."""
    from bugdesk.tracker import update_project

    _, _, store = _open_workspace(directory)
    try:
        current = store.get_project(project_id)
        if current is None:
            raise click.ClickException(f"Project not found: {project_id!r}")
        proj = update_project(
            store,
            project_id,
            name if name is not None else current.name,
            description if description is not None else current.description,
        )
    except ValueError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Project #{proj.project_number}: {proj.name}")


@project.command("delete")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("project_id")
@click.confirmation_option(prompt="Delete this project and all of its bugs?")
def project_delete(directory: str, project_id: str) -> None:
    """Delete PROJECT_ID together with its bugs."""
    from bugdesk.tracker import delete_project

    _, _, store = _open_workspace(directory)
    try:
        removed = delete_project(store, project_id)
    except LookupError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Deleted project {project_id} and {removed} bug(s).")


# ---------------------------------------------------------------------------
# Bugs
# ---------------------------------------------------------------------------


def _choice(enum_cls: Any) -> click.Choice:
    return click.Choice([m.value for m in enum_cls])


@main.group()
def bug() -> None:
    """Inspect and edit single bugs."""


@bug.command("show")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("bug_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def bug_show(directory: str, bug_id: str, as_json: bool) -> None:
    """Show BUG_ID with its attachments and comments."""
    from bugdesk.tracker import get_bug

    _, _, store = _open_workspace(directory)
    try:
        b = get_bug(store, bug_id)
        attachments = store.list_attachments(bug_id)
        comments = store.list_comments(bug_id)
    except LookupError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps({
            **b.model_dump(),
            "attachments": [a.model_dump() for a in attachments],
            "comments": [c.model_dump() for c in comments],
        }, indent=2))
        return
    click.echo(f"{b.bug_id}  {b.title}")
    click.echo(f"  Severity: {b.severity}  Priority: {b.priority}  Status: {b.status}  Result: {b.result}")
    if b.assigned_to:
        click.echo(f"  Assigned to: {b.assigned_to}")
    if b.description:
        click.echo(f"  {b.description}")
    for a in attachments:
        click.echo(f"  [{a.type}] {a.url}  ({a.id})")
    for c in comments:
        click.echo(f"  {c.author or 'anonymous'}: {c.content}  ({c.id})")


@bug.command("update")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("bug_id")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--severity", default=None, type=_choice(Severity))
@click.option("--priority", default=None, type=_choice(Priority))
@click.option("--status", default=None, type=_choice(Status))
@click.option("--result", default=None, type=_choice(Result))
@click.option("--assign", "assigned_to", default=None, help='Assignee ("" to clear).')
def bug_update(directory: str, bug_id: str, **fields: str | None) -> None:
    """Edit fields of BUG_ID; options left out are unchanged."""
    from pydantic import ValidationError

    from bugdesk.tracker import BugUpdate, update_bug

    try:
        update = BugUpdate(**{k: v for k, v in fields.items() if v is not None})
    except ValidationError as e:
        raise click.ClickException(e.errors()[0]["msg"])

    _, _, store = _open_workspace(directory)
    try:
        b = update_bug(store, bug_id, update)
    except LookupError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"{b.bug_id}  {b.title}  [{b.status} / {b.result}]")


@bug.command("delete")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("bug_id")
@click.confirmation_option(prompt="Delete this bug with its attachments and comments?")
def bug_delete(directory: str, bug_id: str) -> None:
    """Delete BUG_ID."""
    from bugdesk.tracker import delete_bug

    _, _, store = _open_workspace(directory)
    try:
        delete_bug(store, bug_id)
    except LookupError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Deleted bug {bug_id}.")


@bug.command("delete-comment")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("comment_id")
def bug_delete_comment(directory: str, comment_id: str) -> None:
    """Delete one comment."""
    from bugdesk.tracker import delete_comment

    _, _, store = _open_workspace(directory)
    try:
        removed = delete_comment(store, comment_id)
    except LookupError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Deleted comment {removed.id} from bug {removed.bug_id}.")


@bug.command("detach")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("attachment_id")
def bug_detach(directory: str, attachment_id: str) -> None:
    """Delete one attachment."""
    from bugdesk.tracker import delete_attachment

    _, _, store = _open_workspace(directory)
    try:
        removed = delete_attachment(store, attachment_id)
    except LookupError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Removed {removed.url} from bug {removed.bug_id}.")


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--rows", "n", type=int, default=None, help="Rows to show (default: preview_rows).")
@click.option("--workspace", "directory", default=None, type=click.Path(exists=True), help="Workspace whose config applies.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def preview(file: str, n: int | None, directory: str | None, as_json: bool) -> None:
    """Show the first rows of FILE as they would be imported."""
    from bugdesk.errors import ParseUpstreamFailure
    from bugdesk.spreadsheet import build_preview, parse_spreadsheet
    from bugdesk.workspace import DEFAULT_CONFIG, load_workspace_config

    config = dict(DEFAULT_CONFIG)
    if directory:
        try:
            config = load_workspace_config(Path(directory))
        except ValueError as e:
            raise click.ClickException(str(e))

    path = Path(file)
    try:
        sheet = parse_spreadsheet(path.read_bytes(), path.name, max_rows=int(config["max_import_rows"]))
    except ParseUpstreamFailure as e:
        raise click.ClickException(f"{e.kind.value}: {e.message}")
    payload = build_preview(sheet, n if n is not None else int(config["preview_rows"]))

    if as_json:
        click.echo(json.dumps(payload, indent=2, default=str))
        return
    click.echo(f"Format: {payload['format']}")
    click.echo(f"Columns: {', '.join(payload['columns'])}")
    click.echo(f"Showing {payload['preview_count']} of {payload['total_rows']} rows:")
    _echo_rows(payload["rows"])


@main.command("import")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("project_id")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Import without confirmation.")
@click.option("--by", "created_by", default=None, help="Author recorded on each bug.")
@click.option("--json", "as_json", is_flag=True, help="Output result as JSON.")
def import_cmd(
    directory: str,
    project_id: str,
    file: str,
    assume_yes: bool,
    created_by: str | None,
    as_json: bool,
) -> None:
    """Import every row of FILE into PROJECT_ID.

    Exit status is 1 when bugs were saved but attachments were not, and
    2 when the import failed.
    """
    from bugdesk.errors import ParseUpstreamFailure
    from bugdesk.importer import ImportSession, ImportState
    from bugdesk.ui.service import validate_upload

    _, config, store = _open_workspace(directory)
    path = Path(file)
    data = path.read_bytes()
    try:
        validate_upload(path.name, data, int(config["max_upload_bytes"]))
    except ValueError as e:
        store.close()
        raise click.ClickException(str(e))

    try:
        session = ImportSession(store, project_id, config=config, created_by=created_by)
        session.select_file(data, path.name)

        if not assume_yes:
            try:
                payload = session.preview()
            except ParseUpstreamFailure:
                # confirm() re-parses and records the failure under an import id
                session.select_file(data, path.name)
            else:
                click.echo(f"Preview ({payload['preview_count']} of {payload['total_rows']} rows):")
                _echo_rows(payload["rows"])
                if not click.confirm(f"Import all {payload['total_rows']} rows?", default=True):
                    click.echo("Aborted.")
                    return

        result = session.confirm()
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo(result.message)
        for bug in result.committed_bugs:
            click.echo(f"  {bug.bug_id}  {bug.title}")
        if result.pending_attachments:
            click.echo("Pending attachments:")
            for att in result.pending_attachments:
                click.echo(f"  {att.bug_id}  {att.url}")

    if result.state is ImportState.partially_succeeded:
        raise SystemExit(1)
    if result.state is ImportState.failed:
        raise SystemExit(2)


@main.command()
@click.argument("directory", type=click.Path(exists=True))
@click.argument("bug_id", required=False)
@click.argument("urls", nargs=-1)
@click.option(
    "--pending",
    "pending_file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON import result whose pending attachments should be linked.",
)
def attach(directory: str, bug_id: str | None, urls: tuple[str, ...], pending_file: str | None) -> None:
    """Link URLS to BUG_ID, or re-link pending attachments.

    Links already present are skipped, so this is safe to repeat.
    """
    from bugdesk.models import AttachmentCandidate
    from bugdesk.tracker import link_attachments

    candidates: list[AttachmentCandidate] = []
    if pending_file:
        try:
            doc = json.loads(Path(pending_file).read_text())
        except json.JSONDecodeError as e:
            raise click.ClickException(f"Invalid JSON in {pending_file}: {e}")
        candidates.extend(AttachmentCandidate(**a) for a in doc.get("pending_attachments", []))
    if bug_id:
        if not urls:
            raise click.ClickException("Give at least one URL after BUG_ID.")
        candidates.extend(AttachmentCandidate(bug_id=bug_id, url=u) for u in urls)
    if not candidates:
        raise click.ClickException("Nothing to attach.")

    _, _, store = _open_workspace(directory)
    try:
        ids = link_attachments(store, candidates)
    except LookupError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Linked {len(ids)} attachment(s); {len(candidates) - len(ids)} already present.")


# ---------------------------------------------------------------------------
# Export / reports
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path(exists=True))
@click.option("--project", "project_id", default=None, help="Export one project (default: all bugs).")
@click.option("--output", "output_dir", default=None, type=click.Path(file_okay=False), help="Output directory (default: <workspace>/exports).")
@click.option("--search", default=None, help="Search text.")
@click.option("--severity", default=None, help="Filter by severity.")
@click.option("--status", default=None, help="Filter by status.")
@click.option("--result", default=None, help="Filter by result.")
@click.option("--sort", default="bug_number", help="Sort column.")
@click.option("--asc", is_flag=True, help="Sort ascending.")
def export(
    directory: str,
    project_id: str | None,
    output_dir: str | None,
    search: str | None,
    severity: str | None,
    status: str | None,
    result: str | None,
    sort: str,
    asc: bool,
) -> None:
    """Export bugs to CSV."""
    from bugdesk.errors import ProjectLookupFailure
    from bugdesk.export import write_export
    from bugdesk.ui.service import WorkspaceService
    from bugdesk.views import BugListQuery

    workspace_dir = Path(directory)
    try:
        svc = WorkspaceService(workspace_dir)
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))
    query = BugListQuery(
        search=search, severity=severity, status=status, result=result,
        sort=sort, descending=not asc,
    )
    try:
        if project_id:
            filename, content = svc.export_project_bugs(project_id, query)
        else:
            filename, content = svc.export_all_bugs(query)
    except ProjectLookupFailure as e:
        raise click.ClickException(e.message)
    except ValueError as e:
        raise click.ClickException(str(e))
    finally:
        svc.close()

    out = Path(output_dir) if output_dir else svc.workspace_dir / "exports"
    path = write_export(out, filename, content)
    click.echo(f"Exported to {path}")


@main.command()
@click.argument("directory", type=click.Path(exists=True))
@click.option("--range", "date_range", default="all", type=click.Choice(["all", "week", "month", "year"]), help="Creation date range.")
@click.option("--project", "project_id", default=None, help="Limit to one project.")
@click.option("--export", "do_export", is_flag=True, help="Also write the report CSV to <workspace>/exports.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def report(directory: str, date_range: str, project_id: str | None, do_export: bool, as_json: bool) -> None:
    """Summarise bugs by severity, status and priority."""
    from bugdesk.errors import ProjectLookupFailure
    from bugdesk.export import write_export
    from bugdesk.ui.service import WorkspaceService

    try:
        svc = WorkspaceService(Path(directory))
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))
    try:
        rep = svc.report(date_range, project_id)
        exported = svc.export_report(date_range, project_id) if do_export else None
    except ProjectLookupFailure as e:
        raise click.ClickException(e.message)
    finally:
        svc.close()

    if as_json:
        click.echo(json.dumps(rep.model_dump(), indent=2))
    else:
        click.echo(f"Range: {rep.date_range}")
        click.echo(f"Total: {rep.total}  Open: {rep.open}  Resolved: {rep.resolved}  "
                   f"Resolution rate: {rep.resolution_rate}%")
        for title, bucket in (
            ("Severity", rep.by_severity),
            ("Status", rep.by_status),
            ("Priority", rep.by_priority),
        ):
            click.echo(f"{title}:")
            for key, count in bucket.items():
                click.echo(f"  {key:20s} {count}")

    if exported is not None:
        filename, content = exported
        path = write_export(svc.workspace_dir / "exports", filename, content)
        click.echo(f"Exported to {path}", err=as_json)


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path(exists=True))
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--port", type=int, default=8000, help="Port to listen on.")
def serve(directory: str, host: str, port: int) -> None:
    """Serve the HTTP API for DIRECTORY."""
    import uvicorn

    from bugdesk.ui.server import create_app

    try:
        app = create_app(Path(directory))
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Serving API at http://{host}:{port}/api")
    click.echo("Press Ctrl+C to stop")
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    except KeyboardInterrupt:
        click.echo("\nStopped.")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@click.argument("directory", type=click.Path(exists=True))
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--import-id", default=None, help="Filter by import ID.")
@click.option("--project", "project_id", default=None, help="Filter by project ID.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    directory: str,
    level: str | None,
    event_type: str | None,
    import_id: str | None,
    project_id: str | None,
    limit: int,
) -> None:
    """Show structured event log for DIRECTORY."""
    from bugdesk.logging.sink import EventSink

    sink = EventSink(Path(directory))
    events = sink.read_global(
        level=level,
        event_type=event_type,
        import_id=import_id,
        project_id=project_id,
        limit=limit,
    )

    if not events:
        click.echo("No events found.")
        return
    _echo_events(events)


@main.command("import-log")
@click.argument("directory", type=click.Path(exists=True))
@click.argument("import_id")
def import_log_cmd(directory: str, import_id: str) -> None:
    """Show event log for a specific import."""
    from bugdesk.logging.sink import EventSink

    sink = EventSink(Path(directory))
    events = sink.read_import_log(import_id)

    if not events:
        click.echo(f"No events found for import {import_id}.")
        return
    _echo_events(events)
