"""Store collaborator: the persistence surface the tracker depends on.

:class:`BugStore` is the protocol every pipeline stage receives
explicitly; :class:`SqliteStore` is the bundled implementation.

Sequence numbers are claimed through a per-scope counter row updated
inside a ``BEGIN IMMEDIATE`` transaction, so two writers serialize on
the claim.  The ``UNIQUE(project_id, bug_number)`` index is the
backstop for writers that bypass the counter.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from bugdesk.errors import SequenceCollisionError, StoreError
from bugdesk.models import (
    Attachment,
    AttachmentCandidate,
    Bug,
    Comment,
    ParsedBug,
    Project,
    utc_now,
)


class BugStore(Protocol):
    """Operations the import pipeline and tracker need from a backing store."""

    def get_project(self, project_id: str) -> Project | None: ...

    def list_projects(self) -> list[Project]: ...

    def insert_project(self, name: str, description: str = "") -> Project: ...

    def update_project(self, project_id: str, name: str, description: str) -> Project | None: ...

    def delete_project(self, project_id: str) -> bool: ...

    def max_bug_number(self, project_id: str) -> int: ...

    def claim_bug_numbers(self, project_id: str, count: int) -> int: ...

    def release_bug_numbers(self, project_id: str, first: int, count: int) -> bool: ...

    def insert_bugs(self, bugs: list[ParsedBug]) -> list[str]: ...

    def insert_attachments(self, candidates: list[AttachmentCandidate]) -> list[str]: ...

    def list_attachments(self, bug_id: str) -> list[Attachment]: ...

    def delete_attachment(self, attachment_id: str) -> Attachment | None: ...

    def list_bugs(self, project_id: str | None = None) -> list[Bug]: ...

    def get_bug(self, bug_id: str) -> Bug | None: ...

    def update_bug(self, bug_id: str, changes: dict[str, Any]) -> Bug | None: ...

    def delete_bug(self, bug_id: str) -> bool: ...

    def add_comment(self, bug_id: str, content: str, author: str | None = None) -> Comment: ...

    def list_comments(self, bug_id: str) -> list[Comment]: ...

    def delete_comment(self, comment_id: str) -> Comment | None: ...


_SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    project_number INTEGER UNIQUE,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS bugs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    bug_number INTEGER NOT NULL,
    bug_id TEXT,
    title TEXT NOT NULL,
    description TEXT,
    severity TEXT,
    priority TEXT,
    status TEXT,
    result TEXT,
    steps_to_reproduce TEXT,
    expected_result TEXT,
    actual_result TEXT,
    assigned_to TEXT,
    created_by TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (project_id, bug_number)
);

CREATE TABLE IF NOT EXISTS attachments (
    id TEXT PRIMARY KEY,
    bug_id TEXT NOT NULL REFERENCES bugs(id),
    type TEXT,
    url TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    bug_id TEXT NOT NULL REFERENCES bugs(id),
    content TEXT NOT NULL,
    author TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS sequences (
    scope TEXT PRIMARY KEY,
    last_value INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_attachments_bug ON attachments(bug_id);
CREATE INDEX IF NOT EXISTS idx_comments_bug ON comments(bug_id);
"""

_BUG_COLUMNS = (
    "id", "project_id", "bug_number", "bug_id", "title", "description",
    "severity", "priority", "status", "result", "steps_to_reproduce",
    "expected_result", "actual_result", "assigned_to", "created_by",
    "created_at", "updated_at",
)

_UPDATABLE_BUG_COLUMNS = frozenset({
    "title", "description", "severity", "priority", "status", "result",
    "steps_to_reproduce", "expected_result", "actual_result", "assigned_to",
})

_PROJECT_SCOPE = "project"


def _bug_scope(project_id: str) -> str:
    return f"bug:{project_id}"


def _new_id() -> str:
    return str(uuid.uuid4())


class SqliteStore:
    """SQLite-backed :class:`BugStore`.

    Args:
        path: Database file, or ``":memory:"``.
        timeout: Seconds to wait on a locked database before failing.
    """

    def __init__(self, path: Path | str, *, timeout: float = 5.0) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.path,
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` / ``COMMIT``.

        Rolls back on any exception, including a failed ``COMMIT``
        (e.g. ``SQLITE_BUSY`` while a reader holds a shared lock), and
        re-raises it.  The connection is never left inside a transaction.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project | None:
        rows = self._query("SELECT * FROM projects WHERE id = ?", (project_id,))
        return Project(**dict(rows[0])) if rows else None

    def list_projects(self) -> list[Project]:
        rows = self._query("SELECT * FROM projects ORDER BY project_number")
        return [Project(**dict(r)) for r in rows]

    def insert_project(self, name: str, description: str = "") -> Project:
        """Insert a project, claiming the next ``project_number`` atomically."""
        project_id = _new_id()
        created_at = utc_now()
        try:
            with self._transaction() as conn:
                current_max = conn.execute(
                    "SELECT COALESCE(MAX(project_number), 0) FROM projects"
                ).fetchone()[0]
                number = self._claim(conn, _PROJECT_SCOPE, current_max, 1)
                conn.execute(
                    "INSERT INTO projects (id, name, description, project_number, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (project_id, name, description, number, created_at),
                )
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return Project(
            id=project_id,
            name=name,
            description=description,
            project_number=number,
            created_at=created_at,
        )

    def update_project(self, project_id: str, name: str, description: str) -> Project | None:
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE projects SET name = ?, description = ? WHERE id = ?",
                    (name, description, project_id),
                )
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if cur.rowcount == 0:
            return None
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> bool:
        """Delete a project with all of its bugs, attachments and comments.

        The project's bug counter goes too; ``project_number`` values are
        never reissued.
        """
        owned = "(SELECT id FROM bugs WHERE project_id = ?)"
        try:
            with self._transaction() as conn:
                conn.execute(f"DELETE FROM attachments WHERE bug_id IN {owned}", (project_id,))
                conn.execute(f"DELETE FROM comments WHERE bug_id IN {owned}", (project_id,))
                conn.execute("DELETE FROM bugs WHERE project_id = ?", (project_id,))
                conn.execute("DELETE FROM sequences WHERE scope = ?", (_bug_scope(project_id),))
                cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
                return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    def max_bug_number(self, project_id: str) -> int:
        rows = self._query(
            "SELECT COALESCE(MAX(bug_number), 0) FROM bugs WHERE project_id = ?",
            (project_id,),
        )
        return int(rows[0][0])

    def claim_bug_numbers(self, project_id: str, count: int) -> int:
        """Reserve *count* consecutive bug numbers for a project.

        Returns:
            The first number of the reserved block.
        """
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        try:
            with self._transaction() as conn:
                current_max = conn.execute(
                    "SELECT COALESCE(MAX(bug_number), 0) FROM bugs WHERE project_id = ?",
                    (project_id,),
                ).fetchone()[0]
                return self._claim(conn, _bug_scope(project_id), current_max, count)
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def release_bug_numbers(self, project_id: str, first: int, count: int) -> bool:
        """Hand back a claimed block whose bugs were never inserted.

        The counter is rewound only while the block is still the latest
        claim; a later claim by another writer leaves it untouched.

        Returns:
            True when the counter was rewound.
        """
        last = first + count - 1
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE sequences SET last_value = ? WHERE scope = ? AND last_value = ?",
                    (first - 1, _bug_scope(project_id), last),
                )
                return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    @staticmethod
    def _claim(conn: sqlite3.Connection, scope: str, floor: int, count: int) -> int:
        row = conn.execute(
            "SELECT last_value FROM sequences WHERE scope = ?", (scope,)
        ).fetchone()
        # Rows written without the counter (e.g. read_max imports) still move the floor
        last = max(row[0] if row else 0, int(floor))
        conn.execute(
            "INSERT INTO sequences (scope, last_value) VALUES (?, ?) "
            "ON CONFLICT(scope) DO UPDATE SET last_value = excluded.last_value",
            (scope, last + count),
        )
        return last + 1

    # ------------------------------------------------------------------
    # Bugs
    # ------------------------------------------------------------------

    def insert_bugs(self, bugs: list[ParsedBug]) -> list[str]:
        """Insert all *bugs* in one transaction.

        Returns:
            New bug identifiers, in input order.

        Raises:
            SequenceCollisionError: A ``(project_id, bug_number)`` pair exists.
            StoreError: Any other database failure.  Nothing is committed.
        """
        ids = [_new_id() for _ in bugs]
        now = utc_now()
        try:
            with self._transaction() as conn:
                for bug_uuid, bug in zip(ids, bugs):
                    conn.execute(
                        "INSERT INTO bugs (id, project_id, bug_number, bug_id, title, "
                        "description, severity, priority, status, result, "
                        "steps_to_reproduce, expected_result, actual_result, "
                        "assigned_to, created_by, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?)",
                        (
                            bug_uuid,
                            bug.project_id,
                            bug.bug_number,
                            bug.bug_id,
                            bug.title,
                            bug.description,
                            bug.severity.value,
                            bug.priority.value,
                            bug.status.value,
                            bug.result.value,
                            bug.steps_to_reproduce,
                            bug.expected_result,
                            bug.actual_result,
                            bug.created_by,
                            now,
                            now,
                        ),
                    )
        except sqlite3.IntegrityError as exc:
            msg = str(exc)
            if "UNIQUE" in msg and "bug_number" in msg:
                project_id = bugs[0].project_id if bugs else None
                raise SequenceCollisionError(project_id, msg) from exc
            raise StoreError(msg) from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return ids

    def list_bugs(self, project_id: str | None = None) -> list[Bug]:
        if project_id is None:
            rows = self._query("SELECT * FROM bugs ORDER BY bug_number DESC, created_at DESC")
        else:
            rows = self._query(
                "SELECT * FROM bugs WHERE project_id = ? ORDER BY bug_number DESC",
                (project_id,),
            )
        return [Bug(**{k: r[k] for k in _BUG_COLUMNS}) for r in rows]

    def get_bug(self, bug_id: str) -> Bug | None:
        rows = self._query("SELECT * FROM bugs WHERE id = ?", (bug_id,))
        if not rows:
            return None
        return Bug(**{k: rows[0][k] for k in _BUG_COLUMNS})

    def update_bug(self, bug_id: str, changes: dict[str, Any]) -> Bug | None:
        """Set the given columns on one bug and stamp ``updated_at``.

        Returns:
            The updated bug, or None when *bug_id* does not exist.

        Raises:
            ValueError: A column in *changes* cannot be edited.
        """
        unknown = set(changes) - _UPDATABLE_BUG_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update bug column(s): {', '.join(sorted(unknown))}")
        columns = sorted(changes)
        assignments = ", ".join(f"{c} = ?" for c in [*columns, "updated_at"])
        params = tuple(changes[c] for c in columns) + (utc_now(), bug_id)
        try:
            with self._transaction() as conn:
                cur = conn.execute(f"UPDATE bugs SET {assignments} WHERE id = ?", params)
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if cur.rowcount == 0:
            return None
        return self.get_bug(bug_id)

    def delete_bug(self, bug_id: str) -> bool:
        """Delete a bug together with its attachments and comments."""
        try:
            with self._transaction() as conn:
                conn.execute("DELETE FROM attachments WHERE bug_id = ?", (bug_id,))
                conn.execute("DELETE FROM comments WHERE bug_id = ?", (bug_id,))
                cur = conn.execute("DELETE FROM bugs WHERE id = ?", (bug_id,))
                return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Attachments & comments
    # ------------------------------------------------------------------

    def insert_attachments(self, candidates: list[AttachmentCandidate]) -> list[str]:
        ids = [_new_id() for _ in candidates]
        now = utc_now()
        try:
            with self._transaction() as conn:
                conn.executemany(
                    "INSERT INTO attachments (id, bug_id, type, url, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [(aid, c.bug_id, c.type, c.url, now) for aid, c in zip(ids, candidates)],
                )
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return ids

    def list_attachments(self, bug_id: str) -> list[Attachment]:
        rows = self._query(
            "SELECT * FROM attachments WHERE bug_id = ? ORDER BY created_at, rowid",
            (bug_id,),
        )
        return [Attachment(**dict(r)) for r in rows]

    def delete_attachment(self, attachment_id: str) -> Attachment | None:
        """Delete one attachment; returns the removed row, or None."""
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM attachments WHERE id = ?", (attachment_id,)
                ).fetchone()
                if row is None:
                    return None
                conn.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return Attachment(**dict(row))

    def add_comment(self, bug_id: str, content: str, author: str | None = None) -> Comment:
        comment = Comment(
            id=_new_id(),
            bug_id=bug_id,
            content=content,
            author=author,
            created_at=utc_now(),
        )
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO comments (id, bug_id, content, author, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (comment.id, comment.bug_id, comment.content, comment.author, comment.created_at),
                )
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return comment

    def list_comments(self, bug_id: str) -> list[Comment]:
        rows = self._query(
            "SELECT * FROM comments WHERE bug_id = ? ORDER BY created_at, rowid",
            (bug_id,),
        )
        return [Comment(**dict(r)) for r in rows]

    def delete_comment(self, comment_id: str) -> Comment | None:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM comments WHERE id = ?", (comment_id,)
                ).fetchone()
                if row is None:
                    return None
                conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return Comment(**dict(row))


def open_store(workspace_dir: Path, config: dict[str, Any] | None = None) -> SqliteStore:
    """Open the SQLite store configured for a workspace."""
    from bugdesk.workspace import load_workspace_config, resolve_db_path

    if config is None:
        config = load_workspace_config(workspace_dir)
    return SqliteStore(
        resolve_db_path(workspace_dir, config),
        timeout=float(config.get("db_timeout_seconds", 5.0)),
    )
