"""Session registry: the durable name -> session mapping.

One SQLite database under the state root, shared by every realm process
(the browser and direct commands can run at the same time).

Concurrency discipline:

* Every mutation runs in ``BEGIN IMMEDIATE``, which takes SQLite's write
  lock up front. Read-modify-write (``update``) happens inside the same
  transaction, so concurrent writers can't lose each other's updates.
* Commits are atomic (WAL journal): a reader sees the record before or
  after a write, never a torn one.
* Connections are opened per operation and closed right after. The lock
  is never held across a slow external call (clone, container create);
  two creators of the same name are told apart by the create-only insert.
"""

from __future__ import annotations

import dataclasses
import json
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from realm.errors import RegistryError, SessionConflictError, SessionNotFoundError
from realm.logger import logger
from realm.types import RuntimeOptions, Session

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS sessions (
    name TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    workspace_path TEXT NOT NULL UNIQUE,
    image TEXT NOT NULL,
    container_ref TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_used_at TEXT,
    runtime_options TEXT NOT NULL,
    last_runtime_args TEXT,
    last_ssh INTEGER
);
CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at);
"""

_COLUMNS = (
    "name",
    "project_path",
    "workspace_path",
    "image",
    "container_ref",
    "created_at",
    "last_used_at",
    "runtime_options",
    "last_runtime_args",
    "last_ssh",
)

# Everything else is fixed at creation.
_MUTABLE_FIELDS = frozenset({"container_ref", "last_used_at", "last_runtime_args", "last_ssh"})

# Columns added after the first release, with their definitions.
_ADDED_COLUMNS = {
    "last_runtime_args": "last_runtime_args TEXT",
    "last_ssh": "last_ssh INTEGER",
}


def _to_row(session: Session) -> tuple[Any, ...]:
    return (
        session.name,
        str(session.project_path),
        str(session.workspace_path),
        session.image,
        session.container_ref,
        session.created_at.isoformat(),
        session.last_used_at.isoformat() if session.last_used_at else None,
        json.dumps(session.runtime_options.to_dict()),
        json.dumps(session.last_runtime_args) if session.last_runtime_args is not None else None,
        None if session.last_ssh is None else int(session.last_ssh),
    )


def _from_row(row: aiosqlite.Row) -> Session:
    try:
        return Session(
            name=row["name"],
            project_path=Path(row["project_path"]),
            workspace_path=Path(row["workspace_path"]),
            image=row["image"],
            container_ref=row["container_ref"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_used_at=(
                datetime.fromisoformat(row["last_used_at"]) if row["last_used_at"] else None
            ),
            runtime_options=RuntimeOptions.from_dict(json.loads(row["runtime_options"])),
            last_runtime_args=(
                list(json.loads(row["last_runtime_args"])) if row["last_runtime_args"] else None
            ),
            last_ssh=None if row["last_ssh"] is None else bool(row["last_ssh"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise RegistryError(f"Corrupt session record '{row['name']}': {exc}") from exc


async def _ensure_columns(db: aiosqlite.Connection) -> None:
    """Add columns that a registry written by an older realm lacks."""
    cursor = await db.execute("PRAGMA table_info(sessions)")
    existing = {row[1] for row in await cursor.fetchall()}
    for column, definition in _ADDED_COLUMNS.items():
        if column not in existing:
            await db.execute(f"ALTER TABLE sessions ADD COLUMN {definition}")
            logger.info("Added missing registry column", column=column)


class SessionRegistry:
    """Async access to the session store at *db_path*."""

    def __init__(self, db_path: Path, *, busy_timeout: float = 30.0) -> None:
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            db = await aiosqlite.connect(
                self.db_path, timeout=self.busy_timeout, isolation_level=None
            )
        except sqlite3.Error as exc:
            raise RegistryError(f"Cannot open session registry {self.db_path}: {exc}") from exc
        try:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(_SCHEMA)
            await _ensure_columns(db)
            yield db
        except sqlite3.DatabaseError as exc:
            if isinstance(exc, sqlite3.IntegrityError):
                raise
            raise RegistryError(f"Session registry {self.db_path} is unusable: {exc}") from exc
        finally:
            await db.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Exclusive write transaction: commit on success, roll back on failure."""
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def _select(self, db: aiosqlite.Connection, name: str) -> Session | None:
        cursor = await db.execute("SELECT * FROM sessions WHERE name = ?", (name,))
        row = await cursor.fetchone()
        return _from_row(row) if row else None

    async def find(self, name: str) -> Session | None:
        """Return the session named *name*, or None."""
        async with self._connect() as db:
            return await self._select(db, name)

    async def get(self, name: str) -> Session:
        """Return the session named *name*. Raises SessionNotFoundError."""
        session = await self.find(name)
        if session is None:
            raise SessionNotFoundError(name)
        return session

    async def list(self) -> list[Session]:
        """All sessions, oldest first."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM sessions ORDER BY created_at, name")
            rows = await cursor.fetchall()
        return [_from_row(row) for row in rows]

    async def put(self, session: Session, *, create_only: bool = False) -> None:
        """Insert or fully overwrite a record.

        With *create_only*, an existing record (possibly committed a moment
        ago by a concurrent invocation) raises SessionConflictError.
        """
        verb = "INSERT" if create_only else "INSERT OR REPLACE"
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            async with self._transaction() as db:
                await db.execute(
                    f"{verb} INTO sessions ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    _to_row(session),
                )
        except sqlite3.IntegrityError as exc:
            raise SessionConflictError(session.name) from exc
        logger.debug("Session record written", session=session.name, create_only=create_only)

    async def update(self, name: str, **changes: Any) -> Session:
        """Atomically apply *changes* to a record and return the new version.

        Only ``container_ref`` and the last-used fields can change after creation.
        """
        illegal = set(changes) - _MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"Immutable session fields cannot be updated: {sorted(illegal)}")

        async with self._transaction() as db:
            current = await self._select(db, name)
            if current is None:
                raise SessionNotFoundError(name)
            updated = dataclasses.replace(current, **changes)
            row = dict(zip(_COLUMNS, _to_row(updated), strict=True))
            columns = sorted(_MUTABLE_FIELDS)
            assignments = ", ".join(f"{col} = ?" for col in columns)
            await db.execute(
                f"UPDATE sessions SET {assignments} WHERE name = ?",
                (*(row[col] for col in columns), name),
            )
        return updated

    async def delete(self, name: str, *, missing_ok: bool = False) -> bool:
        """Delete a record. Returns False (or raises) when it didn't exist."""
        async with self._transaction() as db:
            cursor = await db.execute("DELETE FROM sessions WHERE name = ?", (name,))
            deleted = cursor.rowcount > 0
        if not deleted and not missing_ok:
            raise SessionNotFoundError(name)
        return deleted


def get_registry() -> SessionRegistry:
    """Registry at the configured state root."""
    from realm.config import get_settings

    s = get_settings()
    return SessionRegistry(s.registry_path, busy_timeout=s.registry.busy_timeout_seconds)
