"""Content-addressed package store with at-most-one build per hash.

Storage layout: {root}/{hash[:32]}-{name}-{version}
Staging:        {root}/.tmp/{hash[:32]}-{token}

The index is a SQLite database with one row per build attempt:
- A partial UNIQUE index allows at most one ``pending`` or ``built`` row per
  content hash, so inserting a pending row is an atomic test-and-set that
  holds across threads and across processes sharing the store.
- Rows are never patched after ``built``. A failed attempt stays ``failed``
  and a retry inserts a new attempt.
- WAL journal mode for concurrent readers.

Resolved environments are cached in a second table keyed by their
environment hash.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import socket
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from envforge.models.environment import ResolvedEnvironment
from envforge.models.store import BuildStatus, ReservationStatus, StoreEntry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_ATTEMPTS = """
CREATE TABLE IF NOT EXISTS build_attempts (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    content_hash  TEXT NOT NULL,
    attempt       INTEGER NOT NULL,
    name          TEXT NOT NULL DEFAULT '',
    path          TEXT NOT NULL,
    status        TEXT NOT NULL,
    reason        TEXT NOT NULL DEFAULT '',
    owner         TEXT NOT NULL DEFAULT '',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);
"""

_CREATE_IDX_LIVE = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_live_attempt
    ON build_attempts(content_hash) WHERE status IN ('pending', 'built');
"""

_CREATE_IDX_HASH = """
CREATE INDEX IF NOT EXISTS idx_hash ON build_attempts(content_hash, id);
"""

_CREATE_ENVIRONMENTS = """
CREATE TABLE IF NOT EXISTS environments (
    environment_hash  TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    payload_json      TEXT NOT NULL,
    created_at        TEXT NOT NULL
);
"""

_ENTRY_COLUMNS = (
    "id, content_hash, attempt, name, path, status, reason, owner, created_at, updated_at"
)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


class BuildFailure(RuntimeError):
    """Raised when a package build fails. ``reason`` is recorded in the store."""

    def __init__(self, reason: str, content_hash: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.content_hash = content_hash


class ReservationError(RuntimeError):
    """Raised when commit/fail/release is used without holding the build slot."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


class BuildSlot:
    """Exclusive right to build one content hash.

    Use as a context manager: leaving the block with an exception marks
    the attempt failed, so a slot is never left ``pending``.  Call
    ``commit()`` inside the block once the output is in ``staging_path``.
    """

    def __init__(
        self,
        store: ContentStore,
        content_hash: str,
        path: Path,
        staging_path: Path,
    ) -> None:
        self._store = store
        self.content_hash = content_hash
        self.path = path
        self.staging_path = staging_path
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def commit(self) -> StoreEntry:
        entry = self._store.commit(self.content_hash, self.staging_path)
        self._done = True
        return entry

    def fail(self, reason: str) -> StoreEntry:
        entry = self._store.fail(self.content_hash, reason)
        self._done = True
        return entry

    def release(self) -> None:
        self._store.release(self.content_hash)
        self._done = True

    def __enter__(self) -> BuildSlot:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._done:
            return False
        if exc is None:
            self.fail("build finished without committing an output")
        elif isinstance(exc, BuildFailure):
            self.fail(exc.reason)
        else:
            # cancellation and interrupts land here too
            self.fail(f"{type(exc).__name__}: {exc}")
        return False


class Reservation(BaseModel):
    """Result of ``ContentStore.reserve``.

    ``slot`` is set only when ``status`` is ``ACQUIRED``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    status: ReservationStatus
    entry: StoreEntry | None = None
    slot: BuildSlot | None = None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ContentStore:
    """Content-addressed store of immutable package outputs.

    Parameters
    ----------
    root:
        Directory holding store paths. Created if it does not exist.
    db_path:
        SQLite index. Defaults to ``{root}/db.sqlite``.
    stale_after:
        Seconds after which a pending attempt owned by another host is
        considered abandoned and may be reclaimed. Attempts owned by this
        host are reclaimed only once their owning process has exited.
    poll_interval:
        Seconds between index polls while waiting on a build held by
        another process.
    """

    def __init__(
        self,
        root: Path,
        db_path: Path | None = None,
        *,
        stale_after: float = 3600.0,
        poll_interval: float = 0.1,
    ) -> None:
        self._root = Path(root).absolute()
        self._root.mkdir(parents=True, exist_ok=True)
        self._staging_root = self._root / ".tmp"
        self._staging_root.mkdir(exist_ok=True)
        self._db_path = Path(db_path) if db_path is not None else self._root / "db.sqlite"
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._stale_after = stale_after
        self._poll_interval = poll_interval

        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._cond = threading.Condition()
        self._slots: dict[str, BuildSlot] = {}
        self._init_schema()

    @property
    def root(self) -> Path:
        return self._root

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(_CREATE_ATTEMPTS)
            conn.execute(_CREATE_IDX_LIVE)
            conn.execute(_CREATE_IDX_HASH)
            conn.execute(_CREATE_ENVIRONMENTS)

    def path_for(self, content_hash: str, name: str = "", version: str = "") -> Path:
        """Compute the store path for a content hash."""
        label = "-".join(
            _UNSAFE_NAME_CHARS.sub("_", part) for part in (name, version) if part
        )
        basename = f"{content_hash[:32]}-{label}" if label else content_hash[:32]
        return self._root / basename

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, content_hash: str) -> StoreEntry | None:
        """Return the latest attempt for a content hash, or None."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM build_attempts "
                "WHERE content_hash = ? ORDER BY id DESC LIMIT 1",
                (content_hash,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def attempts(self, content_hash: str) -> list[StoreEntry]:
        """Return every attempt for a content hash, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM build_attempts "
                "WHERE content_hash = ? ORDER BY id ASC",
                (content_hash,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_entries(self, status: BuildStatus | None = None) -> list[StoreEntry]:
        """Return the latest attempt of every content hash in the store."""
        query = (
            f"SELECT {_ENTRY_COLUMNS} FROM build_attempts WHERE id IN "
            "(SELECT MAX(id) FROM build_attempts GROUP BY content_hash)"
        )
        params: tuple[str, ...] = ()
        if status is not None:
            query += " AND status = ?"
            params = (status.value,)
        query += " ORDER BY name ASC, id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Reservation protocol
    # ------------------------------------------------------------------

    def reserve(
        self,
        content_hash: str,
        *,
        name: str = "",
        version: str = "",
        blocking: bool = True,
        timeout: float | None = None,
    ) -> Reservation:
        """Claim the build slot for a content hash.

        Returns a ``BUILT`` reservation with the existing entry if the hash
        is already built, or an ``ACQUIRED`` reservation holding the slot.
        While another builder holds the slot, blocks until it finishes; with
        ``blocking=False`` (or once ``timeout`` expires) returns
        ``IN_PROGRESS`` instead.
        """
        path = self.path_for(content_hash, name, version)
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while True:
                if content_hash in self._slots:
                    existing = self.lookup(content_hash)
                else:
                    try:
                        claimed, existing = self._try_claim(content_hash, name, path)
                    except sqlite3.IntegrityError:
                        # another process inserted between our check and insert
                        continue
                    if claimed:
                        staging = self._staging_root / (
                            f"{content_hash[:32]}-{uuid.uuid4().hex[:8]}"
                        )
                        staging.mkdir(parents=True)
                        slot = BuildSlot(self, content_hash, path, staging)
                        self._slots[content_hash] = slot
                        logger.debug(
                            "Reserved %s (%s), attempt %d.",
                            content_hash[:12],
                            name,
                            existing.attempt,
                        )
                        return Reservation(
                            status=ReservationStatus.ACQUIRED, entry=existing, slot=slot
                        )

                if existing is not None and existing.is_built:
                    return Reservation(status=ReservationStatus.BUILT, entry=existing)
                if not blocking:
                    return Reservation(status=ReservationStatus.IN_PROGRESS, entry=existing)

                wait_for = self._poll_interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return Reservation(
                            status=ReservationStatus.IN_PROGRESS, entry=existing
                        )
                    wait_for = min(wait_for, remaining)
                logger.debug("Waiting for in-progress build of %s.", content_hash[:12])
                self._cond.wait(wait_for)

    def _try_claim(
        self, content_hash: str, name: str, path: Path
    ) -> tuple[bool, StoreEntry]:
        """Atomically insert a pending attempt unless a live one exists."""
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM build_attempts "
                "WHERE content_hash = ? AND status IN ('pending', 'built') "
                "ORDER BY id DESC LIMIT 1",
                (content_hash,),
            ).fetchone()
            if row is not None:
                entry = self._row_to_entry(row)
                owner = row[7]
                if entry.is_built or not self._is_stale(owner, entry.updated_at):
                    return False, entry
                logger.warning(
                    "Reclaiming abandoned build of %s (owner %s).", content_hash[:12], owner
                )
                conn.execute(
                    "UPDATE build_attempts SET status = ?, reason = ?, updated_at = ? "
                    "WHERE id = ?",
                    (
                        BuildStatus.FAILED.value,
                        "abandoned by a builder that is no longer running",
                        _now(),
                        row[0],
                    ),
                )

            attempt = conn.execute(
                "SELECT COALESCE(MAX(attempt), 0) FROM build_attempts WHERE content_hash = ?",
                (content_hash,),
            ).fetchone()[0] + 1
            now = _now()
            cursor = conn.execute(
                "INSERT INTO build_attempts "
                "(content_hash, attempt, name, path, status, reason, owner, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, '', ?, ?, ?)",
                (
                    content_hash,
                    attempt,
                    name,
                    str(path),
                    BuildStatus.PENDING.value,
                    self._owner,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM build_attempts WHERE id = ?",
                (cursor.lastrowid,),
            ).fetchone()
        return True, self._row_to_entry(row)

    def _is_stale(self, owner: str, updated_at: datetime) -> bool:
        """Whether a pending attempt's owner can no longer finish it."""
        if owner == self._owner:
            return False
        host, _, rest = owner.partition(":")
        pid_text = rest.partition(":")[0]
        if host == socket.gethostname() and pid_text.isdigit():
            try:
                os.kill(int(pid_text), 0)
            except ProcessLookupError:
                return True
            except PermissionError:
                pass  # alive, owned by another user
            return False
        age = (datetime.now(timezone.utc) - updated_at).total_seconds()
        return age > self._stale_after

    def _held_slot(self, content_hash: str) -> BuildSlot:
        slot = self._slots.get(content_hash)
        if slot is None:
            raise ReservationError(f"No build slot held for {content_hash[:12]}")
        return slot

    def _finish(self, content_hash: str) -> None:
        with self._cond:
            self._slots.pop(content_hash, None)
            self._cond.notify_all()

    def commit(self, content_hash: str, path: Path | None = None) -> StoreEntry:
        """Move a finished build output into the store and mark it built.

        ``path`` is the build output; defaults to the slot's staging path.
        """
        slot = self._held_slot(content_hash)
        output = Path(path) if path is not None else slot.staging_path
        if not output.exists():
            raise ReservationError(f"Build output {output} does not exist")
        if slot.path.exists():
            # leftover of an interrupted commit
            shutil.rmtree(slot.path)
        os.replace(output, slot.path)

        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE build_attempts SET status = ?, updated_at = ? "
                "WHERE content_hash = ? AND status = ? AND owner = ?",
                (
                    BuildStatus.BUILT.value,
                    _now(),
                    content_hash,
                    BuildStatus.PENDING.value,
                    self._owner,
                ),
            )
            if cursor.rowcount != 1:
                raise ReservationError(
                    f"Pending attempt for {content_hash[:12]} is no longer ours"
                )
        self._finish(content_hash)
        entry = self.lookup(content_hash)
        logger.info("Built %s -> %s", content_hash[:12], slot.path)
        return entry

    def fail(self, content_hash: str, reason: str) -> StoreEntry:
        """Mark the pending attempt failed; it will be retried as a new attempt."""
        slot = self._held_slot(content_hash)
        shutil.rmtree(slot.staging_path, ignore_errors=True)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE build_attempts SET status = ?, reason = ?, updated_at = ? "
                "WHERE content_hash = ? AND status = ? AND owner = ?",
                (
                    BuildStatus.FAILED.value,
                    reason,
                    _now(),
                    content_hash,
                    BuildStatus.PENDING.value,
                    self._owner,
                ),
            )
        self._finish(content_hash)
        logger.warning("Build of %s failed: %s", content_hash[:12], reason)
        return self.lookup(content_hash)

    def release(self, content_hash: str) -> None:
        """Drop the pending attempt without a trace (content was never valid)."""
        slot = self._held_slot(content_hash)
        shutil.rmtree(slot.staging_path, ignore_errors=True)
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM build_attempts "
                "WHERE content_hash = ? AND status = ? AND owner = ?",
                (content_hash, BuildStatus.PENDING.value, self._owner),
            )
        self._finish(content_hash)
        logger.debug("Released build slot for %s.", content_hash[:12])

    # ------------------------------------------------------------------
    # Environment cache
    # ------------------------------------------------------------------

    def record_environment(self, resolved: ResolvedEnvironment) -> None:
        """Persist a resolved environment under its environment hash."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO environments "
                "(environment_hash, name, payload_json, created_at) VALUES (?, ?, ?, ?)",
                (
                    resolved.environment_hash,
                    resolved.name,
                    resolved.model_dump_json(),
                    _now(),
                ),
            )

    def lookup_environment(self, environment_hash: str) -> ResolvedEnvironment | None:
        """Return a previously recorded environment, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM environments WHERE environment_hash = ?",
                (environment_hash,),
            ).fetchone()
        return ResolvedEnvironment.model_validate_json(row[0]) if row else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> StoreEntry:
        """Convert a SQLite row tuple to a StoreEntry."""
        (
            _id,
            content_hash,
            attempt,
            name,
            path,
            status,
            reason,
            _owner,
            created_at,
            updated_at,
        ) = row
        return StoreEntry(
            content_hash=content_hash,
            path=Path(path),
            status=BuildStatus(status),
            attempt=attempt,
            name=name,
            reason=reason,
            created_at=created_at,
            updated_at=updated_at,
        )
