"""SQLite database handle and schema for the local contact store and sync state.

Tables
- vaults, contacts (soft delete via deleted_at), contact_vault_user,
  contact_information, addresses, contact_addresses
- address_book_subscriptions, contact_subscription_states, dav_sync_logs

Design notes
- One connection per Database, shared across threads behind a re-entrant
  lock; the push engine runs on caller threads while the scheduler pulls.
- `transaction()` is re-entrant: only the outermost block issues
  BEGIN/COMMIT, so repository helpers can be composed inside a caller's
  per-entity transaction.
- All timestamps are UTC ISO 8601 strings with microseconds, which sort
  lexicographically in time order.

Example
  db = Database("/data/cardsync.sqlite")
  with db.transaction():
      db.execute("UPDATE contacts SET nickname = ? WHERE id = ?", ("Al", cid))
"""

from __future__ import annotations

import logging
import os
import sqlite3
import stat
import threading
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

__all__ = ["ISO_FORMAT", "Database", "format_ts", "new_id", "parse_ts", "utc_now"]

log = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(ISO_FORMAT)


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=UTC)


def new_id() -> str:
    return str(uuid.uuid4())


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS vaults (
      id TEXT PRIMARY KEY,
      account_id TEXT NOT NULL,
      name TEXT NOT NULL DEFAULT '',
      created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
      id TEXT PRIMARY KEY,
      vault_id TEXT NOT NULL REFERENCES vaults(id) ON DELETE CASCADE,
      first_name TEXT,
      last_name TEXT,
      nickname TEXT,
      job_position TEXT,
      distant_uuid TEXT,
      distant_uri TEXT,
      distant_etag TEXT,
      vcard TEXT,
      last_updated_at TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      deleted_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_contacts_vault_distant_uri ON contacts (vault_id, distant_uri);",
    """
    CREATE TABLE IF NOT EXISTS contact_vault_user (
      contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
      user_id TEXT NOT NULL,
      vault_id TEXT NOT NULL,
      PRIMARY KEY (contact_id, user_id, vault_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_information (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
      kind TEXT NOT NULL,           -- 'phone' | 'email'
      data TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS addresses (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      vault_id TEXT NOT NULL,
      line_1 TEXT,
      city TEXT,
      province TEXT,
      postal_code TEXT,
      country TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_addresses (
      contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
      address_id INTEGER NOT NULL REFERENCES addresses(id) ON DELETE CASCADE,
      PRIMARY KEY (contact_id, address_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS address_book_subscriptions (
      id TEXT PRIMARY KEY,
      vault_id TEXT NOT NULL,
      user_id TEXT NOT NULL,
      uri TEXT NOT NULL,
      address_book_path TEXT NOT NULL DEFAULT '',
      username TEXT NOT NULL,
      password TEXT NOT NULL,        -- sealed, never plaintext
      sync_way INTEGER NOT NULL DEFAULT 2,
      frequency INTEGER NOT NULL DEFAULT 180,
      active INTEGER NOT NULL DEFAULT 1,
      distant_sync_token TEXT,
      last_synchronized_at TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_subscription_states (
      contact_id TEXT NOT NULL,
      subscription_id TEXT NOT NULL REFERENCES address_book_subscriptions(id) ON DELETE CASCADE,
      distant_uri TEXT NOT NULL,
      distant_etag TEXT NOT NULL DEFAULT '',
      updated_at TEXT NOT NULL,
      PRIMARY KEY (contact_id, subscription_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS dav_sync_logs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      subscription_id TEXT NOT NULL REFERENCES address_book_subscriptions(id) ON DELETE CASCADE,
      contact_id TEXT,
      distant_uri TEXT NOT NULL DEFAULT '',
      distant_etag TEXT NOT NULL DEFAULT '',
      action TEXT NOT NULL,
      error_message TEXT,
      created_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_dav_sync_logs_subscription ON dav_sync_logs (subscription_id, created_at);",
)


def _restrict_permissions(path: Path) -> None:
    """Owner read/write only; the file holds sealed credentials. Best effort."""
    try:
        if not os.access(path, os.W_OK):
            log.warning("database-not-writable %s; check file ownership", path)
            return
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except (OSError, NotImplementedError) as exc:
        log.warning("database-permissions-unchanged %s: %s", path, exc)


class Database:
    """SQLite-backed store shared by the repositories."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        self._conn: sqlite3.Connection | None = self._connect(db_path)
        self._init_schema()

    def __enter__(self) -> Database:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: object | None,
    ) -> None:
        self.close()

    # -------------
    # Connection
    # -------------

    def _connect(self, db_path: str) -> sqlite3.Connection:
        if db_path != ":memory:":
            path = Path(db_path)
            if not path.parent.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are explicit in transaction().
        conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL;")
            _restrict_permissions(Path(db_path))
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("database is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _init_schema(self) -> None:
        with self.transaction():
            for stmt in _SCHEMA:
                self.conn.execute(stmt)

    # -------------
    # Access
    # -------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.conn.execute("BEGIN IMMEDIATE;")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK;")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.conn.execute("COMMIT;")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, tuple(params))

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()
