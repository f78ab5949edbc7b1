"""Append-only sync-log ledger.

Every observable action of the engines lands here with its remote path and
ETag. Rows are never updated; they go away only with their subscription.
Reads are paginated per subscription, newest first.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from .db import Database, format_ts, parse_ts, utc_now

__all__ = ["DEFAULT_PER_PAGE", "PageMeta", "SyncAction", "SyncLog", "SyncLogEntry"]

DEFAULT_PER_PAGE = 15


class SyncAction:
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    PUSHED = "pushed"
    PUSH_DELETED = "push_deleted"
    SKIPPED = "skipped"
    SKIPPED_PUSH_ORIGIN = "skipped_push_origin"
    CONFLICT_LOCAL_WINS = "conflict_local_wins"
    ERROR = "error"

    ALL = frozenset(
        {
            CREATED,
            UPDATED,
            DELETED,
            PUSHED,
            PUSH_DELETED,
            SKIPPED,
            SKIPPED_PUSH_ORIGIN,
            CONFLICT_LOCAL_WINS,
            ERROR,
        }
    )


@dataclass(frozen=True)
class SyncLogEntry:
    id: int
    subscription_id: str
    contact_id: str | None
    distant_uri: str
    distant_etag: str
    action: str
    error_message: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class PageMeta:
    page: int
    per_page: int
    total: int
    total_pages: int


class SyncLog:
    def __init__(self, db: Database) -> None:
        self.db = db

    def append(
        self,
        subscription_id: str,
        action: str,
        *,
        contact_id: str | None = None,
        distant_uri: str = "",
        distant_etag: str = "",
        error_message: str | None = None,
    ) -> None:
        if action not in SyncAction.ALL:
            raise ValueError(f"unknown sync action: {action!r}")
        with self.db.transaction():
            self.db.execute(
                """
                INSERT INTO dav_sync_logs(subscription_id, contact_id, distant_uri, distant_etag,
                    action, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    subscription_id,
                    contact_id,
                    distant_uri or "",
                    distant_etag or "",
                    action,
                    error_message,
                    format_ts(utc_now()),
                ),
            )

    def page(
        self, subscription_id: str, page: int = 1, per_page: int = DEFAULT_PER_PAGE
    ) -> tuple[list[SyncLogEntry], PageMeta]:
        page = page if page >= 1 else 1
        per_page = per_page if per_page >= 1 else DEFAULT_PER_PAGE

        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM dav_sync_logs WHERE subscription_id = ?;",
            (subscription_id,),
        )
        total = int(row["n"]) if row else 0
        rows = self.db.fetchall(
            """
            SELECT id, subscription_id, contact_id, distant_uri, distant_etag, action,
                   error_message, created_at
            FROM dav_sync_logs WHERE subscription_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?;
            """,
            (subscription_id, per_page, (page - 1) * per_page),
        )
        items = [
            SyncLogEntry(
                id=r["id"],
                subscription_id=r["subscription_id"],
                contact_id=r["contact_id"],
                distant_uri=r["distant_uri"],
                distant_etag=r["distant_etag"],
                action=r["action"],
                error_message=r["error_message"],
                created_at=parse_ts(r["created_at"]),
            )
            for r in rows
        ]
        meta = PageMeta(
            page=page,
            per_page=per_page,
            total=total,
            total_pages=math.ceil(total / per_page) if total else 0,
        )
        return items, meta

    def actions(self, subscription_id: str) -> list[str]:
        """All actions for a subscription in insertion order."""
        rows = self.db.fetchall(
            "SELECT action FROM dav_sync_logs WHERE subscription_id = ? ORDER BY id;",
            (subscription_id,),
        )
        return [r["action"] for r in rows]
