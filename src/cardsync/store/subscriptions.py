"""Address-book subscriptions and per-(contact, subscription) remote state.

Subscriptions
- Passwords are sealed with PasswordCipher before they reach the table and
  opened only by get_decrypted / decrypt_password, for the length of one run.
- sync_way is a bitmask: PUSH = 0x1, PULL = 0x2, BOTH = 0x3; 0 means PULL.
- A subscription is due when active and never synced, or when
  now - last_synchronized_at >= frequency minutes.
- update_sync_status is a single-row update, issued after the per-entity
  transactions of a run.

Subscription states
- At most one row per (contact_id, subscription_id): the remembered PUT
  target and ETag. No row means "push to <uri>/<contact_id>.vcf".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..crypto import PasswordCipher
from ..errors import SubscriptionNotFound
from .db import Database, format_ts, new_id, parse_ts, utc_now

__all__ = [
    "DEFAULT_FREQUENCY_MINUTES",
    "SYNC_WAY_BOTH",
    "SYNC_WAY_PULL",
    "SYNC_WAY_PUSH",
    "ContactSubscriptionState",
    "Subscription",
    "SubscriptionStateStore",
    "SubscriptionStore",
    "parse_sync_way",
]

log = logging.getLogger(__name__)

SYNC_WAY_PUSH = 0x1
SYNC_WAY_PULL = 0x2
SYNC_WAY_BOTH = SYNC_WAY_PUSH | SYNC_WAY_PULL

DEFAULT_FREQUENCY_MINUTES = 180

_SYNC_WAY_NAMES = {"push": SYNC_WAY_PUSH, "pull": SYNC_WAY_PULL, "both": SYNC_WAY_BOTH}


def parse_sync_way(value: str | int) -> int:
    """Accept 'pull' / 'push' / 'both' or the raw bitmask."""
    if isinstance(value, int):
        way = value
    elif value.strip().lower() in _SYNC_WAY_NAMES:
        way = _SYNC_WAY_NAMES[value.strip().lower()]
    else:
        try:
            way = int(value, 0)
        except ValueError as exc:
            raise ValueError(f"invalid sync way: {value!r}") from exc
    if way == 0:
        return SYNC_WAY_PULL
    if way & ~SYNC_WAY_BOTH:
        raise ValueError(f"invalid sync way: {value!r}")
    return way


@dataclass(frozen=True)
class Subscription:
    id: str
    vault_id: str
    user_id: str
    uri: str
    address_book_path: str
    username: str
    password: str  # sealed
    sync_way: int
    frequency: int
    active: bool
    distant_sync_token: str | None
    last_synchronized_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    @property
    def pulls(self) -> bool:
        return bool(self.sync_way & SYNC_WAY_PULL)

    @property
    def pushes(self) -> bool:
        return bool(self.sync_way & SYNC_WAY_PUSH)

    def is_due(self, now: datetime) -> bool:
        if not self.active:
            return False
        if self.last_synchronized_at is None:
            return True
        return now - self.last_synchronized_at >= timedelta(minutes=self.frequency)

    def owns(self, remote_path: str | None) -> bool:
        """True if remote_path names a resource under this subscription's URI."""
        if not remote_path:
            return False
        base = self.uri.rstrip("/")
        return remote_path == base or remote_path.startswith(base + "/")


@dataclass(frozen=True)
class ContactSubscriptionState:
    contact_id: str
    subscription_id: str
    distant_uri: str
    distant_etag: str
    updated_at: str


_SUB_COLUMNS = (
    "id, vault_id, user_id, uri, address_book_path, username, password, sync_way, frequency, "
    "active, distant_sync_token, last_synchronized_at, created_at, updated_at"
)


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row["id"],
        vault_id=row["vault_id"],
        user_id=row["user_id"],
        uri=row["uri"],
        address_book_path=row["address_book_path"] or "",
        username=row["username"],
        password=row["password"],
        sync_way=int(row["sync_way"]),
        frequency=int(row["frequency"]),
        active=bool(row["active"]),
        distant_sync_token=row["distant_sync_token"],
        last_synchronized_at=parse_ts(row["last_synchronized_at"]),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


class SubscriptionStore:
    def __init__(self, db: Database, cipher: PasswordCipher) -> None:
        self.db = db
        self.cipher = cipher

    # -------------
    # CRUD
    # -------------

    def create(
        self,
        *,
        vault_id: str,
        user_id: str,
        uri: str,
        username: str,
        password: str,
        sync_way: int = 0,
        frequency: int | None = None,
        address_book_path: str = "",
        active: bool = True,
    ) -> Subscription:
        sub_id = new_id()
        now = format_ts(utc_now())
        with self.db.transaction():
            self.db.execute(
                f"INSERT INTO address_book_subscriptions({_SUB_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?);",
                (
                    sub_id,
                    vault_id,
                    user_id,
                    uri,
                    address_book_path,
                    username,
                    self.cipher.encrypt(password),
                    parse_sync_way(sync_way),
                    frequency or DEFAULT_FREQUENCY_MINUTES,
                    1 if active else 0,
                    now,
                    now,
                ),
            )
        log.info("subscription-created sub=%s vault=%s", sub_id, vault_id)
        return self.get(sub_id, vault_id)

    def find(self, sub_id: str) -> Subscription | None:
        row = self.db.fetchone(
            f"SELECT {_SUB_COLUMNS} FROM address_book_subscriptions WHERE id = ?;", (sub_id,)
        )
        return _row_to_subscription(row) if row else None

    def get(self, sub_id: str, vault_id: str) -> Subscription:
        row = self.db.fetchone(
            f"SELECT {_SUB_COLUMNS} FROM address_book_subscriptions WHERE id = ? AND vault_id = ?;",
            (sub_id, vault_id),
        )
        if row is None:
            raise SubscriptionNotFound(sub_id)
        return _row_to_subscription(row)

    def list_for_vault(self, vault_id: str) -> list[Subscription]:
        rows = self.db.fetchall(
            f"SELECT {_SUB_COLUMNS} FROM address_book_subscriptions WHERE vault_id = ? "
            "ORDER BY created_at, id;",
            (vault_id,),
        )
        return [_row_to_subscription(r) for r in rows]

    def update(
        self,
        sub_id: str,
        vault_id: str,
        *,
        uri: str | None = None,
        username: str | None = None,
        password: str | None = None,
        sync_way: int | None = None,
        frequency: int | None = None,
        active: bool | None = None,
        address_book_path: str | None = None,
    ) -> Subscription:
        """Partial update; a new password is sealed before it is stored."""
        current = self.get(sub_id, vault_id)
        with self.db.transaction():
            self.db.execute(
                """
                UPDATE address_book_subscriptions
                SET uri = ?, username = ?, password = ?, sync_way = ?, frequency = ?,
                    active = ?, address_book_path = ?, updated_at = ?
                WHERE id = ? AND vault_id = ?;
                """,
                (
                    uri if uri is not None else current.uri,
                    username if username is not None else current.username,
                    self.cipher.encrypt(password) if password is not None else current.password,
                    parse_sync_way(sync_way) if sync_way is not None else current.sync_way,
                    frequency if frequency else current.frequency,
                    int(active) if active is not None else int(current.active),
                    address_book_path if address_book_path is not None else current.address_book_path,
                    format_ts(utc_now()),
                    sub_id,
                    vault_id,
                ),
            )
        return self.get(sub_id, vault_id)

    def delete(self, sub_id: str, vault_id: str) -> None:
        """Delete a subscription; its state rows and sync logs cascade."""
        with self.db.transaction():
            cur = self.db.execute(
                "DELETE FROM address_book_subscriptions WHERE id = ? AND vault_id = ?;",
                (sub_id, vault_id),
            )
            if cur.rowcount == 0:
                raise SubscriptionNotFound(sub_id)
        log.info("subscription-deleted sub=%s vault=%s", sub_id, vault_id)

    # -------------
    # Credentials
    # -------------

    def decrypt_password(self, sub: Subscription) -> str:
        """Open the sealed password; raises InvalidCiphertext."""
        return self.cipher.decrypt(sub.password)

    def get_decrypted(self, sub_id: str, vault_id: str) -> tuple[Subscription, str]:
        sub = self.get(sub_id, vault_id)
        return sub, self.decrypt_password(sub)

    # -------------
    # Scheduling
    # -------------

    def list_due(self, now: datetime | None = None) -> list[Subscription]:
        """Active subscriptions whose next run is due; never-synced first, then oldest."""
        now = now or utc_now()
        rows = self.db.fetchall(
            f"SELECT {_SUB_COLUMNS} FROM address_book_subscriptions WHERE active = 1;"
        )
        due = [s for s in (_row_to_subscription(r) for r in rows) if s.is_due(now)]
        due.sort(
            key=lambda s: (
                s.last_synchronized_at is not None,
                s.last_synchronized_at or now,
                s.created_at or now,
            )
        )
        return due

    def list_push_enabled(self, vault_id: str) -> list[Subscription]:
        rows = self.db.fetchall(
            f"SELECT {_SUB_COLUMNS} FROM address_book_subscriptions "
            "WHERE vault_id = ? AND active = 1 AND (sync_way & ?) != 0 ORDER BY created_at, id;",
            (vault_id, SYNC_WAY_PUSH),
        )
        return [_row_to_subscription(r) for r in rows]

    def update_sync_status(
        self, sub_id: str, token: str | None, *, at: datetime | None = None
    ) -> None:
        """Record a run: last_synchronized_at = at/now, token replaced only when given."""
        with self.db.transaction():
            cur = self.db.execute(
                """
                UPDATE address_book_subscriptions
                SET last_synchronized_at = ?,
                    distant_sync_token = COALESCE(?, distant_sync_token),
                    updated_at = ?
                WHERE id = ?;
                """,
                (format_ts(at or utc_now()), token, format_ts(utc_now()), sub_id),
            )
            if cur.rowcount == 0:
                raise SubscriptionNotFound(sub_id)

    def clear_sync_token(self, sub_id: str) -> None:
        """Forget a token the server refused; last_synchronized_at is untouched."""
        with self.db.transaction():
            self.db.execute(
                "UPDATE address_book_subscriptions SET distant_sync_token = NULL, updated_at = ? WHERE id = ?;",
                (format_ts(utc_now()), sub_id),
            )


class SubscriptionStateStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def get_state(self, contact_id: str, subscription_id: str) -> ContactSubscriptionState | None:
        row = self.db.fetchone(
            "SELECT contact_id, subscription_id, distant_uri, distant_etag, updated_at "
            "FROM contact_subscription_states WHERE contact_id = ? AND subscription_id = ?;",
            (contact_id, subscription_id),
        )
        if row is None:
            return None
        return ContactSubscriptionState(
            contact_id=row["contact_id"],
            subscription_id=row["subscription_id"],
            distant_uri=row["distant_uri"],
            distant_etag=row["distant_etag"],
            updated_at=row["updated_at"],
        )

    def upsert_state(
        self, contact_id: str, subscription_id: str, distant_uri: str, distant_etag: str
    ) -> None:
        with self.db.transaction():
            self.db.execute(
                """
                INSERT INTO contact_subscription_states(contact_id, subscription_id, distant_uri,
                    distant_etag, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(contact_id, subscription_id) DO UPDATE SET
                  distant_uri=excluded.distant_uri,
                  distant_etag=excluded.distant_etag,
                  updated_at=excluded.updated_at;
                """,
                (contact_id, subscription_id, distant_uri, distant_etag or "", format_ts(utc_now())),
            )

    def delete_state(self, contact_id: str, subscription_id: str) -> None:
        with self.db.transaction():
            self.db.execute(
                "DELETE FROM contact_subscription_states WHERE contact_id = ? AND subscription_id = ?;",
                (contact_id, subscription_id),
            )

    def list_states_for_contact(self, contact_id: str) -> list[ContactSubscriptionState]:
        rows = self.db.fetchall(
            "SELECT contact_id, subscription_id, distant_uri, distant_etag, updated_at "
            "FROM contact_subscription_states WHERE contact_id = ? ORDER BY subscription_id;",
            (contact_id,),
        )
        return [
            ContactSubscriptionState(
                contact_id=r["contact_id"],
                subscription_id=r["subscription_id"],
                distant_uri=r["distant_uri"],
                distant_etag=r["distant_etag"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]
