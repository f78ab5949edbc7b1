"""Local contact repository and the vCard upsert used by the pull engine.

Only the columns the sync core touches are modelled. Contacts are soft
deleted (deleted_at); every lookup here ignores soft-deleted rows.

Upsert rules (upsert_from_vcard)
1. A live contact in the vault with distant_uri == remote path is the update
   candidate. Same ETag as stored -> "skipped". Locally modified after the
   subscription's last sync -> "conflict_local_wins" (only distant_etag is
   refreshed). Otherwise mapped fields are overwritten -> "updated".
2. Else a live, unlinked contact with the same first/last name is adopted
   (distant_uri/etag set, local fields kept) -> "updated".
3. Else a contact plus its membership row is created -> "created".

Pull-applied changes never touch last_updated_at; that column is the
high-watermark of local edits and drives conflict detection.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from ..errors import ContactNotFound
from ..mapping.vcard import CardData, PostalAddress, contact_to_vcard, parse_vcard
from .db import Database, format_ts, new_id, parse_ts, utc_now

__all__ = ["Contact", "ContactRepository", "UpsertAction"]

log = logging.getLogger(__name__)


class UpsertAction:
    CREATED = "created"
    UPDATED = "updated"
    CONFLICT_LOCAL_WINS = "conflict_local_wins"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Contact:
    id: str
    vault_id: str
    first_name: str | None
    last_name: str | None
    nickname: str | None
    job_position: str | None
    distant_uuid: str | None
    distant_uri: str | None
    distant_etag: str | None
    vcard: str | None
    last_updated_at: datetime | None
    created_at: datetime | None
    deleted_at: datetime | None


_COLUMNS = (
    "id, vault_id, first_name, last_name, nickname, job_position, distant_uuid, "
    "distant_uri, distant_etag, vcard, last_updated_at, created_at, deleted_at"
)


def _row_to_contact(row) -> Contact:
    return Contact(
        id=row["id"],
        vault_id=row["vault_id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        nickname=row["nickname"],
        job_position=row["job_position"],
        distant_uuid=row["distant_uuid"],
        distant_uri=row["distant_uri"],
        distant_etag=row["distant_etag"],
        vcard=row["vcard"],
        last_updated_at=parse_ts(row["last_updated_at"]),
        created_at=parse_ts(row["created_at"]),
        deleted_at=parse_ts(row["deleted_at"]),
    )


def _none_if_empty(value: str | None) -> str | None:
    return value if value else None


class ContactRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    # -------------
    # Vaults
    # -------------

    def create_vault(self, account_id: str, name: str = "", vault_id: str | None = None) -> str:
        vid = vault_id or new_id()
        with self.db.transaction():
            self.db.execute(
                "INSERT INTO vaults(id, account_id, name, created_at) VALUES (?, ?, ?, ?);",
                (vid, account_id, name, format_ts(utc_now())),
            )
        return vid

    def ensure_vault(self, vault_id: str, account_id: str = "") -> None:
        with self.db.transaction():
            self.db.execute(
                "INSERT OR IGNORE INTO vaults(id, account_id, name, created_at) VALUES (?, ?, '', ?);",
                (vault_id, account_id or vault_id, format_ts(utc_now())),
            )

    def vault_exists(self, vault_id: str) -> bool:
        return self.db.fetchone("SELECT 1 FROM vaults WHERE id = ?;", (vault_id,)) is not None

    # -------------
    # Reads
    # -------------

    def find(self, contact_id: str, vault_id: str) -> Contact | None:
        row = self.db.fetchone(
            f"SELECT {_COLUMNS} FROM contacts WHERE id = ? AND vault_id = ? AND deleted_at IS NULL;",
            (contact_id, vault_id),
        )
        return _row_to_contact(row) if row else None

    def get(self, contact_id: str, vault_id: str) -> Contact:
        contact = self.find(contact_id, vault_id)
        if contact is None:
            raise ContactNotFound(contact_id)
        return contact

    def find_by_distant_uri(self, vault_id: str, distant_uri: str) -> Contact | None:
        row = self.db.fetchone(
            f"SELECT {_COLUMNS} FROM contacts "
            "WHERE vault_id = ? AND distant_uri = ? AND deleted_at IS NULL "
            "ORDER BY created_at LIMIT 1;",
            (vault_id, distant_uri),
        )
        return _row_to_contact(row) if row else None

    def find_by_distant_uris(self, vault_id: str, distant_uris: Iterable[str]) -> list[Contact]:
        uris = list(dict.fromkeys(distant_uris))
        if not uris:
            return []
        marks = ", ".join("?" for _ in uris)
        rows = self.db.fetchall(
            f"SELECT {_COLUMNS} FROM contacts "
            f"WHERE vault_id = ? AND distant_uri IN ({marks}) AND deleted_at IS NULL "
            "ORDER BY created_at;",
            (vault_id, *uris),
        )
        return [_row_to_contact(r) for r in rows]

    def find_adoptable(self, vault_id: str, first_name: str, last_name: str) -> Contact | None:
        """Unlinked live contact with exactly this name (names must not both be empty)."""
        if not first_name and not last_name:
            return None
        row = self.db.fetchone(
            f"SELECT {_COLUMNS} FROM contacts "
            "WHERE vault_id = ? AND COALESCE(first_name, '') = ? AND COALESCE(last_name, '') = ? "
            "AND distant_uri IS NULL AND deleted_at IS NULL "
            "ORDER BY created_at LIMIT 1;",
            (vault_id, first_name, last_name),
        )
        return _row_to_contact(row) if row else None

    def card_data(self, contact: Contact) -> CardData:
        infos = self.db.fetchall(
            "SELECT kind, data FROM contact_information WHERE contact_id = ? ORDER BY id;",
            (contact.id,),
        )
        addr_rows = self.db.fetchall(
            "SELECT a.line_1, a.city, a.province, a.postal_code, a.country "
            "FROM addresses a JOIN contact_addresses ca ON ca.address_id = a.id "
            "WHERE ca.contact_id = ? ORDER BY a.id;",
            (contact.id,),
        )
        return CardData(
            first_name=contact.first_name or "",
            last_name=contact.last_name or "",
            nickname=contact.nickname or "",
            job_position=contact.job_position or "",
            uid=contact.distant_uuid or contact.id,
            phones=[r["data"] for r in infos if r["kind"] == "phone"],
            emails=[r["data"] for r in infos if r["kind"] == "email"],
            addresses=[
                PostalAddress(
                    street=r["line_1"] or "",
                    city=r["city"] or "",
                    region=r["province"] or "",
                    postal_code=r["postal_code"] or "",
                    country=r["country"] or "",
                )
                for r in addr_rows
            ],
        )

    def export_vcard(self, contact_id: str, vault_id: str) -> str:
        contact = self.get(contact_id, vault_id)
        return contact_to_vcard(self.card_data(contact), uid=contact.id)

    # -------------
    # Writes
    # -------------

    def create(
        self,
        vault_id: str,
        user_id: str,
        data: CardData,
        *,
        last_updated_at: datetime | None = None,
        distant_uri: str | None = None,
        distant_etag: str | None = None,
        vcard: str | None = None,
    ) -> str:
        contact_id = new_id()
        now = format_ts(utc_now())
        with self.db.transaction():
            self.db.execute(
                """
                INSERT INTO contacts(id, vault_id, first_name, last_name, nickname, job_position,
                    distant_uuid, distant_uri, distant_etag, vcard, last_updated_at,
                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    contact_id,
                    vault_id,
                    _none_if_empty(data.first_name),
                    _none_if_empty(data.last_name),
                    _none_if_empty(data.nickname),
                    _none_if_empty(data.job_position),
                    _none_if_empty(data.uid),
                    distant_uri,
                    distant_etag,
                    vcard,
                    format_ts(last_updated_at) if last_updated_at else None,
                    now,
                    now,
                ),
            )
            self.db.execute(
                "INSERT INTO contact_vault_user(contact_id, user_id, vault_id) VALUES (?, ?, ?);",
                (contact_id, user_id, vault_id),
            )
            self._insert_card_fields(contact_id, vault_id, data)
        return contact_id

    def update_fields(
        self,
        contact_id: str,
        vault_id: str,
        data: CardData,
        *,
        last_updated_at: datetime | None = None,
    ) -> None:
        """Overwrite names and mapped fields; last_updated_at only when given."""
        with self.db.transaction():
            self.db.execute(
                """
                UPDATE contacts SET first_name = ?, last_name = ?, nickname = ?, job_position = ?,
                    last_updated_at = COALESCE(?, last_updated_at), updated_at = ?
                WHERE id = ? AND vault_id = ?;
                """,
                (
                    _none_if_empty(data.first_name),
                    _none_if_empty(data.last_name),
                    _none_if_empty(data.nickname),
                    _none_if_empty(data.job_position),
                    format_ts(last_updated_at) if last_updated_at else None,
                    format_ts(utc_now()),
                    contact_id,
                    vault_id,
                ),
            )
            self._replace_card_fields(contact_id, vault_id, data)

    def set_distant(
        self,
        contact_id: str,
        *,
        distant_uri: str | None,
        distant_etag: str | None,
        vcard: str | None = None,
    ) -> None:
        with self.db.transaction():
            self.db.execute(
                "UPDATE contacts SET distant_uri = ?, distant_etag = ?, vcard = COALESCE(?, vcard), "
                "updated_at = ? WHERE id = ?;",
                (distant_uri, distant_etag, vcard, format_ts(utc_now()), contact_id),
            )

    def soft_delete(self, contact_id: str, *, at: datetime | None = None) -> None:
        with self.db.transaction():
            cur = self.db.execute(
                "UPDATE contacts SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL;",
                (format_ts(at or utc_now()), format_ts(utc_now()), contact_id),
            )
            if cur.rowcount == 0:
                raise ContactNotFound(contact_id)

    def _insert_card_fields(self, contact_id: str, vault_id: str, data: CardData) -> None:
        for kind, values in (("phone", data.phones), ("email", data.emails)):
            for value in values:
                self.db.execute(
                    "INSERT INTO contact_information(contact_id, kind, data) VALUES (?, ?, ?);",
                    (contact_id, kind, value),
                )
        for adr in data.addresses:
            if adr.is_empty():
                continue
            cur = self.db.execute(
                "INSERT INTO addresses(vault_id, line_1, city, province, postal_code, country) "
                "VALUES (?, ?, ?, ?, ?, ?);",
                (
                    vault_id,
                    _none_if_empty(adr.street),
                    _none_if_empty(adr.city),
                    _none_if_empty(adr.region),
                    _none_if_empty(adr.postal_code),
                    _none_if_empty(adr.country),
                ),
            )
            self.db.execute(
                "INSERT INTO contact_addresses(contact_id, address_id) VALUES (?, ?);",
                (contact_id, cur.lastrowid),
            )

    def _replace_card_fields(self, contact_id: str, vault_id: str, data: CardData) -> None:
        self.db.execute("DELETE FROM contact_information WHERE contact_id = ?;", (contact_id,))
        self.db.execute(
            "DELETE FROM addresses WHERE id IN "
            "(SELECT address_id FROM contact_addresses WHERE contact_id = ?);",
            (contact_id,),
        )
        self._insert_card_fields(contact_id, vault_id, data)

    # -------------
    # Pull upsert
    # -------------

    def upsert_from_vcard(
        self,
        card: str,
        vault_id: str,
        user_id: str,
        remote_path: str,
        remote_etag: str,
        last_sync_at: datetime | None,
    ) -> tuple[str, str]:
        """Create or update a contact from a pulled vCard; returns (contact_id, action).

        Call inside the caller's per-entity transaction. Raises InvalidVCard
        for unparseable cards.
        """
        data = parse_vcard(card)

        with self.db.transaction():
            existing = self.find_by_distant_uri(vault_id, remote_path)
            if existing is not None:
                if remote_etag and existing.distant_etag == remote_etag:
                    return existing.id, UpsertAction.SKIPPED

                if (
                    last_sync_at is not None
                    and existing.last_updated_at is not None
                    and existing.last_updated_at > last_sync_at
                ):
                    self.set_distant(existing.id, distant_uri=remote_path, distant_etag=remote_etag)
                    return existing.id, UpsertAction.CONFLICT_LOCAL_WINS

                self.update_fields(existing.id, vault_id, data)
                self.db.execute(
                    "UPDATE contacts SET distant_uuid = COALESCE(?, distant_uuid) WHERE id = ?;",
                    (_none_if_empty(data.uid), existing.id),
                )
                self.set_distant(
                    existing.id, distant_uri=remote_path, distant_etag=remote_etag, vcard=card
                )
                return existing.id, UpsertAction.UPDATED

            adopted = self.find_adoptable(vault_id, data.first_name, data.last_name)
            if adopted is not None:
                self.set_distant(
                    adopted.id, distant_uri=remote_path, distant_etag=remote_etag, vcard=card
                )
                return adopted.id, UpsertAction.UPDATED

            contact_id = self.create(
                vault_id,
                user_id,
                data,
                distant_uri=remote_path,
                distant_etag=remote_etag,
                vcard=card,
            )
            return contact_id, UpsertAction.CREATED
