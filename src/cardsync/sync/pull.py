"""Pull engine (remote CardDAV address book -> local contacts).

One run reconciles one subscription:
1. Open the sealed password; InvalidCiphertext is logged to the ledger and
   raised (the run is aborted).
2. With a stored sync token: sync-collection(token). A protocol failure
   (refused token, unsupported REPORT) clears the stored token and falls
   through to the full path; auth/network failures abort the run.
3. Incremental: multiget changed paths in batches (<= 50), upsert each card,
   then soft-delete contacts for removed paths. The new token is stored only
   when no batch, upsert or deletion errored.
4. Full: sync-collection("") with a token and updates is handled like
   incremental; otherwise query the whole collection, upsert every card and
   record the run time without a token.

Every upsert and deletion runs in its own short transaction; the token
advance is a separate single-row update afterwards. Cancellation is checked
between remote operations and between entities, and a cancelled run never
advances the token.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from ..dav.carddav import (
    MAX_MULTIGET,
    AddressObject,
    CardDAVClientFactory,
    CardDAVClientProtocol,
    SyncResult,
)
from ..errors import (
    CardDAVError,
    ClientCreateError,
    InvalidCiphertext,
    InvalidVCard,
    RemoteProtocolError,
)
from ..store.contacts import ContactRepository, UpsertAction
from ..store.subscriptions import Subscription, SubscriptionStateStore, SubscriptionStore
from ..store.sync_log import SyncAction, SyncLog
from .context import RunContext

__all__ = ["PullEngine", "SyncCounts"]

log = logging.getLogger(__name__)

CONFLICT_MESSAGE = "local contact modified after last sync, keeping local version"


@dataclass
class SyncCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class PullEngine:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        states: SubscriptionStateStore,
        contacts: ContactRepository,
        sync_log: SyncLog,
        factory: CardDAVClientFactory,
        *,
        batch_size: int = MAX_MULTIGET,
        request_timeout: float = 30.0,
    ) -> None:
        self.subscriptions = subscriptions
        self.states = states
        self.contacts = contacts
        self.sync_log = sync_log
        self.factory = factory
        self.batch_size = max(1, min(batch_size, MAX_MULTIGET))
        self.request_timeout = request_timeout

    # -----------------
    # Entry point
    # -----------------

    def run(self, ctx: RunContext, sub: Subscription) -> SyncCounts:
        ctx.check()
        try:
            password = self.subscriptions.decrypt_password(sub)
        except InvalidCiphertext as exc:
            log.error("dav-pull-decrypt-failed sub=%s", sub.id)
            self._record(sub.id, SyncAction.ERROR, distant_uri=sub.uri, error_message=str(exc))
            raise

        try:
            client = self.factory.new_client(sub.uri, sub.username, password)
        except ClientCreateError as exc:
            self._record(sub.id, SyncAction.ERROR, distant_uri=sub.uri, error_message=str(exc))
            raise
        del password

        counts = SyncCounts()
        try:
            if sub.distant_sync_token:
                result = self._sync_collection(ctx, client, sub, sub.distant_sync_token)
                if result is not None:
                    self._apply(ctx, client, sub, result, counts)
                    return counts
                self.subscriptions.clear_sync_token(sub.id)
            self._full(ctx, client, sub, counts)
            return counts
        finally:
            client.close()
            log.info("dav-pull-finished sub=%s counts=%s", sub.id, counts.as_dict())

    # -----------------
    # Paths
    # -----------------

    def _sync_collection(
        self, ctx: RunContext, client: CardDAVClientProtocol, sub: Subscription, token: str
    ) -> SyncResult | None:
        """sync-collection; None when the server refused it (caller falls back)."""
        try:
            return client.sync_collection(ctx.with_timeout(self.request_timeout), sub.uri, token)
        except RemoteProtocolError as exc:
            log.warning(
                "dav-pull-fallback-full sub=%s incremental=%s err=%s", sub.id, bool(token), exc
            )
            return None

    def _apply(
        self,
        ctx: RunContext,
        client: CardDAVClientProtocol,
        sub: Subscription,
        result: SyncResult,
        counts: SyncCounts,
    ) -> None:
        clean = True
        paths = list(dict.fromkeys(ref.path for ref in result.updated))
        for batch in _chunks(paths, self.batch_size):
            ctx.check()
            try:
                objects = client.multi_get_address_book(
                    ctx.with_timeout(self.request_timeout), sub.uri, batch
                )
            except CardDAVError as exc:
                clean = False
                log.warning(
                    "dav-pull-multiget-failed sub=%s batch=%d err=%s", sub.id, len(batch), exc
                )
                for path in batch:
                    counts.errors += 1
                    self._record(
                        sub.id,
                        SyncAction.ERROR,
                        distant_uri=path,
                        error_message=f"multiget failed: {exc}",
                    )
                continue
            if not self._upsert_all(ctx, sub, objects, counts):
                clean = False

        if not self._delete_paths(ctx, sub, result.deleted, counts):
            clean = False

        if clean:
            self.subscriptions.update_sync_status(sub.id, result.sync_token or None)
        else:
            log.warning("dav-pull-token-held sub=%s errors=%d", sub.id, counts.errors)

    def _full(
        self, ctx: RunContext, client: CardDAVClientProtocol, sub: Subscription, counts: SyncCounts
    ) -> None:
        ctx.check()
        result = self._sync_collection(ctx, client, sub, "")
        if result is not None and result.sync_token and result.updated:
            self._apply(ctx, client, sub, result, counts)
            return

        ctx.check()
        try:
            objects = client.query_address_book(ctx.with_timeout(self.request_timeout), sub.uri)
        except CardDAVError as exc:
            log.error("dav-pull-query-failed sub=%s err=%s", sub.id, exc)
            counts.errors += 1
            self._record(
                sub.id,
                SyncAction.ERROR,
                distant_uri=sub.uri,
                error_message=f"query failed: {exc}",
            )
            return

        self._upsert_all(ctx, sub, objects, counts)
        self.subscriptions.update_sync_status(sub.id, None)

    # -----------------
    # Entities
    # -----------------

    def _upsert_all(
        self, ctx: RunContext, sub: Subscription, objects: Iterable[AddressObject], counts: SyncCounts
    ) -> bool:
        clean = True
        for obj in objects:
            ctx.check()
            if not obj.card:
                continue
            if not self._upsert(sub, obj, counts):
                clean = False
        return clean

    def _upsert(self, sub: Subscription, obj: AddressObject, counts: SyncCounts) -> bool:
        try:
            with self.contacts.db.transaction():
                contact_id, action = self.contacts.upsert_from_vcard(
                    obj.card,
                    sub.vault_id,
                    sub.user_id,
                    obj.path,
                    obj.etag,
                    sub.last_synchronized_at,
                )
                if action != UpsertAction.SKIPPED:
                    self.states.upsert_state(contact_id, sub.id, obj.path, obj.etag)
        except (InvalidVCard, sqlite3.Error) as exc:
            log.warning("dav-pull-upsert-failed sub=%s uri=%s err=%s", sub.id, obj.path, exc)
            counts.errors += 1
            self._record(
                sub.id,
                SyncAction.ERROR,
                distant_uri=obj.path,
                distant_etag=obj.etag,
                error_message=f"upsert failed: {exc}",
            )
            return False

        if action == UpsertAction.CREATED:
            counts.created += 1
            self._record(sub.id, SyncAction.CREATED, contact_id=contact_id, distant_uri=obj.path, distant_etag=obj.etag)
        elif action == UpsertAction.UPDATED:
            counts.updated += 1
            self._record(sub.id, SyncAction.UPDATED, contact_id=contact_id, distant_uri=obj.path, distant_etag=obj.etag)
        elif action == UpsertAction.CONFLICT_LOCAL_WINS:
            counts.skipped += 1
            self._record(
                sub.id,
                SyncAction.CONFLICT_LOCAL_WINS,
                contact_id=contact_id,
                distant_uri=obj.path,
                distant_etag=obj.etag,
                error_message=CONFLICT_MESSAGE,
            )
        else:
            counts.skipped += 1
            self._record(sub.id, SyncAction.SKIPPED, distant_uri=obj.path, distant_etag=obj.etag)
        return True

    def _delete_paths(
        self, ctx: RunContext, sub: Subscription, paths: list[str], counts: SyncCounts
    ) -> bool:
        if not paths:
            return True
        ctx.check()
        clean = True
        for contact in self.contacts.find_by_distant_uris(sub.vault_id, paths):
            ctx.check()
            try:
                with self.contacts.db.transaction():
                    self.contacts.soft_delete(contact.id)
                    self.states.delete_state(contact.id, sub.id)
            except sqlite3.Error as exc:
                clean = False
                counts.errors += 1
                self._record(
                    sub.id,
                    SyncAction.ERROR,
                    contact_id=contact.id,
                    distant_uri=contact.distant_uri or "",
                    error_message=f"delete failed: {exc}",
                )
                continue
            counts.deleted += 1
            self._record(
                sub.id, SyncAction.DELETED, contact_id=contact.id, distant_uri=contact.distant_uri or ""
            )
        return clean

    def _record(self, sub_id: str, action: str, **fields) -> None:
        try:
            self.sync_log.append(sub_id, action, **fields)
        except sqlite3.Error:
            log.exception("dav-sync-log-write-failed sub=%s action=%s", sub_id, action)
