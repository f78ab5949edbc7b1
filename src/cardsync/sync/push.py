"""Push engine (local contact changes -> remote CardDAV address books).

Change: for every active push-enabled subscription of the contact's vault
- skip with `skipped_push_origin` when the contact's distant_uri lies under
  the subscription URI (it was pulled from there)
- PUT the exported vCard to the remembered target, or to
  <uri>/<contact_id>.vcf when no state row exists
- remember the returned path (Location, else the requested target) and ETag
  in the state row and log `pushed`

Delete: for every state row of the contact
- subscription gone, inactive or no longer pushing: drop the row silently
- DELETE the remembered path; on success drop the row and log
  `push_deleted`, on failure keep the row and log `error`

Each subscription runs isolated with its own deadline; one failing remote
never affects another. Callers serialize pushes per contact.
"""

from __future__ import annotations

import logging
import sqlite3

from ..dav.carddav import CardDAVClientFactory
from ..errors import CardDAVError, ClientCreateError, InvalidCiphertext
from ..mapping.vcard import contact_to_vcard
from ..store.contacts import Contact, ContactRepository
from ..store.subscriptions import (
    ContactSubscriptionState,
    Subscription,
    SubscriptionStateStore,
    SubscriptionStore,
)
from ..store.sync_log import SyncAction, SyncLog
from .context import RunContext
from .isolation import run_isolated

__all__ = ["PushEngine", "default_target"]

log = logging.getLogger(__name__)


def default_target(sub: Subscription, contact_id: str) -> str:
    return f"{sub.uri.rstrip('/')}/{contact_id}.vcf"


class PushEngine:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        states: SubscriptionStateStore,
        contacts: ContactRepository,
        sync_log: SyncLog,
        factory: CardDAVClientFactory,
        *,
        request_timeout: float = 30.0,
    ) -> None:
        self.subscriptions = subscriptions
        self.states = states
        self.contacts = contacts
        self.sync_log = sync_log
        self.factory = factory
        self.request_timeout = request_timeout

    # -----------------
    # Change
    # -----------------

    def push_contact_change(
        self, contact_id: str, vault_id: str, ctx: RunContext | None = None
    ) -> None:
        contact = self.contacts.find(contact_id, vault_id)
        if contact is None:
            log.warning("dav-push-contact-missing contact=%s vault=%s", contact_id, vault_id)
            return
        parent = ctx or RunContext.background()

        for sub in self.subscriptions.list_push_enabled(vault_id):
            outcome = run_isolated(
                "dav-push",
                lambda sub=sub: self._push_one(parent.with_timeout(self.request_timeout), sub, contact),
                context={"subscription_id": sub.id, "contact_id": contact_id},
            )
            if not outcome.ok:
                self._record(
                    sub.id,
                    SyncAction.ERROR,
                    contact_id=contact_id,
                    error_message=f"push failed: {outcome.error}",
                )

    def _push_one(self, ctx: RunContext, sub: Subscription, contact: Contact) -> None:
        if sub.owns(contact.distant_uri):
            log.debug("dav-push-origin-skip sub=%s contact=%s", sub.id, contact.id)
            self._record(
                sub.id,
                SyncAction.SKIPPED_PUSH_ORIGIN,
                contact_id=contact.id,
                distant_uri=contact.distant_uri or "",
                distant_etag=contact.distant_etag or "",
            )
            return

        card = contact_to_vcard(self.contacts.card_data(contact), uid=contact.id)
        state = self.states.get_state(contact.id, sub.id)
        target = state.distant_uri if state else default_target(sub, contact.id)

        client = self._client(sub, contact.id, target)
        if client is None:
            return
        try:
            ref = client.put_address_object(ctx, target, card)
        except CardDAVError as exc:
            log.warning("dav-push-put-failed sub=%s uri=%s err=%s", sub.id, target, exc)
            self._record(
                sub.id,
                SyncAction.ERROR,
                contact_id=contact.id,
                distant_uri=target,
                error_message=f"put failed: {exc}",
            )
            return
        finally:
            client.close()

        path = ref.path or target
        self.states.upsert_state(contact.id, sub.id, path, ref.etag)
        self._record(
            sub.id, SyncAction.PUSHED, contact_id=contact.id, distant_uri=path, distant_etag=ref.etag
        )

    # -----------------
    # Delete
    # -----------------

    def push_contact_delete(
        self, contact_id: str, vault_id: str, ctx: RunContext | None = None
    ) -> None:
        parent = ctx or RunContext.background()
        for state in self.states.list_states_for_contact(contact_id):
            outcome = run_isolated(
                "dav-push-delete",
                lambda state=state: self._delete_one(
                    parent.with_timeout(self.request_timeout), state, vault_id
                ),
                context={"subscription_id": state.subscription_id, "contact_id": contact_id},
            )
            if not outcome.ok:
                self._record(
                    state.subscription_id,
                    SyncAction.ERROR,
                    contact_id=contact_id,
                    distant_uri=state.distant_uri,
                    error_message=f"push delete failed: {outcome.error}",
                )

    def _delete_one(self, ctx: RunContext, state: ContactSubscriptionState, vault_id: str) -> None:
        sub = self.subscriptions.find(state.subscription_id)
        if sub is None or sub.vault_id != vault_id:
            return
        if not sub.active or not sub.pushes:
            self.states.delete_state(state.contact_id, sub.id)
            return

        client = self._client(sub, state.contact_id, state.distant_uri)
        if client is None:
            return
        try:
            client.remove_all(ctx, state.distant_uri)
        except CardDAVError as exc:
            # Already gone on the server.
            if exc.status_code != 404:
                log.warning("dav-push-delete-failed sub=%s uri=%s err=%s", sub.id, state.distant_uri, exc)
                self._record(
                    sub.id,
                    SyncAction.ERROR,
                    contact_id=state.contact_id,
                    distant_uri=state.distant_uri,
                    distant_etag=state.distant_etag,
                    error_message=f"delete failed: {exc}",
                )
                return
        finally:
            client.close()

        self.states.delete_state(state.contact_id, sub.id)
        self._record(
            sub.id,
            SyncAction.PUSH_DELETED,
            contact_id=state.contact_id,
            distant_uri=state.distant_uri,
            distant_etag=state.distant_etag,
        )

    # -----------------
    # Helpers
    # -----------------

    def _client(self, sub: Subscription, contact_id: str, distant_uri: str):
        """Client for one subscription, or None after logging why it could not be built."""
        try:
            password = self.subscriptions.decrypt_password(sub)
            return self.factory.new_client(sub.uri, sub.username, password)
        except (InvalidCiphertext, ClientCreateError) as exc:
            log.error("dav-push-client-failed sub=%s err=%s", sub.id, exc)
            self._record(
                sub.id,
                SyncAction.ERROR,
                contact_id=contact_id,
                distant_uri=distant_uri,
                error_message=str(exc),
            )
            return None

    def _record(self, sub_id: str, action: str, **fields) -> None:
        try:
            self.sync_log.append(sub_id, action, **fields)
        except sqlite3.Error:
            log.exception("dav-sync-log-write-failed sub=%s action=%s", sub_id, action)
