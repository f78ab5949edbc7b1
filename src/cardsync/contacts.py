"""Local contact service and the change-publisher seam to the push engine.

Every local mutation stamps `last_updated_at` (the conflict high-watermark)
and then notifies a ChangePublisher. The service depends only on the
publisher interface; PushPublisher forwards to the push engine and holds a
per-contact lock so two pushes of the same contact never interleave.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Protocol

from .mapping.vcard import CardData
from .store.contacts import Contact, ContactRepository
from .store.db import utc_now
from .sync.push import PushEngine

__all__ = ["ChangePublisher", "ContactService", "NullPublisher", "PushPublisher"]

log = logging.getLogger(__name__)


class ChangePublisher(Protocol):
    def on_contact_changed(self, contact_id: str, vault_id: str) -> None: ...

    def on_contact_deleted(self, contact_id: str, vault_id: str) -> None: ...


class NullPublisher:
    def on_contact_changed(self, contact_id: str, vault_id: str) -> None:
        return None

    def on_contact_deleted(self, contact_id: str, vault_id: str) -> None:
        return None


@dataclass
class _ContactLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class PushPublisher:
    def __init__(self, engine: PushEngine) -> None:
        self.engine = engine
        self._locks: dict[str, _ContactLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def _hold(self, contact_id: str) -> Iterator[None]:
        # The entry lives while any thread holds or waits on it.
        with self._guard:
            entry = self._locks.setdefault(contact_id, _ContactLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[contact_id]

    def on_contact_changed(self, contact_id: str, vault_id: str) -> None:
        with self._hold(contact_id):
            self.engine.push_contact_change(contact_id, vault_id)

    def on_contact_deleted(self, contact_id: str, vault_id: str) -> None:
        with self._hold(contact_id):
            self.engine.push_contact_delete(contact_id, vault_id)


class ContactService:
    def __init__(self, repo: ContactRepository, publisher: ChangePublisher | None = None) -> None:
        self.repo = repo
        self.publisher: ChangePublisher = publisher or NullPublisher()

    def get(self, contact_id: str, vault_id: str) -> Contact:
        return self.repo.get(contact_id, vault_id)

    def create(self, vault_id: str, user_id: str, data: CardData) -> Contact:
        contact_id = self.repo.create(vault_id, user_id, data, last_updated_at=utc_now())
        log.info("contact-created contact=%s vault=%s", contact_id, vault_id)
        self.publisher.on_contact_changed(contact_id, vault_id)
        return self.repo.get(contact_id, vault_id)

    def update(self, contact_id: str, vault_id: str, data: CardData) -> Contact:
        self.repo.get(contact_id, vault_id)
        self.repo.update_fields(contact_id, vault_id, data, last_updated_at=utc_now())
        self.publisher.on_contact_changed(contact_id, vault_id)
        return self.repo.get(contact_id, vault_id)

    def delete(self, contact_id: str, vault_id: str) -> None:
        self.repo.get(contact_id, vault_id)
        self.repo.soft_delete(contact_id)
        log.info("contact-deleted contact=%s vault=%s", contact_id, vault_id)
        self.publisher.on_contact_deleted(contact_id, vault_id)
