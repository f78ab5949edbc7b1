from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add repo_root/src to sys.path so tests run without an editable install
_SRC = Path(__file__).resolve().parents[1] / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

from cardsync.crypto import PasswordCipher  # noqa: E402
from cardsync.dav.carddav import (  # noqa: E402
    AddressBook,
    AddressObject,
    AddressObjectRef,
    SyncResult,
)
from cardsync.errors import ClientCreateError, RemoteProtocolError  # noqa: E402
from cardsync.store.db import Database  # noqa: E402
from cardsync.sync.orchestrator import SyncService  # noqa: E402

SUB_URI = "https://dav.example.com/addressbooks/alice/contacts/"
OTHER_URI = "https://other.example.org/dav/book/"
VAULT = "vault-1"
USER = "user-1"
SECRET = "test-secret"


class FakeCardDAV:
    """In-memory CardDAV remote implementing the client protocol."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[str, str]] = {}
        self.sync_results: dict[str, SyncResult | Exception] = {}
        self.multiget_error: Exception | None = None
        self.query_error: Exception | None = None
        self.put_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.put_location: str | None = None
        self.principal: str | Exception = "https://dav.example.com/principals/alice/"
        self.home_set: str | Exception = "https://dav.example.com/addressbooks/alice/"
        self.books: list[AddressBook] = [AddressBook(path=SUB_URI, name="Contacts")]
        self.calls: list[tuple] = []
        self.puts: list[tuple[str, str]] = []
        self.removed: list[str] = []
        self.closed = 0
        self._etag_seq = 0

    def add(self, path: str, etag: str, card: str) -> None:
        self.objects[path] = (etag, card)

    def find_current_user_principal(self, ctx):
        self.calls.append(("principal",))
        if isinstance(self.principal, Exception):
            raise self.principal
        return self.principal

    def find_address_book_home_set(self, ctx, principal):
        self.calls.append(("home-set", principal))
        if isinstance(self.home_set, Exception):
            raise self.home_set
        return self.home_set

    def find_address_books(self, ctx, home_set):
        self.calls.append(("books", home_set))
        return list(self.books)

    def sync_collection(self, ctx, path, sync_token):
        ctx.check()
        self.calls.append(("sync", path, sync_token))
        res = self.sync_results.get(sync_token)
        if res is None:
            raise RemoteProtocolError("sync-collection not supported", status_code=403)
        if isinstance(res, Exception):
            raise res
        return res

    def multi_get_address_book(self, ctx, path, paths):
        ctx.check()
        self.calls.append(("multiget", path, list(paths)))
        if self.multiget_error is not None:
            raise self.multiget_error
        return [
            AddressObject(path=p, etag=self.objects[p][0], card=self.objects[p][1])
            for p in paths
            if p in self.objects
        ]

    def query_address_book(self, ctx, path):
        ctx.check()
        self.calls.append(("query", path))
        if self.query_error is not None:
            raise self.query_error
        return [AddressObject(path=p, etag=e, card=c) for p, (e, c) in self.objects.items()]

    def get_address_object(self, ctx, path):
        etag, card = self.objects[path]
        return AddressObject(path=path, etag=etag, card=card)

    def put_address_object(self, ctx, path, card):
        self.calls.append(("put", path))
        if self.put_error is not None:
            raise self.put_error
        self._etag_seq += 1
        etag = f'"e{self._etag_seq}"'
        final = self.put_location or path
        self.puts.append((path, card))
        self.objects[final] = (etag, card)
        return AddressObjectRef(path=final, etag=etag)

    def remove_all(self, ctx, path):
        self.calls.append(("delete", path))
        if self.remove_error is not None:
            raise self.remove_error
        self.removed.append(path)
        self.objects.pop(path, None)

    def close(self) -> None:
        self.closed += 1


class FakeFactory:
    def __init__(self, clients: dict[str, FakeCardDAV] | None = None, default: FakeCardDAV | None = None):
        self.clients = clients or {}
        self.default = default
        self.created: list[tuple[str, str, str]] = []
        self.error: Exception | None = None

    def new_client(self, uri, username, password):
        if self.error is not None:
            raise self.error
        self.created.append((uri, username, password))
        for prefix, client in self.clients.items():
            if uri.startswith(prefix):
                return client
        if self.default is None:
            raise ClientCreateError(f"no fake remote for {uri}")
        return self.default


def make_card(first: str, last: str = "", *, uid: str = "", emails=(), phones=()) -> str:
    lines = ["BEGIN:VCARD", "VERSION:3.0"]
    if uid:
        lines.append(f"UID:{uid}")
    lines.append(f"FN:{' '.join(p for p in (first, last) if p)}")
    lines.append(f"N:{last};{first};;;")
    lines.extend(f"EMAIL;TYPE=INTERNET:{e}" for e in emails)
    lines.extend(f"TEL;TYPE=VOICE:{p}" for p in phones)
    lines.append("END:VCARD")
    return "\r\n".join(lines) + "\r\n"


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "cardsync.sqlite"))
    yield database
    database.close()


@pytest.fixture
def cipher() -> PasswordCipher:
    return PasswordCipher(SECRET)


@pytest.fixture
def remote() -> FakeCardDAV:
    return FakeCardDAV()


@pytest.fixture
def factory(remote: FakeCardDAV) -> FakeFactory:
    return FakeFactory(default=remote)


@pytest.fixture
def service(db, cipher, factory) -> SyncService:
    svc = SyncService(db, cipher, factory)
    svc.contacts.ensure_vault(VAULT, "account-1")
    return svc


@pytest.fixture
def new_subscription(service: SyncService):
    def _make(uri: str = SUB_URI, sync_way: int | str = "pull", **kw) -> str:
        return service.create_subscription(
            vault_id=kw.pop("vault_id", VAULT),
            user_id=kw.pop("user_id", USER),
            uri=uri,
            username="alice",
            password="s3cret",
            sync_way=sync_way,
            **kw,
        )

    return _make
