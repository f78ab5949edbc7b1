"""CardDAV client over httpx (RFC 6352 + RFC 6578 sync-collection).

Operations used by the sync engines:
- find_current_user_principal / find_address_book_home_set / find_address_books
- sync_collection(path, token) -> SyncResult
- multi_get_address_book(path, hrefs) -> list[AddressObject]  (<= 50 hrefs)
- query_address_book(path) -> list[AddressObject]
- get_address_object / put_address_object / remove_all

Notes
- Every href the client returns is an absolute URL resolved against the
  subscription URI, so remote paths stored locally compare by prefix with the
  subscription URI.
- Errors are classified: transport/5xx/429 -> RemoteNetworkError,
  401 -> RemoteAuthError, other 4xx or malformed bodies -> RemoteProtocolError.
- Do not log card bodies; they are full of contact PII.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import TracebackType
from typing import Protocol
from urllib.parse import urljoin, urlsplit

import httpx

from ..errors import (
    CardDAVError,
    ClientCreateError,
    RemoteAuthError,
    RemoteNetworkError,
    RemoteProtocolError,
    UnreachableCollection,
)
from ..sync.context import RunContext
from ..utils.http import RetryConfig, create_client, request_with_retries
from .auth import FallbackAuth
from .multistatus import (
    addressbook_home_set_body,
    addressbook_multiget_body,
    addressbook_query_body,
    list_addressbooks_body,
    parse_multistatus,
    principal_body,
    sync_collection_body,
)

__all__ = [
    "MAX_MULTIGET",
    "AddressBook",
    "AddressObject",
    "AddressObjectRef",
    "CardDAVClient",
    "CardDAVClientFactory",
    "CardDAVClientProtocol",
    "DefaultCardDAVClientFactory",
    "SyncResult",
]

log = logging.getLogger(__name__)

MAX_MULTIGET = 50

_XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}


@dataclass(frozen=True)
class AddressBook:
    path: str
    name: str


@dataclass(frozen=True)
class AddressObjectRef:
    path: str
    etag: str


@dataclass(frozen=True)
class AddressObject:
    path: str
    etag: str
    card: str


@dataclass(frozen=True)
class SyncResult:
    sync_token: str
    updated: list[AddressObjectRef] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


class CardDAVClientProtocol(Protocol):
    def find_current_user_principal(self, ctx: RunContext) -> str: ...

    def find_address_book_home_set(self, ctx: RunContext, principal: str) -> str: ...

    def find_address_books(self, ctx: RunContext, home_set: str) -> list[AddressBook]: ...

    def sync_collection(self, ctx: RunContext, path: str, sync_token: str) -> SyncResult: ...

    def multi_get_address_book(
        self, ctx: RunContext, path: str, paths: list[str]
    ) -> list[AddressObject]: ...

    def query_address_book(self, ctx: RunContext, path: str) -> list[AddressObject]: ...

    def get_address_object(self, ctx: RunContext, path: str) -> AddressObject: ...

    def put_address_object(self, ctx: RunContext, path: str, card: str) -> AddressObjectRef: ...

    def remove_all(self, ctx: RunContext, path: str) -> None: ...

    def close(self) -> None: ...


class CardDAVClientFactory(Protocol):
    def new_client(self, uri: str, username: str, password: str) -> CardDAVClientProtocol: ...


def _classify_status(resp: httpx.Response, op: str) -> CardDAVError:
    code = resp.status_code
    msg = f"{op} failed: HTTP {code}"
    if code == 401:
        return RemoteAuthError(msg, status_code=code)
    # 501: the server does not implement the method or REPORT; retrying cannot help.
    if code == 429 or (code >= 500 and code != 501):
        return RemoteNetworkError(msg, status_code=code)
    return RemoteProtocolError(msg, status_code=code)


class CardDAVClient:
    def __init__(
        self,
        uri: str,
        username: str,
        password: str,
        *,
        timeout: float = 30.0,
        verify: bool | str = True,
        retry: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize CardDAV client.

        Args:
            uri: address book collection URL, e.g.
                https://dav.example.com/addressbooks/user/contacts/
            username: account name on the CardDAV server
            password: plaintext password (lives only as long as this client)
        """
        parts = urlsplit(uri)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ClientCreateError(f"invalid CardDAV URI: {uri!r}")
        self.uri = uri
        self.timeout = timeout
        self.retry = retry or RetryConfig()
        self.auth = FallbackAuth(username, password)
        self.client = create_client(
            auth=self.auth,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    # -----------------
    # Lifecycle
    # -----------------

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> CardDAVClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -----------------
    # Helpers
    # -----------------

    def resolve(self, href: str) -> str:
        """Absolute URL for an href (absolute hrefs are returned unchanged)."""
        return urljoin(self.uri, href)

    def _request(
        self,
        ctx: RunContext,
        method: str,
        path: str,
        *,
        op: str,
        body: bytes | str | None = None,
        headers: dict[str, str] | None = None,
        expected: tuple[int, ...] = (207,),
    ) -> httpx.Response:
        ctx.check()
        url = self.resolve(path)
        try:
            resp = request_with_retries(
                self.client,
                method,
                url,
                headers=headers,
                data=body,
                retry=self.retry,
                timeout=self.timeout,
                expected=expected,
                ctx=ctx,
            )
        except httpx.TransportError as exc:
            raise RemoteNetworkError(f"{op} failed: {type(exc).__name__}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RemoteProtocolError(f"{op} failed: {exc}") from exc
        if resp.status_code not in expected:
            raise _classify_status(resp, op)
        return resp

    def _propfind(self, ctx: RunContext, path: str, body: bytes, depth: str, op: str):
        headers = {**_XML_HEADERS, "Depth": depth}
        resp = self._request(ctx, "PROPFIND", path, op=op, body=body, headers=headers)
        return parse_multistatus(resp.content)

    def _objects(self, content: bytes) -> list[AddressObject]:
        out: list[AddressObject] = []
        for entry in parse_multistatus(content).responses:
            if not entry.ok:
                continue
            out.append(
                AddressObject(path=self.resolve(entry.href), etag=entry.etag, card=entry.address_data)
            )
        return out

    def _is_collection(self, href: str, path: str) -> bool:
        return self.resolve(href).rstrip("/") == self.resolve(path).rstrip("/")

    # -----------------
    # Discovery
    # -----------------

    def find_current_user_principal(self, ctx: RunContext) -> str:
        ms = self._propfind(ctx, self.uri, principal_body(), "0", "find-principal")
        for entry in ms.responses:
            if entry.principal_href:
                return self.resolve(entry.principal_href)
        return ""

    def find_address_book_home_set(self, ctx: RunContext, principal: str) -> str:
        target = principal or self.uri
        ms = self._propfind(ctx, target, addressbook_home_set_body(), "0", "find-home-set")
        for entry in ms.responses:
            if entry.home_set_href:
                return self.resolve(entry.home_set_href)
        raise UnreachableCollection("server does not advertise an addressbook-home-set")

    def find_address_books(self, ctx: RunContext, home_set: str) -> list[AddressBook]:
        ms = self._propfind(ctx, home_set, list_addressbooks_body(), "1", "list-address-books")
        books: list[AddressBook] = []
        for entry in ms.responses:
            if not entry.is_addressbook:
                continue
            path = self.resolve(entry.href)
            name = entry.displayname or path.rstrip("/").rsplit("/", 1)[-1]
            books.append(AddressBook(path=path, name=name))
        return books

    # -----------------
    # Sync / fetch
    # -----------------

    def sync_collection(self, ctx: RunContext, path: str, sync_token: str) -> SyncResult:
        headers = {**_XML_HEADERS, "Depth": "0"}
        resp = self._request(
            ctx,
            "REPORT",
            path,
            op="sync-collection",
            body=sync_collection_body(sync_token),
            headers=headers,
        )
        ms = parse_multistatus(resp.content)
        updated: list[AddressObjectRef] = []
        deleted: list[str] = []
        for entry in ms.responses:
            if self._is_collection(entry.href, path):
                continue
            if entry.status == 404:
                deleted.append(self.resolve(entry.href))
            elif entry.ok:
                updated.append(AddressObjectRef(path=self.resolve(entry.href), etag=entry.etag))
        return SyncResult(sync_token=ms.sync_token, updated=updated, deleted=deleted)

    def multi_get_address_book(
        self, ctx: RunContext, path: str, paths: list[str]
    ) -> list[AddressObject]:
        if len(paths) > MAX_MULTIGET:
            raise ValueError(f"multiget accepts at most {MAX_MULTIGET} hrefs, got {len(paths)}")
        if not paths:
            return []
        # Servers match hrefs by path; send the path component only.
        hrefs = [urlsplit(self.resolve(p)).path for p in paths]
        headers = {**_XML_HEADERS, "Depth": "1"}
        resp = self._request(
            ctx,
            "REPORT",
            path,
            op="addressbook-multiget",
            body=addressbook_multiget_body(hrefs),
            headers=headers,
        )
        return self._objects(resp.content)

    def query_address_book(self, ctx: RunContext, path: str) -> list[AddressObject]:
        headers = {**_XML_HEADERS, "Depth": "1"}
        resp = self._request(
            ctx,
            "REPORT",
            path,
            op="addressbook-query",
            body=addressbook_query_body(),
            headers=headers,
        )
        return [o for o in self._objects(resp.content) if not self._is_collection(o.path, path)]

    def get_address_object(self, ctx: RunContext, path: str) -> AddressObject:
        resp = self._request(ctx, "GET", path, op="get", expected=(200,))
        return AddressObject(
            path=self.resolve(path), etag=resp.headers.get("ETag", ""), card=resp.text
        )

    # -----------------
    # Writes
    # -----------------

    def put_address_object(self, ctx: RunContext, path: str, card: str) -> AddressObjectRef:
        """PUT a vCard; the returned path honours a server-provided Location."""
        resp = self._request(
            ctx,
            "PUT",
            path,
            op="put",
            body=card,
            headers={"Content-Type": "text/vcard; charset=utf-8"},
            expected=(200, 201, 204),
        )
        location = resp.headers.get("Location", "")
        new_path = self.resolve(location) if location else self.resolve(path)
        return AddressObjectRef(path=new_path, etag=resp.headers.get("ETag", ""))

    def remove_all(self, ctx: RunContext, path: str) -> None:
        self._request(ctx, "DELETE", path, op="delete", expected=(200, 204))


class DefaultCardDAVClientFactory:
    def __init__(
        self,
        *,
        timeout: float = 30.0,
        verify: bool | str = True,
        retry: RetryConfig | None = None,
    ) -> None:
        self.timeout = timeout
        self.verify = verify
        self.retry = retry

    def new_client(self, uri: str, username: str, password: str) -> CardDAVClientProtocol:
        return CardDAVClient(
            uri,
            username,
            password,
            timeout=self.timeout,
            verify=self.verify,
            retry=self.retry,
        )
