"""Basic-then-Digest authentication for CardDAV servers.

Most servers accept Basic; some (SabreDAV/Baikal in digest mode) answer 401
with a Digest challenge. `FallbackAuth` sends Basic first and, when the 401
carries a parseable Digest challenge, replays the request through
`httpx.DigestAuth` with the same credentials. The switch is sticky for the
lifetime of the auth instance, so one client (one subscription run) pays the
extra round trip once and another server's choice never leaks across.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Generator, Iterable
from urllib.request import parse_http_list, parse_keqv_list

import httpx

__all__ = ["FallbackAuth", "is_digest_challenge"]

log = logging.getLogger(__name__)


def _basic_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {token}"


def _parse_digest(value: str) -> dict[str, str] | None:
    scheme, _, fields = value.strip().partition(" ")
    if scheme.lower() != "digest" or not fields:
        return None
    try:
        params = parse_keqv_list(parse_http_list(fields))
    except ValueError:
        return None
    if "realm" not in params or "nonce" not in params:
        return None
    return params


def is_digest_challenge(values: str | Iterable[str] | None) -> bool:
    """Return True when any WWW-Authenticate value is a usable Digest challenge."""
    if not values:
        return False
    if isinstance(values, str):
        values = [values]
    return any(_parse_digest(v) is not None for v in values)


class FallbackAuth(httpx.Auth):
    requires_request_body = True

    def __init__(self, username: str, password: str) -> None:
        self._basic = _basic_header(username, password)
        self._digest = httpx.DigestAuth(username, password)
        self._use_digest = False

    @property
    def uses_digest(self) -> bool:
        return self._use_digest

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self._use_digest:
            yield from self._digest.auth_flow(request)
            return

        request.headers["Authorization"] = self._basic
        response = yield request

        if response.status_code != 401:
            return
        if not is_digest_challenge(response.headers.get_list("www-authenticate")):
            return

        log.debug("dav-auth-digest-fallback host=%s", request.url.host)
        self._use_digest = True
        del request.headers["Authorization"]
        yield from self._digest.auth_flow(request)
