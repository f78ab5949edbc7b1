"""HTTP utilities and a small retry wrapper built on httpx.

Intended use:
- Provide a single place for timeouts, retries, backoff, and User-Agent.
- Keep transient failures (transport errors, 429/5xx) inside one remote
  operation; anything that survives the retry budget is surfaced to the sync
  engines, which defer to the next scheduled run.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from time import sleep
from typing import TYPE_CHECKING

import httpx

from ..errors import ContextCancelled, DeadlineExceeded

if TYPE_CHECKING:
    from ..sync.context import RunContext

log = logging.getLogger(__name__)

__all__ = [
    "RetryConfig",
    "create_client",
    "request_with_retries",
    "user_agent",
]


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 2
    backoff_initial_sec: float = 0.5
    backoff_factor: float = 2.0
    jitter_frac: float = 0.2  # +/- 20%
    status_forcelist: tuple[int, ...] = (429, 500, 502, 503, 504)
    methods: tuple[str, ...] = ("GET", "PUT", "DELETE", "PROPFIND", "REPORT", "HEAD", "OPTIONS")
    max_retry_after_sec: float = 30.0


def user_agent() -> str:
    return "cardsync/0.1 (+carddav)"


def create_client(
    base_url: str | None = None,
    auth: httpx.Auth | None = None,
    timeout: float = 30.0,
    headers: Mapping[str, str] | None = None,
    verify: bool | str = True,
    limits: httpx.Limits | None = None,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create a configured httpx client.

    One client is built per subscription run, so pools stay small.
    """
    if verify is False:
        log.warning("tls-verification-disabled; use only against development servers")

    base_headers: MutableMapping[str, str] = {"User-Agent": user_agent()}
    if headers:
        base_headers.update(headers)
    conn_limits = limits or httpx.Limits(max_keepalive_connections=4, max_connections=8)
    kwargs: dict[str, object] = {
        "auth": auth,
        "timeout": timeout,
        "headers": base_headers,
        "verify": verify,
        "limits": conn_limits,
        "follow_redirects": True,
    }
    if base_url is not None:
        kwargs["base_url"] = base_url
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.Client(**kwargs)  # type: ignore[arg-type]


def _should_retry(
    method: str,
    status_code: int | None,
    exc: Exception | None,
    retry: RetryConfig,
) -> bool:
    if method.upper() not in retry.methods:
        return False
    if exc is not None:
        return isinstance(exc, httpx.TransportError)
    if status_code is None:
        return False
    return status_code in retry.status_forcelist


def _retry_after(resp: httpx.Response) -> float | None:
    """Seconds from a numeric Retry-After header; HTTP-date values are ignored."""
    value = resp.headers.get("Retry-After", "").strip()
    if not value.isdigit():
        return None
    return float(value)


def _backoff_delay(attempt: int, retry: RetryConfig, retry_after: float | None = None) -> float:
    if retry_after is not None:
        return min(retry_after, retry.max_retry_after_sec)
    # attempt starts at 1
    base = retry.backoff_initial_sec * (retry.backoff_factor ** (attempt - 1))
    jitter = base * retry.jitter_frac
    return max(0.0, base + random.uniform(-jitter, jitter))


def _sleep_backoff(
    attempt: int,
    retry: RetryConfig,
    retry_after: float | None = None,
    ctx: RunContext | None = None,
) -> None:
    """Sleep before the next attempt.

    With a context, a wait that would outlive its deadline raises
    DeadlineExceeded up front, and cancellation interrupts the wait.
    """
    delay = _backoff_delay(attempt, retry, retry_after)
    if ctx is None:
        if delay > 0:
            sleep(delay)
        return
    remaining = ctx.remaining()
    if remaining is not None and delay >= remaining:
        raise DeadlineExceeded(f"retry wait of {delay:.2f}s exceeds the remaining {remaining:.2f}s")
    if ctx.wait(delay):
        raise ContextCancelled("context cancelled during retry wait")


def request_with_retries(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    data: str | bytes | None = None,
    retry: RetryConfig | None = None,
    timeout: float | None = None,
    expected: Iterable[int] = (200, 201, 204, 207),  # 207 for WebDAV multi-status
    ctx: RunContext | None = None,
) -> httpx.Response:
    """Perform an HTTP request with retries on transient errors.

    Unexpected non-retryable statuses are returned to the caller unchanged;
    transport errors are re-raised once the retry budget is exhausted.
    With a context, every attempt's timeout is capped at the time left and
    no attempt or wait runs past the deadline.
    """
    cfg = retry or RetryConfig()
    attempts = cfg.max_retries + 1
    expected_codes = tuple(expected)
    last_exc: Exception | None = None
    resp: httpx.Response | None = None
    wait: float | None = None
    body = data.encode("utf-8") if isinstance(data, str) else data

    for attempt in range(1, attempts + 1):
        attempt_timeout = timeout
        if ctx is not None:
            ctx.check()
            remaining = ctx.remaining()
            if remaining is not None:
                attempt_timeout = remaining if timeout is None else min(timeout, remaining)
        try:
            resp = client.request(
                method=method,
                url=url,
                headers=headers,
                content=body,
                timeout=attempt_timeout if attempt_timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
            if resp.status_code in expected_codes:
                return resp
            if not _should_retry(method, resp.status_code, None, cfg):
                return resp
            last_exc = None
            wait = _retry_after(resp)
        except httpx.HTTPError as exc:
            last_exc = exc
            resp = None
            wait = None
            if not _should_retry(method, None, exc, cfg):
                raise

        if attempt < attempts:
            log.debug("http-retry method=%s attempt=%d", method, attempt)
            _sleep_backoff(attempt, cfg, wait, ctx)

    if resp is not None:
        return resp
    assert last_exc is not None
    raise last_exc
