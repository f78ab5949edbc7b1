"""Service facade, due-driver and scheduler loop.

Responsibilities
- Wire stores, engines and the client factory from AppConfig (build_service)
- Expose the public surface: test_connection, subscription CRUD,
  sync_subscription, sync_all_due, push_contact_change/delete, get_sync_logs
- Drive due subscriptions serially, each run isolated, checking the context
  between subscriptions
- Run the periodic scheduler under a single-instance PID lock

Exit codes (CLI)
- 0: success
- 2: partial (per-entity or per-subscription errors)
- 3: fatal (could not start/run)
"""

from __future__ import annotations

import errno
import logging
import os
from dataclasses import dataclass, field
from types import TracebackType

from ..config import AppConfig
from ..contacts import ContactService, PushPublisher
from ..crypto import PasswordCipher
from ..dav.carddav import CardDAVClientFactory, DefaultCardDAVClientFactory
from ..errors import CardDAVError, ClientCreateError, ContextCancelled
from ..store.contacts import ContactRepository
from ..store.db import Database
from ..store.subscriptions import Subscription, SubscriptionStateStore, SubscriptionStore
from ..store.sync_log import PageMeta, SyncLog, SyncLogEntry
from ..utils.http import RetryConfig
from .context import RunContext
from .isolation import run_isolated
from .pull import PullEngine, SyncCounts
from .push import PushEngine

__all__ = [
    "AddressBookInfo",
    "ConnectionTestResult",
    "DueRunReport",
    "FileLock",
    "Scheduler",
    "SyncService",
    "build_service",
]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressBookInfo:
    name: str
    path: str


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    address_books: list[AddressBookInfo] = field(default_factory=list)
    error: str | None = None


@dataclass
class DueRunReport:
    results: dict[str, SyncCounts] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    error: ContextCancelled | None = None

    def aggregate(self) -> dict[str, int]:
        total = {"created": 0, "updated": 0, "deleted": 0, "skipped": 0, "errors": 0}
        for counts in self.results.values():
            for k, v in counts.as_dict().items():
                total[k] += v
        total["errors"] += len(self.failures)
        return total


class SyncService:
    def __init__(
        self,
        db: Database,
        cipher: PasswordCipher,
        factory: CardDAVClientFactory,
        *,
        batch_size: int = 50,
        request_timeout: float = 30.0,
        connection_test_timeout: float = 15.0,
        default_frequency: int = 180,
    ) -> None:
        self.db = db
        self.factory = factory
        self.connection_test_timeout = connection_test_timeout
        self.default_frequency = default_frequency
        self.contacts = ContactRepository(db)
        self.subscriptions = SubscriptionStore(db, cipher)
        self.states = SubscriptionStateStore(db)
        self.sync_log = SyncLog(db)
        self.pull = PullEngine(
            self.subscriptions,
            self.states,
            self.contacts,
            self.sync_log,
            factory,
            batch_size=batch_size,
            request_timeout=request_timeout,
        )
        self.push = PushEngine(
            self.subscriptions,
            self.states,
            self.contacts,
            self.sync_log,
            factory,
            request_timeout=request_timeout,
        )

    def contact_service(self) -> ContactService:
        """Local contact service whose mutations are pushed to remotes."""
        return ContactService(self.contacts, PushPublisher(self.push))

    # -----------------
    # Connection test
    # -----------------

    def test_connection(self, uri: str, username: str, password: str) -> ConnectionTestResult:
        try:
            client = self.factory.new_client(uri, username, password)
        except ClientCreateError as exc:
            return ConnectionTestResult(success=False, error=f"failed to create client: {exc}")

        ctx = RunContext(timeout=self.connection_test_timeout)
        try:
            try:
                principal = client.find_current_user_principal(ctx)
            except CardDAVError as exc:
                log.debug("dav-principal-discovery-failed err=%s", exc)
                principal = ""
            try:
                home_set = client.find_address_book_home_set(ctx, principal)
            except (CardDAVError, ContextCancelled) as exc:
                return ConnectionTestResult(
                    success=False, error=f"failed to find address book home set: {exc}"
                )
            try:
                books = client.find_address_books(ctx, home_set)
            except (CardDAVError, ContextCancelled) as exc:
                return ConnectionTestResult(success=False, error=f"failed to list address books: {exc}")
        finally:
            client.close()

        return ConnectionTestResult(
            success=True,
            address_books=[AddressBookInfo(name=b.name, path=b.path) for b in books],
        )

    # -----------------
    # Subscriptions
    # -----------------

    def create_subscription(
        self,
        *,
        vault_id: str,
        user_id: str,
        uri: str,
        username: str,
        password: str,
        sync_way: int | str = 0,
        frequency: int | None = None,
        address_book_path: str = "",
    ) -> str:
        self.contacts.ensure_vault(vault_id)
        sub = self.subscriptions.create(
            vault_id=vault_id,
            user_id=user_id,
            uri=uri,
            username=username,
            password=password,
            sync_way=sync_way,
            frequency=frequency or self.default_frequency,
            address_book_path=address_book_path,
        )
        return sub.id

    def list_subscriptions(self, vault_id: str) -> list[Subscription]:
        return self.subscriptions.list_for_vault(vault_id)

    def get_subscription(self, sub_id: str, vault_id: str) -> Subscription:
        return self.subscriptions.get(sub_id, vault_id)

    def update_subscription(self, sub_id: str, vault_id: str, **changes) -> Subscription:
        return self.subscriptions.update(sub_id, vault_id, **changes)

    def delete_subscription(self, sub_id: str, vault_id: str) -> None:
        self.subscriptions.delete(sub_id, vault_id)

    # -----------------
    # Pull
    # -----------------

    def sync_subscription(self, ctx: RunContext, sub_id: str, vault_id: str) -> SyncCounts:
        sub = self.subscriptions.get(sub_id, vault_id)
        return self.pull.run(ctx, sub)

    def sync_all_due(self, ctx: RunContext) -> DueRunReport:
        report = DueRunReport()
        subs = self.subscriptions.list_due()
        log.info("dav-due-subscriptions count=%d", len(subs))
        for i, sub in enumerate(subs):
            report.error = ctx.err()
            if report.error is not None:
                log.warning("dav-due-cancelled remaining=%d", len(subs) - i)
                return report
            try:
                outcome = run_isolated(
                    "dav-sync",
                    lambda sub=sub: self.pull.run(ctx, sub),
                    reraise=(ContextCancelled,),
                    context={"subscription_id": sub.id},
                )
            except ContextCancelled as exc:
                report.error = exc
                return report
            if outcome.ok and outcome.value is not None:
                report.results[sub.id] = outcome.value
            else:
                report.failures[sub.id] = str(outcome.error)
        return report

    # -----------------
    # Push
    # -----------------

    def push_contact_change(self, contact_id: str, vault_id: str) -> None:
        self.push.push_contact_change(contact_id, vault_id)

    def push_contact_delete(self, contact_id: str, vault_id: str) -> None:
        self.push.push_contact_delete(contact_id, vault_id)

    # -----------------
    # Ledger
    # -----------------

    def get_sync_logs(
        self, sub_id: str, vault_id: str, page: int = 1, per_page: int = 15
    ) -> tuple[list[SyncLogEntry], PageMeta]:
        self.subscriptions.get(sub_id, vault_id)
        return self.sync_log.page(sub_id, page, per_page)


def build_service(cfg: AppConfig, factory: CardDAVClientFactory | None = None) -> SyncService:
    retry = RetryConfig(
        max_retries=cfg.sync.max_retries,
        backoff_initial_sec=cfg.sync.backoff_initial_sec,
    )
    return SyncService(
        Database(cfg.database.path),
        PasswordCipher(cfg.security.require_secret()),
        factory
        or DefaultCardDAVClientFactory(
            timeout=cfg.sync.request_timeout_seconds,
            verify=cfg.sync.verify_tls,
            retry=retry,
        ),
        batch_size=cfg.sync.batch_size,
        request_timeout=cfg.sync.request_timeout_seconds,
        connection_test_timeout=cfg.sync.connection_test_timeout_seconds,
        default_frequency=cfg.sync.default_frequency_minutes,
    )


# -----------------
# Scheduler
# -----------------


class FileLock:
    """Non-blocking PID file lock (O_CREAT|O_EXCL); stale locks are taken over."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._fd: int | None = None

    def _create(self) -> None:
        self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.write(self._fd, str(os.getpid()).encode("utf-8"))
        os.fsync(self._fd)

    def acquire(self) -> None:
        try:
            self._create()
            return
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise
            if not self._is_stale_lock():
                raise RuntimeError(f"Another instance is running (lock exists at {self.path})") from e
        log.warning("Removing stale lock file at %s", self.path)
        try:
            os.unlink(self.path)
            self._create()
        except OSError as e:
            raise RuntimeError(f"Another instance is running (lock exists at {self.path})") from e

    def _is_stale_lock(self) -> bool:
        try:
            with open(self.path, encoding="utf-8") as f:
                pid_str = f.read().strip()
        except (FileNotFoundError, PermissionError):
            return True
        if not pid_str.isdigit():
            return True
        try:
            os.kill(int(pid_str), 0)
        except OSError:
            return True
        return False

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class Scheduler:
    """Calls sync_all_due every `interval` seconds until the root context is cancelled."""

    def __init__(
        self,
        service: SyncService,
        *,
        interval_seconds: float = 300.0,
        tick_timeout_seconds: float = 240.0,
        ctx: RunContext | None = None,
    ) -> None:
        self.service = service
        self.interval = interval_seconds
        self.tick_timeout = tick_timeout_seconds
        self.ctx = ctx or RunContext.background()
        self.ticks = 0

    def stop(self) -> None:
        self.ctx.cancel()

    def tick(self) -> DueRunReport:
        self.ticks += 1
        report = self.service.sync_all_due(self.ctx.with_timeout(self.tick_timeout))
        agg = report.aggregate()
        log.info("dav-scheduler-tick tick=%d totals=%s", self.ticks, agg)
        return report

    def run_forever(self, max_ticks: int | None = None) -> None:
        log.info("dav-scheduler-started interval=%s", self.interval)
        while self.ctx.err() is None:
            outcome = run_isolated("dav-scheduler-tick", self.tick)
            if not outcome.ok:
                log.error("dav-scheduler-tick-error err=%s", outcome.error)
            if max_ticks is not None and self.ticks >= max_ticks:
                break
            if self.ctx.wait(self.interval):
                break
        log.info("dav-scheduler-stopped ticks=%d", self.ticks)
