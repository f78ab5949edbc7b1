import logging

import pytest
from typer.testing import CliRunner

import cardsync.cli as cli
from cardsync.errors import RemoteAuthError, RemoteNetworkError
from cardsync.sync.orchestrator import build_service
from conftest import SUB_URI, FakeCardDAV, FakeFactory, make_card

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


@pytest.fixture
def fake_remote(tmp_path, monkeypatch) -> FakeCardDAV:
    """Point the CLI at a temp database and an in-memory remote."""
    remote = FakeCardDAV()
    monkeypatch.setenv("CARDSYNC__database__path", str(tmp_path / "cli.sqlite"))
    monkeypatch.setenv("CARDSYNC__security__secret", "cli-secret")
    monkeypatch.setenv("CARDSYNC__logging__level", "WARNING")
    monkeypatch.delenv("CARDSYNC_FORCE_JSON_LOGS", raising=False)
    monkeypatch.setattr(cli, "build_service", lambda cfg: build_service(cfg, factory=FakeFactory(default=remote)))
    return remote


def _subscribe(*extra: str) -> str:
    result = runner.invoke(
        cli.app,
        ["subscribe", SUB_URI, "--vault", "v1", "--user", "u1", "-u", "alice", "-p", "s3cret", *extra],
    )
    assert result.exit_code == 0, result.output
    return result.output.strip().splitlines()[-1]


def test_subscribe_prints_id(fake_remote) -> None:
    sub_id = _subscribe("--sync-way", "both", "--frequency", "60")

    assert len(sub_id) == 36


def test_subscribe_rejects_unknown_sync_way(fake_remote) -> None:
    result = runner.invoke(
        cli.app,
        ["subscribe", SUB_URI, "--vault", "v1", "--user", "u1", "-u", "a", "-p", "p", "--sync-way", "sideways"],
    )

    assert result.exit_code != 0


def test_sync_prints_summary(fake_remote) -> None:
    fake_remote.add(SUB_URI + "a.vcf", '"1"', make_card("Alice"))
    fake_remote.add(SUB_URI + "b.vcf", '"1"', make_card("Bob"))
    sub_id = _subscribe()

    result = runner.invoke(cli.app, ["sync", sub_id, "--vault", "v1"])

    assert result.exit_code == 0, result.output
    assert "created=2 updated=0 deleted=0 skipped=0 errors=0" in result.output


def test_sync_with_errors_exits_partial(fake_remote) -> None:
    fake_remote.query_error = RemoteNetworkError("query failed: HTTP 503", status_code=503)
    sub_id = _subscribe()

    result = runner.invoke(cli.app, ["sync", sub_id, "--vault", "v1"])

    assert result.exit_code == 2
    assert "errors=1" in result.output


def test_sync_unknown_subscription_is_fatal(fake_remote) -> None:
    result = runner.invoke(cli.app, ["sync", "missing", "--vault", "v1"])

    assert result.exit_code == 3


def test_sync_due_runs_every_due_subscription(fake_remote) -> None:
    fake_remote.add(SUB_URI + "a.vcf", '"1"', make_card("Alice"))
    _subscribe()

    result = runner.invoke(cli.app, ["sync-due"])

    assert result.exit_code == 0, result.output
    assert "subscriptions=1 created=1" in result.output


def test_logs_lists_entries(fake_remote) -> None:
    fake_remote.add(SUB_URI + "a.vcf", '"1"', make_card("Alice"))
    sub_id = _subscribe()
    runner.invoke(cli.app, ["sync", sub_id, "--vault", "v1"])

    result = runner.invoke(cli.app, ["logs", sub_id, "--vault", "v1"])

    assert result.exit_code == 0, result.output
    assert "\tcreated\t" in result.output
    assert "page 1/1 (1 entries)" in result.output


def test_logs_for_other_vault_is_fatal(fake_remote) -> None:
    sub_id = _subscribe()

    result = runner.invoke(cli.app, ["logs", sub_id, "--vault", "v2"])

    assert result.exit_code == 3


def test_connection_ok(fake_remote) -> None:
    result = runner.invoke(cli.app, ["test-connection", SUB_URI, "-u", "alice", "-p", "s3cret"])

    assert result.exit_code == 0, result.output
    assert "connection ok: 1 address book(s)" in result.output
    assert SUB_URI in result.output


def test_connection_failure_is_fatal(fake_remote) -> None:
    fake_remote.home_set = RemoteAuthError("find-home-set failed: HTTP 401", status_code=401)

    result = runner.invoke(cli.app, ["test-connection", SUB_URI, "-u", "alice", "-p", "wrong"])

    assert result.exit_code == 3


def test_missing_secret_is_fatal(fake_remote, monkeypatch) -> None:
    monkeypatch.delenv("CARDSYNC__security__secret")

    result = runner.invoke(cli.app, ["sync-due"])

    assert result.exit_code == 3
