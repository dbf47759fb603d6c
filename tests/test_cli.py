"""Tests for the questline CLI."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from questline import __version__
from questline.cli import cli
from questline.config import QuestlineConfig, SyncConfig
from questline.flow.schedule_session import SERIES_FIELD, flow_key
from questline.free_spots import LoggingFreeSpotsPublisher
from questline.reconcile.reconciler import EventReconciler
from questline.sources.base import EventSource, EventSourceAdapter
from questline.tasks.sync import RecurringSyncScheduler
from tests.conftest import FakeRedis, InMemoryEventStore, make_source_event

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "questline.toml"
    path.write_text(
        '[redis]\nurl = "redis://cache:6379/0"\n\n'
        '[flow]\nttl_s = 120\n\n'
        '[web]\nbase_url = "https://games.example.org/"\n'
    )
    return path


class TestGroup:
    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "sync-once", "migrate", "new-flow"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config_exits_non_zero(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "nope.toml"), "run"])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_invalid_config_exits_non_zero(self, runner, tmp_path):
        path = tmp_path / "questline.toml"
        path.write_text('[flow]\ntimezone = "Mars/Olympus_Mons"\n')

        result = runner.invoke(cli, ["--config", str(path), "new-flow", "1"])

        assert result.exit_code == 1
        assert "Invalid config" in result.output


class TestNewFlow:
    def test_prints_link_and_stores_flow(self, runner, config_file):
        redis = FakeRedis()
        with patch("redis.asyncio.from_url", return_value=redis) as from_url:
            result = runner.invoke(cli, ["--config", str(config_file), "new-flow", "42"])

        assert result.exit_code == 0, result.output
        from_url.assert_called_once_with("redis://cache:6379/0", decode_responses=True)
        link = result.output.strip()
        assert link.startswith("https://games.example.org/schedule_session/")
        flow_id = int(link.rsplit("/", 1)[1])
        assert redis.hashes[flow_key(flow_id)] == {SERIES_FIELD: "42"}
        assert redis.ttls[flow_key(flow_id)] == 120
        assert redis.closed

    def test_series_id_must_be_an_integer(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "new-flow", "abc"])
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# sync-once
# ---------------------------------------------------------------------------


class _StaticAdapter(EventSourceAdapter):
    def __init__(self, source: EventSource, *, fail: bool = False) -> None:
        self._source = source
        self._fail = fail

    @property
    def source(self) -> EventSource:
        return self._source

    async def fetch_upcoming(self, *, now=None):
        if self._fail:
            raise RuntimeError("source exploded")
        return [make_source_event()]

    async def shutdown(self) -> None:
        return None


class _FakeDaemon:
    """Stands in for QuestlineDaemon with in-memory collaborators."""

    instances: list[_FakeDaemon] = []
    fail = False

    def __init__(self, config: QuestlineConfig) -> None:
        self.config = config
        self.adapters: list[EventSourceAdapter] = []
        self.sync_scheduler: RecurringSyncScheduler | None = None
        self.opened_with: dict | None = None
        self.closed = False
        _FakeDaemon.instances.append(self)

    async def open(self, *, migrate: bool = True) -> None:
        self.opened_with = {"migrate": migrate}
        self.adapters = [_StaticAdapter(EventSource.SWISSRPG, fail=_FakeDaemon.fail)]
        self.sync_scheduler = RecurringSyncScheduler(
            config=SyncConfig(timeout_s=5.0),
            reconciler=EventReconciler(InMemoryEventStore()),
            adapters=self.adapters,
            publisher=LoggingFreeSpotsPublisher(),
        )

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_daemon():
    _FakeDaemon.instances = []
    _FakeDaemon.fail = False
    with patch("questline.daemon.QuestlineDaemon", _FakeDaemon):
        yield _FakeDaemon


class TestSyncOnce:
    def test_prints_summary(self, runner, config_file, fake_daemon):
        result = runner.invoke(cli, ["--config", str(config_file), "sync-once"])

        assert result.exit_code == 0, result.output
        assert "swissrpg: 1 fetched, 1 created, 0 updated" in result.output
        daemon = fake_daemon.instances[0]
        assert daemon.opened_with == {"migrate": False}
        assert daemon.closed

    def test_disabled_source(self, runner, config_file, fake_daemon):
        result = runner.invoke(
            cli, ["--config", str(config_file), "sync-once", "--source", "meetup"]
        )

        assert result.exit_code == 1
        assert "not enabled" in result.output
        assert fake_daemon.instances[0].closed

    def test_failed_pass_exits_non_zero(self, runner, config_file, fake_daemon):
        fake_daemon.fail = True

        result = runner.invoke(cli, ["--config", str(config_file), "sync-once"])

        assert result.exit_code == 1
        assert "swissrpg: pass failed" in result.output

    def test_unknown_source_is_rejected(self, runner, config_file):
        result = runner.invoke(
            cli, ["--config", str(config_file), "sync-once", "--source", "eventbrite"]
        )
        assert result.exit_code == 2
