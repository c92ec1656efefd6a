"""Tests for BackupOrchestrator and the run summary."""

from datetime import timedelta

import pytest

from conftest import FakePort, FakeResolver, day
from mariadb_backup.backends.base import load_backups
from mariadb_backup.backends.disk import DiskBackend
from mariadb_backup.chain.orchestrator import (EXIT_FAILURES, EXIT_OK,
                                               BackupOrchestrator, next_timestamp)
from mariadb_backup.chain.state import ChainStateStore
from mariadb_backup.utils.datatypes import BackupKind, ChainMarker
from mariadb_backup.utils.errors import DuplicateTimestampError, LockHeldError
from mariadb_backup.utils.lock import RunLock
from mariadb_backup.utils.models import (AccessMethod, BackupSetSelection,
                                         ConnectionMode, RetentionPolicy,
                                         ScheduleRule, SelectionMode, SshEndpoint)


class ListingFailsLater(DiskBackend):
    """Disk backend that can list a database only once."""

    def __init__(self, backup_dir, failing):
        super().__init__(backup_dir)
        self.failing = failing
        self.listed = []

    def get_existing_backups(self, database):
        if database in self.failing and database in self.listed:
            raise PermissionError(13, 'Permission denied', str(self.database_dir(database)))
        self.listed.append(database)
        return super().get_existing_backups(database)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def port():
    return FakePort()


@pytest.fixture
def clock():
    return Clock(day(1))


@pytest.fixture
def orchestrator(port, clock):
    return BackupOrchestrator(FakeResolver(port), clock=clock)


def kinds(backend, server, database):
    return [x.kind for x in load_backups(backend, server.name, database)]


class TestNextTimestamp:

    def test_without_marker(self):
        assert next_timestamp(day(1).replace(microsecond=500), None) == day(1)

    def test_after_last_backup(self):
        marker = ChainMarker('db1', 'shop', day(1), day(1))
        assert next_timestamp(day(2), marker) == day(2)

    def test_clock_behind_last_backup(self):
        marker = ChainMarker('db1', 'shop', day(1), day(3))
        assert next_timestamp(day(2), marker) == day(3) + timedelta(seconds=1)


class TestRun:

    def test_bootstrap_creates_full_backups(self, orchestrator, port, server, backend):
        summary = orchestrator.run(server)
        assert summary.exit_code == EXIT_OK
        assert [r.database for r in summary.results] == ['shop', 'blog']
        assert port.dumps == [('shop', False), ('blog', False)]
        assert kinds(backend, server, 'shop') == [BackupKind.FULL]

    def test_second_run_is_incremental(self, orchestrator, port, clock, make_server):
        server = make_server(schedule=ScheduleRule(full_backup_interval=timedelta(days=7)))
        orchestrator.run(server)
        clock.now = day(2)
        summary = orchestrator.run(server)
        assert summary.ok
        assert port.dumps[-1] == ('blog', True)
        marker = ChainStateStore().load(server, 'shop')
        assert marker.last_full == day(1)
        assert marker.last_any == day(2)

    def test_failed_database_does_not_stop_the_run(self, orchestrator, server, backend,
                                                   log_messages):
        orchestrator.resolver.direct.fail_dump = ['shop']
        summary = orchestrator.run(server)
        assert summary.exit_code == EXIT_FAILURES
        assert [r.database for r in summary.failed] == ['shop']
        assert summary.failed[0].error.server == server.name
        assert kinds(backend, server, 'shop') == []
        assert kinds(backend, server, 'blog') == [BackupKind.FULL]
        assert any('[db1/shop] Full backup failed' in m for m in log_messages)

    def test_failed_dump_leaves_marker_untouched(self, orchestrator, server):
        orchestrator.resolver.direct.fail_dump = ['shop']
        orchestrator.run(server)
        assert ChainStateStore().load(server, 'shop') is None

    def test_specific_selection(self, orchestrator, port, make_server):
        server = make_server(selection=BackupSetSelection(SelectionMode.SPECIFIC, ['blog']))
        orchestrator.run(server)
        assert port.dumps == [('blog', False)]

    def test_system_databases_are_skipped(self, clock, server):
        port = FakePort(databases=['mysql', 'information_schema', 'sys', 'shop'])
        summary = BackupOrchestrator(FakeResolver(port), clock=clock).run(server)
        assert [r.database for r in summary.results] == ['shop']

    def test_nothing_selected(self, orchestrator, port, make_server):
        server = make_server(selection=BackupSetSelection(SelectionMode.SPECIFIC, ['gone']))
        summary = orchestrator.run(server)
        assert summary.results == []
        assert summary.ok
        assert port.dumps == []

    def test_binlog_disabled_takes_full_backups(self, clock, server, backend):
        port = FakePort(binlog=False)
        orchestrator = BackupOrchestrator(FakeResolver(port), clock=clock)
        orchestrator.run(server)
        clock.now = day(2)
        orchestrator.run(server, BackupKind.INCREMENTAL)
        assert kinds(backend, server, 'shop') == [BackupKind.FULL, BackupKind.FULL]

    def test_timestamps_stay_monotonic(self, orchestrator, clock, server, backend):
        orchestrator.run(server)
        orchestrator.run(server)
        backups = load_backups(backend, server.name, 'shop')
        assert [x.timestamp for x in backups] == [day(1), day(1) + timedelta(seconds=1)]

    def test_lost_marker_is_rebuilt(self, orchestrator, port, clock, server, backend):
        orchestrator.run(server)
        ChainStateStore().delete(server, 'shop')
        clock.now = day(2)
        orchestrator.run(server)
        assert kinds(backend, server, 'shop') == [BackupKind.FULL, BackupKind.INCREMENTAL]

    def test_retention_runs_after_backup(self, clock, make_server, add_backup, backend):
        server = make_server(retention=RetentionPolicy(min_full_backups=1, max_age_days=5,
                                                       enabled=True))
        old = add_backup('full', day(1))
        add_backup('full', day(10))
        clock.now = day(20)
        summary = BackupOrchestrator(FakeResolver(FakePort(['shop'])), clock=clock).run(server)
        result = summary.results[0]
        assert result.ok
        assert result.pruned.deleted == [old]


class TestCleanupFailures:

    @pytest.fixture
    def server(self, make_server):
        return make_server(retention=RetentionPolicy(min_full_backups=1, max_age_days=5,
                                                     enabled=True))

    def test_unreadable_backup_dir_does_not_stop_the_run(self, clock, server, log_messages):
        backend = ListingFailsLater(server.backup_dir, failing=['shop'])
        orchestrator = BackupOrchestrator(FakeResolver(FakePort()), clock=clock,
                                          backend_factory=lambda s: backend)
        summary = orchestrator.run(server)
        assert [r.database for r in summary.results] == ['shop', 'blog']
        shop, blog = summary.results
        assert shop.backup is not None
        assert isinstance(shop.error, PermissionError)
        assert not shop.ok
        assert blog.ok
        assert summary.exit_code == EXIT_FAILURES
        assert any('[db1/shop] Cleanup failed: ' in m for m in log_messages)

    def test_unreadable_backup_dir_in_run_all(self, clock, server):
        backend = ListingFailsLater(server.backup_dir, failing=['shop'])
        orchestrator = BackupOrchestrator(FakeResolver(FakePort()), clock=clock,
                                          backend_factory=lambda s: backend)
        summary = orchestrator.run_all([server])
        assert [r.database for r in summary.failed] == ['shop']
        assert len(summary.results) == 2

    def test_duplicate_timestamps_fail_cleanup_only(self, clock, server, add_backup,
                                                    backend, log_messages):
        add_backup('full', day(1))
        add_backup('incremental', day(1))
        clock.now = day(20)
        summary = BackupOrchestrator(FakeResolver(FakePort(['shop'])), clock=clock).run(server)
        result = summary.results[0]
        assert result.backup is not None
        assert isinstance(result.error, DuplicateTimestampError)
        assert result.pruned is None
        assert not summary.ok
        assert len(load_backups(backend, server.name, 'shop')) == 3
        assert any('[db1/shop] Cleanup failed: ' in m for m in log_messages)


class TestConnectivity:

    @pytest.fixture
    def ssh(self, tmp_path):
        key = tmp_path / 'id_ed25519'
        key.write_text('key')
        return SshEndpoint(host='jump', username='backup', private_key=key)

    def test_falls_back_to_tunnel(self, clock, make_server, ssh, log_messages):
        resolver = FakeResolver(FakePort(reachable=False), tunneled=FakePort())
        server = make_server(connection=ConnectionMode.LOCAL, ssh=ssh)
        summary = BackupOrchestrator(resolver, clock=clock).run(server)
        assert summary.ok
        assert resolver.requested == [AccessMethod.DIRECT, AccessMethod.TUNNELED]
        assert resolver.tunneled.dumps == [('shop', False), ('blog', False)]
        assert any('Retrying with tunneled access' in m for m in log_messages)

    def test_falls_back_to_direct(self, clock, make_server, ssh):
        resolver = FakeResolver(FakePort(), tunneled=FakePort(reachable=False))
        server = make_server(connection=ConnectionMode.REMOTE, ssh=ssh)
        summary = BackupOrchestrator(resolver, clock=clock).run(server)
        assert summary.ok
        assert resolver.requested == [AccessMethod.TUNNELED, AccessMethod.DIRECT]

    def test_unreachable_server(self, clock, server):
        resolver = FakeResolver(FakePort(reachable=False))
        summary = BackupOrchestrator(resolver, clock=clock).run(server)
        assert summary.exit_code == EXIT_FAILURES
        assert list(summary.server_errors) == [server.name]
        assert resolver.requested == [AccessMethod.DIRECT]

    def test_unreachable_server_does_not_stop_the_run(self, clock, make_server, ssh):
        resolver = FakeResolver(FakePort(reachable=False), tunneled=FakePort(reachable=False))
        orchestrator = BackupOrchestrator(resolver, clock=clock)
        summary = orchestrator.run_all([make_server('a', ssh=ssh, connection=ConnectionMode.LOCAL),
                                        make_server('b', ssh=ssh, connection=ConnectionMode.LOCAL)])
        assert sorted(summary.server_errors) == ['a', 'b']


class TestLocking:

    def test_lock_is_released(self, orchestrator, server, tmp_path):
        lock = RunLock(tmp_path / 'run.lock')
        orchestrator.run_all([server], lock=lock)
        assert not lock.path.exists()

    def test_held_lock_aborts(self, orchestrator, port, server, tmp_path, monkeypatch):
        lock = RunLock(tmp_path / 'run.lock')
        lock.path.write_text('4242\n')
        monkeypatch.setattr('mariadb_backup.utils.lock.psutil.pid_exists', lambda pid: True)
        with pytest.raises(LockHeldError):
            orchestrator.run_all([server], lock=lock)
        assert port.dumps == []
        assert lock.path.read_text() == '4242\n'
