"""Shared fixtures: servers on tmp_path, an in-memory database port and artifact helpers."""

import gzip
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, List, Optional

import pytest
from loguru import logger

from mariadb_backup.backends.disk import DiskBackend
from mariadb_backup.mariadb.ports.base import DatabaseBackupPort, DumpOptions
from mariadb_backup.mariadb.resolver import ConnectionResolver
from mariadb_backup.mariadb.tunnel import TunnelContext, TunnelPort
from mariadb_backup.utils.datatypes import Backup, BackupKind, new_backup
from mariadb_backup.utils.errors import ApplyError, ConnectivityError, DumpError
from mariadb_backup.utils.models import (AccessMethod, DatabaseEndpoint,
                                         RetentionPolicy, ScheduleRule, Server)


def day(n: int, hour: int = 12) -> datetime:
    """Day n of January 2024 at noon."""
    return datetime(2024, 1, n, hour, 0, 0)


class FakePort(DatabaseBackupPort):
    """In-memory DatabaseBackupPort recording every call."""

    def __init__(self, databases: Optional[List[str]] = None, binlog: bool = True,
                 fail_dump: Optional[List[str]] = None, fail_apply: Optional[List[str]] = None,
                 reachable: bool = True):
        self.databases = databases if databases is not None else ['shop', 'blog']
        self.binlog = binlog
        self.fail_dump = fail_dump or []
        self.fail_apply = fail_apply or []
        self.reachable = reachable
        self.dumps: List[tuple] = []
        self.applied: List[bytes] = []
        self.binlog_checks = 0

    def enumerate_databases(self) -> List[str]:
        if not self.reachable:
            raise ConnectivityError('connection refused')
        return list(self.databases)

    def probe(self, timeout: float) -> bool:
        return self.reachable

    def binlog_enabled(self) -> bool:
        self.binlog_checks += 1
        return self.binlog

    def database_exists(self, database: str) -> bool:
        return database in self.databases

    def dump(self, database: str, output: BinaryIO, options: DumpOptions) -> None:
        if database in self.fail_dump:
            raise DumpError('mariadb-dump failed with exit code 2', database=database)
        self.dumps.append((database, options.incremental))
        with gzip.GzipFile(fileobj=output, mode='wb') as gz:
            gz.write(f'-- dump of {database}\n'.encode())

    def apply(self, database: str, source: BinaryIO) -> None:
        content = gzip.GzipFile(fileobj=source, mode='rb').read()
        if any(name.encode() in content for name in self.fail_apply):
            raise ApplyError('mysql failed with exit code 1', database=database)
        self.applied.append(content)


class FakeTunnel(TunnelPort):
    """Tunnel running its commands locally. true or false stands in for ssh."""

    def __init__(self, reachable: bool = True):
        self.reachable = reachable

    def open(self, server: Server) -> TunnelContext:
        return TunnelContext(['true' if self.reachable else 'false'], {}, 'fake tunnel')


class FakeResolver(ConnectionResolver):
    """Resolver handing out fake ports instead of running client binaries."""

    def __init__(self, direct: FakePort, tunneled: Optional[FakePort] = None,
                 tunnel: Optional[TunnelPort] = None):
        super().__init__(probe_timeout=1, tunnel=tunnel or FakeTunnel())
        self.direct = direct
        self.tunneled = tunneled or direct
        self.requested: List[AccessMethod] = []

    def direct_port(self, server: Server) -> DatabaseBackupPort:
        return self.direct

    def port_for(self, server: Server, method: AccessMethod) -> DatabaseBackupPort:
        self.requested.append(method)
        return self.direct if method is AccessMethod.DIRECT else self.tunneled


@pytest.fixture
def make_server(tmp_path):
    """Factory for servers storing their backups below tmp_path."""

    def _make(name: str = 'db1', **kwargs) -> Server:
        kwargs.setdefault('database', DatabaseEndpoint(host='127.0.0.1', password='secret'))
        kwargs.setdefault('backup_root', tmp_path / 'backups')
        kwargs.setdefault('schedule', ScheduleRule())
        kwargs.setdefault('retention', RetentionPolicy(enabled=False))
        return Server(name=name, **kwargs)

    return _make


@pytest.fixture
def server(make_server) -> Server:
    return make_server()


@pytest.fixture
def backend(server) -> DiskBackend:
    return DiskBackend(server.backup_dir)


@pytest.fixture
def add_backup(backend, server):
    """Create a backup file for the given kind and timestamp."""

    def _add(kind: str, timestamp: datetime, database: str = 'shop') -> Backup:
        backup = new_backup(BackupKind(kind), server.name, database, timestamp)
        path: Path = backend.file_path(backup)
        path.parent.mkdir(parents=True, exist_ok=True)
        with gzip.open(path, 'wb') as f:
            f.write(f'-- {kind} {timestamp.isoformat()}\n'.encode())
        return backup

    return _add


@pytest.fixture
def log_messages():
    """Collect loguru messages emitted during the test."""
    messages: List[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record['message']), level='DEBUG')
    yield messages
    logger.remove(handler_id)
