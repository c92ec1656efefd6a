"""
Runs backups: decide -> dump -> record -> prune for every selected database of a server.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from mariadb_backup.backends.base import Backend, load_backups
from mariadb_backup.backends.disk import DiskBackend
from mariadb_backup.chain.retention import PruneResult, RetentionManager
from mariadb_backup.chain.scheduler import BackupTypeScheduler
from mariadb_backup.chain.state import ChainStateStore
from mariadb_backup.mariadb.ports.base import DatabaseBackupPort, DumpOptions
from mariadb_backup.mariadb.resolver import ConnectionResolver
from mariadb_backup.utils.datatypes import (Backup, BackupKind, ChainMarker,
                                            new_backup)
from mariadb_backup.utils.errors import BackupError, ConnectivityError
from mariadb_backup.utils.lock import RunLock
from mariadb_backup.utils.models import SelectionMode, Server

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_ABORT = 2


@dataclass
class DatabaseResult:
    """
    Outcome of backing up one database.
    """
    server: str
    database: str
    backup: Optional[Backup] = None
    error: Optional[Exception] = None
    pruned: Optional[PruneResult] = None

    @property
    def ok(self) -> bool:
        return self.error is None and (self.pruned is None or self.pruned.ok)


@dataclass
class RunSummary:
    """
    Aggregated outcome of a run.
    """
    results: List[DatabaseResult] = field(default_factory=list)
    server_errors: Dict[str, BackupError] = field(default_factory=dict)

    @property
    def failed(self) -> List[DatabaseResult]:
        return [x for x in self.results if not x.ok]

    @property
    def ok(self) -> bool:
        return not self.server_errors and not self.failed

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.ok else EXIT_FAILURES


def next_timestamp(now: datetime, marker: Optional[ChainMarker]) -> datetime:
    """
    Timestamp for a new backup. Strictly after every existing backup of the database.
    """
    timestamp = now.replace(microsecond=0)
    if marker is not None and timestamp <= marker.last_any:
        timestamp = marker.last_any + timedelta(seconds=1)
    return timestamp


def disk_backend(server: Server) -> Backend:
    return DiskBackend(server.backup_dir)


class BackupOrchestrator:
    """
    Sequences the backups of all selected databases of a server.
    Databases are processed one after another. A failing database does not stop the run.

    Dump and marker update are not atomic. A crash between them leaves a backup that the
    marker does not know. The marker is reconciled with the backups before every decision,
    which repairs this on the next run.
    """

    def __init__(self, resolver: ConnectionResolver,
                 state: Optional[ChainStateStore] = None,
                 scheduler: Optional[BackupTypeScheduler] = None,
                 retention: Optional[RetentionManager] = None,
                 backend_factory: Callable[[Server], Backend] = disk_backend,
                 clock: Callable[[], datetime] = datetime.now):
        """
        :param resolver: connection resolver
        :param state: chain marker store
        :param scheduler: full / incremental decision
        :param retention: retention manager run after each successful backup
        :param backend_factory: creates the storage backend of a server
        :param clock: returns the current time
        """
        self.resolver = resolver
        self.state = state or ChainStateStore()
        self.scheduler = scheduler or BackupTypeScheduler(self.state)
        self.retention = retention or RetentionManager(self.state)
        self.backend_factory = backend_factory
        self.clock = clock

    def run_all(self, servers: Iterable[Server], override: Optional[BackupKind] = None,
                lock: Optional[RunLock] = None) -> RunSummary:
        """
        Back up all given servers while holding the run lock.
        :raises LockHeldError: another run is active
        """
        summary = RunSummary()
        servers = list(servers)
        if lock is not None:
            lock.acquire()
        try:
            logger.info(f'Starting backup of {len(servers)} server(s) '
                        f'(type: {override.value if override else "auto"})')
            for server in servers:
                self.run(server, override, summary)
        finally:
            if lock is not None:
                lock.release()
        if summary.ok:
            logger.success('All backup operations completed successfully')
        else:
            logger.error(f'Backup run completed with {len(summary.failed)} failed database(s) '
                         f'and {len(summary.server_errors)} failed server(s)')
        return summary

    def run(self, server: Server, override: Optional[BackupKind] = None,
            summary: Optional[RunSummary] = None) -> RunSummary:
        """
        Back up all selected databases of a server.
        :param server: server
        :param override: forced backup kind
        :param summary: summary to add the results to
        :return: summary
        """
        summary = summary if summary is not None else RunSummary()
        logger.info(f'Starting backup for server: {server.name}')
        self._log_selection(server)
        try:
            port, live = self.resolver.connect(server)
        except ConnectivityError as e:
            e.server = e.server or server.name
            logger.error(f'[{server.name}] Failed to get database list: {e.message}')
            summary.server_errors[server.name] = e
            return summary

        databases = server.selection.resolve(live, server.name)
        if not databases:
            logger.warning(f'[{server.name}] No databases found or selected for backup')
            return summary
        logger.info(f'[{server.name}] Found {len(databases)} database(s) to backup')

        backend = self.backend_factory(server)
        for i, database in enumerate(databases, 1):
            logger.info(f'[{server.name}] Processing database {i}/{len(databases)}: {database}')
            summary.results.append(
                self.backup_database(server, database, port, backend, override))
        logger.info(f'Backup completed for server: {server.name}')
        return summary

    @staticmethod
    def _log_selection(server: Server):
        selection = server.selection
        logger.info(f'[{server.name}] Backup configuration: mode={selection.mode.value} '
                    f'include_system_databases={selection.include_system_databases}')
        if selection.mode is SelectionMode.SPECIFIC:
            logger.info(f'[{server.name}]   Included databases: {", ".join(selection.databases)}')
        else:
            logger.info(f'[{server.name}]   Excluded databases: '
                        f'{", ".join(selection.exclude_databases) or "none"}')

    def backup_database(self, server: Server, database: str, port: DatabaseBackupPort,
                        backend: Backend, override: Optional[BackupKind] = None
                        ) -> DatabaseResult:
        """
        decide -> dump -> record -> prune for one database.
        Errors are logged and returned, never raised.
        """
        prefix = f'[{server.name}/{database}]'
        result = DatabaseResult(server.name, database)
        now = self.clock()
        kind = None
        try:
            existing = load_backups(backend, server.name, database)
            marker = self.state.reconcile(server, database, existing)
            kind = self.scheduler.decide(server, database, now, override, port)
            backup = new_backup(kind, server.name, database, next_timestamp(now, marker))
            logger.info(f'{prefix} Creating {kind.value} backup: {backup.path}')
            with backend.writer(backup) as f:
                port.dump(database, f, DumpOptions(incremental=kind is BackupKind.INCREMENTAL))
            self.state.record(server, database, backup)
            result.backup = backup
            logger.success(f'{prefix} Backup created successfully: {backup.path}')
        except (BackupError, OSError) as e:
            if isinstance(e, BackupError):
                e.server = e.server or server.name
                e.database = e.database or database
            what = f'{kind.value.capitalize()} backup' if kind else 'Backup'
            cause = e.message if isinstance(e, BackupError) else str(e)
            logger.error(f'{prefix} {what} failed: {cause}')
            result.error = e
            return result

        try:
            result.pruned = self.retention.prune(server, database, backend, now=now)
        except (BackupError, OSError) as e:
            cause = e.message if isinstance(e, BackupError) else str(e)
            logger.error(f'{prefix} Cleanup failed: {cause}')
            result.error = e
        return result
