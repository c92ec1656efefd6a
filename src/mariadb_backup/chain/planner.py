"""
Builds restore plans: the full backup baseline and the incremental backups to replay on top of it.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional

from loguru import logger

from mariadb_backup.backends.base import Backend, load_backups
from mariadb_backup.backends.disk import DiskBackend
from mariadb_backup.mariadb.ports.base import DatabaseBackupPort
from mariadb_backup.utils.datatypes import Backup, BackupKind
from mariadb_backup.utils.errors import (ApplyError, DuplicateTimestampError,
                                         NoSuitableBaseline)
from mariadb_backup.utils.models import Server


@dataclass
class RestorePlan:
    """
    Ordered list of backups to apply. The full backup always comes first.
    """
    server: str
    database: str
    target: Optional[datetime]
    full: Backup
    incrementals: List[Backup] = field(default_factory=list)

    @property
    def steps(self) -> List[Backup]:
        return [self.full, *self.incrementals]

    def __iter__(self) -> Iterator[Backup]:
        return iter(self.steps)

    def __len__(self):
        return len(self.steps)

    @property
    def target_str(self) -> str:
        return f'{self.target:%Y-%m-%d %H:%M:%S}' if self.target else 'latest available'


def check_duplicates(server: str, database: str, backups: List[Backup],
                     operation: str = 'plan') -> None:
    counts = Counter(x.timestamp for x in backups)
    duplicates = sorted(ts for ts, n in counts.items() if n > 1)
    if duplicates:
        names = ', '.join(str(x.path) for x in backups if x.timestamp in duplicates)
        raise DuplicateTimestampError(
            f'Backups share the same timestamp, refusing to guess their order: {names}',
            server=server, database=database, operation=operation
        )


class RestorePlanner:
    """
    Selects the newest full backup at or before the target
    and all later incremental backups up to the target.
    """

    def plan(self, server: Server, database: str, target: Optional[datetime] = None,
             backend: Optional[Backend] = None) -> RestorePlan:
        """
        Create a restore plan.
        :param server: server
        :param database: database
        :param target: restore point. None restores the latest state.
        :param backend: storage backend. Disk backend of the server by default.
        :return: restore plan
        :raises NoSuitableBaseline: no full backup at or before the target
        :raises DuplicateTimestampError: two backups with the same timestamp
        """
        backend = backend or DiskBackend(server.backup_dir)
        prefix = f'[{server.name}/{database}]'
        backups = [
            x for x in load_backups(backend, server.name, database)
            if target is None or x.timestamp <= target
        ]
        check_duplicates(server.name, database, backups)

        fulls = sorted((x for x in backups if x.kind is BackupKind.FULL),
                       key=lambda x: x.timestamp, reverse=True)
        if not fulls:
            if target is None:
                message = 'No full backups found'
            else:
                message = f'No suitable full backup found before {target:%Y-%m-%d %H:%M:%S}'
            raise NoSuitableBaseline(message, server=server.name, database=database,
                                     operation='plan')
        full = fulls[0]
        incrementals = sorted(
            (x for x in backups
             if x.kind is BackupKind.INCREMENTAL and x.timestamp > full.timestamp),
            key=lambda x: x.timestamp
        )
        logger.debug(f'{prefix} Restore plan: {full.path} + {len(incrementals)} incremental '
                     'backup(s)')
        return RestorePlan(server.name, database, target, full, incrementals)


def execute_plan(plan: RestorePlan, port: DatabaseBackupPort, backend: Backend,
                 dry_run: bool = False) -> None:
    """
    Apply a restore plan in order. Stops at the first failure.
    :param plan: restore plan
    :param port: port of the target server
    :param backend: storage backend holding the backups
    :param dry_run: only log what would be applied
    :raises ApplyError: a backup could not be applied
    """
    prefix = f'[{plan.server}/{plan.database}]'
    total = len(plan)
    for i, backup in enumerate(plan, 1):
        if dry_run:
            logger.info(f'{prefix} [DRY RUN] Would apply {i}/{total}: {backup.path}')
            continue
        logger.info(f'{prefix} Applying {i}/{total}: {backup}')
        try:
            with backend.reader(backup) as f:
                port.apply(plan.database, f)
        except ApplyError as e:
            e.server = e.server or plan.server
            e.operation = e.operation or 'restore'
            logger.error(f'{prefix} Failed to apply {backup.path}: {e.message}')
            raise
        except OSError as e:
            logger.error(f'{prefix} Could not read {backup.path}: {e}')
            raise ApplyError(f'Could not read {backup.path}: {e}', server=plan.server,
                             database=plan.database, operation='restore') from e
        logger.success(f'{prefix} Applied {backup.path}')
    if dry_run:
        logger.success(f'{prefix} [DRY RUN] Restore plan completed successfully')
    else:
        logger.success(f'{prefix} Database restore completed successfully')
