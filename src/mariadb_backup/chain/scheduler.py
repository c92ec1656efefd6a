"""
Decides whether a backup is full or incremental.
"""
from datetime import datetime
from typing import Optional

from loguru import logger

from mariadb_backup.chain.state import ChainStateStore
from mariadb_backup.mariadb.ports.base import DatabaseBackupPort
from mariadb_backup.utils.datatypes import BackupKind, ChainMarker
from mariadb_backup.utils.models import ScheduleRule, Server


class BackupTypeScheduler:
    """
    Full vs. incremental decision.

    Order of the rules:
    1. no full backup yet -> full (overrides everything)
    2. explicit override
    3. fixed calendar day -> full on that day
    4. interval since the last full backup
    5. incremental backups need binary logging. Without it they become full backups.
    """

    def __init__(self, state: Optional[ChainStateStore] = None):
        self.state = state or ChainStateStore()

    @staticmethod
    def scheduled_kind(rule: ScheduleRule, marker: ChainMarker, now: datetime) -> BackupKind:
        """
        Kind of backup the schedule asks for.
        :param rule: schedule of the server
        :param marker: chain marker of the database
        :param now: current time
        """
        if rule.full_backup_day is not None and now.day == rule.full_backup_day:
            # only the first run on that day
            if marker.last_full.date() != now.date():
                return BackupKind.FULL
        if rule.full_backup_interval is not None:
            if now - marker.last_full >= rule.full_backup_interval:
                return BackupKind.FULL
        return BackupKind.INCREMENTAL

    def decide(self, server: Server, database: str, now: Optional[datetime] = None,
               override: Optional[BackupKind] = None,
               port: Optional[DatabaseBackupPort] = None) -> BackupKind:
        """
        Decide the kind of the next backup.
        :param server: server
        :param database: database
        :param now: current time
        :param override: requested kind. None means automatic.
        :param port: used to check binary logging. Skipped if None.
        :return: kind of the backup
        """
        now = now or datetime.now()
        prefix = f'[{server.name}/{database}]'
        marker = self.state.load(server, database)
        if marker is None:
            if override is BackupKind.INCREMENTAL:
                logger.warning(f'{prefix} No previous backup found, performing full backup '
                               'instead')
            else:
                logger.info(f'{prefix} No initial backup found, performing full backup')
            return BackupKind.FULL

        if override is not None:
            kind = override
            logger.debug(f'{prefix} Backup type forced to {kind.value}')
        else:
            kind = self.scheduled_kind(server.schedule, marker, now)
            if kind is BackupKind.FULL:
                logger.info(f'{prefix} Full backup is due (last full backup: '
                            f'{marker.last_full:%Y-%m-%d %H:%M:%S})')

        if kind is BackupKind.INCREMENTAL and port is not None and not port.binlog_enabled():
            logger.warning(f'{prefix} Binary logging not enabled, performing full backup instead '
                           'of incremental')
            return BackupKind.FULL
        return kind
