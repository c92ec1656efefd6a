"""
Pruning of old backups without breaking restorability.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from loguru import logger

from mariadb_backup.backends.base import Backend, load_backups
from mariadb_backup.backends.disk import DiskBackend
from mariadb_backup.chain.planner import check_duplicates
from mariadb_backup.chain.state import ChainStateStore
from mariadb_backup.utils.datatypes import Backup, BackupKind
from mariadb_backup.utils.models import RetentionPolicy, Server


@dataclass
class PruneResult:
    """
    Outcome of pruning one database.
    """
    server: str
    database: str
    deleted: List[Backup] = field(default_factory=list)
    failed: List[Tuple[Backup, Exception]] = field(default_factory=list)
    kept: List[Backup] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class RetentionManager:
    """
    Applies a retention policy to the backups of a database.

    The newest min_full_backups full backups are always kept.
    An older full backup expires once the full backup that replaced it is older than
    max_age_days, i.e. once no restore point within max_age_days needs it.
    Deleting a full backup deletes the incremental backups up to the next surviving
    full backup. A final sweep deletes incremental backups without a preceding full backup.
    """

    def __init__(self, state: Optional[ChainStateStore] = None):
        self.state = state or ChainStateStore()

    @staticmethod
    def expired_fulls(fulls: List[Backup], policy: RetentionPolicy,
                      now: datetime) -> List[Backup]:
        """
        Full backups that may be deleted.
        :param fulls: full backups sorted newest first
        :return: expired full backups, newest first
        """
        cutoff = now - policy.max_age
        expired = []
        for i, full in enumerate(fulls):
            if i < policy.min_full_backups:
                continue
            # fulls[i - 1] is the next more recent full backup
            if fulls[i - 1].timestamp < cutoff:
                expired.append(full)
        return expired

    def _delete(self, backend: Backend, backup: Backup, reason: str,
                result: PruneResult) -> bool:
        prefix = f'[{result.server}/{result.database}]'
        try:
            backend.remove(backup)
        except FileNotFoundError:
            logger.warning(f'{prefix} Backup already gone: {backup.path}')
        except OSError as e:
            logger.error(f'{prefix} Could not delete {backup.path}: {e}')
            result.failed.append((backup, e))
            return False
        logger.info(f'{prefix} Deleted {reason}: {backup.path}')
        result.deleted.append(backup)
        return True

    def prune(self, server: Server, database: str, backend: Optional[Backend] = None,
              policy: Optional[RetentionPolicy] = None,
              now: Optional[datetime] = None) -> PruneResult:
        """
        Prune the backups of a database.
        Deletions are best effort. A failed deletion is logged and the rest is still evaluated.
        :param server: server
        :param database: database
        :param backend: storage backend. Disk backend of the server by default.
        :param policy: retention policy. Policy of the server by default.
        :param now: current time
        :return: prune result
        :raises DuplicateTimestampError: two backups with the same timestamp
        """
        backend = backend or DiskBackend(server.backup_dir)
        policy = policy or server.retention
        now = now or datetime.now()
        prefix = f'[{server.name}/{database}]'
        result = PruneResult(server.name, database)
        if not policy.enabled:
            logger.debug(f'{prefix} Cleanup is disabled')
            return result

        backups = load_backups(backend, server.name, database)
        check_duplicates(server.name, database, backups, operation='prune')
        logger.info(f'{prefix} Starting cleanup (keep >= {policy.min_full_backups} full '
                    f'backups, delete > {policy.max_age_days} days old)')

        fulls = sorted((x for x in backups if x.kind is BackupKind.FULL),
                       key=lambda x: x.timestamp, reverse=True)
        incrementals = [x for x in backups if x.kind is BackupKind.INCREMENTAL]
        surviving = list(fulls)

        for full in self.expired_fulls(fulls, policy, now):
            if not self._delete(backend, full, 'old full backup', result):
                continue
            surviving.remove(full)
            successor = min((x for x in surviving if x.timestamp > full.timestamp),
                            key=lambda x: x.timestamp)
            for inc in incrementals:
                if full.timestamp < inc.timestamp < successor.timestamp \
                        and inc not in result.deleted:
                    self._delete(backend, inc, 'incremental backup of deleted chain', result)

        oldest_full = min((x.timestamp for x in surviving), default=None)
        failed = [x for x, _ in result.failed]
        for inc in incrementals:
            if inc in result.deleted or inc in failed:
                continue
            if oldest_full is not None and inc.timestamp > oldest_full:
                continue
            self._delete(backend, inc, 'orphaned incremental backup', result)

        result.kept = [x for x in backups if x not in result.deleted]
        self.state.reconcile(server, database, result.kept)

        if result.deleted:
            logger.success(f'{prefix} Cleanup completed: removed {len(result.deleted)} backup '
                           'files')
        else:
            logger.info(f'{prefix} Cleanup completed: no files to remove')
        return result
