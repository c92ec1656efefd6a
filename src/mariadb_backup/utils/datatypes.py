"""
Contains classes representing backup artifacts and chain markers.
"""
from abc import ABC
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .converters import FILE_SUFFIX, format_timestamp, parse_file_name


class BackupKind(Enum):
    """
    Kinds of backups in a chain.
    """
    FULL = 'full'
    INCREMENTAL = 'incremental'


class Backup(ABC):
    """
    Abstract base class for backups.
    Identity is (server, database, timestamp).
    """
    kind: BackupKind

    def __init__(self, server: str, database: str, timestamp: Optional[datetime] = None):
        """
        :param server: name of the server the backup belongs to
        :param database: name of the database
        :param timestamp: creation time of the backup
        """
        self.server = server
        self.database = database
        self.timestamp = (timestamp if timestamp else datetime.now()).replace(microsecond=0)

    def __str__(self):
        return f'{self.kind.value.capitalize()} Backup {self.path}'

    def __repr__(self):
        return f'<{type(self).__name__} {self.server}/{self.database} @ {self.timestamp_str}>'

    def __eq__(self, other):
        if not isinstance(other, Backup):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self):
        return hash(self.identity)

    @property
    def identity(self) -> tuple:
        return self.server, self.database, self.timestamp

    @property
    def path(self) -> Path:
        """
        path of the backup file relative to the server backup dir
        """
        return Path(self.database) / (
            f'{self.kind.value}_backup_{self.database}_{format_timestamp(self.timestamp)}'
            f'{FILE_SUFFIX}'
        )

    @property
    def timestamp_str(self) -> str:
        """
        timestamp as string
        :return: timestamp as string
        """
        return self.timestamp.strftime('%Y-%m-%d %H:%M:%S')


class FullBackup(Backup):
    """
    Represents full backups. A restore baseline.
    """
    kind = BackupKind.FULL


class IncrementalBackup(Backup):
    """
    Represents incremental backups.
    A later dump replayed on top of the preceding full backup.
    """
    kind = BackupKind.INCREMENTAL


def new_backup(kind: BackupKind, server: str, database: str,
               timestamp: Optional[datetime] = None) -> Backup:
    """
    Create a backup object of the given kind.
    """
    cls = FullBackup if kind is BackupKind.FULL else IncrementalBackup
    return cls(server=server, database=database, timestamp=timestamp)


def backup_from_file(server: str, file_path: Union[str, Path]) -> Backup:
    """
    Create a backup object from a file name.
    :raises ValueError: invalid file name
    """
    data = parse_file_name(file_path)
    return new_backup(BackupKind(data['kind']), server, data['database'], data['timestamp'])


class ChainMarker:
    """
    Per (server, database) pointer to the latest full backup and the latest backup of any kind.
    """

    def __init__(self, server: str, database: str, last_full: datetime,
                 last_any: Optional[datetime] = None):
        last_any = last_any or last_full
        if last_any < last_full:
            raise ValueError(f'last_any {last_any} is older than last_full {last_full}')
        self.server = server
        self.database = database
        self.last_full = last_full
        self.last_any = last_any

    def __eq__(self, other):
        if not isinstance(other, ChainMarker):
            return NotImplemented
        return (self.server, self.database, self.last_full, self.last_any) == (
            other.server, other.database, other.last_full, other.last_any)

    def __repr__(self):
        return (f'<ChainMarker {self.server}/{self.database} '
                f'last_full={self.last_full.isoformat()} last_any={self.last_any.isoformat()}>')

    def advance(self, backup: Backup) -> 'ChainMarker':
        """
        Marker after recording the given backup.
        """
        last_full = backup.timestamp if backup.kind is BackupKind.FULL else self.last_full
        return ChainMarker(self.server, self.database, last_full,
                           max(self.last_any, backup.timestamp))

    def to_dict(self) -> dict:
        return {
            'server': self.server,
            'database': self.database,
            'last_full': self.last_full.isoformat(),
            'last_any': self.last_any.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ChainMarker':
        return cls(
            server=data['server'],
            database=data['database'],
            last_full=datetime.fromisoformat(data['last_full']),
            last_any=datetime.fromisoformat(data['last_any']),
        )
