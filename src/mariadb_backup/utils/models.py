"""
Typed server configuration: access descriptors, selection, schedule and retention policies.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .errors import ConfigError

# virtual schemas. never dumped.
VIRTUAL_SCHEMAS = ('information_schema', 'performance_schema')
SYSTEM_DATABASES = ('mysql', 'sys')

SSL_MODES = ('auto', 'disable', 'disabled', 'require', 'required', 'verify_ca',
             'verify_identity')


class ConnectionMode(Enum):
    """
    Configured way of reaching the database.
    """
    AUTO = 'auto'
    LOCAL = 'local'
    REMOTE = 'remote'


class AccessMethod(Enum):
    """
    Resolved way of reaching the database.
    """
    DIRECT = 'direct'
    TUNNELED = 'tunneled'

    @property
    def other(self) -> 'AccessMethod':
        return AccessMethod.TUNNELED if self is AccessMethod.DIRECT else AccessMethod.DIRECT


class SelectionMode(Enum):
    """
    How the set of databases to back up is selected.
    """
    ALL = 'all'
    SPECIFIC = 'specific'
    EXCLUDE = 'exclude'


@dataclass
class DatabaseEndpoint:
    """
    Connection data of a MariaDB/MySQL server.
    """
    host: str = 'localhost'
    port: int = 3306
    username: str = 'root'
    password: str = ''
    ssl_mode: str = 'auto'

    def __post_init__(self):
        if self.ssl_mode not in SSL_MODES:
            raise ConfigError(f'Invalid ssl_mode: {self.ssl_mode}')

    def __str__(self):
        return f'{self.host}:{self.port}'


@dataclass
class SshEndpoint:
    """
    Intermediate host used to reach a database that is not directly accessible.
    """
    host: str
    username: str
    port: int = 22
    auth_type: str = 'key'
    private_key: Optional[Path] = None
    password: Optional[str] = None
    connect_timeout: int = 30

    def __post_init__(self):
        if not self.host or not self.username:
            raise ConfigError('ssh host and username must be provided')
        if self.auth_type == 'key':
            if not self.private_key:
                raise ConfigError('private_key must be provided for key authentication')
            self.private_key = Path(self.private_key).expanduser()
        elif self.auth_type == 'password':
            if not self.password:
                raise ConfigError('password must be provided for password authentication')
        else:
            raise ConfigError(f'Unsupported authentication type: {self.auth_type}')

    def __str__(self):
        return f'{self.username}@{self.host}:{self.port}'


@dataclass
class BackupSetSelection:
    """
    Selects the databases of a server that are backed up.
    """
    mode: SelectionMode = SelectionMode.ALL
    databases: List[str] = field(default_factory=list)
    exclude_databases: List[str] = field(default_factory=list)
    include_system_databases: bool = False

    def __post_init__(self):
        if self.mode is SelectionMode.SPECIFIC and not self.databases:
            raise ConfigError("No databases specified for 'specific' mode")

    def resolve(self, live: List[str], server: Optional[str] = None) -> List[str]:
        """
        Resolve the selection against the databases that exist on the server.
        Keeps the order of the live enumeration.
        :param live: databases reported by the server
        :param server: server name for log messages
        :return: databases to back up
        """
        prefix = f'[{server}] ' if server else ''
        candidates = [x for x in live if x not in VIRTUAL_SCHEMAS]
        if self.mode is SelectionMode.SPECIFIC:
            for missing in (x for x in self.databases if x not in candidates):
                logger.warning(f"{prefix}Specified database '{missing}' not found on server")
            return [x for x in candidates if x in self.databases]

        if not self.include_system_databases:
            candidates = [x for x in candidates if x not in SYSTEM_DATABASES]
        if self.exclude_databases:
            logger.info(f'{prefix}Excluding databases: {", ".join(self.exclude_databases)}')
        return [x for x in candidates if x not in self.exclude_databases]


@dataclass
class RetentionPolicy:
    """
    Rules for pruning old backups.
    """
    min_full_backups: int = 2
    max_age_days: int = 30
    enabled: bool = False

    def __post_init__(self):
        if self.min_full_backups < 1:
            raise ConfigError('min_full_backups must be at least 1')
        if self.max_age_days < 1:
            raise ConfigError('max_age_days must be at least 1')

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.max_age_days)


@dataclass
class ScheduleRule:
    """
    When full backups are due.
    full_backup_interval None means manual.
    full_backup_day triggers a full backup on that day of every month.
    """
    full_backup_interval: Optional[timedelta] = None
    full_backup_day: Optional[int] = None

    def __post_init__(self):
        if self.full_backup_day is not None and not 1 <= self.full_backup_day <= 28:
            raise ConfigError('full_backup_day must be between 1 and 28')

    @property
    def manual(self) -> bool:
        return self.full_backup_interval is None and self.full_backup_day is None


@dataclass
class Server:
    """
    A configured database server.
    """
    name: str
    database: DatabaseEndpoint
    backup_root: Path
    connection: ConnectionMode = ConnectionMode.AUTO
    force_ssh: bool = False
    ssh: Optional[SshEndpoint] = None
    selection: BackupSetSelection = field(default_factory=BackupSetSelection)
    schedule: ScheduleRule = field(default_factory=ScheduleRule)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    def __post_init__(self):
        if self.connection is ConnectionMode.REMOTE and self.ssh is None:
            raise ConfigError(f'Server {self.name} uses remote connection mode without [ssh]')
        if self.force_ssh and self.ssh is None:
            raise ConfigError(f'Server {self.name} sets force_ssh without [ssh]')

    @property
    def backup_dir(self) -> Path:
        """
        Directory containing the backups of this server.
        """
        return self.backup_root / self.name
