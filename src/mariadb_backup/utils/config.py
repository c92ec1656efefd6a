"""
config handling for dynaconf
"""
import os
from importlib.resources import files
from pathlib import Path
from typing import Dict, Optional

from dynaconf import Dynaconf, Validator
from dynaconf.validator import ValidationError

from mariadb_backup.utils.converters import parse_interval
from mariadb_backup.utils.errors import ConfigError
from mariadb_backup.utils.models import (BackupSetSelection, ConnectionMode,
                                         DatabaseEndpoint, RetentionPolicy,
                                         ScheduleRule, SelectionMode, Server,
                                         SshEndpoint)

DEFAULT_BACKUP_ROOT = '/var/backups/mariadb'


def parse_config(config_folder: Path) -> Dynaconf:
    """
    Parse config with dynaconf.
    Creates the default config in the folder if it does not exist yet.
    :param config_folder: folder containing default.toml and config.toml
    :return: settings
    """
    config_folder = Path(config_folder)
    default_config = config_folder / 'default.toml'
    if not os.path.isfile(default_config):
        try:
            config_folder.mkdir(parents=True, exist_ok=True)
            with open(default_config, 'w', encoding='utf-8') as f:
                f.write(files('mariadb_backup.data').joinpath('default.toml').read_text())
        except OSError as e:
            raise ConfigError(f'Failed to create default config {default_config}. '
                              'Consider creating the folder writeable for this user '
                              f'or choose a different path. Error: {e}') from e

    settings = Dynaconf(
        envvar_prefix='MARIADB_BACKUP',
        settings_files=['default.toml', 'config.toml'],
        root_path=str(config_folder),
        merge_enabled=True,
        validators=[
            Validator('lock.file', must_exist=True),
            Validator('defaults.probe_timeout', cast=int, default=10),
            Validator('defaults.backup_root', default=DEFAULT_BACKUP_ROOT),
            Validator('logging.level', default='INFO'),
        ]
    )
    try:
        settings.validators.validate()
    except ValidationError as e:
        raise ConfigError(f'Invalid configuration: {e}') from e
    return settings


def _enum(cls, value, what: str):
    try:
        return cls(str(value).lower())
    except ValueError:
        raise ConfigError(f'Invalid {what}: {value}') from None


def _server_from_dict(name: str, data: dict, backup_root: Path) -> Server:
    """
    Build a server from its [servers.<name>] table.
    """
    db = data.get('database') or {}
    ssh = data.get('ssh')
    backup = data.get('backup') or {}
    schedule = data.get('schedule') or {}
    retention = data.get('retention') or {}

    backup_path = Path(str(data.get('backup_path', backup_root))).expanduser()
    if not backup_path.is_absolute():
        backup_path = backup_root / backup_path

    try:
        interval = parse_interval(schedule.get('full_backup_interval', 'manual'))
    except ValueError as e:
        raise ConfigError(str(e), server=name) from e

    try:
        return Server(
            name=name,
            database=DatabaseEndpoint(
                host=db.get('host', 'localhost'),
                port=int(db.get('port', 3306)),
                username=db.get('username', 'root'),
                password=str(db.get('password', '')),
                ssl_mode=str(db.get('ssl_mode', 'auto')).lower(),
            ),
            backup_root=backup_path,
            connection=_enum(ConnectionMode, data.get('connection', 'auto'), 'connection mode'),
            force_ssh=bool(data.get('force_ssh', False)),
            ssh=SshEndpoint(
                host=ssh.get('host'),
                username=ssh.get('username'),
                port=int(ssh.get('port', 22)),
                auth_type=ssh.get('auth_type', 'key'),
                private_key=ssh.get('private_key'),
                password=ssh.get('password'),
                connect_timeout=int(ssh.get('connect_timeout', 30)),
            ) if ssh else None,
            selection=BackupSetSelection(
                mode=_enum(SelectionMode, backup.get('mode', 'all'), 'backup mode'),
                databases=list(backup.get('databases', [])),
                exclude_databases=list(backup.get('exclude_databases', [])),
                include_system_databases=bool(backup.get('include_system_databases', False)),
            ),
            schedule=ScheduleRule(
                full_backup_interval=interval,
                # full backup on the 1st of every month unless configured otherwise
                full_backup_day=schedule.get(
                    'full_backup_day', None if 'full_backup_interval' in schedule else 1),
            ),
            retention=RetentionPolicy(
                min_full_backups=int(retention.get('min_full_backups', 2)),
                max_age_days=int(retention.get('max_age_days', 30)),
                enabled=bool(retention.get('enabled', False)),
            ),
        )
    except ConfigError as e:
        e.server = e.server or name
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f'Invalid server configuration: {e}', server=name) from e


def load_servers(settings: Dynaconf, only: Optional[str] = None) -> Dict[str, Server]:
    """
    Load all configured servers.
    :param settings: parsed settings
    :param only: only load the server with this name
    :return: dict server name -> server
    """
    raw = settings.get('servers', default=None) or {}
    if not raw:
        raise ConfigError('No servers found in configuration')
    backup_root = Path(str(settings('defaults.backup_root'))).expanduser()
    servers = {}
    for name, data in raw.items():
        name = str(name)
        if only and name != only:
            continue
        servers[name] = _server_from_dict(name, dict(data), backup_root)
    if only and only not in servers:
        raise ConfigError(f"Server '{only}' not found in configuration. "
                          f"Available servers: {', '.join(str(x) for x in raw.keys())}")
    return servers
