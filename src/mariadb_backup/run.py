"""
Creates and restores point-in-time backups of MariaDB/MySQL servers.
"""
import dataclasses
import json
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import click
from dynaconf import Dynaconf
from loguru import logger

from mariadb_backup.backends.base import load_backups
from mariadb_backup.backends.disk import DiskBackend
from mariadb_backup.chain.orchestrator import (EXIT_ABORT, EXIT_FAILURES,
                                               EXIT_OK, BackupOrchestrator)
from mariadb_backup.chain.planner import RestorePlan, RestorePlanner, execute_plan
from mariadb_backup.chain.retention import RetentionManager
from mariadb_backup.mariadb.ports.direct import DirectPort
from mariadb_backup.mariadb.resolver import ConnectionResolver
from mariadb_backup.utils.config import load_servers, parse_config
from mariadb_backup.utils.converters import parse_target
from mariadb_backup.utils.datatypes import Backup, BackupKind
from mariadb_backup.utils.errors import (BackupError, ChainIntegrityError,
                                         ConfigError, ConnectivityError,
                                         LockHeldError)
from mariadb_backup.utils.lock import RunLock
from mariadb_backup.utils.logging import setup_logging
from mariadb_backup.utils.models import (SSL_MODES, SYSTEM_DATABASES,
                                         VIRTUAL_SCHEMAS, Server)


class CtxArgs:
    """
    Cache object for arguments between click group and commands.
    """

    def __init__(self, config_folder: Path, settings: Dynaconf, resolver: ConnectionResolver,
                 lock: RunLock):
        self.config_folder = Path(config_folder)
        self.settings = settings
        self.resolver = resolver
        self.lock = lock

    def servers(self, only: Optional[str] = None) -> Dict[str, Server]:
        """
        Load the configured servers. Exits on configuration errors.
        """
        try:
            return load_servers(self.settings, only)
        except ConfigError as e:
            logger.critical(f'Configuration error: {e}')
            sys.exit(EXIT_ABORT)


def abort(message: str, code: int = EXIT_ABORT):
    click.secho(message, fg='red', bold=True, file=sys.stderr)
    sys.exit(code)


def format_plan(plan: RestorePlan) -> str:
    output = click.style('=== RESTORE PLAN ===\n', fg='green', bold=True)
    output += f'Server: {plan.server}\nDatabase: {plan.database}\n'
    output += f'Target: {plan.target_str}\n\n'
    output += click.style('1. Full Backup Restore:\n', fg='cyan')
    output += f'\t{plan.full.path} @ {plan.full.timestamp_str}\n'
    if plan.incrementals:
        output += click.style('2. Incremental Backups (in order):\n', fg='cyan')
        for i, inc in enumerate(plan.incrementals, 1):
            output += click.style(f'\t{i}. {inc.path} @ {inc.timestamp_str}\n', fg='yellow')
    else:
        output += click.style('2. No incremental backups to apply\n', fg='red')
    return output + click.style('=== END RESTORE PLAN ===', fg='green', bold=True)


def format_chains(backups: List[Backup]) -> str:
    output = ''
    for backup in backups:
        if backup.kind is BackupKind.FULL:
            output += click.style(f'\t{backup} @ {backup.timestamp_str}\n', fg='cyan')
        else:
            output += click.style(f'\t\t{backup.path} @ {backup.timestamp_str}\n', fg='yellow')
    return output


@click.group()
@click.option(
    '-c',
    '--config-folder',
    help='Folder where the config files are stored. /etc/mariadb-backup by default.'
         ' Make sure that the user has read and write access to the folder.',
    default='/etc/mariadb-backup',
)
@click.pass_context
@click.version_option(package_name='mariadb_backup')
def main(ctx, config_folder):
    """
    Create and restore MariaDB/MySQL backups with full and incremental backup chains.
    """
    try:
        settings = parse_config(Path(config_folder))
        log_dir = settings('logging.dir', cast=Path, default=None)
        if log_dir:
            setup_logging(log_dir, settings('logging.level', default='INFO'))
        resolver = ConnectionResolver(
            probe_timeout=settings('defaults.probe_timeout', cast=int, default=10)
        )
        lock = RunLock(Path(settings('lock.file')))
    except ConfigError as e:
        logger.critical(f'Error during config parsing! {e}')
        sys.exit(EXIT_ABORT)
    ctx.obj = CtxArgs(config_folder, settings, resolver, lock)


@main.command('backup')
@click.argument('server', required=False)
@click.option(
    '-t', '--type', 'backup_type',
    type=click.Choice(['auto', 'full', 'incremental']), default='auto', show_default=True,
    help='Force a backup type and ignore the schedule. '
         'Databases without a full backup always get a full backup.'
)
@click.pass_context
def backup_command(ctx, server, backup_type):
    """
    Perform a backup of all servers or of SERVER.
    Depending on the schedule, this will create a full or an incremental backup
    for every selected database.
    """
    args: CtxArgs = ctx.obj
    servers = args.servers(server)
    override = None if backup_type == 'auto' else BackupKind(backup_type)
    orchestrator = BackupOrchestrator(args.resolver)
    try:
        summary = orchestrator.run_all(servers.values(), override, lock=args.lock)
    except LockHeldError as e:
        logger.critical(str(e))
        sys.exit(EXIT_ABORT)

    for result in summary.results:
        if result.ok:
            click.secho(f'[{result.server}/{result.database}] {result.backup}', fg='green')
        else:
            click.secho(f'[{result.server}/{result.database}] FAILED: {result.error}',
                        fg='red', file=sys.stderr)
    for name, error in summary.server_errors.items():
        click.secho(f'[{name}] FAILED: {error}', fg='red', file=sys.stderr)
    sys.exit(summary.exit_code)


@main.command('plan')
@click.argument('server', required=True)
@click.argument('database', required=True)
@click.option('-d', '--date', 'target', default=None,
              help='Restore to this point in time (YYYY-MM-DD or "YYYY-MM-DD HH:MM:SS"). '
                   'Default: latest available backup.')
@click.pass_context
def plan_command(ctx, server, database, target):
    """
    Show which backups a restore of DATABASE on SERVER would apply.
    """
    args: CtxArgs = ctx.obj
    server = args.servers(server)[server]
    try:
        target = parse_target(target)
    except ValueError as e:
        abort(str(e))
    try:
        plan = RestorePlanner().plan(server, database, target)
    except ChainIntegrityError as e:
        logger.error(str(e))
        abort(str(e), EXIT_FAILURES)
    click.echo(format_plan(plan))


@main.command('restore')
@click.argument('server', required=True)
@click.argument('database', required=True)
@click.option('-d', '--date', 'target', default=None,
              help='Restore to this point in time (YYYY-MM-DD or "YYYY-MM-DD HH:MM:SS"). '
                   'Default: latest available backup.')
@click.option('-t', '--target', 'target_host', default=None,
              help='Restore into this database host instead of the source server. '
                   'The target is always connected to directly.')
@click.option('-u', '--username', default=None,
              help='Username for the target host. Default: user of the source server.')
@click.option('-p', '--password', default=None, envvar='MARIADB_BACKUP_RESTORE_PASSWORD',
              help='Password for the target host. Default: password of the source server.')
@click.option('-P', '--port', 'db_port', type=click.IntRange(1, 65535), default=None,
              help='Port of the target host. Default: port of the source server.')
@click.option('--ssl-mode', type=click.Choice(SSL_MODES, case_sensitive=False), default=None,
              help='SSL mode for the target host. Default: ssl mode of the source server.')
@click.option('--dry-run', is_flag=True, default=False,
              help='Show what would be restored without executing.')
@click.option('--force', is_flag=True, default=False,
              help='Overwrite an existing database without asking.')
@click.pass_context
def restore_command(ctx, server, database, target, target_host, username, password, db_port,
                    ssl_mode, dry_run, force):
    """
    Restore DATABASE on SERVER from its full backup and the following incremental backups.
    """
    args: CtxArgs = ctx.obj
    server = args.servers(server)[server]
    try:
        target = parse_target(target)
    except ValueError as e:
        abort(str(e))
    overrides = {
        'host': target_host,
        'username': username,
        'password': password,
        'port': db_port,
        'ssl_mode': ssl_mode.lower() if ssl_mode else None,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    endpoint = None
    if overrides:
        try:
            endpoint = dataclasses.replace(server.database, **overrides)
        except ConfigError as e:
            abort(f'Invalid restore target: {e}')
    try:
        with args.lock:
            plan = RestorePlanner().plan(server, database, target)
            click.echo(format_plan(plan))
            if endpoint is not None:
                click.echo(f'Restoring into: {endpoint}')
                port = DirectPort(endpoint)
            else:
                port = args.resolver.port_for(server, args.resolver.resolve(server))
            if not dry_run and not force and port.database_exists(database):
                click.confirm(
                    f"Database '{database}' already exists and will be overwritten! "
                    'Continue with restore?',
                    abort=True
                )
            execute_plan(plan, port, DiskBackend(server.backup_dir), dry_run=dry_run)
    except LockHeldError as e:
        logger.critical(str(e))
        sys.exit(EXIT_ABORT)
    except BackupError as e:
        logger.error(str(e))
        abort(f'Restore failed: {e}', EXIT_FAILURES)


@main.command('prune')
@click.argument('server', required=False)
@click.pass_context
def prune_command(ctx, server):
    """
    Delete old backups of all servers or of SERVER according to their retention policy.
    """
    args: CtxArgs = ctx.obj
    servers = args.servers(server)
    retention = RetentionManager()
    failed = 0
    try:
        with args.lock:
            for srv in servers.values():
                if not srv.retention.enabled:
                    logger.info(f'[{srv.name}] Cleanup is disabled')
                    continue
                backend = DiskBackend(srv.backup_dir)
                for database in backend.list_databases():
                    try:
                        result = retention.prune(srv, database, backend)
                    except (ChainIntegrityError, OSError) as e:
                        logger.error(f'[{srv.name}/{database}] Cleanup failed: {e}')
                        failed += 1
                        continue
                    if not result.ok:
                        failed += 1
                    click.echo(f'[{srv.name}/{database}] removed {len(result.deleted)}, '
                               f'kept {len(result.kept)}')
    except LockHeldError as e:
        logger.critical(str(e))
        sys.exit(EXIT_ABORT)
    sys.exit(EXIT_FAILURES if failed else EXIT_OK)


@main.command('list')
@click.argument('server', required=False)
@click.argument('database', required=False)
@click.pass_context
def list_command(ctx, server, database):
    """
    List all existing backups.
    """
    args: CtxArgs = ctx.obj
    found = False
    output = click.style('Listing backups:\n', fg='green', bold=True)
    for srv in args.servers(server).values():
        backend = DiskBackend(srv.backup_dir)
        databases = [database] if database else backend.list_databases()
        for db in databases:
            backups = load_backups(backend, srv.name, db)
            if not backups:
                continue
            found = True
            output += click.style(f'[{srv.name}/{db}]\n', fg='bright_green')
            output += format_chains(backups) + '\n'
    if not found:
        abort('None! You have to create a backup first...', EXIT_FAILURES)
    output += ('Call the plan or restore command with the server and database as arguments.\n'
               'E.g.:\n')
    output += click.style(f'mariadb-backup -c {args.config_folder} restore --dry-run '
                          '<server> <database>', fg='green')
    click.echo(output)


def format_selection_examples(name: str, databases: List[str]) -> str:
    output = click.style('Configuration examples:\n', fg='green', bold=True)
    output += f'# back up all user databases\n[servers.{name}.backup]\nmode = "all"\n\n'
    if databases:
        output += (f'# back up only some databases\n[servers.{name}.backup]\n'
                   f'mode = "specific"\ndatabases = {json.dumps(databases[:3])}\n\n')
        output += (f'# back up everything except some databases\n[servers.{name}.backup]\n'
                   f'mode = "exclude"\nexclude_databases = {json.dumps(databases[-2:])}\n')
    return output


@main.command('discover')
@click.argument('server', required=True)
@click.option('--system', 'show_system', is_flag=True, default=False,
              help='Also list the system databases.')
@click.pass_context
def discover_command(ctx, server, show_system):
    """
    List the databases on SERVER and what the configured selection backs up.
    """
    args: CtxArgs = ctx.obj
    server = args.servers(server)[server]
    try:
        _, live = args.resolver.connect(server)
    except ConnectivityError as e:
        logger.error(str(e))
        abort(f'Could not list the databases of {server.name}: {e}', EXIT_FAILURES)

    user = [x for x in live if x not in VIRTUAL_SCHEMAS and x not in SYSTEM_DATABASES]
    output = click.style(f'User databases on {server.name} ({len(user)}):\n', fg='green',
                         bold=True)
    output += ''.join(f'\t{x}\n' for x in user) or '\tnone\n'
    if show_system:
        system = [x for x in live if x in SYSTEM_DATABASES or x in VIRTUAL_SCHEMAS]
        output += click.style(f'System databases ({len(system)}):\n', fg='cyan')
        for x in system:
            note = ' (never backed up)' if x in VIRTUAL_SCHEMAS else ''
            output += f'\t{x}{note}\n'

    selected = server.selection.resolve(live, server.name)
    output += click.style(f'Selected for backup (mode={server.selection.mode.value}):\n',
                          fg='cyan')
    output += ''.join(click.style(f'\t{x}\n', fg='yellow') for x in selected) or '\tnone\n'
    click.echo(output)
    click.echo(format_selection_examples(server.name, user))


def check_backup_dir(server: Server) -> bool:
    """
    Check that backups can be written to the backup directory of server.
    """
    try:
        server.backup_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile(dir=server.backup_dir) as f:
            f.write(b'test')
    except OSError as e:
        logger.error(f'[{server.name}] Backup directory {server.backup_dir} is not writable: {e}')
        return False
    return True


@main.command('validate')
@click.argument('server', required=False)
@click.pass_context
def validate_command(ctx, server):
    """
    Check the configuration and connectivity of all servers or of SERVER.
    """
    args: CtxArgs = ctx.obj
    failed = 0
    for srv in args.servers(server).values():
        click.secho(f'[{srv.name}] connection={srv.connection.value} '
                    f'force_ssh={srv.force_ssh}', bold=True)
        checks = args.resolver.diagnose(srv)
        for name, passed in checks.items():
            if passed is None:
                click.echo(f'\t{name}: skipped')
            else:
                click.secho(f'\t{name}: {"OK" if passed else "FAILED"}',
                            fg='green' if passed else 'red')
        usable = any(checks.values())
        if not usable:
            click.secho('\tno working database connection', fg='red')
        writable = check_backup_dir(srv)
        click.secho(f'\tbackup directory {srv.backup_dir}: {"OK" if writable else "FAILED"}',
                    fg='green' if writable else 'red')
        if not usable or not writable:
            failed += 1
    if failed:
        abort(f'{failed} server(s) failed validation', EXIT_FAILURES)
    click.secho('Configuration is valid', fg='green', bold=True)


if __name__ == '__main__':
    main()
