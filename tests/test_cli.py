"""Tests for the click command line interface."""

import gzip

import pytest
from click.testing import CliRunner

from conftest import FakePort, FakeResolver
from mariadb_backup.run import main

CONFIG = """
[lock]
file = "{lock}"

[defaults]
backup_root = "{root}"

[servers.db1.database]
host = "127.0.0.1"
password = "secret"

[servers.db1.retention]
enabled = true
min_full_backups = 1
max_age_days = 1
"""


@pytest.fixture
def config_folder(tmp_path):
    folder = tmp_path / 'etc'
    folder.mkdir()
    (folder / 'config.toml').write_text(
        CONFIG.format(lock=tmp_path / 'run.lock', root=tmp_path / 'backups'))
    return folder


@pytest.fixture
def port(monkeypatch):
    port = FakePort()
    monkeypatch.setattr('mariadb_backup.run.ConnectionResolver',
                        lambda probe_timeout: FakeResolver(port))
    return port


@pytest.fixture
def cli(config_folder, port):
    runner = CliRunner()

    def _invoke(*args, **kwargs):
        return runner.invoke(main, ['-c', str(config_folder), *args], **kwargs)
    return _invoke


def write_backup(tmp_path, name, database='shop'):
    path = tmp_path / 'backups' / 'db1' / database / name
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, 'wb') as f:
        f.write(f'-- {name}\n'.encode())
    return path


class TestBackup:

    def test_backup_all(self, cli, port, tmp_path):
        result = cli('backup')
        assert result.exit_code == 0, result.output
        assert port.dumps == [('shop', False), ('blog', False)]
        assert len(list((tmp_path / 'backups' / 'db1' / 'shop').glob('full_backup_*'))) == 1
        assert not (tmp_path / 'run.lock').exists()

    def test_forced_incremental(self, cli, port):
        cli('backup', 'db1')
        result = cli('backup', 'db1', '--type', 'incremental')
        assert result.exit_code == 0, result.output
        assert port.dumps[-2:] == [('shop', True), ('blog', True)]

    def test_failed_database(self, cli, port):
        port.fail_dump = ['blog']
        result = cli('backup')
        assert result.exit_code == 1
        assert 'FAILED' in result.output

    def test_unknown_server(self, cli):
        assert cli('backup', 'nope').exit_code == 2

    def test_lock_held(self, cli, port, tmp_path, monkeypatch):
        (tmp_path / 'run.lock').write_text('4242\n')
        monkeypatch.setattr('mariadb_backup.utils.lock.psutil.pid_exists', lambda pid: True)
        assert cli('backup').exit_code == 2
        assert port.dumps == []


class TestPlanAndRestore:

    def test_plan(self, cli, tmp_path):
        write_backup(tmp_path, 'full_backup_shop_20240101_120000.sql.gz')
        write_backup(tmp_path, 'incremental_backup_shop_20240103_120000.sql.gz')
        write_backup(tmp_path, 'incremental_backup_shop_20240108_120000.sql.gz')
        result = cli('plan', 'db1', 'shop', '--date', '2024-01-07')
        assert result.exit_code == 0, result.output
        assert 'full_backup_shop_20240101_120000.sql.gz' in result.output
        assert 'incremental_backup_shop_20240103_120000.sql.gz' in result.output
        assert '20240108' not in result.output

    def test_plan_without_baseline(self, cli):
        assert cli('plan', 'db1', 'shop').exit_code == 1

    def test_plan_invalid_date(self, cli):
        assert cli('plan', 'db1', 'shop', '--date', 'yesterday').exit_code == 2

    def test_restore(self, cli, port):
        cli('backup')
        result = cli('restore', 'db1', 'shop', '--force')
        assert result.exit_code == 0, result.output
        assert port.applied == [b'-- dump of shop\n']

    def test_restore_dry_run(self, cli, port):
        cli('backup')
        assert cli('restore', 'db1', 'shop', '--dry-run').exit_code == 0
        assert port.applied == []

    def test_restore_asks_before_overwriting(self, cli, port):
        cli('backup')
        result = cli('restore', 'db1', 'shop', input='n\n')
        assert result.exit_code == 1
        assert port.applied == []

    def test_restore_confirmed(self, cli, port):
        cli('backup')
        assert cli('restore', 'db1', 'shop', input='y\n').exit_code == 0
        assert len(port.applied) == 1

    def test_restore_failure(self, cli, port):
        cli('backup')
        port.fail_apply = ['shop']
        assert cli('restore', 'db1', 'shop', '--force').exit_code == 1


class TestPruneAndList:

    def test_prune(self, cli, tmp_path):
        old = write_backup(tmp_path, 'full_backup_shop_20200101_000000.sql.gz')
        orphan = write_backup(tmp_path, 'incremental_backup_shop_20200102_000000.sql.gz')
        new = write_backup(tmp_path, 'full_backup_shop_20200201_000000.sql.gz')
        result = cli('prune')
        assert result.exit_code == 0, result.output
        assert '[db1/shop] removed 2, kept 1' in result.output
        assert not old.exists()
        assert not orphan.exists()
        assert new.exists()

    def test_list(self, cli, tmp_path):
        write_backup(tmp_path, 'full_backup_shop_20240101_120000.sql.gz')
        result = cli('list')
        assert result.exit_code == 0, result.output
        assert '[db1/shop]' in result.output
        assert '2024-01-01 12:00:00' in result.output

    def test_list_without_backups(self, cli):
        assert cli('list').exit_code == 1


class TestRestoreTarget:

    @pytest.fixture
    def target(self, monkeypatch):
        """Records the endpoint the restore connects to."""
        target = FakePort(databases=[])
        target.endpoints = []

        def _direct_port(endpoint):
            target.endpoints.append(endpoint)
            return target
        monkeypatch.setattr('mariadb_backup.run.DirectPort', _direct_port)
        return target

    def test_restore_to_other_host(self, cli, port, target):
        cli('backup')
        result = cli('restore', 'db1', 'shop', '-t', 'replica.local', '-u', 'restorer',
                     '-P', '3307', '--ssl-mode', 'REQUIRE')
        assert result.exit_code == 0, result.output
        assert 'Restoring into: replica.local:3307' in result.output
        endpoint = target.endpoints[0]
        assert endpoint.host == 'replica.local'
        assert endpoint.username == 'restorer'
        assert endpoint.port == 3307
        assert endpoint.ssl_mode == 'require'
        assert endpoint.password == 'secret'
        assert target.applied == [b'-- dump of shop\n']
        assert port.applied == []

    def test_target_defaults_to_source_settings(self, cli, target):
        cli('backup')
        result = cli('restore', 'db1', 'shop', '--target', 'replica.local')
        assert result.exit_code == 0, result.output
        endpoint = target.endpoints[0]
        assert (endpoint.port, endpoint.username, endpoint.ssl_mode) == (3306, 'root', 'auto')

    def test_password_from_environment(self, cli, target):
        cli('backup')
        result = cli('restore', 'db1', 'shop', '-t', 'replica.local',
                     env={'MARIADB_BACKUP_RESTORE_PASSWORD': 'restore-pw'})
        assert result.exit_code == 0, result.output
        assert target.endpoints[0].password == 'restore-pw'
        assert 'restore-pw' not in result.output

    def test_overwrite_check_uses_target(self, cli, port, target):
        cli('backup')
        target.databases = ['shop']
        result = cli('restore', 'db1', 'shop', '-t', 'replica.local', input='n\n')
        assert result.exit_code == 1
        assert target.applied == []

    def test_invalid_port(self, cli, target):
        assert cli('restore', 'db1', 'shop', '-t', 'replica.local', '-P', '0').exit_code == 2
        assert target.endpoints == []


class TestDiscover:

    def test_lists_databases(self, cli, port):
        port.databases = ['information_schema', 'mysql', 'shop', 'blog', 'wiki', 'sys']
        result = cli('discover', 'db1')
        assert result.exit_code == 0, result.output
        assert 'User databases on db1 (3):' in result.output
        assert 'System databases' not in result.output
        assert 'Selected for backup (mode=all):' in result.output
        assert 'databases = ["shop", "blog", "wiki"]' in result.output
        assert 'exclude_databases = ["blog", "wiki"]' in result.output

    def test_system_databases(self, cli, port):
        port.databases = ['information_schema', 'mysql', 'shop']
        result = cli('discover', 'db1', '--system')
        assert result.exit_code == 0, result.output
        assert 'System databases (2):' in result.output
        assert 'information_schema (never backed up)' in result.output
        assert '\tmysql\n' in result.output

    def test_unreachable_server(self, cli, port):
        port.reachable = False
        result = cli('discover', 'db1')
        assert result.exit_code == 1
        assert 'Could not list the databases of db1' in result.output

    def test_unknown_server(self, cli):
        assert cli('discover', 'nope').exit_code == 2


class TestValidate:

    def test_valid(self, cli, tmp_path):
        result = cli('validate')
        assert result.exit_code == 0, result.output
        assert 'direct database connection: OK' in result.output
        assert 'ssh connection: skipped' in result.output
        assert 'Configuration is valid' in result.output
        assert (tmp_path / 'backups' / 'db1').is_dir()
        assert list((tmp_path / 'backups' / 'db1').iterdir()) == []

    def test_unreachable_database(self, cli, port):
        port.reachable = False
        result = cli('validate', 'db1')
        assert result.exit_code == 1
        assert 'direct database connection: FAILED' in result.output
        assert 'no working database connection' in result.output

    def test_backup_dir_not_writable(self, cli, tmp_path):
        (tmp_path / 'backups').write_text('not a directory')
        result = cli('validate')
        assert result.exit_code == 1
        assert f'backup directory {tmp_path / "backups" / "db1"}: FAILED' in result.output
