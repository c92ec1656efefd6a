"""
Database access through the mysql and mariadb-dump client binaries.
"""
import gzip
import shutil
import subprocess
import tempfile
from abc import abstractmethod
from typing import BinaryIO, Dict, List, Optional, Tuple

from loguru import logger

from mariadb_backup.mariadb.ports.base import DatabaseBackupPort, DumpOptions
from mariadb_backup.utils.errors import ApplyError, ConnectivityError, DumpError
from mariadb_backup.utils.models import DatabaseEndpoint

CHUNK_SIZE = 1024 * 1024

SSL_OPTIONS = {
    'disable': ['--skip-ssl'],
    'disabled': ['--skip-ssl'],
    'require': ['--ssl-mode=REQUIRED'],
    'required': ['--ssl-mode=REQUIRED'],
    'verify_ca': ['--ssl-mode=VERIFY_CA'],
    'verify_identity': ['--ssl-mode=VERIFY_IDENTITY'],
}


def _read_stderr(stderr) -> str:
    stderr.seek(0)
    return stderr.read().decode(errors='replace').strip()


def _send_input(proc: subprocess.Popen, data: str):
    """
    Write data to the stdin of proc. Raises BrokenPipeError if proc is gone.
    """
    if data:
        proc.stdin.write(data.encode())
        proc.stdin.flush()


def _close_stdin(proc: subprocess.Popen):
    try:
        proc.stdin.close()
    except BrokenPipeError:
        pass


class CommandPort(DatabaseBackupPort):
    """
    Base class for ports running the MariaDB client binaries.
    Subclasses decide where the commands are executed.
    """

    def __init__(self, endpoint: DatabaseEndpoint, client_binary: str = 'mysql',
                 dump_binary: str = 'mariadb-dump'):
        """
        :param endpoint: database connection data
        :param client_binary: mysql / mariadb
        :param dump_binary: mariadb-dump / mysqldump
        """
        self.endpoint = endpoint
        self.client_binary = client_binary
        self.dump_binary = dump_binary

    @abstractmethod
    def _command(self, argv: List[str], secrets: Dict[str, str]
                 ) -> Tuple[List[str], Dict[str, str], str]:
        """
        Wrap a client command for execution.
        :param argv: client command
        :param secrets: variables the client command needs
        :return: final command, environment for subprocess and the input to send first
        """
        pass

    def _connection_args(self) -> List[str]:
        return [
            f'--host={self.endpoint.host}',
            f'--port={self.endpoint.port}',
            f'--user={self.endpoint.username}',
            *SSL_OPTIONS.get(self.endpoint.ssl_mode, []),
        ]

    def _client_env(self) -> Dict[str, str]:
        # keeps the password out of the process list
        return {'MYSQL_PWD': self.endpoint.password} if self.endpoint.password else {}

    def query(self, sql: str, timeout: Optional[float] = None) -> List[str]:
        """
        Run a query and return the result rows as tab separated lines.
        :raises ConnectivityError: client failed
        """
        cmd, env, secret_input = self._command(
            [self.client_binary, *self._connection_args(), '--batch', '--skip-column-names',
             '-e', sql],
            self._client_env()
        )
        try:
            result = subprocess.run(cmd, env=env, input=secret_input, capture_output=True,
                                    text=True, timeout=timeout)
        except FileNotFoundError as e:
            raise ConnectivityError(f'{cmd[0]} is not installed: {e}') from e
        except OSError as e:
            raise ConnectivityError(f'Could not run {cmd[0]}: {e}') from e
        if result.returncode != 0:
            raise ConnectivityError(
                f'Query failed on {self.endpoint} (exit code {result.returncode}): '
                f'{result.stderr.strip()}'
            )
        return [x for x in result.stdout.splitlines() if x]

    def enumerate_databases(self) -> List[str]:
        return self.query('SHOW DATABASES;')

    def probe(self, timeout: float) -> bool:
        try:
            self.query('SELECT 1;', timeout=timeout)
        except ConnectivityError as e:
            logger.debug(f'Probe of {self.endpoint} failed: {e}')
            return False
        except subprocess.TimeoutExpired:
            logger.debug(f'Probe of {self.endpoint} timed out after {timeout}s')
            return False
        return True

    def binlog_enabled(self) -> bool:
        rows = self.query("SHOW VARIABLES LIKE 'log_bin';")
        return any(row.split('\t')[-1].strip().upper() == 'ON' for row in rows)

    def database_exists(self, database: str) -> bool:
        return database in self.enumerate_databases()

    def dump(self, database: str, output: BinaryIO, options: DumpOptions) -> None:
        cmd, env, secret_input = self._command(
            [self.dump_binary, *self._connection_args(), *options.arguments(),
             '--databases', database],
            self._client_env()
        )
        with tempfile.TemporaryFile() as stderr:
            try:
                proc = subprocess.Popen(
                    cmd, env=env, stdout=subprocess.PIPE, stderr=stderr,
                    stdin=subprocess.PIPE if secret_input else subprocess.DEVNULL
                )
            except OSError as e:
                raise DumpError(f'Could not start {cmd[0]}: {e}', database=database) from e
            if secret_input:
                try:
                    _send_input(proc, secret_input)
                except BrokenPipeError:
                    pass
                _close_stdin(proc)
            try:
                with gzip.GzipFile(fileobj=output, mode='wb') as gz:
                    shutil.copyfileobj(proc.stdout, gz, CHUNK_SIZE)
            except OSError as e:
                proc.kill()
                proc.wait()
                raise DumpError(f'Failed to write dump: {e}', database=database) from e
            finally:
                proc.stdout.close()
            return_code = proc.wait()
            if return_code != 0:
                raise DumpError(
                    f'{self.dump_binary} failed with exit code {return_code}: '
                    f'{_read_stderr(stderr)}',
                    database=database
                )

    def apply(self, database: str, source: BinaryIO) -> None:
        cmd, env, secret_input = self._command(
            [self.client_binary, *self._connection_args(), database],
            self._client_env()
        )
        with tempfile.TemporaryFile() as stderr:
            try:
                proc = subprocess.Popen(cmd, env=env, stdin=subprocess.PIPE,
                                        stdout=subprocess.DEVNULL, stderr=stderr)
            except OSError as e:
                raise ApplyError(f'Could not start {cmd[0]}: {e}', database=database) from e
            try:
                _send_input(proc, secret_input)
                with gzip.GzipFile(fileobj=source, mode='rb') as gz:
                    shutil.copyfileobj(gz, proc.stdin, CHUNK_SIZE)
            except BrokenPipeError:
                # the client died. the exit code tells why.
                pass
            except (OSError, EOFError) as e:
                proc.kill()
                proc.wait()
                raise ApplyError(f'Could not read dump: {e}', database=database) from e
            finally:
                _close_stdin(proc)
            return_code = proc.wait()
            if return_code != 0:
                raise ApplyError(
                    f'{self.client_binary} failed with exit code {return_code}: '
                    f'{_read_stderr(stderr)}',
                    database=database
                )
