"""
Indirect access to databases through an SSH jump host.
"""
import os
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

from loguru import logger

from mariadb_backup.utils.errors import ConnectivityError
from mariadb_backup.utils.models import Server


class TunnelContext:
    """
    Execution context of an opened tunnel.
    Commands wrapped by it run on the intermediate host.
    """

    def __init__(self, prefix: List[str], env: Dict[str, str], description: str):
        """
        :param prefix: local command that executes a remote shell command
        :param env: local environment needed by the prefix (e.g. SSHPASS)
        :param description: user@host:port for log messages
        """
        self.prefix = prefix
        self.env = env
        self.description = description

    def __str__(self):
        return self.description

    def wrap(self, argv: List[str], secrets: Dict[str, str]
             ) -> Tuple[List[str], Dict[str, str], str]:
        """
        Wrap a command for remote execution.
        Secrets never appear on a command line. The remote shell reads them from the first
        lines of stdin and exports them before it replaces itself with the command.
        :param argv: command to run remotely
        :param secrets: variables for the remote command
        :return: local command, local environment and the input to send first
        """
        script = []
        lines = []
        for key, value in secrets.items():
            if '\n' in value or '\r' in value:
                raise ConnectivityError(f'{key} must not contain line breaks',
                                        operation='tunnel')
            script.append(f'IFS= read -r {key} && export {key} && ')
            lines.append(f'{value}\n')
        script.append(f'exec {shlex.join(argv)}')
        remote = shlex.join(['sh', '-c', ''.join(script)])
        return [*self.prefix, remote], {**os.environ, **self.env}, ''.join(lines)

    def check(self, timeout: float) -> bool:
        """
        Check whether a command can be executed on the intermediate host.
        """
        cmd, env, _ = self.wrap(['true'], {})
        try:
            result = subprocess.run(cmd, env=env, stdin=subprocess.DEVNULL,
                                    capture_output=True, timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f'Tunnel check via {self} failed: {e}')
            return False
        if result.returncode != 0:
            logger.debug(f'Tunnel check via {self} failed with exit code {result.returncode}: '
                         f'{result.stderr.decode(errors="replace").strip()}')
        return result.returncode == 0


class TunnelPort(ABC):
    """
    ABC for tunnel implementations.
    """

    @abstractmethod
    def open(self, server: Server) -> TunnelContext:
        """
        Open the tunnel to the given server.
        :raises ConnectivityError: tunnel can not be used
        """
        pass


class SshTunnel(TunnelPort):
    """
    Tunnel through ssh. Supports key and password (sshpass) authentication.
    """

    def __init__(self, ssh_binary: str = 'ssh', sshpass_binary: str = 'sshpass'):
        self.ssh_binary = ssh_binary
        self.sshpass_binary = sshpass_binary

    def open(self, server: Server) -> TunnelContext:
        ssh = server.ssh
        if ssh is None:
            raise ConnectivityError('No ssh settings configured', server=server.name,
                                    operation='tunnel')
        options = [
            '-o', 'StrictHostKeyChecking=no',
            '-o', f'ConnectTimeout={ssh.connect_timeout}',
            '-C',
            '-p', str(ssh.port),
        ]
        target = f'{ssh.username}@{ssh.host}'

        if ssh.auth_type == 'key':
            if not ssh.private_key.is_file():
                raise ConnectivityError(f'Private key file not found: {ssh.private_key}',
                                        server=server.name, operation='tunnel')
            prefix = [self.ssh_binary, '-o', 'BatchMode=yes', *options,
                      '-i', str(ssh.private_key), target]
            env = {}
        else:
            if not shutil.which(self.sshpass_binary):
                raise ConnectivityError(
                    f'{self.sshpass_binary} is required for password authentication '
                    'but not installed',
                    server=server.name, operation='tunnel'
                )
            prefix = [self.sshpass_binary, '-e', self.ssh_binary, *options, target]
            env = {'SSHPASS': ssh.password}

        logger.debug(f'[{server.name}] Using ssh tunnel via {ssh} ({ssh.auth_type} auth)')
        return TunnelContext(prefix, env, str(ssh))
