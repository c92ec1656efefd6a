"""
Chooses between direct and tunneled access to a server.
"""
from typing import Dict, List, Optional, Tuple

from loguru import logger

from mariadb_backup.mariadb.ports.base import DatabaseBackupPort
from mariadb_backup.mariadb.ports.direct import DirectPort
from mariadb_backup.mariadb.ports.tunneled import TunneledPort
from mariadb_backup.mariadb.tunnel import SshTunnel, TunnelPort
from mariadb_backup.utils.errors import ConnectivityError
from mariadb_backup.utils.models import AccessMethod, ConnectionMode, Server

CHECK_DIRECT = 'direct database connection'
CHECK_SSH = 'ssh connection'
CHECK_TUNNELED = 'database connection through ssh'


class ConnectionResolver:
    """
    Resolves the access method of a server and creates the matching port.
    """

    def __init__(self, probe_timeout: float = 10, tunnel: Optional[TunnelPort] = None):
        """
        :param probe_timeout: timeout of the direct connectivity probe in seconds
        :param tunnel: tunnel implementation. ssh by default.
        """
        self.probe_timeout = probe_timeout
        self.tunnel = tunnel or SshTunnel()

    def resolve(self, server: Server) -> AccessMethod:
        """
        Decide how to reach the server.
        A failing probe is no error. It only selects the tunnel.
        :param server: server
        :return: access method
        """
        if server.connection is ConnectionMode.LOCAL:
            logger.info(f'[{server.name}] Local backup connection mode - using direct database '
                        'access')
            return AccessMethod.DIRECT
        if server.connection is ConnectionMode.REMOTE:
            logger.info(f'[{server.name}] Remote backup connection mode - using ssh tunnel')
            return AccessMethod.TUNNELED
        if server.force_ssh:
            logger.info(f'[{server.name}] Forced ssh connection mode (legacy force_ssh setting)')
            return AccessMethod.TUNNELED
        if server.ssh is None:
            logger.debug(f'[{server.name}] No tunnel configured - using direct database access')
            return AccessMethod.DIRECT

        logger.debug(f'[{server.name}] Testing direct database connection...')
        if self.direct_port(server).probe(self.probe_timeout):
            logger.info(f'[{server.name}] Direct database connection available')
            return AccessMethod.DIRECT
        logger.info(f'[{server.name}] Direct connection failed, will use ssh tunnel')
        return AccessMethod.TUNNELED

    def direct_port(self, server: Server) -> DatabaseBackupPort:
        return DirectPort(server.database)

    def port_for(self, server: Server, method: AccessMethod) -> DatabaseBackupPort:
        """
        Create the port for the access method.
        :raises ConnectivityError: the tunnel can not be opened
        """
        if method is AccessMethod.DIRECT:
            return self.direct_port(server)
        return TunneledPort(server.database, self.tunnel.open(server))

    def connect(self, server: Server) -> Tuple[DatabaseBackupPort, List[str]]:
        """
        Resolve the access method and enumerate the databases.
        Retries once with the other access method.
        :return: port and the databases on the server
        :raises ConnectivityError: server not reachable
        """
        method = self.resolve(server)
        try:
            port = self.port_for(server, method)
            return port, port.enumerate_databases()
        except ConnectivityError as e:
            fallback = method.other
            if fallback is AccessMethod.TUNNELED and server.ssh is None:
                raise
            logger.warning(f'[{server.name}] {method.value} access failed: {e.message}. '
                           f'Retrying with {fallback.value} access.')
            port = self.port_for(server, fallback)
            return port, port.enumerate_databases()

    def diagnose(self, server: Server) -> Dict[str, Optional[bool]]:
        """
        Test every way of reaching the server.
        :param server: server
        :return: check name -> passed. None if the check does not apply to the server.
        """
        checks = {}
        if server.connection is ConnectionMode.REMOTE or server.force_ssh:
            checks[CHECK_DIRECT] = None
        else:
            checks[CHECK_DIRECT] = self.direct_port(server).probe(self.probe_timeout)

        checks[CHECK_SSH] = checks[CHECK_TUNNELED] = None
        if server.ssh is not None and server.connection is not ConnectionMode.LOCAL:
            try:
                checks[CHECK_SSH] = self.tunnel.open(server).check(self.probe_timeout)
            except ConnectivityError as e:
                logger.error(f'[{server.name}] {e.message}')
                checks[CHECK_SSH] = False
            checks[CHECK_TUNNELED] = checks[CHECK_SSH] and self.port_for(
                server, AccessMethod.TUNNELED).probe(self.probe_timeout)
        return checks
