from typing import Dict, List, Tuple

from mariadb_backup.mariadb.ports.command import CommandPort
from mariadb_backup.mariadb.tunnel import TunnelContext
from mariadb_backup.utils.models import DatabaseEndpoint


class TunneledPort(CommandPort):
    """
    Runs the client binaries on an intermediate host.
    Dumps are streamed back through the tunnel and compressed locally.
    """

    def __init__(self, endpoint: DatabaseEndpoint, tunnel: TunnelContext, **kwargs):
        """
        :param endpoint: database connection data as seen from the intermediate host
        :param tunnel: opened tunnel
        """
        super().__init__(endpoint, **kwargs)
        self.tunnel = tunnel

    def _command(self, argv: List[str], secrets: Dict[str, str]
                 ) -> Tuple[List[str], Dict[str, str], str]:
        return self.tunnel.wrap(argv, secrets)
