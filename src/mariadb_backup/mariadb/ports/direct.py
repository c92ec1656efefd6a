import os
from typing import Dict, List, Tuple

from mariadb_backup.mariadb.ports.command import CommandPort


class DirectPort(CommandPort):
    """
    Runs the client binaries on this host and connects to the database directly.
    """

    def _command(self, argv: List[str], secrets: Dict[str, str]
                 ) -> Tuple[List[str], Dict[str, str], str]:
        return argv, {**os.environ, **secrets}, ''
