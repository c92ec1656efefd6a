"""
Persistence of the chain markers.
One JSON record per (server, database) next to the backups of the database.
"""
import json
import os
from pathlib import Path
from typing import List, Optional

from loguru import logger

from mariadb_backup.utils.datatypes import Backup, BackupKind, ChainMarker
from mariadb_backup.utils.errors import OrphanIncrementalError
from mariadb_backup.utils.models import Server

MARKER_FILE = '.chain_marker.json'


class ChainStateStore:
    """
    Reads and writes chain markers.
    Not safe for concurrent writers. Runs are serialized by the run lock.
    """

    def path(self, server: Server, database: str) -> Path:
        return server.backup_dir / database / MARKER_FILE

    def load(self, server: Server, database: str) -> Optional[ChainMarker]:
        """
        Load the marker of a database.
        A corrupt marker is treated like a missing one. reconcile() rebuilds it.
        :return: marker or None
        """
        path = self.path(server, database)
        try:
            with open(path, encoding='utf-8') as f:
                return ChainMarker.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f'[{server.name}/{database}] Ignoring corrupt chain marker {path}: {e}')
            return None

    def save(self, server: Server, marker: ChainMarker) -> None:
        path = self.path(server, marker.database)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(marker.to_dict(), f, indent=2)
        os.replace(tmp_path, path)

    def delete(self, server: Server, database: str) -> None:
        try:
            os.remove(self.path(server, database))
        except FileNotFoundError:
            pass

    def record(self, server: Server, database: str, backup: Backup) -> ChainMarker:
        """
        Update the marker after a successful backup.
        :raises OrphanIncrementalError: incremental backup without a marker
        """
        marker = self.load(server, database)
        if marker is None:
            if backup.kind is not BackupKind.FULL:
                raise OrphanIncrementalError(
                    f'Incremental backup {backup.path} has no full backup in its chain',
                    server=server.name, database=database, operation='record'
                )
            marker = ChainMarker(server.name, database, backup.timestamp, backup.timestamp)
        else:
            marker = marker.advance(backup)
        self.save(server, marker)
        return marker

    def reconcile(self, server: Server, database: str,
                  backups: List[Backup]) -> Optional[ChainMarker]:
        """
        Rebuild the marker from the existing backups if it is out of sync.
        Repairs markers left behind by a run that died between dump and marker update
        and markers of chains whose backups were removed.
        :param backups: existing backups of the database
        :return: marker or None if the database has no full backup
        """
        prefix = f'[{server.name}/{database}]'
        current = self.load(server, database)
        fulls = [x.timestamp for x in backups if x.kind is BackupKind.FULL]
        if not fulls:
            if current is not None:
                logger.warning(f'{prefix} Chain marker points to missing full backups. '
                               'Removing it.')
                self.delete(server, database)
            return None

        expected = ChainMarker(server.name, database, max(fulls),
                               max(x.timestamp for x in backups))
        if current != expected:
            if current is not None:
                logger.warning(f'{prefix} Chain marker out of sync ({current!r}). '
                               f'Repairing it to {expected!r}.')
            self.save(server, expected)
        return expected
