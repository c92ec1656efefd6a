from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import BinaryIO, Iterator, List

from loguru import logger

from mariadb_backup.utils.datatypes import Backup, backup_from_file


class Backend(ABC):
    """
    ABC for backend implementations.
    Implements how to store, delete and load existing backups of one server.
    """

    @abstractmethod
    def remove(self, backup: Backup) -> None:
        """
        Removes the backup.
        :param backup: The backup to remove.
        """
        pass

    @abstractmethod
    def get_existing_backups(self, database: str) -> List[str]:
        """
        Returns a list of existing backup files of a database.
        """
        pass

    @abstractmethod
    def list_databases(self) -> List[str]:
        """
        Returns the databases that have a backup directory.
        """
        pass

    @abstractmethod
    @contextmanager
    def writer(self, backup: Backup) -> Iterator[BinaryIO]:
        """
        Open the backup for writing.
        The backup only becomes visible if the block exits without an exception.
        """
        pass

    @abstractmethod
    @contextmanager
    def reader(self, backup: Backup) -> Iterator[BinaryIO]:
        """
        Open the backup for reading.
        """
        pass


def load_backups(backend: Backend, server: str, database: str) -> List[Backup]:
    """
    Get all existing backups of a database sorted by timestamp.
    Files with an unknown name are ignored.
    :param backend: storage backend
    :param server: server name
    :param database: database name
    :return: list of backups, oldest first
    """
    backups = []
    for file in backend.get_existing_backups(database):
        try:
            backup = backup_from_file(server, file)
        except ValueError:
            logger.warning(f'[{server}/{database}] Invalid file name in backup dir: {file}')
            continue
        if backup.database != database:
            logger.warning(f'[{server}/{database}] Backup of {backup.database} in wrong folder: '
                           f'{file}')
            continue
        backups.append(backup)
    return sorted(backups, key=lambda x: x.timestamp)
