import os
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, List

from mariadb_backup.backends.base import Backend
from mariadb_backup.utils.converters import FILE_SUFFIX
from mariadb_backup.utils.datatypes import Backup

TMP_SUFFIX = '.part'


class DiskBackend(Backend):
    """
    Disk backend for handling file based backups on local disk.
    Layout: <backup_dir>/<database>/<kind>_backup_<database>_<timestamp>.sql.gz
    """

    def __init__(self, backup_dir: Path):
        """
        :param backup_dir: main dir for the backups of a server
        """
        self.backup_dir = Path(backup_dir)

    def database_dir(self, database: str) -> Path:
        return self.backup_dir / database

    def file_path(self, backup: Backup) -> Path:
        return self.backup_dir / backup.path

    def get_existing_backups(self, database: str) -> List[str]:
        """
        Get all existing backups.
        :return: list with existing backup files.
        """
        db_dir = self.database_dir(database)
        if not db_dir.is_dir():
            return []
        return sorted(x for x in os.listdir(db_dir) if x.endswith(FILE_SUFFIX))

    def list_databases(self) -> List[str]:
        if not self.backup_dir.is_dir():
            return []
        return sorted(x.name for x in self.backup_dir.iterdir() if x.is_dir())

    def remove(self, backup: Backup) -> None:
        os.remove(self.file_path(backup))

    @contextmanager
    def writer(self, backup: Backup) -> Iterator[BinaryIO]:
        path = self.file_path(backup)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + TMP_SUFFIX)
        try:
            with open(tmp_path, 'wb') as f:
                yield f
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    @contextmanager
    def reader(self, backup: Backup) -> Iterator[BinaryIO]:
        with open(self.file_path(backup), 'rb') as f:
            yield f
