from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, List

BASE_DUMP_OPTIONS = ('--single-transaction', '--routines', '--triggers', '--events')
# records the binary log position in the dump header
BINLOG_DUMP_OPTIONS = ('--flush-logs', '--master-data=2')


@dataclass
class DumpOptions:
    """
    Options for creating a dump.
    """
    incremental: bool = False

    def arguments(self) -> List[str]:
        args = list(BASE_DUMP_OPTIONS)
        if self.incremental:
            args.extend(BINLOG_DUMP_OPTIONS)
        return args


class DatabaseBackupPort(ABC):
    """
    ABC for the access to a database server.
    Produces and applies compressed logical dumps.
    """

    @abstractmethod
    def enumerate_databases(self) -> List[str]:
        """
        Names of all databases on the server in server order.
        :raises ConnectivityError: server not reachable
        """
        pass

    @abstractmethod
    def probe(self, timeout: float) -> bool:
        """
        Check whether the server is reachable within timeout seconds.
        Never raises for connectivity problems.
        """
        pass

    @abstractmethod
    def binlog_enabled(self) -> bool:
        """
        Whether the server has binary logging enabled.
        Incremental backups need it for their log position.
        """
        pass

    @abstractmethod
    def database_exists(self, database: str) -> bool:
        pass

    @abstractmethod
    def dump(self, database: str, output: BinaryIO, options: DumpOptions) -> None:
        """
        Write a gzip compressed dump of the database to output.
        :raises DumpError: dump failed
        """
        pass

    @abstractmethod
    def apply(self, database: str, source: BinaryIO) -> None:
        """
        Replay a gzip compressed dump into the database.
        :raises ApplyError: restore failed
        """
        pass
