"""
Exception taxonomy of the backup tool.
"""
from typing import Optional


class BackupError(Exception):
    """
    Base class for all errors raised by mariadb-backup.
    Carries optional context about where the error happened.
    """

    def __init__(self, message: str, server: Optional[str] = None,
                 database: Optional[str] = None, operation: Optional[str] = None):
        """
        :param message: description of the error / underlying cause
        :param server: server name
        :param database: database name
        :param operation: operation that failed (backup, restore, prune, ...)
        """
        super().__init__(message)
        self.message = message
        self.server = server
        self.database = database
        self.operation = operation

    def __str__(self):
        context = '/'.join(x for x in (self.server, self.database) if x)
        prefix = f'[{context}] ' if context else ''
        if self.operation:
            prefix += f'{self.operation}: '
        return f'{prefix}{self.message}'


class ConfigError(BackupError):
    """
    Invalid configuration. Aborts the whole invocation.
    """


class ConnectivityError(BackupError):
    """
    The database could not be reached with the chosen access method.
    """


class DumpError(BackupError):
    """
    Creating a dump failed. Fatal for a single database only.
    """


class ApplyError(BackupError):
    """
    Applying a dump during a restore failed.
    """


class ChainIntegrityError(BackupError):
    """
    The backup chain of a database is inconsistent.
    Never resolved by guessing.
    """


class NoSuitableBaseline(ChainIntegrityError):
    """
    No full backup exists at or before the requested restore target.
    """


class DuplicateTimestampError(ChainIntegrityError):
    """
    Two artifacts of one database share the same timestamp.
    """


class OrphanIncrementalError(ChainIntegrityError):
    """
    An incremental backup without a preceding full backup.
    """


class LockHeldError(BackupError):
    """
    Another live process holds the run lock.
    """
