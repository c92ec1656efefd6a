"""
Process-wide advisory run lock.
"""
import fcntl
import os
from pathlib import Path
from typing import Optional

import psutil
from loguru import logger

from mariadb_backup.utils.errors import LockHeldError


class RunLock:
    """
    Lock file holding an exclusive flock and the PID of its owner.
    The flock decides who owns the lock. The kernel drops it when the owner dies, so a file
    left behind by a dead process is simply reused.
    A lock file naming another live process is respected even without a flock.
    A held lock makes acquire fail immediately. There is no waiting.

    Usage:
        with RunLock(path):
            ...
    """

    def __init__(self, path: Path):
        """
        :param path: path of the lock file
        """
        self.path = Path(path)
        self._fd: Optional[int] = None

    def owner(self) -> Optional[int]:
        """
        PID stored in the lock file.
        :return: pid or None if there is no (readable) lock
        """
        try:
            content = self.path.read_text(encoding='utf-8').strip()
        except FileNotFoundError:
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def _open(self) -> int:
        """
        Open the lock file and take the flock.
        :return: file descriptor holding the flock
        :raises LockHeldError: the flock is held by someone else
        """
        while True:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                raise LockHeldError(
                    f'Another backup process is already running (PID: {self.owner()})')
            try:
                current = os.stat(self.path).st_ino
            except FileNotFoundError:
                current = None
            if current == os.fstat(fd).st_ino:
                return fd
            # the previous owner removed the file while we were opening it
            os.close(fd)

    def acquire(self):
        """
        Acquire the lock.
        :raises LockHeldError: another live process holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = self._open()
        try:
            pid = self.owner()
            if pid is not None and pid != os.getpid():
                if psutil.pid_exists(pid):
                    raise LockHeldError(f'Another backup process is already running (PID: {pid})')
                logger.warning(f'Stale lock file found (PID: {pid}), reclaiming {self.path}...')
            os.ftruncate(fd, 0)
            os.write(fd, f'{os.getpid()}\n'.encode())
        except BaseException:
            os.close(fd)
            raise
        self._fd = fd

    def release(self):
        """
        Release the lock if this process owns it.
        """
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            if self.owner() != os.getpid():
                logger.warning(f'Lock {self.path} is no longer owned by this process. '
                               'Not removing.')
                return
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        finally:
            os.close(fd)

    def __enter__(self) -> 'RunLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
