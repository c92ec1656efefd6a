"""
helpers for converting values from one format to a different one
"""
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Union

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
FILE_SUFFIX = '.sql.gz'

_FILE_NAME_RE = re.compile(
    r'^(full|incremental)_backup_(.+)_(\d{8}_\d{6})' + re.escape(FILE_SUFFIX) + r'$'
)
_INTERVAL_RE = re.compile(r'^(\d+)([dhm])$')
_INTERVAL_UNITS = {
    'd': 'days',
    'h': 'hours',
    'm': 'minutes',
}


def parse_timestamp(timestamp: str) -> datetime:
    """
    Convert the given timestamp string to a datetime object.
    Format: TIMESTAMP_FORMAT
    :param timestamp: timestamp to parse
    :return: parsed timestamp
    """
    return datetime.strptime(timestamp, TIMESTAMP_FORMAT)


def format_timestamp(timestamp: datetime) -> str:
    """
    Convert the given datetime object to the correct string.
    :param timestamp: datetime object
    :return: formatted time
    """
    return timestamp.strftime(TIMESTAMP_FORMAT)


def parse_file_name(file_path: Union[str, Path]) -> dict:
    """
    Parse the given file_path.
    <kind>_backup_<database>_<YYYYmmdd_HHMMSS>.sql.gz
    :param file_path: file name or path of a backup
    :return: Dictionary with keys: kind, database, timestamp, path
    """
    match = _FILE_NAME_RE.match(Path(file_path).name)
    if not match:
        raise ValueError(f'Invalid file name: {file_path}')
    return {
        'kind': match.group(1),
        'database': match.group(2),
        'timestamp': parse_timestamp(match.group(3)),
        'path': Path(file_path),
    }


def parse_interval(interval: Optional[str]) -> Optional[timedelta]:
    """
    Parse a full backup interval like 7d, 24h or 60m.
    :param interval: interval string. manual or empty disables the interval.
    :return: timedelta or None for manual
    """
    if interval is None:
        return None
    interval = str(interval).strip().lower()
    if interval in ('', 'manual'):
        return None
    match = _INTERVAL_RE.match(interval)
    if not match or int(match.group(1)) == 0:
        raise ValueError(
            f"Invalid interval format: {interval}. Use format like '7d', '24h', '60m' or 'manual'"
        )
    return timedelta(**{_INTERVAL_UNITS[match.group(2)]: int(match.group(1))})


def parse_target(target: Optional[str]) -> Optional[datetime]:
    """
    Parse a restore target given on the command line.
    A plain date means the end of that day.
    :param target: YYYY-MM-DD, YYYY-MM-DD HH:MM[:SS], 'latest' or None
    :return: datetime or None for the latest state
    """
    if target is None or target.strip().lower() in ('', 'latest'):
        return None
    target = target.strip()
    try:
        day = datetime.strptime(target, '%Y-%m-%d')
        return day.replace(hour=23, minute=59, second=59)
    except ValueError:
        pass
    for fmt in ('%Y-%m-%d %H:%M:%S', '%Y-%m-%d %H:%M', '%Y-%m-%dT%H:%M:%S'):
        try:
            return datetime.strptime(target, fmt)
        except ValueError:
            continue
    raise ValueError(f'Invalid date: {target} (expected: YYYY-MM-DD or YYYY-MM-DD HH:MM:SS)')
