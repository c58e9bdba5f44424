"""Formatting and validation helpers shared by the CLI and executors."""

import re
from datetime import datetime

_BUCKET_PATTERN = re.compile(r'^[a-z0-9][a-z0-9.-]*[a-z0-9]$')
_SIZE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']


def format_bytes(size: int) -> str:
    """
    Format a byte count for humans.

    >>> format_bytes(1536)
    '1.5 KB'
    """
    if size <= 0:
        return '0 B'

    exponent = 0
    while size >= 1024 ** (exponent + 1) and exponent < len(_SIZE_UNITS) - 1:
        exponent += 1
    value = round(size / (1024 ** exponent), 2)
    if value == int(value):
        value = int(value)
    return f"{value} {_SIZE_UNITS[exponent]}"


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as 'YYYY-MM-DD HH:MM:SS' (no fractional seconds)."""
    return moment.strftime('%Y-%m-%d %H:%M:%S')


def validate_bucket_name(name: str) -> bool:
    """Check a name against the S3 bucket naming rules."""
    if not name or len(name) < 3 or len(name) > 63:
        return False
    if '..' in name:
        return False
    return bool(_BUCKET_PATTERN.match(name))
