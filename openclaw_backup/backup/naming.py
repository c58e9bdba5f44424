"""
Archive naming convention.

Backups are named ``{prefix}-{YYYY-MM-DDTHH-MM-SS}`` using the UTC time of
creation. The timestamp is fixed width, so for a single prefix lexical order
and chronological order agree. Backups created within the same second get a
numeric ``-N`` suffix.
"""

import re
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from .compression import get_extension

TIMESTAMP_FORMAT = '%Y-%m-%dT%H-%M-%S'

# Upper bound on same-second disambiguation attempts
MAX_SEQUENCE = 999


def format_archive_timestamp(moment: Optional[datetime] = None) -> str:
    """Render a moment as the colon/dot free ISO-8601 form used in names."""
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def build_archive_name(prefix: str, moment: Optional[datetime] = None, sequence: int = 0) -> str:
    """Build an archive name, appending ``-sequence`` when it is non-zero."""
    name = f"{prefix}-{format_archive_timestamp(moment)}"
    if sequence:
        name = f"{name}-{sequence}"
    return name


def generate_archive_name(
    prefix: str,
    is_taken: Optional[Callable[[str], bool]] = None,
    moment: Optional[datetime] = None,
) -> str:
    """
    Generate a unique archive name.

    Args:
        prefix: Archive name prefix
        is_taken: Optional predicate telling whether a name is already used
        moment: Creation time (defaults to now, UTC)

    Returns:
        The first name in ``name, name-1, name-2, ...`` that is not taken

    Raises:
        ValueError: If no free name is found
    """
    if moment is None:
        moment = datetime.now(timezone.utc)

    for sequence in range(MAX_SEQUENCE + 1):
        name = build_archive_name(prefix, moment, sequence)
        if is_taken is None or not is_taken(name):
            return name

    raise ValueError(f"Could not find a free archive name for {prefix} at {moment.isoformat()}")


def archive_name_pattern(prefix: str):
    """Compile the regex matching archive names for a prefix."""
    return re.compile(
        rf"^{re.escape(prefix)}-(\d{{4}}-\d{{2}}-\d{{2}}T\d{{2}}-\d{{2}}-\d{{2}})(?:-(\d+))?$"
    )


def parse_archive_name(name: str, prefix: str) -> Optional[Tuple[datetime, int]]:
    """
    Parse an archive name into its timestamp and sequence number.

    Returns:
        (timestamp, sequence) or None if the name does not follow the convention
    """
    match = archive_name_pattern(prefix).match(name)
    if not match:
        return None

    try:
        timestamp = datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None

    sequence = int(match.group(2)) if match.group(2) else 0
    return timestamp, sequence


def storage_key_for(storage_prefix: str, name: str, compression_format: str = 'tar.gz') -> str:
    """Build the object store key ``{prefix}/{name}.{ext}`` for an archive."""
    prefix = storage_prefix.strip('/')
    filename = f"{name}.{get_extension(compression_format)}"
    return f"{prefix}/{filename}" if prefix else filename
