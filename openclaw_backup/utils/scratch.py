"""
Scratch directories for backup and restore runs.

Every scratch directory carries a well-known prefix so that leftovers of a
crashed run can be recognised and swept on the next one.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import Iterator, List, Optional

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = 'openclaw-backup-'


def create_scratch_dir(tag: str, base_dir: Optional[str] = None) -> str:
    """Create a uniquely named scratch directory tagged with ``tag``."""
    if base_dir:
        os.makedirs(base_dir, exist_ok=True)
    return tempfile.mkdtemp(prefix=f"{SCRATCH_PREFIX}{tag}-", dir=base_dir)


def remove_path(path: Optional[str]) -> bool:
    """
    Remove a file or directory if it exists.

    Returns:
        True if something was removed
    """
    if not path or not os.path.lexists(path):
        return False
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)
    return True


@contextmanager
def scratch_directory(tag: str, base_dir: Optional[str] = None) -> Iterator[str]:
    """Scratch directory removed on every exit path."""
    path = create_scratch_dir(tag, base_dir)
    try:
        yield path
    finally:
        try:
            remove_path(path)
        except OSError as e:
            logger.warning(f"Failed to remove scratch directory {path}: {e}")


def sweep_orphaned_scratch(base_dir: Optional[str] = None) -> List[str]:
    """
    Remove scratch directories left behind by interrupted runs.

    Only one run is active at a time, so anything carrying the prefix is
    an orphan.

    Returns:
        Paths that were removed
    """
    base = base_dir or tempfile.gettempdir()
    if not os.path.isdir(base):
        return []

    removed = []
    for entry in os.listdir(base):
        if not entry.startswith(SCRATCH_PREFIX):
            continue
        path = os.path.join(base, entry)
        try:
            remove_path(path)
            removed.append(path)
        except OSError as e:
            logger.warning(f"Could not remove orphaned scratch {path}: {e}")
    return removed
