"""
Compression handlers for backup archives.

Supports tar containers with optional compression:
- tar.gz: Gzip compressed tar (used for backups)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import os
import posixpath
import tarfile
from pathlib import Path
from typing import List, Optional


class CompressionError(OSError):
    """Raised when archive creation fails."""
    pass


class CorruptArchiveError(CompressionError):
    """Raised when an archive cannot be extracted."""
    pass


# format -> (extension, write mode, read mode)
FORMATS = {
    'tar.gz': ('tar.gz', 'w:gz', 'r:gz'),
    'tar.bz2': ('tar.bz2', 'w:bz2', 'r:bz2'),
    'tar.xz': ('tar.xz', 'w:xz', 'r:xz'),
    'none': ('tar', 'w', 'r:'),
}

DEFAULT_FORMAT = 'tar.gz'


def create_archive(
    source_paths: List[str],
    output_path: str,
    compression_format: str = DEFAULT_FORMAT
) -> str:
    """
    Create a compressed archive from source paths.

    Each source is stored under its basename, so packing a single directory
    yields an archive with exactly one top-level entry.

    Args:
        source_paths: List of file/directory paths to include in archive
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use ('tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If a source is missing, holds a member that could not
            be extracted again, or the archive cannot be written
        ValueError: If compression_format is invalid
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    if compression_format not in FORMATS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMATS.keys())}"
        )

    extension, mode, _ = FORMATS[compression_format]
    archive_path = f"{output_path}.{extension}"

    try:
        with tarfile.open(archive_path, mode) as tar:
            for source_path in source_paths:
                source = Path(source_path)

                if not source.exists():
                    raise CompressionError(f"Path does not exist: {source_path}")

                tar.add(source, arcname=source.name, recursive=True, filter=_packing_filter)

        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}") from e


def extract_archive(archive_path: str, dest_dir: str) -> str:
    """
    Extract an archive into a destination directory.

    Members that would land outside dest_dir (absolute paths, '..' components,
    links pointing elsewhere, device files) are rejected before anything is
    written. Permission bits are restored; setuid, setgid and sticky bits
    are not.

    Args:
        archive_path: Path to the archive file
        dest_dir: Directory to extract into (created if missing)

    Returns:
        The destination directory

    Raises:
        CorruptArchiveError: If the archive is malformed or unsafe
    """
    if not os.path.isfile(archive_path):
        raise CorruptArchiveError(f"Archive not found: {archive_path}")

    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, 'r:*') as tar:
            members = tar.getmembers()
            for member in members:
                problem = _member_problem(member)
                if problem:
                    raise CorruptArchiveError(f"{problem}: {member.name}")

            if hasattr(tarfile, 'data_filter'):
                tar.extractall(dest, members=members, filter=_extraction_filter)
            else:
                tar.extractall(dest, members=members)
    except CorruptArchiveError:
        raise
    except (tarfile.TarError, EOFError, OSError, ValueError) as e:
        raise CorruptArchiveError(f"Failed to extract archive {os.path.basename(archive_path)}: {e}") from e

    return str(dest)


def _member_problem(member: tarfile.TarInfo) -> Optional[str]:
    """
    Describe why a member may not be extracted, or return None.

    Checks are lexical on the archive paths, so packing and extraction
    accept exactly the same members.
    """
    if member.isdev():
        return "Refusing to extract device file"

    if _escapes(member.name):
        return "Archive member escapes destination"

    if member.issym() or member.islnk():
        if posixpath.isabs(member.linkname):
            return "Archive link has absolute target"
        if member.issym():
            target = posixpath.join(posixpath.dirname(member.name), member.linkname)
        else:
            target = member.linkname
        if _escapes(target):
            return "Archive link escapes destination"

    return None


def _escapes(name: str) -> bool:
    if posixpath.isabs(name):
        return True
    normalized = posixpath.normpath(name)
    return normalized == '..' or normalized.startswith('../')


def _packing_filter(member: tarfile.TarInfo) -> tarfile.TarInfo:
    problem = _member_problem(member)
    if problem:
        raise CompressionError(f"Cannot archive {member.name}: {problem.lower()}")
    return member


def _extraction_filter(member: tarfile.TarInfo, dest_path: str) -> Optional[tarfile.TarInfo]:
    """tarfile's 'data' filter, keeping group and other permission bits."""
    filtered = tarfile.data_filter(member, dest_path)
    if filtered is not None and (member.isreg() or member.isdir()):
        filtered = filtered.replace(mode=member.mode & 0o777, deep=False)
    return filtered


def list_archive_members(archive_path: str) -> List[str]:
    """
    List member names of an archive.

    Raises:
        CorruptArchiveError: If the archive cannot be read
    """
    try:
        with tarfile.open(archive_path, 'r:*') as tar:
            return tar.getnames()
    except (tarfile.TarError, EOFError, OSError) as e:
        raise CorruptArchiveError(f"Failed to read archive: {e}") from e


def get_extension(compression_format: str = DEFAULT_FORMAT) -> str:
    """Return the file extension for a compression format."""
    if compression_format not in FORMATS:
        raise ValueError(f"Invalid compression format: {compression_format}")
    return FORMATS[compression_format][0]


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for extension in ('.tar.gz', '.tar.bz2', '.tar.xz', '.tar'):
        if filename.endswith(extension):
            return filename[:-len(extension)]
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
