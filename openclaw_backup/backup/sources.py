"""
Snapshot of the live data into scratch storage.

The configuration tree and the workspace tree are copied side by side into a
snapshot directory, which is then packed as one archive:

    {name}/openclaw-config/...
    {name}/workspace/...

Source trees are only read. Symlinks that stay inside their tree are kept as
links; links pointing outside it are replaced by a copy of their target (or
left out when the target is missing), with a warning for each, so every
snapshot can be extracted again.
"""

import logging
import os
import shutil
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = 'openclaw-config'
WORKSPACE_DIRNAME = 'workspace'


class SourceError(Exception):
    """Raised when source acquisition fails."""
    pass


class LocalSource:
    """
    Handler for local filesystem sources.

    Copies named directories into a snapshot directory for archiving.
    """

    def __init__(self, paths: Dict[str, str], exclude_patterns: Optional[List[str]] = None,
                 skip_paths: Optional[List[str]] = None):
        """
        Initialize local source handler.

        Args:
            paths: Mapping of snapshot entry name -> source directory
            exclude_patterns: Glob patterns to exclude (e.g. *.tmp, node_modules)
            skip_paths: Absolute paths left out of the copy (e.g. a nested workspace
                captured under its own entry)
        """
        self.paths = paths
        self.exclude_patterns = exclude_patterns or []
        self.skip_paths = [Path(p).expanduser().resolve() for p in (skip_paths or [])]
        self.warnings = []

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path should be excluded.

        Args:
            path: Path to check

        Returns:
            True if path is skipped or matches any exclude pattern
        """
        if self.skip_paths and path.resolve() in self.skip_paths:
            return True

        path_str = str(path)
        path_name = path.name

        for pattern in self.exclude_patterns:
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def acquire(self, snapshot_dir: str) -> List[str]:
        """
        Copy source trees into the snapshot directory.

        Sources that do not exist are skipped; the caller decides whether an
        empty snapshot is acceptable.

        Args:
            snapshot_dir: Directory to copy into

        Returns:
            List of paths in snapshot_dir that were copied

        Raises:
            SourceError: If a source cannot be read
        """
        acquired_paths = []

        for dest_name, path in self.paths.items():
            source_path = Path(path).expanduser()

            if not source_path.exists():
                continue

            dest_path = Path(snapshot_dir) / dest_name

            try:
                if source_path.is_dir():
                    self._copy_tree(source_path, dest_path)
                elif source_path.is_file():
                    shutil.copy2(source_path, dest_path)
                else:
                    raise SourceError(f"Unsupported path type: {path}")
                acquired_paths.append(str(dest_path))
            except PermissionError as e:
                raise SourceError(f"Permission denied accessing {path}: {e}") from e
            except (OSError, shutil.Error) as e:
                raise SourceError(f"Failed to copy {path}: {e}") from e

        return acquired_paths

    def _copy_tree(self, source_path: Path, dest_path: Path):
        """Copy a directory tree, resolving links that point outside of it."""
        source_root = os.path.realpath(source_path)
        external_links = []

        def ignore_patterns(directory, files):
            ignored = []
            for name in files:
                path = Path(directory) / name
                if self._should_exclude(path):
                    ignored.append(name)
                elif path.is_symlink() and _link_escapes(path, source_root):
                    external_links.append(path)
                    ignored.append(name)
            return ignored

        shutil.copytree(source_path, dest_path, symlinks=True, ignore=ignore_patterns)

        for link in external_links:
            target = os.path.realpath(link)
            copy_path = dest_path / link.relative_to(source_path)
            if os.path.isdir(target):
                shutil.copytree(target, copy_path, symlinks=False, ignore_dangling_symlinks=True)
            elif os.path.isfile(target):
                shutil.copy2(target, copy_path)
            else:
                self._warning(f"Skipped link {link} -> {os.readlink(link)}: target is missing")
                continue
            self._warning(f"Stored a copy of {target} in place of link {link}")

    def _warning(self, message: str):
        self.warnings.append(message)
        logger.warning(message)


def _link_escapes(link: Path, source_root: str) -> bool:
    """True when a symlink is absolute or leads outside source_root."""
    link_target = os.readlink(link)
    if os.path.isabs(link_target):
        return True
    lexical = os.path.normpath(os.path.join(os.path.realpath(link.parent), link_target))
    resolved = os.path.realpath(link)
    return not (_is_within(lexical, source_root) and _is_within(resolved, source_root))


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def create_live_data_source(live_paths, exclude_patterns: Optional[List[str]] = None) -> LocalSource:
    """
    Build the source for a backup of the live data.

    A workspace nested inside the config tree is captured only once, under
    its own entry.

    Args:
        live_paths: LiveDataPaths of the installation
        exclude_patterns: Extra glob patterns to exclude

    Returns:
        LocalSource over the config and workspace trees
    """
    skip_paths = [live_paths.workspace_dir] if live_paths.workspace_is_nested else []
    return LocalSource(
        paths={
            CONFIG_DIRNAME: live_paths.openclaw_dir,
            WORKSPACE_DIRNAME: live_paths.workspace_dir,
        },
        exclude_patterns=exclude_patterns,
        skip_paths=skip_paths,
    )
