"""
Unit tests for source handlers (openclaw_backup/backup/sources.py).

Tests LocalSource and the live-data snapshot layout.
"""

import os
from pathlib import Path

import pytest

from openclaw_backup.backup.sources import (
    CONFIG_DIRNAME,
    WORKSPACE_DIRNAME,
    LocalSource,
    SourceError,
    create_live_data_source,
)
from openclaw_backup.config import LiveDataPaths


class TestLocalSource:
    """Test LocalSource for local file system operations."""

    def test_acquire_directory_under_entry_name(self, tmp_path):
        source_dir = tmp_path / "my_source"
        source_dir.mkdir()
        (source_dir / "file1.txt").write_text("content1")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        acquired = LocalSource(paths={'copy': str(source_dir)}).acquire(str(dest_dir))

        assert acquired == [str(dest_dir / 'copy')]
        assert (dest_dir / 'copy' / 'file1.txt').read_text() == "content1"

    def test_missing_source_is_skipped(self, tmp_path):
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        acquired = LocalSource(paths={'gone': str(tmp_path / "missing")}).acquire(str(dest_dir))

        assert acquired == []

    def test_exclude_patterns(self, tmp_path):
        source_dir = tmp_path / "src"
        (source_dir / "node_modules" / "pkg").mkdir(parents=True)
        (source_dir / "keep.txt").write_text("keep")
        (source_dir / "scratch.tmp").write_text("drop")
        (source_dir / "node_modules" / "pkg" / "index.js").write_text("drop")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        LocalSource(paths={'s': str(source_dir)}, exclude_patterns=['*.tmp', 'node_modules']).acquire(str(dest_dir))

        assert (dest_dir / 's' / 'keep.txt').exists()
        assert not (dest_dir / 's' / 'scratch.tmp').exists()
        assert not (dest_dir / 's' / 'node_modules').exists()

    def test_symlinks_copied_as_links(self, tmp_path):
        source_dir = tmp_path / "src"
        source_dir.mkdir()
        (source_dir / "target.txt").write_text("t")
        os.symlink("target.txt", source_dir / "link.txt")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        LocalSource(paths={'s': str(source_dir)}).acquire(str(dest_dir))

        assert os.path.islink(dest_dir / 's' / 'link.txt')
        assert os.readlink(dest_dir / 's' / 'link.txt') == "target.txt"

    def test_absolute_link_to_outside_file_is_copied(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "shared.env").write_text("TOKEN=abc\n")
        source_dir = tmp_path / "src"
        source_dir.mkdir()
        os.symlink(str(outside / "shared.env"), source_dir / "shared.env")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        source = LocalSource(paths={'s': str(source_dir)})
        source.acquire(str(dest_dir))

        copied = dest_dir / 's' / 'shared.env'
        assert not os.path.islink(copied)
        assert copied.read_text() == "TOKEN=abc\n"
        assert len(source.warnings) == 1
        assert "shared.env" in source.warnings[0]

    def test_relative_link_to_outside_directory_is_copied(self, tmp_path):
        outside = tmp_path / "outside" / "skills"
        outside.mkdir(parents=True)
        (outside / "skill.md").write_text("# Skill\n")
        source_dir = tmp_path / "src"
        source_dir.mkdir()
        os.symlink("../outside/skills", source_dir / "skills")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        source = LocalSource(paths={'s': str(source_dir)})
        source.acquire(str(dest_dir))

        copied = dest_dir / 's' / 'skills'
        assert not os.path.islink(copied)
        assert (copied / 'skill.md').read_text() == "# Skill\n"
        assert len(source.warnings) == 1

    def test_dangling_outside_link_is_skipped(self, tmp_path):
        source_dir = tmp_path / "src"
        source_dir.mkdir()
        (source_dir / "keep.txt").write_text("keep")
        os.symlink(str(tmp_path / "nowhere"), source_dir / "gone")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        source = LocalSource(paths={'s': str(source_dir)})
        source.acquire(str(dest_dir))

        assert (dest_dir / 's' / 'keep.txt').exists()
        assert not os.path.lexists(dest_dir / 's' / 'gone')
        assert len(source.warnings) == 1
        assert "target is missing" in source.warnings[0]

    def test_in_tree_link_has_no_warning(self, tmp_path):
        source_dir = tmp_path / "src"
        (source_dir / "agents").mkdir(parents=True)
        (source_dir / "agents" / "main.json").write_text("{}")
        os.symlink("agents/main.json", source_dir / "default.json")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        source = LocalSource(paths={'s': str(source_dir)})
        source.acquire(str(dest_dir))

        assert os.readlink(dest_dir / 's' / 'default.json') == "agents/main.json"
        assert source.warnings == []

    def test_copy_failure_raises_source_error(self, tmp_path):
        source_dir = tmp_path / "src"
        source_dir.mkdir()
        (source_dir / "f.txt").write_text("x")
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()
        (dest_dir / 's').mkdir()

        with pytest.raises(SourceError):
            LocalSource(paths={'s': str(source_dir)}).acquire(str(dest_dir))

    def test_sources_are_not_modified(self, live_data, tmp_path):
        before = sorted(str(p) for p in Path(live_data.openclaw_dir).rglob('*'))
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        create_live_data_source(live_data).acquire(str(dest_dir))

        assert sorted(str(p) for p in Path(live_data.openclaw_dir).rglob('*')) == before


class TestLiveDataSource:
    """Test the snapshot layout for an OpenClaw installation."""

    def test_nested_workspace_captured_once(self, live_data, tmp_path):
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        create_live_data_source(live_data).acquire(str(dest_dir))

        assert (dest_dir / CONFIG_DIRNAME / 'openclaw.json').exists()
        assert (dest_dir / CONFIG_DIRNAME / 'agents' / 'main' / 'settings.json').exists()
        assert not (dest_dir / CONFIG_DIRNAME / 'workspace').exists()
        assert (dest_dir / WORKSPACE_DIRNAME / 'notes.md').read_text() == '# Notes\n'

    def test_separate_workspace(self, tmp_path):
        config_dir = tmp_path / 'cfg'
        config_dir.mkdir()
        (config_dir / 'openclaw.json').write_text('{}')
        workspace = tmp_path / 'ws'
        workspace.mkdir()
        (workspace / 'a.txt').write_text('a')
        dest_dir = tmp_path / "dest"
        dest_dir.mkdir()

        paths = LiveDataPaths(openclaw_dir=str(config_dir), workspace_dir=str(workspace))
        acquired = create_live_data_source(paths).acquire(str(dest_dir))

        assert len(acquired) == 2
        assert (dest_dir / WORKSPACE_DIRNAME / 'a.txt').exists()
