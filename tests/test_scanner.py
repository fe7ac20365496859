"""Tests for directory tree scanning."""

import os
import threading

import pytest
import hypothesis.strategies as st
from hypothesis import given, HealthCheck, settings

from conftest import read_tree, write_tree
from snapjournal.archive import unpack, write_container
from snapjournal.errors import OperationCancelled, SnapshotIOError
from snapjournal.patterns import PatternFilter
from snapjournal.scanner import FileTreeScanner, scan


class TestFileTreeScanner:

    def test_collects_files_with_relative_posix_paths(self, tmp_path):
        write_tree(tmp_path, {"a.txt": "a", "src/b.py": "b", "src/pkg/c.py": "c"})
        result = scan(tmp_path)
        assert [e.path for e in result.entries] == ["a.txt", "src/b.py", "src/pkg/c.py"]
        assert result.file_count == 3
        assert result.total_bytes == 3

    def test_default_excludes_applied(self, tmp_path):
        write_tree(tmp_path, {
            "a.txt": "a",
            "b.log": "b",
            "node_modules/x/index.js": "x",
            ".git/HEAD": "ref",
        })
        result = scan(tmp_path)
        assert [e.path for e in result.entries] == ["a.txt"]

    def test_include_patterns_restrict_files(self, tmp_path):
        write_tree(tmp_path, {"src/a.py": "a", "src/b.js": "b", "c.py": "c"})
        result = FileTreeScanner(PatternFilter(include_patterns=["*.py"])).scan(tmp_path)
        assert [e.path for e in result.entries] == ["c.py", "src/a.py"]

    def test_skip_dirs_are_never_entered(self, tmp_path):
        write_tree(tmp_path, {"a.txt": "a", ".snapshots/snapshot_1.zip": "zip"})
        result = FileTreeScanner(skip_dirs=[tmp_path / ".snapshots"]).scan(tmp_path)
        assert [e.path for e in result.entries] == ["a.txt"]

    def test_symlinks_are_not_followed(self, tmp_path):
        write_tree(tmp_path, {"real/a.txt": "a"})
        os.symlink(tmp_path / "real", tmp_path / "link")
        os.symlink(tmp_path / "real/a.txt", tmp_path / "alias.txt")
        result = scan(tmp_path)
        assert [e.path for e in result.entries] == ["real/a.txt"]

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read any file")
    def test_unreadable_file_becomes_warning(self, tmp_path):
        write_tree(tmp_path, {"ok.txt": "ok", "secret.txt": "s"})
        (tmp_path / "secret.txt").chmod(0)
        try:
            result = scan(tmp_path)
        finally:
            (tmp_path / "secret.txt").chmod(0o644)
        assert [e.path for e in result.entries] == ["ok.txt"]
        assert len(result.warnings) == 1
        assert "secret.txt" in result.warnings[0]

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(SnapshotIOError):
            scan(tmp_path / "missing")

    def test_cancel_raises(self, tmp_path):
        write_tree(tmp_path, {"a.txt": "a"})
        event = threading.Event()
        event.set()
        with pytest.raises(OperationCancelled):
            FileTreeScanner(cancel_event=event).scan(tmp_path)

    def test_progress_callback_sees_each_file(self, tmp_path):
        write_tree(tmp_path, {"a.txt": "aa", "b.txt": "bbb"})
        seen = []
        FileTreeScanner(progress_callback=seen.append).scan(tmp_path)
        assert seen[-1].phase == "scan"
        assert seen[-1].files_done == 2
        assert seen[-1].bytes_done == 5


# Mix of ordinary names and names the default and user patterns act on
tree_segment = st.one_of(
    st.sampled_from([
        "src", "lib", "node_modules", ".git", "build", "dist",
        "main.py", "notes.txt", "debug.log", "app.log", "data.bin",
    ]),
    st.text(alphabet="abcxyz_.", min_size=1, max_size=8).filter(
        lambda s: s not in (".", "..")
    ),
)


@st.composite
def file_trees(draw):
    """Mappings of relative file path to content, no path a parent of another."""
    paths = draw(st.lists(
        st.lists(tree_segment, min_size=1, max_size=3).map("/".join),
        max_size=10,
        unique=True,
    ))
    paths = [p for p in paths if not any(o.startswith(p + "/") for o in paths)]
    return {p: draw(st.binary(max_size=64)) for p in paths}


class TestCaptureRoundTrip:

    @given(
        tree=file_trees(),
        excludes=st.lists(st.sampled_from(["*.txt", "lib", "src/*.py", "**/x*", "a?"]), max_size=2),
        includes=st.lists(st.sampled_from(["*.py", "**/*.bin", "src/**", "*.log", "c*"]), max_size=2),
    )
    @settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_restored_tree_is_exactly_the_included_files(
        self, tmp_path_factory, tree, excludes, includes
    ):
        source = tmp_path_factory.mktemp("source")
        target = tmp_path_factory.mktemp("target")
        write_tree(source, tree)
        pattern_filter = PatternFilter(exclude_patterns=excludes, include_patterns=includes)

        result = FileTreeScanner(pattern_filter).scan(source)
        container = source.parent / f"{source.name}.zip"
        write_container(container, result.entries)
        unpack(container, target)

        expected = {p: data for p, data in tree.items() if pattern_filter.included(p)}
        assert read_tree(target) == expected
        assert result.warnings == []
