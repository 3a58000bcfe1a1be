"""Tests for NotePath normalization and the directory tree."""

import os
from pathlib import Path

import pytest

from para.errors import InvalidPathError, IoError
from para.pathindex import NodeKind, PathIndex, normalize_note_path


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("a/b.md", "a/b.md"),
        ("a//b.md", "a/b.md"),
        ("./a/./b.md", "a/b.md"),
        ("a\\b.md", "a/b.md"),
        ("a/b/", "a/b"),
        ("", ""),
        ("Notes/Case.MD", "Notes/Case.MD"),
    ],
)
def test_normalize_note_path(raw: str, expected: str) -> None:
    assert normalize_note_path(raw) == expected


@pytest.mark.parametrize("raw", ["../outside.md", "a/../../b.md", "/etc/passwd", "C:/notes/a.md", "a/\x00.md"])
def test_normalize_rejects_escapes(raw: str) -> None:
    with pytest.raises(InvalidPathError):
        normalize_note_path(raw)


def _index_with(*entries: tuple[str, NodeKind]) -> PathIndex:
    index = PathIndex()
    for path, kind in entries:
        index.upsert(path, kind)
    return index


def test_children_directories_first_then_by_name() -> None:
    index = _index_with(
        ("notes/zebra.md", NodeKind.FILE),
        ("notes/Apple.md", NodeKind.FILE),
        ("notes/banana.md", NodeKind.FILE),
        ("notes/Zoo", NodeKind.DIRECTORY),
        ("notes/archive", NodeKind.DIRECTORY),
        ("notes/apple.md", NodeKind.FILE),
    )
    names = [n.name for n in index.children("notes")]
    assert names == ["archive", "Zoo", "Apple.md", "apple.md", "banana.md", "zebra.md"]


def test_children_order_does_not_depend_on_insertion_order() -> None:
    paths = [("x/b.md", NodeKind.FILE), ("x/A", NodeKind.DIRECTORY), ("x/a.md", NodeKind.FILE), ("x/c", NodeKind.DIRECTORY)]
    forward = [n.path for n in _index_with(*paths).children("x")]
    backward = [n.path for n in _index_with(*reversed(paths)).children("x")]
    assert forward == backward == ["x/A", "x/c", "x/a.md", "x/b.md"]


def test_upsert_creates_parents() -> None:
    index = _index_with(("a/b/c.md", NodeKind.FILE))
    assert index.lookup("a").kind is NodeKind.DIRECTORY
    assert [n.path for n in index.children("a")] == ["a/b"]
    assert [n.path for n in index.children("")] == ["a"]


def test_upsert_updates_metadata_in_place() -> None:
    index = PathIndex()
    index.upsert("a.md", NodeKind.FILE, mtime=1.0, size=3)
    index.upsert("a.md", NodeKind.FILE, mtime=2.0, size=5)
    node = index.lookup("a.md")
    assert (node.mtime, node.size) == (2.0, 5)
    assert [n.path for n in index.children("")] == ["a.md"]


def test_upsert_kind_change_replaces_node() -> None:
    index = _index_with(("a/inner.md", NodeKind.FILE))
    index.upsert("a", NodeKind.FILE, size=1)
    assert index.lookup("a").kind is NodeKind.FILE
    assert index.lookup("a/inner.md") is None


def test_remove_directory_removes_descendants() -> None:
    index = _index_with(("a/b/c.md", NodeKind.FILE), ("a/d.md", NodeKind.FILE), ("e.md", NodeKind.FILE))
    removed = index.remove("a")
    assert {n.path for n in removed} == {"a", "a/b", "a/b/c.md", "a/d.md"}
    assert index.lookup("a/b/c.md") is None
    assert [n.path for n in index.children("")] == ["e.md"]
    assert list(index.files()) == ["e.md"]


def test_remove_missing_path_is_noop() -> None:
    assert PathIndex().remove("nope.md") == []


def test_lookup_missing_returns_none() -> None:
    assert PathIndex().lookup("missing.md") is None


def test_children_of_file_is_empty() -> None:
    index = _index_with(("a.md", NodeKind.FILE))
    assert index.children("a.md") == []


def test_rebuild_scans_tree(notes_dir: Path, config) -> None:
    index = PathIndex()
    index.rebuild(notes_dir, ignore=config.is_ignored, include=config.is_markdown)
    assert [n.name for n in index.children("")] == ["a", "images", "projects", "alpha.md", "Zeta.md"]
    assert index.lookup("a/b.md").size == len(b"# Hello\nworld")
    assert index.lookup(".hidden/secret.md") is None
    assert index.lookup("_drafts") is None
    assert index.lookup("images/diagram.png") is None


def test_rebuild_missing_root_raises(tmp_path: Path) -> None:
    with pytest.raises(IoError):
        PathIndex().rebuild(tmp_path / "missing")


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="needs symlinks")
def test_rebuild_survives_symlink_loop(tmp_path: Path) -> None:
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "note.md").write_text("x")
    os.symlink(tmp_path / "a", tmp_path / "a" / "loop")
    index = PathIndex()
    index.rebuild(tmp_path)
    assert index.lookup("a/note.md") is not None
    assert index.lookup("a/loop") is None


def test_rebuild_depth_guard(tmp_path: Path) -> None:
    deep = tmp_path
    for i in range(5):
        deep = deep / f"d{i}"
    deep.mkdir(parents=True)
    with pytest.raises(IoError):
        PathIndex().rebuild(tmp_path, max_depth=3)
