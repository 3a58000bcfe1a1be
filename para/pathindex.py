import bisect
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from .errors import InvalidPathError, IoError

logger = logging.getLogger(__name__)

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


class NodeKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass
class TreeNode:
    path: str
    kind: NodeKind
    children: list[str] = field(default_factory=list)
    mtime: float = 0.0
    size: int | None = None

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def is_dir(self) -> bool:
        return self.kind is NodeKind.DIRECTORY


def normalize_note_path(raw: str) -> str:
    """Turn a user or OS supplied path into a NotePath.

    Backslashes count as separators, ``.`` and empty segments collapse.
    Absolute paths and ``..`` segments are rejected outright rather than
    resolved, so a NotePath can never point outside the notes root.
    """
    if not isinstance(raw, str):
        raise InvalidPathError("Path must be a string")
    text = raw.replace("\\", "/")
    if text.startswith("/") or _DRIVE_RE.match(text):
        raise InvalidPathError(f"Absolute paths are not allowed: {raw}", raw)
    parts = []
    for seg in text.split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            raise InvalidPathError(f"Path escapes the notes root: {raw}", raw)
        if "\x00" in seg:
            raise InvalidPathError("Path contains a NUL byte", raw)
        parts.append(seg)
    return "/".join(parts)


def parent_of(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _sort_key(node: TreeNode):
    return (not node.is_dir, node.name.lower(), node.name)


class PathIndex:
    """Directory tree of the notes root, keyed by NotePath.

    The root directory is the node with the empty path. Children are kept in
    display order: directories first, then by name.
    """

    def __init__(self):
        self._nodes: dict[str, TreeNode] = {"": TreeNode("", NodeKind.DIRECTORY)}

    def __len__(self) -> int:
        return len(self._nodes) - 1

    def __contains__(self, path: str) -> bool:
        return path in self._nodes

    def rebuild(
        self,
        root,
        ignore: Callable[[str], bool] | None = None,
        include: Callable[[str], bool] | None = None,
        max_depth: int = 32,
    ) -> TreeNode:
        root = Path(root)
        try:
            st = root.stat()
        except OSError as e:
            raise IoError(f"Cannot read notes root {root}: {e}") from e
        nodes = {"": TreeNode("", NodeKind.DIRECTORY, mtime=st.st_mtime)}
        visited = {(st.st_dev, st.st_ino)}
        real_root = root.resolve()

        stack = [(root, "", 0)]
        while stack:
            current, rel_dir, depth = stack.pop()
            if depth > max_depth:
                raise IoError(f"Directory nesting deeper than {max_depth} at {rel_dir}", rel_dir)
            try:
                entries = list(os.scandir(current))
            except OSError as e:
                if not rel_dir:
                    raise IoError(f"Cannot read notes root {root}: {e}") from e
                logger.warning("Skipping unreadable directory %s: %s", rel_dir, e)
                continue
            parent = nodes[rel_dir]
            for entry in entries:
                rel = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
                if ignore is not None and ignore(rel):
                    continue
                try:
                    if entry.is_symlink():
                        Path(entry.path).resolve().relative_to(real_root)
                    is_dir = entry.is_dir()
                    est = entry.stat()
                except ValueError:
                    logger.warning("Skipping symlink leaving the notes root: %s", rel)
                    continue
                except OSError as e:
                    logger.warning("Skipping %s: %s", rel, e)
                    continue
                if is_dir:
                    key = (est.st_dev, est.st_ino)
                    if key in visited:
                        logger.warning("Skipping %s: directory already visited (symlink loop)", rel)
                        continue
                    visited.add(key)
                    nodes[rel] = TreeNode(rel, NodeKind.DIRECTORY, mtime=est.st_mtime)
                    stack.append((Path(entry.path), rel, depth + 1))
                elif include is None or include(entry.name):
                    nodes[rel] = TreeNode(rel, NodeKind.FILE, mtime=est.st_mtime, size=est.st_size)
                else:
                    continue
                parent.children.append(rel)

        for node in nodes.values():
            if node.is_dir:
                node.children.sort(key=lambda p: _sort_key(nodes[p]))
        self._nodes = nodes
        return nodes[""]

    def upsert(self, path: str, kind: NodeKind, mtime: float = 0.0, size: int | None = None) -> TreeNode:
        path = normalize_note_path(path)
        if not path:
            raise InvalidPathError("The notes root cannot be replaced")
        node = self._nodes.get(path)
        if node is not None and node.kind is not kind:
            self.remove(path)
            node = None
        if node is not None:
            node.mtime = mtime
            if kind is NodeKind.FILE:
                node.size = size
            return node

        parent_path = parent_of(path)
        parent = self._nodes.get(parent_path)
        if parent is None or not parent.is_dir:
            parent = self.upsert(parent_path, NodeKind.DIRECTORY, mtime=mtime)
        node = TreeNode(path, kind, mtime=mtime, size=size if kind is NodeKind.FILE else None)
        self._nodes[path] = node
        keys = [_sort_key(self._nodes[p]) for p in parent.children]
        parent.children.insert(bisect.bisect(keys, _sort_key(node)), path)
        return node

    def remove(self, path: str) -> list[TreeNode]:
        """Drop ``path`` and every descendant, returning the removed nodes."""
        path = normalize_note_path(path)
        node = self._nodes.get(path)
        if node is None:
            return []
        removed = []
        stack = [path]
        while stack:
            current = self._nodes.pop(stack.pop())
            removed.append(current)
            stack.extend(current.children)
        if not path:
            self._nodes[""] = TreeNode("", NodeKind.DIRECTORY, mtime=node.mtime)
            return removed[1:]
        parent = self._nodes.get(parent_of(path))
        if parent is not None:
            parent.children.remove(path)
        return removed

    def lookup(self, path: str) -> TreeNode | None:
        return self._nodes.get(normalize_note_path(path))

    def children(self, path: str = "") -> list[TreeNode]:
        node = self.lookup(path)
        if node is None or not node.is_dir:
            return []
        return [self._nodes[p] for p in node.children]

    def files(self) -> Iterator[str]:
        for path, node in list(self._nodes.items()):
            if not node.is_dir:
                yield path

    def replace(self, other: "PathIndex") -> None:
        """Adopt the tree of ``other`` in one assignment."""
        self._nodes = other._nodes
