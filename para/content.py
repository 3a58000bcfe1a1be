import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

import markdown

from .errors import EncodingError, InvalidPathError, IoError, NoteNotFoundError
from .pathindex import PathIndex, normalize_note_path

_WORD_RE = re.compile(r"\w+")
_H1_RE = re.compile(r"^#[ \t]+(.+?)(?:[ \t]+#+)?[ \t\r]*$", re.MULTILINE)
_IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")
_EXTENSIONS = ["fenced_code", "tables", "toc", "sane_lists", "nl2br", "footnotes", "codehilite"]


class Token(NamedTuple):
    text: str
    position: int
    offset: int


@dataclass(frozen=True)
class Document:
    path: str
    title: str
    raw_text: str
    html: str
    tokens: tuple[Token, ...]
    mtime: float = 0.0
    size: int = 0
    digest: str = ""

    @property
    def terms(self) -> frozenset[str]:
        return frozenset(t.text for t in self.tokens)


def tokenize(text: str) -> list[Token]:
    return [Token(m.group().lower(), i, m.start()) for i, m in enumerate(_WORD_RE.finditer(text))]


def derive_title(raw_text: str, path: str) -> str:
    m = _H1_RE.search(raw_text)
    if m:
        return m.group(1).strip()
    return Path(path).stem


def process_wikilinks(text: str) -> str:

    def replace_embed(m):
        target = m.group(1)
        href = target.replace(" ", "%20")
        ext = Path(target).suffix.lower()
        if ext in _IMAGE_EXTS:
            return f"![{target}](/raw/{href})"
        elif ext == ".pdf":
            return f"[{target}](/raw/{href})"
        return f"[{target}](#note:{href})"

    def replace_link(m):
        target = m.group(1).strip()
        display = m.group(2) if m.group(2) else target
        ext = Path(target).suffix.lower()
        if not ext:
            target = target + ".md"
        href = target.replace(" ", "%20")
        if ext == ".pdf" or ext in _IMAGE_EXTS:
            return f"[{display}](/raw/{href})"
        return f"[{display}](#note:{href})"

    text = re.sub(r'!\[\[([^\]|]+?)(?:\|[^\]]*?)?\]\]', replace_embed, text)
    text = re.sub(r'\[\[([^\]|]+?)(?:\|([^\]]*?))?\]\]', replace_link, text)
    return text


def auto_link_urls(text: str) -> str:
    return re.sub(
        r'(?<!\]\()(?<!\()(?<!<)(https?://[^\s<>\)\]]+)',
        lambda m: f'[{m.group(1)}]({m.group(1)})',
        text,
    )


def render_markdown(text: str) -> str:
    text = process_wikilinks(text)
    text = auto_link_urls(text)
    html = markdown.markdown(text, extensions=_EXTENSIONS)
    html = re.sub(
        r'<a href="(https?://[^"]+)"',
        r'<a href="\1" target="_blank" rel="noopener noreferrer"',
        html,
    )
    html = re.sub(
        r'<a href="(/raw/[^"]+)"(?![^>]*target=)',
        r'<a href="\1" target="_blank" rel="noopener noreferrer"',
        html,
    )
    return html


def empty_document(path: str, mtime: float = 0.0, size: int = 0, digest: str = "") -> Document:
    """Document standing in for a file that is not valid text."""
    return Document(path=path, title=Path(path).stem, raw_text="", html="", tokens=(),
                    mtime=mtime, size=size, digest=digest)


def decode_text(data: bytes, path: str = "") -> str:
    if b"\x00" in data:
        raise EncodingError(f"{path or 'File'} looks like binary data", path)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncodingError(f"{path or 'File'} is not valid UTF-8: {e.reason}", path) from e


class ContentStore:
    """Cache of parsed Documents keyed by NotePath.

    The store does not lock; SyncCoordinator serializes access to it.
    """

    def __init__(self, root, index: PathIndex):
        self.root = Path(root)
        self.index = index
        self._real_root = self.root.resolve()
        self._cache: dict[str, Document] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def resolve(self, path: str) -> Path:
        rel = normalize_note_path(path)
        candidate = (self._real_root / rel).resolve()
        try:
            candidate.relative_to(self._real_root)
        except ValueError:
            raise InvalidPathError(f"Path escapes the notes root: {path}", rel) from None
        return candidate

    def read_raw(self, path: str) -> bytes:
        rel = normalize_note_path(path)
        node = self.index.lookup(rel)
        if node is None or node.is_dir:
            raise NoteNotFoundError(f"No such note: {rel}", rel)
        try:
            return self.resolve(rel).read_bytes()
        except OSError as e:
            raise IoError(f"Cannot read {rel}: {e.strerror or e}", rel) from e

    def parse(self, path: str, data: bytes, mtime: float = 0.0) -> Document:
        raw_text = decode_text(data, path)
        return Document(
            path=path,
            title=derive_title(raw_text, path),
            raw_text=raw_text,
            html=render_markdown(raw_text),
            tokens=tuple(tokenize(raw_text)),
            mtime=mtime,
            size=len(data),
            digest=hashlib.md5(data).hexdigest(),
        )

    def get_or_load(self, path: str) -> Document:
        rel = normalize_note_path(path)
        doc = self._cache.get(rel)
        if doc is not None:
            return doc
        data = self.read_raw(rel)
        node = self.index.lookup(rel)
        doc = self.parse(rel, data, mtime=node.mtime if node else 0.0)
        self._cache[rel] = doc
        return doc

    def put(self, document: Document) -> None:
        self._cache[document.path] = document

    def invalidate(self, path: str) -> None:
        self._cache.pop(path, None)

    def clear(self) -> None:
        self._cache.clear()
