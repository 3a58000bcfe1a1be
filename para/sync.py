"""Shared notes state and the single path through which it changes.

SyncCoordinator owns the PathIndex, ContentStore and SearchEngine. Every
mutation, whether it comes from the watcher or from an edit, goes through
``process()``; events are applied one at a time under the mutation lock,
which keeps per-path arrival order. The short step that swaps a path's
index entry, document and postings runs under the state lock that readers
also take, so readers see either the old or the new unit, never a mix.
"""
import hashlib
import logging
import os
import queue
import secrets
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple

from .config import Config
from .content import ContentStore, Document, empty_document
from .errors import EncodingError, InvalidPathError, IoError, ParaError, WatchError
from .pathindex import NodeKind, PathIndex, TreeNode, normalize_note_path
from .search import SearchEngine, SearchHit
from .watcher import ChangeEvent, ChangeKind, Watcher

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 64


class Fingerprint(NamedTuple):
    size: int
    digest: str


class ChannelClosed(Exception):
    pass


@dataclass
class Subscriber:
    """One live-update channel, usually a browser tab."""

    id: str
    messages: queue.Queue = field(default_factory=lambda: queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE))
    closed: bool = False

    def send(self, message: dict) -> None:
        if self.closed:
            raise ChannelClosed(self.id)
        self.messages.put_nowait(message)

    def receive(self, timeout: float | None = None) -> dict | None:
        """Next message, or ``None`` on timeout or once the channel is closed."""
        if self.closed and self.messages.empty():
            return None
        try:
            return self.messages.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True
        try:
            self.messages.put_nowait(None)
        except queue.Full:
            pass


class SyncCoordinator:

    def __init__(self, config: Config, watcher: Watcher | None = None):
        self.config = config
        self.root = Path(config.notes_dir)
        self.index = PathIndex()
        self.store = ContentStore(self.root, self.index)
        self.engine = SearchEngine(self.store, max_results=config.max_results)
        self.watcher = watcher
        self.live_reload = False
        self._mutation_lock = threading.RLock()
        self._state_lock = threading.RLock()
        self._subs_lock = threading.Lock()
        self._subscribers: dict[str, Subscriber] = {}
        self._fingerprints: dict[str, Fingerprint] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def mutation_lock(self) -> threading.RLock:
        """Held while an event is applied; hold it to order a disk write with its update."""
        return self._mutation_lock

    # -- full scan -------------------------------------------------------

    def rebuild(self) -> int:
        """Rescan the notes root from scratch; returns the number of notes."""
        with self._mutation_lock:
            index = PathIndex()
            index.rebuild(self.root, ignore=self.config.is_ignored,
                          include=self.config.is_markdown, max_depth=self.config.max_depth)
            loaded = []
            for path in list(index.files()):
                result = self._read(path)
                if result is None:
                    index.remove(path)
                else:
                    loaded.append(result)
            with self._state_lock:
                self.index.replace(index)
                self.store.clear()
                self.engine.clear()
                self._fingerprints.clear()
                for doc, fp in loaded:
                    self._install(doc, fp)
            logger.info("Indexed %d notes under %s", len(loaded), self.root)
            return len(loaded)

    # -- event processing ------------------------------------------------

    def process(self, event: ChangeEvent) -> list[str]:
        """Apply one ChangeEvent and broadcast; returns the changed paths."""
        with self._mutation_lock:
            if event.kind is ChangeKind.RENAMED:
                changed = self._apply_remove(event.path) + self._apply_upsert(event.dest)
            elif event.kind is ChangeKind.REMOVED:
                changed = self._apply_remove(event.path)
            else:
                changed = self._apply_upsert(event.path)
        for path in changed:
            self.broadcast(path)
        return changed

    def _read(self, path: str) -> tuple[Document, Fingerprint] | None:
        full = self.root / path
        try:
            st = full.stat()
            data = full.read_bytes()
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            return None
        fp = Fingerprint(len(data), hashlib.md5(data).hexdigest())
        try:
            doc = self.store.parse(path, data, mtime=st.st_mtime)
        except EncodingError as e:
            logger.warning("Indexing %s without content: %s", path, e.message)
            doc = empty_document(path, mtime=st.st_mtime, size=len(data), digest=fp.digest)
        return doc, fp

    def _install(self, doc: Document, fp: Fingerprint) -> None:
        self.index.upsert(doc.path, NodeKind.FILE, mtime=doc.mtime, size=doc.size)
        self.store.invalidate(doc.path)
        self.store.put(doc)
        self.engine.reindex(doc.path, doc)
        self._fingerprints[doc.path] = fp

    def _apply_upsert(self, path: str) -> list[str]:
        path = normalize_note_path(path)
        if not path or self.config.is_ignored(path):
            return []
        if not self._contained(path):
            logger.warning("Skipping %s: resolves outside the notes root", path)
            return self._apply_remove(path)
        full = self.root / path
        if full.is_dir():
            return self._apply_directory(path)
        if not full.exists():
            return self._apply_remove(path)
        if not self.config.is_markdown(path):
            return []
        result = self._read(path)
        if result is None:
            return self._apply_remove(path)
        doc, fp = result
        node = self.index.lookup(path)
        if node is not None and not node.is_dir and self._fingerprints.get(path) == fp:
            logger.debug("Skipping %s: content unchanged", path)
            return []
        with self._state_lock:
            if node is not None and node.is_dir:
                self._drop(self.index.remove(path))
            self._install(doc, fp)
        return [path]

    def _contained(self, path: str) -> bool:
        try:
            self.store.resolve(path)
        except InvalidPathError:
            return False
        return True

    def _apply_directory(self, path: str) -> list[str]:
        changed = []
        with self._state_lock:
            node = self.index.lookup(path)
            if node is None or not node.is_dir:
                if node is not None:
                    self._drop(self.index.remove(path))
                try:
                    mtime = (self.root / path).stat().st_mtime
                except OSError:
                    return self._apply_remove(path)
                self.index.upsert(path, NodeKind.DIRECTORY, mtime=mtime)
                changed.append(path)
        for dirpath, dirnames, filenames in os.walk(self.root / path):
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            dirnames[:] = sorted(d for d in dirnames
                                 if not self.config.is_ignored(f"{rel_dir}/{d}") and self._contained(f"{rel_dir}/{d}"))
            for d in dirnames:
                rel = f"{rel_dir}/{d}"
                if rel not in self.index:
                    with self._state_lock:
                        self.index.upsert(rel, NodeKind.DIRECTORY)
            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}"
                if self.config.is_markdown(name) and not self.config.is_ignored(rel):
                    changed.extend(self._apply_upsert(rel))
        return changed

    def _apply_remove(self, path: str) -> list[str]:
        path = normalize_note_path(path)
        if not path:
            return []
        with self._state_lock:
            removed = self.index.remove(path)
            self._drop(removed)
        return [path] if removed else []

    def _drop(self, nodes: list[TreeNode]) -> None:
        for node in nodes:
            if not node.is_dir:
                self.store.invalidate(node.path)
                self.engine.remove(node.path)
                self._fingerprints.pop(node.path, None)

    # -- reads -----------------------------------------------------------

    def lookup(self, path: str) -> TreeNode | None:
        with self._state_lock:
            return self.index.lookup(path)

    def children(self, path: str = "") -> list[TreeNode]:
        with self._state_lock:
            return self.index.children(path)

    def tree(self, path: str = "") -> list[dict]:
        with self._state_lock:
            return self._subtree(path)

    def _subtree(self, path: str) -> list[dict]:
        items = []
        for node in self.index.children(path):
            if node.is_dir:
                items.append({"name": node.name, "path": node.path, "type": "folder",
                              "children": self._subtree(node.path)})
            else:
                items.append({"name": node.name, "path": node.path, "type": "file"})
        return items

    def document(self, path: str) -> Document:
        with self._state_lock:
            return self.store.get_or_load(path)

    def raw(self, path: str) -> bytes:
        return self.store.read_raw(path)

    def search(self, text: str, limit: int | None = None) -> list[SearchHit]:
        with self._state_lock:
            return self.engine.query(text, limit)

    # -- subscribers -----------------------------------------------------

    def subscribe(self) -> Subscriber:
        sub = Subscriber(secrets.token_urlsafe(12))
        with self._subs_lock:
            self._subscribers[sub.id] = sub
        logger.debug("Subscriber %s connected", sub.id)
        return sub

    def unsubscribe(self, sub_id: str) -> None:
        with self._subs_lock:
            sub = self._subscribers.pop(sub_id, None)
        if sub is not None:
            sub.close()
            logger.debug("Subscriber %s disconnected", sub_id)

    @property
    def subscriber_count(self) -> int:
        with self._subs_lock:
            return len(self._subscribers)

    def broadcast(self, path: str) -> int:
        """Send a reload notification to every subscriber; returns deliveries."""
        message = {"type": "reload", "path": path}
        with self._subs_lock:
            subs = list(self._subscribers.values())
        delivered = 0
        for sub in subs:
            try:
                sub.send(message)
                delivered += 1
            except (queue.Full, ChannelClosed):
                logger.info("Dropping subscriber %s: channel full or closed", sub.id)
                self.unsubscribe(sub.id)
        return delivered

    # -- live loop -------------------------------------------------------

    def run(self) -> None:
        """Consume watcher events until stopped or the watch is given up."""
        if self.watcher is None:
            return
        failures = 0
        try:
            while not self._stop.is_set():
                try:
                    self.watcher.start()
                    if failures:
                        logger.info("Filesystem watch re-established, rescanning")
                        self.rebuild()
                    self.live_reload = True
                    for event in self.watcher.events():
                        failures = 0
                        self._process_logged(event)
                    return
                except (WatchError, IoError) as e:
                    self.live_reload = False
                    failures += 1
                    if failures > self.config.watch_retries:
                        logger.error("Live reload disabled: %s", e.message)
                        return
                    logger.warning("%s; retrying in %.1fs (%d/%d)", e.message, self.config.watch_retry_delay,
                                   failures, self.config.watch_retries)
                    self._stop.wait(self.config.watch_retry_delay)
        finally:
            self.live_reload = False

    def _process_logged(self, event: ChangeEvent) -> None:
        try:
            self.process(event)
        except ParaError as e:
            logger.error("Failed to apply %s event for %s: %s", event.kind.value, event.path, e.message)
        except Exception:
            logger.exception("Failed to apply %s event for %s", event.kind.value, event.path)

    def start(self) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="para-sync", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        if self.watcher is not None:
            self.watcher.close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        with self._subs_lock:
            subs = list(self._subscribers)
        for sub_id in subs:
            self.unsubscribe(sub_id)
