"""Filesystem watcher producing debounced, semantic change events.

watchdog delivers raw notifications on its own thread; they are filtered,
turned into NotePaths and parked in a per-path deadline table. ``events()``
pulls from that table, so consumers iterate instead of registering
callbacks.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import Config
from .errors import WatchError

logger = logging.getLogger(__name__)

# Longest wait between liveness checks of the observer thread.
_POLL_SECONDS = 1.0
# Continuous activity on one path is flushed after this many windows.
_MAX_WINDOWS = 10


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    path: str
    dest: str | None = None

    @classmethod
    def created(cls, path: str) -> "ChangeEvent":
        return cls(ChangeKind.CREATED, path)

    @classmethod
    def modified(cls, path: str) -> "ChangeEvent":
        return cls(ChangeKind.MODIFIED, path)

    @classmethod
    def removed(cls, path: str) -> "ChangeEvent":
        return cls(ChangeKind.REMOVED, path)

    @classmethod
    def renamed(cls, src: str, dest: str) -> "ChangeEvent":
        return cls(ChangeKind.RENAMED, src, dest)


@dataclass
class _Pending:
    kind: ChangeKind
    deadline: float
    first_seen: float
    src: str | None = None


def _merge(old: ChangeKind, new: ChangeKind) -> ChangeKind:
    if new is ChangeKind.REMOVED:
        return ChangeKind.REMOVED
    if old is ChangeKind.REMOVED:
        return ChangeKind.MODIFIED
    if old in (ChangeKind.CREATED, ChangeKind.RENAMED):
        return old
    return new


class Debouncer:
    """Per-path deadline table.

    Every raw event pushes the path's deadline ``window`` seconds into the
    future; the merged event is released once the path has been quiet for a
    whole window, or after ``_MAX_WINDOWS`` windows of uninterrupted activity.
    Renames are keyed by their destination.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self._pending: dict[str, _Pending] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, kind: ChangeKind, path: str, dest: str | None = None, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        if kind is ChangeKind.RENAMED:
            src, path = path, dest
            previous = self._pending.pop(src, None)
            if previous is not None and previous.kind is ChangeKind.RENAMED:
                src = previous.src
            if src == path:
                kind, src = ChangeKind.MODIFIED, None
        else:
            src = None

        entry = self._pending.get(path)
        if entry is None:
            self._pending[path] = _Pending(kind, now + self.window, now, src)
            return
        replaced = kind is ChangeKind.REMOVED or (kind is ChangeKind.RENAMED and src != entry.src)
        if entry.kind is ChangeKind.RENAMED and replaced:
            # The earlier source is gone from disk either way.
            self._pending.setdefault(entry.src, _Pending(ChangeKind.REMOVED, now + self.window, now))
            entry.src = None
        if kind is ChangeKind.RENAMED:
            entry.kind, entry.src = kind, src
        else:
            entry.kind = _merge(entry.kind, kind)
        entry.deadline = min(now + self.window, entry.first_seen + self.window * _MAX_WINDOWS)

    def next_deadline(self) -> float | None:
        if not self._pending:
            return None
        return min(p.deadline for p in self._pending.values())

    def pop_due(self, now: float | None = None) -> list[ChangeEvent]:
        now = self.clock() if now is None else now
        due = sorted((p.deadline, path) for path, p in self._pending.items() if p.deadline <= now)
        events = []
        for _, path in due:
            entry = self._pending.pop(path)
            if entry.kind is ChangeKind.RENAMED:
                events.append(ChangeEvent.renamed(entry.src, path))
            else:
                events.append(ChangeEvent(entry.kind, path))
        return events


class _Handler(FileSystemEventHandler):

    def __init__(self, watcher: "Watcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self.watcher.feed(ChangeKind.CREATED, event.src_path, is_directory=event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.feed(ChangeKind.MODIFIED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self.watcher.feed(ChangeKind.REMOVED, event.src_path, is_directory=event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        self.watcher.feed(ChangeKind.RENAMED, event.src_path, event.dest_path, is_directory=event.is_directory)


class Watcher:

    def __init__(self, config: Config, observer_factory=Observer, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.root = Path(config.notes_dir).resolve()
        self._observer_factory = observer_factory
        self._observer = None
        self._debouncer = Debouncer(config.debounce_seconds, clock)
        self._cond = threading.Condition()
        self._closed = False

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._closed = False
        if not self.root.is_dir():
            raise WatchError(f"Notes root is gone: {self.root}", str(self.root))
        observer = self._observer_factory()
        try:
            observer.schedule(_Handler(self), str(self.root), recursive=True)
            observer.start()
        except OSError as e:
            raise WatchError(f"Cannot watch {self.root}: {e}", str(self.root)) from e
        self._observer = observer
        logger.info("Watching %s for note changes", self.root)

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=_POLL_SECONDS)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self.stop()

    def _relative(self, raw) -> str | None:
        try:
            rel = Path(os.fsdecode(raw)).relative_to(self.root).as_posix()
        except ValueError:
            return None
        if rel in ("", ".") or self.config.is_ignored(rel):
            return None
        return rel

    def _accepts(self, rel: str | None, is_directory: bool) -> bool:
        return rel is not None and (is_directory or self.config.is_markdown(rel))

    def feed(self, kind: ChangeKind, src, dest=None, is_directory: bool = False) -> None:
        """Record one raw notification; safe to call from any thread."""
        src_rel = self._relative(src)
        if kind is ChangeKind.RENAMED:
            dest_rel = self._relative(dest)
            src_ok = self._accepts(src_rel, is_directory)
            dest_ok = self._accepts(dest_rel, is_directory)
            if src_ok and dest_ok:
                self._push(ChangeKind.RENAMED, src_rel, dest_rel)
            elif dest_ok:
                self._push(ChangeKind.MODIFIED, dest_rel)
            elif src_ok:
                self._push(ChangeKind.REMOVED, src_rel)
        elif self._accepts(src_rel, is_directory):
            self._push(kind, src_rel)

    def _push(self, kind: ChangeKind, path: str, dest: str | None = None) -> None:
        logger.debug("Raw %s event for %s", kind.value, path if dest is None else f"{path} -> {dest}")
        with self._cond:
            self._debouncer.push(kind, path, dest)
            self._cond.notify_all()

    def drain(self, now: float | None = None) -> list[ChangeEvent]:
        """Return the events whose debounce window has passed, without blocking."""
        with self._cond:
            return self._debouncer.pop_due(now)

    def events(self) -> Iterator[ChangeEvent]:
        """Yield ChangeEvents for as long as the watcher is open.

        Starts the observer if it is not running, so iterating again after a
        ``WatchError`` re-establishes the watch.
        """
        self.start()
        while True:
            with self._cond:
                if self._closed:
                    return
                due = self._debouncer.pop_due()
                if not due:
                    deadline = self._debouncer.next_deadline()
                    timeout = _POLL_SECONDS
                    if deadline is not None:
                        timeout = max(0.0, min(timeout, deadline - self._debouncer.clock()))
                    self._cond.wait(timeout)
            if not due:
                if not self._closed and not self.running:
                    self._observer = None
                    raise WatchError(f"Lost the filesystem watch on {self.root}", str(self.root))
                continue
            yield from due
