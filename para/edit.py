import logging
import os
import stat
import tempfile
from pathlib import Path

from .content import Document
from .errors import EncodingError, InvalidPathError, IoError, ParaError
from .pathindex import normalize_note_path
from .sync import SyncCoordinator
from .watcher import ChangeEvent

logger = logging.getLogger(__name__)


class EditSession:
    """Writes edited note content to disk and folds it back into the index.

    The write goes to a hidden temp file next to the target and is moved over
    it with ``os.replace``, so readers of the file see the old or the new
    content and nothing in between. The index update then runs through
    ``SyncCoordinator.process`` before ``save`` returns; the fingerprint it
    records makes the watcher's own event for the same write a no-op.
    """

    def __init__(self, coordinator: SyncCoordinator):
        self.coordinator = coordinator
        self.config = coordinator.config
        self.root = Path(coordinator.root)

    def _target(self, path: str) -> tuple[str, Path]:
        rel = normalize_note_path(path)
        if not rel:
            raise InvalidPathError("A note path is required")
        if self.config.is_ignored(rel):
            raise InvalidPathError(f"Path is excluded from the notes index: {rel}", rel)
        if not self.config.is_markdown(rel):
            raise InvalidPathError(f"Only markdown notes can be edited: {rel}", rel)

        real_root = self.root.resolve()
        target = real_root / rel
        # Walk up to the deepest existing component and check where it really points.
        existing = target
        while not existing.exists() and existing != real_root:
            existing = existing.parent
        try:
            existing.resolve().relative_to(real_root)
        except ValueError:
            raise InvalidPathError(f"Path escapes the notes root: {rel}", rel) from None
        if existing == target:
            if target.is_dir():
                raise InvalidPathError(f"Path is a directory: {rel}", rel)
        elif not existing.is_dir():
            raise InvalidPathError(f"Parent of {rel} is not a directory", rel)
        return rel, target

    def save(self, path: str, content: str) -> Document:
        if not isinstance(content, str):
            raise InvalidPathError("Content must be a string")
        rel, target = self._target(path)
        try:
            data = content.encode("utf-8")
        except UnicodeEncodeError as e:
            raise EncodingError(f"Content is not valid text: {e.reason}", rel) from e

        with self.coordinator.mutation_lock:
            self._write(rel, target, data)
            logger.info("Saved %s (%d bytes)", rel, len(data))
            self.coordinator.process(ChangeEvent.modified(rel))
        return self.coordinator.document(rel)

    def _write(self, rel: str, target: Path, data: bytes) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        except OSError as e:
            raise IoError(f"Cannot write {rel}: {e.strerror or e}", rel) from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.chmod(tmp, stat.S_IMODE(target.stat().st_mode))
            except FileNotFoundError:
                os.chmod(tmp, 0o644)
            os.replace(tmp, target)
        except OSError as e:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise IoError(f"Cannot write {rel}: {e.strerror or e}", rel) from e

    def save_request(self, payload) -> tuple[dict, int]:
        """Handle a ``{"path", "content"}`` save request.

        Returns the response body and HTTP status: ``{"success": true}`` on
        success, otherwise ``{"success": false, "error": ...}``.
        """
        if not isinstance(payload, dict):
            return {"success": False, "error": "Expected a JSON object"}, 400
        path = payload.get("path")
        content = payload.get("content")
        if not isinstance(path, str) or not isinstance(content, str):
            return {"success": False, "error": "Both path and content must be strings"}, 400
        # URL-style paths are rooted at the notes directory.
        if path.startswith("/") and not path.startswith("//"):
            path = path[1:]
        try:
            doc = self.save(path, content)
        except (InvalidPathError, EncodingError) as e:
            logger.warning("Rejected save of %r: %s", path, e.message)
            return e.to_dict(), 400
        except ParaError as e:
            logger.error("Save of %r failed: %s", path, e.message)
            return e.to_dict(), 500
        return {"success": True, "path": doc.path}, 200
