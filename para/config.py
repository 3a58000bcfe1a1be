import json
import logging
import os
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_NAME = "para.config.json"

_DEFAULTS = {
    "host": "127.0.0.1",
    "port": 8989,
    "ignore_patterns": [".*", "_*", "*.swp", "*.swo", "*.swx", "*~", "4913", "*.tmp",
                        "__pycache__", "node_modules"],
    "allow_patterns": [],
    "markdown_extensions": [".md"],
    "debounce_ms": 300,
    "max_results": 50,
    "watch_retries": 3,
    "watch_retry_delay": 2.0,
    "max_depth": 32,
}


@dataclass(frozen=True)
class Config:
    notes_dir: Path
    host: str = _DEFAULTS["host"]
    port: int = _DEFAULTS["port"]
    ignore_patterns: tuple[str, ...] = tuple(_DEFAULTS["ignore_patterns"])
    allow_patterns: tuple[str, ...] = ()
    markdown_extensions: tuple[str, ...] = tuple(_DEFAULTS["markdown_extensions"])
    debounce_ms: int = _DEFAULTS["debounce_ms"]
    max_results: int = _DEFAULTS["max_results"]
    watch_retries: int = _DEFAULTS["watch_retries"]
    watch_retry_delay: float = _DEFAULTS["watch_retry_delay"]
    max_depth: int = _DEFAULTS["max_depth"]

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    def is_ignored(self, rel: str) -> bool:
        """True if any segment of ``rel`` hits a deny pattern not lifted by an allow pattern."""
        for part in rel.split("/"):
            if not part:
                continue
            if any(fnmatchcase(part, p) for p in self.ignore_patterns):
                if not any(fnmatchcase(part, p) for p in self.allow_patterns):
                    return True
        return False

    def is_markdown(self, name: str) -> bool:
        lowered = name.lower()
        return any(lowered.endswith(ext) for ext in self.markdown_extensions)


def _load_file(path: Path) -> dict:
    if not path.is_file():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            user = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Could not load %s: %s", path.name, e)
        return {}
    if not isinstance(user, dict):
        logger.warning("Ignoring %s: expected a JSON object", path.name)
        return {}
    return user


def load_config(notes_dir, overrides: dict | None = None) -> Config:
    """Build the runtime configuration.

    Defaults are merged with ``para.config.json`` from the notes root, then
    with ``overrides`` (CLI flags; ``None`` values are skipped). The notes
    root must exist and be readable, otherwise ``ConfigError`` is raised.
    """
    root = Path(notes_dir).expanduser()
    if not root.is_dir():
        raise ConfigError(f"Notes directory does not exist: {root}", str(root))
    if not os.access(root, os.R_OK | os.X_OK):
        raise ConfigError(f"Notes directory is not readable: {root}", str(root))

    cfg = dict(_DEFAULTS)
    user = _load_file(root / CONFIG_NAME)
    unknown = set(user) - set(_DEFAULTS)
    for key in sorted(unknown):
        logger.warning("Unknown config key %r in %s", key, CONFIG_NAME)
    cfg.update({k: v for k, v in user.items() if k in _DEFAULTS})
    if overrides:
        cfg.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = Config(
            notes_dir=root.resolve(),
            host=str(cfg["host"]),
            port=int(cfg["port"]),
            ignore_patterns=tuple(cfg["ignore_patterns"]),
            allow_patterns=tuple(cfg["allow_patterns"]),
            markdown_extensions=tuple(e.lower() for e in cfg["markdown_extensions"]),
            debounce_ms=int(cfg["debounce_ms"]),
            max_results=int(cfg["max_results"]),
            watch_retries=int(cfg["watch_retries"]),
            watch_retry_delay=float(cfg["watch_retry_delay"]),
            max_depth=int(cfg["max_depth"]),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    if config.debounce_ms < 0:
        raise ConfigError("debounce_ms must not be negative")
    if config.max_results < 1:
        raise ConfigError("max_results must be at least 1")
    if not config.markdown_extensions:
        raise ConfigError("markdown_extensions must not be empty")
    return config
