"""Shared test fixtures."""

from pathlib import Path

import pytest

from fakes import write_note
from para.config import load_config
from para.edit import EditSession
from para.sync import Subscriber, SyncCoordinator

NOTES = {
    "a/b.md": "# Hello\nworld",
    "Zeta.md": "# Zeta\nthe last letter of the alphabet",
    "alpha.md": "plain note about gardens and [[Zeta]]\n",
    "projects/README.md": "# Projects\nactive work lives here",
    "projects/garden plan.md": "# Garden plan\nplant tomatoes in spring",
    ".hidden/secret.md": "# Secret",
    "_drafts/draft.md": "# Draft",
    "a/b.md.swp": "swap",
}


@pytest.fixture
def notes_dir(tmp_path: Path) -> Path:
    root = tmp_path / "notes"
    root.mkdir()
    for rel, text in NOTES.items():
        write_note(root, rel, text)
    write_note(root, "images/diagram.png", b"\x89PNG\r\n\x1a\n\x00\x00")
    return root


@pytest.fixture
def config(notes_dir: Path):
    return load_config(notes_dir)


@pytest.fixture
def coordinator(config) -> SyncCoordinator:
    coord = SyncCoordinator(config)
    coord.rebuild()
    return coord


@pytest.fixture
def editor(coordinator: SyncCoordinator) -> EditSession:
    return EditSession(coordinator)


@pytest.fixture
def subscriber(coordinator: SyncCoordinator) -> Subscriber:
    return coordinator.subscribe()
