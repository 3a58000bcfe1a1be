"""Tests for debouncing and raw event filtering."""

import shutil

import pytest

from fakes import FakeClock, FakeObserver
from para.errors import WatchError
from para.watcher import ChangeEvent, ChangeKind, Debouncer, Watcher

WINDOW = 0.3


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def debouncer(clock: FakeClock) -> Debouncer:
    return Debouncer(WINDOW, clock)


@pytest.fixture
def watcher(config, clock: FakeClock) -> Watcher:
    return Watcher(config, observer_factory=FakeObserver, clock=clock)


def test_burst_collapses_to_one_event(debouncer: Debouncer, clock: FakeClock) -> None:
    for _ in range(5):
        debouncer.push(ChangeKind.MODIFIED, "a.md")
        clock.advance(0.1)
    assert debouncer.pop_due() == []
    clock.advance(WINDOW)
    assert debouncer.pop_due() == [ChangeEvent.modified("a.md")]
    assert len(debouncer) == 0


def test_separate_paths_are_not_merged(debouncer: Debouncer, clock: FakeClock) -> None:
    debouncer.push(ChangeKind.MODIFIED, "a.md")
    debouncer.push(ChangeKind.CREATED, "b.md")
    clock.advance(WINDOW)
    assert debouncer.pop_due() == [ChangeEvent.modified("a.md"), ChangeEvent.created("b.md")]


@pytest.mark.parametrize(
    ("first", "second", "merged"),
    [
        (ChangeKind.CREATED, ChangeKind.MODIFIED, ChangeKind.CREATED),
        (ChangeKind.MODIFIED, ChangeKind.MODIFIED, ChangeKind.MODIFIED),
        (ChangeKind.MODIFIED, ChangeKind.REMOVED, ChangeKind.REMOVED),
        (ChangeKind.CREATED, ChangeKind.REMOVED, ChangeKind.REMOVED),
        (ChangeKind.REMOVED, ChangeKind.CREATED, ChangeKind.MODIFIED),
    ],
)
def test_merge_rules(debouncer: Debouncer, clock: FakeClock, first, second, merged) -> None:
    debouncer.push(first, "n.md")
    debouncer.push(second, "n.md")
    clock.advance(WINDOW)
    assert debouncer.pop_due() == [ChangeEvent(merged, "n.md")]


def test_rename_is_keyed_by_destination(debouncer: Debouncer, clock: FakeClock) -> None:
    debouncer.push(ChangeKind.MODIFIED, "old.md")
    debouncer.push(ChangeKind.RENAMED, "old.md", "new.md")
    debouncer.push(ChangeKind.MODIFIED, "new.md")
    clock.advance(WINDOW)
    assert debouncer.pop_due() == [ChangeEvent.renamed("old.md", "new.md")]


def test_rename_chain_collapses(debouncer: Debouncer, clock: FakeClock) -> None:
    debouncer.push(ChangeKind.RENAMED, "a.md", "b.md")
    debouncer.push(ChangeKind.RENAMED, "b.md", "c.md")
    clock.advance(WINDOW)
    assert debouncer.pop_due() == [ChangeEvent.renamed("a.md", "c.md")]


def test_rename_back_is_a_modification(debouncer: Debouncer, clock: FakeClock) -> None:
    debouncer.push(ChangeKind.RENAMED, "a.md", "b.md")
    debouncer.push(ChangeKind.RENAMED, "b.md", "a.md")
    clock.advance(WINDOW)
    assert debouncer.pop_due() == [ChangeEvent.modified("a.md")]


def test_rename_then_delete_removes_both(debouncer: Debouncer, clock: FakeClock) -> None:
    debouncer.push(ChangeKind.RENAMED, "a.md", "b.md")
    debouncer.push(ChangeKind.REMOVED, "b.md")
    clock.advance(WINDOW)
    events = debouncer.pop_due()
    assert sorted(events, key=lambda e: e.path) == [ChangeEvent.removed("a.md"), ChangeEvent.removed("b.md")]


def test_second_rename_onto_same_destination_removes_first_source(debouncer: Debouncer, clock: FakeClock) -> None:
    debouncer.push(ChangeKind.RENAMED, "alpha.md", "target.md")
    debouncer.push(ChangeKind.RENAMED, "Zeta.md", "target.md")
    clock.advance(WINDOW)
    events = debouncer.pop_due()
    assert sorted(events, key=lambda e: e.path) == [
        ChangeEvent.removed("alpha.md"), ChangeEvent.renamed("Zeta.md", "target.md"),
    ]


def test_modification_after_rename_keeps_source(debouncer: Debouncer, clock: FakeClock) -> None:
    debouncer.push(ChangeKind.RENAMED, "a.md", "b.md")
    debouncer.push(ChangeKind.MODIFIED, "b.md")
    debouncer.push(ChangeKind.RENAMED, "a.md", "b.md")
    clock.advance(WINDOW)
    assert debouncer.pop_due() == [ChangeEvent.renamed("a.md", "b.md")]


def test_continuous_activity_is_flushed(debouncer: Debouncer, clock: FakeClock) -> None:
    flushed_after = None
    for step in range(30):
        debouncer.push(ChangeKind.MODIFIED, "busy.md")
        clock.advance(0.2)
        if debouncer.pop_due():
            flushed_after = step
            break
    assert flushed_after is not None
    assert flushed_after <= 15


def test_next_deadline(debouncer: Debouncer, clock: FakeClock) -> None:
    assert debouncer.next_deadline() is None
    debouncer.push(ChangeKind.MODIFIED, "a.md")
    assert debouncer.next_deadline() == pytest.approx(clock() + WINDOW)


def test_watcher_filters_ignored_and_foreign_files(watcher: Watcher, clock: FakeClock) -> None:
    root = watcher.root
    watcher.feed(ChangeKind.MODIFIED, str(root / "a" / "b.md"))
    watcher.feed(ChangeKind.MODIFIED, str(root / "a" / "b.md.swp"))
    watcher.feed(ChangeKind.CREATED, str(root / "a" / "4913"))
    watcher.feed(ChangeKind.MODIFIED, str(root / ".hidden" / "secret.md"))
    watcher.feed(ChangeKind.CREATED, str(root / "images" / "new.png"))
    watcher.feed(ChangeKind.CREATED, str(root / "newdir"), is_directory=True)
    watcher.feed(ChangeKind.MODIFIED, str(root.parent / "elsewhere.md"))
    assert watcher.drain() == []
    clock.advance(WINDOW)
    assert watcher.drain() == [ChangeEvent.modified("a/b.md"), ChangeEvent.created("newdir")]


def test_watcher_atomic_save_becomes_modification(watcher: Watcher, clock: FakeClock) -> None:
    root = watcher.root
    watcher.feed(ChangeKind.CREATED, str(root / "a" / ".b.md.x1y2.tmp"))
    watcher.feed(ChangeKind.RENAMED, str(root / "a" / ".b.md.x1y2.tmp"), str(root / "a" / "b.md"))
    clock.advance(WINDOW)
    assert watcher.drain() == [ChangeEvent.modified("a/b.md")]


def test_watcher_move_out_of_view_is_removal(watcher: Watcher, clock: FakeClock) -> None:
    root = watcher.root
    watcher.feed(ChangeKind.RENAMED, str(root / "Zeta.md"), str(root / "_drafts" / "Zeta.md"))
    clock.advance(WINDOW)
    assert watcher.drain() == [ChangeEvent.removed("Zeta.md")]


def test_watcher_rename(watcher: Watcher, clock: FakeClock) -> None:
    root = watcher.root
    watcher.feed(ChangeKind.RENAMED, str(root / "alpha.md"), str(root / "beta.md"))
    clock.advance(WINDOW)
    assert watcher.drain() == [ChangeEvent.renamed("alpha.md", "beta.md")]


def test_watcher_start_schedules_recursive_watch(watcher: Watcher) -> None:
    watcher.start()
    assert watcher.running
    observer = watcher._observer
    assert [(path, recursive) for _, path, recursive in observer.scheduled] == [(str(watcher.root), True)]
    watcher.stop()
    assert not watcher.running
    assert observer.stopped


def test_watcher_start_missing_root(config, notes_dir, clock: FakeClock) -> None:
    watcher = Watcher(config, observer_factory=FakeObserver, clock=clock)
    shutil.rmtree(notes_dir)
    with pytest.raises(WatchError):
        watcher.start()


def test_watcher_start_schedule_failure(config, clock: FakeClock) -> None:
    watcher = Watcher(config, observer_factory=lambda: FakeObserver(fail_schedule=True), clock=clock)
    with pytest.raises(WatchError):
        watcher.start()
    assert not watcher.running


def test_events_yields_debounced_events(watcher: Watcher, clock: FakeClock) -> None:
    watcher.feed(ChangeKind.MODIFIED, str(watcher.root / "Zeta.md"))
    clock.advance(WINDOW)
    stream = watcher.events()
    assert next(stream) == ChangeEvent.modified("Zeta.md")
    watcher.close()
    assert list(stream) == []


def test_events_raises_when_observer_dies(config, clock: FakeClock) -> None:
    observers = []

    def factory():
        observers.append(FakeObserver())
        return observers[-1]

    watcher = Watcher(config, observer_factory=factory, clock=clock)
    watcher.feed(ChangeKind.MODIFIED, str(watcher.root / "Zeta.md"))
    clock.advance(WINDOW)
    stream = watcher.events()
    next(stream)
    observers[0].alive = False
    with pytest.raises(WatchError):
        next(stream)
    # Iterating again re-establishes the watch.
    watcher.feed(ChangeKind.MODIFIED, str(watcher.root / "alpha.md"))
    clock.advance(WINDOW)
    assert next(watcher.events()) == ChangeEvent.modified("alpha.md")
    assert len(observers) == 2
    watcher.close()
