from datetime import datetime, timezone

import pytest

from conftest import MemoryStorage, MemoryStore, shape
from linksweep.services.events import EventChannel
from linksweep.services.snapshots import (
    SNAPSHOT_KEY,
    SnapshotManager,
    SnapshotMissingError,
    SnapshotValidationError,
    validate,
)
from linksweep.services.storage import SnapshotStorage
from linksweep.services.store import BookmarkStore
from linksweep.services.tree import BookmarkEntry, FolderNode, count_nodes


def _seed(store):
    toolbar, other = [root.id for root in store.get_tree()]
    work = store.create(parent_id=toolbar, title="Work")
    store.create(parent_id=work.id, title="Docs", url="https://docs.example")
    nested = store.create(parent_id=work.id, title="Nested")
    store.create(parent_id=nested.id, title="Deep", url="https://deep.example")
    store.create(parent_id=toolbar, title="News", url="https://news.example")
    store.create(parent_id=other, title="Empty")
    store.create(parent_id=other, title="Misc", url="https://misc.example")
    return toolbar, other


def _folder_titles(roots):
    titles = []
    stack = list(roots)
    while stack:
        node = stack.pop()
        if isinstance(node, FolderNode):
            titles.append(node.title)
            stack.extend(node.children)
    return titles


def test_capture_twice_without_changes_gives_identical_roots(app):
    with app.app_context():
        store = BookmarkStore()
        _seed(store)
        manager = SnapshotManager(store, SnapshotStorage())

        first = manager.capture()
        second = manager.capture()

        assert first.roots == second.roots
        assert manager.exists()
        assert manager.load().roots == second.roots
        assert manager.export()["version"] == "1.0"


def test_capture_publishes_event_and_overwrites_storage():
    storage = MemoryStorage()
    events = EventChannel()
    store = MemoryStore()
    manager = SnapshotManager(store, storage, events=events)

    manager.capture()
    store.create(parent_id=store.root_id("toolbar"), title="New", url="https://new.example")
    snapshot = manager.capture()

    assert [event["type"] for event in events.history()] == [
        "snapshot_captured",
        "snapshot_captured",
    ]
    stored = storage.values[SNAPSHOT_KEY]
    assert stored["tree"][0]["children"][0]["title"] == "New"
    assert storage.values["snapshot_captured_at"] == snapshot.timestamp


@pytest.mark.parametrize(
    "candidate, message",
    [
        ({"version": "1.0"}, "missing or invalid tree"),
        ({"tree": [{"title": "Bar", "children": []}]}, "missing version"),
        ({"version": "1.0", "tree": []}, "tree is empty"),
        ({"version": "1.0", "tree": "Bar"}, "missing or invalid tree"),
        ({"version": "1.0", "tree": [{"title": "x", "url": "http://x"}]}, "must be a folder"),
        ({"version": "1.0", "tree": [{"title": "Bar"}]}, "neither url nor children"),
        (["not", "an", "object"], "expected an object"),
    ],
)
def test_validate_rejects_malformed_snapshots(candidate, message):
    with pytest.raises(SnapshotValidationError) as excinfo:
        validate(candidate)
    assert message in str(excinfo.value)


def test_rejected_restore_never_touches_the_store():
    store = MemoryStore()
    manager = SnapshotManager(store, MemoryStorage())

    with pytest.raises(SnapshotValidationError):
        manager.restore_from_data({"tree": [{"title": "Bar", "children": []}]})

    assert store.mutations == 0


def test_validate_accepts_alternate_field_names_and_reads_timestamps():
    snapshot = validate(
        {
            "schemaVersion": "1.0",
            "roots": [{"title": "Bar", "children": []}],
            "capturedAt": "2024-05-01T10:00:00Z",
            "ignored": True,
        }
    )
    assert snapshot.captured_at == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    from_ms = validate(
        {"version": "1.0", "timestamp": 1714557600000, "tree": [{"title": "Bar", "children": []}]}
    )
    assert from_ms.captured_at == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_restore_recreates_unknown_root_as_folder(app):
    with app.app_context():
        store = BookmarkStore()
        manager = SnapshotManager(store, SnapshotStorage())

        result = manager.restore_from_data(
            {
                "version": "1.0",
                "tree": [{"title": "Bar", "children": [{"title": "x", "url": "http://x"}]}],
            }
        )

        assert result.success
        roots = store.get_tree()
        user_folders = [title for title in _folder_titles(roots) if title not in {
            "Bookmarks Bar",
            "Other Bookmarks",
        }]
        assert user_folders == ["Bar"]
        assert shape(roots) == [
            ("Bookmarks Bar", []),
            ("Other Bookmarks", [("Bar", [("x", "http://x")])]),
        ]


def test_restore_stored_snapshot_round_trips_hierarchy(app):
    with app.app_context():
        store = BookmarkStore()
        toolbar, other = _seed(store)
        manager = SnapshotManager(store, SnapshotStorage())
        snapshot = manager.capture()

        leaf = next(
            node for node in store.get_tree()[0].children if isinstance(node, BookmarkEntry)
        )
        store.remove(leaf.id)
        store.create(parent_id=other, title="Added later")
        store.create(parent_id=toolbar, title="Stray", url="https://stray.example")

        outcome = manager.restore_stored()

        assert outcome.success
        assert outcome.failed == 0
        assert shape(store.get_tree()) == shape(snapshot.roots)


def test_restore_stored_without_snapshot_is_reported():
    manager = SnapshotManager(MemoryStore(), MemoryStorage())
    with pytest.raises(SnapshotMissingError):
        manager.restore_stored()


def test_unreadable_tree_aborts_restore_before_mutation():
    class BrokenStore(MemoryStore):
        def get_tree(self):
            raise OSError("bookmarks locked")

    store = BrokenStore()
    manager = SnapshotManager(store, MemoryStorage())
    outcome = manager.restore(validate({"version": "1.0", "tree": [{"title": "Bar", "children": []}]}))

    assert not outcome.success
    assert "bookmarks locked" in outcome.error
    assert store.mutations == 0


def test_missing_root_mapping_is_fatal():
    store = MemoryStore(with_roots=False)
    manager = SnapshotManager(store, MemoryStorage())

    outcome = manager.restore(validate({"version": "1.0", "tree": [{"title": "Bar", "children": []}]}))

    assert not outcome.success
    assert "Bar" in outcome.error
    assert store.mutations == 0


def test_clear_skips_protected_roots_and_survives_node_failures():
    store = MemoryStore()
    toolbar = store.root_id("toolbar")
    keep = store.create(parent_id=toolbar, title="Keep")
    stuck = store.create(parent_id=keep.id, title="Stuck", url="https://stuck.example")
    store.create(parent_id=toolbar, title="Gone", url="https://gone.example")
    store.fail_remove_ids.add(stuck.id)

    manager = SnapshotManager(store, MemoryStorage())
    snapshot = validate(
        {
            "version": "1.0",
            "tree": [
                {
                    "title": "Bookmarks Bar",
                    "root_key": "toolbar",
                    "children": [{"title": "Fresh", "url": "https://fresh.example"}],
                }
            ],
        }
    )
    outcome = manager.restore(snapshot)

    assert outcome.success
    assert outcome.failed == 1
    assert outcome.cleared == 1
    assert shape(store.get_tree()) == [
        ("Bookmarks Bar", [("Keep", [("Stuck", "https://stuck.example")]), ("Fresh", "https://fresh.example")]),
        ("Other Bookmarks", []),
    ]


def test_rebuild_failures_are_counted_not_fatal():
    store = MemoryStore(fail_create_titles={"broken"})
    manager = SnapshotManager(store, MemoryStorage())
    snapshot = validate(
        {
            "version": "1.0",
            "tree": [
                {
                    "title": "Other Bookmarks",
                    "children": [
                        {"title": "broken", "url": "https://broken.example"},
                        {"title": "fine", "url": "https://fine.example"},
                    ],
                }
            ],
        }
    )

    outcome = manager.restore(snapshot)

    assert outcome.success
    assert outcome.created == 1
    assert outcome.failed == 1
    assert outcome.errors == ["broken: cannot create broken"]


def test_validate_accepts_deeply_nested_snapshot():
    node = {"title": "bottom", "url": "https://bottom.example"}
    for level in range(1000):
        node = {"title": f"level-{level}", "children": [node]}

    snapshot = validate({"version": "1.0", "tree": [node]})

    assert count_nodes(snapshot.roots) == 1001
