import itertools

import pytest

from linksweep import create_app
from linksweep.config import TestConfig
from linksweep.extensions import db
from linksweep.services.probe import LivenessProbe, ProbeResult
from linksweep.services.run_controller import EXTENSION_KEY
from linksweep.services.store import (
    PROTECTED_ROOTS,
    BookmarkStore,
    ProtectedNodeError,
    StoreError,
    is_protected,
)
from linksweep.services.tree import BookmarkEntry, FolderNode


class FakeProbe(LivenessProbe):
    def __init__(self, dead=(), crash=(), on_probe=None):
        super().__init__(head_timeout=0.1, get_timeout=0.1)
        self.dead = set(dead)
        self.crash = set(crash)
        self.on_probe = on_probe
        self.calls = []

    async def probe(self, url, client=None):
        self.calls.append(url)
        if self.on_probe:
            self.on_probe(url)
        if url in self.crash:
            raise RuntimeError(f"probe crashed for {url}")
        return ProbeResult.DEAD if url in self.dead else ProbeResult.ALIVE


class MemoryStore:
    """Bookmark store kept in plain dicts, with optional failure injection."""

    def __init__(self, with_roots=True, fail_create_titles=(), fail_remove_ids=()):
        self._ids = itertools.count(1)
        self.nodes = {}
        self.children = {None: []}
        self.fail_create_titles = set(fail_create_titles)
        self.fail_remove_ids = set(fail_remove_ids)
        self.mutations = 0
        if with_roots:
            for root_key, title in PROTECTED_ROOTS.items():
                node_id = next(self._ids)
                self.nodes[node_id] = {"title": title, "url": None, "root_key": root_key}
                self.children[None].append(node_id)
                self.children[node_id] = []

    def root_id(self, root_key):
        for node_id in self.children[None]:
            if self.nodes[node_id]["root_key"] == root_key:
                return node_id
        return None

    def get_tree(self):
        def build(node_id):
            node = self.nodes[node_id]
            if node["url"] is not None:
                return BookmarkEntry(node_id, node["title"], node["url"])
            return FolderNode(
                node_id,
                node["title"],
                tuple(build(child) for child in self.children[node_id]),
                node["root_key"],
            )

        return [build(node_id) for node_id in self.children[None]]

    def is_protected(self, node):
        return is_protected(node)

    def create(self, parent_id=None, title="", url=None):
        if parent_id is None:
            parent_id = self.root_id("other")
        if parent_id not in self.children:
            raise StoreError(f"parent {parent_id} not found")
        if title in self.fail_create_titles:
            raise StoreError(f"cannot create {title}")
        node_id = next(self._ids)
        self.nodes[node_id] = {"title": title, "url": url, "root_key": None}
        self.children[parent_id].append(node_id)
        if url is None:
            self.children[node_id] = []
            node = FolderNode(node_id, title)
        else:
            node = BookmarkEntry(node_id, title, url, parent_id)
        self.mutations += 1
        return node

    def remove(self, node_id):
        if node_id not in self.nodes:
            raise StoreError(f"node {node_id} not found")
        if self.nodes[node_id]["root_key"]:
            raise ProtectedNodeError(f"node {node_id} is a protected root")
        if node_id in self.fail_remove_ids:
            raise StoreError(f"cannot remove {node_id}")
        if self.children.get(node_id):
            raise StoreError(f"folder {node_id} is not empty")
        for siblings in self.children.values():
            if node_id in siblings:
                siblings.remove(node_id)
        self.children.pop(node_id, None)
        del self.nodes[node_id]
        self.mutations += 1


class MemoryStorage:
    def __init__(self, fail_set=False):
        self.values = {}
        self.fail_set = fail_set

    def get(self, keys):
        return {key: self.values[key] for key in keys if key in self.values}

    def set(self, values):
        if self.fail_set:
            raise OSError("storage unavailable")
        self.values.update(values)


def shape(nodes):
    """Structure of a hierarchy without ids: titles, urls and nesting."""
    result = []
    for node in nodes:
        if isinstance(node, BookmarkEntry):
            result.append((node.title, node.url))
        else:
            result.append((node.title, shape(node.children)))
    return result


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.drop_all()
        db.create_all()
        BookmarkStore().ensure_roots()
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def controller(app):
    return app.extensions[EXTENSION_KEY]


@pytest.fixture
def memory_store():
    return MemoryStore()
