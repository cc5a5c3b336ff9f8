from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookmarkEntry:
    id: Any
    title: str
    url: str
    parent_id: Any = None


@dataclass(frozen=True)
class FolderNode:
    id: Any
    title: str
    children: tuple[Union["FolderNode", BookmarkEntry], ...] = ()
    root_key: str | None = None


TreeNode = Union[FolderNode, BookmarkEntry]


class InvalidNodeError(ValueError):
    pass


@dataclass
class RebuildReport:
    created: int = 0
    failed: list[tuple[str, str]] = field(default_factory=list)


def flatten(roots: Iterable[TreeNode]) -> Iterator[BookmarkEntry]:
    """Yield every leaf below ``roots`` in pre-order, folder order first.

    The traversal keeps its own stack, so a fresh call always restarts from
    the given roots and deep hierarchies do not hit the recursion limit.
    """
    stack: list[TreeNode] = list(reversed(list(roots)))
    while stack:
        node = stack.pop()
        if isinstance(node, BookmarkEntry):
            yield node
            continue
        stack.extend(reversed(node.children))


def rebuild(store, nodes: Sequence[TreeNode], into_parent) -> RebuildReport:
    """Recreate ``nodes`` under ``into_parent`` in the given store.

    Folders are created before their children. A node whose creation fails is
    recorded and skipped along with its subtree; its siblings are still
    created.
    """
    report = RebuildReport()
    worklist: list[tuple[TreeNode, Any]] = [
        (node, into_parent) for node in reversed(nodes)
    ]
    while worklist:
        node, parent_id = worklist.pop()
        try:
            if isinstance(node, BookmarkEntry):
                store.create(parent_id=parent_id, title=node.title, url=node.url)
                report.created += 1
                continue
            folder = store.create(parent_id=parent_id, title=node.title)
            report.created += 1
        except Exception as exc:
            logger.warning("Skipping node %r during rebuild: %s", node.title, exc)
            report.failed.append((node.title, str(exc)))
            continue
        worklist.extend((child, folder.id) for child in reversed(node.children))
    return report


def count_nodes(roots: Iterable[TreeNode]) -> int:
    total = 0
    stack: list[TreeNode] = list(roots)
    while stack:
        node = stack.pop()
        total += 1
        if isinstance(node, FolderNode):
            stack.extend(node.children)
    return total


def node_to_dict(node: TreeNode) -> dict:
    if isinstance(node, BookmarkEntry):
        return {"id": node.id, "title": node.title, "url": node.url}

    payload: dict[str, Any] = {"id": node.id, "title": node.title, "children": []}
    if node.root_key:
        payload["root_key"] = node.root_key
    stack: list[tuple[FolderNode, dict]] = [(node, payload)]
    while stack:
        folder, out = stack.pop()
        for child in folder.children:
            if isinstance(child, BookmarkEntry):
                out["children"].append(
                    {"id": child.id, "title": child.title, "url": child.url}
                )
                continue
            child_out = {"id": child.id, "title": child.title, "children": []}
            if child.root_key:
                child_out["root_key"] = child.root_key
            out["children"].append(child_out)
            stack.append((child, child_out))
    return payload


def _check_node(data: Any, path: str) -> tuple[str, Any, Any]:
    if not isinstance(data, Mapping):
        raise InvalidNodeError(f"{path}: node must be an object")

    url = data.get("url")
    children = data.get("children")
    has_url = url is not None
    has_children = children is not None
    if has_url and has_children:
        raise InvalidNodeError(f"{path}: node has both url and children")
    if not has_url and not has_children:
        raise InvalidNodeError(f"{path}: node has neither url nor children")
    if has_url and not isinstance(url, str):
        raise InvalidNodeError(f"{path}: url must be a string")
    if has_children and (
        isinstance(children, (str, bytes)) or not isinstance(children, Sequence)
    ):
        raise InvalidNodeError(f"{path}: children must be a list")

    title = data.get("title") or ""
    if not isinstance(title, str):
        title = str(title)
    return title, url, children


def node_from_dict(data: Any, path: str = "tree[0]", parent_id=None) -> TreeNode:
    """Build an immutable node from serialized data, checking every node.

    A node must carry either a ``url`` or a ``children`` list, never both and
    never neither. Nodes are checked in pre-order, so the first broken node
    in document order is the one reported.
    """
    built: dict[str, TreeNode] = {}
    stack: list[tuple[Any, str, Any, tuple | None]] = [(data, path, parent_id, None)]
    while stack:
        item, item_path, item_parent, checked = stack.pop()
        if checked is None:
            title, url, children = _check_node(item, item_path)
            if url is not None:
                built[item_path] = BookmarkEntry(
                    id=item.get("id"), title=title, url=url, parent_id=item_parent
                )
                continue
            stack.append((item, item_path, item_parent, (title, len(children))))
            stack.extend(
                (child, f"{item_path}.children[{index}]", item.get("id"), None)
                for index, child in reversed(list(enumerate(children)))
            )
            continue

        title, child_count = checked
        built[item_path] = FolderNode(
            id=item.get("id"),
            title=title,
            children=tuple(
                built.pop(f"{item_path}.children[{index}]")
                for index in range(child_count)
            ),
            root_key=item.get("root_key") or None,
        )
    return built[path]
