from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from linksweep.extensions import db
from linksweep.models import BookmarkNode
from linksweep.services.tree import BookmarkEntry, FolderNode, TreeNode

logger = logging.getLogger(__name__)

ROOT_TOOLBAR = "toolbar"
ROOT_OTHER = "other"
DEFAULT_ROOT_KEY = ROOT_OTHER

PROTECTED_ROOTS = {
    ROOT_TOOLBAR: "Bookmarks Bar",
    ROOT_OTHER: "Other Bookmarks",
}


class StoreError(RuntimeError):
    pass


class ProtectedNodeError(StoreError):
    pass


def is_protected(node) -> bool:
    return getattr(node, "root_key", None) in PROTECTED_ROOTS


class BookmarkStore:
    """Bookmark hierarchy backed by the ``bookmark_nodes`` table.

    Every read builds fresh immutable nodes, so callers never hold a reference
    into the session.
    """

    def ensure_roots(self) -> None:
        existing = {
            row.root_key
            for row in BookmarkNode.query.filter(BookmarkNode.root_key.is_not(None))
        }
        created = False
        for position, (root_key, title) in enumerate(PROTECTED_ROOTS.items()):
            if root_key in existing:
                continue
            db.session.add(
                BookmarkNode(
                    parent_id=None, title=title, root_key=root_key, position=position
                )
            )
            created = True
        if created:
            db.session.commit()

    def get_tree(self) -> list[FolderNode]:
        rows = BookmarkNode.query.order_by(
            BookmarkNode.position.asc(), BookmarkNode.id.asc()
        ).all()

        children_by_parent: dict[int | None, list[BookmarkNode]] = {}
        for row in rows:
            children_by_parent.setdefault(row.parent_id, []).append(row)

        top_level = [row for row in children_by_parent.get(None, []) if row.is_folder]
        built: dict[int, TreeNode] = {}
        stack: list[tuple[BookmarkNode, bool]] = [(row, False) for row in top_level]
        while stack:
            row, expanded = stack.pop()
            if not row.is_folder:
                built[row.id] = BookmarkEntry(
                    id=row.id, title=row.title, url=row.url, parent_id=row.parent_id
                )
                continue
            children = children_by_parent.get(row.id, [])
            if not expanded:
                stack.append((row, True))
                stack.extend((child, False) for child in children)
                continue
            built[row.id] = FolderNode(
                id=row.id,
                title=row.title,
                children=tuple(built[child.id] for child in children),
                root_key=row.root_key,
            )

        return [built[row.id] for row in top_level]

    def is_protected(self, node) -> bool:
        return is_protected(node)

    def default_root_id(self) -> int | None:
        row = BookmarkNode.query.filter_by(root_key=DEFAULT_ROOT_KEY).first()
        return row.id if row else None

    def create(self, parent_id=None, title: str = "", url: str | None = None) -> TreeNode:
        if parent_id is None:
            parent_id = self.default_root_id()
        parent = db.session.get(BookmarkNode, parent_id) if parent_id is not None else None
        if parent is None:
            raise StoreError(f"parent {parent_id} not found")
        if not parent.is_folder:
            raise StoreError(f"parent {parent_id} is not a folder")

        last_position = (
            db.session.query(func.max(BookmarkNode.position))
            .filter(BookmarkNode.parent_id == parent.id)
            .scalar()
        )
        row = BookmarkNode(
            parent_id=parent.id,
            title=title or "",
            url=url,
            position=0 if last_position is None else last_position + 1,
        )
        try:
            db.session.add(row)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(str(exc)) from exc

        if url is None:
            return FolderNode(id=row.id, title=row.title)
        return BookmarkEntry(id=row.id, title=row.title, url=row.url, parent_id=row.parent_id)

    def remove(self, node_id) -> None:
        row = db.session.get(BookmarkNode, node_id)
        if row is None:
            raise StoreError(f"node {node_id} not found")
        if is_protected(row):
            raise ProtectedNodeError(f"node {node_id} is a protected root")
        if row.is_folder and row.children:
            raise StoreError(f"folder {node_id} is not empty")
        title = row.title
        try:
            db.session.delete(row)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(str(exc)) from exc
        logger.debug("Removed node %s (%s)", node_id, title)
