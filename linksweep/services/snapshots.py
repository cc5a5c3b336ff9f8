from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from dateutil import parser as dt_parser

from linksweep.models import utcnow
from linksweep.services.events import EVENT_SNAPSHOT_CAPTURED, EVENT_SNAPSHOT_RESTORED
from linksweep.services.store import DEFAULT_ROOT_KEY, ProtectedNodeError
from linksweep.services.tree import (
    FolderNode,
    InvalidNodeError,
    count_nodes,
    node_from_dict,
    node_to_dict,
    rebuild,
)

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "bookmark_snapshot"
SNAPSHOT_TIMESTAMP_KEY = "snapshot_captured_at"
SCHEMA_VERSION = "1.0"


class SnapshotValidationError(ValueError):
    pass


class SnapshotMissingError(LookupError):
    pass


@dataclass(frozen=True)
class Snapshot:
    schema_version: str
    captured_at: datetime | None
    roots: tuple[FolderNode, ...]

    @property
    def timestamp(self) -> int | None:
        if self.captured_at is None:
            return None
        return int(self.captured_at.timestamp() * 1000)

    def to_dict(self) -> dict:
        return {
            "version": self.schema_version,
            "timestamp": self.timestamp,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "tree": [node_to_dict(root) for root in self.roots],
        }


@dataclass
class RestoreOutcome:
    success: bool
    cleared: int = 0
    created: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "cleared": self.cleared,
            "created": self.created,
            "failed": self.failed,
            "errors": list(self.errors),
            "error": self.error,
        }


def _parse_captured_at(candidate: Mapping) -> datetime | None:
    raw = candidate.get("captured_at") or candidate.get("capturedAt")
    if isinstance(raw, str) and raw:
        try:
            parsed = dt_parser.isoparse(raw)
        except (ValueError, OverflowError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed

    timestamp = candidate.get("timestamp")
    if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        try:
            return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    return None


def validate(candidate) -> Snapshot:
    """Check externally supplied snapshot data and turn it into a Snapshot.

    This runs before any destructive step, so every structural problem is
    reported here with the path of the offending node.
    """
    if not isinstance(candidate, Mapping):
        raise SnapshotValidationError("Invalid backup data: expected an object")

    tree = candidate.get("tree")
    if tree is None:
        tree = candidate.get("roots")
    if (
        tree is None
        or isinstance(tree, (str, bytes, Mapping))
        or not isinstance(tree, Sequence)
    ):
        raise SnapshotValidationError(
            "Invalid backup data: missing or invalid tree structure"
        )
    if not tree:
        raise SnapshotValidationError("Invalid backup data: tree is empty")

    version = (
        candidate.get("version")
        or candidate.get("schema_version")
        or candidate.get("schemaVersion")
    )
    if not version:
        raise SnapshotValidationError("Invalid backup data: missing version information")

    roots = []
    for index, raw_root in enumerate(tree):
        try:
            root = node_from_dict(raw_root, f"tree[{index}]")
        except InvalidNodeError as exc:
            raise SnapshotValidationError(f"Invalid backup data: {exc}") from exc
        if not isinstance(root, FolderNode):
            raise SnapshotValidationError(
                f"Invalid backup data: tree[{index}] must be a folder"
            )
        roots.append(root)

    return Snapshot(
        schema_version=str(version),
        captured_at=_parse_captured_at(candidate),
        roots=tuple(roots),
    )


class SnapshotManager:
    def __init__(self, store, storage, events=None, schema_version: str = SCHEMA_VERSION):
        self.store = store
        self.storage = storage
        self.events = events
        self.schema_version = schema_version

    def capture(self) -> Snapshot:
        snapshot = Snapshot(
            schema_version=self.schema_version,
            captured_at=utcnow(),
            roots=tuple(self.store.get_tree()),
        )
        self.storage.set(
            {
                SNAPSHOT_KEY: snapshot.to_dict(),
                SNAPSHOT_TIMESTAMP_KEY: snapshot.timestamp,
            }
        )
        logger.info(
            "Snapshot captured: %s nodes under %s roots",
            count_nodes(snapshot.roots),
            len(snapshot.roots),
        )
        if self.events:
            self.events.publish(EVENT_SNAPSHOT_CAPTURED, timestamp=snapshot.timestamp)
        return snapshot

    def export(self) -> dict | None:
        return self.storage.get([SNAPSHOT_KEY]).get(SNAPSHOT_KEY)

    def exists(self) -> bool:
        return self.export() is not None

    def load(self) -> Snapshot | None:
        data = self.export()
        if data is None:
            return None
        return validate(data)

    def validate(self, candidate) -> Snapshot:
        return validate(candidate)

    def restore_stored(self) -> RestoreOutcome:
        snapshot = self.load()
        if snapshot is None:
            raise SnapshotMissingError("No backup available")
        return self.restore(snapshot)

    def restore_from_data(self, data) -> RestoreOutcome:
        return self.restore(validate(data))

    def restore(self, snapshot: Snapshot) -> RestoreOutcome:
        """Replace the live hierarchy with ``snapshot``: clear, then rebuild."""
        try:
            live_roots = self.store.get_tree()
        except Exception as exc:
            logger.exception("Could not read bookmark tree for restore")
            return RestoreOutcome(success=False, error=f"Could not read bookmarks: {exc}")

        plan, error = self._map_roots(snapshot.roots, live_roots)
        if error:
            logger.error("Restore aborted: %s", error)
            return RestoreOutcome(success=False, error=error)

        outcome = RestoreOutcome(success=True)
        for live_root in live_roots:
            cleared, failed = self._clear(live_root)
            outcome.cleared += cleared
            outcome.failed += failed

        for snapshot_root, target, as_whole in plan:
            nodes = [snapshot_root] if as_whole else list(snapshot_root.children)
            report = rebuild(self.store, nodes, target.id)
            outcome.created += report.created
            outcome.failed += len(report.failed)
            outcome.errors.extend(f"{title}: {error}" for title, error in report.failed)

        logger.info(
            "Restore finished: %s cleared, %s created, %s skipped",
            outcome.cleared,
            outcome.created,
            outcome.failed,
        )
        if self.events:
            self.events.publish(EVENT_SNAPSHOT_RESTORED, **outcome.as_dict())
        return outcome

    def _map_roots(self, snapshot_roots, live_roots):
        by_key = {root.root_key: root for root in live_roots if root.root_key}
        by_title: dict[str, FolderNode] = {}
        for root in live_roots:
            by_title.setdefault(root.title, root)
        default_root = by_key.get(DEFAULT_ROOT_KEY)

        plan = []
        for snapshot_root in snapshot_roots:
            target = None
            if snapshot_root.root_key:
                target = by_key.get(snapshot_root.root_key)
            if target is None:
                target = by_title.get(snapshot_root.title)
            if target is not None:
                plan.append((snapshot_root, target, False))
                continue
            if default_root is None:
                return [], f"No bookmark root to restore '{snapshot_root.title}' into"
            plan.append((snapshot_root, default_root, True))
        return plan, None

    def _clear(self, root: FolderNode) -> tuple[int, int]:
        cleared = 0
        failed = 0
        # Folders that still hold a child after clearing; they cannot be removed.
        kept: set = set()
        stack = [(child, root, False) for child in reversed(root.children)]
        while stack:
            node, parent, expanded = stack.pop()
            if isinstance(node, FolderNode) and not expanded:
                stack.append((node, parent, True))
                stack.extend((child, node, False) for child in reversed(node.children))
                continue

            if self.store.is_protected(node) or node.id in kept:
                kept.add(parent.id)
                continue
            try:
                self.store.remove(node.id)
            except ProtectedNodeError:
                kept.add(parent.id)
                continue
            except Exception as exc:
                logger.warning("Could not remove %r during restore: %s", node.title, exc)
                failed += 1
                kept.add(parent.id)
                continue
            cleared += 1
        return cleared, failed
