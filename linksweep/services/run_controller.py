from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field

from flask import Flask, current_app

from linksweep.extensions import db
from linksweep.services.batch_runner import BatchScheduler, RunOutcome, RunStatus, Stats
from linksweep.services.events import (
    EVENT_BOOKMARK_REMOVED,
    EVENT_CHECKING_COMPLETE,
    EVENT_CHECKING_ERROR,
    EVENT_CHECKING_STARTED,
    EVENT_CHECKING_STOPPED,
    EVENT_PROGRESS_UPDATE,
    EventChannel,
)
from linksweep.services.probe import LivenessProbe
from linksweep.services.snapshots import (
    SnapshotManager,
    SnapshotMissingError,
    SnapshotValidationError,
)
from linksweep.services.storage import SnapshotStorage
from linksweep.services.store import BookmarkStore
from linksweep.services.tree import BookmarkEntry, flatten

logger = logging.getLogger(__name__)

EXTENSION_KEY = "linksweep.controller"

REASON_DECLINED = "declined"
REASON_INVALID = "invalid"
REASON_MISSING = "missing"
REASON_FAILED = "failed"

_TERMINAL_EVENT_BY_STATUS = {
    RunStatus.COMPLETED: EVENT_CHECKING_COMPLETE,
    RunStatus.STOPPED: EVENT_CHECKING_STOPPED,
    RunStatus.FAILED: EVENT_CHECKING_ERROR,
}


class RunPhase(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class RunState:
    phase: RunPhase = RunPhase.IDLE
    stats: Stats = field(default_factory=Stats)
    last_outcome: RunOutcome | None = None

    @property
    def running(self) -> bool:
        return self.phase is not RunPhase.IDLE


@dataclass(frozen=True)
class ControlResult:
    success: bool
    error: str | None = None
    reason: str | None = None
    data: dict | None = None

    def as_dict(self) -> dict:
        payload = {"success": self.success}
        if self.error:
            payload["error"] = self.error
        if self.data:
            payload.update(self.data)
        return payload


def get_controller() -> "RunController":
    return current_app.extensions[EXTENSION_KEY]


class RunController:
    """Owns the single run state and drives checking runs end to end.

    Synchronous operations expect an active application context; background
    runs push their own.
    """

    def __init__(
        self,
        app: Flask,
        events: EventChannel,
        probe: LivenessProbe | None = None,
        store: BookmarkStore | None = None,
        storage: SnapshotStorage | None = None,
    ):
        self.app = app
        self.events = events
        self.probe = probe or LivenessProbe.from_config(app.config)
        self.store = store or BookmarkStore()
        self.snapshots = SnapshotManager(
            self.store,
            storage or SnapshotStorage(),
            events=events,
            schema_version=app.config.get("SNAPSHOT_SCHEMA_VERSION", "1.0"),
        )
        self.state = RunState()
        self._gate = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: threading.Thread | None = None

    def status(self) -> dict:
        outcome = self.state.last_outcome
        return {
            "running": self.state.running,
            "phase": self.state.phase.value,
            "stats": self.state.stats.as_dict(),
            "snapshot_exists": self.snapshots.exists(),
            "last_outcome": {"status": outcome.status.value, "reason": outcome.reason}
            if outcome
            else None,
        }

    def capture(self) -> ControlResult:
        try:
            snapshot = self.snapshots.capture()
        except Exception as exc:
            logger.exception("Snapshot capture failed")
            return ControlResult(False, error=str(exc), reason=REASON_FAILED)
        return ControlResult(True, data={"timestamp": snapshot.timestamp})

    def start(self, background: bool = True) -> ControlResult:
        with self._gate:
            if self.state.phase is not RunPhase.IDLE:
                return ControlResult(False, error="Already running", reason=REASON_DECLINED)

            if not self.snapshots.exists():
                try:
                    self.snapshots.capture()
                except Exception as exc:
                    logger.exception("Snapshot before run failed")
                    return ControlResult(
                        False,
                        error=f"Failed to create snapshot: {exc}",
                        reason=REASON_FAILED,
                    )

            self.state.phase = RunPhase.RUNNING
            self.state.stats.reset()
            self.state.last_outcome = None
            self._stop_event.clear()

        if background:
            self._worker = threading.Thread(
                target=self._run_in_context,
                args=(self.state,),
                daemon=True,
                name="link-check-run",
            )
            self._worker.start()
        else:
            self._run(self.state)
        return ControlResult(True)

    def stop(self) -> ControlResult:
        with self._gate:
            if self.state.phase is RunPhase.IDLE:
                return ControlResult(True, data={"stopping": False})
            self.state.phase = RunPhase.STOPPING
            self._stop_event.set()
        logger.info("Stop requested; finishing active checks")
        return ControlResult(True, data={"stopping": True})

    def join(self, timeout: float | None = None) -> bool:
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return not self.state.running

    def restore_stored(self) -> ControlResult:
        with self._gate:
            if self.state.running:
                return ControlResult(
                    False, error="Cannot restore while a check is running", reason=REASON_DECLINED
                )
            try:
                outcome = self.snapshots.restore_stored()
            except SnapshotMissingError as exc:
                return ControlResult(False, error=str(exc), reason=REASON_MISSING)
            except SnapshotValidationError as exc:
                return ControlResult(False, error=str(exc), reason=REASON_INVALID)
        return self._restore_result(outcome)

    def restore_from_data(self, data) -> ControlResult:
        if not data:
            return ControlResult(False, error="No backup data provided", reason=REASON_INVALID)
        try:
            snapshot = self.snapshots.validate(data)
        except SnapshotValidationError as exc:
            return ControlResult(False, error=str(exc), reason=REASON_INVALID)

        with self._gate:
            if self.state.running:
                return ControlResult(
                    False, error="Cannot restore while a check is running", reason=REASON_DECLINED
                )
            outcome = self.snapshots.restore(snapshot)
        return self._restore_result(outcome)

    def _restore_result(self, outcome) -> ControlResult:
        if not outcome.success:
            return ControlResult(False, error=outcome.error, reason=REASON_FAILED)
        return ControlResult(True, data={"restore": outcome.as_dict()})

    def _run_in_context(self, state: RunState) -> None:
        with self.app.app_context():
            db.session.remove()
            try:
                self._run(state)
            finally:
                db.session.remove()

    def _run(self, state: RunState) -> None:
        outcome = RunOutcome(RunStatus.FAILED, "Run interrupted")
        try:
            entries = list(flatten(self.store.get_tree()))
            state.stats.total = len(entries)
            logger.info("Starting check of %s bookmarks", len(entries))
            self.events.publish(EVENT_CHECKING_STARTED, stats=state.stats.as_dict())

            scheduler = BatchScheduler(
                self.probe,
                self.store.remove,
                stats=state.stats,
                batch_size=self.app.config.get("CHECK_BATCH_SIZE", 3),
                batch_delay=self.app.config.get("CHECK_BATCH_DELAY_SECONDS", 3.0),
                wait=self._stop_event.wait,
            )
            outcome = scheduler.run(
                entries,
                on_batch_done=self._on_batch_done,
                is_cancelled=self._stop_event.is_set,
                on_removed=self._on_removed,
            )
        except Exception as exc:
            logger.exception("Link check failed")
            outcome = RunOutcome(RunStatus.FAILED, str(exc) or exc.__class__.__name__)
        finally:
            state.last_outcome = outcome
            # The terminal event must go out before a new run can be admitted.
            try:
                self._report(state, outcome)
            finally:
                with self._gate:
                    state.phase = RunPhase.IDLE
                    self._stop_event.clear()

    def _report(self, state: RunState, outcome: RunOutcome) -> None:
        if outcome.status is RunStatus.COMPLETED:
            logger.info("Check complete; removed %s dead bookmarks", state.stats.removed)
        elif outcome.status is RunStatus.STOPPED:
            logger.info("Check stopped by request")

        payload = {"stats": state.stats.as_dict()}
        if outcome.reason:
            payload["error"] = outcome.reason
        self.events.publish(_TERMINAL_EVENT_BY_STATUS[outcome.status], **payload)

    def _on_batch_done(self, stats: Stats, progress: float, processed: int) -> None:
        self.events.publish(
            EVENT_PROGRESS_UPDATE,
            progress=progress,
            processed=processed,
            stats=stats.as_dict(),
        )

    def _on_removed(self, entry: BookmarkEntry) -> None:
        self.events.publish(
            EVENT_BOOKMARK_REMOVED,
            bookmark={"id": entry.id, "title": entry.title, "url": entry.url},
        )
