from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass

from linksweep.services.probe import LivenessProbe, ProbeResult
from linksweep.services.tree import BookmarkEntry

logger = logging.getLogger(__name__)


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class RunOutcome:
    status: RunStatus
    reason: str | None = None


@dataclass
class Stats:
    total: int = 0
    checked: int = 0
    dead: int = 0
    removed: int = 0

    def reset(self) -> None:
        self.total = 0
        self.checked = 0
        self.dead = 0
        self.removed = 0

    def as_dict(self) -> dict:
        return asdict(self)


def partition(entries: Sequence, size: int) -> list[Sequence]:
    size = max(1, int(size))
    return [entries[start : start + size] for start in range(0, len(entries), size)]


def _never_cancelled() -> bool:
    return False


class BatchScheduler:
    """Walks entries in fixed-size groups, probing each group concurrently.

    Groups never overlap: the next group starts only after every probe of the
    current one has settled and the inter-batch delay has passed. Dead entries
    are removed through ``remove`` and counted into ``stats``.
    """

    def __init__(
        self,
        probe: LivenessProbe,
        remove: Callable[[object], None],
        stats: Stats | None = None,
        batch_size: int = 3,
        batch_delay: float = 3.0,
        wait: Callable[[float], object] = time.sleep,
    ):
        self.probe = probe
        self.remove = remove
        self.stats = stats if stats is not None else Stats()
        self.batch_size = max(1, int(batch_size))
        self.batch_delay = max(0.0, float(batch_delay))
        self.wait = wait

    def run(
        self,
        entries: Sequence[BookmarkEntry],
        on_batch_done: Callable[[Stats, float, int], None] | None = None,
        is_cancelled: Callable[[], bool] = _never_cancelled,
        on_removed: Callable[[BookmarkEntry], None] | None = None,
    ) -> RunOutcome:
        groups = partition(list(entries), self.batch_size)
        total = sum(len(group) for group in groups)
        processed = 0

        try:
            for index, group in enumerate(groups):
                if is_cancelled():
                    logger.info("Stop requested; %s of %s processed", processed, total)
                    return RunOutcome(RunStatus.STOPPED)

                verdicts = self._settle(group)
                for entry, verdict in zip(group, verdicts):
                    if verdict is ProbeResult.ALIVE:
                        continue
                    self.stats.dead += 1
                    logger.info("Dead link: %s - %s", entry.title, entry.url)
                    try:
                        self.remove(entry.id)
                    except Exception as exc:
                        logger.warning("Could not remove %s: %s", entry.url, exc)
                        continue
                    self.stats.removed += 1
                    logger.info("Removed: %s", entry.title)
                    if on_removed:
                        on_removed(entry)

                self.stats.checked += len(group)
                processed += len(group)
                if on_batch_done:
                    on_batch_done(self.stats, min(1.0, processed / total), processed)

                is_last = index == len(groups) - 1
                if not is_last and not is_cancelled() and self.batch_delay:
                    self.wait(self.batch_delay)
        except Exception as exc:
            logger.exception("Batch run aborted")
            return RunOutcome(RunStatus.FAILED, str(exc) or exc.__class__.__name__)

        if groups and is_cancelled():
            logger.info("Stop requested during the last batch; %s processed", processed)
            return RunOutcome(RunStatus.STOPPED)
        return RunOutcome(RunStatus.COMPLETED)

    def _settle(self, group: Sequence[BookmarkEntry]) -> list[ProbeResult]:
        return asyncio.run(self._probe_group(group))

    async def _probe_group(self, group: Sequence[BookmarkEntry]) -> list[ProbeResult]:
        async with self.probe.client() as client:
            results = await asyncio.gather(
                *(self.probe.probe(entry.url, client) for entry in group),
                return_exceptions=True,
            )

        verdicts = []
        for entry, result in zip(group, results):
            if isinstance(result, ProbeResult):
                verdicts.append(result)
                continue
            logger.warning("Probe crashed for %s: %s", entry.url, result)
            verdicts.append(ProbeResult.DEAD)
        return verdicts
