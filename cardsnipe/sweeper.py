import logging
from datetime import timedelta

from apscheduler.schedulers.base import BaseScheduler

from cardsnipe.core import (
    MSG_POSSIBLE_CRASH,
    SnipeError,
    SnipeStatus,
)
from cardsnipe.db import SnipeRepository
from cardsnipe.lifecycle import SnipeLifecycle
from cardsnipe.scheduler import Scheduler
from cardsnipe.settings import SweeperCfg

log = logging.getLogger("cardsnipe.sweeper")

JOB_ID = "reconciliation-sweep"


class ReconciliationSweeper:
    """Periodic pass that resolves snipes the scheduler lost track of.

    Stuck `processing` rows become errors; their bid may or may not have
    reached the marketplace, and bidding twice is worse than not bidding.
    Active rows nobody has admitted are admitted, or failed if their auction
    is already over.
    """

    def __init__(
        self,
        repo: SnipeRepository,
        lifecycle: SnipeLifecycle,
        scheduler: Scheduler,
        clock,
        cfg: SweeperCfg,
    ):
        self.repo = repo
        self.lifecycle = lifecycle
        self.scheduler = scheduler
        self.clock = clock
        self.cfg = cfg

    async def sweep(self) -> dict[str, int]:
        now = self.clock.now()
        stats = {"crashed": 0, "readmitted": 0, "missed": 0}

        cutoff = now - timedelta(seconds=self.cfg.stuck_processing_seconds)
        for snipe in self.repo.list_stale_processing(cutoff):
            if self.lifecycle.fail(snipe.id, SnipeStatus.PROCESSING, MSG_POSSIBLE_CRASH):
                log.error(
                    "%s stuck in processing since %s; marked as error",
                    snipe.id,
                    snipe.updated_at.isoformat(),
                )
                stats["crashed"] += 1

        for snipe in self.repo.list_active():
            if self.scheduler.owns(snipe.id):
                continue
            try:
                self.scheduler.admit(snipe, allow_late=True)
            except SnipeError as exc:
                log.warning("Not re-admitting: %s", exc)
                stats["missed"] += 1
                continue
            stats["readmitted"] += 1

        if any(stats.values()):
            log.info("Sweep: %s", stats)
        return stats

    def install(self, aps: BaseScheduler) -> None:
        aps.add_job(
            self.sweep,
            "interval",
            seconds=self.cfg.interval_seconds,
            id=JOB_ID,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=30,
            replace_existing=True,
        )
