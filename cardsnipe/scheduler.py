import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from cardsnipe.core import (
    MSG_AUCTION_ENDED,
    MSG_FIRE_WINDOW_MISSED,
    SchedulingError,
    SnipeError,
    SnipeNotFound,
    SnipeStatus,
    TooLateToCancel,
    ValidationError,
    compute_fire_time,
)
from cardsnipe.db import Snipe, SnipeRepository
from cardsnipe.executor import BidExecutor
from cardsnipe.lifecycle import SnipeLifecycle
from cardsnipe.settings import SchedulerCfg

log = logging.getLogger("cardsnipe.scheduler")


@dataclass(order=True)
class _Entry:
    due: float  # monotonic seconds
    seq: int
    snipe_id: str = field(compare=False)
    fire_at: datetime = field(compare=False)


class Scheduler:
    """Keeps every pending fire-time and hands due snipes to the executor.

    The heap is only touched from the event loop: by `admit`, `cancel` and the
    wake loop. Fire-times are converted to the monotonic clock once, at
    admission; the auction end is re-checked on the wall clock right before
    dispatch.
    """

    def __init__(
        self,
        repo: SnipeRepository,
        lifecycle: SnipeLifecycle,
        executor: BidExecutor,
        clock,
        cfg: SchedulerCfg,
    ):
        self.repo = repo
        self.lifecycle = lifecycle
        self.executor = executor
        self.clock = clock
        self.cfg = cfg
        self._heap: list[_Entry] = []
        self._entries: dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._wake = asyncio.Event()
        self._slots: Optional[asyncio.Semaphore] = None
        self._inflight: set[asyncio.Task] = set()
        self._dispatched: set[str] = set()
        self._loop_task: Optional[asyncio.Task] = None

    # ---- public API ------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def is_pending(self, snipe_id: str) -> bool:
        return snipe_id in self._entries

    def owns(self, snipe_id: str) -> bool:
        """Queued, or dispatched and waiting for a worker slot or the executor."""
        return snipe_id in self._entries or snipe_id in self._dispatched

    def pending_count(self) -> int:
        return len(self._entries)

    def admit(self, snipe: Snipe, *, allow_late: bool = False) -> datetime:
        """Queue `snipe` for its fire-time and return that time.

        A fire-time further in the past than the grace window resolves the row
        to `error` and raises SchedulingError, unless `allow_late` is set, in
        which case it fires right away. An auction that is already over, or a
        row whose fire-time cannot be computed, is always rejected the same way.
        """
        if snipe.id in self._entries:
            return self._entries[snipe.id].fire_at
        if snipe.id in self._dispatched:
            return self.clock.now()

        now = self.clock.now()
        try:
            fire_at = compute_fire_time(
                snipe.bid_strategy, snipe.end_time, snipe.snipe_time_seconds, now
            )
        except ValidationError as exc:
            self.lifecycle.fail(snipe.id, SnipeStatus.ACTIVE, f"invalid snipe: {exc}")
            raise SchedulingError(f"{snipe.id}: {exc}") from exc
        late_by = (now - fire_at).total_seconds()
        if snipe.end_time <= now:
            self.lifecycle.fail(snipe.id, SnipeStatus.ACTIVE, MSG_FIRE_WINDOW_MISSED)
            raise SchedulingError(f"{MSG_FIRE_WINDOW_MISSED}: auction {snipe.id} is over")
        if late_by > self.cfg.grace_seconds:
            if not allow_late:
                self.lifecycle.fail(snipe.id, SnipeStatus.ACTIVE, MSG_FIRE_WINDOW_MISSED)
                raise SchedulingError(
                    f"{MSG_FIRE_WINDOW_MISSED} by {late_by:.1f}s for {snipe.id}"
                )
            log.info("%s missed its fire-time by %.1fs; firing now", snipe.id, late_by)
            fire_at = now

        delay = max((fire_at - now).total_seconds(), 0.0)
        entry = _Entry(self.clock.monotonic() + delay, next(self._seq), snipe.id, fire_at)
        heapq.heappush(self._heap, entry)
        self._entries[snipe.id] = entry
        self._wake.set()
        log.info("Admitted %s, fires at %s (in %.1fs)", snipe.id, fire_at.isoformat(), delay)
        return fire_at

    def cancel(self, snipe_id: str) -> None:
        """Cancel a still-active snipe; a no-op if it is already cancelled."""
        if self.lifecycle.transition(
            snipe_id, SnipeStatus.ACTIVE, SnipeStatus.CANCELLED
        ):
            self._entries.pop(snipe_id, None)
            self._wake.set()
            log.info("Cancelled %s", snipe_id)
            return

        snipe = self.repo.get(snipe_id)
        if snipe is None:
            raise SnipeNotFound(snipe_id)
        self._entries.pop(snipe_id, None)
        if snipe.status is SnipeStatus.CANCELLED:
            return
        raise TooLateToCancel(f"too late to cancel: snipe is {snipe.status.value}")

    def reload(self) -> int:
        """Re-admit every persisted active snipe, e.g. after a restart."""
        admitted = 0
        for snipe in self.repo.list_active():
            try:
                self.admit(snipe, allow_late=True)
                admitted += 1
            except SnipeError as exc:
                log.warning("Not re-admitting: %s", exc)
        log.info("Reloaded %d active snipe(s)", admitted)
        return admitted

    async def start(self, reload: bool = True) -> None:
        if self.running:
            return
        self._slots = asyncio.Semaphore(self.cfg.max_concurrent_bids)
        if reload:
            self.reload()
        self._loop_task = asyncio.create_task(self._run(), name="cardsnipe-scheduler")
        log.info("Scheduler started")

    async def stop(self) -> None:
        """Stop waking up; let in-flight bids finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        log.info("Scheduler stopped")

    async def join(self) -> None:
        """Wait for the bids dispatched so far to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ---- wake loop -------------------------------------------------------

    async def _run(self) -> None:
        while True:
            self._wake.clear()
            for snipe_id in self._pop_due():
                try:
                    self._dispatch(snipe_id)
                except Exception:
                    log.exception("Dispatch of %s failed", snipe_id)
            await self.clock.wait(self._wake, self._next_timeout())

    def _pop_due(self) -> list[str]:
        now = self.clock.monotonic()
        due: list[str] = []
        while self._heap and self._heap[0].due <= now:
            entry = heapq.heappop(self._heap)
            # skip stale heap items left behind by cancel/re-admit
            if self._entries.get(entry.snipe_id) is entry:
                del self._entries[entry.snipe_id]
                due.append(entry.snipe_id)
        return due

    def _next_timeout(self) -> Optional[float]:
        while self._heap and self._entries.get(self._heap[0].snipe_id) is not self._heap[0]:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(self._heap[0].due - self.clock.monotonic(), 0.0)

    def _dispatch(self, snipe_id: str) -> None:
        snipe = self.repo.get(snipe_id)
        if snipe is None or snipe.status is not SnipeStatus.ACTIVE:
            log.debug("%s no longer active at fire-time", snipe_id)
            return
        if self.clock.now() >= snipe.end_time:
            log.warning("%s: auction already over at fire-time", snipe_id)
            self.lifecycle.fail(snipe_id, SnipeStatus.ACTIVE, MSG_AUCTION_ENDED)
            return
        task = asyncio.create_task(self._fire(snipe_id), name=f"bid-{snipe_id}")
        self._inflight.add(task)
        self._dispatched.add(snipe_id)
        task.add_done_callback(lambda t: self._done(t, snipe_id))

    async def _fire(self, snipe_id: str) -> None:
        async with self._slots:
            await self.executor.execute(snipe_id)

    def _done(self, task: asyncio.Task, snipe_id: str) -> None:
        self._inflight.discard(task)
        self._dispatched.discard(snipe_id)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Bid task %s crashed: %r", task.get_name(), exc)
