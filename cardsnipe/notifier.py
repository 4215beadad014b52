# cardsnipe/notifier.py
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cardsnipe.core import SnipeStatus, StatusSubscriber

log = logging.getLogger("cardsnipe.notifier")
audit = logging.getLogger("cardsnipe.audit")


@dataclass(frozen=True)
class Transition:
    snipe_id: str
    from_status: SnipeStatus
    to_status: SnipeStatus
    at: datetime


class _Channel:
    def __init__(self, subscriber: StatusSubscriber, maxsize: int):
        self.subscriber = subscriber
        self.queue: asyncio.Queue[Transition] = asyncio.Queue(maxsize=maxsize)
        self.task: Optional[asyncio.Task] = None
        self.dropped = 0


class StatusNotifier:
    """Fans transitions out to subscribers without ever blocking the publisher.

    Each subscriber has its own queue and pump task, so a slow or broken one
    only hurts itself. Per subscriber, transitions arrive in publish order.
    """

    def __init__(self, maxsize: int = 1000, drain_timeout: float = 5.0):
        self._maxsize = maxsize
        self._drain_timeout = drain_timeout
        self._channels: list[_Channel] = []
        self._running = False

    def subscribe(self, subscriber: StatusSubscriber) -> None:
        ch = _Channel(subscriber, self._maxsize)
        self._channels.append(ch)
        if self._running:
            ch.task = asyncio.create_task(self._pump(ch))

    def unsubscribe(self, subscriber: StatusSubscriber) -> None:
        for ch in list(self._channels):
            if ch.subscriber is subscriber:
                self._channels.remove(ch)
                if ch.task:
                    ch.task.cancel()

    def publish(
        self,
        snipe_id: str,
        from_status: SnipeStatus,
        to_status: SnipeStatus,
        at: datetime,
    ) -> None:
        item = Transition(snipe_id, SnipeStatus(from_status), SnipeStatus(to_status), at)
        for ch in list(self._channels):
            try:
                ch.queue.put_nowait(item)
            except asyncio.QueueFull:
                # drop oldest so the newest state still gets through
                ch.dropped += 1
                ch.queue.get_nowait()
                ch.queue.task_done()
                ch.queue.put_nowait(item)
                log.warning(
                    "Subscriber %r is behind; dropped %d transition(s)",
                    ch.subscriber,
                    ch.dropped,
                )

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for ch in self._channels:
            if ch.task is None:
                ch.task = asyncio.create_task(self._pump(ch))

    async def flush(self) -> None:
        """Wait until everything published so far has been delivered."""
        if not self._running:
            return
        await asyncio.gather(*(ch.queue.join() for ch in self._channels))

    async def stop(self, drain: bool = True) -> None:
        """Deliver what is queued, waiting at most `drain_timeout`, then stop."""
        if drain and self._running:
            try:
                await asyncio.wait_for(self.flush(), self._drain_timeout)
            except asyncio.TimeoutError:
                log.warning(
                    "Gave up draining subscribers after %.1fs", self._drain_timeout
                )
        self._running = False
        tasks = [ch.task for ch in self._channels if ch.task]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for ch in self._channels:
            ch.task = None

    async def _pump(self, ch: _Channel) -> None:
        handler = ch.subscriber.on_transition
        is_async = inspect.iscoroutinefunction(handler)
        while True:
            t = await ch.queue.get()
            try:
                args = (t.snipe_id, t.from_status, t.to_status, t.at)
                if is_async:
                    await handler(*args)
                else:
                    await asyncio.to_thread(handler, *args)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception(
                    "Subscriber %r failed on %s %s -> %s",
                    ch.subscriber,
                    t.snipe_id,
                    t.from_status.value,
                    t.to_status.value,
                )
            finally:
                ch.queue.task_done()


class LoggingSubscriber:
    """Audit trail of every transition."""

    async def on_transition(self, snipe_id, from_status, to_status, at) -> None:
        audit.info(
            "snipe %s: %s -> %s at %s",
            snipe_id,
            SnipeStatus(from_status).value,
            SnipeStatus(to_status).value,
            at.isoformat(),
        )


class QueueSubscriber:
    """In-memory channel; consumers read `Transition`s from `.queue`."""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue[Transition] = asyncio.Queue(maxsize=maxsize)

    async def on_transition(self, snipe_id, from_status, to_status, at) -> None:
        await self.queue.put(Transition(snipe_id, from_status, to_status, at))

    def drain(self) -> list[Transition]:
        out = []
        while not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out
