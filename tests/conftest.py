# tests/conftest.py

"""Shared fixtures: in-memory database, simulated clock, fake collaborators."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest

from cardsnipe.core import (
    BidStrategy,
    CredentialError,
    CredentialStore,
    MarketplaceClient,
    SnipeStatus,
)
from cardsnipe.db import Snipe, SnipeRepository, make_engine
from cardsnipe.notifier import StatusNotifier
from cardsnipe.service import SnipeService
from cardsnipe.settings import LoggingCfg, Settings

START = datetime(2026, 3, 14, 18, 0, 0)


async def settle(rounds: int = 100) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Simulated wall + monotonic clock.

    Waits registered through `wait()` only complete when the test calls
    `advance()`. Executor back-off sleeps jump time forward immediately.
    """

    def __init__(self, start: datetime = START):
        self._wall = start
        self._mono = 0.0
        self._timers: list[tuple[float, asyncio.Future]] = []
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._wall

    def monotonic(self) -> float:
        return self._mono

    def jump_wall(self, seconds: float) -> None:
        """Host clock step; the monotonic clock does not notice."""
        self._wall += timedelta(seconds=seconds)

    def _move_to(self, target: float) -> None:
        if target > self._mono:
            self._wall += timedelta(seconds=target - self._mono)
            self._mono = target
        keep = []
        for deadline, fut in self._timers:
            if fut.done():
                continue
            if deadline <= self._mono:
                fut.set_result(None)
            else:
                keep.append((deadline, fut))
        self._timers = keep

    async def _timer(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self._timers.append((self._mono + seconds, fut))
        await fut

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._move_to(self._mono + max(seconds, 0))
        await asyncio.sleep(0)

    async def wait(self, event: asyncio.Event, timeout: Optional[float]) -> bool:
        if event.is_set():
            return True
        if timeout is None:
            await event.wait()
            return True
        if timeout <= 0:
            await asyncio.sleep(0)
            return False
        waiter = asyncio.ensure_future(event.wait())
        timer = asyncio.ensure_future(self._timer(timeout))
        try:
            done, _ = await asyncio.wait(
                {waiter, timer}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            timer.cancel()
        return waiter in done

    async def advance(self, seconds: float) -> None:
        target = self._mono + seconds
        while True:
            await settle()
            due = [d for d, f in self._timers if not f.done() and d <= target]
            if not due:
                break
            self._move_to(min(due))
        self._move_to(target)
        await settle()


@dataclass
class BidCall:
    token: str
    item_id: str
    max_bid: float
    at: datetime


class FakeMarketplace(MarketplaceClient):
    """Records calls; raises queued exceptions first, then succeeds."""

    def __init__(self, clock: FakeClock, outcomes: Optional[list] = None):
        self.clock = clock
        self.outcomes = list(outcomes or [])
        self.calls: list[BidCall] = []
        self.gate: Optional[asyncio.Event] = None
        self.response: Any = {"proxyBidId": "pb-7781", "auction": {"auctionStatus": "ACTIVE"}}
        self.closed = False

    async def place_bid(self, token: str, item_id: str, max_bid: float) -> Any:
        self.calls.append(BidCall(token, item_id, max_bid, self.clock.now()))
        if self.gate is not None:
            await self.gate.wait()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return self.response

    async def aclose(self) -> None:
        self.closed = True


class FakeCredentials(CredentialStore):
    def __init__(self, token: str = "user-token", error: Optional[str] = None):
        self.token = token
        self.error = error
        self.calls: list[str] = []

    async def get_valid_token(self, user_id: str) -> str:
        self.calls.append(user_id)
        if self.error:
            raise CredentialError(self.error)
        return self.token


class RecordingSubscriber:
    def __init__(self):
        self.seen: list[tuple[str, SnipeStatus, SnipeStatus, datetime]] = []

    async def on_transition(self, snipe_id, from_status, to_status, at):
        self.seen.append((snipe_id, from_status, to_status, at))

    def path(self, snipe_id: str) -> list[str]:
        out = []
        for sid, old, new, _ in self.seen:
            if sid == snipe_id:
                if not out:
                    out.append(old.value)
                out.append(new.value)
        return out


class Harness:
    """A SnipeService wired to fakes and a simulated clock."""

    def __init__(self, engine, settings: Settings, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.repo = SnipeRepository(engine, now=self.clock.now)
        self.marketplace = FakeMarketplace(self.clock)
        self.credentials = FakeCredentials()
        self.events = RecordingSubscriber()
        self.notifier = StatusNotifier()
        self.notifier.subscribe(self.events)
        self.service = SnipeService(
            self.repo,
            self.credentials,
            self.marketplace,
            settings,
            clock=self.clock,
            notifier=self.notifier,
        )
        self.scheduler = self.service.scheduler
        self.executor = self.service.executor
        self.sweeper = self.service.sweeper

    async def start(self) -> None:
        await self.notifier.start()
        await self.scheduler.start()
        await settle()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.notifier.stop()

    def add(self, **overrides) -> Snipe:
        """Insert a row directly, bypassing validation and admission."""
        return self.repo.create(make_snipe(self.clock, **overrides))

    def status(self, snipe_id: str) -> SnipeStatus:
        return self.repo.get(snipe_id).status


def make_snipe(clock: FakeClock, **overrides) -> Snipe:
    fields = dict(
        user_id="collector-1",
        item_id="v1|276543210987|0",
        item_title="2018 Panini Prizm Luka Doncic #280 PSA 10",
        current_price=80.0,
        max_bid=100.0,
        end_time=clock.now() + timedelta(seconds=60),
        bid_strategy=BidStrategy.EARLY,
        snipe_time_seconds=None,
        status=SnipeStatus.ACTIVE,
    )
    fields.update(overrides)
    return Snipe(**fields)


@pytest.fixture
def engine():
    return make_engine("sqlite://")


@pytest.fixture
def settings() -> Settings:
    return Settings(logging=LoggingCfg(file=None))


@pytest.fixture
def harness(engine, settings) -> Harness:
    return Harness(engine, settings)
