from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from cardsnipe.clock import SystemClock
from cardsnipe.core import (
    BidNotAllowed,
    BidStrategy,
    CredentialStore,
    MarketplaceClient,
    SchedulingError,
    SnipeNotFound,
    SnipeStatus,
    ValidationError,
    as_naive_utc,
)
from cardsnipe.credentials import DbCredentialStore
from cardsnipe.db import Snipe, SnipeRepository, make_engine
from cardsnipe.executor import BidExecutor
from cardsnipe.lifecycle import SnipeLifecycle
from cardsnipe.marketplace import EbayClient
from cardsnipe.notifier import LoggingSubscriber, StatusNotifier
from cardsnipe.scheduler import Scheduler
from cardsnipe.settings import Settings
from cardsnipe.sweeper import ReconciliationSweeper

log = logging.getLogger("cardsnipe.service")


class SnipeCreate(BaseModel):
    user_id: str = Field(min_length=1)
    item_id: str = Field(min_length=1)
    item_title: str = ""
    item_url: Optional[str] = None
    image_url: Optional[str] = None
    marketplace: str = "ebay"
    current_price: float = Field(ge=0)
    max_bid: float = Field(gt=0)
    end_time: datetime
    bid_strategy: BidStrategy = BidStrategy.LAST
    snipe_time_seconds: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _ceiling(self):
        if self.max_bid < self.current_price:
            raise ValueError("max_bid must be at least the current price")
        return self


class SnipeService:
    """What the surrounding application talks to."""

    def __init__(
        self,
        repo: SnipeRepository,
        credentials: CredentialStore,
        marketplace: MarketplaceClient,
        settings: Settings,
        clock=None,
        notifier: Optional[StatusNotifier] = None,
    ):
        self.repo = repo
        self.settings = settings
        self.clock = clock or SystemClock()
        self.notifier = notifier or StatusNotifier()
        self.marketplace = marketplace
        self.lifecycle = SnipeLifecycle(repo, self.notifier, self.clock)
        self.executor = BidExecutor(
            repo, self.lifecycle, credentials, marketplace, self.clock, settings.executor
        )
        self.scheduler = Scheduler(
            repo, self.lifecycle, self.executor, self.clock, settings.scheduler
        )
        self.sweeper = ReconciliationSweeper(
            repo,
            self.lifecycle,
            self.scheduler,
            self.clock,
            settings.sweeper,
        )
        self._aps: Optional[AsyncIOScheduler] = None

    async def start(self) -> None:
        await self.notifier.start()
        await self.scheduler.start()
        self._aps = AsyncIOScheduler(timezone="UTC")
        self.sweeper.install(self._aps)
        self._aps.start()
        log.info("cardsnipe service started")

    async def stop(self) -> None:
        if self._aps is not None and self._aps.running:
            self._aps.shutdown(wait=False)
        self._aps = None
        await self.scheduler.stop()
        await self.notifier.stop()
        await self.marketplace.aclose()
        log.info("cardsnipe service stopped")

    # ---- user-facing operations ------------------------------------------

    def create_snipe(self, params: SnipeCreate | dict[str, Any], *, admit: bool = True) -> str:
        """Validate, persist as `active` and hand to the scheduler."""
        if not isinstance(params, SnipeCreate):
            try:
                params = SnipeCreate.model_validate(params)
            except PydanticValidationError as exc:
                raise ValidationError(_describe(exc)) from exc

        now = self.clock.now()
        end_time = as_naive_utc(params.end_time)
        if end_time <= now:
            raise ValidationError("auction has already ended")

        snipe_seconds = params.snipe_time_seconds
        if params.bid_strategy is BidStrategy.LAST:
            snipe_seconds = snipe_seconds or self.settings.scheduler.default_snipe_seconds
            fire_at = end_time - timedelta(seconds=snipe_seconds)
            if fire_at <= now:
                raise SchedulingError(
                    f"fire window already passed: bidding {snipe_seconds}s before "
                    f"an auction that ends in {(end_time - now).total_seconds():.0f}s"
                )

        snipe = self.repo.create(
            Snipe(
                user_id=params.user_id,
                marketplace=params.marketplace,
                item_id=params.item_id,
                item_title=params.item_title,
                item_url=params.item_url,
                image_url=params.image_url,
                current_price=params.current_price,
                max_bid=params.max_bid,
                end_time=end_time,
                bid_strategy=params.bid_strategy,
                snipe_time_seconds=snipe_seconds,
                status=SnipeStatus.ACTIVE,
            )
        )
        log.info(
            "Created snipe %s on %s (max %.2f, %s)",
            snipe.id,
            snipe.item_id,
            snipe.max_bid,
            snipe.bid_strategy.value,
        )
        if admit:
            self.scheduler.admit(snipe)
        return snipe.id

    def cancel_snipe(self, snipe_id: str, user_id: str) -> Snipe:
        self.get_snipe(snipe_id, user_id)
        self.scheduler.cancel(snipe_id)
        return self.repo.get(snipe_id)

    async def bid_now(self, snipe_id: str, user_id: str) -> Snipe:
        """Place the bid now instead of at the fire-time, via the same executor."""
        snipe = self.get_snipe(snipe_id, user_id)
        if snipe.status is not SnipeStatus.ACTIVE:
            raise BidNotAllowed(f"snipe is already {snipe.status.value}")
        log.info("Immediate bid requested for %s by %s", snipe_id, user_id)
        row = await self.executor.execute(snipe_id)
        if row.status not in (SnipeStatus.COMPLETED, SnipeStatus.ERROR):
            raise BidNotAllowed(f"snipe is already {row.status.value}")
        return row

    def get_snipe(self, snipe_id: str, user_id: Optional[str] = None) -> Snipe:
        snipe = self.repo.get(snipe_id)
        if snipe is None or (user_id is not None and snipe.user_id != user_id):
            raise SnipeNotFound("snipe not found or not authorized")
        return snipe

    def list_snipes(self, user_id: str, status: Optional[SnipeStatus] = None) -> List[Snipe]:
        return self.repo.list_for_user(user_id, status)


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "params"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def build_service(settings: Settings) -> SnipeService:
    clock = SystemClock()
    engine = make_engine(settings.database.url)
    notifier = StatusNotifier()
    notifier.subscribe(LoggingSubscriber())
    return SnipeService(
        SnipeRepository(engine),
        DbCredentialStore(engine, settings.credentials, clock),
        EbayClient(settings.marketplace),
        settings,
        clock=clock,
        notifier=notifier,
    )
