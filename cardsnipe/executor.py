"""
Bid execution.

One `execute()` call per fire event:

  1. active -> processing through the repository's conditional update. Losing
     that race means someone else owns the snipe, so we stop without touching
     the marketplace.
  2. Re-check the auction end against the wall clock.
  3. Fetch a token. Credential problems are final; the user has to reconnect.
  4. Place the bid, retrying transient failures with exponential backoff while
     the auction still has time left.
  5. processing -> completed (with the marketplace payload) or -> error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from cardsnipe.core import (
    MSG_AUCTION_ENDED,
    MSG_NO_TIME_LEFT,
    AuctionEnded,
    CredentialError,
    CredentialStore,
    MarketplaceClient,
    NoTimeLeft,
    SnipeNotFound,
    SnipeStatus,
    TerminalMarketplaceError,
    TransientMarketplaceError,
)
from cardsnipe.db import Snipe, SnipeRepository
from cardsnipe.lifecycle import SnipeLifecycle
from cardsnipe.settings import ExecutorCfg

log = logging.getLogger("cardsnipe.executor")


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last: BaseException):
        super().__init__(f"{attempts} attempt(s): {last}")
        self.attempts = attempts
        self.last = last

    def user_message(self) -> str:
        return (
            f"marketplace unavailable, gave up after {self.attempts} "
            f"attempt(s): {_reason(self.last)}"
        )


def _reason(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "request timed out"
    return str(exc) or exc.__class__.__name__


class BidExecutor:
    def __init__(
        self,
        repo: SnipeRepository,
        lifecycle: SnipeLifecycle,
        credentials: CredentialStore,
        marketplace: MarketplaceClient,
        clock,
        cfg: ExecutorCfg,
    ):
        self.repo = repo
        self.lifecycle = lifecycle
        self.credentials = credentials
        self.marketplace = marketplace
        self.clock = clock
        self.cfg = cfg

    async def execute(self, snipe_id: str) -> Snipe:
        """Run the bid for `snipe_id` at most once; return the resulting row."""
        snipe = self.repo.get(snipe_id)
        if snipe is None:
            raise SnipeNotFound(snipe_id)
        if snipe.status is not SnipeStatus.ACTIVE:
            log.info("%s already %s; nothing to do", snipe_id, snipe.status.value)
            return snipe

        if not self.lifecycle.transition(
            snipe_id, SnipeStatus.ACTIVE, SnipeStatus.PROCESSING
        ):
            log.info("%s was claimed elsewhere; skipping", snipe_id)
            return self.repo.get(snipe_id)

        try:
            response = await self._run(snipe)
        except (
            CredentialError,
            TerminalMarketplaceError,
            AuctionEnded,
            NoTimeLeft,
            RetriesExhausted,
        ) as exc:
            log.warning("%s failed: %s", snipe_id, exc.user_message())
            self.lifecycle.fail(snipe_id, SnipeStatus.PROCESSING, exc.user_message())
        except Exception as exc:
            log.exception("%s: unexpected error during bid", snipe_id)
            self.lifecycle.fail(
                snipe_id, SnipeStatus.PROCESSING, f"unexpected error: {_reason(exc)}"
            )
        else:
            done = self.lifecycle.transition(
                snipe_id,
                SnipeStatus.PROCESSING,
                SnipeStatus.COMPLETED,
                {
                    "bid_response": response if response is not None else {},
                    "bid_placed_at": self.clock.now(),
                },
            )
            if done:
                log.info("%s: bid of %.2f placed", snipe_id, snipe.max_bid)
            else:
                log.error("%s: bid placed but row was resolved elsewhere", snipe_id)
        return self.repo.get(snipe_id)

    # ------------------------------------------------------------------ #

    def _remaining(self, snipe: Snipe) -> float:
        return (snipe.end_time - self.clock.now()).total_seconds()

    def _budget(self, remaining: float) -> float:
        """Per-call timeout; the call must give up before the minimum window."""
        usable = remaining - self.cfg.min_remaining_seconds
        return max(min(self.cfg.call_timeout_seconds, usable), 0.001)

    def _backoff(self, attempt: int, exc: BaseException) -> float:
        delay = min(
            self.cfg.backoff_base_seconds * (2 ** (attempt - 1)),
            self.cfg.backoff_max_seconds,
        )
        retry_after: Optional[float] = getattr(exc, "retry_after", None)
        if retry_after:
            delay = max(delay, retry_after)
        return delay

    async def _run(self, snipe: Snipe):
        remaining = self._remaining(snipe)
        if remaining <= 0:
            raise AuctionEnded(MSG_AUCTION_ENDED)
        if remaining <= self.cfg.min_remaining_seconds:
            raise NoTimeLeft(MSG_NO_TIME_LEFT)

        try:
            token = await asyncio.wait_for(
                self.credentials.get_valid_token(snipe.user_id),
                self._budget(remaining),
            )
        except asyncio.TimeoutError:
            raise CredentialError("timed out fetching marketplace token") from None

        attempt = 0
        last: Optional[BaseException] = None
        while True:
            remaining = self._remaining(snipe)
            if remaining <= self.cfg.min_remaining_seconds:
                if last is None:
                    raise NoTimeLeft(MSG_NO_TIME_LEFT)
                raise RetriesExhausted(attempt, last)

            attempt += 1
            self.repo.update(snipe.id, {"bid_attempts": attempt})
            try:
                return await asyncio.wait_for(
                    self.marketplace.place_bid(token, snipe.item_id, snipe.max_bid),
                    self._budget(remaining),
                )
            except (TransientMarketplaceError, asyncio.TimeoutError) as exc:
                last = exc
                log.warning(
                    "%s: attempt %d/%d failed: %s",
                    snipe.id,
                    attempt,
                    self.cfg.max_attempts,
                    _reason(exc),
                )

            if attempt >= self.cfg.max_attempts:
                raise RetriesExhausted(attempt, last)
            delay = self._backoff(attempt, last)
            if self._remaining(snipe) - delay <= self.cfg.min_remaining_seconds:
                log.warning("%s: not enough time left to retry", snipe.id)
                raise RetriesExhausted(attempt, last)
            await self.clock.sleep(delay)
