# tests/test_service.py

"""End-to-end scenarios through SnipeService.create_snipe / cancel_snipe."""

import asyncio
from datetime import timedelta

import pytest

from conftest import settle

from cardsnipe.core import (
    BidNotAllowed,
    BidStrategy,
    SchedulingError,
    SnipeNotFound,
    SnipeStatus,
    TooLateToCancel,
    ValidationError,
)
from cardsnipe.db import Snipe
from cardsnipe.service import SnipeCreate
from sqlmodel import Session, select


def run(coro):
    return asyncio.run(coro)


def _params(harness, **overrides) -> dict:
    params = {
        "user_id": "collector-1",
        "item_id": "v1|276543210987|0",
        "item_title": "2003 Topps Chrome LeBron James RC #111",
        "current_price": 64.0,
        "max_bid": 100.0,
        "end_time": harness.clock.now() + timedelta(seconds=60),
        "bid_strategy": "early",
    }
    params.update(overrides)
    return params


def _row_count(harness) -> int:
    with Session(harness.repo.engine) as s:
        return len(s.exec(select(Snipe)).all())


def test_early_snipe_fires_immediately_and_completes(harness):
    async def scenario():
        await harness.start()
        snipe_id = harness.service.create_snipe(_params(harness, max_bid=100))
        await settle()
        await harness.scheduler.join()
        await harness.stop()
        return snipe_id

    snipe_id = run(scenario())
    [call] = harness.marketplace.calls
    assert call.max_bid == 100
    row = harness.service.get_snipe(snipe_id)
    assert row.status is SnipeStatus.COMPLETED
    assert row.bid_response == harness.marketplace.response
    assert harness.events.path(snipe_id) == ["active", "processing", "completed"]


def test_last_snipe_with_window_already_gone_is_rejected(harness):
    params = _params(
        harness,
        end_time=harness.clock.now() + timedelta(seconds=5),
        bid_strategy="last",
        snipe_time_seconds=30,
    )
    with pytest.raises(SchedulingError):
        harness.service.create_snipe(params)
    assert _row_count(harness) == 0


def test_last_snipe_uses_default_lead_time(harness):
    snipe_id = harness.service.create_snipe(
        _params(harness, bid_strategy="last", end_time=harness.clock.now() + timedelta(minutes=5))
    )
    row = harness.repo.get(snipe_id)
    assert row.bid_strategy is BidStrategy.LAST
    assert row.snipe_time_seconds == 30
    assert harness.scheduler.is_pending(snipe_id)


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_bid": 50.0},  # below current price
        {"max_bid": 0},
        {"bid_strategy": "last", "snipe_time_seconds": 0},
        {"bid_strategy": "last", "snipe_time_seconds": -10},
        {"bid_strategy": "sometime"},
        {"item_id": ""},
    ],
)
def test_invalid_params_create_nothing(harness, overrides):
    with pytest.raises(ValidationError):
        harness.service.create_snipe(_params(harness, **overrides))
    assert _row_count(harness) == 0


def test_auction_already_over_is_a_validation_error(harness):
    with pytest.raises(ValidationError, match="already ended"):
        harness.service.create_snipe(
            _params(harness, end_time=harness.clock.now() - timedelta(seconds=1))
        )


def test_accepts_model_instance(harness):
    params = SnipeCreate(**_params(harness, bid_strategy="last", snipe_time_seconds=10))
    snipe_id = harness.service.create_snipe(params)
    assert harness.repo.get(snipe_id).snipe_time_seconds == 10


def test_cancel_while_active(harness):
    snipe_id = harness.service.create_snipe(
        _params(harness, bid_strategy="last", snipe_time_seconds=30,
                end_time=harness.clock.now() + timedelta(minutes=10))
    )

    async def scenario():
        await harness.start()
        row = harness.service.cancel_snipe(snipe_id, "collector-1")
        await harness.clock.advance(600)
        await harness.scheduler.join()
        await harness.stop()
        return row

    row = run(scenario())
    assert row.status is SnipeStatus.CANCELLED
    assert row.error_message is None and row.bid_response is None
    assert harness.marketplace.calls == []


def test_cancel_by_someone_else_looks_like_not_found(harness):
    snipe_id = harness.service.create_snipe(
        _params(harness, bid_strategy="last", snipe_time_seconds=30,
                end_time=harness.clock.now() + timedelta(minutes=10))
    )
    with pytest.raises(SnipeNotFound):
        harness.service.cancel_snipe(snipe_id, "someone-else")
    assert harness.status(snipe_id) is SnipeStatus.ACTIVE


def test_cancel_after_completion_is_too_late(harness):
    async def scenario():
        await harness.start()
        snipe_id = harness.service.create_snipe(_params(harness))
        await settle()
        await harness.scheduler.join()
        await harness.stop()
        return snipe_id

    snipe_id = run(scenario())
    with pytest.raises(TooLateToCancel):
        harness.service.cancel_snipe(snipe_id, "collector-1")
    assert harness.status(snipe_id) is SnipeStatus.COMPLETED


def test_list_snipes_is_scoped_to_owner(harness):
    far = harness.clock.now() + timedelta(hours=1)
    mine = harness.service.create_snipe(
        _params(harness, bid_strategy="last", snipe_time_seconds=30, end_time=far)
    )
    harness.service.create_snipe(
        _params(harness, user_id="other", bid_strategy="last", snipe_time_seconds=30, end_time=far)
    )
    assert [s.id for s in harness.service.list_snipes("collector-1")] == [mine]


def test_full_service_start_registers_sweeper(harness):
    from cardsnipe.sweeper import JOB_ID

    async def scenario():
        await harness.service.start()
        job = harness.service._aps.get_job(JOB_ID)
        await harness.service.stop()
        return job

    job = run(scenario())
    assert job is not None
    assert harness.marketplace.closed


def test_bid_now_places_a_pending_snipe_immediately(harness):
    snipe_id = harness.service.create_snipe(
        _params(harness, bid_strategy="last", snipe_time_seconds=30,
                end_time=harness.clock.now() + timedelta(minutes=10))
    )

    async def scenario():
        await harness.start()
        row = await harness.service.bid_now(snipe_id, "collector-1")
        # the scheduled fire later finds the row resolved
        await harness.clock.advance(600)
        await harness.scheduler.join()
        await harness.stop()
        return row

    row = run(scenario())
    assert row.status is SnipeStatus.COMPLETED
    assert row.bid_response == harness.marketplace.response
    assert len(harness.marketplace.calls) == 1


def test_bid_now_refuses_resolved_snipe(harness):
    snipe_id = harness.service.create_snipe(
        _params(harness, bid_strategy="last", snipe_time_seconds=30,
                end_time=harness.clock.now() + timedelta(minutes=10))
    )
    harness.service.cancel_snipe(snipe_id, "collector-1")

    with pytest.raises(BidNotAllowed, match="already cancelled"):
        run(harness.service.bid_now(snipe_id, "collector-1"))
    assert harness.marketplace.calls == []


def test_bid_now_checks_ownership(harness):
    snipe = harness.add()
    with pytest.raises(SnipeNotFound):
        run(harness.service.bid_now(snipe.id, "someone-else"))
    assert harness.status(snipe.id) is SnipeStatus.ACTIVE
