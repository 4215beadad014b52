# cardsnipe/web/api.py
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, List, Optional

from fastapi import FastAPI, Header, HTTPException, Response
from pydantic import BaseModel

from cardsnipe.core import (
    BidNotAllowed,
    SchedulingError,
    SnipeNotFound,
    SnipeStatus,
    TooLateToCancel,
    ValidationError,
)
from cardsnipe.service import SnipeService


class SnipeIn(BaseModel):
    item_id: str
    item_title: str = ""
    item_url: Optional[str] = None
    image_url: Optional[str] = None
    current_price: float
    max_bid: float
    end_time: datetime
    bid_strategy: str = "last"
    snipe_time_seconds: Optional[int] = None


class SnipeOut(BaseModel):
    id: str
    item_id: str
    item_title: str
    current_price: float
    max_bid: float
    end_time: str
    bid_strategy: str
    snipe_time_seconds: Optional[int] = None
    status: str
    error_message: Optional[str] = None
    bid_response: Optional[Any] = None
    bid_placed_at: Optional[str] = None
    created_at: str
    updated_at: str


def _to_out(s) -> SnipeOut:
    return SnipeOut(
        id=s.id,
        item_id=s.item_id,
        item_title=s.item_title,
        current_price=s.current_price,
        max_bid=s.max_bid,
        end_time=s.end_time.isoformat(),
        bid_strategy=s.bid_strategy.value,
        snipe_time_seconds=s.snipe_time_seconds,
        status=s.status.value,
        error_message=s.error_message,
        bid_response=s.bid_response,
        bid_placed_at=s.bid_placed_at.isoformat() if s.bid_placed_at else None,
        created_at=s.created_at.isoformat(),
        updated_at=s.updated_at.isoformat(),
    )


def create_app(service: SnipeService) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    api = FastAPI(
        title="cardsnipe API",
        version="1.0.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    @api.post("/snipes", response_model=SnipeOut, status_code=201)
    async def create(payload: SnipeIn, x_user_id: str = Header(...)):
        try:
            snipe_id = service.create_snipe(
                {**payload.model_dump(), "user_id": x_user_id}
            )
        except ValidationError as exc:
            raise HTTPException(422, str(exc))
        except SchedulingError as exc:
            raise HTTPException(409, str(exc))
        return _to_out(service.get_snipe(snipe_id))

    @api.get("/snipes", response_model=List[SnipeOut])
    async def list_snipes(x_user_id: str = Header(...), status: Optional[SnipeStatus] = None):
        return [_to_out(s) for s in service.list_snipes(x_user_id, status)]

    @api.get("/snipes/{snipe_id}", response_model=SnipeOut)
    async def get(snipe_id: str, x_user_id: str = Header(...)):
        try:
            return _to_out(service.get_snipe(snipe_id, x_user_id))
        except SnipeNotFound:
            raise HTTPException(404, "Snipe not found or not authorized")

    @api.post("/snipes/{snipe_id}/bid", response_model=SnipeOut)
    async def bid_now(snipe_id: str, x_user_id: str = Header(...)):
        try:
            row = await service.bid_now(snipe_id, x_user_id)
        except SnipeNotFound:
            raise HTTPException(404, "Snipe not found or not authorized")
        except BidNotAllowed as exc:
            raise HTTPException(400, str(exc))
        if row.status is SnipeStatus.ERROR:
            raise HTTPException(502, f"Failed to place bid: {row.error_message}")
        return _to_out(row)

    @api.delete("/snipes/{snipe_id}", status_code=204)
    async def cancel(snipe_id: str, x_user_id: str = Header(...)):
        try:
            service.cancel_snipe(snipe_id, x_user_id)
        except SnipeNotFound:
            raise HTTPException(404, "Snipe not found or not authorized")
        except TooLateToCancel as exc:
            raise HTTPException(409, str(exc))
        return Response(status_code=204)

    return api
