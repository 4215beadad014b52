# cardsnipe/db.py
from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint, update
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from cardsnipe.core import (
    BidStrategy,
    SnipeStatus,
    as_naive_utc,
    can_transition,
    utcnow,
)


# every timestamp column is a plain DateTime holding naive UTC
class Snipe(SQLModel, table=True):
    __tablename__ = "snipes"
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    user_id: str = Field(index=True)
    marketplace: str = Field(default="ebay", max_length=32)
    item_id: str = Field(index=True)
    item_title: str
    item_url: Optional[str] = None
    image_url: Optional[str] = None
    current_price: float = Field(description="Price snapshot at creation")
    max_bid: float
    end_time: datetime = Field(
        index=True, sa_type=DateTime, description="Auction end (UTC)"
    )
    bid_strategy: BidStrategy = Field(default=BidStrategy.LAST)
    snipe_time_seconds: Optional[int] = None
    status: SnipeStatus = Field(default=SnipeStatus.ACTIVE, index=True)
    error_message: Optional[str] = None
    bid_response: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    bid_placed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    bid_attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)


class UserToken(SQLModel, table=True):
    __tablename__ = "user_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_user_tokens_user_provider"),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    provider: str = Field(default="ebay")
    access_token: str
    refresh_token: str
    expires_at: datetime = Field(sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


def make_engine(url: str, echo: bool = False) -> Engine:
    connect_args: dict[str, Any] = {}
    kwargs: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.split("sqlite:///", 1)[-1]).parent.mkdir(
                parents=True, exist_ok=True
            )
    engine = create_engine(url, echo=echo, connect_args=connect_args, **kwargs)
    SQLModel.metadata.create_all(engine)
    return engine


class InvalidTransition(ValueError):
    pass


# fields owned by the state machine or by the auction itself
_PROTECTED = frozenset({"id", "status", "end_time", "created_at"})


class SnipeRepository:
    """Durable store of snipes; the single source of truth for their state."""

    def __init__(self, engine: Engine, now: Callable[[], datetime] = utcnow):
        self.engine = engine
        self._now = now

    def create(self, snipe: Snipe) -> Snipe:
        snipe.end_time = as_naive_utc(snipe.end_time)
        snipe.created_at = snipe.updated_at = self._now()
        with Session(self.engine) as s:
            s.add(snipe)
            s.commit()
            s.refresh(snipe)
            return snipe

    def get(self, snipe_id: str) -> Optional[Snipe]:
        with Session(self.engine) as s:
            return s.get(Snipe, snipe_id)

    def list_active(self) -> List[Snipe]:
        with Session(self.engine) as s:
            stmt = (
                select(Snipe)
                .where(Snipe.status == SnipeStatus.ACTIVE)
                .order_by(Snipe.end_time)
            )
            return list(s.exec(stmt).all())

    def list_stale_processing(self, before: datetime) -> List[Snipe]:
        """Rows that entered `processing` before `before` and never left it."""
        with Session(self.engine) as s:
            stmt = select(Snipe).where(
                Snipe.status == SnipeStatus.PROCESSING,
                Snipe.updated_at < before,
            )
            return list(s.exec(stmt).all())

    def list_for_user(
        self, user_id: str, status: Optional[SnipeStatus] = None
    ) -> List[Snipe]:
        with Session(self.engine) as s:
            stmt = select(Snipe).where(Snipe.user_id == user_id)
            if status is not None:
                stmt = stmt.where(Snipe.status == status)
            stmt = stmt.order_by(Snipe.created_at.desc())
            return list(s.exec(stmt).all())

    def compare_and_transition(
        self,
        snipe_id: str,
        from_status: SnipeStatus,
        to_status: SnipeStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Move `snipe_id` to `to_status` only if it is still in `from_status`.

        One conditional UPDATE; the row count decides who won.
        """
        if not can_transition(from_status, to_status):
            raise InvalidTransition(f"{from_status} -> {to_status}")
        values = dict(fields or {})
        if _PROTECTED & values.keys():
            raise ValueError(f"cannot set {sorted(_PROTECTED & values.keys())}")
        values["status"] = SnipeStatus(to_status)
        values["updated_at"] = self._now()
        stmt = (
            update(Snipe)
            .where(Snipe.id == snipe_id, Snipe.status == SnipeStatus(from_status))
            .values(**values)
        )
        with Session(self.engine) as s:
            result = s.connection().execute(stmt)
            s.commit()
            return result.rowcount == 1

    def update(self, snipe_id: str, fields: dict[str, Any]) -> bool:
        if _PROTECTED & fields.keys():
            raise ValueError(f"cannot update {sorted(_PROTECTED & fields.keys())}")
        values = {**fields, "updated_at": self._now()}
        stmt = update(Snipe).where(Snipe.id == snipe_id).values(**values)
        with Session(self.engine) as s:
            result = s.connection().execute(stmt)
            s.commit()
            return result.rowcount == 1


# ---- token rows ------------------------------------------------------------


def token_get(engine: Engine, user_id: str, provider: str = "ebay") -> Optional[UserToken]:
    with Session(engine) as s:
        return s.exec(
            select(UserToken).where(
                UserToken.user_id == user_id, UserToken.provider == provider
            )
        ).first()


def token_upsert(
    engine: Engine,
    user_id: str,
    access_token: str,
    refresh_token: str,
    expires_at: datetime,
    provider: str = "ebay",
) -> UserToken:
    now = utcnow()
    with Session(engine) as s:
        row = s.exec(
            select(UserToken).where(
                UserToken.user_id == user_id, UserToken.provider == provider
            )
        ).first()
        if row is None:
            row = UserToken(user_id=user_id, provider=provider, created_at=now)
        row.access_token = access_token
        row.refresh_token = refresh_token
        row.expires_at = as_naive_utc(expires_at)
        row.updated_at = now
        s.add(row)
        s.commit()
        s.refresh(row)
        return row
