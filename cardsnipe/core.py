from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol


class SnipeStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class BidStrategy(str, Enum):
    EARLY = "early"
    LAST = "last"


TERMINAL = frozenset(
    {SnipeStatus.COMPLETED, SnipeStatus.ERROR, SnipeStatus.CANCELLED}
)

# active -> error is only taken by the scheduler and the sweeper
TRANSITIONS: dict[SnipeStatus, frozenset[SnipeStatus]] = {
    SnipeStatus.ACTIVE: frozenset(
        {SnipeStatus.PROCESSING, SnipeStatus.CANCELLED, SnipeStatus.ERROR}
    ),
    SnipeStatus.PROCESSING: frozenset({SnipeStatus.COMPLETED, SnipeStatus.ERROR}),
    SnipeStatus.COMPLETED: frozenset(),
    SnipeStatus.ERROR: frozenset(),
    SnipeStatus.CANCELLED: frozenset(),
}

MSG_FIRE_WINDOW_MISSED = "fire window missed"
MSG_AUCTION_ENDED = "auction ended before bid could be placed"
MSG_POSSIBLE_CRASH = "execution did not complete, possible crash"
MSG_NO_TIME_LEFT = "not enough time left to bid"


def can_transition(from_status: SnipeStatus, to_status: SnipeStatus) -> bool:
    return SnipeStatus(to_status) in TRANSITIONS[SnipeStatus(from_status)]


def utcnow() -> datetime:
    """Naive UTC, the form every timestamp is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def compute_fire_time(
    strategy: BidStrategy,
    end_time: datetime,
    snipe_time_seconds: Optional[int],
    now: datetime,
) -> datetime:
    """`early` fires right away; `last` fires `snipe_time_seconds` before the end."""
    if BidStrategy(strategy) is BidStrategy.EARLY:
        return now
    if not snipe_time_seconds or snipe_time_seconds <= 0:
        raise ValidationError("snipe_time_seconds must be a positive integer")
    return end_time - timedelta(seconds=snipe_time_seconds)


# --------------------------------------------------------------------------- #
#  Errors
# --------------------------------------------------------------------------- #


class SnipeError(Exception):
    """Base for everything the sniping core raises."""


class ValidationError(SnipeError):
    """Bad input at creation; nothing was stored."""


class SchedulingError(SnipeError):
    """The fire window was already missed at admission time."""


class TooLateToCancel(SnipeError):
    """Cancellation after bid execution started."""


class SnipeNotFound(SnipeError):
    """Unknown id, or owned by someone else."""


class BidNotAllowed(SnipeError):
    """Immediate bid on a snipe that is no longer active."""


class CredentialError(SnipeError):
    """Token missing, revoked or not refreshable; the user must reconnect."""

    def user_message(self) -> str:
        return f"marketplace account needs to be reconnected: {self}"


class MarketplaceError(SnipeError):
    def __init__(self, reason: str, *, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class TransientMarketplaceError(MarketplaceError):
    """Timeouts, 5xx, rate limits. Retried while time remains."""

    def __init__(
        self,
        reason: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(reason, status_code=status_code)
        self.retry_after = retry_after


class TerminalMarketplaceError(MarketplaceError):
    """The marketplace refused the bid. Never retried."""

    def user_message(self) -> str:
        return f"marketplace rejected the bid: {self.reason}"


class AuctionEnded(SnipeError):
    def user_message(self) -> str:
        return MSG_AUCTION_ENDED


class NoTimeLeft(SnipeError):
    """The auction is still running but closes inside the minimum bid window."""

    def user_message(self) -> str:
        return MSG_NO_TIME_LEFT


class CrashRecoveryError(SnipeError):
    def user_message(self) -> str:
        return MSG_POSSIBLE_CRASH


# --------------------------------------------------------------------------- #
#  Collaborators
# --------------------------------------------------------------------------- #


class CredentialStore(ABC):
    """Hands out a usable marketplace access token for a user."""

    @abstractmethod
    async def get_valid_token(self, user_id: str) -> str: ...


class MarketplaceClient(ABC):
    """Places bids. Raises TransientMarketplaceError / TerminalMarketplaceError."""

    @abstractmethod
    async def place_bid(self, token: str, item_id: str, max_bid: float) -> Any: ...

    async def aclose(self) -> None: ...


class StatusSubscriber(Protocol):
    def on_transition(
        self,
        snipe_id: str,
        from_status: SnipeStatus,
        to_status: SnipeStatus,
        at: datetime,
    ) -> Any: ...
