import asyncio
from datetime import datetime
from typing import Annotated, Optional

import typer

from cardsnipe.clock import SystemClock
from cardsnipe.core import BidStrategy, SnipeError, SnipeStatus
from cardsnipe.credentials import DbCredentialStore
from cardsnipe.db import make_engine
from cardsnipe.service import SnipeService, build_service
from cardsnipe.settings import configure_logging, load_settings

app = typer.Typer(help="cardsnipe CLI")


def _service() -> SnipeService:
    settings = load_settings()
    configure_logging(settings.logging)
    return build_service(settings)


async def _run_forever(service: SnipeService) -> None:
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()


@app.command()
def start():
    """Run the sniping daemon (scheduler + reconciliation sweep)."""
    service = _service()
    print("cardsnipe started – Ctrl+C to quit")
    try:
        asyncio.run(_run_forever(service))
    except (KeyboardInterrupt, SystemExit):
        pass


@app.command()
def ls(
    user: Annotated[str, typer.Option("--user", "-u", help="Owner user id.")],
    status: Annotated[
        Optional[SnipeStatus], typer.Option("--status", "-s", help="Only this status.")
    ] = None,
):
    """Show a user's snipes."""
    service = _service()
    for row in service.list_snipes(user, status):
        print(
            f"{row.id[:8]} | {row.end_time:%Y-%m-%d %H:%M:%S} | {row.item_title[:40]:40} "
            f"| ${row.max_bid:,.2f} | {row.status.value}"
            + (f" ({row.error_message})" if row.error_message else "")
        )


@app.command()
def create(
    user: Annotated[str, typer.Option("--user", "-u")],
    item_id: Annotated[str, typer.Option("--item", "-i", help="Marketplace item id.")],
    max_bid: Annotated[float, typer.Option("--max-bid", "-m")],
    current_price: Annotated[float, typer.Option("--price", "-p")],
    end_time: Annotated[
        datetime, typer.Option("--ends", help="Auction end, UTC (ISO format).")
    ],
    title: Annotated[str, typer.Option("--title", "-t")] = "",
    strategy: Annotated[BidStrategy, typer.Option("--strategy")] = BidStrategy.LAST,
    seconds: Annotated[
        Optional[int], typer.Option("--seconds", help="Seconds before end to bid.")
    ] = None,
):
    """Store a snipe; a running daemon picks it up on its next sweep."""
    service = _service()
    try:
        snipe_id = service.create_snipe(
            {
                "user_id": user,
                "item_id": item_id,
                "item_title": title,
                "current_price": current_price,
                "max_bid": max_bid,
                "end_time": end_time,
                "bid_strategy": strategy,
                "snipe_time_seconds": seconds,
            },
            admit=False,
        )
    except SnipeError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1)
    print(snipe_id)


@app.command()
def cancel(
    snipe_id: str,
    user: Annotated[str, typer.Option("--user", "-u")],
):
    """Cancel a snipe that has not fired yet."""
    service = _service()
    try:
        service.cancel_snipe(snipe_id, user)
    except SnipeError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1)
    print("cancelled")


@app.command()
def bid(
    snipe_id: str,
    user: Annotated[str, typer.Option("--user", "-u")],
):
    """Place a snipe's bid right now instead of at its fire-time."""
    service = _service()

    async def _bid():
        try:
            return await service.bid_now(snipe_id, user)
        finally:
            await service.marketplace.aclose()

    try:
        row = asyncio.run(_bid())
    except SnipeError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1)
    if row.status is SnipeStatus.ERROR:
        typer.echo(f"error: failed to place bid: {row.error_message}", err=True)
        raise typer.Exit(1)
    print(f"bid placed: {row.bid_response}")


@app.command()
def connect(
    user: Annotated[str, typer.Option("--user", "-u")],
    access_token: Annotated[str, typer.Option("--access-token")],
    refresh_token: Annotated[str, typer.Option("--refresh-token")],
    expires_in: Annotated[int, typer.Option("--expires-in")] = 7200,
):
    """Store marketplace OAuth tokens for a user."""
    settings = load_settings()
    configure_logging(settings.logging)
    store = DbCredentialStore(
        make_engine(settings.database.url), settings.credentials, SystemClock()
    )
    row = store.save_token(user, access_token, refresh_token, expires_in)
    print(f"token stored for {user}, expires {row.expires_at:%Y-%m-%d %H:%M:%S} UTC")


if __name__ == "__main__":
    app()
