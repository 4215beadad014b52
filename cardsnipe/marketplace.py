"""
eBay Buy Offer API client.

Only the one call the sniper needs: `place_proxy_bid`. Responses are sorted into
the error classes the executor acts on:

  • transport errors, timeouts, 5xx, 429  -> TransientMarketplaceError
  • 401                                   -> CredentialError
  • any other 4xx                         -> TerminalMarketplaceError
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from cardsnipe.core import (
    CredentialError,
    MarketplaceClient,
    TerminalMarketplaceError,
    TransientMarketplaceError,
)
from cardsnipe.settings import MarketplaceCfg

log = logging.getLogger("cardsnipe.marketplace")

_RETRYABLE = {408, 425, 429}


def _error_reason(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return f"HTTP {r.status_code}: {r.text[:200]}".strip()
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors and isinstance(errors, list):
        first = errors[0]
        msg = first.get("longMessage") or first.get("message")
        if msg:
            return msg
    return f"HTTP {r.status_code}"


def _retry_after(r: httpx.Response) -> Optional[float]:
    value = r.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class EbayClient(MarketplaceClient):
    def __init__(
        self,
        cfg: MarketplaceCfg,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.cfg = cfg
        self._client = client or httpx.AsyncClient(
            base_url=cfg.api_base_url.rstrip("/"),
            timeout=cfg.timeout_seconds,
        )

    async def place_bid(self, token: str, item_id: str, max_bid: float) -> Any:
        url = f"/buy/offer/v1_beta/bidding/{item_id}/place_proxy_bid"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-EBAY-C-MARKETPLACE-ID": self.cfg.marketplace_id,
        }
        body = {
            "maxAmount": {"value": f"{max_bid:.2f}", "currency": self.cfg.currency}
        }
        try:
            r = await self._client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientMarketplaceError(f"timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientMarketplaceError(f"network error: {exc}") from exc

        if r.is_success:
            log.info("Proxy bid on %s accepted (max %.2f)", item_id, max_bid)
            try:
                return r.json()
            except ValueError:
                return {"status_code": r.status_code, "body": r.text}

        reason = _error_reason(r)
        if r.status_code >= 500 or r.status_code in _RETRYABLE:
            raise TransientMarketplaceError(
                reason, status_code=r.status_code, retry_after=_retry_after(r)
            )
        if r.status_code == 401:
            raise CredentialError(f"marketplace rejected the access token ({reason})")
        raise TerminalMarketplaceError(reason, status_code=r.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()
