"""
Marketplace OAuth tokens, per user.

Tokens live in the `user_tokens` table. A token that expires within
`refresh_margin_seconds` is refreshed with the stored refresh token before it
is handed out; eBay may rotate the refresh token, in which case the new one is
kept.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import weakref
from datetime import timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy.engine import Engine

from cardsnipe.core import CredentialError, CredentialStore
from cardsnipe.db import UserToken, token_get, token_upsert
from cardsnipe.settings import CredentialsCfg

log = logging.getLogger("cardsnipe.credentials")


class DbCredentialStore(CredentialStore):
    def __init__(
        self,
        engine: Engine,
        cfg: CredentialsCfg,
        clock,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.engine = engine
        self.cfg = cfg
        self.clock = clock
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=cfg.timeout_seconds)
        )
        # entries vanish once no caller holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def save_token(
        self, user_id: str, access_token: str, refresh_token: str, expires_in: int
    ) -> UserToken:
        expires_at = self.clock.now() + timedelta(seconds=expires_in)
        return token_upsert(
            self.engine,
            user_id,
            access_token,
            refresh_token,
            expires_at,
            provider=self.cfg.provider,
        )

    async def get_valid_token(self, user_id: str) -> str:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        async with lock:
            row = token_get(self.engine, user_id, self.cfg.provider)
            if row is None:
                raise CredentialError(f"no {self.cfg.provider} account connected")
            if self._fresh(row):
                return row.access_token
            log.info("Token for %s expires at %s; refreshing", user_id, row.expires_at)
            return await self._refresh(row)

    def _fresh(self, row: UserToken) -> bool:
        left = (row.expires_at - self.clock.now()).total_seconds()
        return left > self.cfg.refresh_margin_seconds

    async def _refresh(self, row: UserToken) -> str:
        if not (self.cfg.client_id and self.cfg.client_secret):
            raise CredentialError("OAuth client credentials are not configured")

        basic = base64.b64encode(
            f"{self.cfg.client_id}:{self.cfg.client_secret}".encode()
        ).decode()
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": f"Basic {basic}",
        }
        data = {
            "grant_type": "refresh_token",
            "refresh_token": row.refresh_token,
            "scope": " ".join(self.cfg.scopes),
        }
        try:
            async with self._client_factory() as client:
                r = await client.post(self.cfg.token_url, headers=headers, data=data)
        except httpx.HTTPError as exc:
            raise CredentialError(f"could not reach token endpoint: {exc}") from exc

        if r.status_code != 200:
            try:
                body = r.json()
            except ValueError:
                body = {}
            error = body.get("error", "")
            if error == "invalid_grant":
                raise CredentialError("refresh token expired or revoked")
            raise CredentialError(
                f"token refresh failed ({r.status_code} {error or r.text[:200]})".strip()
            )

        payload = r.json()
        try:
            access_token = payload["access_token"]
        except KeyError:
            raise CredentialError("token refresh response had no access_token") from None
        expires_in = int(payload.get("expires_in", 7200))
        refresh_token = payload.get("refresh_token") or row.refresh_token
        self.save_token(row.user_id, access_token, refresh_token, expires_in)
        log.info("Refreshed token for %s (expires in %ss)", row.user_id, expires_in)
        return access_token
