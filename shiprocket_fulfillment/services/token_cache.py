"""
Shiprocket Token Cache

The only component that calls the Shiprocket login endpoint. The token is
stored in the settings store under one key per deployment:

    {"token": "...", "expires_at": <epoch ms>, "failed": false,
     "failure_expires_at": null}

Rules:
- failed and inside the cooldown window -> AuthCooldownError, no login call.
  Repeated bad credentials must not keep hitting Shiprocket's auth endpoint
  or the account gets locked.
- token valid for longer than the refresh buffer -> reuse it. A token is
  never handed out if it could expire in the middle of a fulfillment run.
- otherwise log in again and persist the outcome.

Refreshes are serialized per process (one lock per settings key, shared by
every TokenCache instance) and re-read the store once the lock is held, so
a waiter sees a cooldown written by the previous holder instead of
overwriting it with another login attempt.
"""
import asyncio
import logging
import math
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import (
    AuthCooldownError,
    AuthFailedError,
    ShiprocketAPIError,
)
from shiprocket_fulfillment.services.credentials import mask_email, resolve_credentials
from shiprocket_fulfillment.services.shiprocket_client import ShiprocketClient
from shiprocket_fulfillment.services.stores import SettingsStore

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE


def now_ms() -> int:
    return int(time.time() * 1000)


# Keyed by event loop: an asyncio.Lock cannot be shared between loops
_refresh_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = weakref.WeakKeyDictionary()


def get_refresh_lock(settings_key: str) -> asyncio.Lock:
    """Process-wide refresh lock for one token settings key."""
    locks = _refresh_locks.setdefault(asyncio.get_running_loop(), {})
    if settings_key not in locks:
        locks[settings_key] = asyncio.Lock()
    return locks[settings_key]


@dataclass
class CachedToken:
    token: Optional[str] = None
    expires_at: int = 0
    failed: bool = False
    failure_expires_at: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedToken":
        return cls(
            token=data.get("token") or None,
            expires_at=int(data.get("expires_at") or 0),
            failed=bool(data.get("failed")),
            failure_expires_at=int(data["failure_expires_at"]) if data.get("failure_expires_at") else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "expires_at": self.expires_at,
            "failed": self.failed,
            "failure_expires_at": self.failure_expires_at,
        }

    def in_cooldown(self, now: int) -> bool:
        return self.failed and self.failure_expires_at is not None and now < self.failure_expires_at

    def is_usable(self, now: int, buffer_ms: int) -> bool:
        return bool(self.token) and not self.failed and now < self.expires_at - buffer_ms


class TokenCache:
    """
    Serves a valid Shiprocket bearer token.

    Usage:
        cache = TokenCache(client, SqlSettingsStore(db))
        token = await cache.get_valid_token()
    """

    def __init__(
        self,
        client: ShiprocketClient,
        store: SettingsStore,
        seller_config: Any = None,
        settings_key: Optional[str] = None,
        ttl_hours: Optional[int] = None,
        refresh_buffer_minutes: Optional[int] = None,
        cooldown_minutes: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.store = store
        self.seller_config = seller_config
        self.settings_key = settings_key or settings.SHIPROCKET_TOKEN_SETTINGS_KEY

        ttl = settings.SHIPROCKET_TOKEN_TTL_HOURS if ttl_hours is None else ttl_hours
        buffer = settings.SHIPROCKET_TOKEN_REFRESH_BUFFER_MINUTES if refresh_buffer_minutes is None else refresh_buffer_minutes
        cooldown = settings.SHIPROCKET_AUTH_COOLDOWN_MINUTES if cooldown_minutes is None else cooldown_minutes
        self.ttl_ms = ttl * MS_PER_HOUR
        self.buffer_ms = buffer * MS_PER_MINUTE
        self.cooldown_ms = cooldown * MS_PER_MINUTE

        self._clock = clock

    async def _read(self) -> Optional[CachedToken]:
        try:
            data = await self.store.get(self.settings_key)
        except Exception as e:
            logger.warning(f"Could not read cached Shiprocket token: {e}")
            return None
        if not data:
            return None
        return CachedToken.from_dict(data)

    async def _write(self, entry: CachedToken) -> None:
        # Best effort: a fresh token is still usable for this call
        try:
            await self.store.upsert(self.settings_key, entry.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist Shiprocket token state: {e}")

    def _from_cache(self, entry: Optional[CachedToken], now: int) -> Optional[str]:
        if entry is None:
            return None

        if entry.in_cooldown(now):
            retry_after = math.ceil((entry.failure_expires_at - now) / 1000)
            logger.warning(f"Shiprocket auth in cooldown, {retry_after}s remaining")
            raise AuthCooldownError(
                f"Shiprocket authentication recently failed; retry in {math.ceil(retry_after / 60)} minutes",
                retry_after_seconds=retry_after,
            )

        if entry.is_usable(now, self.buffer_ms):
            return entry.token
        return None

    async def get_valid_token(self) -> str:
        """
        Return a usable token, logging in if needed.

        Raises:
            AuthCooldownError: a recent login failure is still cooling down
            AuthFailedError: login failed (starts a new cooldown)
            MissingCredentialsError: no credentials configured
        """
        token = self._from_cache(await self._read(), self._clock())
        if token:
            return token

        async with get_refresh_lock(self.settings_key):
            token = self._from_cache(await self._read(), self._clock())
            if token:
                return token
            return await self._refresh()

    async def _refresh(self) -> str:
        credentials = resolve_credentials(self.seller_config)
        logger.info(f"Refreshing Shiprocket token for {mask_email(credentials.email)}")

        try:
            token = await self.client.authenticate(credentials.email, credentials.password)
        except ShiprocketAPIError as e:
            failure_expires_at = self._clock() + self.cooldown_ms
            await self._write(CachedToken(failed=True, failure_expires_at=failure_expires_at))
            logger.error(
                f"Shiprocket authentication failed ({e.message}); "
                f"blocking new attempts for {self.cooldown_ms // MS_PER_MINUTE} minutes"
            )
            raise AuthFailedError(
                f"Shiprocket authentication failed: {e.message}",
                details={"failure_expires_at": failure_expires_at, "provider_code": e.code},
            )

        await self._write(CachedToken(token=token, expires_at=self._clock() + self.ttl_ms))
        return token
