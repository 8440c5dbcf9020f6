"""
Tests for the Shiprocket token cache.

Covers the refresh buffer, the login failure cooldown and best-effort
persistence.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import (
    AuthCooldownError,
    AuthFailedError,
    MissingCredentialsError,
    ShiprocketAPIError,
)
from shiprocket_fulfillment.services.token_cache import CachedToken, TokenCache, get_refresh_lock

KEY = "shiprocket_auth"
MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


class TestCachedToken:

    def test_round_trip_dict(self):
        entry = CachedToken(token="abc", expires_at=10, failed=False, failure_expires_at=None)
        assert CachedToken.from_dict(entry.to_dict()) == entry

    def test_from_partial_dict(self):
        entry = CachedToken.from_dict({"token": "abc"})
        assert entry.expires_at == 0
        assert entry.failed is False

    def test_usable_respects_buffer(self):
        entry = CachedToken(token="abc", expires_at=2 * HOUR_MS)
        assert entry.is_usable(now=0, buffer_ms=HOUR_MS)
        assert not entry.is_usable(now=HOUR_MS, buffer_ms=HOUR_MS)


class TestGetValidToken:

    @pytest.mark.asyncio
    async def test_returns_cached_token_without_login(self, token_cache, settings_store, clock, mock_shiprocket_client):
        settings_store.data[KEY] = {"token": "cached", "expires_at": clock.now + 2 * HOUR_MS, "failed": False}

        assert await token_cache.get_valid_token() == "cached"
        mock_shiprocket_client.authenticate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(self, token_cache, settings_store, clock, mock_shiprocket_client):
        """30 minutes left is inside the 1 hour buffer."""
        settings_store.data[KEY] = {"token": "stale", "expires_at": clock.now + 30 * MINUTE_MS, "failed": False}

        token = await token_cache.get_valid_token()

        assert token == "tok-123"
        mock_shiprocket_client.authenticate.assert_awaited_once_with("ops@example.com", "test-password")
        assert settings_store.data[KEY] == {
            "token": "tok-123",
            "expires_at": clock.now + 24 * HOUR_MS,
            "failed": False,
            "failure_expires_at": None,
        }

    @pytest.mark.asyncio
    async def test_empty_store_logs_in(self, token_cache, settings_store, mock_shiprocket_client):
        assert await token_cache.get_valid_token() == "tok-123"
        assert len(settings_store.writes) == 1

    @pytest.mark.asyncio
    async def test_failure_persists_cooldown(self, token_cache, settings_store, clock, mock_shiprocket_client):
        mock_shiprocket_client.authenticate.side_effect = ShiprocketAPIError(
            "Invalid email and password combination", code="400", status_code=400
        )

        with pytest.raises(AuthFailedError) as exc_info:
            await token_cache.get_valid_token()

        assert "Invalid email and password combination" in exc_info.value.message
        entry = settings_store.data[KEY]
        assert entry["failed"] is True
        assert entry["failure_expires_at"] == clock.now + 30 * MINUTE_MS
        assert entry["token"] is None

    @pytest.mark.asyncio
    async def test_cooldown_blocks_login_attempts(self, token_cache, clock, mock_shiprocket_client):
        mock_shiprocket_client.authenticate.side_effect = ShiprocketAPIError("Too many attempts", status_code=400)

        with pytest.raises(AuthFailedError):
            await token_cache.get_valid_token()

        for _ in range(3):
            clock.advance_minutes(5)
            with pytest.raises(AuthCooldownError) as exc_info:
                await token_cache.get_valid_token()

        assert mock_shiprocket_client.authenticate.await_count == 1
        assert exc_info.value.retry_after_seconds == 15 * 60

    @pytest.mark.asyncio
    async def test_login_retried_after_cooldown(self, token_cache, clock, mock_shiprocket_client):
        mock_shiprocket_client.authenticate.side_effect = [
            ShiprocketAPIError("Invalid credentials", status_code=401),
            "tok-456",
        ]

        with pytest.raises(AuthFailedError):
            await token_cache.get_valid_token()

        clock.advance_minutes(31)
        assert await token_cache.get_valid_token() == "tok-456"
        assert mock_shiprocket_client.authenticate.await_count == 2

    @pytest.mark.asyncio
    async def test_write_failure_still_returns_token(self, mock_shiprocket_client, clock):
        store = AsyncMock()
        store.get = AsyncMock(return_value=None)
        store.upsert = AsyncMock(side_effect=RuntimeError("db down"))
        cache = TokenCache(mock_shiprocket_client, store, clock=clock)

        assert await cache.get_valid_token() == "tok-123"
        store.upsert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_read_failure_treated_as_empty(self, mock_shiprocket_client, clock):
        store = AsyncMock()
        store.get = AsyncMock(side_effect=RuntimeError("db down"))
        store.upsert = AsyncMock()
        cache = TokenCache(mock_shiprocket_client, store, clock=clock)

        assert await cache.get_valid_token() == "tok-123"

    @pytest.mark.asyncio
    async def test_missing_credentials_do_not_start_cooldown(self, token_cache, settings_store, mock_shiprocket_client, monkeypatch):
        monkeypatch.setattr(settings, "SHIPROCKET_EMAIL", "")
        monkeypatch.setattr(settings, "SHIPROCKET_PASSWORD", "")

        with pytest.raises(MissingCredentialsError):
            await token_cache.get_valid_token()

        mock_shiprocket_client.authenticate.assert_not_awaited()
        assert settings_store.writes == []

    @pytest.mark.asyncio
    async def test_seller_credentials_used_for_login(self, mock_shiprocket_client, settings_store, clock):
        cache = TokenCache(
            mock_shiprocket_client,
            settings_store,
            seller_config={"email": "'seller@example.com'", "password": "seller-pw"},
            clock=clock,
        )

        await cache.get_valid_token()
        mock_shiprocket_client.authenticate.assert_awaited_once_with("seller@example.com", "seller-pw")


class TestConcurrentRefresh:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_login(self, token_cache, mock_shiprocket_client):
        async def slow_login(email, password):
            await asyncio.sleep(0)
            return "tok-shared"

        mock_shiprocket_client.authenticate.side_effect = slow_login

        tokens = await asyncio.gather(*(token_cache.get_valid_token() for _ in range(5)))

        assert tokens == ["tok-shared"] * 5
        assert mock_shiprocket_client.authenticate.await_count == 1

    @pytest.mark.asyncio
    async def test_waiter_sees_cooldown_written_by_failed_login(self, token_cache, settings_store, mock_shiprocket_client):
        async def failing_login(email, password):
            await asyncio.sleep(0)
            raise ShiprocketAPIError("Invalid credentials", status_code=401)

        mock_shiprocket_client.authenticate.side_effect = failing_login

        results = await asyncio.gather(
            token_cache.get_valid_token(),
            token_cache.get_valid_token(),
            return_exceptions=True,
        )

        assert isinstance(results[0], AuthFailedError)
        assert isinstance(results[1], AuthCooldownError)
        assert mock_shiprocket_client.authenticate.await_count == 1
        assert settings_store.data[KEY]["failed"] is True

    @pytest.mark.asyncio
    async def test_separate_caches_on_one_key_share_one_login(self, mock_shiprocket_client, settings_store, clock):
        # One TokenCache per request/session, all backed by the same settings row
        caches = [TokenCache(mock_shiprocket_client, settings_store, clock=clock) for _ in range(3)]

        async def slow_login(email, password):
            await asyncio.sleep(0)
            return "tok-shared"

        mock_shiprocket_client.authenticate.side_effect = slow_login

        tokens = await asyncio.gather(*(cache.get_valid_token() for cache in caches))

        assert tokens == ["tok-shared"] * 3
        assert mock_shiprocket_client.authenticate.await_count == 1

    @pytest.mark.asyncio
    async def test_refresh_lock_is_per_settings_key(self):
        assert get_refresh_lock("shiprocket_auth") is get_refresh_lock("shiprocket_auth")
        assert get_refresh_lock("shiprocket_auth") is not get_refresh_lock("shiprocket_auth_seller_2")
