from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

import httpx

from rlsguard.config import OAuthConfig
from rlsguard.errors import (
    IntegrationNotFoundError,
    ReauthorizationRequired,
    TokenExchangeError,
    TokenRefreshError,
)
from rlsguard.models import PROVIDER_SUPABASE, CredentialRecord, TokenResponse, utc_now
from rlsguard.storage import CredentialStore
from rlsguard.vault import CredentialVault

LOGGER = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 300


class TokenManager:
    """Exchanges, seals, stores and refreshes delegated OAuth tokens.

    Refreshes are serialized per (user, provider): a caller arriving while a
    refresh is in flight waits for it and reuses the stored result instead of
    spending the refresh token a second time.
    """

    def __init__(
        self,
        config: OAuthConfig,
        vault: CredentialVault,
        store: CredentialStore,
        provider: str = PROVIDER_SUPABASE,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.vault = vault
        self.store = store
        self.provider = provider
        self._transport = transport
        self._clock = clock
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        key = (user_id, self.provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _post_token_endpoint(self, form: dict[str, str]) -> httpx.Response:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            transport=self._transport,
            auth=httpx.BasicAuth(self.config.client_id, self.config.client_secret),
        ) as client:
            return await client.post(self.config.token_url, data=form, headers=headers)

    def _seal(self, user_id: str, tokens: TokenResponse, previous_refresh: str | None = None) -> CredentialRecord:
        refresh_sealed = self.vault.seal(tokens.refresh_token) if tokens.refresh_token else previous_refresh
        if not refresh_sealed:
            raise TokenExchangeError("Token response did not include a refresh_token")
        return CredentialRecord(
            user_id=user_id,
            provider=self.provider,
            access_token=self.vault.seal(tokens.access_token),
            refresh_token=refresh_sealed,
            expires_at=self._clock() + timedelta(seconds=tokens.expires_in),
        )

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str, user_id: str) -> CredentialRecord:
        self.config.require_client()
        try:
            response = await self._post_token_endpoint(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "code_verifier": code_verifier,
                }
            )
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Token exchange request failed: {exc}") from exc

        if not response.is_success:
            LOGGER.error("Token exchange failed: HTTP %s %s", response.status_code, response.text[:500])
            raise TokenExchangeError(f"Token exchange failed: HTTP {response.status_code}")

        try:
            tokens = TokenResponse.from_dict(response.json())
        except ValueError as exc:
            raise TokenExchangeError(f"Malformed token response: {exc}") from exc

        async with self._lock_for(user_id):
            record = self.store.upsert(self._seal(user_id, tokens))
        LOGGER.info("Authorization code exchanged for user %s", user_id)
        return record

    async def get_valid_token(self, user_id: str) -> str:
        record = self.store.get(user_id, self.provider)
        if record is None:
            raise IntegrationNotFoundError(f"No {self.provider} integration found for user")

        if not record.expires_within(REFRESH_MARGIN_SECONDS, now=self._clock()):
            return self.vault.unseal(record.access_token)

        async with self._lock_for(user_id):
            # another caller may have refreshed while we waited
            current = self.store.get(user_id, self.provider)
            if current is None:
                raise ReauthorizationRequired(
                    f"Token refresh failed. Please reconnect your {self.provider} account."
                )
            if not current.expires_within(REFRESH_MARGIN_SECONDS, now=self._clock()):
                return self.vault.unseal(current.access_token)
            refreshed = await self._refresh_locked(current)
        return self.vault.unseal(refreshed.access_token)

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        async with self._lock_for(record.user_id):
            return await self._refresh_locked(record)

    async def _refresh_locked(self, record: CredentialRecord) -> CredentialRecord:
        self.config.require_client()
        refresh_token = self.vault.unseal(record.refresh_token)
        try:
            response = await self._post_token_endpoint(
                {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Token refresh request failed: {exc}") from exc

        if 400 <= response.status_code < 500:
            LOGGER.error(
                "Token refresh rejected for user %s: HTTP %s %s",
                record.user_id,
                response.status_code,
                response.text[:500],
            )
            self.store.delete(record.user_id, self.provider)
            raise ReauthorizationRequired(
                f"Token refresh failed. Please reconnect your {self.provider} account."
            )
        if not response.is_success:
            raise TokenRefreshError(f"Token endpoint unavailable: HTTP {response.status_code}")

        try:
            tokens = TokenResponse.from_dict(response.json())
        except ValueError as exc:
            raise TokenRefreshError(f"Malformed token response: {exc}") from exc

        updated = self._seal(record.user_id, tokens, previous_refresh=record.refresh_token)
        if not self.store.replace_tokens(updated):
            raise ReauthorizationRequired(
                f"Integration was removed during refresh. Please reconnect your {self.provider} account."
            )
        LOGGER.info("Refreshed %s access token for user %s", self.provider, record.user_id)
        return self.store.get(record.user_id, self.provider) or updated

    def has_integration(self, user_id: str) -> bool:
        return self.store.get(user_id, self.provider) is not None

    def get_integration(self, user_id: str) -> CredentialRecord | None:
        return self.store.get(user_id, self.provider)

    def disconnect(self, user_id: str) -> bool:
        lock = self._locks.get((user_id, self.provider))
        if lock is not None and not lock.locked():
            del self._locks[(user_id, self.provider)]
        return self.store.delete(user_id, self.provider)
