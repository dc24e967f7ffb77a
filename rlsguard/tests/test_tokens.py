from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from rlsguard.config import OAuthConfig
from rlsguard.errors import (
    ConfigurationError,
    IntegrationNotFoundError,
    ReauthorizationRequired,
    TokenExchangeError,
    TokenRefreshError,
)
from rlsguard.models import CredentialRecord
from rlsguard.storage import CredentialStore, init_db
from rlsguard.tokens import REFRESH_MARGIN_SECONDS, TokenManager
from rlsguard.vault import CredentialVault

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    db_path = str(tmp_path / "tokens.db")
    init_db(db_path)
    return CredentialStore(db_path)


@pytest.fixture
def vault(encryption_key):
    return CredentialVault(encryption_key)


@pytest.fixture
def manager(fake_supabase, store, vault):
    return TokenManager(
        OAuthConfig(client_id="client-id", client_secret="client-secret"),
        vault,
        store,
        transport=fake_supabase.transport(),
        clock=lambda: NOW,
    )


def _store_record(store, vault, expires_in_seconds, access="old-access", refresh="old-refresh", user_id="user-1"):
    return store.upsert(
        CredentialRecord(
            user_id=user_id,
            access_token=vault.seal(access),
            refresh_token=vault.seal(refresh),
            expires_at=NOW + timedelta(seconds=expires_in_seconds),
        )
    )


@pytest.mark.asyncio
async def test_exchange_code_stores_sealed_tokens(manager, fake_supabase, store, vault):
    record = await manager.exchange_code("auth-code", "verifier-1", "http://testserver/cb", "user-1")

    assert record.id
    assert fake_supabase.calls["token"] == 1
    sent = fake_supabase.token_requests[0]
    assert sent["grant_type"] == "authorization_code"
    assert sent["code"] == "auth-code"
    assert sent["code_verifier"] == "verifier-1"
    assert sent["redirect_uri"] == "http://testserver/cb"

    stored = store.get("user-1")
    assert stored.access_token != "access-1"
    assert vault.unseal(stored.access_token) == "access-1"
    assert vault.unseal(stored.refresh_token) == "refresh-1"
    assert stored.expires_at == NOW + timedelta(seconds=3600)


@pytest.mark.asyncio
async def test_exchange_sends_basic_client_auth(fake_supabase, store, vault):
    seen = []

    async def handler(request):
        seen.append(request.headers["authorization"])
        return await fake_supabase.handler(request)

    manager = TokenManager(
        OAuthConfig(client_id="client-id", client_secret="client-secret"),
        vault,
        store,
        transport=httpx.MockTransport(handler),
    )
    await manager.exchange_code("code", "verifier", "http://testserver/cb", "user-1")
    expected = base64.b64encode(b"client-id:client-secret").decode()
    assert seen == [f"Basic {expected}"]


@pytest.mark.asyncio
async def test_exchange_failure_stores_nothing(manager, fake_supabase, store):
    fake_supabase.token_responses.append((400, {"error": "invalid_grant"}))
    with pytest.raises(TokenExchangeError):
        await manager.exchange_code("bad-code", "verifier", "http://testserver/cb", "user-1")
    assert store.get("user-1") is None


@pytest.mark.asyncio
async def test_exchange_requires_configured_client(fake_supabase, store, vault):
    manager = TokenManager(
        OAuthConfig(client_id="", client_secret=""),
        vault,
        store,
        transport=fake_supabase.transport(),
    )
    with pytest.raises(ConfigurationError):
        await manager.exchange_code("code", "verifier", "http://testserver/cb", "user-1")
    assert fake_supabase.calls["token"] == 0


@pytest.mark.asyncio
async def test_reconnect_replaces_existing_record(manager, store):
    first = await manager.exchange_code("code-1", "v1", "http://testserver/cb", "user-1")
    second = await manager.exchange_code("code-2", "v2", "http://testserver/cb", "user-1")
    assert first.id == second.id
    assert manager.vault.unseal(store.get("user-1").access_token) == "access-2"


@pytest.mark.asyncio
async def test_missing_integration(manager):
    with pytest.raises(IntegrationNotFoundError):
        await manager.get_valid_token("nobody")


@pytest.mark.asyncio
async def test_fresh_token_returned_without_network(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=3600)
    assert await manager.get_valid_token("user-1") == "old-access"
    assert fake_supabase.calls["token"] == 0


@pytest.mark.asyncio
async def test_token_inside_margin_is_refreshed(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=REFRESH_MARGIN_SECONDS - 1)

    token = await manager.get_valid_token("user-1")

    assert token == "access-1"
    assert fake_supabase.calls["token"] == 1
    assert fake_supabase.token_requests[0] == {"grant_type": "refresh_token", "refresh_token": "old-refresh"}
    stored = store.get("user-1")
    assert vault.unseal(stored.refresh_token) == "refresh-1"
    assert stored.expires_at == NOW + timedelta(seconds=3600)


@pytest.mark.asyncio
async def test_refresh_keeps_previous_refresh_token_when_not_rotated(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=-10)
    fake_supabase.token_responses.append((200, fake_supabase.next_token(refresh=False)))

    assert await manager.get_valid_token("user-1") == "access-1"
    assert vault.unseal(store.get("user-1").refresh_token) == "old-refresh"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=-10)
    fake_supabase.token_delay = 0.05

    tokens = await asyncio.gather(*(manager.get_valid_token("user-1") for _ in range(5)))

    assert fake_supabase.calls["token"] == 1
    assert set(tokens) == {"access-1"}


@pytest.mark.asyncio
async def test_rejected_refresh_deletes_record(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=-10)
    fake_supabase.token_responses.append((400, {"error": "invalid_grant"}))

    with pytest.raises(ReauthorizationRequired):
        await manager.get_valid_token("user-1")
    assert store.get("user-1") is None

    with pytest.raises(IntegrationNotFoundError):
        await manager.get_valid_token("user-1")


@pytest.mark.asyncio
async def test_server_error_on_refresh_keeps_record(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=-10)
    fake_supabase.token_responses.append((503, {"error": "unavailable"}))

    with pytest.raises(TokenRefreshError):
        await manager.get_valid_token("user-1")
    stored = store.get("user-1")
    assert stored is not None
    assert vault.unseal(stored.refresh_token) == "old-refresh"


@pytest.mark.asyncio
async def test_malformed_refresh_response_keeps_record(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=-10)
    fake_supabase.token_responses.append((200, {"token_type": "bearer"}))

    with pytest.raises(TokenRefreshError):
        await manager.get_valid_token("user-1")
    assert store.get("user-1") is not None


@pytest.mark.asyncio
async def test_non_object_refresh_response_keeps_record(manager, fake_supabase, store, vault):
    _store_record(store, vault, expires_in_seconds=10)
    fake_supabase.token_responses.append((200, ["unexpected"]))

    with pytest.raises(TokenRefreshError):
        await manager.get_valid_token("user-1")
    assert store.get("user-1") is not None


@pytest.mark.asyncio
async def test_non_object_exchange_response_stores_nothing(manager, fake_supabase, store):
    fake_supabase.token_responses.append((200, ["unexpected"]))
    with pytest.raises(TokenExchangeError):
        await manager.exchange_code("code", "verifier", "http://testserver/cb", "user-1")
    assert store.get("user-1") is None


def test_disconnect_removes_record(manager, store, vault):
    _store_record(store, vault, expires_in_seconds=3600)
    assert manager.has_integration("user-1")
    assert manager.disconnect("user-1") is True
    assert not manager.has_integration("user-1")
    assert manager.disconnect("user-1") is False


@pytest.mark.asyncio
async def test_disconnect_releases_refresh_lock(manager, store, vault):
    _store_record(store, vault, expires_in_seconds=10)
    await manager.get_valid_token("user-1")
    assert ("user-1", "supabase") in manager._locks

    manager.disconnect("user-1")

    assert ("user-1", "supabase") not in manager._locks
