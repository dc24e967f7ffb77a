"""
PKCE authorization flow helpers.

Nothing here keeps state between calls: ``begin_authorization`` hands the
verifier and state back to the caller, which keeps them in a signed,
short-lived cookie session and passes them to ``complete_authorization`` on
callback.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from rlsguard.config import OAuthConfig
from rlsguard.errors import AuthorizationError, InvalidInputError

SESSION_TTL_SECONDS = 600
VERIFIER_BYTES = 32
STATE_NONCE_BYTES = 16

SESSION_VERIFIER_KEY = "oauth_code_verifier"
SESSION_STATE_KEY = "oauth_state"
SESSION_CREATED_KEY = "oauth_created_at"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(VERIFIER_BYTES))


def code_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


@dataclass(frozen=True)
class StatePayload:
    nonce: str
    user_id: str


def encode_state(user_id: str, nonce: str | None = None) -> str:
    payload = {"nonce": nonce or _b64url(secrets.token_bytes(STATE_NONCE_BYTES)), "user_id": user_id}
    return _b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))


def decode_state(state: str) -> StatePayload:
    try:
        data = json.loads(_b64url_decode(state).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise AuthorizationError("invalid_state", "State is not a valid encoded payload") from exc
    if not isinstance(data, dict):
        raise AuthorizationError("invalid_state", "State payload must be an object")
    nonce = data.get("nonce")
    user_id = data.get("user_id")
    if not isinstance(nonce, str) or not nonce or not isinstance(user_id, str) or not user_id:
        raise AuthorizationError("invalid_state", "No user_id in state")
    return StatePayload(nonce=nonce, user_id=user_id)


@dataclass
class AuthorizationRequest:
    url: str
    state: str
    code_verifier: str
    created_at: float = field(default_factory=time.time)

    def to_session(self) -> dict[str, Any]:
        return {
            SESSION_VERIFIER_KEY: self.code_verifier,
            SESSION_STATE_KEY: self.state,
            SESSION_CREATED_KEY: self.created_at,
        }


def begin_authorization(
    config: OAuthConfig,
    user_id: str,
    redirect_uri: str,
    now: float | None = None,
) -> AuthorizationRequest:
    if not user_id:
        raise InvalidInputError("user_id is required to start authorization")
    if not redirect_uri:
        raise InvalidInputError("redirect_uri is required to start authorization")
    if not config.client_id:
        raise InvalidInputError("OAuth not configured. Please set SUPABASE_OAUTH_CLIENT_ID")

    verifier = generate_code_verifier()
    state = encode_state(user_id)
    query = urlencode(
        {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
            "scope": config.scope,
        }
    )
    return AuthorizationRequest(
        url=f"{config.authorize_url}?{query}",
        state=state,
        code_verifier=verifier,
        created_at=time.time() if now is None else now,
    )


def complete_authorization(
    session_data: dict[str, Any] | None,
    returned_state: str,
    now: float | None = None,
) -> tuple[str, str]:
    """Validate the callback against the stored session and return (user_id, code_verifier)."""
    session_data = session_data or {}
    stored_state = session_data.get(SESSION_STATE_KEY)
    verifier = session_data.get(SESSION_VERIFIER_KEY)
    created_at = session_data.get(SESSION_CREATED_KEY)
    if not stored_state or not verifier or created_at is None:
        raise AuthorizationError("missing_session_data")

    current = time.time() if now is None else now
    try:
        age = current - float(created_at)
    except (TypeError, ValueError) as exc:
        raise AuthorizationError("missing_session_data") from exc
    if age > SESSION_TTL_SECONDS or age < 0:
        raise AuthorizationError("session_expired", "Session expired. Please try again.")

    if not returned_state or not hmac.compare_digest(
        str(returned_state).encode("utf-8"), str(stored_state).encode("utf-8")
    ):
        raise AuthorizationError("state_mismatch")

    payload = decode_state(stored_state)
    return payload.user_id, str(verifier)
