"""
OAuth2 lifecycle for integration groups.

Centralized management for OAuth2 flows:
- Provider registration (authorize URL, token URL, scopes, PKCE)
- Signed, time-limited state tokens (no server-side session affinity)
- CSRF verification against a server-side value
- Authorization code exchange and account profile lookup
- Lazy token refresh that returns a Result instead of raising
"""
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional
from urllib.parse import urlencode
import asyncio
import base64
import hashlib
import hmac
import json
import secrets

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.integrations.errors import (
    ErrorKind,
    OAuthExchangeError,
    OAuthStateError,
    Result,
)
from core.integrations.http_client import ApiRequest, ProviderClient
from core.models.timeline import IntegrationGroup

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OAuthConfig:
    """OAuth2 provider configuration."""
    provider_name: str
    authorize_url: str
    token_url: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: list[str] = field(default_factory=list)
    use_pkce: bool = False
    supports_refresh: bool = True


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def generate_code_verifier() -> str:
    """43-128 characters from the unreserved set."""
    return secrets.token_urlsafe(64)[:128]


def code_challenge(verifier: str) -> str:
    """S256 challenge for a verifier."""
    return _b64url(hashlib.sha256(verifier.encode()).digest())


# ---------------------------------------------------------------------------
# Signed state
# ---------------------------------------------------------------------------

@dataclass
class OAuthState:
    group_id: str
    user_id: str
    csrf_token: str
    code_verifier: Optional[str]
    expires_at: int  # unix seconds


class StateSigner:
    """HMAC-SHA256 over the JSON state payload.

    Token format: ``base64url(payload).base64url(signature)``.
    """

    def __init__(self, secret: str, ttl_seconds: int = 600, clock: Clock = _utcnow):
        if not secret:
            raise ValueError("OAuth state secret must not be empty")
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _sign(self, payload: bytes) -> str:
        return _b64url(hmac.new(self._secret, payload, hashlib.sha256).digest())

    def issue(
        self,
        group_id: str,
        user_id: str,
        csrf_token: str,
        code_verifier: Optional[str] = None,
    ) -> str:
        state = OAuthState(
            group_id=group_id,
            user_id=user_id,
            csrf_token=csrf_token,
            code_verifier=code_verifier,
            expires_at=int((self.clock() + timedelta(seconds=self.ttl_seconds)).timestamp()),
        )
        payload = json.dumps(asdict(state), sort_keys=True, separators=(",", ":")).encode()
        return f"{_b64url(payload)}.{self._sign(payload)}"

    def verify(self, token: str) -> OAuthState:
        """Return the state or raise OAuthStateError."""
        try:
            encoded_payload, signature = token.split(".", 1)
            payload = _b64url_decode(encoded_payload)
        except (ValueError, TypeError) as exc:
            raise OAuthStateError("Malformed OAuth state") from exc

        if not hmac.compare_digest(self._sign(payload), signature):
            raise OAuthStateError("OAuth state signature mismatch")

        try:
            state = OAuthState(**json.loads(payload))
        except (ValueError, TypeError) as exc:
            raise OAuthStateError("Malformed OAuth state payload") from exc

        if self.clock().timestamp() > state.expires_at:
            raise OAuthStateError("OAuth state expired")
        return state


class CsrfStore:
    """Server-side CSRF values keyed by session and group.

    In-memory. Replace backing store for multi-process deployments.
    """

    def __init__(self):
        self._values: dict[str, str] = {}

    @staticmethod
    def key(session_id: str, group_id: str) -> str:
        return f"oauth_csrf_{session_id}_{group_id}"

    def issue(self, session_id: str, group_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self._values[self.key(session_id, group_id)] = token
        return token

    def consume(self, session_id: str, group_id: str) -> Optional[str]:
        return self._values.pop(self.key(session_id, group_id), None)


# ---------------------------------------------------------------------------
# Token exchange helpers
# ---------------------------------------------------------------------------

def _apply_token_payload(group: IntegrationGroup, data: dict[str, Any], now: datetime) -> None:
    """Store-then-use: persist every field before anyone reads the token."""
    group.access_token = data["access_token"]
    if data.get("refresh_token"):
        group.refresh_token = data["refresh_token"]
    expires_in = data.get("expires_in")
    group.expiry = now + timedelta(seconds=int(expires_in)) if expires_in else None


class TokenRefresher:
    """Lazily refreshes a group's access token before authenticated calls.

    Concurrent instances of the same group share one in-process lock. The
    refresh itself runs in its own session that re-reads the group row
    ``FOR UPDATE`` and commits before the lock is released, so a racing
    caller (in this process or another) sees the rotated refresh token
    instead of replaying the one the provider just invalidated.
    """

    # Refresh slightly early so a token does not expire mid-request
    EXPIRY_SKEW = timedelta(seconds=60)

    def __init__(
        self,
        client: ProviderClient,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = _utcnow,
    ):
        self.client = client
        self.session_factory = session_factory
        self.clock = clock
        # group id -> (lock, callers holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _group_lock(self, group_id: str) -> AsyncIterator[None]:
        """Per-group lock, dropped once its last caller leaves."""
        lock, users = self._locks.get(group_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[group_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[group_id]
            if users <= 1:
                del self._locks[group_id]
            else:
                self._locks[group_id] = (lock, users - 1)

    def _needs_refresh(self, group: IntegrationGroup) -> bool:
        if group.expiry is None:
            return False
        return self.clock() >= group.expiry - self.EXPIRY_SKEW

    async def ensure_valid_token(
        self,
        session: AsyncSession,
        group: IntegrationGroup,
        config: Optional[OAuthConfig],
    ) -> Result[str]:
        if not group.access_token:
            return Result.failure(
                ErrorKind.MISSING_CREDENTIALS,
                f"No credential stored for {group.service} group {group.id}",
            )
        if not self._needs_refresh(group):
            return Result.success(group.access_token)

        if config is None or not config.supports_refresh:
            # Nothing to refresh with; use the token and let the provider decide
            return Result.success(group.access_token)

        async with self._group_lock(str(group.id)):
            result = await self._refresh_committed(group.id, config)
            # Pick up whatever the winning refresh stored
            await session.refresh(group)
        return result

    async def _refresh_committed(self, group_id, config: OAuthConfig) -> Result[str]:
        async with self.session_factory() as own:
            locked = (
                await own.execute(
                    select(IntegrationGroup)
                    .where(IntegrationGroup.id == group_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if locked is None:
                return Result.failure(
                    ErrorKind.MISSING_CREDENTIALS,
                    f"Integration group {group_id} no longer exists",
                )
            if not self._needs_refresh(locked):
                return Result.success(locked.access_token)
            result = await self._refresh(locked, config)
            if result.ok:
                await own.commit()
            return result

    async def _refresh(self, group: IntegrationGroup, config: OAuthConfig) -> Result[str]:
        if not group.refresh_token:
            return Result.failure(
                ErrorKind.AUTH_REFRESH_FAILED,
                "Access token expired and no refresh token is stored",
            )

        result = await self.client.call(
            ApiRequest(
                method="POST",
                url=config.token_url,
                form={
                    "grant_type": "refresh_token",
                    "refresh_token": group.refresh_token,
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                },
            ),
            service=group.service,
        )
        if not result.ok:
            return Result(error=result.error)

        resp = result.value
        if not resp.ok:
            logger.error(
                "token_refresh_failed",
                service=group.service,
                group_id=str(group.id),
                status_code=resp.status_code,
            )
            return Result.failure(
                ErrorKind.AUTH_REFRESH_FAILED,
                "Refresh token rejected; reconnect required",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
            _apply_token_payload(group, data, self.clock())
        except (ValueError, KeyError, TypeError):
            return Result.failure(ErrorKind.AUTH_REFRESH_FAILED, "Malformed token response")

        logger.info("token_refreshed", service=group.service, group_id=str(group.id))
        return Result.success(group.access_token)


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------

class OAuthManager:
    """Manages authorize/callback flows across providers."""

    def __init__(
        self,
        client: ProviderClient,
        signer: StateSigner,
        csrf_store: Optional[CsrfStore] = None,
        clock: Clock = _utcnow,
    ):
        self.client = client
        self.signer = signer
        self.csrf_store = csrf_store or CsrfStore()
        self.clock = clock
        self._providers: dict[str, OAuthConfig] = {}

    def register_provider(self, config: OAuthConfig) -> None:
        self._providers[config.provider_name] = config

    def get_provider(self, provider_name: str) -> OAuthConfig:
        config = self._providers.get(provider_name)
        if not config:
            raise ValueError(f"Unknown OAuth provider: {provider_name}")
        return config

    def get_authorize_url(
        self,
        provider_name: str,
        group: IntegrationGroup,
        session_id: str,
    ) -> str:
        """Authorization URL with signed state, CSRF and optional PKCE."""
        config = self.get_provider(provider_name)
        csrf = self.csrf_store.issue(session_id, str(group.id))
        verifier = generate_code_verifier() if config.use_pkce else None
        state = self.signer.issue(str(group.id), group.user_id, csrf, verifier)

        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scopes),
            "state": state,
        }
        if verifier:
            params["code_challenge"] = code_challenge(verifier)
            params["code_challenge_method"] = "S256"
        return f"{config.authorize_url}?{urlencode(params)}"

    def verify_state(self, state: str, session_id: str) -> OAuthState:
        """Check signature, expiry and the server-side CSRF value."""
        decoded = self.signer.verify(state)
        expected = self.csrf_store.consume(session_id, decoded.group_id)
        if not expected or not hmac.compare_digest(expected, decoded.csrf_token):
            raise OAuthStateError("CSRF token mismatch")
        return decoded

    async def exchange_code(
        self,
        session: AsyncSession,
        provider_name: str,
        group: IntegrationGroup,
        code: str,
        state: OAuthState,
    ) -> IntegrationGroup:
        """Exchange the code and persist tokens onto the group."""
        config = self.get_provider(provider_name)
        if state.group_id != str(group.id) or state.user_id != group.user_id:
            raise OAuthStateError("OAuth state does not belong to this connection")

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_uri,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }
        if state.code_verifier:
            form["code_verifier"] = state.code_verifier

        result = await self.client.call(
            ApiRequest(method="POST", url=config.token_url, form=form, headers={"Accept": "application/json"}),
            service=provider_name,
        )
        if not result.ok:
            raise OAuthExchangeError(str(result.error))
        resp = result.value
        if not resp.ok:
            raise OAuthExchangeError(f"Token exchange failed with HTTP {resp.status_code}")
        try:
            _apply_token_payload(group, resp.json(), self.clock())
        except (ValueError, KeyError, TypeError) as exc:
            raise OAuthExchangeError("Malformed token response") from exc

        await session.flush()
        logger.info("oauth_connected", service=provider_name, group_id=str(group.id))
        return group
