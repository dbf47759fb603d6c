"""OAuth2 credential handling for user-scoped source API calls.

Three pieces:

- :class:`TokenStore` keeps access/refresh tokens per principal in Redis
  (``meetup_user:{principal}:oauth2_tokens``).
- :class:`OAuth2Consumer` exchanges a stored refresh token for a new token pair.
- :class:`CredentialBackedClientProvider` holds the authenticated client for one
  principal and replaces it wholesale on refresh, never mutating it in place,
  so calls still running on the old client fail cleanly instead of racing.

:class:`CredentialRefreshGuard` composes them into the only retry policy in the
system: on an authentication failure it refreshes exactly once and retries
exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field
from redis.asyncio import Redis

from questline.errors import AuthenticationError, TokenRefreshError
from questline.sources._http import DEFAULT_TIMEOUT, safe_error_message

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer("questline")

TOKEN_KEY_TEMPLATE = "meetup_user:{principal_id}:oauth2_tokens"
DEFAULT_MAX_PROVIDERS = 256

C = TypeVar("C")
T = TypeVar("T")


def token_key(principal_id: int | str) -> str:
    return TOKEN_KEY_TEMPLATE.format(principal_id=principal_id)


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    value = str(value).strip()
    return value or None


class OAuth2Tokens(BaseModel):
    """An access/refresh token pair.

    Token values are redacted in ``repr`` so they never leak into logs.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None

    def __repr__(self) -> str:
        refresh = "None" if self.refresh_token is None else "'***'"
        return f"OAuth2Tokens(access_token='***', refresh_token={refresh})"

    __str__ = __repr__


class TokenStore:
    """Redis-backed token storage keyed by principal id."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get_access_token(self, principal_id: int | str) -> str | None:
        return _as_str(await self._redis.hget(token_key(principal_id), "access_token"))

    async def get_refresh_token(self, principal_id: int | str) -> str | None:
        return _as_str(await self._redis.hget(token_key(principal_id), "refresh_token"))

    async def store(self, principal_id: int | str, tokens: OAuth2Tokens) -> None:
        mapping = {"access_token": tokens.access_token}
        if tokens.refresh_token is not None:
            mapping["refresh_token"] = tokens.refresh_token
        await self._redis.hset(token_key(principal_id), mapping=mapping)


class OAuth2Consumer:
    """Refresh-token grant against the source's OAuth2 token endpoint."""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        token_store: TokenStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_store = token_store
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client if http_client is not None else httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        )

    @property
    def token_store(self) -> TokenStore:
        return self._token_store

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def refresh_tokens(self, principal_id: int | str) -> OAuth2Tokens:
        """Exchange the stored refresh token and persist the new pair."""
        refresh_token = await self._token_store.get_refresh_token(principal_id)
        if refresh_token is None:
            raise TokenRefreshError(f"No refresh token stored for principal {principal_id}")

        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"OAuth2 token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                "OAuth2 token refresh failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("OAuth2 token endpoint returned invalid JSON") from exc

        access_token = _as_str(payload.get("access_token")) if isinstance(payload, dict) else None
        if access_token is None:
            raise TokenRefreshError("OAuth2 token response is missing a non-empty access_token")

        # Providers may omit the refresh token when it is not rotated
        new_refresh = _as_str(payload.get("refresh_token")) or refresh_token
        tokens = OAuth2Tokens(access_token=access_token, refresh_token=new_refresh)
        await self._token_store.store(principal_id, tokens)
        logger.info("Refreshed OAuth2 tokens for principal %s", principal_id)
        return tokens


class CredentialBackedClientProvider(Generic[C]):
    """Capability object handing out the authenticated client for one principal.

    ``current_client()`` never performs I/O. ``refresh()`` obtains new tokens
    and swaps in a freshly built client under a lock.
    """

    def __init__(
        self,
        *,
        principal_id: int | str,
        consumer: OAuth2Consumer,
        client_factory: Callable[[str], C],
    ) -> None:
        self.principal_id = principal_id
        self._consumer = consumer
        self._client_factory = client_factory
        self._client: C | None = None
        self._lock = asyncio.Lock()

    def current_client(self) -> C | None:
        return self._client

    def install(self, access_token: str) -> C:
        """Replace the client with one built from *access_token* (e.g. after a login)."""
        client = self._client_factory(access_token)
        self._client = client
        return client

    async def load(self) -> C:
        """Return the current client, building one from the cached token if needed.

        When no access token is cached at all, a refresh is performed first.
        """
        client = self._client
        if client is not None:
            return client
        async with self._lock:
            if self._client is not None:
                return self._client
            access_token = await self._consumer.token_store.get_access_token(self.principal_id)
            if access_token is None:
                logger.info(
                    "No cached access token for principal %s; refreshing", self.principal_id
                )
                tokens = await self._consumer.refresh_tokens(self.principal_id)
                access_token = tokens.access_token
            return self.install(access_token)

    async def refresh(self, *, stale: C | None = None) -> C:
        """Refresh tokens and swap in a new client.

        When *stale* is given and another caller already replaced it, the
        newer client is returned without refreshing again.
        """
        async with self._lock:
            if stale is not None and self._client is not None and self._client is not stale:
                return self._client
            tokens = await self._consumer.refresh_tokens(self.principal_id)
            return self.install(tokens.access_token)


class CredentialRefreshGuard(Generic[C]):
    """Run a remote call with at most one credential refresh and one retry.

    Providers are kept for the *max_providers* most recently used principals.
    An evicted principal reloads its tokens from Redis on its next call.
    """

    def __init__(
        self,
        *,
        consumer: OAuth2Consumer,
        client_factory: Callable[[str], C],
        max_providers: int = DEFAULT_MAX_PROVIDERS,
    ) -> None:
        if max_providers < 1:
            raise ValueError("max_providers must be at least 1")
        self._consumer = consumer
        self._client_factory = client_factory
        self._max_providers = max_providers
        self._providers: OrderedDict[str, CredentialBackedClientProvider[C]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._providers)

    def provider_for(self, principal_id: int | str) -> CredentialBackedClientProvider[C]:
        key = str(principal_id)
        provider = self._providers.get(key)
        if provider is not None:
            self._providers.move_to_end(key)
            return provider
        provider = CredentialBackedClientProvider(
            principal_id=principal_id,
            consumer=self._consumer,
            client_factory=self._client_factory,
        )
        self._providers[key] = provider
        while len(self._providers) > self._max_providers:
            evicted, _ = self._providers.popitem(last=False)
            logger.debug("Dropped cached credentials provider for principal %s", evicted)
        return provider

    async def call_with_refresh(
        self,
        make_call: Callable[[C], Awaitable[T]],
        principal_id: int | str,
    ) -> T:
        """Invoke ``make_call`` with an authenticated client for *principal_id*.

        Only :class:`AuthenticationError` triggers the refresh; any other
        error, and a second authentication failure, propagate unchanged.
        """
        provider = self.provider_for(principal_id)
        client = await provider.load()
        try:
            return await make_call(client)
        except AuthenticationError:
            logger.info(
                "Authentication failed for principal %s; refreshing credentials once",
                principal_id,
            )

        with _tracer.start_as_current_span("questline.credentials.refresh") as span:
            span.set_attribute("principal_id", str(principal_id))
            client = await provider.refresh(stale=client)
        return await make_call(client)
