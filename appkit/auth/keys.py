"""
JWKS key cache and fetcher.

Resolves a signing key by key id (``kid``) while keeping outbound fetches to
the key source to a minimum:

- **Caching**: a fetched key set is cached per source URI for ``ttl``
  seconds (default 10 minutes). An expired set is refetched, never served.
- **Rotation**: an unknown ``kid`` in a fresh set triggers one refetch.
- **Rate limiting**: at most ``requests_per_minute`` fetches per source
  (default 10). Beyond that, fetches fail fast.
- **Timeout**: each fetch is bounded (default 5 seconds) and a timeout is
  reported as ``KeyFetchTimeoutError``, not as a generic network error.
- **Stampede protection**: concurrent refreshes of the same source are
  serialised behind a per-source lock; waiters reuse the fresh result.

A process-wide ``key_cache`` instance is shared by every verifier that does
not bring its own.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from jwt import PyJWKSet
from jwt.exceptions import PyJWKSetError

logger = logging.getLogger("appkit.auth.keys")

DEFAULT_TTL = 600.0
DEFAULT_REQUESTS_PER_MINUTE = 10
DEFAULT_TIMEOUT = 5.0
_RATE_WINDOW = 60.0


class KeyFetchError(Exception):
    """Fetching or parsing the key set failed."""


class KeyFetchTimeoutError(KeyFetchError):
    """The key source did not answer within the timeout."""


class KeyFetchRateLimitError(KeyFetchError):
    """Too many fetches to the key source in the current window."""


class SigningKeyNotFoundError(KeyFetchError):
    """The key set does not contain the requested key id."""


@dataclass(frozen=True)
class CachedKey:
    """
    One public signing key from a fetched key set.

    Attributes:
        kid: Key id from the JWKS entry
        key: Public key object usable with ``jwt.decode``
        algorithm: ``alg`` advertised by the JWKS entry, if any
        fetched_at: Clock value when the key set was fetched
        ttl: Seconds the key may be served from the cache
    """

    kid: str
    key: Any
    algorithm: str | None
    fetched_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.fetched_at >= self.ttl


@dataclass
class _KeySet:
    keys: dict[str, CachedKey]
    fetched_at: float
    ttl: float

    def fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


@dataclass
class _SourceState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    fetches: deque = field(default_factory=deque)
    key_set: _KeySet | None = None


class KeyCache:
    """
    TTL cache of JWKS key sets keyed by source URI.

    Args:
        ttl: Seconds a fetched key set stays valid
        requests_per_minute: Fetch cap per source
        timeout: Per-fetch timeout in seconds
        http_client: Optional shared ``httpx.AsyncClient`` (tests pass one
                     backed by ``httpx.MockTransport``)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.requests_per_minute = requests_per_minute
        self.timeout = timeout
        self._http_client = http_client
        self._clock = clock
        self._sources: dict[str, _SourceState] = {}
        self.fetch_count = 0

    def _state(self, jwks_uri: str) -> _SourceState:
        state = self._sources.get(jwks_uri)
        if state is None:
            state = self._sources[jwks_uri] = _SourceState()
        return state

    async def get_signing_key(self, jwks_uri: str, kid: str) -> CachedKey:
        """
        Return the key for ``kid`` from the key set at ``jwks_uri``.

        Raises:
            KeyFetchTimeoutError: The fetch timed out
            KeyFetchRateLimitError: The per-minute fetch cap was reached
            SigningKeyNotFoundError: No key with this id after a refresh
            KeyFetchError: Any other fetch or parse failure
        """
        state = self._state(jwks_uri)
        key_set = state.key_set
        cached = key_set.keys.get(kid) if key_set is not None else None
        if cached is not None and not cached.expired(self._clock()):
            return cached

        seen = key_set
        async with state.lock:
            key_set = state.key_set
            now = self._clock()
            # Another task may have refreshed this source while we waited.
            refreshed_meanwhile = key_set is not seen and key_set is not None and key_set.fresh(now)
            if not refreshed_meanwhile and (
                key_set is None or not key_set.fresh(now) or kid not in key_set.keys
            ):
                key_set = await self._refresh(jwks_uri, state)

        cached = key_set.keys.get(kid)
        if cached is None:
            raise SigningKeyNotFoundError(f"No signing key found for kid '{kid}'")
        return cached

    def invalidate_expired(self) -> None:
        """Drop key sets whose TTL has passed."""
        now = self._clock()
        for state in self._sources.values():
            if state.key_set is not None and not state.key_set.fresh(now):
                state.key_set = None

    def _check_rate_limit(self, jwks_uri: str, state: _SourceState) -> None:
        now = self._clock()
        while state.fetches and now - state.fetches[0] >= _RATE_WINDOW:
            state.fetches.popleft()
        if len(state.fetches) >= self.requests_per_minute:
            logger.warning(
                "JWKS fetch rate limit reached",
                extra={"log_data": {"jwks_uri": jwks_uri, "limit": self.requests_per_minute}},
            )
            raise KeyFetchRateLimitError(
                f"JWKS request rate limit exceeded ({self.requests_per_minute}/minute)"
            )
        state.fetches.append(now)

    async def _refresh(self, jwks_uri: str, state: _SourceState) -> _KeySet:
        self._check_rate_limit(jwks_uri, state)
        data = await self._fetch(jwks_uri)

        try:
            jwk_set = PyJWKSet.from_dict(data)
        except PyJWKSetError as exc:
            raise KeyFetchError(f"Invalid JWKS document: {exc}") from exc

        advertised = {
            entry.get("kid"): entry.get("alg")
            for entry in data.get("keys", [])
            if isinstance(entry, dict)
        }
        fetched_at = self._clock()
        keys = {
            jwk.key_id: CachedKey(
                kid=jwk.key_id,
                key=jwk.key,
                algorithm=advertised.get(jwk.key_id),
                fetched_at=fetched_at,
                ttl=self.ttl,
            )
            for jwk in jwk_set.keys
            if jwk.key_id
        }
        state.key_set = _KeySet(keys=keys, fetched_at=fetched_at, ttl=self.ttl)
        logger.info(
            "JWKS key set fetched",
            extra={"log_data": {"jwks_uri": jwks_uri, "key_ids": sorted(keys)}},
        )
        return state.key_set

    async def _fetch(self, jwks_uri: str) -> dict:
        self.fetch_count += 1
        headers = {"Accept": "application/json"}
        try:
            if self._http_client is not None:
                response = await self._http_client.get(jwks_uri, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(jwks_uri, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            raise KeyFetchTimeoutError(
                f"JWKS fetch timed out after {int(self.timeout * 1000)}ms"
            ) from exc
        except httpx.HTTPError as exc:
            raise KeyFetchError(f"JWKS fetch failed: {exc}") from exc
        except ValueError as exc:
            raise KeyFetchError("JWKS response is not valid JSON") from exc

        if not isinstance(data, dict):
            raise KeyFetchError("JWKS response must be a JSON object")
        return data


# Process-wide default cache shared by all verifiers.
key_cache = KeyCache()
