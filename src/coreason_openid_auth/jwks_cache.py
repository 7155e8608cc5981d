# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid_auth

"""
JWKS cache component for fetching and caching the signing keys of every trusted issuer.
"""

import time
from typing import Any

import anyio
import httpx
from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_openid_auth.exceptions import KeyFetchError, KeyNotFoundError
from coreason_openid_auth.models_internal import JsonWebKeySetDocument, OIDCConfig, ResolvedKey
from coreason_openid_auth.transport import safe_json_fetch
from coreason_openid_auth.utils.logger import logger

tracer = trace.get_tracer(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"


class _IssuerKeys:
    """Keys of one issuer as of `fetched_at` (monotonic clock)."""

    __slots__ = ("keys", "fetched_at")

    def __init__(self, keys: dict[str, ResolvedKey], fetched_at: float) -> None:
        self.keys = keys
        self.fetched_at = fetched_at


class _PendingRefresh:
    """Placeholder for an in-flight refresh that concurrent callers wait on."""

    __slots__ = ("done", "result", "error")

    def __init__(self) -> None:
        self.done = anyio.Event()
        self.result: _IssuerKeys | None = None
        self.error: Exception | None = None


def discovery_url_for(issuer: str) -> str:
    """Returns the OpenID discovery document URL of an issuer."""
    return issuer.rstrip("/") + DISCOVERY_PATH


class JWKSCache:
    """
    Fetches and caches the published signing keys of token issuers.

    Keys are looked up by (issuer, kid). A miss triggers one refresh of the issuer's key set;
    concurrent callers that need the same refresh wait for it instead of fetching again.
    Unknown key ids are remembered for `unknown_key_ttl` seconds.

    Attributes:
        client (httpx.AsyncClient): The HTTP client used for issuer requests.
        cache_ttl (int): Lifetime of a fetched key set in seconds.
        refresh_cooldown (float): Minimum seconds between refreshes triggered by unknown key ids.
        unknown_key_ttl (float): Seconds an unknown key id is answered from the negative cache.
        fetch_timeout (float): Upper bound for a complete refresh, retries included.
        max_response_bytes (int): Largest accepted discovery or key set document.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache_ttl: int = 3600,
        refresh_cooldown: float = 30.0,
        unknown_key_ttl: float = 30.0,
        fetch_timeout: float = 10.0,
        max_response_bytes: int = 1_048_576,
        max_concurrent_fetches: int = 8,
    ) -> None:
        """
        Initialize the JWKSCache.

        Args:
            client: The async HTTP client to use for requests.
            cache_ttl: Time-to-live for a key set in seconds. Defaults to 3600 (1 hour).
            refresh_cooldown: Minimum time between refreshes caused by unknown key ids. Defaults to 30.0.
            unknown_key_ttl: Negative cache lifetime for unknown key ids. Defaults to 30.0.
            fetch_timeout: Bound on one refresh in seconds. Defaults to 10.0.
            max_response_bytes: Response size limit. Defaults to 1 MiB.
            max_concurrent_fetches: Refreshes of different issuers allowed at the same time. Defaults to 8.
        """
        self.client = client
        self.cache_ttl = cache_ttl
        self.refresh_cooldown = refresh_cooldown
        self.unknown_key_ttl = unknown_key_ttl
        self.fetch_timeout = fetch_timeout
        self.max_response_bytes = max_response_bytes
        self.max_concurrent_fetches = max_concurrent_fetches
        self._entries: dict[str, _IssuerKeys] = {}
        self._pending: dict[str, _PendingRefresh] = {}
        self._unknown: dict[tuple[str, str], float] = {}
        # Created lazily so the cache can be built outside of an event loop
        self._limiter: anyio.CapacityLimiter | None = None

    async def get_key(self, issuer: str, kid: str) -> ResolvedKey:
        """
        Returns the signing key `kid` of `issuer`, refreshing the issuer's key set when needed.

        Args:
            issuer: A trusted issuer URL.
            kid: The key id from the token header.

        Returns:
            ResolvedKey: The imported public key.

        Raises:
            KeyNotFoundError: If the issuer does not publish `kid`.
            KeyFetchError: If the key set cannot be fetched.
        """
        now = time.monotonic()
        entry = self._entries.get(issuer)
        is_fresh = entry is not None and (now - entry.fetched_at) < self.cache_ttl

        if is_fresh and kid in entry.keys:  # type: ignore[union-attr]
            return entry.keys[kid]  # type: ignore[union-attr]

        unknown_until = self._unknown.get((issuer, kid))
        if unknown_until is not None:
            if now < unknown_until:
                raise KeyNotFoundError(f"Key '{kid}' is not published by {issuer}")
            del self._unknown[(issuer, kid)]

        # A fresh key set without this kid is only re-fetched once the cooldown has passed
        if is_fresh and (now - entry.fetched_at) < self.refresh_cooldown:  # type: ignore[union-attr]
            logger.warning(f"JWKS refresh cooldown active for {issuer}. Not refetching for unknown key '{kid}'.")
            self._remember_unknown(issuer, kid)
            raise KeyNotFoundError(f"Key '{kid}' is not published by {issuer}")

        entry = await self._refresh(issuer)

        key = entry.keys.get(kid)
        if key is None:
            self._remember_unknown(issuer, kid)
            logger.warning(f"Key '{kid}' not found in key set of {issuer}")
            raise KeyNotFoundError(f"Key '{kid}' is not published by {issuer}")
        return key

    def invalidate(self, issuer: str | None = None) -> None:
        """
        Drops cached keys, for one issuer or for all of them.

        Args:
            issuer: The issuer to forget. `None` forgets every issuer.
        """
        if issuer is None:
            self._entries.clear()
            self._unknown.clear()
            return
        self._entries.pop(issuer, None)
        self._unknown = {k: v for k, v in self._unknown.items() if k[0] != issuer}

    def _remember_unknown(self, issuer: str, kid: str) -> None:
        if self.unknown_key_ttl > 0:
            self._unknown[(issuer, kid)] = time.monotonic() + self.unknown_key_ttl

    async def _refresh(self, issuer: str) -> _IssuerKeys:
        """
        Refreshes the key set of `issuer`, joining a refresh that is already running.
        """
        pending = self._pending.get(issuer)
        if pending is not None:
            await pending.done.wait()
            if pending.result is not None:
                return pending.result
            raise KeyFetchError(f"Key refresh for {issuer} failed: {pending.error}") from pending.error

        pending = _PendingRefresh()
        self._pending[issuer] = pending
        try:
            entry = await self._load(issuer)
            pending.result = entry
            self._entries[issuer] = entry
            self._unknown = {k: v for k, v in self._unknown.items() if k[0] != issuer}
            return entry
        except Exception as e:
            pending.error = e
            raise
        finally:
            del self._pending[issuer]
            pending.done.set()

    async def _load(self, issuer: str) -> _IssuerKeys:
        with tracer.start_as_current_span("refresh_jwks") as span:
            span.set_attribute("oidc.issuer", issuer)

            if self._limiter is None:
                self._limiter = anyio.CapacityLimiter(self.max_concurrent_fetches)

            try:
                with anyio.fail_after(self.fetch_timeout):
                    async with self._limiter:
                        oidc_config = await self._fetch_oidc_config(issuer)
                        document = await self._fetch_jwks(oidc_config.jwks_uri)
            except TimeoutError as e:
                logger.error(f"Timed out after {self.fetch_timeout}s refreshing keys of {issuer}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                raise KeyFetchError(f"Timed out fetching keys of {issuer}") from e
            except KeyFetchError as e:
                logger.error(f"Refreshing keys of {issuer} failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            except Exception as e:
                logger.exception(f"Unexpected error refreshing keys of {issuer}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise KeyFetchError(f"Unexpected error fetching keys of {issuer}: {e}") from e

            keys = self._import_keys(issuer, document)
            logger.info(f"Loaded {len(keys)} signing key(s) for {issuer}")
            span.set_attribute("jwks.key_count", len(keys))
            span.set_status(Status(StatusCode.OK))
            return _IssuerKeys(keys, time.monotonic())

    async def _fetch_document(self, url: str, what: str) -> dict[str, Any]:
        """
        Fetches a JSON document.

        Retries on `httpx.HTTPError` up to 3 times with exponential backoff (initial=0.1s, max=1.0s).

        Raises:
            KeyFetchError: If the request fails after retries or the response is unusable.
        """
        attempts = 3
        wait_initial = 0.1
        wait_max = 1.0

        for attempt in range(attempts):
            try:
                return await safe_json_fetch(self.client, url, self.max_response_bytes)
            except httpx.HTTPError as e:
                if attempt == attempts - 1:
                    raise KeyFetchError(f"Failed to fetch {what} from {url}: {e}") from e

                sleep_time = min(wait_initial * (2**attempt), wait_max)
                await anyio.sleep(sleep_time)

        raise KeyFetchError(f"Failed to fetch {what} from {url}")  # pragma: no cover

    async def _fetch_oidc_config(self, issuer: str) -> OIDCConfig:
        """
        Fetches the issuer's discovery document to find the jwks_uri.

        Raises:
            KeyFetchError: If the document is unreachable, invalid, or names another issuer.
        """
        url = discovery_url_for(issuer)
        data = await self._fetch_document(url, "OIDC configuration")
        try:
            oidc_config = OIDCConfig(**data)
        except ValidationError as e:
            raise KeyFetchError(f"Invalid OIDC configuration from {url}: {e}") from e

        if oidc_config.issuer.rstrip("/") != issuer.rstrip("/"):
            raise KeyFetchError(
                f"OIDC configuration from {url} is for issuer '{oidc_config.issuer}', expected '{issuer}'"
            )
        return oidc_config

    async def _fetch_jwks(self, jwks_uri: str) -> JsonWebKeySetDocument:
        data = await self._fetch_document(jwks_uri, "JWKS")
        try:
            return JsonWebKeySetDocument(**data)
        except ValidationError as e:
            raise KeyFetchError(f"Invalid JWKS from {jwks_uri}: {e}") from e

    def _import_keys(self, issuer: str, document: JsonWebKeySetDocument) -> dict[str, ResolvedKey]:
        """
        Imports every usable signing key. Keys without a kid, encryption keys and keys authlib cannot read are skipped.
        """
        keys: dict[str, ResolvedKey] = {}
        for raw in document.keys:
            kid = raw.get("kid")
            if not isinstance(kid, str) or not kid:
                logger.warning(f"Skipping key without 'kid' in key set of {issuer}")
                continue
            if raw.get("use") not in (None, "sig"):
                logger.debug(f"Skipping non-signing key '{kid}' of {issuer}")
                continue
            try:
                key = JsonWebKey.import_key(raw)
            except (JoseError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unreadable key '{kid}' of {issuer}: {e}")
                continue

            alg = raw.get("alg")
            keys[kid] = ResolvedKey(
                kid=kid,
                key=key,
                kty=str(raw.get("kty", "")),
                alg=alg if isinstance(alg, str) else None,
            )
        return keys
