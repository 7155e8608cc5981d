# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid_auth

import time
from typing import Any

import anyio
import httpx
import pytest
from conftest import ISSUER, KID, FakeIssuer, FakeIssuerNetwork, public_jwk

from coreason_openid_auth.exceptions import (
    InsecureTransportError,
    KeyFetchError,
    KeyNotFoundError,
    OversizedResponseError,
)
from coreason_openid_auth.jwks_cache import JWKSCache, discovery_url_for


def test_discovery_url_for() -> None:
    assert discovery_url_for("https://myissuer.com") == "https://myissuer.com/.well-known/openid-configuration"
    assert discovery_url_for("https://kc.io/realms/a/") == "https://kc.io/realms/a/.well-known/openid-configuration"


@pytest.mark.asyncio
async def test_get_key_fetches_and_caches_whole_key_set(
    network: FakeIssuerNetwork, fake_issuer: FakeIssuer, other_signing_key: Any
) -> None:
    fake_issuer.keys.append(public_jwk(other_signing_key, "key-2", "RS256"))
    cache = JWKSCache(network.client())

    first = await cache.get_key(ISSUER, KID)
    second = await cache.get_key(ISSUER, "key-2")

    assert first.kid == KID
    assert first.kty == "RSA"
    assert first.alg == "RS256"
    assert second.kid == "key-2"
    assert fake_issuer.discovery_fetches == 1
    assert fake_issuer.jwks_fetches == 1


@pytest.mark.asyncio
async def test_cache_hit_does_not_fetch(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client())
    await cache.get_key(ISSUER, KID)
    await cache.get_key(ISSUER, KID)
    await cache.get_key(ISSUER, KID)
    assert fake_issuer.jwks_fetches == 1


@pytest.mark.asyncio
async def test_expired_key_set_is_refetched(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client(), cache_ttl=3600)
    await cache.get_key(ISSUER, KID)

    cache._entries[ISSUER].fetched_at = time.monotonic() - 3601

    await cache.get_key(ISSUER, KID)
    assert fake_issuer.jwks_fetches == 2


@pytest.mark.asyncio
async def test_unknown_kid_is_negatively_cached(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client(), refresh_cooldown=0, unknown_key_ttl=30)

    with pytest.raises(KeyNotFoundError, match="unknown-kid"):
        await cache.get_key(ISSUER, "unknown-kid")
    with pytest.raises(KeyNotFoundError):
        await cache.get_key(ISSUER, "unknown-kid")

    assert fake_issuer.jwks_fetches == 1


@pytest.mark.asyncio
async def test_key_rotation_is_picked_up_after_negative_ttl(
    network: FakeIssuerNetwork, fake_issuer: FakeIssuer, other_signing_key: Any
) -> None:
    cache = JWKSCache(network.client(), refresh_cooldown=0, unknown_key_ttl=30)

    with pytest.raises(KeyNotFoundError):
        await cache.get_key(ISSUER, "rotated")

    # The issuer publishes the new key; the negative entry then runs out
    fake_issuer.keys.append(public_jwk(other_signing_key, "rotated", "RS256"))
    cache._unknown[(ISSUER, "rotated")] = time.monotonic() - 1

    key = await cache.get_key(ISSUER, "rotated")
    assert key.kid == "rotated"
    assert fake_issuer.jwks_fetches == 2


@pytest.mark.asyncio
async def test_refresh_cooldown_limits_unknown_kid_refreshes(
    network: FakeIssuerNetwork, fake_issuer: FakeIssuer
) -> None:
    cache = JWKSCache(network.client(), refresh_cooldown=30, unknown_key_ttl=0)
    await cache.get_key(ISSUER, KID)

    for kid in ("random-1", "random-2", "random-3"):
        with pytest.raises(KeyNotFoundError):
            await cache.get_key(ISSUER, kid)

    assert fake_issuer.jwks_fetches == 1


@pytest.mark.asyncio
async def test_fetch_failure_does_not_poison_cache(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client())
    fake_issuer.status_code = 503

    with pytest.raises(KeyFetchError, match="Failed to fetch OIDC configuration"):
        await cache.get_key(ISSUER, KID)
    # Retried with backoff before giving up
    assert fake_issuer.discovery_fetches == 3
    assert ISSUER not in cache._entries

    fake_issuer.status_code = 200
    key = await cache.get_key(ISSUER, KID)
    assert key.kid == KID


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_keys(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client())
    await cache.get_key(ISSUER, KID)
    previous = cache._entries[ISSUER]
    previous.fetched_at = time.monotonic() - 7200

    fake_issuer.status_code = 500
    with pytest.raises(KeyFetchError):
        await cache.get_key(ISSUER, KID)

    assert cache._entries[ISSUER] is previous


@pytest.mark.asyncio
async def test_discovery_issuer_mismatch_is_rejected(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    fake_issuer.discovery_issuer = "https://evil.example.com"
    cache = JWKSCache(network.client())

    with pytest.raises(KeyFetchError, match="expected 'https://myissuer.com'"):
        await cache.get_key(ISSUER, KID)
    assert fake_issuer.jwks_fetches == 0


@pytest.mark.asyncio
async def test_discovery_trailing_slash_difference_is_accepted(
    network: FakeIssuerNetwork, fake_issuer: FakeIssuer
) -> None:
    fake_issuer.discovery_issuer = ISSUER + "/"
    cache = JWKSCache(network.client())
    assert (await cache.get_key(ISSUER, KID)).kid == KID


@pytest.mark.asyncio
async def test_plain_http_jwks_uri_is_refused() -> None:
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        return httpx.Response(200, json={"issuer": ISSUER, "jwks_uri": "http://myissuer.com/certs"})

    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(InsecureTransportError):
        await cache.get_key(ISSUER, KID)
    assert requests == [discovery_url_for(ISSUER)]


@pytest.mark.asyncio
async def test_invalid_discovery_document_is_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"issuer": ISSUER})

    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(KeyFetchError, match="Invalid OIDC configuration"):
        await cache.get_key(ISSUER, KID)


@pytest.mark.asyncio
async def test_invalid_key_set_document_is_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("openid-configuration"):
            return httpx.Response(200, json={"issuer": ISSUER, "jwks_uri": f"{ISSUER}/certs"})
        return httpx.Response(200, json={"keys": "not-a-list"})

    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(KeyFetchError, match="Invalid JWKS"):
        await cache.get_key(ISSUER, KID)


@pytest.mark.asyncio
async def test_oversized_key_set_is_rejected(network: FakeIssuerNetwork) -> None:
    cache = JWKSCache(network.client(), max_response_bytes=16)

    with pytest.raises(OversizedResponseError):
        await cache.get_key(ISSUER, KID)


@pytest.mark.asyncio
async def test_slow_issuer_times_out_without_poisoning(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client(), fetch_timeout=0.05)
    fake_issuer.delay = 1.0

    with pytest.raises(KeyFetchError, match="Timed out"):
        await cache.get_key(ISSUER, KID)

    fake_issuer.delay = 0.0
    assert (await cache.get_key(ISSUER, KID)).kid == KID


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_fetch(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client())
    fake_issuer.delay = 0.05
    results: list[str] = []

    async def lookup() -> None:
        key = await cache.get_key(ISSUER, KID)
        results.append(key.kid)

    async with anyio.create_task_group() as tg:
        for _ in range(20):
            tg.start_soon(lookup)

    assert results == [KID] * 20
    assert fake_issuer.discovery_fetches == 1
    assert fake_issuer.jwks_fetches == 1
    assert cache._pending == {}


@pytest.mark.asyncio
async def test_concurrent_waiters_all_see_fetch_failure(
    network: FakeIssuerNetwork, fake_issuer: FakeIssuer
) -> None:
    cache = JWKSCache(network.client())
    fake_issuer.status_code = 503
    failures: list[Exception] = []

    async def lookup() -> None:
        try:
            await cache.get_key(ISSUER, KID)
        except KeyFetchError as e:
            failures.append(e)

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(lookup)

    assert len(failures) == 5
    # One leader, three attempts on the discovery document
    assert fake_issuer.discovery_fetches == 3


@pytest.mark.asyncio
async def test_issuers_are_fetched_independently(
    network: FakeIssuerNetwork, fake_issuer: FakeIssuer, other_signing_key: Any
) -> None:
    other = network.add("https://other.example.com", [public_jwk(other_signing_key, KID, "RS256")])
    cache = JWKSCache(network.client())
    fake_issuer.delay = 0.05
    other.delay = 0.05

    async with anyio.create_task_group() as tg:
        for _ in range(3):
            tg.start_soon(cache.get_key, ISSUER, KID)
            tg.start_soon(cache.get_key, "https://other.example.com", KID)

    assert fake_issuer.jwks_fetches == 1
    assert other.jwks_fetches == 1
    assert set(cache._entries) == {ISSUER, "https://other.example.com"}


@pytest.mark.asyncio
async def test_unusable_keys_are_skipped(network: FakeIssuerNetwork, fake_issuer: FakeIssuer, signing_key: Any) -> None:
    no_kid = dict(public_jwk(signing_key, "x"))
    del no_kid["kid"]
    encryption_key = public_jwk(signing_key, "enc-key")
    encryption_key["use"] = "enc"
    fake_issuer.keys.extend([no_kid, encryption_key, {"kid": "broken", "kty": "RSA", "n": "!!"}])

    cache = JWKSCache(network.client())
    await cache.get_key(ISSUER, KID)

    assert set(cache._entries[ISSUER].keys) == {KID}


@pytest.mark.asyncio
async def test_invalidate(network: FakeIssuerNetwork, fake_issuer: FakeIssuer) -> None:
    cache = JWKSCache(network.client())
    await cache.get_key(ISSUER, KID)

    cache.invalidate(ISSUER)
    assert ISSUER not in cache._entries

    await cache.get_key(ISSUER, KID)
    cache.invalidate()
    assert cache._entries == {}
    assert fake_issuer.jwks_fetches == 2


@pytest.mark.asyncio
async def test_unparseable_jwks_uri_is_fetch_error_for_every_waiter() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"issuer": ISSUER, "jwks_uri": "https://myissuer.com:notaport/certs"})

    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    failures: list[Exception] = []

    async def lookup() -> None:
        try:
            await cache.get_key(ISSUER, KID)
        except KeyFetchError as e:
            failures.append(e)

    async with anyio.create_task_group() as tg:
        for _ in range(3):
            tg.start_soon(lookup)

    assert len(failures) == 3
    assert all(isinstance(e.__cause__, (httpx.InvalidURL, KeyFetchError)) for e in failures)
    assert ISSUER not in cache._entries
    assert cache._pending == {}


@pytest.mark.asyncio
async def test_unexpected_error_during_refresh_is_fetch_error(network: FakeIssuerNetwork) -> None:
    cache = JWKSCache(network.client())

    async def explode(issuer: str) -> Any:
        raise RuntimeError("boom")

    cache._fetch_oidc_config = explode  # type: ignore[method-assign]

    with pytest.raises(KeyFetchError, match="Unexpected error") as exc_info:
        await cache.get_key(ISSUER, KID)
    assert isinstance(exc_info.value.__cause__, RuntimeError)
