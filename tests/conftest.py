# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid_auth

import os

# Keep test runs from writing logs/app.log
os.environ.setdefault("COREASON_LOG_FILE", "")

import time
from collections.abc import Callable
from typing import Any

import anyio
import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

ISSUER = "https://myissuer.com"
KID = "key-1"


class FakeIssuer:
    """
    An OpenID issuer served from memory: a discovery document and a key set.
    """

    def __init__(self, issuer: str, keys: list[dict[str, Any]]) -> None:
        self.issuer = issuer
        self.keys = keys
        self.discovery_issuer = issuer
        self.status_code = 200
        self.delay = 0.0
        self.requests: list[str] = []

    @property
    def discovery_url(self) -> str:
        return self.issuer.rstrip("/") + "/.well-known/openid-configuration"

    @property
    def jwks_uri(self) -> str:
        return self.issuer.rstrip("/") + "/protocol/openid-connect/certs"

    @property
    def jwks_fetches(self) -> int:
        return self.requests.count(self.jwks_uri)

    @property
    def discovery_fetches(self) -> int:
        return self.requests.count(self.discovery_url)


class FakeIssuerNetwork:
    """
    Routes requests of an `httpx.AsyncClient` to registered fake issuers.
    """

    def __init__(self) -> None:
        self.issuers: dict[str, FakeIssuer] = {}

    def add(self, issuer: str, keys: list[dict[str, Any]]) -> FakeIssuer:
        fake = FakeIssuer(issuer, keys)
        self.issuers[issuer] = fake
        return fake

    async def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        for fake in self.issuers.values():
            if url not in (fake.discovery_url, fake.jwks_uri):
                continue
            fake.requests.append(url)
            if fake.delay:
                await anyio.sleep(fake.delay)
            if fake.status_code != 200:
                return httpx.Response(fake.status_code, json={"error": "unavailable"})
            if url == fake.discovery_url:
                return httpx.Response(200, json={"issuer": fake.discovery_issuer, "jwks_uri": fake.jwks_uri})
            return httpx.Response(200, json={"keys": fake.keys})
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


def public_jwk(key: Any, kid: str, alg: str | None = None) -> dict[str, Any]:
    data = dict(key.as_dict(is_private=False))
    data["kid"] = kid
    data["use"] = "sig"
    if alg:
        data["alg"] = alg
    return data


@pytest.fixture(scope="session")
def signing_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def other_signing_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def ec_signing_key() -> Any:
    return JsonWebKey.generate_key("EC", "P-256", is_private=True)


@pytest.fixture
def network(signing_key: Any) -> FakeIssuerNetwork:
    network = FakeIssuerNetwork()
    network.add(ISSUER, [public_jwk(signing_key, KID, "RS256")])
    return network


@pytest.fixture
def fake_issuer(network: FakeIssuerNetwork) -> FakeIssuer:
    return network.issuers[ISSUER]


@pytest.fixture
def http_client(network: FakeIssuerNetwork) -> httpx.AsyncClient:
    return network.client()


@pytest.fixture
def make_token(signing_key: Any) -> Callable[..., str]:
    """
    Returns a factory for signed tokens. Claims default to a valid token from ISSUER.
    """

    def _make(
        claims: dict[str, Any] | None = None,
        key: Any = None,
        kid: str | None = KID,
        alg: str = "RS256",
        **extra_claims: Any,
    ) -> str:
        if claims is None:
            claims = {"iss": ISSUER, "exp": int(time.time()) + 3600}
        claims = {**claims, **extra_claims}
        header: dict[str, Any] = {"alg": alg}
        if kid is not None:
            header["kid"] = kid
        token = jwt.encode(header, claims, key if key is not None else signing_key)
        return token.decode("utf-8")

    return _make
