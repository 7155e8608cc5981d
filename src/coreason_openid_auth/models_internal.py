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
Internal data models for the coreason-openid-auth package.
These are not exposed in the public API.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OIDCConfig(BaseModel):
    """
    OIDC Configuration from .well-known/openid-configuration.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., description="The OIDC issuer URL.")
    jwks_uri: str = Field(..., description="The URL to the JWKS.")


class JsonWebKeySetDocument(BaseModel):
    """
    A published key set. Individual keys stay raw until imported by authlib.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    keys: list[dict[str, Any]] = Field(..., description="The JSON Web Keys of the issuer.")


class ResolvedKey(BaseModel):
    """
    A public signing key taken from an issuer's key set.

    Attributes:
        kid (str): The key id.
        key (Any): The authlib key object.
        kty (str): The key type (RSA, EC, OKP).
        alg (str | None): The algorithm declared by the key, if any.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kid: str
    key: Any
    kty: str
    alg: str | None = None


class DecodedToken(BaseModel):
    """
    A compact JWS split into its parts, before any verification.

    Lives for a single authentication attempt.
    """

    model_config = ConfigDict(frozen=True)

    header: dict[str, Any]
    claims: dict[str, Any]
    signature: bytes

    @property
    def alg(self) -> str | None:
        alg = self.header.get("alg")
        return alg if isinstance(alg, str) else None

    @property
    def kid(self) -> str | None:
        kid = self.header.get("kid")
        return kid if isinstance(kid, str) and kid else None

    @property
    def issuer(self) -> str | None:
        iss = self.claims.get("iss")
        return iss if isinstance(iss, str) and iss else None
