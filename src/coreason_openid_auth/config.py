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
Configuration for the coreason-openid-auth package.
"""

from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from coreason_openid_auth.exceptions import ConfigurationError

# Asymmetric JWS algorithms understood by authlib.jose
SUPPORTED_ALGORITHMS = frozenset(
    {
        "RS256",
        "RS384",
        "RS512",
        "PS256",
        "PS384",
        "PS512",
        "ES256",
        "ES384",
        "ES512",
        "EdDSA",
    }
)

DEFAULT_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384", "ES512", "PS256", "PS384", "PS512")


def _split_csv(v: Any) -> Any:
    """Splits a comma-separated string into an ordered tuple without blanks or duplicates."""
    if v is None:
        return ()
    if isinstance(v, str):
        v = v.split(",")
    if isinstance(v, (list, tuple)):
        seen: dict[str, None] = {}
        for item in v:
            if not isinstance(item, str):
                raise ValueError(f"Expected a string entry, got {type(item).__name__}")
            item = item.strip()
            if item:
                seen.setdefault(item, None)
        return tuple(seen)
    return v


class OpenIDAuthConfig(BaseSettings):
    """
    Configuration settings for coreason-openid-auth.

    Resolved once when the provider is initialized. Values come from keyword arguments,
    from a broker-style property mapping (see `from_properties`) or from `COREASON_OPENID_*`
    environment variables.

    Attributes:
        allowed_token_issuers (tuple[str, ...]): Trusted issuer URLs, in configured order.
        role_claim (str): The claim whose value becomes the authenticated role.
        attempt_authentication_provider_token (bool): Try the fallback authenticator when OpenID verification fails.
        allowed_audiences (tuple[str, ...]): When set, the token `aud` must contain one of these.
        allowed_algorithms (tuple[str, ...]): Accepted JWS signing algorithms.
        accepted_time_leeway_seconds (int): Clock skew tolerated on `exp` and `nbf`.
        require_expiration (bool): Reject tokens without an `exp` claim.
        http_timeout (float): Timeout in seconds for a single HTTP request to an issuer.
        key_fetch_timeout (float): Upper bound in seconds for one complete key set refresh, retries included.
        jwks_cache_ttl (int): Lifetime in seconds of a fetched key set.
        jwks_refresh_cooldown (float): Minimum seconds between refreshes caused by unknown key ids.
        unknown_key_ttl (float): Seconds an unknown key id is remembered before it is looked up again.
        max_response_bytes (int): Largest accepted discovery or key set document.
        pii_salt (SecretStr): Salt for anonymizing subjects in logs/traces.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OPENID_",
        case_sensitive=False,
        frozen=True,
    )

    allowed_token_issuers: Annotated[tuple[str, ...], NoDecode]
    role_claim: str = "sub"
    attempt_authentication_provider_token: bool = False
    allowed_audiences: Annotated[tuple[str, ...], NoDecode] = ()
    allowed_algorithms: Annotated[tuple[str, ...], NoDecode] = DEFAULT_ALGORITHMS
    accepted_time_leeway_seconds: int = Field(default=0, ge=0)
    require_expiration: bool = False
    http_timeout: float = Field(default=5.0, gt=0, description="Timeout in seconds for issuer HTTP requests.")
    key_fetch_timeout: float = Field(default=10.0, gt=0)
    jwks_cache_ttl: int = Field(default=3600, gt=0)
    jwks_refresh_cooldown: float = Field(default=30.0, ge=0)
    unknown_key_ttl: float = Field(default=30.0, ge=0)
    max_response_bytes: int = Field(default=1_048_576, gt=0)
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")

    @field_validator("allowed_token_issuers", "allowed_audiences", mode="before")
    @classmethod
    def parse_csv(cls, v: Any) -> Any:
        """Accepts comma-separated strings as well as sequences."""
        return _split_csv(v)

    @field_validator("allowed_algorithms", mode="before")
    @classmethod
    def parse_algorithms(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator("allowed_algorithms", mode="after")
    @classmethod
    def validate_algorithms(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """
        Ensures only asymmetric algorithms are accepted.

        Raises:
            ValueError: If the list is empty or names `none`, an HMAC algorithm or an unknown algorithm.
        """
        if not v:
            raise ValueError("At least one signing algorithm must be allowed.")
        for alg in v:
            if alg.lower() == "none" or alg.upper().startswith("HS"):
                raise ValueError(f"Algorithm '{alg}' is not allowed for issuer-signed tokens.")
            if alg not in SUPPORTED_ALGORITHMS:
                raise ValueError(f"Unsupported signing algorithm '{alg}'.")
        return v

    @field_validator("role_claim")
    @classmethod
    def validate_role_claim(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Role claim name must not be blank.")
        return v

    @classmethod
    def from_properties(cls, properties: Mapping[str, Any]) -> "OpenIDAuthConfig":
        """
        Builds the configuration from a broker property mapping.

        Keys are matched case-insensitively against the option names
        (e.g. `ALLOWED_TOKEN_ISSUERS`, `ROLE_CLAIM`, `ATTEMPT_AUTHENTICATION_PROVIDER_TOKEN`).
        Keys that are not options of this provider are ignored.

        Args:
            properties: Already parsed configuration, option name to value.

        Returns:
            OpenIDAuthConfig: The validated configuration.

        Raises:
            ConfigurationError: If an option is missing or malformed.
        """
        known = cls.model_fields
        values = {key.lower(): value for key, value in properties.items() if key.lower() in known}
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid OpenID authentication configuration: {e}") from e
