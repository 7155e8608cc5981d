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
OpenIDAuthenticationProvider component: the entry point called by the hosting broker.
"""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_openid_auth.config import OpenIDAuthConfig
from coreason_openid_auth.exceptions import (
    AuthenticationError,
    ConfigurationError,
    CoreasonAuthError,
    ProviderStateError,
    RoleClaimError,
)
from coreason_openid_auth.issuer_registry import IssuerRegistry
from coreason_openid_auth.jwks_cache import JWKSCache
from coreason_openid_auth.models import ProviderState
from coreason_openid_auth.role_extractor import RoleExtractor
from coreason_openid_auth.transport import SecureAsyncTransport
from coreason_openid_auth.utils.logger import logger
from coreason_openid_auth.validator import TokenVerifier

AUTH_METHOD_NAME = "token"


@runtime_checkable
class FallbackAuthenticator(Protocol):
    """
    A second token verification path tried when OpenID verification fails
    and `attempt_authentication_provider_token` is enabled.
    """

    async def authenticate(self, token: str | bytes) -> str | None:
        """Returns the role for `token` or raises `AuthenticationError`."""
        ...


class OpenIDAuthenticationProvider:
    """
    Authenticates bearer tokens issued by trusted OpenID Connect issuers and returns the role they carry.

    The provider starts UNINITIALIZED and becomes INITIALIZED through `initialize`, exactly once.
    `authenticate` may then be called concurrently any number of times.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        fallback: FallbackAuthenticator | None = None,
    ) -> None:
        """
        Create an uninitialized provider.

        Args:
            client: External async client (optional). If not provided, a `SecureAsyncTransport` client is
                created during `initialize` and closed by `aclose`.
            fallback: Authenticator tried after OpenID verification fails, when enabled by configuration.
        """
        self._external_client = client
        self._client: httpx.AsyncClient | None = None
        self.fallback = fallback
        self.state = ProviderState.UNINITIALIZED
        self.config: OpenIDAuthConfig | None = None
        self.registry: IssuerRegistry | None = None
        self.key_cache: JWKSCache | None = None
        self.verifier: TokenVerifier | None = None
        self.role_extractor: RoleExtractor | None = None
        self._use_fallback = False

    @classmethod
    def create(
        cls,
        config: Mapping[str, Any] | OpenIDAuthConfig,
        client: httpx.AsyncClient | None = None,
        fallback: FallbackAuthenticator | None = None,
    ) -> "OpenIDAuthenticationProvider":
        """
        Builds an initialized provider.

        Raises:
            ConfigurationError: If the configuration is invalid.
        """
        provider = cls(client=client, fallback=fallback)
        provider.initialize(config)
        return provider

    @property
    def auth_method_name(self) -> str:
        return AUTH_METHOD_NAME

    def initialize(self, config: Mapping[str, Any] | OpenIDAuthConfig) -> None:
        """
        Validates the configuration and wires the issuer registry, key cache, verifier and role extractor.

        Args:
            config: An `OpenIDAuthConfig` or a mapping of option names to values
                (`ALLOWED_TOKEN_ISSUERS`, `ROLE_CLAIM`, `ATTEMPT_AUTHENTICATION_PROVIDER_TOKEN`, ...).

        Raises:
            ConfigurationError: If the configuration is invalid. Nothing is initialized in that case.
            ProviderStateError: If the provider was already initialized.
        """
        if self.state is ProviderState.INITIALIZED:
            raise ProviderStateError("OpenIDAuthenticationProvider is already initialized.")

        if not isinstance(config, OpenIDAuthConfig):
            config = OpenIDAuthConfig.from_properties(config)

        registry = IssuerRegistry(config.allowed_token_issuers)

        if config.attempt_authentication_provider_token and self.fallback is None:
            raise ConfigurationError(
                "ATTEMPT_AUTHENTICATION_PROVIDER_TOKEN is enabled but no fallback authenticator was supplied."
            )

        if self._external_client is not None:
            client = self._external_client
        else:
            client = httpx.AsyncClient(
                transport=SecureAsyncTransport(),
                timeout=config.http_timeout,
                follow_redirects=True,
            )
            # Instrument the client for distributed tracing
            HTTPXClientInstrumentor().instrument_client(client)

        key_cache = JWKSCache(
            client,
            cache_ttl=config.jwks_cache_ttl,
            refresh_cooldown=config.jwks_refresh_cooldown,
            unknown_key_ttl=config.unknown_key_ttl,
            fetch_timeout=config.key_fetch_timeout,
            max_response_bytes=config.max_response_bytes,
        )

        self._client = client
        self.config = config
        self.registry = registry
        self.key_cache = key_cache
        self.verifier = TokenVerifier(
            registry=registry,
            key_cache=key_cache,
            allowed_algorithms=config.allowed_algorithms,
            pii_salt=config.pii_salt,
            audiences=config.allowed_audiences,
            leeway=config.accepted_time_leeway_seconds,
            require_expiration=config.require_expiration,
        )
        self.role_extractor = RoleExtractor(config.role_claim)
        self._use_fallback = config.attempt_authentication_provider_token and self.fallback is not None
        self.state = ProviderState.INITIALIZED
        logger.info(f"OpenID authentication provider initialized (role claim '{config.role_claim}')")

    def _require_initialized(self) -> None:
        if self.state is not ProviderState.INITIALIZED:
            raise ProviderStateError("OpenIDAuthenticationProvider.initialize() must be called first.")

    def extract_role(self, claims: Mapping[str, Any]) -> str | None:
        """
        Applies the configured role claim to already verified claims.

        Raises:
            ProviderStateError: If the provider is not initialized.
            RoleClaimError: If the role claim is neither a string nor a list of strings.
        """
        self._require_initialized()
        return self.role_extractor.extract_role(claims)  # type: ignore[union-attr]

    async def authenticate(self, token: str | bytes | None) -> str | None:
        """
        Verifies the token and returns the role it carries.

        Args:
            token: The raw bearer token.

        Returns:
            str | None: The role, or None when the token is valid but asserts no role.

        Raises:
            AuthenticationError: If the token cannot be verified. The message never names the reason;
                the detailed error is chained and logged.
            ProviderStateError: If the provider is not initialized.
        """
        self._require_initialized()

        try:
            claims = await self.verifier.verify(token)  # type: ignore[union-attr]
            return self.role_extractor.extract_role(claims)  # type: ignore[union-attr]
        except (AuthenticationError, RoleClaimError) as e:
            if self._use_fallback and token:
                return await self._authenticate_fallback(token, e)
            logger.warning(f"Authentication failed: {type(e).__name__}: {e}")
            raise AuthenticationError("Authentication failed") from e

    async def _authenticate_fallback(self, token: str | bytes, cause: CoreasonAuthError) -> str | None:
        logger.debug(f"OpenID verification failed ({type(cause).__name__}), trying fallback authenticator")
        try:
            return await self.fallback.authenticate(token)  # type: ignore[union-attr]
        except AuthenticationError as e:
            logger.warning(f"Authentication failed: {type(cause).__name__}: {cause}; fallback: {e}")
            raise AuthenticationError("Authentication failed") from e

    async def aclose(self) -> None:
        """Closes the HTTP client if this provider created it."""
        if self._client is not None and self._external_client is None:
            await self._client.aclose()

    async def __aenter__(self) -> "OpenIDAuthenticationProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
