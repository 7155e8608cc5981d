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
Custom exceptions for the coreason-openid-auth package.
"""


class CoreasonAuthError(Exception):
    """Base exception for all coreason-openid-auth errors."""


class ConfigurationError(CoreasonAuthError, ValueError):
    """
    Raised when the provider configuration is invalid (no issuers, insecure issuer, bad option values).
    Always raised at initialization time, never per request.
    """


class ProviderStateError(CoreasonAuthError, RuntimeError):
    """Raised when the provider is used out of order (e.g. authenticate before initialize)."""


class AuthenticationError(CoreasonAuthError):
    """
    Raised when a presented token cannot be turned into a verified identity.
    Callers should reject the connection.
    """


class InvalidTokenError(AuthenticationError):
    """Raised when the token is invalid (expired, bad signature, wrong audience, etc.)."""


class MalformedTokenError(InvalidTokenError):
    """Raised when the token is not a well-formed compact JWS."""


class UntrustedIssuerError(InvalidTokenError):
    """Raised when the token's issuer is missing or not in the allowed issuer list."""


class AlgorithmMismatchError(InvalidTokenError):
    """Raised when the token's algorithm is not allowed or does not fit the resolved key."""


class SignatureVerificationError(InvalidTokenError):
    """Raised when the token's signature cannot be verified."""


class KeyNotFoundError(SignatureVerificationError):
    """Raised when the issuer's key set does not contain the token's key id."""


class TokenExpiredError(InvalidTokenError):
    """Raised when the provided token has expired."""


class TokenNotYetValidError(InvalidTokenError):
    """Raised when the token's not-before time is in the future."""


class InvalidAudienceError(InvalidTokenError):
    """Raised when the token's audience does not match the expected value."""


class KeyFetchError(AuthenticationError):
    """
    Raised when an issuer's signing keys cannot be retrieved.
    Retryable: the next lookup fetches again.
    """


class OversizedResponseError(KeyFetchError):
    """Raised when an HTTP response is too large."""


class InsecureTransportError(KeyFetchError):
    """Raised when a request would leave the https scheme."""


class RoleClaimError(CoreasonAuthError):
    """Raised when the role claim has a shape that cannot be read as a role (e.g. a number or an object)."""
