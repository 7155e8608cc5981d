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
TokenVerifier component for validating JWT signatures and claims.
"""

import time
from typing import Any, cast

from authlib.common.encoding import json_loads, to_bytes
from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    DecodeError,
    ExpiredTokenError,
    InvalidClaimError,
    InvalidTokenError as JoseInvalidTokenError,
    JoseError,
    MissingClaimError,
    UnsupportedAlgorithmError,
)
from authlib.jose.util import extract_header, extract_segment
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr

from coreason_openid_auth.exceptions import (
    AlgorithmMismatchError,
    AuthenticationError,
    InvalidAudienceError,
    InvalidTokenError,
    MalformedTokenError,
    SignatureVerificationError,
    TokenExpiredError,
    TokenNotYetValidError,
    UntrustedIssuerError,
)
from coreason_openid_auth.issuer_registry import IssuerRegistry
from coreason_openid_auth.jwks_cache import JWKSCache
from coreason_openid_auth.models_internal import DecodedToken, ResolvedKey
from coreason_openid_auth.utils.logger import anonymize, logger

tracer = trace.get_tracer(__name__)

# Key type required by each JWS algorithm family
ALGORITHM_KEY_TYPES = {
    "RS": "RSA",
    "PS": "RSA",
    "ES": "EC",
    "Ed": "OKP",
}


def decode_unverified(token: str) -> DecodedToken:
    """
    Splits a compact JWS into header, claims and signature without verifying anything.

    Args:
        token: The raw token string.

    Returns:
        DecodedToken: The decoded parts.

    Raises:
        MalformedTokenError: If the token is not three base64url segments with JSON header and payload.
    """
    parts = token.split(".")
    if len(parts) != 3 or not all(parts[:2]):
        raise MalformedTokenError("Token must consist of three dot-separated segments")

    header_segment, payload_segment, signature_segment = (to_bytes(p) for p in parts)
    try:
        header = extract_header(header_segment, DecodeError)
        payload = extract_segment(payload_segment, DecodeError, "payload")
        signature = extract_segment(signature_segment, DecodeError, "signature")
        claims = json_loads(payload.decode("utf-8"))
    except (DecodeError, ValueError) as e:
        raise MalformedTokenError(f"Malformed token: {e}") from e

    if not isinstance(claims, dict):
        raise MalformedTokenError("Token payload must be a JSON object")

    return DecodedToken(header=header, claims=claims, signature=signature)


def check_key_algorithm(alg: str, key: ResolvedKey) -> None:
    """
    Ensures the token's algorithm fits the resolved key.

    Raises:
        AlgorithmMismatchError: If the key declares another algorithm or has the wrong key type.
    """
    if key.alg is not None and key.alg != alg:
        raise AlgorithmMismatchError(
            f"Token algorithm '{alg}' does not match key '{key.kid}' algorithm '{key.alg}'"
        )

    expected_kty = ALGORITHM_KEY_TYPES.get(alg[:2])
    if expected_kty is None or key.kty != expected_kty:
        raise AlgorithmMismatchError(
            f"Token algorithm '{alg}' cannot be used with {key.kty or 'unknown'} key '{key.kid}'"
        )


class TokenVerifier:
    """
    Verifies JWTs against the signing keys of the issuer that minted them.

    Attributes:
        registry (IssuerRegistry): The trusted issuers.
        key_cache (JWKSCache): Source of issuer signing keys.
        allowed_algorithms (tuple[str, ...]): Accepted JWS algorithms.
        audiences (tuple[str, ...]): Accepted audiences. Empty disables the audience check.
        leeway (int): Acceptable clock skew in seconds.
        require_expiration (bool): Whether `exp` must be present.
    """

    def __init__(
        self,
        registry: IssuerRegistry,
        key_cache: JWKSCache,
        allowed_algorithms: tuple[str, ...],
        pii_salt: SecretStr,
        audiences: tuple[str, ...] = (),
        leeway: int = 0,
        require_expiration: bool = False,
    ) -> None:
        """
        Initialize the TokenVerifier.

        Args:
            registry: The trusted issuers.
            key_cache: The JWKS cache to resolve signing keys.
            allowed_algorithms: List of allowed JWT signing algorithms. REQUIRED.
            pii_salt: Salt for anonymizing subjects in logs. REQUIRED.
            audiences: Accepted audience values. Defaults to no audience check.
            leeway: Acceptable clock skew in seconds. Defaults to 0.
            require_expiration: Reject tokens without `exp`. Defaults to False.
        """
        self.registry = registry
        self.key_cache = key_cache
        self.allowed_algorithms = tuple(allowed_algorithms)
        self.pii_salt = pii_salt
        self.audiences = tuple(audiences)
        self.leeway = leeway
        self.require_expiration = require_expiration
        # A dedicated JsonWebToken instance refuses every algorithm outside the allow list
        self.jwt = JsonWebToken(list(self.allowed_algorithms))

    def _claims_options(self, issuer: str) -> dict[str, Any]:
        options: dict[str, Any] = {
            "iss": {"essential": True, "value": issuer},
            "exp": {"essential": self.require_expiration},
            "nbf": {"essential": False},
        }
        if self.audiences:
            options["aud"] = {"essential": True, "values": list(self.audiences)}
        return options

    async def verify(self, raw_token: str | bytes | None) -> dict[str, Any]:
        """
        Verifies the JWT signature and claims.

        Cheap structural checks run first; the key set is only fetched for tokens
        from a trusted issuer with an allowed algorithm and a key id.

        Emits an OpenTelemetry span `verify_token`.

        Args:
            raw_token: The raw token, without any "Bearer " prefix.

        Returns:
            dict[str, Any]: The validated claims dictionary.

        Raises:
            InvalidTokenError: If the token is missing, malformed, untrusted or fails a claim check.
            TokenExpiredError: If the token has expired.
            TokenNotYetValidError: If the token is not valid yet.
            InvalidAudienceError: If the audience is invalid.
            SignatureVerificationError: If the signature is invalid or the key is unknown.
            AlgorithmMismatchError: If the algorithm is not allowed or does not fit the key.
            KeyFetchError: If the issuer's keys cannot be fetched.
        """
        if raw_token is None or not raw_token.strip():
            raise InvalidTokenError("Token is missing")

        if isinstance(raw_token, bytes):
            try:
                raw_token = raw_token.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedTokenError("Token is not valid UTF-8") from e

        token = raw_token.strip()

        with tracer.start_as_current_span("verify_token") as span:
            try:
                decoded = decode_unverified(token)

                alg = decoded.alg
                if alg is None:
                    raise AlgorithmMismatchError("Token header has no 'alg'")
                if alg not in self.allowed_algorithms:
                    raise AlgorithmMismatchError(f"Token algorithm '{alg}' is not allowed")

                kid = decoded.kid
                if kid is None:
                    raise InvalidTokenError("Token header has no 'kid'")

                issuer = decoded.issuer
                if issuer is None:
                    raise UntrustedIssuerError("Token has no 'iss' claim")
                if issuer not in self.registry:
                    raise UntrustedIssuerError(f"Token issuer '{issuer}' is not allowed")
                span.set_attribute("oidc.issuer", issuer)

                key = await self.key_cache.get_key(issuer, kid)
                check_key_algorithm(alg, key)

                jwt_any = cast("Any", self.jwt)
                claims = jwt_any.decode(token, key.key, claims_options=self._claims_options(issuer))
                claims.validate(now=int(time.time()), leeway=self.leeway)

                payload = dict(claims)

                user_hash = anonymize(str(payload.get("sub", "unknown")), self.pii_salt)
                logger.info(f"Token from {issuer} validated for subject {user_hash}")
                span.set_attribute("enduser.id", user_hash)
                span.set_status(Status(StatusCode.OK))
                return payload

            except ExpiredTokenError as e:
                self._record(span, e, "Token expired")
                raise TokenExpiredError(f"Token has expired: {e}") from e
            except JoseInvalidTokenError as e:
                # authlib raises InvalidTokenError for "nbf" in the future
                self._record(span, e, "Token not valid yet")
                raise TokenNotYetValidError(f"Token is not valid yet: {e}") from e
            except InvalidClaimError as e:
                self._record(span, e, "Invalid claim")
                if "\"aud\"" in str(e):
                    raise InvalidAudienceError(f"Invalid audience: {e}") from e
                raise InvalidTokenError(f"Invalid claim: {e}") from e
            except MissingClaimError as e:
                self._record(span, e, "Missing claim")
                if "\"aud\"" in str(e):
                    raise InvalidAudienceError(f"Missing audience: {e}") from e
                raise InvalidTokenError(f"Missing claim: {e}") from e
            except BadSignatureError as e:
                self._record(span, e, "Bad signature")
                raise SignatureVerificationError(f"Invalid signature: {e}") from e
            except UnsupportedAlgorithmError as e:
                self._record(span, e, "Unsupported algorithm")
                raise AlgorithmMismatchError(f"Unsupported algorithm: {e}") from e
            except JoseError as e:
                self._record(span, e, "JOSE error")
                raise InvalidTokenError(f"Token validation failed: {e}") from e
            except AuthenticationError as e:
                self._record(span, e, type(e).__name__)
                raise
            except ValueError as e:
                # authlib raises ValueError when a key cannot be used for the declared algorithm
                self._record(span, e, "Value error")
                raise SignatureVerificationError(f"Invalid signature or unusable key: {e}") from e
            except Exception as e:
                logger.exception("Unexpected error during token validation")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise AuthenticationError(f"Unexpected error during token validation: {e}") from e

    @staticmethod
    def _record(span: Any, error: Exception, reason: str) -> None:
        logger.warning(f"Validation failed: {reason}: {error}")
        span.record_exception(error)
        span.set_status(Status(StatusCode.ERROR, str(error)))
