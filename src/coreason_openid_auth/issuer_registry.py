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
IssuerRegistry component holding the trusted token issuers.
"""

from collections.abc import Iterable, Iterator
from urllib.parse import urlparse

from coreason_openid_auth.exceptions import ConfigurationError
from coreason_openid_auth.utils.logger import logger


def validate_issuer_url(issuer: str) -> str:
    """
    Ensures an issuer URL is reachable over a transport-secure scheme.

    Args:
        issuer: The issuer URL.

    Returns:
        The issuer URL, unchanged.

    Raises:
        ConfigurationError: If the scheme is not https or the URL has no host.
    """
    parsed = urlparse(issuer)
    if parsed.scheme.lower() != "https":
        raise ConfigurationError(f"Issuer '{issuer}' must use https.")
    if not parsed.hostname:
        raise ConfigurationError(f"Issuer '{issuer}' has no host.")
    return issuer


class IssuerRegistry:
    """
    Immutable set of trusted issuers.

    Membership is an exact string comparison with the token's `iss` claim.
    """

    __slots__ = ("_issuers", "_ordered")

    def __init__(self, issuers: Iterable[str]) -> None:
        """
        Initialize the IssuerRegistry.

        Every entry is validated before anything is stored, so one insecure issuer
        fails the whole registry.

        Args:
            issuers: The configured issuer URLs.

        Raises:
            ConfigurationError: If no issuer is given or any issuer is not https.
        """
        ordered = tuple(dict.fromkeys(i.strip() for i in issuers if i and i.strip()))
        if not ordered:
            raise ConfigurationError("At least one allowed token issuer must be configured.")

        for issuer in ordered:
            validate_issuer_url(issuer)

        self._ordered = ordered
        self._issuers = frozenset(ordered)
        logger.info(f"Trusting {len(ordered)} token issuer(s): {', '.join(ordered)}")

    def contains(self, issuer: object) -> bool:
        """Returns True if `issuer` is exactly one of the trusted issuers. Non-strings are never trusted."""
        return isinstance(issuer, str) and issuer in self._issuers

    def __contains__(self, issuer: object) -> bool:
        return self.contains(issuer)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __repr__(self) -> str:
        return f"IssuerRegistry({list(self._ordered)!r})"
