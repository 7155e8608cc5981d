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
RoleExtractor component for deriving the authenticated role from verified claims.
"""

from collections.abc import Mapping
from typing import Any

from coreason_openid_auth.exceptions import RoleClaimError
from coreason_openid_auth.models import AbsentClaim, ClaimValue, ListClaim, ScalarClaim


def classify_claim(claims: Mapping[str, Any], claim_name: str) -> ClaimValue:
    """
    Determines the shape of a claim value.

    Args:
        claims: The verified claims.
        claim_name: The claim to inspect.

    Returns:
        ClaimValue: `AbsentClaim`, `ScalarClaim` or `ListClaim`.

    Raises:
        RoleClaimError: If the value is neither a string nor a list of strings.
    """
    if claim_name not in claims:
        return AbsentClaim()

    value = claims[claim_name]
    if isinstance(value, str):
        return ScalarClaim(value=value)
    if isinstance(value, (list, tuple)):
        if not all(isinstance(item, str) for item in value):
            raise RoleClaimError(f"Claim '{claim_name}' must only contain strings")
        return ListClaim(values=tuple(value))

    raise RoleClaimError(f"Claim '{claim_name}' has unsupported type {type(value).__name__}")


def extract_role(claims: Mapping[str, Any], claim_name: str) -> str | None:
    """
    Returns the role carried by `claim_name`.

    A missing claim or an empty list yields None. A list yields its first entry;
    further entries are ignored.

    Raises:
        RoleClaimError: If the claim has any other shape.
    """
    match classify_claim(claims, claim_name):
        case ScalarClaim(value=value):
            return value
        case ListClaim(values=values):
            return values[0] if values else None
        case _:
            return None


class RoleExtractor:
    """
    Maps verified token claims to a role using the configured claim name.
    """

    def __init__(self, claim_name: str = "sub") -> None:
        """
        Args:
            claim_name: The claim holding the role. Defaults to "sub".
        """
        self.claim_name = claim_name

    def extract_role(self, claims: Mapping[str, Any]) -> str | None:
        """Returns the role in the configured claim, or None if the token asserts none."""
        return extract_role(claims, self.claim_name)
