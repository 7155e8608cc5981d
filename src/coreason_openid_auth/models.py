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
Data models for the coreason-openid-auth package.
"""

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class ProviderState(StrEnum):
    """Lifecycle of an OpenIDAuthenticationProvider. Moves only from UNINITIALIZED to INITIALIZED."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"


class AbsentClaim(BaseModel):
    """The claim is not present in the token."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["absent"] = "absent"


class ScalarClaim(BaseModel):
    """The claim holds a single string."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["scalar"] = "scalar"
    value: str = Field(..., examples=["my-role"])


class ListClaim(BaseModel):
    """The claim holds an ordered list of strings (possibly empty)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["list"] = "list"
    values: tuple[str, ...] = Field(default=(), examples=[("my-role-1", "my-role-2")])


ClaimValue = Annotated[AbsentClaim | ScalarClaim | ListClaim, Field(discriminator="kind")]
"""Shape of a claim value as seen by role extraction."""
