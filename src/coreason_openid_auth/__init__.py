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
OpenID Connect token authentication for message brokers: verifies issuer-signed bearer tokens and extracts a role.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import OpenIDAuthConfig
from .exceptions import AuthenticationError, ConfigurationError, ProviderStateError
from .issuer_registry import IssuerRegistry
from .jwks_cache import JWKSCache
from .provider import FallbackAuthenticator, OpenIDAuthenticationProvider
from .role_extractor import RoleExtractor, extract_role
from .validator import TokenVerifier

__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "FallbackAuthenticator",
    "IssuerRegistry",
    "JWKSCache",
    "OpenIDAuthConfig",
    "OpenIDAuthenticationProvider",
    "ProviderStateError",
    "RoleExtractor",
    "TokenVerifier",
    "extract_role",
]
