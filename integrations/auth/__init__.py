"""
Authentication providers for integration connectors.
"""

from integrations.auth.base import (
    AuthProvider,
    NoAuthProvider,
    ApiKeyAuthProvider,
    BearerAuthProvider,
    BasicAuthProvider,
    CustomAuthProvider,
)
from integrations.auth.oauth2 import OAuth2Provider

__all__ = [
    "AuthProvider",
    "NoAuthProvider",
    "ApiKeyAuthProvider",
    "BearerAuthProvider",
    "BasicAuthProvider",
    "CustomAuthProvider",
    "OAuth2Provider",
]
