"""
Authentication provider contract and the static providers.

Static providers (API key, Bearer, Basic, Custom, None) are deterministic:
they never contact a network endpoint and ``refresh()`` is a no-op.
"""

import base64
from abc import ABC, abstractmethod
from typing import Dict, Optional, Union, Any

from schemas.auth import AuthScheme, Credentials, TokenState


class AuthProvider(ABC):
    """
    Produces valid credentials and injects them into outbound headers.

    Subclasses implement ``get_credentials`` and ``_auth_headers``; stateful
    providers also override ``refresh`` and the token state accessors.
    """

    scheme: AuthScheme = AuthScheme.NONE
    # Whether refresh() can produce different credentials after a 401
    refreshable: bool = False

    @abstractmethod
    async def get_credentials(self) -> Credentials:
        """Return credentials that are valid right now."""
        pass

    @abstractmethod
    def _auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        pass

    async def apply_to_headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Return a copy of ``headers`` with authentication headers added."""
        credentials = await self.get_credentials()
        return {**(headers or {}), **self._auth_headers(credentials)}

    async def refresh(self) -> Credentials:
        """Force a credential refresh. Static providers return their credentials."""
        return await self.get_credentials()

    async def validate(self) -> bool:
        return True

    def get_token_state(self) -> TokenState:
        return TokenState()

    def set_token_state(self, state: Union[TokenState, Dict[str, Any]]) -> None:
        return None


class NoAuthProvider(AuthProvider):
    """Sends no authentication headers"""

    scheme = AuthScheme.NONE

    async def get_credentials(self) -> Credentials:
        return Credentials(scheme=self.scheme)

    def _auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return {}


class ApiKeyAuthProvider(AuthProvider):
    """
    API key sent in a header.

    Args:
        api_key: The key
        header_name: Header to send it in (default: X-API-Key)
        prefix: Optional value prefix, e.g. ``"Token"`` gives ``Token <key>``
    """

    scheme = AuthScheme.API_KEY

    def __init__(self, api_key: str, header_name: str = "X-API-Key", prefix: Optional[str] = None):
        self.api_key = api_key
        self.header_name = header_name
        self.prefix = prefix

    async def get_credentials(self) -> Credentials:
        return Credentials(
            scheme=self.scheme,
            access_token=self.api_key,
            metadata={"header_name": self.header_name}
        )

    def _auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        value = credentials.access_token or ""
        if self.prefix:
            value = f"{self.prefix} {value}"
        return {self.header_name: value}

    async def validate(self) -> bool:
        return bool(self.api_key) and bool(self.header_name)


class BearerAuthProvider(AuthProvider):
    """Static bearer token"""

    scheme = AuthScheme.BEARER

    def __init__(self, token: str):
        self.token = token

    async def get_credentials(self) -> Credentials:
        return Credentials(scheme=self.scheme, access_token=self.token)

    def _auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credentials.access_token}"}

    async def validate(self) -> bool:
        return bool(self.token)


class BasicAuthProvider(AuthProvider):
    """HTTP Basic authentication"""

    scheme = AuthScheme.BASIC

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    async def get_credentials(self) -> Credentials:
        encoded = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        return Credentials(
            scheme=self.scheme,
            access_token=encoded,
            metadata={"username": self.username}
        )

    def _auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return {"Authorization": f"Basic {credentials.access_token}"}

    async def validate(self) -> bool:
        return bool(self.username) and bool(self.password)


class CustomAuthProvider(AuthProvider):
    """Arbitrary static headers (vendor-specific schemes)"""

    scheme = AuthScheme.CUSTOM

    def __init__(self, headers: Dict[str, str]):
        self.headers = dict(headers)

    async def get_credentials(self) -> Credentials:
        return Credentials(scheme=self.scheme, metadata={"headers": dict(self.headers)})

    def _auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return dict(credentials.metadata.get("headers", {}))

    async def validate(self) -> bool:
        return len(self.headers) > 0
