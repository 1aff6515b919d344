"""
Pydantic schemas for credentials and persisted token state
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class AuthScheme(str, Enum):
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    BEARER = "bearer"
    BASIC = "basic"
    CUSTOM = "custom"
    NONE = "none"


class Credentials(BaseModel):
    """
    Material produced by an auth provider.

    For OAuth2, ``expires_at`` is timezone-aware UTC; ``None`` means the
    expiry is unknown and the token is used until the server rejects it.
    """
    scheme: AuthScheme
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TokenState(BaseModel):
    """Serializable token state for persistence between process runs"""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
