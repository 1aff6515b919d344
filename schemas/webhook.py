"""
Pydantic schemas for inbound webhook requests
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime

from integrations.utils import utcnow


class WebhookEvent(BaseModel):
    """Raw inbound request: body bytes exactly as received, headers, signature"""
    body: bytes
    headers: Dict[str, str] = Field(default_factory=dict)
    signature: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class WebhookPayload(BaseModel):
    """Standard fields parsed out of a verified webhook body"""
    event: str = "webhook"
    data: Any = None
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = "webhook"
    event_id: Optional[str] = None
    raw: Any = None
