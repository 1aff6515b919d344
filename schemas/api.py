"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from integrations.utils import utcnow


# ============================================================================
# Webhook Schemas
# ============================================================================

class WebhookAck(BaseModel):
    """Response to an accepted webhook"""
    success: bool = True
    endpoint: str
    request_id: Optional[str] = None


class WebhookErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str
    request_id: Optional[str] = None


# ============================================================================
# Health Check Schemas
# ============================================================================

class WebhookEndpointInfo(BaseModel):
    """Registration status of one webhook endpoint"""
    endpoint: str
    connected: bool
    has_handler: bool
    rejected_requests: int = 0


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall service status: healthy or degraded")
    timestamp: datetime = Field(default_factory=utcnow)
    environment: str
    webhook_endpoints: List[WebhookEndpointInfo] = Field(default_factory=list)
