"""
Health check endpoint with webhook endpoint status
"""

from fastapi import APIRouter, Depends

from api.dependencies import WebhookRegistry, get_webhook_registry
from core.config import settings
from integrations.utils import utcnow
from schemas.api import HealthCheckResponse, WebhookEndpointInfo

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(registry: WebhookRegistry = Depends(get_webhook_registry)):
    """
    Health check endpoint.

    Reports ``degraded`` when a registered webhook endpoint is disconnected
    or has no handler attached.
    """
    endpoints = []
    for name in registry.endpoints():
        transport = registry.get(name)
        endpoints.append(WebhookEndpointInfo(
            endpoint=name,
            connected=transport.is_connected(),
            has_handler=transport.has_handler,
            rejected_requests=transport.rejected_requests
        ))

    healthy = all(e.connected and e.has_handler for e in endpoints)

    return HealthCheckResponse(
        status="healthy" if healthy else "degraded",
        timestamp=utcnow(),
        environment=settings.ENVIRONMENT,
        webhook_endpoints=endpoints
    )
