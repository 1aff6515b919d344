# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import time
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

WEBHOOK_PREFIX = "/webhooks/"


def webhook_endpoint(path: str) -> Optional[str]:
    """Name of the webhook endpoint a path targets, if any."""
    if not path.startswith(WEBHOOK_PREFIX):
        return None
    name = path[len(WEBHOOK_PREFIX):].strip("/")
    return name or None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id (an inbound X-Request-ID from the sender wins)
    - webhook_endpoint for /webhooks/{endpoint} calls
    - api_latency_ms

    Rejected webhook deliveries (4xx/5xx) are logged at warning so signature
    failures stand out from routine health checks.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        endpoint = webhook_endpoint(request.url.path)
        started = time.perf_counter()

        request.state.request_id = request_id
        request.state.webhook_endpoint = endpoint

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        if endpoint is not None and response.status_code >= 400:
            logger.warning(
                f"Webhook delivery to {endpoint} refused with {response.status_code} "
                f"({latency_ms}ms, request_id={request_id})"
            )
        elif endpoint is not None:
            logger.info(f"Webhook delivery to {endpoint} accepted ({latency_ms}ms, request_id={request_id})")
        else:
            logger.debug(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"({latency_ms}ms, request_id={request_id})"
            )

        return response
