"""
Inbound webhook endpoint.

The raw body is passed through untouched so the HMAC is computed over the
exact bytes the sender signed.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.dependencies import WebhookRegistry, get_webhook_registry
from core.exceptions import IntegrationError, TransportError, ValidationError
from schemas.api import WebhookAck, WebhookErrorResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Webhooks"])


def _error(status_code: int, message: str, code: str, request: Request) -> JSONResponse:
    body = WebhookErrorResponse(
        error=message,
        code=code,
        request_id=getattr(request.state, "request_id", None)
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post(
    "/webhooks/{endpoint}",
    response_model=WebhookAck,
    responses={
        400: {"model": WebhookErrorResponse},
        401: {"model": WebhookErrorResponse},
        404: {"model": WebhookErrorResponse},
        503: {"model": WebhookErrorResponse},
    }
)
async def receive_webhook(
    endpoint: str,
    request: Request,
    registry: WebhookRegistry = Depends(get_webhook_registry)
):
    """
    Verify and dispatch one webhook.

    Returns:
    - 200 on acceptance
    - 401 when the signature is missing or wrong
    - 400 when the body is not valid JSON
    - 404 for unknown endpoints
    - 503 when the endpoint has no handler attached
    """
    transport = registry.get(endpoint)
    if transport is None:
        return _error(404, f"Unknown webhook endpoint: {endpoint}", "NOT_FOUND", request)

    body = await request.body()

    try:
        accepted = await transport.process_request(body, dict(request.headers))

    except ValidationError as e:
        logger.warning(f"Rejected webhook for {endpoint}: {e.message}")
        return _error(400, e.message, e.code, request)

    except TransportError as e:
        logger.error(f"Webhook endpoint {endpoint} unavailable: {e.message}")
        return _error(503, e.message, e.code, request)

    except IntegrationError as e:
        logger.error(f"Webhook handler for {endpoint} failed: {e.message}")
        return _error(500, e.message, e.code, request)

    if not accepted:
        return _error(401, "Invalid webhook signature", "INVALID_SIGNATURE", request)

    return WebhookAck(endpoint=endpoint, request_id=getattr(request.state, "request_id", None))
