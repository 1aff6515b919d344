"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, webhooks
from api.dependencies import webhook_registry
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from integrations.connectors.base import ConnectorContext
from integrations.connectors.webhook import WebhookConnector
from integrations.ingest import HttpIngestClient
from integrations.transport.webhook import WebhookTransport

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Integration Connectors API",
    description="Webhook receiver for integration connectors",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(webhooks.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Integration Connectors API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    app.state.webhook_connector = None
    if not settings.WEBHOOK_SECRET or not settings.INGEST_API_TOKEN:
        logger.info("WEBHOOK_SECRET or INGEST_API_TOKEN not set; default webhook endpoint disabled")
        return

    transport = WebhookTransport(endpoint=settings.WEBHOOK_ENDPOINT)
    connector = WebhookConnector(
        name=settings.WEBHOOK_ENDPOINT,
        transport=transport,
        id_field=settings.SYNC_ID_FIELD,
        timestamp_field=settings.SYNC_TIMESTAMP_FIELD
    )
    await connector.initialize(ConnectorContext(ingest_client=HttpIngestClient()))
    webhook_registry.register(settings.WEBHOOK_ENDPOINT, transport)
    app.state.webhook_connector = connector


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Integration Connectors API")
    connector = getattr(app.state, "webhook_connector", None)
    if connector is not None:
        webhook_registry.unregister(settings.WEBHOOK_ENDPOINT)
        await connector.disconnect()
        await connector.context.ingest_client.close()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Integration Connectors API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "webhooks": "/webhooks/{endpoint}"
        }
    }
