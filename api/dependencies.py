"""
Shared API dependencies: the registry of webhook endpoints
"""

import logging
from typing import Dict, List, Optional

from core.exceptions import ConfigurationError
from integrations.transport.webhook import WebhookTransport

logger = logging.getLogger(__name__)


class WebhookRegistry:
    """Maps ``/webhooks/{endpoint}`` names to their transports."""

    def __init__(self):
        self._transports: Dict[str, WebhookTransport] = {}

    def register(self, endpoint: str, transport: WebhookTransport) -> None:
        if endpoint in self._transports and self._transports[endpoint] is not transport:
            raise ConfigurationError(
                f"Webhook endpoint already registered: {endpoint}",
                context={"endpoint": endpoint}
            )
        self._transports[endpoint] = transport
        logger.info(f"Registered webhook endpoint /webhooks/{endpoint}")

    def unregister(self, endpoint: str) -> Optional[WebhookTransport]:
        return self._transports.pop(endpoint, None)

    def get(self, endpoint: str) -> Optional[WebhookTransport]:
        return self._transports.get(endpoint)

    def endpoints(self) -> List[str]:
        return sorted(self._transports)

    def clear(self) -> None:
        self._transports.clear()


webhook_registry = WebhookRegistry()


def get_webhook_registry() -> WebhookRegistry:
    """Dependency for getting the webhook registry"""
    return webhook_registry


def register_webhook(endpoint: str, transport: WebhookTransport) -> None:
    webhook_registry.register(endpoint, transport)
