"""
Push-only connector fed by a WebhookTransport.

Verified webhook payloads are transformed and uploaded as they arrive;
``pull()`` has nothing to fetch and returns an empty result.
"""

import asyncio
from typing import AsyncIterator, Dict, Optional

from integrations.connectors.base import BaseConnector, ConnectorContext
from integrations.transformers.base import Transformer
from integrations.transformers.json_transformer import JsonTransformer
from integrations.transport.webhook import WebhookTransport
from schemas.sync import Checkpoint, SourceBatch, SyncParams, SyncStatus
from schemas.webhook import WebhookPayload


class WebhookConnector(BaseConnector):
    def __init__(
        self,
        name: str,
        transport: WebhookTransport,
        transformer: Optional[Transformer] = None,
        id_field: Optional[str] = "id",
        timestamp_field: Optional[str] = None,
        **kwargs
    ):
        transformer = transformer or JsonTransformer(id_field=id_field, timestamp_field=timestamp_field)
        super().__init__(name, transport, transformer, **kwargs)

    async def initialize(self, context: ConnectorContext) -> None:
        await super().initialize(context)
        self.transport.on_webhook(self._on_webhook)

    async def fetch_batches(
        self,
        params: SyncParams,
        start: Optional[Checkpoint],
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[SourceBatch]:
        return
        yield

    async def _on_webhook(self, payload: WebhookPayload, headers: Dict[str, str]) -> None:
        result = await self.handle_webhook(payload, headers)
        if result.status != SyncStatus.SUCCESS:
            self.logger.warning(
                f"Webhook {payload.event} ({payload.event_id or 'no id'}) for {self.name}: "
                f"{len(result.errors)} items failed"
            )
