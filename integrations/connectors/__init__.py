"""
Connectors: one sync pass per ``pull()``.

Modules:
    base: Orchestration, idempotency keys and checkpoint tracking
    rest_api: Paginated REST endpoints
    file_batch: FTP/SFTP file drops
    webhook: Pushed webhook payloads
"""

from integrations.connectors.base import (
    BaseConnector,
    ConnectorContext,
    ConnectorState,
    SequentialCheckpointTracker,
    WatermarkCheckpointTracker,
    idempotency_key,
)
from integrations.connectors.rest_api import RestApiConnector
from integrations.connectors.file_batch import FileBatchConnector
from integrations.connectors.webhook import WebhookConnector

__all__ = [
    "BaseConnector",
    "ConnectorContext",
    "ConnectorState",
    "SequentialCheckpointTracker",
    "WatermarkCheckpointTracker",
    "idempotency_key",
    "RestApiConnector",
    "FileBatchConnector",
    "WebhookConnector",
]
