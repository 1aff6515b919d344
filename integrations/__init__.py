"""
Integration connector framework.

This package contains everything needed to pull (or receive) data from
external systems and forward it to the ingestion boundary:

Modules:
    retry: Exponential backoff executor with error classification
    scheduler: APScheduler cron integration with overlap control
    cancellation: Cancellation signal helpers (asyncio.Event based)
    ingest: Ingestion boundary client (upload with idempotency keys)
    utils: Dot-path extraction and timestamp helpers

Subpackages:
    auth: Credential providers (OAuth2, API key, Bearer, Basic, Custom)
    transport: REST, FTP/SFTP, file watcher and webhook transports
    transformers: CSV, JSON and fixed-width flat file transformers
    connectors: Sync orchestration with resumable checkpoints

Architecture:
    A sync pass follows a three-phase approach:

    1. Acquire - Fetch pages or files through a transport (retried)
    2. Transform - Map raw bytes/objects into normalized records
    3. Upload - Forward each record with a deterministic idempotency key

    Item-level failures are isolated and reported; the checkpoint only
    advances past work that was fully uploaded.

Usage:
    from integrations.auth import OAuth2Provider
    from integrations.transport import RestTransport
    from integrations.transformers import JsonTransformer
    from integrations.connectors import RestApiConnector
    from integrations.scheduler import create_scheduler

Example:
    connector = RestApiConnector(
        transport=RestTransport(base_url="https://api.example.com", auth=auth),
        transformer=JsonTransformer(),
        endpoint="/items",
    )
    await connector.initialize(ConnectorContext(ingest_client=client))

    result = await connector.pull(SyncParams(since=last_checkpoint))
    print(f"Uploaded {result.documents_uploaded} documents")
"""

__all__ = [
    "retry",
    "is_retryable_error",
    "create_scheduler",
    "describe_cron_schedule",
    "Scheduler",
]
