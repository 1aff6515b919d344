"""
Pydantic schemas for data validation and serialization.

This package defines the value types exchanged between integration
components:

Schemas:
    auth: Credentials and persisted OAuth2 token state
    sync: Transform context/results, checkpoints, sync params and results
    transport: Pagination config/state, pages, server-sent events, files
    webhook: Raw webhook requests and parsed payloads

Usage:
    from schemas.sync import SyncParams, Checkpoint
    from schemas.transport import PaginationConfig, PaginationStyle

Example:
    # Resume from a stored checkpoint token
    params = SyncParams(since="timestamp:2024-01-15T10:00:00+00:00")
    checkpoint = params.since_checkpoint()

    assert checkpoint.kind == CheckpointKind.TIMESTAMP
"""

__all__ = [
    "Credentials",
    "TokenState",
    "TransformContext",
    "TransformResult",
    "Checkpoint",
    "SyncParams",
    "SyncResult",
    "PaginationConfig",
    "PaginationState",
    "WebhookPayload",
]
