"""
Connector orchestration: acquire -> transform -> upload -> checkpoint.

A connector runs one sync pass per ``pull()`` call with comprehensive error
handling:
- Transport failures (retries exhausted, auth rejected) fail the pass
- Transform and upload failures are isolated per item and reported
- The returned checkpoint never skips an item that was not uploaded
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import (
    ConfigurationError,
    IntegrationError,
    OperationCancelled,
    TransformationError,
)
from integrations.cancellation import raise_if_cancelled
from integrations.ingest import IngestClient
from integrations.retry import retry
from integrations.transformers.base import Transformer
from integrations.transport.base import Transport
from integrations.utils import format_timestamp, utcnow
from schemas.sync import (
    Checkpoint,
    CheckpointKind,
    SourceBatch,
    SyncError,
    SyncParams,
    SyncResult,
    SyncStatus,
    TransformContext,
    TransformResult,
)
from schemas.webhook import WebhookPayload

logger = logging.getLogger(__name__)


class ConnectorState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConnectorContext(BaseModel):
    """Runtime dependencies handed to a connector by its host"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ingest_client: IngestClient
    logger: Optional[logging.Logger] = None
    config: Dict[str, Any] = Field(default_factory=dict)


def idempotency_key(source: str, item_id: Optional[str], item_timestamp: Optional[str]) -> str:
    """sha256 of ``source|item-id|item-timestamp``; stable across re-runs of the same data."""
    raw = f"{source}|{item_id or ''}|{item_timestamp or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ============================================================================
# Checkpoint Tracking
# ============================================================================

class CheckpointTracker(ABC):
    """Accumulates per-item and per-batch outcomes into a resume position."""

    def __init__(self, start: Optional[Checkpoint]):
        self.start = start

    def item_succeeded(self, item: TransformResult, batch: SourceBatch) -> None:
        pass

    def item_failed(self, item: Optional[TransformResult], batch: SourceBatch) -> None:
        pass

    def batch_completed(self, batch: SourceBatch, failed: bool) -> None:
        pass

    @abstractmethod
    def checkpoint(self) -> Optional[Checkpoint]:
        pass


class SequentialCheckpointTracker(CheckpointTracker):
    """
    For ordered positions (cursor, offset, page).

    Advances to each batch's position only while every batch so far has
    fully succeeded; the first failed batch freezes the checkpoint.
    """

    def __init__(self, start: Optional[Checkpoint]):
        super().__init__(start)
        self.position = start
        self.blocked = False

    def batch_completed(self, batch: SourceBatch, failed: bool) -> None:
        if self.blocked:
            return
        if failed:
            self.blocked = True
            return
        if batch.position is not None:
            self.position = batch.position

    def checkpoint(self) -> Optional[Checkpoint]:
        return self.position


class WatermarkCheckpointTracker(CheckpointTracker):
    """
    For timestamp watermarks.

    The checkpoint is the earliest failed timestamp when anything failed,
    otherwise the latest successful one, and never earlier than the starting
    ``since``. A failure with no timestamp pins the checkpoint to ``since``.

    With ``per_batch`` the batch position (e.g. a file's modification time)
    is the timestamp instead of the items' own timestamps.

    A truncated traversal also pins the checkpoint to ``since``: the order of
    the unfetched data is unknown, so nothing fetched proves it is older.
    """

    def __init__(self, start: Optional[Checkpoint], per_batch: bool = False):
        super().__init__(start)
        self.per_batch = per_batch
        self.since: Optional[datetime] = start.as_datetime() if start is not None else None
        self.max_succeeded: Optional[datetime] = None
        self.min_failed: Optional[datetime] = None
        self.unplaced_failure = False
        self.truncated = False

    def item_succeeded(self, item: TransformResult, batch: SourceBatch) -> None:
        if not self.per_batch:
            self._succeeded(item.item_timestamp)

    def item_failed(self, item: Optional[TransformResult], batch: SourceBatch) -> None:
        if self.per_batch:
            return
        timestamp = item.item_timestamp if item is not None else None
        if timestamp is None and batch.position is not None:
            timestamp = batch.position.as_datetime()
        self._failed(timestamp)

    def batch_completed(self, batch: SourceBatch, failed: bool) -> None:
        if batch.truncated:
            self.truncated = True
        if not self.per_batch:
            return
        timestamp = batch.position.as_datetime() if batch.position is not None else None
        if failed:
            self._failed(timestamp)
        else:
            self._succeeded(timestamp)

    def _succeeded(self, timestamp: Optional[datetime]) -> None:
        if timestamp is not None and (self.max_succeeded is None or timestamp > self.max_succeeded):
            self.max_succeeded = timestamp

    def _failed(self, timestamp: Optional[datetime]) -> None:
        if timestamp is None:
            self.unplaced_failure = True
        elif self.min_failed is None or timestamp < self.min_failed:
            self.min_failed = timestamp

    def checkpoint(self) -> Optional[Checkpoint]:
        if self.unplaced_failure or self.truncated:
            return self.start if self.since is not None else None

        candidate = self.min_failed if self.min_failed is not None else self.max_succeeded
        if candidate is None:
            return self.start
        if self.since is not None and candidate < self.since:
            candidate = self.since
        return Checkpoint.from_timestamp(candidate)


# ============================================================================
# Base Connector
# ============================================================================

class BaseConnector(ABC):
    """
    Abstract base class for all connectors.

    Subclasses implement ``fetch_batches`` (acquisition) and may override
    ``accepts`` (item-level incremental filtering) and ``create_tracker``
    (checkpoint semantics).

    Args:
        name: Source name; prefixes filenames and feeds idempotency keys
        transport: Transport connected by ``initialize``
        transformer: Maps each acquired batch into records
        version: Reported in uploaded document metadata
        max_upload_retries: Upload retry budget (default: settings.MAX_RETRIES)
        upload_backoff_ms: Initial upload retry delay (default: settings.RETRY_BACKOFF_MS)
        sleep: Injected sleep for retries (tests)
    """

    def __init__(
        self,
        name: str,
        transport: Optional[Transport],
        transformer: Transformer,
        version: str = "1.0.0",
        max_upload_retries: Optional[int] = None,
        upload_backoff_ms: Optional[int] = None,
        sleep: Optional[Callable[[float], Any]] = None
    ):
        self.name = name
        self.transport = transport
        self.transformer = transformer
        self.version = version
        self.max_upload_retries = max_upload_retries
        self.upload_backoff_ms = upload_backoff_ms
        self._sleep = sleep
        self.context: Optional[ConnectorContext] = None
        self.logger = logger
        self._state = ConnectorState.IDLE

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self.context is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, context: ConnectorContext) -> None:
        """
        Wire runtime dependencies and connect the transport.

        Raises:
            IntegrationError: ``validate()`` returned False (code VALIDATION_ERROR)
        """
        self.context = context
        self.logger = context.logger or self.logger
        self.logger.info(f"Initializing connector {self.name} v{self.version}")

        if self.transport is not None:
            await self.transport.connect()

        if not await self.validate():
            raise IntegrationError(
                f"Connector validation failed: {self.name}",
                code="VALIDATION_ERROR",
                retryable=False
            )

        self.logger.info(f"Connector {self.name} initialized")

    async def validate(self) -> bool:
        return True

    async def disconnect(self) -> None:
        if self.transport is not None:
            await self.transport.disconnect()
        self.logger.info(f"Connector {self.name} disconnected")

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def fetch_batches(
        self,
        params: SyncParams,
        start: Optional[Checkpoint],
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[SourceBatch]:
        """
        Lazily acquire batches starting from ``start``.

        Each batch carries the position to resume from once it (and every
        batch before it) has been fully uploaded.
        """
        pass

    def create_tracker(self, start: Optional[Checkpoint]) -> CheckpointTracker:
        if start is not None and start.kind == CheckpointKind.TIMESTAMP:
            return WatermarkCheckpointTracker(start)
        return SequentialCheckpointTracker(start)

    def accepts(self, item: TransformResult, params: SyncParams, start: Optional[Checkpoint]) -> bool:
        return True

    async def after_batch(
        self,
        batch: SourceBatch,
        failed: bool,
        cancel_event: Optional[asyncio.Event] = None
    ) -> None:
        """Called once a batch has been transformed and uploaded (or has failed)."""
        pass

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def pull(
        self,
        params: Optional[SyncParams] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> SyncResult:
        """
        Run one sync pass.

        Args:
            params: Starting position and pass options (default: full sync)
            cancel_event: Cancellation signal

        Returns:
            SyncResult with counts, item errors and the resume checkpoint

        Raises:
            IntegrationError: SYNC_IN_PROGRESS, NOT_INITIALIZED, or a fatal
                transport failure (re-raised after marking the pass failed)
            OperationCancelled: Cancellation signal fired
        """
        if self._state == ConnectorState.SYNCING:
            raise IntegrationError(
                f"Sync already in progress for {self.name}",
                code="SYNC_IN_PROGRESS",
                retryable=False
            )
        self._ensure_initialized()

        params = params or SyncParams()
        try:
            start = params.since_checkpoint()
        except ValueError as e:
            raise ConfigurationError(str(e), context={"since": str(params.since)}, original_exception=e)

        self._state = ConnectorState.SYNCING
        started_at = utcnow()
        tracker = self.create_tracker(start)
        result = SyncResult(metadata={
            "source": self.name,
            "started_at": format_timestamp(started_at),
            "since": start.token if start is not None else None,
        })
        batches = 0

        self.logger.info(f"Starting sync for {self.name} (checkpoint: {start.token if start else 'full sync'})")

        try:
            async for batch in self.fetch_batches(params, start, cancel_event):
                raise_if_cancelled(cancel_event, f"sync {self.name}")
                batches += 1
                failed = await self._process_batch(batch, params, start, result, tracker, cancel_event)
                tracker.batch_completed(batch, failed)
                if batch.truncated:
                    result.metadata["truncated"] = True
                    self.logger.warning(
                        f"Sync of {self.name} hit its page limit before the source was exhausted"
                    )
                await self.after_batch(batch, failed, cancel_event)

        except OperationCancelled:
            self._state = ConnectorState.FAILED
            self.logger.warning(f"Sync cancelled for {self.name} after {batches} batches")
            raise

        except Exception as e:
            self._state = ConnectorState.FAILED
            error_context = e.to_dict() if isinstance(e, IntegrationError) else {"error": str(e)}
            self.logger.error(
                f"Sync failed for {self.name}: {str(e)}",
                extra={"error_context": error_context}
            )
            raise

        checkpoint = tracker.checkpoint()
        result.checkpoint = checkpoint.token if checkpoint is not None else None
        result.status = SyncStatus.PARTIAL_SUCCESS if result.errors else SyncStatus.SUCCESS
        result.metadata["batches"] = batches
        result.metadata["duration_seconds"] = (utcnow() - started_at).total_seconds()
        self._state = ConnectorState.COMPLETED

        self.logger.info(
            f"Sync completed for {self.name}: {result.documents_uploaded}/{result.documents_processed} "
            f"uploaded, {len(result.errors)} errors, new checkpoint: {result.checkpoint}"
        )
        return result

    async def handle_webhook(
        self,
        payload: WebhookPayload,
        headers: Optional[Dict[str, str]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> SyncResult:
        """Transform and upload a single pushed payload."""
        self._ensure_initialized()
        batch = SourceBatch(
            data=payload.data,
            metadata={
                "event": payload.event,
                "event_id": payload.event_id,
                "webhook_source": payload.source,
            }
        )
        result = SyncResult(metadata={"source": self.name, "event": payload.event})
        await self._process_batch(
            batch,
            SyncParams(),
            None,
            result,
            SequentialCheckpointTracker(None),
            cancel_event
        )
        result.status = SyncStatus.PARTIAL_SUCCESS if result.errors else SyncStatus.SUCCESS
        return result

    async def _process_batch(
        self,
        batch: SourceBatch,
        params: SyncParams,
        start: Optional[Checkpoint],
        result: SyncResult,
        tracker: CheckpointTracker,
        cancel_event: Optional[asyncio.Event]
    ) -> bool:
        """Transform and upload one batch. Returns True if anything in it failed."""
        context = TransformContext(
            source=self.name,
            format=batch.format,
            metadata=batch.metadata,
            trace_id=params.trace_id
        )
        failed = False

        try:
            for item in self.transformer.transform(batch.data, context):
                raise_if_cancelled(cancel_event, f"sync {self.name}")
                if not self.accepts(item, params, start):
                    continue

                result.documents_processed += 1

                if not item.is_valid:
                    failed = True
                    tracker.item_failed(item, batch)
                    self._record_error(result, "; ".join(item.errors), "TRANSFORM_ERROR", item)
                    continue

                try:
                    await self._upload(item, params, cancel_event)
                except OperationCancelled:
                    raise
                except Exception as e:
                    failed = True
                    tracker.item_failed(item, batch)
                    code = e.code if isinstance(e, IntegrationError) else "UPLOAD_ERROR"
                    self._record_error(result, str(e), code, item, error_type=type(e).__name__)
                    continue

                result.documents_uploaded += 1
                tracker.item_succeeded(item, batch)

        except TransformationError as e:
            failed = True
            tracker.item_failed(None, batch)
            result.errors.append(SyncError(
                message=str(e),
                code=e.code,
                context={**batch.metadata, "phase": "transform"}
            ))
            self.logger.error(f"Transformation failed for batch {batch.metadata}: {str(e)}")

        return failed

    async def _upload(
        self,
        item: TransformResult,
        params: SyncParams,
        cancel_event: Optional[asyncio.Event]
    ) -> None:
        key = idempotency_key(self.name, item.item_id or item.filename, item.metadata.get("item_timestamp"))
        metadata = {
            **item.metadata,
            "connector": self.name,
            "connector_version": self.version,
            "source": self.name,
        }

        async def attempt():
            return await self.context.ingest_client.upload(
                item.data,
                item.filename,
                metadata,
                idempotency_key=key,
                content_type=item.content_type,
                trace_id=params.trace_id,
                cancel_event=cancel_event
            )

        upload = await retry(
            attempt,
            max_retries=self.max_upload_retries,
            backoff_ms=self.upload_backoff_ms,
            cancel_event=cancel_event,
            sleep=self._sleep,
            operation=f"upload {item.filename}"
        )
        self.logger.debug(f"Uploaded {item.filename} (documents: {upload.document_ids})")

    def _record_error(
        self,
        result: SyncResult,
        message: str,
        code: str,
        item: TransformResult,
        **context: Any
    ) -> None:
        result.errors.append(SyncError(
            message=message,
            code=code,
            item_id=item.item_id,
            context={"filename": item.filename, **context}
        ))
        self.logger.error(f"Item {item.item_id or item.filename} failed ({code}): {message}")

    def _ensure_initialized(self) -> None:
        if self.context is None:
            raise IntegrationError(
                f"Connector not initialized: {self.name}",
                code="NOT_INITIALIZED",
                retryable=False
            )
