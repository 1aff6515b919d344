"""
File batch connector: periodic FTP/SFTP drops.

Each matching remote file is one batch. The checkpoint is a watermark over
file modification times, so the next pass skips files modified strictly
before it. A file that fails anywhere pins the watermark at its mtime and is
picked up again on the next pass.
"""

import asyncio
from typing import AsyncIterator, Optional

from core.exceptions import IntegrationError, OperationCancelled
from integrations.connectors.base import BaseConnector, CheckpointTracker, WatermarkCheckpointTracker
from integrations.transformers.base import Transformer
from integrations.transport.ftp import FtpTransport
from schemas.sync import Checkpoint, CheckpointKind, SourceBatch, SyncParams


class FileBatchConnector(BaseConnector):
    """
    Connector for files collected from an FTP/SFTP server.

    Args:
        name: Source name
        transport: FtpTransport for the server
        transformer: Transformer for the file contents (CSV, flat file, JSON)
        pattern: Glob matched against file names
        path: Remote directory (default: the transport's root path)
        recursive: Descend into sub-directories
        delete_after_upload: Remove a file from the server once all of its records uploaded
    """

    def __init__(
        self,
        name: str,
        transport: FtpTransport,
        transformer: Transformer,
        pattern: str = "*",
        path: Optional[str] = None,
        recursive: bool = False,
        delete_after_upload: bool = False,
        **kwargs
    ):
        super().__init__(name, transport, transformer, **kwargs)
        self.pattern = pattern
        self.path = path
        self.recursive = recursive
        self.delete_after_upload = delete_after_upload

    def create_tracker(self, start: Optional[Checkpoint]) -> CheckpointTracker:
        if start is not None and start.kind != CheckpointKind.TIMESTAMP:
            self.logger.warning(f"Ignoring non-timestamp checkpoint {start.token} for {self.name}")
            start = None
        return WatermarkCheckpointTracker(start, per_batch=True)

    async def fetch_batches(
        self,
        params: SyncParams,
        start: Optional[Checkpoint],
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[SourceBatch]:
        since = start.as_datetime() if start is not None else None

        async for remote_file, content in self.transport.download_batch(
            pattern=self.pattern,
            path=self.path,
            recursive=self.recursive,
            cancel_event=cancel_event,
            modified_since=since
        ):
            yield SourceBatch(
                data=content,
                format=self.transformer.format,
                position=Checkpoint.from_timestamp(remote_file.modified_at) if remote_file.modified_at else None,
                metadata={
                    "filename": remote_file.name,
                    "remote_path": remote_file.path,
                    "size": remote_file.size,
                }
            )

    async def after_batch(
        self,
        batch: SourceBatch,
        failed: bool,
        cancel_event: Optional[asyncio.Event] = None
    ) -> None:
        if self.delete_after_upload and not failed:
            try:
                await self.transport.delete(batch.metadata["remote_path"], cancel_event)
            except OperationCancelled:
                raise
            except IntegrationError as e:
                self.logger.warning(f"Could not delete {batch.metadata['remote_path']} after upload: {e}")
