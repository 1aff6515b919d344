"""
Polling file-system watcher transport.

Scans a directory (optionally recursively) every ``poll_interval`` seconds
and hands new or modified files to a single registered handler. Each
distinct (path, modification time) pair is delivered at most once, and
deliveries are serialized.
"""

import asyncio
import fnmatch
import logging
import os
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from core.config import settings
from core.exceptions import ConfigurationError, TransportError
from integrations.cancellation import raise_if_cancelled
from integrations.transport.base import Transport
from schemas.transport import FileEvent

logger = logging.getLogger(__name__)

FileEventHandler = Callable[[FileEvent, bytes], Awaitable[None]]


class FileWatcherTransport(Transport):
    """
    Watch a directory for files matching a glob pattern.

    Attributes:
        watch_path: Directory to watch
        pattern: Glob matched against file names (default: every file)
        recursive: Descend into sub-directories
        poll_interval: Seconds between scans (default: settings.FILE_WATCH_POLL_INTERVAL_SECONDS)
    """

    transport_type = "file"

    def __init__(
        self,
        watch_path: str,
        pattern: Optional[str] = None,
        recursive: bool = False,
        poll_interval: Optional[float] = None
    ):
        super().__init__()
        self.watch_path = watch_path
        self.pattern = pattern
        self.recursive = recursive
        self.poll_interval = poll_interval or settings.FILE_WATCH_POLL_INTERVAL_SECONDS
        self._handler: Optional[FileEventHandler] = None
        self._delivered: Dict[str, int] = {}
        self._dispatch_lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        is_dir = await asyncio.to_thread(os.path.isdir, self.watch_path)
        if not is_dir:
            raise TransportError(
                f"Watch path is not a directory: {self.watch_path}",
                code="INVALID_PATH",
                retryable=False,
                context={"watch_path": self.watch_path}
            )
        self._connected = True
        logger.info(f"File watcher connected to {self.watch_path} (pattern: {self.pattern or '*'})")

    async def disconnect(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._handler = None
        self._delivered.clear()
        self._connected = False

    def watch(self, handler: FileEventHandler, start_polling: bool = True) -> None:
        """
        Register the handler and start the poll loop.

        Raises:
            TransportError: Transport not connected
            ConfigurationError: A handler is already registered
        """
        self._ensure_connected("watch")
        if self._handler is not None:
            raise ConfigurationError(
                "File watcher already has a handler registered",
                context={"watch_path": self.watch_path}
            )
        self._handler = handler
        if start_polling:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"File watcher scan of {self.watch_path} failed: {e}")
            await asyncio.sleep(self.poll_interval)

    async def scan(self) -> List[FileEvent]:
        """List matching files currently in the watch directory."""
        self._ensure_connected("scan")
        return await asyncio.to_thread(self._scan_directory)

    async def poll_once(self, cancel_event: Optional[asyncio.Event] = None) -> int:
        """
        Scan once and deliver every file not yet seen at its current mtime.

        Returns:
            Number of files handed to the handler
        """
        self._ensure_connected("poll")
        if self._handler is None:
            raise ConfigurationError("No file handler registered", context={"watch_path": self.watch_path})

        delivered = 0
        async with self._dispatch_lock:
            events = await self.scan()
            present = {event.path for event in events}
            for path in [p for p in self._delivered if p not in present]:
                del self._delivered[path]

            for event in events:
                raise_if_cancelled(cancel_event, "file watcher poll")
                if self._delivered.get(event.path) == event.mtime_ns:
                    continue

                try:
                    content = await event.read()
                except OSError as e:
                    logger.warning(f"Could not read {event.path}, retrying next poll: {e}")
                    continue

                # A failing handler is not re-invoked for this version
                self._delivered[event.path] = event.mtime_ns
                try:
                    await self._handler(event, content)
                    delivered += 1
                except Exception as e:
                    logger.error(f"File handler failed for {event.path}: {e}")

        return delivered

    async def process_existing(self, cancel_event: Optional[asyncio.Event] = None) -> int:
        """Deliver files already present without waiting for the poll interval."""
        return await self.poll_once(cancel_event)

    def _scan_directory(self) -> List[FileEvent]:
        events = []
        pending = [self.watch_path]
        while pending:
            directory = pending.pop()
            try:
                with os.scandir(directory) as entries:
                    for entry in entries:
                        if entry.is_dir(follow_symlinks=False):
                            if self.recursive:
                                pending.append(entry.path)
                            continue
                        if not entry.is_file():
                            continue
                        if self.pattern and not fnmatch.fnmatch(entry.name, self.pattern):
                            continue
                        info = entry.stat()
                        events.append(FileEvent(
                            path=entry.path,
                            name=entry.name,
                            size=info.st_size,
                            modified_at=datetime.fromtimestamp(info.st_mtime, tz=timezone.utc),
                            mtime_ns=info.st_mtime_ns
                        ))
            except FileNotFoundError:
                logger.warning(f"Directory disappeared during scan: {directory}")

        events.sort(key=lambda e: (e.mtime_ns, e.path))
        return events
