"""
FTP/SFTP transport for batch file downloads.

This module provides:
- Plain FTP through ``ftplib`` (MLSD listing with an NLST fallback)
- SFTP through ``paramiko`` (password or private key authentication)
- Lazy directory walks and batch downloads holding one file in memory at a time
- Reconnect-and-retry on transient network failures

The underlying client libraries are blocking, so every call runs in a worker
thread; calls on one connection are serialized with a lock.
"""

import asyncio
import fnmatch
import ftplib
import io
import logging
import posixpath
import stat
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, List, Optional, Tuple

import paramiko

from core.config import settings
from core.exceptions import AuthError, IntegrationError, NetworkError, OperationCancelled, TransportError
from integrations.cancellation import raise_if_cancelled, run_cancellable
from integrations.retry import retry
from integrations.transport.base import Transport
from schemas.transport import RemoteFile

logger = logging.getLogger(__name__)


class RemoteBackend(ABC):
    """Blocking client for one file server connection"""

    @abstractmethod
    def open(self) -> None:
        pass

    @abstractmethod
    def list_dir(self, path: str) -> List[RemoteFile]:
        pass

    @abstractmethod
    def read(self, path: str) -> bytes:
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def abort(self) -> None:
        """Drop the connection without a goodbye; unblocks a transfer running in another thread."""
        self.close()


class FtpBackend(RemoteBackend):
    def __init__(self, host: str, port: int, username: Optional[str], password: Optional[str], timeout: float):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self._ftp: Optional[ftplib.FTP] = None

    def open(self) -> None:
        ftp = ftplib.FTP()
        ftp.connect(self.host, self.port, timeout=self.timeout)
        ftp.login(self.username or "anonymous", self.password or "")
        self._ftp = ftp

    def list_dir(self, path: str) -> List[RemoteFile]:
        try:
            entries = list(self._ftp.mlsd(path, facts=["type", "size", "modify"]))
        except ftplib.error_perm:
            return self._list_nlst(path)

        files = []
        for name, facts in entries:
            kind = facts.get("type", "file")
            if kind in ("cdir", "pdir") or name in (".", ".."):
                continue
            files.append(RemoteFile(
                path=posixpath.join(path, name),
                name=name,
                size=int(facts["size"]) if facts.get("size") else None,
                modified_at=_parse_ftp_time(facts.get("modify")),
                is_directory=kind == "dir"
            ))
        return files

    def _list_nlst(self, path: str) -> List[RemoteFile]:
        # Servers without MLSD: ask SIZE/MDTM per name
        files = []
        for entry in self._ftp.nlst(path):
            name = posixpath.basename(entry.rstrip("/"))
            if name in (".", ".."):
                continue
            full_path = entry if entry.startswith("/") else posixpath.join(path, name)
            try:
                size = self._ftp.size(full_path)
            except ftplib.error_perm:
                files.append(RemoteFile(path=full_path, name=name, is_directory=True))
                continue
            modified_at = None
            try:
                reply = self._ftp.voidcmd(f"MDTM {full_path}")
                modified_at = _parse_ftp_time(reply.split()[-1])
            except ftplib.error_perm:
                pass
            files.append(RemoteFile(path=full_path, name=name, size=size, modified_at=modified_at))
        return files

    def read(self, path: str) -> bytes:
        buffer = io.BytesIO()
        self._ftp.retrbinary(f"RETR {path}", buffer.write)
        return buffer.getvalue()

    def delete(self, path: str) -> None:
        self._ftp.delete(path)

    def close(self) -> None:
        if self._ftp is None:
            return
        try:
            self._ftp.quit()
        except ftplib.all_errors:
            self._ftp.close()
        self._ftp = None

    def abort(self) -> None:
        ftp, self._ftp = self._ftp, None
        if ftp is not None:
            ftp.close()


class SftpBackend(RemoteBackend):
    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        private_key_path: Optional[str],
        passphrase: Optional[str],
        timeout: float,
        known_hosts_path: Optional[str] = None,
        allow_unknown_hosts: bool = False
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key_path
        self.passphrase = passphrase
        self.timeout = timeout
        self.known_hosts_path = known_hosts_path
        self.allow_unknown_hosts = allow_unknown_hosts
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    def open(self) -> None:
        ssh = paramiko.SSHClient()
        ssh.load_system_host_keys()
        if self.known_hosts_path:
            ssh.load_host_keys(self.known_hosts_path)
        if self.allow_unknown_hosts:
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            ssh.set_missing_host_key_policy(paramiko.RejectPolicy())

        ssh.connect(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            key_filename=self.private_key_path,
            passphrase=self.passphrase,
            timeout=self.timeout,
            allow_agent=False,
            look_for_keys=False
        )
        self._ssh = ssh
        self._sftp = ssh.open_sftp()

    def list_dir(self, path: str) -> List[RemoteFile]:
        files = []
        for attr in self._sftp.listdir_attr(path):
            files.append(RemoteFile(
                path=posixpath.join(path, attr.filename),
                name=attr.filename,
                size=attr.st_size,
                modified_at=(
                    datetime.fromtimestamp(attr.st_mtime, tz=timezone.utc)
                    if attr.st_mtime is not None else None
                ),
                is_directory=stat.S_ISDIR(attr.st_mode or 0)
            ))
        return files

    def read(self, path: str) -> bytes:
        buffer = io.BytesIO()
        self._sftp.getfo(path, buffer)
        return buffer.getvalue()

    def delete(self, path: str) -> None:
        self._sftp.remove(path)

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None


class FtpTransport(Transport):
    """
    FTP (``secure=False``) or SFTP (``secure=True``) file transport.

    Attributes:
        host: Server host name
        port: Server port (default: 21 for FTP, 22 for SFTP)
        root_path: Default directory for listings and batch downloads
        backend_factory: Builds the blocking client (override for tests)
    """

    def __init__(
        self,
        host: str,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        private_key_path: Optional[str] = None,
        passphrase: Optional[str] = None,
        secure: bool = False,
        root_path: str = "/",
        timeout: Optional[float] = None,
        known_hosts_path: Optional[str] = None,
        allow_unknown_hosts: bool = False,
        max_retries: Optional[int] = None,
        backend_factory: Optional[Callable[[], RemoteBackend]] = None,
        sleep=None
    ):
        super().__init__()
        self.host = host
        self.secure = secure
        self.port = port or (22 if secure else 21)
        self.username = username
        self.password = password
        self.private_key_path = private_key_path
        self.passphrase = passphrase
        self.root_path = root_path or "/"
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.known_hosts_path = known_hosts_path
        self.allow_unknown_hosts = allow_unknown_hosts
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.transport_type = "sftp" if secure else "ftp"
        self._backend_factory = backend_factory or self._default_backend
        self._backend: Optional[RemoteBackend] = None
        self._lock = asyncio.Lock()
        self._sleep = sleep

    def _default_backend(self) -> RemoteBackend:
        if self.secure:
            return SftpBackend(
                self.host,
                self.port,
                self.username,
                self.password,
                self.private_key_path,
                self.passphrase,
                self.timeout,
                known_hosts_path=self.known_hosts_path,
                allow_unknown_hosts=self.allow_unknown_hosts
            )
        return FtpBackend(self.host, self.port, self.username, self.password, self.timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._connected:
            return
        await retry(
            self._open_backend,
            max_retries=self.max_retries,
            sleep=self._sleep,
            operation=f"{self.transport_type} connect {self.host}"
        )
        self._connected = True
        logger.info(f"{self.transport_type.upper()} transport connected to {self.host}:{self.port}")

    async def disconnect(self) -> None:
        await self._close_backend()
        self._connected = False

    async def _open_backend(self) -> None:
        backend = self._backend_factory()
        try:
            await asyncio.to_thread(backend.open)
        except Exception as e:
            raise self._classify(e, "connect", {"host": self.host, "port": self.port})
        self._backend = backend

    async def _close_backend(self) -> None:
        backend, self._backend = self._backend, None
        if backend is None:
            return
        try:
            await asyncio.to_thread(backend.close)
        except Exception as e:
            logger.warning(f"Error closing {self.transport_type} connection to {self.host}: {e}")

    async def _abort_backend(self) -> None:
        backend, self._backend = self._backend, None
        if backend is None:
            return
        logger.info(f"Aborting {self.transport_type} transfer on {self.host}")
        try:
            await asyncio.to_thread(backend.abort)
        except Exception as e:
            logger.warning(f"Error aborting {self.transport_type} connection to {self.host}: {e}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _run(self, operation: str, fn_name: str, path: str, cancel_event: Optional[asyncio.Event] = None):
        """Run one backend call with reconnect-and-retry on transient failures."""

        async def attempt():
            async with self._lock:
                raise_if_cancelled(cancel_event, operation)
                if self._backend is None:
                    await self._open_backend()
                try:
                    return await run_cancellable(
                        asyncio.to_thread(getattr(self._backend, fn_name), path),
                        cancel_event,
                        f"{operation} {path}"
                    )
                except OperationCancelled:
                    await self._abort_backend()
                    raise
                except Exception as e:
                    error = self._classify(e, operation, {"path": path, "host": self.host})
                    if isinstance(error, NetworkError):
                        await self._close_backend()
                    raise error

        return await retry(
            attempt,
            max_retries=self.max_retries,
            cancel_event=cancel_event,
            sleep=self._sleep,
            operation=f"{self.transport_type} {operation} {path}"
        )

    async def list_files(
        self,
        path: Optional[str] = None,
        pattern: Optional[str] = None,
        recursive: bool = False,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[RemoteFile]:
        """
        Walk a directory lazily, yielding files whose name matches ``pattern``.

        Directories are listed one at a time; within a directory files are
        yielded in (modified time, path) order.
        """
        self._ensure_connected("list")
        pending = [path or self.root_path]

        while pending:
            directory = pending.pop(0)
            entries = await self._run("list", "list_dir", directory, cancel_event)

            subdirectories = []
            files = []
            for entry in entries:
                if entry.is_directory:
                    subdirectories.append(entry.path)
                elif pattern is None or fnmatch.fnmatch(entry.name, pattern):
                    files.append(entry)

            files.sort(key=lambda f: (f.modified_at or datetime.min.replace(tzinfo=timezone.utc), f.path))
            for remote_file in files:
                yield remote_file

            if recursive:
                pending.extend(sorted(subdirectories))

    async def download(self, remote_path: str, cancel_event: Optional[asyncio.Event] = None) -> bytes:
        self._ensure_connected("download")
        return await self._run("download", "read", remote_path, cancel_event)

    async def download_batch(
        self,
        pattern: str = "*",
        path: Optional[str] = None,
        recursive: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
        modified_since: Optional[datetime] = None
    ) -> AsyncIterator[Tuple[RemoteFile, bytes]]:
        """
        Download every matching file, one at a time.

        Files modified strictly before ``modified_since`` are skipped without
        being downloaded.

        Yields:
            (RemoteFile, content) pairs; only the current file's content is held
        """
        self._ensure_connected("download_batch")
        async for remote_file in self.list_files(path, pattern, recursive, cancel_event):
            raise_if_cancelled(cancel_event, "download_batch")
            if (
                modified_since is not None
                and remote_file.modified_at is not None
                and remote_file.modified_at < modified_since
            ):
                logger.debug(f"Skipping {remote_file.path}: unchanged since {modified_since.isoformat()}")
                continue
            content = await self.download(remote_file.path, cancel_event)
            logger.debug(f"Downloaded {remote_file.path} ({len(content)} bytes)")
            yield remote_file, content

    async def delete(self, remote_path: str, cancel_event: Optional[asyncio.Event] = None) -> None:
        self._ensure_connected("delete")
        await self._run("delete", "delete", remote_path, cancel_event)
        logger.info(f"Deleted {remote_path} from {self.host}")

    # ------------------------------------------------------------------
    # Error classification
    # ------------------------------------------------------------------

    def _classify(self, error: Exception, operation: str, context: dict) -> IntegrationError:
        if isinstance(error, IntegrationError):
            return error

        context = {**context, "operation": operation, "transport": self.transport_type}
        message = f"{self.transport_type.upper()} {operation} failed: {error}"

        if isinstance(error, paramiko.AuthenticationException):
            return AuthError(message, context=context, original_exception=error)
        if isinstance(error, ftplib.error_perm):
            if str(error).startswith("530"):
                return AuthError(message, context=context, original_exception=error)
            return TransportError(message, retryable=False, context=context, original_exception=error)
        if isinstance(error, (FileNotFoundError, PermissionError)):
            return TransportError(message, retryable=False, context=context, original_exception=error)
        if isinstance(error, (ftplib.error_temp, ftplib.error_reply, EOFError, OSError, paramiko.SSHException)):
            return NetworkError(message, context=context, original_exception=error)
        return TransportError(message, retryable=False, context=context, original_exception=error)


def _parse_ftp_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an MLSD/MDTM timestamp (YYYYMMDDHHMMSS[.fff], UTC)."""
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
