"""
Transports: how connectors reach (or are reached by) external systems.

Modules:
    base: Connection lifecycle contract
    rest: HTTP with retry, pagination and Server-Sent Events
    ftp: FTP/SFTP listing and batch downloads
    file_watcher: Polling directory watcher
    webhook: HMAC-verified inbound events
"""

from integrations.transport.base import Transport
from integrations.transport.rest import RestTransport
from integrations.transport.ftp import FtpTransport
from integrations.transport.file_watcher import FileWatcherTransport
from integrations.transport.webhook import WebhookTransport

__all__ = [
    "Transport",
    "RestTransport",
    "FtpTransport",
    "FileWatcherTransport",
    "WebhookTransport",
]
