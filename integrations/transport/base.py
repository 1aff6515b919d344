"""
Abstract transport with connection lifecycle management
"""

from abc import ABC, abstractmethod
import logging

from core.exceptions import TransportError

logger = logging.getLogger(__name__)


class Transport(ABC):
    """
    Abstract base class for all transports.

    Responsibilities:
    - Connection lifecycle (connect / disconnect / is_connected)
    - Rejecting operations on a disconnected transport
    """

    transport_type: str = "transport"

    def __init__(self):
        self._connected = False

    @abstractmethod
    async def connect(self) -> None:
        """Establish a reusable session."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the session. Safe to call when not connected."""
        pass

    def is_connected(self) -> bool:
        return self._connected

    def _ensure_connected(self, operation: str) -> None:
        if not self._connected:
            raise TransportError(
                f"{self.transport_type} transport not connected",
                code="NOT_CONNECTED",
                retryable=False,
                context={"transport": self.transport_type, "operation": operation}
            )

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()
