"""
Webhook transport for receiving real-time events.

A passive transport: it holds no connection, it verifies and dispatches
requests handed to it by the HTTP layer (see ``api/routes/webhooks.py``).

Signature verification is an HMAC (sha256 or sha512) of the raw body with a
shared secret, compared in constant time. A request with a missing or wrong
signature is rejected silently: ``process_request`` returns False and the
handler is never invoked.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.config import settings
from core.exceptions import ConfigurationError, TransportError, ValidationError
from integrations.cancellation import raise_if_cancelled, run_cancellable
from integrations.transport.base import Transport
from integrations.utils import parse_timestamp, utcnow
from schemas.webhook import WebhookEvent, WebhookPayload

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[WebhookPayload, Dict[str, str]], Awaitable[None]]

SUPPORTED_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


class WebhookTransport(Transport):
    """
    Verify and dispatch inbound webhook requests.

    Attributes:
        secret: Shared HMAC secret (required)
        signature_header: Header carrying the signature (default: X-Webhook-Signature)
        algorithm: ``sha256`` or ``sha512``
        endpoint: Name used as the default payload source and in the route
    """

    transport_type = "webhook"

    def __init__(
        self,
        secret: Optional[str] = None,
        signature_header: Optional[str] = None,
        algorithm: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        super().__init__()
        self.secret = secret or settings.WEBHOOK_SECRET
        if not self.secret:
            raise ConfigurationError("Webhook secret is required")

        self.algorithm = (algorithm or settings.WEBHOOK_SIGNATURE_ALGORITHM).lower()
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(
                f"Unsupported signature algorithm: {self.algorithm}",
                context={"supported": list(SUPPORTED_ALGORITHMS)}
            )

        self.signature_header = signature_header or settings.WEBHOOK_SIGNATURE_HEADER
        self.endpoint = endpoint or settings.WEBHOOK_ENDPOINT
        self._handler: Optional[WebhookHandler] = None
        self._dispatch_lock = asyncio.Lock()
        self.rejected_requests = 0

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._handler = None
        self._connected = False

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    def on_webhook(self, handler: WebhookHandler) -> None:
        """
        Register the handler for verified events.

        Raises:
            TransportError: Transport not connected
            ConfigurationError: A handler is already registered
        """
        self._ensure_connected("on_webhook")
        if self._handler is not None:
            raise ConfigurationError(
                "Webhook handler already registered",
                context={"endpoint": self.endpoint}
            )
        self._handler = handler

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_signature(self, body: Union[bytes, str], signature: Optional[str]) -> bool:
        """
        Check ``signature`` against the HMAC of ``body``.

        Accepts ``<hex>`` and ``<algorithm>=<hex>`` header values.
        """
        if not signature:
            return False

        provided = signature.strip()
        prefix, sep, digest = provided.partition("=")
        if sep:
            if prefix.lower() != self.algorithm:
                return False
            provided = digest

        if isinstance(body, str):
            body = body.encode("utf-8")

        expected = hmac.new(
            self.secret.encode("utf-8"),
            body,
            SUPPORTED_ALGORITHMS[self.algorithm]
        ).hexdigest()

        return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8"))

    def verify(self, event: WebhookEvent) -> bool:
        return self.verify_signature(event.body, event.signature)

    @staticmethod
    def generate_signature(body: Union[bytes, str, Dict[str, Any]], secret: str, algorithm: str = "sha256") -> str:
        """Produce an ``<algorithm>=<hex>`` signature for an outgoing webhook body."""
        if isinstance(body, dict):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), body, SUPPORTED_ALGORITHMS[algorithm]).hexdigest()
        return f"{algorithm}={digest}"

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def process_request(
        self,
        body: Union[bytes, str],
        headers: Dict[str, str],
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """
        Verify and dispatch one inbound request.

        Returns:
            True if the handler ran, False if the signature was rejected

        Raises:
            TransportError: Not connected or no handler registered
            ValidationError: Body is not valid JSON
        """
        self._ensure_connected("process_request")
        if self._handler is None:
            raise TransportError(
                "No webhook handler registered",
                code="NO_HANDLER",
                retryable=False,
                context={"endpoint": self.endpoint}
            )

        if isinstance(body, str):
            body = body.encode("utf-8")
        normalized_headers = {str(k).lower(): str(v) for k, v in headers.items()}
        event = WebhookEvent(
            body=body,
            headers=normalized_headers,
            signature=normalized_headers.get(self.signature_header.lower())
        )

        if not self.verify(event):
            self.rejected_requests += 1
            logger.warning(
                f"Rejected webhook for {self.endpoint}: "
                f"{'missing' if not event.signature else 'invalid'} signature"
            )
            return False

        payload = self.parse_payload(event.body, normalized_headers)

        async with self._dispatch_lock:
            raise_if_cancelled(cancel_event, "webhook dispatch")
            await run_cancellable(
                self._handler(payload, normalized_headers),
                cancel_event,
                f"webhook dispatch {self.endpoint}"
            )

        logger.info(f"Processed webhook {payload.event} ({payload.event_id or 'no id'}) for {self.endpoint}")
        return True

    def parse_payload(self, body: bytes, headers: Optional[Dict[str, str]] = None) -> WebhookPayload:
        """Extract the standard event fields from a JSON body."""
        try:
            document = json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, ValueError) as e:
            raise ValidationError(
                "Webhook body is not valid JSON",
                context={"endpoint": self.endpoint},
                original_exception=e
            )

        if not isinstance(document, dict):
            return WebhookPayload(data=document, source=self.endpoint, raw=document)

        event = document.get("event") or document.get("type") or document.get("event_type") or "webhook"
        data = document.get("data") or document.get("payload") or document
        timestamp = (
            parse_timestamp(document.get("timestamp"))
            or parse_timestamp(document.get("created_at"))
            or utcnow()
        )
        source = document.get("source") or (headers or {}).get("x-webhook-source") or self.endpoint
        event_id = document.get("id") or document.get("event_id") or document.get("uuid")

        return WebhookPayload(
            event=str(event),
            data=data,
            timestamp=timestamp,
            source=str(source),
            event_id=None if event_id is None else str(event_id),
            raw=document
        )
