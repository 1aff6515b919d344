"""
Ingestion boundary: where connectors deliver normalized documents.

``IngestClient`` is the contract connectors depend on. ``HttpIngestClient``
speaks the document platform's multipart upload protocol:

    POST {base_url}/api/upload
    Authorization: Bearer <token>
    X-Idempotency-Key: <key>
    X-Request-Id: <trace id>

    files=<document>, metadata_0=<json>

and expects ``{"success": true, "document_ids": [...]}`` back.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import (
    ConfigurationError,
    HTTPError,
    NetworkError,
    RateLimitError,
    UploadError,
)
from integrations.cancellation import run_cancellable
from integrations.transport.rest import parse_retry_after

logger = logging.getLogger(__name__)


class UploadResult(BaseModel):
    """Acknowledgement of an accepted upload"""
    document_ids: List[Any] = Field(default_factory=list)


class IngestClient(ABC):
    """Receives documents produced by connectors"""

    @abstractmethod
    async def upload(
        self,
        file: bytes,
        filename: str,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        content_type: str = "application/json",
        trace_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> UploadResult:
        """
        Upload one document.

        Uploading the same ``idempotency_key`` twice must not create a
        second document.

        Raises:
            UploadError: The platform refused the document
            IntegrationError: Transport-level failure (retryable when transient)
        """
        pass

    async def close(self) -> None:
        pass


class HttpIngestClient(IngestClient):
    """
    httpx client for the ``/api/upload`` endpoint.

    Attributes:
        base_url: Platform base URL (default: settings.INGEST_BASE_URL)
        api_token: Bearer token (default: settings.INGEST_API_TOKEN)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        default_headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.INGEST_BASE_URL).rstrip("/")
        self.api_token = api_token or settings.INGEST_API_TOKEN
        if not self.api_token:
            raise ConfigurationError("Ingest API token is required", context={"base_url": self.base_url})
        self.default_headers = dict(default_headers or {})
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpIngestClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def upload(
        self,
        file: bytes,
        filename: str,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        content_type: str = "application/json",
        trace_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> UploadResult:
        url = f"{self.base_url}/api/upload"
        headers = {
            **self.default_headers,
            "Authorization": f"Bearer {self.api_token}",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        if trace_id:
            headers["X-Request-Id"] = trace_id

        files = {"files": (filename, file, content_type)}
        data = {"metadata_0": json.dumps(metadata or {}, default=str)}

        try:
            response = await run_cancellable(
                self._get_client().post(url, headers=headers, files=files, data=data),
                cancel_event,
                f"upload {filename}"
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Upload of {filename} timed out",
                code="TIMEOUT",
                context={"url": url},
                original_exception=e
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"Upload of {filename} failed: {e}",
                context={"url": url},
                original_exception=e
            )

        return self._handle_response(response, filename)

    def _handle_response(self, response: httpx.Response, filename: str) -> UploadResult:
        context = {"filename": filename, "status_code": response.status_code}

        if response.status_code == 429:
            raise RateLimitError(
                "Ingest rate limit exceeded",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                context=context
            )
        if response.status_code >= 400:
            raise HTTPError(
                f"Upload rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                context={**context, "response_body": response.text[:500]}
            )

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if isinstance(body, dict) and body.get("success") is False:
            raise UploadError(
                body.get("error") or body.get("message") or f"Upload of {filename} was not accepted",
                context={**context, "response": body}
            )

        document_ids = body.get("document_ids", []) if isinstance(body, dict) else []
        logger.debug(f"Uploaded {filename} -> {document_ids}")
        return UploadResult(document_ids=document_ids or [])
