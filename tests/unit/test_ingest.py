"""
Unit tests for the HTTP ingestion client
"""

import httpx
import pytest

from core.exceptions import ConfigurationError, HTTPError, NetworkError, RateLimitError, UploadError
from integrations.ingest import HttpIngestClient


def make_client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpIngestClient(base_url="https://ingest.example.com/", api_token="tok", client=http)


class TestHttpIngestClient:
    """Test the multipart upload protocol"""

    @pytest.mark.asyncio
    async def test_upload_request_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"success": True, "document_ids": ["doc-1"]})

        client = make_client(handler)
        result = await client.upload(
            b'{"id": 1}',
            "crm-1.json",
            {"item_id": "1"},
            idempotency_key="key-1",
            trace_id="trace-1"
        )

        request = seen[0]
        body = request.content.decode()
        assert result.document_ids == ["doc-1"]
        assert request.method == "POST"
        assert str(request.url) == "https://ingest.example.com/api/upload"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["X-Idempotency-Key"] == "key-1"
        assert request.headers["X-Request-Id"] == "trace-1"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert 'name="files"; filename="crm-1.json"' in body
        assert 'name="metadata_0"' in body
        assert '{"item_id": "1"}' in body

    @pytest.mark.asyncio
    async def test_rejected_document(self):
        client = make_client(lambda request: httpx.Response(200, json={"success": False, "error": "duplicate"}))

        with pytest.raises(UploadError) as exc_info:
            await client.upload(b"{}", "x.json", {})

        assert exc_info.value.message == "duplicate"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_status_classification(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "3"}),
            httpx.Response(503),
            httpx.Response(400, text="bad metadata"),
        ]
        client = make_client(lambda request: responses.pop(0))

        with pytest.raises(RateLimitError) as rate_limited:
            await client.upload(b"{}", "x.json", {})
        with pytest.raises(HTTPError) as unavailable:
            await client.upload(b"{}", "x.json", {})
        with pytest.raises(HTTPError) as bad_request:
            await client.upload(b"{}", "x.json", {})

        assert rate_limited.value.retry_after == 3.0
        assert unavailable.value.retryable is True
        assert bad_request.value.retryable is False

    @pytest.mark.asyncio
    async def test_network_failures(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(NetworkError) as exc_info:
            await make_client(handler).upload(b"{}", "x.json", {})

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.retryable is True

    def test_token_required(self, monkeypatch):
        monkeypatch.setattr("integrations.ingest.settings.INGEST_API_TOKEN", None)
        with pytest.raises(ConfigurationError):
            HttpIngestClient(base_url="https://ingest.example.com")
