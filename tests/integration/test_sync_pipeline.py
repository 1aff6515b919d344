"""
End-to-end sync tests: OAuth2 -> REST pagination -> transform -> HTTP upload.

A single httpx MockTransport plays the token server, the source API and the
document platform, so the full client stack runs without a network.
"""

import asyncio
import json
from datetime import datetime

import httpx
import pytest

from core.exceptions import OperationCancelled
from integrations.auth import OAuth2Provider
from integrations.connectors import ConnectorContext, RestApiConnector
from integrations.ingest import HttpIngestClient
from integrations.transport.rest import RestTransport
from schemas.sync import SyncParams, SyncStatus
from schemas.transport import PaginationConfig, PaginationStyle


async def no_sleep(seconds):
    return None


def parse_iso(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class FakeWorld:
    """Token server, paginated source API and idempotent document platform."""

    PAGE_SIZE = 2

    def __init__(self, items):
        self.items = items
        self.issued_tokens = []
        self.revoked = set()
        self.api_requests = []
        self.upload_requests = []
        self.documents = {}
        self.failing_ids = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.example.com":
            return self._token(request)
        if request.url.host == "api.example.com":
            return self._api(request)
        if request.url.host == "ingest.example.com":
            return self._upload(request)
        return httpx.Response(404)

    def _token(self, request):
        token = f"token-{len(self.issued_tokens) + 1}"
        self.issued_tokens.append(token)
        return httpx.Response(200, json={"access_token": token, "expires_in": 3600})

    def _api(self, request):
        self.api_requests.append(dict(request.url.params))
        token = request.headers.get("Authorization", "").replace("Bearer ", "")
        if token not in self.issued_tokens or token in self.revoked:
            return httpx.Response(401, json={"error": "invalid_token"})

        since = request.url.params.get("updated_since")
        visible = [
            item for item in self.items
            if since is None or parse_iso(item["updated_at"]) >= parse_iso(since)
        ]
        start = int(request.url.params.get("cursor", "0"))
        end = start + self.PAGE_SIZE
        return httpx.Response(200, json={
            "data": visible[start:end],
            "next_cursor": str(end) if end < len(visible) else None,
        })

    def _upload(self, request):
        self.upload_requests.append(request)
        body = request.content.decode()
        for item_id in self.failing_ids:
            if f'"item_id": "{item_id}"' in body:
                return httpx.Response(500, text="storage unavailable")

        key = request.headers["X-Idempotency-Key"]
        document_id = self.documents.setdefault(key, f"doc-{len(self.documents) + 1}")
        return httpx.Response(200, json={"success": True, "document_ids": [document_id]})


@pytest.fixture
def world(mock_api_items):
    return FakeWorld(mock_api_items)


@pytest.fixture
def http(world):
    return httpx.AsyncClient(transport=httpx.MockTransport(world.handler))


async def build_connector(http):
    auth = OAuth2Provider(
        token_url="https://auth.example.com/oauth/token",
        client_id="client",
        client_secret="secret",
        http_client=http
    )
    transport = RestTransport("https://api.example.com", auth=auth, client=http, sleep=no_sleep)
    connector = RestApiConnector(
        "catalog",
        transport,
        "/v1/products",
        pagination=PaginationConfig(style=PaginationStyle.CURSOR, page_size=FakeWorld.PAGE_SIZE),
        timestamp_field="updated_at",
        sleep=no_sleep,
        upload_backoff_ms=1,
        max_upload_retries=2
    )
    ingest = HttpIngestClient(base_url="https://ingest.example.com", api_token="ingest-token", client=http)
    await connector.initialize(ConnectorContext(ingest_client=ingest))
    return connector, auth


class TestSyncPipeline:
    """Test resumable incremental syncs against fake upstream services"""

    @pytest.mark.asyncio
    async def test_full_sync(self, world, http):
        connector, auth = await build_connector(http)

        result = await connector.pull()

        assert result.status == SyncStatus.SUCCESS
        assert result.documents_uploaded == 4
        assert result.checkpoint == "timestamp:2024-01-15T13:00:00+00:00"
        assert len(world.documents) == 4
        # Two pages of two items, fetched with one token
        assert len(world.api_requests) == 2
        assert world.issued_tokens == ["token-1"]
        assert world.upload_requests[0].headers["Authorization"] == "Bearer ingest-token"

    @pytest.mark.asyncio
    async def test_failed_upload_is_picked_up_by_the_next_pass(self, world, http):
        connector, _ = await build_connector(http)
        world.failing_ids = {"api_003"}

        first = await connector.pull()

        assert first.status == SyncStatus.PARTIAL_SUCCESS
        assert first.documents_uploaded == 3
        assert first.errors[0].item_id == "api_003"
        # Never past the failed item
        assert first.checkpoint == "timestamp:2024-01-15T12:00:00+00:00"

        world.failing_ids = set()
        second = await connector.pull(SyncParams(since=first.checkpoint))

        assert second.status == SyncStatus.SUCCESS
        assert world.api_requests[-1]["updated_since"] == "2024-01-15T12:00:00+00:00"
        assert second.documents_uploaded == 2
        assert second.checkpoint == "timestamp:2024-01-15T13:00:00+00:00"
        # api_004 was uploaded twice but stored once
        assert len(world.documents) == 4

    @pytest.mark.asyncio
    async def test_revoked_token_is_refreshed_once(self, world, http):
        connector, auth = await build_connector(http)
        world.revoked.add("token-1")

        result = await connector.pull()

        assert result.documents_uploaded == 4
        assert world.issued_tokens == ["token-1", "token-2"]
        assert auth.token_requests == 2

    @pytest.mark.asyncio
    async def test_cancelled_pass_can_be_rerun(self, world, http):
        connector, _ = await build_connector(http)
        cancel = asyncio.Event()
        original = world._upload

        def upload_then_cancel(request):
            response = original(request)
            if len(world.documents) == 2:
                cancel.set()
            return response

        world._upload = upload_then_cancel

        with pytest.raises(OperationCancelled):
            await connector.pull(cancel_event=cancel)

        world._upload = original
        result = await connector.pull()

        assert result.status == SyncStatus.SUCCESS
        assert len(world.documents) == 4
        uploaded_keys = [r.headers["X-Idempotency-Key"] for r in world.upload_requests]
        assert len(set(uploaded_keys)) == 4

    @pytest.mark.asyncio
    async def test_uploaded_metadata(self, world, http):
        connector, _ = await build_connector(http)

        await connector.pull(SyncParams(trace_id="trace-42"))

        request = world.upload_requests[0]
        body = request.content.decode()
        metadata = json.loads(body.split('name="metadata_0"\r\n\r\n', 1)[1].split("\r\n", 1)[0])
        assert request.headers["X-Request-Id"] == "trace-42"
        assert metadata["item_id"] == "api_001"
        assert metadata["item_timestamp"] == "2024-01-15T10:00:00+00:00"
        assert metadata["connector"] == "catalog"
        assert metadata["endpoint"] == "/v1/products"


class TestRunOnce:
    """Test checkpoint and token persistence between runs"""

    @pytest.mark.asyncio
    async def test_state_file_carries_checkpoint_and_token(self, world, http, tmp_path):
        from scripts.run_sync import load_state, run_once

        state_path = str(tmp_path / "state.json")
        connector, auth = await build_connector(http)
        world.failing_ids = {"api_003"}

        await run_once(connector, auth, state_path)

        state = load_state(state_path)
        assert state["checkpoint"] == "timestamp:2024-01-15T12:00:00+00:00"
        assert state["token_state"]["access_token"] == "token-1"
        assert state["last_result"]["status"] == "partial_success"
        assert state["last_result"]["errors"] == 1

        world.failing_ids = set()
        result = await run_once(connector, auth, state_path)

        assert result.documents_uploaded == 2
        assert load_state(state_path)["checkpoint"] == "timestamp:2024-01-15T13:00:00+00:00"
        assert len(world.documents) == 4

    def test_unreadable_state_file_is_ignored(self, tmp_path):
        from scripts.run_sync import load_state

        path = tmp_path / "state.json"
        path.write_text("{not json")

        assert load_state(str(path)) == {}
        assert load_state(str(tmp_path / "missing.json")) == {}
