"""
Unit tests for the REST transport
"""

import asyncio

import httpx
import pytest

from core.exceptions import (
    AuthError,
    HTTPError,
    IntegrationError,
    OperationCancelled,
    TransportError,
)
from integrations.auth.base import AuthProvider, BearerAuthProvider
from integrations.transport.rest import RestTransport, SSEParser, parse_retry_after
from schemas.auth import AuthScheme, Credentials
from schemas.transport import PaginationConfig, PaginationState, PaginationStyle


async def no_sleep(seconds):
    return None


class RotatingTokenProvider(AuthProvider):
    """Refreshable provider that hands out token-1, token-2, ..."""

    scheme = AuthScheme.BEARER
    refreshable = True

    def __init__(self):
        self.generation = 1
        self.refreshes = 0

    async def get_credentials(self) -> Credentials:
        return Credentials(scheme=self.scheme, access_token=f"token-{self.generation}")

    async def refresh(self) -> Credentials:
        self.refreshes += 1
        self.generation += 1
        return await self.get_credentials()

    def _auth_headers(self, credentials: Credentials):
        return {"Authorization": f"Bearer {credentials.access_token}"}


def make_transport(handler, auth=None, sleep=no_sleep, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RestTransport(
        "https://api.example.com/v1/",
        auth=auth,
        client=client,
        max_retries=kwargs.pop("max_retries", 3),
        backoff_ms=kwargs.pop("backoff_ms", 100),
        sleep=sleep,
        **kwargs
    )


class TestRequests:
    """Test request execution and response classification"""

    @pytest.mark.asyncio
    async def test_get_injects_auth_and_parses_json(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        transport = make_transport(handler, auth=BearerAuthProvider("abc"))
        async with transport:
            body = await transport.get("/items", params={"limit": 5})

        assert body == {"ok": True}
        assert str(seen[0].url) == "https://api.example.com/v1/items?limit=5"
        assert seen[0].headers["Authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_non_json_and_empty_bodies(self):
        def handler(request):
            if request.url.path.endswith("/text"):
                return httpx.Response(200, text="plain")
            return httpx.Response(204)

        async with make_transport(handler) as transport:
            assert await transport.get("text") == "plain"
            assert await transport.get("empty") is None

    @pytest.mark.asyncio
    async def test_request_requires_connection(self):
        transport = make_transport(lambda request: httpx.Response(200))

        with pytest.raises(TransportError) as exc_info:
            await transport.get("items")

        assert exc_info.value.code == "NOT_CONNECTED"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        statuses = [503, 502, 200]
        calls = []

        def handler(request):
            calls.append(1)
            status = statuses[len(calls) - 1]
            return httpx.Response(status, json={"attempt": len(calls)})

        async with make_transport(handler) as transport:
            body = await transport.get("items")

        assert body == {"attempt": 3}
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(404, json={"error": "missing"})

        async with make_transport(handler) as transport:
            with pytest.raises(HTTPError) as exc_info:
                await transport.get("missing")

        assert exc_info.value.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_not_retryable(self):
        def handler(request):
            return httpx.Response(500)

        async with make_transport(handler, max_retries=2) as transport:
            with pytest.raises(IntegrationError) as exc_info:
                await transport.get("items")

        assert exc_info.value.retryable is False
        assert exc_info.value.context["attempts"] == 3

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=[])

        async with make_transport(handler) as transport:
            assert await transport.get("items") == []

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        responses = [
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json={"ok": True}),
        ]

        async with make_transport(lambda request: responses.pop(0), sleep=record_sleep) as transport:
            assert await transport.get("items") == {"ok": True}

        assert delays == [2.0]

    @pytest.mark.asyncio
    async def test_unauthorized_forces_one_refresh(self):
        auth = RotatingTokenProvider()
        tokens = []

        def handler(request):
            tokens.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer token-1":
                return httpx.Response(401)
            return httpx.Response(200, json={"ok": True})

        async with make_transport(handler, auth=auth) as transport:
            assert await transport.get("items") == {"ok": True}

        assert tokens == ["Bearer token-1", "Bearer token-2"]
        assert auth.refreshes == 1

    @pytest.mark.asyncio
    async def test_persistent_unauthorized_is_terminal(self):
        auth = RotatingTokenProvider()
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(403)

        async with make_transport(handler, auth=auth) as transport:
            with pytest.raises(AuthError):
                await transport.get("items")

        assert auth.refreshes == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_static_credentials_are_not_refreshed(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(401)

        async with make_transport(handler, auth=BearerAuthProvider("abc")) as transport:
            with pytest.raises(AuthError):
                await transport.get("items")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_request(self):
        cancel = asyncio.Event()
        cancel.set()

        async with make_transport(lambda request: httpx.Response(200)) as transport:
            with pytest.raises(OperationCancelled):
                await transport.get("items", cancel_event=cancel)


class TestPagination:
    """Test cursor, offset and page traversal"""

    @pytest.mark.asyncio
    async def test_cursor_pagination(self):
        pages = {
            None: {"data": [1, 2], "next_cursor": "c2"},
            "c2": {"data": [3, 4], "next_cursor": "c3"},
            "c3": {"data": [5], "next_cursor": None},
        }
        seen_params = []

        def handler(request):
            seen_params.append(dict(request.url.params))
            return httpx.Response(200, json=pages[request.url.params.get("cursor")])

        config = PaginationConfig(style=PaginationStyle.CURSOR, page_size=2)
        async with make_transport(handler) as transport:
            result = [page async for page in transport.paginate("items", config, params={"q": "x"})]

        assert [p.items for p in result] == [[1, 2], [3, 4], [5]]
        assert result[-1].next_state is None
        assert result[0].next_state.cursor == "c2"
        assert seen_params[0] == {"q": "x", "limit": "2"}
        assert seen_params[1]["cursor"] == "c2"

    @pytest.mark.asyncio
    async def test_repeated_cursor_stops(self):
        def handler(request):
            return httpx.Response(200, json={"data": [1], "next_cursor": "same"})

        config = PaginationConfig(style=PaginationStyle.CURSOR)
        async with make_transport(handler) as transport:
            result = [page async for page in transport.paginate("items", config)]

        assert len(result) == 2

    @pytest.mark.asyncio
    async def test_offset_pagination_uses_total(self):
        items = list(range(5))

        def handler(request):
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            return httpx.Response(200, json={"data": items[offset:offset + limit], "total": 5})

        config = PaginationConfig(style=PaginationStyle.OFFSET, page_size=2)
        async with make_transport(handler) as transport:
            result = [page async for page in transport.paginate("items", config)]

        assert [p.items for p in result] == [[0, 1], [2, 3], [4]]
        assert [p.state.offset for p in result] == [0, 2, 4]
        assert result[-1].total == 5

    @pytest.mark.asyncio
    async def test_page_pagination_stops_on_empty_page(self):
        data = {1: ["a", "b"], 2: ["c"]}
        requested = []

        def handler(request):
            page = int(request.url.params["page"])
            requested.append(page)
            return httpx.Response(200, json={"results": data.get(page, [])})

        config = PaginationConfig(style=PaginationStyle.PAGE, page_size=2, items_path="results", total_path=None)
        async with make_transport(handler) as transport:
            result = [page async for page in transport.paginate("items", config)]

        assert [p.items for p in result] == [["a", "b"], ["c"]]
        assert requested == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_body_as_list_and_max_pages(self):
        requested = []

        def handler(request):
            requested.append(int(request.url.params["page"]))
            return httpx.Response(200, json=[{"id": 1}])

        config = PaginationConfig(style=PaginationStyle.PAGE, items_path=None, total_path=None, max_pages=3)
        async with make_transport(handler) as transport:
            result = [page async for page in transport.paginate("items", config)]

        assert len(result) == 3
        assert requested == [1, 2, 3]
        assert result[-1].next_state.page == 4
        assert [page.truncated for page in result] == [False, False, True]

    @pytest.mark.asyncio
    async def test_resume_from_state(self):
        requested = []

        def handler(request):
            offset = int(request.url.params["offset"])
            requested.append(offset)
            data = [offset] if offset < 30 else []
            return httpx.Response(200, json={"data": data})

        config = PaginationConfig(style=PaginationStyle.OFFSET, page_size=10, total_path=None)
        start = PaginationState(style=PaginationStyle.OFFSET, offset=20)
        async with make_transport(handler) as transport:
            result = [page async for page in transport.paginate("items", config, start_state=start)]

        assert requested == [20, 30]
        assert [p.items for p in result] == [[20]]


class TestServerSentEvents:
    """Test SSE parsing and streaming"""

    def test_parser_builds_events(self):
        parser = SSEParser()
        lines = [
            ": keep-alive",
            "event: update",
            "id: 7",
            'data: {"id": 1}',
            "",
            "data: line one",
            "data: line two",
            "",
        ]
        events = [e for e in (parser.feed(line) for line in lines) if e is not None]

        assert events[0].event == "update"
        assert events[0].id == "7"
        assert events[0].data == {"id": 1}
        assert events[1].event == "message"
        assert events[1].data == "line one\nline two"

    def test_parser_ignores_events_without_data(self):
        parser = SSEParser()
        assert parser.feed("event: ping") is None
        assert parser.feed("") is None

    @pytest.mark.asyncio
    async def test_stream(self):
        body = 'data: {"n": 1}\n\nevent: done\ndata: {"n": 2}\n'

        def handler(request):
            assert request.headers["Accept"] == "text/event-stream"
            return httpx.Response(200, content=body.encode(), headers={"Content-Type": "text/event-stream"})

        async with make_transport(handler) as transport:
            events = [event async for event in transport.stream("events")]

        assert [e.data for e in events] == [{"n": 1}, {"n": 2}]
        assert events[1].event == "done"


class TestRetryAfterParsing:
    def test_seconds_and_dates(self):
        assert parse_retry_after("10") == 10.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("not a date") is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
