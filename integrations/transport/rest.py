"""
REST transport with authentication, retry, pagination and streaming.

This module provides robust API access with:
- Auth header injection through an AuthProvider
- Exponential backoff retry for transient failures (network, 429, 5xx)
- A single forced credential refresh on 401/403 before giving up
- Cursor, offset and page pagination as lazy, restartable page iterators
- Server-Sent Events streaming
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import httpx

from core.config import settings
from core.exceptions import AuthError, HTTPError, NetworkError, RateLimitError
from integrations.auth.base import AuthProvider, NoAuthProvider
from integrations.cancellation import raise_if_cancelled, run_cancellable
from integrations.retry import retry
from integrations.transport.base import Transport
from integrations.utils import extract_by_path
from schemas.transport import (
    Page,
    PaginationConfig,
    PaginationState,
    PaginationStyle,
    ServerSentEvent,
)

logger = logging.getLogger(__name__)


class RestTransport(Transport):
    """
    HTTP transport over a shared httpx AsyncClient.

    Response classification:
        2xx      -> parsed JSON body (text if not JSON, None if empty)
        401/403  -> AuthError (one forced refresh + retry, then terminal)
        429      -> RateLimitError with Retry-After (retryable)
        5xx      -> HTTPError (retryable)
        other 4xx-> HTTPError (terminal)
        network  -> NetworkError (retryable)

    Attributes:
        base_url: Prefix for relative request paths
        timeout: Per-request timeout in seconds (default: settings.HTTP_TIMEOUT_SECONDS)
        max_retries: Retries per request (default: settings.MAX_RETRIES)
    """

    transport_type = "rest"

    def __init__(
        self,
        base_url: str,
        auth: Optional[AuthProvider] = None,
        default_headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_ms: Optional[float] = None,
        max_backoff_ms: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep=None
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.auth = auth or NoAuthProvider()
        self.default_headers = dict(default_headers or {})
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.backoff_ms = settings.RETRY_BACKOFF_MS if backoff_ms is None else backoff_ms
        self.max_backoff_ms = settings.RETRY_MAX_BACKOFF_MS if max_backoff_ms is None else max_backoff_ms
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def connect(self) -> None:
        if self._connected:
            return
        if not await self.auth.validate():
            raise AuthError(
                "Authentication validation failed",
                context={"base_url": self.base_url, "scheme": self.auth.scheme.value}
            )
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        self._connected = True
        logger.info(f"REST transport connected to {self.base_url}")

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._connected = False

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        path: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Any:
        """
        Make a REST request with retry and auth handling.

        Args:
            path: Path relative to base_url (or an absolute URL)
            method: HTTP method
            params: Query parameters
            json: JSON request body
            headers: Extra headers (auth headers are added on top)
            timeout: Override the transport timeout
            cancel_event: Cancellation signal

        Returns:
            Parsed JSON response body (text if the body is not JSON)

        Raises:
            AuthError: Credentials rejected after one forced refresh
            HTTPError: Terminal 4xx response
            IntegrationError: Retries exhausted (non-retryable wrapper)
            OperationCancelled: Cancellation signal fired
        """
        self._ensure_connected("request")
        method = method.upper()
        url = self._url(path)

        async def attempt():
            return await self._send(method, url, params, json, headers, timeout, cancel_event)

        refreshed = False
        while True:
            try:
                return await retry(
                    attempt,
                    max_retries=self.max_retries,
                    backoff_ms=self.backoff_ms,
                    max_backoff_ms=self.max_backoff_ms,
                    cancel_event=cancel_event,
                    sleep=self._sleep,
                    operation=f"{method} {path}"
                )
            except AuthError:
                if refreshed or not self.auth.refreshable:
                    raise
                refreshed = True
                logger.warning(f"{method} {path} rejected credentials, forcing refresh")
                await self.auth.refresh()

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request(path, method="GET", **kwargs)

    async def post(self, path: str, **kwargs) -> Any:
        return await self.request(path, method="POST", **kwargs)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        body: Any,
        headers: Optional[Dict[str, str]],
        timeout: Optional[float],
        cancel_event: Optional[asyncio.Event]
    ) -> Any:
        request_headers = await self.auth.apply_to_headers({**self.default_headers, **(headers or {})})
        context = {"url": url, "method": method}

        try:
            response = await run_cancellable(
                self._client.request(
                    method,
                    url,
                    params=params,
                    json=body,
                    headers=request_headers,
                    timeout=timeout or self.timeout
                ),
                cancel_event,
                operation=f"{method} {url}"
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request timeout: {method} {url}",
                context={**context, "timeout": timeout or self.timeout},
                original_exception=e
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"Network error: {method} {url}",
                context=context,
                original_exception=e
            )

        return self._handle_response(response, method, url)

    def _handle_response(self, response: httpx.Response, method: str, url: str) -> Any:
        status = response.status_code
        context = {"url": url, "method": method, "status_code": status}

        if status in (401, 403):
            raise AuthError(f"Authentication failed ({status}) for {method} {url}", context=context)

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitError(
                f"Rate limited by {url}",
                retry_after=retry_after,
                context=context
            )

        if status >= 400:
            raise HTTPError(
                f"HTTP {status} for {method} {url}",
                status_code=status,
                context={**context, "response_body": response.text[:500]}
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path:
            return self.base_url
        return f"{self.base_url}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def paginate(
        self,
        path: str,
        config: Optional[PaginationConfig] = None,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        start_state: Optional[PaginationState] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[Page]:
        """
        Iterate pages lazily until the source is exhausted or ``max_pages`` is hit.

        Termination:
            cursor - next cursor absent/null (or repeating)
            offset - empty page, or offset >= total when ``total_path`` resolves
            page   - empty page, or total pages reached when ``total_pages_path`` resolves

        Passing a page's ``next_state`` back as ``start_state`` resumes the
        traversal from that point.
        """
        self._ensure_connected("paginate")
        config = config or PaginationConfig()
        state = start_state.model_copy() if start_state is not None else config.initial_state()
        seen_cursors: Set[str] = set()
        if state.cursor:
            seen_cursors.add(state.cursor)

        number = 0
        while state is not None:
            raise_if_cancelled(cancel_event, f"paginate {path}")

            query = {**(params or {}), **state.to_params(config)}
            body = await self.request(
                path,
                method=method,
                params=query,
                json=json,
                headers=headers,
                cancel_event=cancel_event
            )

            number += 1
            items = self._extract_items(body, config)
            total = _as_int(extract_by_path(body, config.total_path)) if config.total_path else None
            next_state = self._next_state(config, state, body, items, total, seen_cursors)

            logger.debug(f"Fetched page {number} of {path} ({len(items)} items)")

            at_limit = config.max_pages is not None and number >= config.max_pages
            truncated = at_limit and next_state is not None
            if truncated:
                logger.info(f"Stopping pagination of {path} at max_pages={config.max_pages}")

            if items or next_state is not None:
                yield Page(
                    items=items,
                    state=state,
                    next_state=next_state,
                    total=total,
                    number=number,
                    truncated=truncated
                )

            if at_limit:
                break

            state = next_state

    def _extract_items(self, body: Any, config: PaginationConfig) -> List[Any]:
        if config.items_path:
            items = extract_by_path(body, config.items_path)
            if items is None and isinstance(body, list):
                items = body
        else:
            items = body

        if items is None:
            return []
        if isinstance(items, list):
            return items
        return [items]

    def _next_state(
        self,
        config: PaginationConfig,
        state: PaginationState,
        body: Any,
        items: List[Any],
        total: Optional[int],
        seen_cursors: Set[str]
    ) -> Optional[PaginationState]:
        if config.style == PaginationStyle.CURSOR:
            next_cursor = extract_by_path(body, config.cursor_path)
            if next_cursor is None or next_cursor == "":
                return None
            next_cursor = str(next_cursor)
            if next_cursor in seen_cursors:
                logger.warning(f"Cursor {next_cursor!r} repeated, stopping pagination")
                return None
            seen_cursors.add(next_cursor)
            return PaginationState(style=state.style, cursor=next_cursor)

        if not items:
            return None

        if config.style == PaginationStyle.OFFSET:
            next_offset = state.offset + config.page_size
            if total is not None and next_offset >= total:
                return None
            return PaginationState(style=state.style, offset=next_offset)

        total_pages = None
        if config.total_pages_path:
            total_pages = _as_int(extract_by_path(body, config.total_pages_path))
        if total_pages is not None and state.page >= total_pages:
            return None
        return PaginationState(style=state.style, page=state.page + 1)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[ServerSentEvent]:
        """
        Stream Server-Sent Events.

        Forward-only and not restartable; ends when the server closes the
        stream or the cancellation signal fires. Event data is JSON-decoded
        when possible.
        """
        self._ensure_connected("stream")
        method = method.upper()
        url = self._url(path)
        request_headers = await self.auth.apply_to_headers(
            {**self.default_headers, "Accept": "text/event-stream", **(headers or {})}
        )
        operation = f"stream {url}"

        try:
            async with self._client.stream(
                method,
                url,
                params=params,
                headers=request_headers,
                timeout=httpx.Timeout(self.timeout, read=None)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._handle_response(response, method, url)

                lines = response.aiter_lines()
                parser = SSEParser()
                while True:
                    try:
                        line = await run_cancellable(lines.__anext__(), cancel_event, operation)
                    except StopAsyncIteration:
                        break
                    event = parser.feed(line)
                    if event is not None:
                        yield event

                event = parser.flush()
                if event is not None:
                    yield event
        except httpx.TransportError as e:
            raise NetworkError(
                f"SSE stream failed: {url}",
                context={"url": url, "method": method},
                original_exception=e
            )


class SSEParser:
    """Incremental ``text/event-stream`` line parser"""

    def __init__(self):
        self._reset()

    def _reset(self):
        self._event = None
        self._data: List[str] = []
        self._id = None
        self._retry = None

    def feed(self, line: str) -> Optional[ServerSentEvent]:
        line = line.rstrip("\r\n")
        if line == "":
            return self.flush()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        elif field == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                pass
        return None

    def flush(self) -> Optional[ServerSentEvent]:
        if not self._data:
            self._reset()
            return None

        raw = "\n".join(self._data)
        try:
            data = json.loads(raw)
        except ValueError:
            data = raw

        event = ServerSentEvent(
            event=self._event or "message",
            data=data,
            id=self._id,
            retry=self._retry
        )
        self._reset()
        return event


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (delta seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
