"""
OAuth2 authentication provider with automatic token refresh.

This module provides:
- Token endpoint grants (client_credentials, refresh_token, authorization_code)
- Proactive refresh once ``expires_at - now <= refresh_buffer_seconds``
- Single-flight refresh: concurrent callers share one in-flight token request
- Token state persistence via ``get_token_state`` / ``set_token_state``
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from core.config import settings
from core.exceptions import AuthError
from integrations.auth.base import AuthProvider
from integrations.utils import utcnow
from schemas.auth import AuthScheme, Credentials, TokenState

logger = logging.getLogger(__name__)

GRANT_TYPES = ("client_credentials", "refresh_token", "authorization_code")


class OAuth2Provider(AuthProvider):
    """
    OAuth2 client with auto-refresh.

    The token is requested with a form-encoded POST to ``token_url``. When
    the current token is missing or inside the refresh buffer, the first
    caller starts a refresh task and every concurrent caller awaits the same
    task, so at most one token request per instance is ever in flight. All
    waiters observe the same outcome: the new credentials or the same
    ``AuthError``.

    Attributes:
        token_url: OAuth2 token endpoint
        grant_type: Grant used for token requests (default: client_credentials)
        scopes: Requested scopes, sent space-separated
        refresh_buffer_seconds: Refresh this long before expiry (default: 300)
    """

    scheme = AuthScheme.OAUTH2
    refreshable = True

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        grant_type: str = "client_credentials",
        scopes: Optional[List[str]] = None,
        extra_params: Optional[Dict[str, str]] = None,
        refresh_buffer_seconds: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if grant_type not in GRANT_TYPES:
            raise ValueError(f"Unsupported grant type: {grant_type}")

        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.grant_type = grant_type
        self.scopes = list(scopes or [])
        self.extra_params = dict(extra_params or {})
        self.refresh_buffer_seconds = (
            settings.OAUTH_REFRESH_BUFFER_SECONDS
            if refresh_buffer_seconds is None else refresh_buffer_seconds
        )
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._http_client = http_client
        self._clock = clock or utcnow

        self._access_token = access_token
        self._refresh_token = refresh_token
        self._expires_at = _as_utc(expires_at)
        self._refresh_task: Optional[asyncio.Future] = None
        self.token_requests = 0

    # ------------------------------------------------------------------
    # AuthProvider API
    # ------------------------------------------------------------------

    async def get_credentials(self) -> Credentials:
        if self._is_token_valid():
            return self._credentials()
        return await self._refresh_single_flight()

    async def refresh(self) -> Credentials:
        """Force a new token request (joins an in-flight refresh if there is one)."""
        return await self._refresh_single_flight()

    async def validate(self) -> bool:
        """True if a valid token is held or one can be obtained."""
        try:
            await self.get_credentials()
        except AuthError as e:
            logger.warning(f"OAuth2 validation failed: {e.message}")
            return False
        return True

    def _auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credentials.access_token}"}

    def get_token_state(self) -> TokenState:
        return TokenState(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            expires_at=self._expires_at
        )

    def set_token_state(self, state: Union[TokenState, Dict[str, Any]]) -> None:
        if not isinstance(state, TokenState):
            state = TokenState.model_validate(state)
        self._access_token = state.access_token
        self._refresh_token = state.refresh_token
        self._expires_at = _as_utc(state.expires_at)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_token_valid(self) -> bool:
        if not self._access_token:
            return False
        if self._expires_at is None:
            # Unknown expiry: use the token until the server rejects it
            return True
        remaining = (self._expires_at - self._clock()).total_seconds()
        return remaining > self.refresh_buffer_seconds

    def _credentials(self) -> Credentials:
        return Credentials(
            scheme=self.scheme,
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            expires_at=self._expires_at
        )

    async def _refresh_single_flight(self) -> Credentials:
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._request_token())
            task.add_done_callback(self._clear_refresh_task)
            self._refresh_task = task
        # Shield so one cancelled waiter does not cancel the shared request
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: asyncio.Future) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"OAuth2 refresh task failed: {task.exception()}")

    def _token_form(self) -> Dict[str, str]:
        grant_type = self.grant_type
        if grant_type == "authorization_code" and self._refresh_token:
            # The authorization code is single-use; later refreshes use the refresh token
            grant_type = "refresh_token"

        form = {
            "grant_type": grant_type,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **self.extra_params,
        }

        if grant_type == "refresh_token":
            if not self._refresh_token:
                raise AuthError(
                    "No refresh token available",
                    context={"token_url": self.token_url}
                )
            form["refresh_token"] = self._refresh_token

        if self.scopes:
            form["scope"] = " ".join(self.scopes)

        return form

    async def _request_token(self) -> Credentials:
        form = self._token_form()
        context = {"token_url": self.token_url, "grant_type": form["grant_type"]}
        self.token_requests += 1

        logger.info(f"Requesting OAuth2 token from {self.token_url} ({form['grant_type']})")

        try:
            if self._http_client is not None:
                response = await self._post(self._http_client, form)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._post(client, form)
        except httpx.HTTPError as e:
            raise AuthError(
                f"OAuth2 token request failed: {e}",
                context=context,
                original_exception=e
            )

        if response.status_code >= 400:
            raise AuthError(
                f"OAuth2 token endpoint returned {response.status_code}",
                context={**context, "status_code": response.status_code, "response_body": response.text[:500]}
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthError(
                "OAuth2 token response is not valid JSON",
                context={**context, "response_body": response.text[:500]},
                original_exception=e
            )

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthError("OAuth2 token response missing access_token", context=context)

        now = self._clock()
        self._access_token = access_token
        if payload.get("refresh_token"):
            self._refresh_token = payload["refresh_token"]

        expires_in = payload.get("expires_in")
        if expires_in is not None:
            try:
                self._expires_at = now + timedelta(seconds=float(expires_in))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid expires_in value: {expires_in!r}")
                self._expires_at = None
        else:
            self._expires_at = None

        logger.info(
            f"OAuth2 token refreshed (expires_at: "
            f"{self._expires_at.isoformat() if self._expires_at else 'unknown'})"
        )
        return self._credentials()

    async def _post(self, client: httpx.AsyncClient, form: Dict[str, str]) -> httpx.Response:
        return await client.post(
            self.token_url,
            data=form,
            headers={"Accept": "application/json"},
            timeout=self.timeout
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
