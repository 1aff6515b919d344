"""
Unit tests for auth providers
"""

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from core.exceptions import AuthError
from integrations.auth import (
    ApiKeyAuthProvider,
    BasicAuthProvider,
    BearerAuthProvider,
    CustomAuthProvider,
    NoAuthProvider,
    OAuth2Provider,
)
from schemas.auth import AuthScheme, TokenState

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def token_server(responses, requests=None, delay=0.0):
    """MockTransport handler returning queued token responses."""
    queue = list(responses)

    async def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(parse_qs(request.content.decode()))
        if delay:
            await asyncio.sleep(delay)
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_provider(client, **kwargs):
    return OAuth2Provider(
        token_url="https://auth.example.com/token",
        client_id="client",
        client_secret="secret",
        http_client=client,
        clock=lambda: NOW,
        **kwargs
    )


class TestStaticProviders:
    """Test header-only providers"""

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        provider = ApiKeyAuthProvider("k-123", header_name="X-Api-Token", prefix="Token")
        headers = await provider.apply_to_headers({"Accept": "application/json"})
        assert headers == {"Accept": "application/json", "X-Api-Token": "Token k-123"}
        assert await provider.validate() is True

    @pytest.mark.asyncio
    async def test_apply_to_headers_does_not_mutate_input(self):
        original = {"Accept": "application/json"}
        await BearerAuthProvider("tok").apply_to_headers(original)
        assert original == {"Accept": "application/json"}

    @pytest.mark.asyncio
    async def test_basic_encodes_credentials(self):
        provider = BasicAuthProvider("user", "pa:ss")
        headers = await provider.apply_to_headers()
        encoded = headers["Authorization"].split(" ", 1)[1]
        assert base64.b64decode(encoded).decode() == "user:pa:ss"
        assert await BasicAuthProvider("user", "").validate() is False

    @pytest.mark.asyncio
    async def test_custom_and_none(self):
        custom = CustomAuthProvider({"X-Tenant": "acme", "X-Sig": "abc"})
        assert await custom.apply_to_headers() == {"X-Tenant": "acme", "X-Sig": "abc"}
        assert await NoAuthProvider().apply_to_headers() == {}
        credentials = await custom.get_credentials()
        assert credentials.scheme == AuthScheme.CUSTOM

    @pytest.mark.asyncio
    async def test_static_refresh_returns_same_credentials(self):
        provider = BearerAuthProvider("tok")
        assert (await provider.refresh()).access_token == "tok"
        assert provider.refreshable is False


class TestOAuth2Provider:
    """Test OAuth2 token lifecycle"""

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self):
        requests = []
        client = token_server([(200, {"access_token": "a1", "expires_in": 3600})], requests)
        provider = make_provider(client, scopes=["read", "write"])

        credentials = await provider.get_credentials()

        assert credentials.access_token == "a1"
        assert credentials.expires_at == NOW + timedelta(seconds=3600)
        assert credentials.expires_at > NOW
        assert requests[0]["grant_type"] == ["client_credentials"]
        assert requests[0]["scope"] == ["read write"]

    @pytest.mark.asyncio
    async def test_token_reused_until_refresh_buffer(self):
        client = token_server([
            (200, {"access_token": "a1", "expires_in": 3600}),
            (200, {"access_token": "a2", "expires_in": 3600}),
        ])
        clock = {"now": NOW}
        provider = OAuth2Provider(
            token_url="https://auth.example.com/token",
            client_id="client",
            client_secret="secret",
            http_client=client,
            refresh_buffer_seconds=300,
            clock=lambda: clock["now"]
        )

        assert (await provider.get_credentials()).access_token == "a1"
        clock["now"] = NOW + timedelta(seconds=3000)
        assert (await provider.get_credentials()).access_token == "a1"

        # Inside the 5 minute buffer
        clock["now"] = NOW + timedelta(seconds=3400)
        assert (await provider.get_credentials()).access_token == "a2"
        assert provider.token_requests == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        client = token_server([(200, {"access_token": "shared", "expires_in": 3600})], delay=0.05)
        provider = make_provider(client)

        results = await asyncio.gather(*[provider.get_credentials() for _ in range(10)])

        assert {r.access_token for r in results} == {"shared"}
        assert provider.token_requests == 1

    @pytest.mark.asyncio
    async def test_refresh_token_grant_uses_stored_refresh_token(self):
        requests = []
        client = token_server([(200, {"access_token": "new", "refresh_token": "r2", "expires_in": 60})], requests)
        provider = make_provider(client, grant_type="refresh_token")
        provider.set_token_state({
            "access_token": "old",
            "refresh_token": "r1",
            "expires_at": (NOW - timedelta(seconds=1)).isoformat()
        })

        credentials = await provider.get_credentials()

        assert credentials.access_token == "new"
        assert requests[0]["refresh_token"] == ["r1"]
        assert provider.get_token_state().refresh_token == "r2"

    @pytest.mark.asyncio
    async def test_authorization_code_switches_to_refresh_token(self):
        requests = []
        client = token_server([
            (200, {"access_token": "a1", "refresh_token": "r1", "expires_in": 1}),
            (200, {"access_token": "a2", "expires_in": 3600}),
        ], requests)
        provider = make_provider(client, grant_type="authorization_code", extra_params={"code": "abc"})

        await provider.get_credentials()
        await provider.refresh()

        assert requests[0]["grant_type"] == ["authorization_code"]
        assert requests[1]["grant_type"] == ["refresh_token"]
        assert requests[1]["refresh_token"] == ["r1"]

    @pytest.mark.asyncio
    async def test_missing_expires_in_means_unknown_expiry(self):
        client = token_server([(200, {"access_token": "forever"})])
        provider = make_provider(client)

        credentials = await provider.get_credentials()
        assert credentials.expires_at is None
        await provider.get_credentials()
        assert provider.token_requests == 1

    @pytest.mark.asyncio
    async def test_token_endpoint_rejection(self):
        client = token_server([(401, {"error": "invalid_client"})])
        provider = make_provider(client)

        with pytest.raises(AuthError) as exc_info:
            await provider.get_credentials()

        assert exc_info.value.retryable is False
        assert exc_info.value.context["status_code"] == 401
        assert await provider.validate() is False

    @pytest.mark.asyncio
    async def test_missing_access_token(self):
        client = token_server([(200, {"token_type": "bearer"})])
        with pytest.raises(AuthError):
            await make_provider(client).get_credentials()

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_cached(self):
        client = token_server([
            (500, {"error": "temporarily_unavailable"}),
            (200, {"access_token": "a1", "expires_in": 3600}),
        ])
        provider = make_provider(client)

        with pytest.raises(AuthError):
            await provider.get_credentials()
        assert (await provider.get_credentials()).access_token == "a1"

    def test_token_state_round_trip(self):
        provider = make_provider(None, access_token="a", refresh_token="r", expires_at=NOW)
        state = provider.get_token_state()

        other = make_provider(None)
        other.set_token_state(TokenState.model_validate(state.model_dump(mode="json")))

        assert other.get_token_state() == state
