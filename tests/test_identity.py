"""
Tests for access token extraction and verification against the identity provider.
"""

import httpx
import pytest

from voice_relay.errors import AuthError
from voice_relay.services.identity import (
    IdentityVerifier,
    extract_bearer_token,
    parse_subprotocols,
)


def verifier_with(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return IdentityVerifier("https://identity.example.com/", "public-key", client=client)


class TestTokenExtraction:
    def test_token_follows_websocket_tag(self):
        assert extract_bearer_token(["websocket", "abc.def.ghi"]) == "abc.def.ghi"

    def test_tag_without_token(self):
        assert extract_bearer_token(["websocket"]) is None

    def test_no_subprotocols(self):
        assert extract_bearer_token([]) is None

    def test_authorization_header_fallback(self):
        assert extract_bearer_token([], "Bearer header-token") == "header-token"
        assert extract_bearer_token([], "bearer header-token") == "header-token"

    def test_subprotocol_takes_precedence(self):
        assert extract_bearer_token(["websocket", "proto-token"], "Bearer header-token") == "proto-token"

    def test_non_bearer_authorization_is_ignored(self):
        assert extract_bearer_token([], "Basic dXNlcjpwYXNz") is None
        assert extract_bearer_token([], "Bearer ") is None

    def test_parse_subprotocols_header(self):
        assert parse_subprotocols("websocket, abc.def") == ["websocket", "abc.def"]
        assert parse_subprotocols(None) == []
        assert parse_subprotocols(" , ") == []


@pytest.mark.asyncio
async def test_verify_valid_token():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"id": "user-123", "email": "user@example.com"})

    verifier = verifier_with(handler)
    identity = await verifier.verify("valid-token")

    assert identity.subject == "user-123"
    assert identity.email == "user@example.com"
    assert identity.anonymous is False
    request = requests[0]
    assert str(request.url) == "https://identity.example.com/auth/v1/user"
    assert request.headers["Authorization"] == "Bearer valid-token"
    assert request.headers["apikey"] == "public-key"


@pytest.mark.asyncio
async def test_verify_rejected_token():
    verifier = verifier_with(lambda request: httpx.Response(401, json={"msg": "invalid JWT"}))

    with pytest.raises(AuthError, match="Invalid or expired access token") as exc_info:
        await verifier.verify("expired-token")

    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_verify_missing_token_skips_provider():
    calls = []
    verifier = verifier_with(lambda request: calls.append(request) or httpx.Response(200, json={}))

    with pytest.raises(AuthError, match="Missing access token"):
        await verifier.verify(None)

    assert calls == []


@pytest.mark.asyncio
async def test_verify_fails_closed_when_provider_unreachable():
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    verifier = verifier_with(handler)

    with pytest.raises(AuthError, match="Unable to verify access token"):
        await verifier.verify("valid-token")


@pytest.mark.asyncio
async def test_verify_rejects_malformed_response():
    verifier = verifier_with(lambda request: httpx.Response(200, text="not json"))

    with pytest.raises(AuthError, match="Invalid identity provider response"):
        await verifier.verify("valid-token")


@pytest.mark.asyncio
async def test_verify_rejects_response_without_id():
    verifier = verifier_with(lambda request: httpx.Response(200, json={"email": "user@example.com"}))

    with pytest.raises(AuthError):
        await verifier.verify("valid-token")


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    verifier = IdentityVerifier("https://identity.example.com", "public-key", client=client)

    await verifier.aclose()

    assert not client.is_closed
    await client.aclose()
