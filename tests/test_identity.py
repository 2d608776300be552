"""Tests for caller identity resolution."""

import httpx
import pytest

from slotpay.errors import Unauthorized
from slotpay.identity import RemoteIdentity, StaticIdentity, bearer_token


def _remote(handler) -> RemoteIdentity:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteIdentity("https://auth.test/", "anon", http=http,
                          base_delay_ms=0)


class TestBearerToken:
    def test_parses(self) -> None:
        assert bearer_token("Bearer abc") == "abc"
        assert bearer_token("bearer  abc ") == "abc"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
    def test_rejects(self, header) -> None:
        with pytest.raises(Unauthorized):
            bearer_token(header)


class TestRemoteIdentity:
    """Token validation against the auth service."""

    async def test_resolves_user(self) -> None:
        def handler(request):
            assert request.url == "https://auth.test/auth/v1/user"
            assert request.headers["authorization"] == "Bearer tok"
            assert request.headers["apikey"] == "anon"
            return httpx.Response(200, json={"id": "user-1"})

        assert await _remote(handler).resolve("tok") == "user-1"

    async def test_expired_session(self) -> None:
        def handler(request):
            return httpx.Response(401, json={"msg": "JWT expired"})

        with pytest.raises(Unauthorized) as ei:
            await _remote(handler).resolve("tok")
        assert ei.value.code == "SESSION_EXPIRED"

    async def test_invalid_token(self) -> None:
        def handler(request):
            return httpx.Response(401, json={"msg": "invalid JWT"})

        with pytest.raises(Unauthorized) as ei:
            await _remote(handler).resolve("tok")
        assert ei.value.code == "INVALID_TOKEN"

    async def test_retries_unavailable_auth_service(self) -> None:
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"id": "user-1"})

        assert await _remote(handler).resolve("tok") == "user-1"
        assert len(calls) == 2


class TestStaticIdentity:
    async def test_lookup(self) -> None:
        ident = StaticIdentity({"t": "u"})
        assert await ident.resolve("t") == "u"
        with pytest.raises(Unauthorized):
            await ident.resolve("x")
