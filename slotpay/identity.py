"""Caller identity.

The checkout, order and sync endpoints only accept a verified user id.
Verification is delegated to the auth service (Supabase-style
``GET /auth/v1/user``); tests swap in a static resolver.
"""
from __future__ import annotations
from typing import Dict, Optional

import httpx
import structlog

from .errors import Unauthorized
from .retry import call_with_retries

logger = structlog.get_logger(component="identity")


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthorized("Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Malformed authorization header")
    return token.strip()


class RemoteIdentity:

    def __init__(self, auth_url: str, anon_key: str = "", *,
                 http: Optional[httpx.AsyncClient] = None,
                 max_attempts: int = 3, base_delay_ms: int = 1000):
        self.url = f"{auth_url.rstrip('/')}/auth/v1/user"
        self.anon_key = anon_key
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=5.0)
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms

    async def resolve(self, token: str) -> str:
        headers = {"Authorization": f"Bearer {token}"}
        if self.anon_key:
            headers["apikey"] = self.anon_key

        async def _get() -> httpx.Response:
            resp = await self.http.get(self.url, headers=headers)
            if resp.status_code >= 500:
                resp.raise_for_status()
            return resp

        try:
            resp = await call_with_retries(
                _get, what="identity.resolve",
                max_attempts=self.max_attempts,
                base_delay_ms=self.base_delay_ms,
            )
        except httpx.HTTPError as e:
            logger.warning("identity_unreachable", error=str(e))
            raise Unauthorized("Unable to verify session", cause=e) from e

        if resp.status_code in (401, 403):
            text = resp.text.lower()
            if "expired" in text:
                raise Unauthorized("Session expired", code="SESSION_EXPIRED")
            raise Unauthorized("Invalid token")
        if resp.status_code >= 400:
            raise Unauthorized("Invalid token")

        try:
            user_id = (resp.json() or {}).get("id")
        except ValueError:
            user_id = None
        if not user_id:
            raise Unauthorized("Invalid token")
        return str(user_id)

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()


class StaticIdentity:
    """token -> user id table; for local runs and tests."""

    def __init__(self, users: Dict[str, str]):
        self.users = dict(users)

    async def resolve(self, token: str) -> str:
        try:
            return self.users[token]
        except KeyError:
            raise Unauthorized("Invalid token") from None
