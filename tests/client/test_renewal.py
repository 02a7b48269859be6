from __future__ import annotations

import asyncio

import httpx
import pytest

from dynamic_oidc.client.renewal import RenewalOutcome, SessionRenewalLoop

USER = {"email": "alice@example.com", "name": "Alice"}


class FakeServer:
    """Serves scripted session/renew responses in order."""

    def __init__(self, sessions, renew=None):
        self.sessions = list(sessions)
        self.renew = renew
        self.calls: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(f"{request.method} {request.url.path}")
        if request.url.path.endswith("/session"):
            body = self.sessions.pop(0) if len(self.sessions) > 1 else self.sessions[0]
            return httpx.Response(200, json=body)
        if request.url.path.endswith("/renew"):
            return self.renew
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler), base_url="https://app.example.com"
        )


@pytest.mark.asyncio
async def test_authenticated_session_needs_no_renewal():
    server = FakeServer([{"authenticated": True, "user": USER}])
    async with server.client() as client:
        loop = SessionRenewalLoop(client)
        outcome = await loop.check_and_renew()

    assert outcome is RenewalOutcome.AUTHENTICATED
    assert loop.user == USER
    assert server.calls == ["GET /auth/dynamic-oidc/session"]


@pytest.mark.asyncio
async def test_expired_session_is_renewed():
    server = FakeServer(
        [
            {"authenticated": False, "needsRefresh": True},
            {"authenticated": True, "user": USER},
        ],
        renew=httpx.Response(200, json={"success": True, "message": "Session renewed"}),
    )
    async with server.client() as client:
        loop = SessionRenewalLoop(client)
        outcome = await loop.check_and_renew()

    assert outcome is RenewalOutcome.RENEWED
    assert loop.user == USER
    assert server.calls == [
        "GET /auth/dynamic-oidc/session",
        "POST /auth/dynamic-oidc/renew",
        "GET /auth/dynamic-oidc/session",
    ]


@pytest.mark.asyncio
async def test_signed_out_session_is_not_renewed():
    server = FakeServer([{"authenticated": False}])
    async with server.client() as client:
        outcome = await SessionRenewalLoop(client).check_and_renew()

    assert outcome is RenewalOutcome.UNAUTHENTICATED
    assert not outcome.ok
    assert server.calls == ["GET /auth/dynamic-oidc/session"]


@pytest.mark.asyncio
async def test_rejected_renewal_fails():
    server = FakeServer(
        [{"authenticated": False, "needsRefresh": True}],
        renew=httpx.Response(
            200, json={"success": False, "message": "Re-authentication required"}
        ),
    )
    async with server.client() as client:
        outcome = await SessionRenewalLoop(client).check_and_renew()

    assert outcome is RenewalOutcome.FAILED


@pytest.mark.asyncio
async def test_transport_error_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://app.example.com"
    ) as client:
        outcome = await SessionRenewalLoop(client).check_and_renew()

    assert outcome is RenewalOutcome.FAILED


@pytest.mark.asyncio
async def test_run_stops_when_session_ends():
    server = FakeServer(
        [
            {"authenticated": True, "user": USER},
            {"authenticated": False},
        ]
    )
    async with server.client() as client:
        loop = SessionRenewalLoop(client, interval_seconds=0.01)
        outcome = await asyncio.wait_for(loop.run(), timeout=5)

    assert outcome is RenewalOutcome.UNAUTHENTICATED
    assert loop.user is None


@pytest.mark.asyncio
async def test_run_returns_after_stop():
    server = FakeServer([{"authenticated": True, "user": USER}])
    async with server.client() as client:
        loop = SessionRenewalLoop(client, interval_seconds=60)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        loop.stop()
        outcome = await asyncio.wait_for(task, timeout=5)

    assert outcome is RenewalOutcome.AUTHENTICATED
    assert loop.user == USER
