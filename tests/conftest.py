from __future__ import annotations

import json
import time
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx
import jwt
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dynamic_oidc.api.context import build_context
from dynamic_oidc.config import OIDCSettings
from dynamic_oidc.models import Base, OIDCLoginGroup, OIDCProvider, Workspace

TEST_SECRET = "test-dynamic-oidc-secret-0123456789abcdef"
BASE_URL = "https://app.example.com"
ISSUER = "https://idp.example.com"
CLIENT_ID = "console-client"
CLIENT_SECRET = "console-secret"
PROVIDER_ID = "acme-idp"
KID = "test-key-1"


class FakeIdP:
    """In-process identity provider served through httpx.MockTransport."""

    def __init__(self, issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.requests: list[httpx.Request] = []
        self.discovery_document: dict[str, Any] = {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "userinfo_endpoint": f"{issuer}/userinfo",
            "jwks_uri": f"{issuer}/jwks",
            "introspection_endpoint": f"{issuer}/introspect",
        }
        self.discovery_status = 200
        self.token_status = 200
        self.token_json: dict[str, Any] = {
            "access_token": "opaque-access-token",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-token-1",
        }
        self.userinfo_status = 200
        self.userinfo_json: dict[str, Any] = {
            "sub": "user-123",
            "email": "alice@example.com",
            "name": "Alice",
            "groups": ["engineering"],
        }
        self.introspection_status = 200
        self.introspection_json: dict[str, Any] = {"active": True}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(self.discovery_status, json=self.discovery_document)
        if path == "/token":
            return httpx.Response(self.token_status, json=self.token_json)
        if path == "/userinfo":
            return httpx.Response(self.userinfo_status, json=self.userinfo_json)
        if path == "/introspect":
            return httpx.Response(self.introspection_status, json=self.introspection_json)
        return httpx.Response(404, json={"error": "not_found"})

    def client_factory(self):
        transport = httpx.MockTransport(self.handler)

        def factory() -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=transport)

        return factory

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture(autouse=True)
def _no_encryption_key(monkeypatch):
    monkeypatch.delenv("SETTINGS_ENCRYPTION_KEY", raising=False)


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_private_key) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_private_key.public_key()))
    jwk.update({"kid": KID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def sign_token(rsa_private_key):
    def _sign(claims: dict[str, Any], kid: str = KID) -> str:
        return jwt.encode(claims, rsa_private_key, algorithm="RS256", headers={"kid": kid})

    return _sign


def id_token_claims(nonce: Optional[str], **overrides: Any) -> dict[str, Any]:
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "sub": "user-123",
        "email": "Alice@Example.com",
        "name": "Alice",
        "groups": ["engineering"],
        "iat": now,
        "exp": now + 300,
    }
    if nonce is not None:
        claims["nonce"] = nonce
    claims.update(overrides)
    return claims


@pytest.fixture
def settings() -> OIDCSettings:
    return OIDCSettings(secret=TEST_SECRET, base_url=BASE_URL)


@pytest.fixture
def idp() -> FakeIdP:
    return FakeIdP()


@pytest_asyncio.fixture
async def session_maker(tmp_path: Path):
    db_path = tmp_path / "dynamic-oidc.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield maker
    finally:
        await engine.dispose()


@pytest.fixture
def oidc_context(settings, session_maker, idp):
    return build_context(settings, session_maker, http_client_factory=idp.client_factory())


async def create_provider(session_maker, **overrides: Any) -> str:
    values: dict[str, Any] = {
        "id": PROVIDER_ID,
        "name": "Acme IdP",
        "issuer": ISSUER,
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "introspection_endpoint": f"{ISSUER}/introspect",
        "auto_discovery": False,
        "enabled": True,
    }
    values.update(overrides)
    async with session_maker() as session:
        session.add(OIDCProvider(**values))
        await session.commit()
    return values["id"]


async def create_workspace(
    session_maker,
    slug: Optional[str] = "acme",
    provider_id: Optional[str] = PROVIDER_ID,
    group_value: Optional[str] = "engineering",
    allow_all_users: bool = False,
) -> uuid.UUID:
    workspace_id = uuid.uuid4()
    async with session_maker() as session:
        session.add(Workspace(id=workspace_id, slug=slug, name=slug or "Workspace"))
        await session.flush()
        if provider_id is not None:
            session.add(
                OIDCLoginGroup(
                    provider_id=provider_id,
                    workspace_id=workspace_id,
                    group_value=group_value,
                    allow_all_users=allow_all_users,
                )
            )
        await session.commit()
    return workspace_id


@pytest_asyncio.fixture
async def provider(session_maker) -> str:
    provider_id = await create_provider(session_maker)
    await create_workspace(session_maker)
    return provider_id
