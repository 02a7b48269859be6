from __future__ import annotations

import argparse
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dynamic_oidc.db import create_tables, resolve_db_uri

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _session_maker(
    ns: argparse.Namespace,
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(resolve_db_uri(ns))
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


async def _init_db_async(ns: argparse.Namespace) -> int:
    engine = create_async_engine(resolve_db_uri(ns))
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    print("Database tables created")
    return 0


def init_db(ns: argparse.Namespace) -> int:
    return asyncio.run(_init_db_async(ns))


async def _add_provider_async(ns: argparse.Namespace) -> int:
    from dynamic_oidc.api.services.encryption import encrypt_value
    from dynamic_oidc.models import DEFAULT_SCOPES, OIDCProvider

    if os.getenv("SETTINGS_ENCRYPTION_KEY"):
        client_secret = encrypt_value(ns.client_secret)
    else:
        logger.warning("SETTINGS_ENCRYPTION_KEY not set, storing client secret unencrypted")
        client_secret = ns.client_secret

    provider = OIDCProvider(
        id=ns.id or uuid.uuid4().hex,
        name=ns.name,
        issuer=ns.issuer,
        client_id=ns.client_id,
        client_secret=client_secret,
        scopes=ns.scopes.split() if ns.scopes else list(DEFAULT_SCOPES),
        email_claim=ns.email_claim,
        name_claim=ns.name_claim,
        group_claim=ns.group_claim,
        authorization_endpoint=ns.authorization_endpoint,
        token_endpoint=ns.token_endpoint,
        userinfo_endpoint=ns.userinfo_endpoint,
        jwks_uri=ns.jwks_uri,
        introspection_endpoint=ns.introspection_endpoint,
        auto_discovery=not ns.no_discovery,
        enabled=not ns.disabled,
        prompt=ns.prompt,
        audience=ns.audience,
        allowed_domains=ns.allowed_domain or [],
    )
    async with _session_maker(ns) as maker, maker() as session:
        session.add(provider)
        await session.commit()
    print(f"Created OIDC provider: {provider.name} (id: {provider.id})")
    return 0


def add_provider(ns: argparse.Namespace) -> int:
    return asyncio.run(_add_provider_async(ns))


async def _list_providers_async(ns: argparse.Namespace) -> int:
    from dynamic_oidc.models import OIDCProvider

    async with _session_maker(ns) as maker, maker() as session:
        result = await session.execute(select(OIDCProvider).order_by(OIDCProvider.name))
        providers = result.scalars().all()

    if not providers:
        print("No OIDC providers found")
        return 0
    for provider in providers:
        status = "enabled" if provider.enabled else "disabled"
        print(f"{provider.id}  {provider.name}  {provider.issuer}  [{status}]")
        if provider.last_error:
            print(f"  last error: {provider.last_error}")
    return 0


def list_providers(ns: argparse.Namespace) -> int:
    return asyncio.run(_list_providers_async(ns))


async def _discover_provider_async(ns: argparse.Namespace) -> int:
    import httpx

    from dynamic_oidc.api.services.discovery import DiscoveryResolver
    from dynamic_oidc.api.services.providers import ProviderRegistry
    from dynamic_oidc.models import OIDCProvider

    async with _session_maker(ns) as maker:
        async with maker() as session:
            provider = await session.get(OIDCProvider, ns.provider_id)
            if provider is None:
                print(f"Error: OIDC provider {ns.provider_id} not found")
                return 1
            issuer = provider.issuer

        resolver = DiscoveryResolver(
            lambda: httpx.AsyncClient(timeout=ns.timeout),
            maker,
            ProviderRegistry(maker),
            timeout_seconds=ns.timeout,
        )
        doc = await resolver.discover(issuer)
        if doc is None:
            print(f"Error: discovery failed for {issuer}")
            return 1
        changed = await resolver.apply(ns.provider_id, doc)

    print("Endpoints updated" if changed else "Endpoints already up to date")
    for name, value in doc.endpoints().items():
        print(f"  {name}: {value or '-'}")
    return 0


def discover_provider(ns: argparse.Namespace) -> int:
    return asyncio.run(_discover_provider_async(ns))


async def _add_login_group_async(ns: argparse.Namespace) -> int:
    from dynamic_oidc.models import OIDCLoginGroup, OIDCProvider, Workspace

    if not ns.group and not ns.all_users:
        print("Error: pass --group or --all-users")
        return 1

    async with _session_maker(ns) as maker, maker() as session:
        if await session.get(OIDCProvider, ns.provider_id) is None:
            print(f"Error: OIDC provider {ns.provider_id} not found")
            return 1

        try:
            condition = Workspace.id == uuid.UUID(ns.workspace)
        except ValueError:
            condition = Workspace.slug == ns.workspace
        result = await session.execute(select(Workspace).where(condition))
        workspace = result.scalar_one_or_none()
        if workspace is None:
            if not ns.create_workspace:
                print(f"Error: workspace {ns.workspace} not found")
                return 1
            workspace = Workspace(id=uuid.uuid4(), slug=ns.workspace, name=ns.workspace)
            session.add(workspace)
            await session.flush()

        group = OIDCLoginGroup(
            provider_id=ns.provider_id,
            workspace_id=workspace.id,
            group_value=ns.group,
            allow_all_users=ns.all_users,
        )
        session.add(group)
        await session.commit()
        print(
            f"Added login group for workspace {workspace.slug or workspace.id}: "
            f"{'all users' if ns.all_users else ns.group}"
        )
    return 0


def add_login_group(ns: argparse.Namespace) -> int:
    return asyncio.run(_add_login_group_async(ns))


def serve(ns: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "dynamic_oidc.api.main:app",
        host=ns.host,
        port=ns.port,
        reload=ns.reload,
        log_level=str(ns.log_level).lower(),
    )
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    db_parser = subparsers.add_parser("db", help="Database management.")
    db_sub = db_parser.add_subparsers(dest="db_command", required=True)
    db_init = db_sub.add_parser("init", help="Create all tables.")
    db_init.set_defaults(func=init_db)

    providers_parser = subparsers.add_parser("providers", help="OIDC provider management.")
    providers_sub = providers_parser.add_subparsers(dest="providers_command", required=True)

    providers_add = providers_sub.add_parser("add", help="Register an OIDC provider.")
    providers_add.add_argument("--id", help="Provider id (generated if omitted).")
    providers_add.add_argument("--name", required=True, help="Display name.")
    providers_add.add_argument("--issuer", required=True, help="Issuer URL.")
    providers_add.add_argument("--client-id", dest="client_id", required=True)
    providers_add.add_argument("--client-secret", dest="client_secret", required=True)
    providers_add.add_argument(
        "--scopes", help="Space-separated scopes (default: openid profile email)."
    )
    providers_add.add_argument("--email-claim", dest="email_claim")
    providers_add.add_argument("--name-claim", dest="name_claim")
    providers_add.add_argument("--group-claim", dest="group_claim")
    providers_add.add_argument("--authorization-endpoint", dest="authorization_endpoint")
    providers_add.add_argument("--token-endpoint", dest="token_endpoint")
    providers_add.add_argument("--userinfo-endpoint", dest="userinfo_endpoint")
    providers_add.add_argument("--jwks-uri", dest="jwks_uri")
    providers_add.add_argument("--introspection-endpoint", dest="introspection_endpoint")
    providers_add.add_argument("--prompt", help="Prompt parameter (default: login).")
    providers_add.add_argument("--audience")
    providers_add.add_argument(
        "--allowed-domain",
        dest="allowed_domain",
        action="append",
        help="Restrict logins to this email domain (repeatable).",
    )
    providers_add.add_argument(
        "--no-discovery", action="store_true", help="Disable endpoint discovery."
    )
    providers_add.add_argument(
        "--disabled", action="store_true", help="Create the provider disabled."
    )
    providers_add.set_defaults(func=add_provider)

    providers_list = providers_sub.add_parser("list", help="List OIDC providers.")
    providers_list.set_defaults(func=list_providers)

    providers_discover = providers_sub.add_parser(
        "discover", help="Fetch discovery metadata and store the endpoints."
    )
    providers_discover.add_argument("provider_id", help="Provider id.")
    providers_discover.add_argument("--timeout", type=float, default=10.0)
    providers_discover.set_defaults(func=discover_provider)

    groups_parser = subparsers.add_parser("login-groups", help="Workspace login groups.")
    groups_sub = groups_parser.add_subparsers(dest="login_groups_command", required=True)
    groups_add = groups_sub.add_parser("add", help="Grant a workspace to provider users.")
    groups_add.add_argument("--provider-id", dest="provider_id", required=True)
    groups_add.add_argument("--workspace", required=True, help="Workspace id or slug.")
    groups_add.add_argument("--group", help="Required value of the group claim.")
    groups_add.add_argument(
        "--all-users",
        dest="all_users",
        action="store_true",
        help="Grant every user of the provider.",
    )
    groups_add.add_argument(
        "--create-workspace",
        dest="create_workspace",
        action="store_true",
        help="Create the workspace (by slug) when it does not exist.",
    )
    groups_add.set_defaults(func=add_login_group)

    serve_parser = subparsers.add_parser("serve", help="Run the API server.")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.set_defaults(func=serve)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dynamic-oidc", description="Dynamic OIDC login administration."
    )
    parser.add_argument(
        "--db", help="Database URI (defaults to DATABASE_URI environment variable)."
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    register_commands(sub)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)

    level_name = str(getattr(ns, "log_level", "") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    func = getattr(ns, "func", None)
    if func is None:
        parser.print_help()
        return 2
    return int(func(ns))


if __name__ == "__main__":
    raise SystemExit(main())
