from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from dynamic_oidc.models.base import Base

DEFAULT_SCOPES = ["openid", "profile", "email"]


def _new_provider_id() -> str:
    return uuid.uuid4().hex


class OIDCProvider(Base):
    """An external OpenID Connect identity provider registered at runtime.

    Endpoints may be configured statically or filled in by discovery.
    ``client_secret`` holds Fernet ciphertext, see
    ``dynamic_oidc.api.services.encryption``.
    """

    __tablename__ = "oidc_providers"

    id = Column(Text, primary_key=True, default=_new_provider_id)
    name = Column(Text, nullable=False)
    issuer = Column(Text, nullable=False)
    client_id = Column(Text, nullable=False)
    client_secret = Column(Text, nullable=False)
    scopes = Column(JSON, nullable=False, default=lambda: list(DEFAULT_SCOPES))

    # Claim mapping
    email_claim = Column(Text, nullable=True)
    name_claim = Column(Text, nullable=True)
    group_claim = Column(Text, nullable=True)

    # Static or discovered endpoints
    authorization_endpoint = Column(Text, nullable=True)
    token_endpoint = Column(Text, nullable=True)
    userinfo_endpoint = Column(Text, nullable=True)
    jwks_uri = Column(Text, nullable=True)
    introspection_endpoint = Column(Text, nullable=True)

    auto_discovery = Column(Boolean, nullable=False, default=True)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    prompt = Column(Text, nullable=True)
    audience = Column(Text, nullable=True)
    allowed_domains = Column(JSON, nullable=True, default=list)

    last_metadata_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    login_groups = relationship(
        "OIDCLoginGroup",
        back_populates="provider",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<OIDCProvider {self.name} issuer={self.issuer}>"


class OIDCLoginGroup(Base):
    """Grants access to one workspace for users of one provider.

    Either every user of the provider (``allow_all_users``) or only users
    whose group claim contains ``group_value``.
    """

    __tablename__ = "oidc_login_groups"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    provider_id = Column(
        Text,
        ForeignKey("oidc_providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workspace_id = Column(
        Uuid(),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    group_value = Column(Text, nullable=True)
    allow_all_users = Column(Boolean, nullable=False, default=False)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    provider = relationship("OIDCProvider", back_populates="login_groups")
    workspace = relationship("Workspace")

    __table_args__ = (
        UniqueConstraint(
            "provider_id",
            "workspace_id",
            "group_value",
            name="uq_oidc_login_group_provider_workspace_group",
        ),
        Index("ix_oidc_login_groups_workspace_provider", "workspace_id", "provider_id"),
    )

    def __init__(
        self,
        provider_id: str,
        workspace_id: uuid.UUID,
        group_value: Optional[str] = None,
        allow_all_users: bool = False,
    ):
        self.id = uuid.uuid4()
        self.provider_id = provider_id
        self.workspace_id = workspace_id
        self.group_value = group_value
        self.allow_all_users = allow_all_users
        self.created_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        target = "*" if self.allow_all_users else self.group_value
        return f"<OIDCLoginGroup provider={self.provider_id} group={target}>"
