"""User, Workspace, and access models.

- User: an account created or updated on login
- Workspace: the tenant boundary that login groups grant access to
- WorkspaceAccess: user to workspace grants
- Invitation: pending invitations, read by the check-email flow
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from dynamic_oidc.models.base import Base


class User(Base):
    """User account model.

    Accounts are keyed by the provider subject (``external_id``) and the
    login provider (``dynamic-oidc/<provider id>``), never by email alone.
    """

    __tablename__ = "users"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=True)

    external_id = Column(Text, nullable=True)
    login_provider = Column(Text, nullable=True)

    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    workspace_access = relationship(
        "WorkspaceAccess",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint(
            "external_id", "login_provider", name="uq_users_external_id_provider"
        ),
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    slug = Column(Text, nullable=True, unique=True, index=True)
    name = Column(Text, nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Workspace {self.slug or self.id}>"

    @property
    def path(self) -> str:
        return f"/{self.slug or self.id}"


class WorkspaceAccess(Base):
    __tablename__ = "workspace_access"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(
        Uuid(),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(
        Uuid(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    user = relationship("User", back_populates="workspace_access")
    workspace = relationship("Workspace")

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_access"),
    )


class Invitation(Base):
    __tablename__ = "invitations"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False)
    workspace_id = Column(
        Uuid(),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    used_by = Column(Uuid(), ForeignKey("users.id"), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (Index("ix_invitations_email", "email"),)
