"""
Allotment - Tenant Directory Models

Workspaces and namespaces are owned by the tenancy layer. The entitlement
core looks them up (owner, parent workspace) but never creates or edits them.
"""

import uuid
from typing import List, Optional

from sqlalchemy import Boolean, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel


class Workspace(BaseModel):
    """Top-level tenant; holds packages, boosts and usage."""

    __tablename__ = "workspaces"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    owner_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    namespaces: Mapped[List["Namespace"]] = relationship(
        "Namespace",
        back_populates="workspace",
    )


class Namespace(BaseModel):
    """
    Sub-tenant. Either belongs to a workspace (and inherits its grants when
    it has none of its own) or is owned directly by a user.
    """

    __tablename__ = "namespaces"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    workspace_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    owner_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    workspace: Mapped[Optional["Workspace"]] = relationship(
        "Workspace",
        back_populates="namespaces",
    )

    @property
    def is_user_owned(self) -> bool:
        return self.workspace_id is None and self.owner_user_id is not None
