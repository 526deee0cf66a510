"""
Allotment - Tenant Directory

Read-only lookups into the tenancy tables: parent workspace of a namespace,
and owner of a principal.
"""

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.entitlement_enums import Principal, PrincipalType
from app.models.tenant import Namespace, Workspace
from app.models.user import User
from app.utils.error_handling import PrincipalNotFoundException


class TenantDirectory:
    """Lookups only; the entitlement core never edits tenants."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_workspace(self, workspace_id: uuid.UUID) -> Optional[Workspace]:
        return await self.db.get(Workspace, workspace_id)

    async def get_namespace(self, namespace_id: uuid.UUID) -> Optional[Namespace]:
        return await self.db.get(Namespace, namespace_id)

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def require(self, principal: Principal):
        """Load the workspace or namespace row, raising when it does not exist."""
        if principal.kind == PrincipalType.WORKSPACE:
            tenant = await self.get_workspace(principal.id)
        else:
            tenant = await self.get_namespace(principal.id)
        if tenant is None:
            raise PrincipalNotFoundException(principal.kind.value, principal.id)
        return tenant

    async def parent_workspace_id(self, principal: Principal) -> Optional[uuid.UUID]:
        """The workspace a principal's usage rolls up to."""
        if principal.kind == PrincipalType.WORKSPACE:
            return principal.id
        namespace = await self.get_namespace(principal.id)
        return namespace.workspace_id if namespace else None

    async def owner_of(self, principal: Principal) -> Optional[User]:
        """
        The user notified about a principal's usage.

        A namespace without its own owner falls back to its workspace owner.
        """
        owner_id: Optional[uuid.UUID] = None
        if principal.kind == PrincipalType.WORKSPACE:
            workspace = await self.get_workspace(principal.id)
            owner_id = workspace.owner_user_id if workspace else None
        else:
            namespace = await self.get_namespace(principal.id)
            if namespace is not None:
                owner_id = namespace.owner_user_id
                if owner_id is None and namespace.workspace_id is not None:
                    workspace = await self.get_workspace(namespace.workspace_id)
                    owner_id = workspace.owner_user_id if workspace else None

        if owner_id is None:
            return None
        return await self.get_user(owner_id)

