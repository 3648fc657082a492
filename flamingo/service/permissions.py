from __future__ import annotations

from typing import Optional, Protocol

from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.storage.models import ProjectCollaborator, ProjectRole

# Strict total order used for every project permission comparison
ROLE_RANK = {
    ProjectRole.OWNER: 3,
    ProjectRole.EDITOR: 2,
    ProjectRole.VIEWER: 1,
}


def role_satisfies(actual: ProjectRole, required: ProjectRole) -> bool:
    return ROLE_RANK[ProjectRole(actual)] >= ROLE_RANK[ProjectRole(required)]


class CollaboratorLookup(Protocol):
    async def get_collaborator(
        self, project_id: str, user_id: int
    ) -> Optional[ProjectCollaborator]: ...


class PermissionEvaluator:
    """Resolves a caller's project role and compares it to a required role."""

    def __init__(self, store: CollaboratorLookup) -> None:
        self.store = store

    async def check(
        self, project_id: Optional[str], caller_id: int, required_role: ProjectRole
    ) -> ProjectRole:
        """Return the caller's role when it ranks at least ``required_role``.

        A missing project and a missing membership both raise FORBIDDEN so
        non-members learn nothing about which projects exist.

        Raises:
            ServiceError: PROJECT_ID_REQUIRED or FORBIDDEN
        """
        if not project_id:
            raise ServiceError(ErrorCode.PROJECT_ID_REQUIRED)
        edge = await self.store.get_collaborator(project_id, caller_id)
        if edge is None:
            raise ServiceError(ErrorCode.FORBIDDEN)
        if not role_satisfies(edge.role, required_role):
            raise ServiceError(ErrorCode.FORBIDDEN)
        return edge.role
