from __future__ import annotations

from typing import List, Optional, Protocol

from flamingo.logging import get_logger
from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.service.permissions import PermissionEvaluator
from flamingo.storage.errors import ConstraintViolation
from flamingo.storage.models import (
    CollaboratorSummary,
    Project,
    ProjectCollaborator,
    ProjectRole,
    User,
)

logger = get_logger(__name__)

ASSIGNABLE_ROLES = (ProjectRole.EDITOR, ProjectRole.VIEWER)


class ProjectStore(Protocol):
    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def create_project(self, name: str, owner_id: int) -> Project: ...

    async def get_project(self, project_id: str) -> Optional[Project]: ...

    async def list_projects_for_user(self, user_id: int) -> List[Project]: ...

    async def update_project(self, project_id: str, name: str) -> Optional[Project]: ...

    async def soft_delete_project(self, project_id: str) -> Optional[Project]: ...

    async def get_collaborator(
        self, project_id: str, user_id: int
    ) -> Optional[ProjectCollaborator]: ...

    async def add_collaborator(
        self, project_id: str, user_id: int, role: ProjectRole
    ) -> ProjectCollaborator: ...

    async def update_collaborator_role(
        self, project_id: str, user_id: int, role: ProjectRole
    ) -> Optional[ProjectCollaborator]: ...

    async def remove_collaborator(self, project_id: str, user_id: int) -> bool: ...

    async def list_collaborators(self, project_id: str) -> List[CollaboratorSummary]: ...


def _assignable(role: ProjectRole) -> ProjectRole:
    role = ProjectRole(role)
    if role not in ASSIGNABLE_ROLES:
        raise ServiceError(
            ErrorCode.VALIDATION_ERROR,
            details={"field": "role", "allowed": [r.value for r in ASSIGNABLE_ROLES]},
        )
    return role


class ProjectService:
    """Project CRUD and collaborator management behind role checks."""

    def __init__(self, store: ProjectStore, permissions: PermissionEvaluator) -> None:
        self.store: ProjectStore = store
        self.permissions = permissions

    async def create_project(self, owner_id: int, name: str) -> Project:
        project = await self.store.create_project(name, owner_id)
        logger.info("project_created", project_id=project.id, owner_id=owner_id)
        return project

    async def list_projects(self, user_id: int) -> List[Project]:
        return await self.store.list_projects_for_user(user_id)

    async def update_project(self, project_id: str, caller_id: int, name: str) -> Project:
        await self.permissions.check(project_id, caller_id, ProjectRole.EDITOR)
        project = await self.store.update_project(project_id, name)
        if not project:
            raise ServiceError(ErrorCode.PROJECT_NOT_FOUND)
        return project

    async def delete_project(self, project_id: str, caller_id: int) -> Project:
        await self.permissions.check(project_id, caller_id, ProjectRole.OWNER)
        project = await self.store.soft_delete_project(project_id)
        if not project:
            raise ServiceError(ErrorCode.PROJECT_NOT_FOUND)
        logger.info("project_deleted", project_id=project_id, caller_id=caller_id)
        return project

    # -- collaborators -----------------------------------------------------

    async def add_collaborator(
        self, project_id: str, caller_id: int, email: str, role: ProjectRole
    ) -> ProjectCollaborator:
        """Invite an existing user by email.

        Raises:
            ServiceError: FORBIDDEN, USER_TO_ADD_NOT_FOUND, USER_ALREADY_COLLABORATOR
        """
        await self.permissions.check(project_id, caller_id, ProjectRole.OWNER)
        role = _assignable(role)
        user = await self.store.get_user_by_email(email)
        if not user:
            raise ServiceError(ErrorCode.USER_TO_ADD_NOT_FOUND)
        if await self.store.get_collaborator(project_id, user.id):
            raise ServiceError(ErrorCode.USER_ALREADY_COLLABORATOR)
        try:
            edge = await self.store.add_collaborator(project_id, user.id, role)
        except ConstraintViolation as exc:
            raise ServiceError(ErrorCode.USER_ALREADY_COLLABORATOR) from exc
        logger.info(
            "collaborator_added",
            project_id=project_id,
            user_id=user.id,
            role=role.value,
        )
        return edge

    async def list_collaborators(
        self, project_id: str, caller_id: int
    ) -> List[CollaboratorSummary]:
        await self.permissions.check(project_id, caller_id, ProjectRole.VIEWER)
        return await self.store.list_collaborators(project_id)

    async def _guard_target(
        self, project_id: str, caller_id: int, target_id: int, *, removing: bool
    ) -> None:
        # membership first, then the target rules, then owner-only
        caller_role = await self.permissions.check(project_id, caller_id, ProjectRole.VIEWER)
        target = await self.store.get_collaborator(project_id, target_id)
        if target and target.role == ProjectRole.OWNER:
            raise ServiceError(ErrorCode.CANNOT_CHANGE_OWNER_ROLE)
        if target_id == caller_id:
            raise ServiceError(
                ErrorCode.CANNOT_REMOVE_SELF if removing else ErrorCode.CANNOT_CHANGE_OWN_ROLE
            )
        if caller_role != ProjectRole.OWNER:
            raise ServiceError(ErrorCode.FORBIDDEN)
        if not target:
            raise ServiceError(ErrorCode.COLLABORATOR_NOT_FOUND)

    async def update_collaborator_role(
        self, project_id: str, caller_id: int, target_id: int, role: ProjectRole
    ) -> ProjectCollaborator:
        """Change an editor or viewer's role.

        Raises:
            ServiceError: FORBIDDEN, CANNOT_CHANGE_OWNER_ROLE, CANNOT_CHANGE_OWN_ROLE,
                COLLABORATOR_NOT_FOUND
        """
        await self._guard_target(project_id, caller_id, target_id, removing=False)
        role = _assignable(role)
        edge = await self.store.update_collaborator_role(project_id, target_id, role)
        if not edge:
            raise ServiceError(ErrorCode.COLLABORATOR_NOT_FOUND)
        logger.info(
            "collaborator_role_changed",
            project_id=project_id,
            user_id=target_id,
            role=role.value,
        )
        return edge

    async def remove_collaborator(
        self, project_id: str, caller_id: int, target_id: int
    ) -> None:
        await self._guard_target(project_id, caller_id, target_id, removing=True)
        if not await self.store.remove_collaborator(project_id, target_id):
            raise ServiceError(ErrorCode.COLLABORATOR_NOT_FOUND)
        logger.info("collaborator_removed", project_id=project_id, user_id=target_id)
