import pytest

from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.service.permissions import PermissionEvaluator, role_satisfies
from flamingo.storage.models import NewUser, ProjectRole, UserStatus


@pytest.mark.parametrize(
    "actual,required,allowed",
    [
        (ProjectRole.OWNER, ProjectRole.VIEWER, True),
        (ProjectRole.VIEWER, ProjectRole.OWNER, False),
        (ProjectRole.EDITOR, ProjectRole.EDITOR, True),
        (ProjectRole.VIEWER, ProjectRole.EDITOR, False),
        (ProjectRole.OWNER, ProjectRole.OWNER, True),
        (ProjectRole.EDITOR, ProjectRole.VIEWER, True),
    ],
)
def test_role_ranking(actual, required, allowed):
    assert role_satisfies(actual, required) is allowed


async def _project_with_viewer(store):
    owner = await store.create_user(
        NewUser(email="owner@example.com", name="Owner", status=UserStatus.ACTIVE)
    )
    viewer = await store.create_user(
        NewUser(email="viewer@example.com", name="Viewer", status=UserStatus.ACTIVE)
    )
    project = await store.create_project("Board", owner.id)
    await store.add_collaborator(project.id, viewer.id, ProjectRole.VIEWER)
    return project, owner, viewer


class TestPermissionEvaluator:
    async def test_owner_allowed(self, memory_store):
        project, owner, _ = await _project_with_viewer(memory_store)
        role = await PermissionEvaluator(memory_store).check(
            project.id, owner.id, ProjectRole.OWNER
        )
        assert role == ProjectRole.OWNER

    async def test_viewer_denied_editor_action(self, memory_store):
        project, _, viewer = await _project_with_viewer(memory_store)
        with pytest.raises(ServiceError) as exc:
            await PermissionEvaluator(memory_store).check(
                project.id, viewer.id, ProjectRole.EDITOR
            )
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_non_member_forbidden(self, memory_store):
        project, _, _ = await _project_with_viewer(memory_store)
        with pytest.raises(ServiceError) as exc:
            await PermissionEvaluator(memory_store).check(project.id, 999, ProjectRole.VIEWER)
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_missing_project_is_forbidden_not_404(self, memory_store):
        """Unknown projects look the same as projects the caller cannot see."""
        with pytest.raises(ServiceError) as exc:
            await PermissionEvaluator(memory_store).check(
                "00000000-0000-0000-0000-000000000000", 1, ProjectRole.VIEWER
            )
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_deleted_project_forbidden(self, memory_store):
        project, owner, _ = await _project_with_viewer(memory_store)
        await memory_store.soft_delete_project(project.id)
        with pytest.raises(ServiceError) as exc:
            await PermissionEvaluator(memory_store).check(project.id, owner.id, ProjectRole.VIEWER)
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_project_id_required(self, memory_store):
        with pytest.raises(ServiceError) as exc:
            await PermissionEvaluator(memory_store).check("", 1, ProjectRole.VIEWER)
        assert exc.value.code == ErrorCode.PROJECT_ID_REQUIRED
