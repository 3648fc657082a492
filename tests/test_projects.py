"""Unit tests for project and collaborator management."""

from datetime import timedelta

import pytest

from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.service.permissions import PermissionEvaluator
from flamingo.service.projects import ProjectService
from flamingo.storage.models import NewUser, ProjectRole, UserStatus


@pytest.fixture
def projects(memory_store):
    return ProjectService(memory_store, PermissionEvaluator(memory_store))


async def _user(store, email, name):
    return await store.create_user(NewUser(email=email, name=name, status=UserStatus.ACTIVE))


async def _team(store, projects):
    owner = await _user(store, "owner@example.com", "Olive")
    editor = await _user(store, "editor@example.com", "Eddie")
    viewer = await _user(store, "viewer@example.com", "Vera")
    project = await projects.create_project(owner.id, "Sketchbook")
    await projects.add_collaborator(project.id, owner.id, editor.email, ProjectRole.EDITOR)
    await projects.add_collaborator(project.id, owner.id, viewer.email, ProjectRole.VIEWER)
    return project, owner, editor, viewer


class TestProjects:
    async def test_creator_becomes_owner(self, memory_store, projects):
        owner = await _user(memory_store, "o@example.com", "O")
        project = await projects.create_project(owner.id, "Zine")
        edge = await memory_store.get_collaborator(project.id, owner.id)

        assert project.owner_id == owner.id
        assert edge.role == ProjectRole.OWNER

    async def test_list_newest_first_excludes_deleted(self, memory_store, projects):
        owner = await _user(memory_store, "o@example.com", "O")
        first = await projects.create_project(owner.id, "First")
        second = await projects.create_project(owner.id, "Second")
        third = await projects.create_project(owner.id, "Third")
        for offset, project in enumerate((first, second, third)):
            memory_store.projects[project.id].created_at -= timedelta(minutes=10 - offset)
        await projects.delete_project(second.id, owner.id)

        listed = await projects.list_projects(owner.id)
        assert [p.id for p in listed] == [third.id, first.id]

    async def test_list_includes_shared_projects(self, memory_store, projects):
        project, _, editor, _ = await _team(memory_store, projects)
        assert [p.id for p in await projects.list_projects(editor.id)] == [project.id]

    async def test_editor_can_rename(self, memory_store, projects):
        project, _, editor, _ = await _team(memory_store, projects)
        renamed = await projects.update_project(project.id, editor.id, "Renamed")
        assert renamed.name == "Renamed"

    async def test_viewer_cannot_rename(self, memory_store, projects):
        project, _, _, viewer = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.update_project(project.id, viewer.id, "Nope")
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_only_owner_deletes(self, memory_store, projects):
        project, _, editor, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.delete_project(project.id, editor.id)
        assert exc.value.code == ErrorCode.FORBIDDEN


class TestCollaborators:
    async def test_listing_order(self, memory_store, projects):
        project, owner, _, viewer = await _team(memory_store, projects)
        extra = await _user(memory_store, "abe@example.com", "Abe")
        await projects.add_collaborator(project.id, owner.id, extra.email, ProjectRole.VIEWER)

        rows = await projects.list_collaborators(project.id, viewer.id)
        assert [(r.role, r.name) for r in rows] == [
            (ProjectRole.OWNER, "Olive"),
            (ProjectRole.EDITOR, "Eddie"),
            (ProjectRole.VIEWER, "Abe"),
            (ProjectRole.VIEWER, "Vera"),
        ]

    async def test_add_unknown_user(self, memory_store, projects):
        project, owner, _, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.add_collaborator(
                project.id, owner.id, "nobody@example.com", ProjectRole.VIEWER
            )
        assert exc.value.code == ErrorCode.USER_TO_ADD_NOT_FOUND

    async def test_add_existing_collaborator(self, memory_store, projects):
        project, owner, editor, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.add_collaborator(project.id, owner.id, editor.email, ProjectRole.VIEWER)
        assert exc.value.code == ErrorCode.USER_ALREADY_COLLABORATOR

    async def test_cannot_add_second_owner(self, memory_store, projects):
        project, owner, _, _ = await _team(memory_store, projects)
        newcomer = await _user(memory_store, "new@example.com", "New")
        with pytest.raises(ServiceError) as exc:
            await projects.add_collaborator(project.id, owner.id, newcomer.email, ProjectRole.OWNER)
        assert exc.value.code == ErrorCode.VALIDATION_ERROR

    async def test_editor_cannot_add(self, memory_store, projects):
        project, _, editor, _ = await _team(memory_store, projects)
        newcomer = await _user(memory_store, "new@example.com", "New")
        with pytest.raises(ServiceError) as exc:
            await projects.add_collaborator(project.id, editor.id, newcomer.email, ProjectRole.VIEWER)
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_owner_changes_role(self, memory_store, projects):
        project, owner, _, viewer = await _team(memory_store, projects)
        edge = await projects.update_collaborator_role(
            project.id, owner.id, viewer.id, ProjectRole.EDITOR
        )
        assert edge.role == ProjectRole.EDITOR

    async def test_viewer_changing_own_role(self, memory_store, projects):
        """Self-targeting is reported before the owner-only check."""
        project, _, _, viewer = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.update_collaborator_role(
                project.id, viewer.id, viewer.id, ProjectRole.EDITOR
            )
        assert exc.value.code == ErrorCode.CANNOT_CHANGE_OWN_ROLE
        assert exc.value.status_code == 400

    async def test_owner_changing_own_role(self, memory_store, projects):
        project, owner, _, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.update_collaborator_role(
                project.id, owner.id, owner.id, ProjectRole.VIEWER
            )
        assert exc.value.code == ErrorCode.CANNOT_CHANGE_OWNER_ROLE

    async def test_editor_changing_owner(self, memory_store, projects):
        project, owner, editor, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.update_collaborator_role(
                project.id, editor.id, owner.id, ProjectRole.VIEWER
            )
        assert exc.value.code == ErrorCode.CANNOT_CHANGE_OWNER_ROLE

    async def test_editor_changing_viewer_forbidden(self, memory_store, projects):
        project, _, editor, viewer = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.update_collaborator_role(
                project.id, editor.id, viewer.id, ProjectRole.EDITOR
            )
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_non_member_forbidden_first(self, memory_store, projects):
        project, owner, _, _ = await _team(memory_store, projects)
        outsider = await _user(memory_store, "out@example.com", "Out")
        with pytest.raises(ServiceError) as exc:
            await projects.update_collaborator_role(
                project.id, outsider.id, owner.id, ProjectRole.VIEWER
            )
        assert exc.value.code == ErrorCode.FORBIDDEN

    async def test_change_missing_collaborator(self, memory_store, projects):
        project, owner, _, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.update_collaborator_role(project.id, owner.id, 999, ProjectRole.VIEWER)
        assert exc.value.code == ErrorCode.COLLABORATOR_NOT_FOUND
        assert exc.value.status_code == 404

    async def test_remove_collaborator(self, memory_store, projects):
        project, owner, editor, _ = await _team(memory_store, projects)
        await projects.remove_collaborator(project.id, owner.id, editor.id)
        assert await memory_store.get_collaborator(project.id, editor.id) is None

    async def test_cannot_remove_self(self, memory_store, projects):
        project, _, editor, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.remove_collaborator(project.id, editor.id, editor.id)
        assert exc.value.code == ErrorCode.CANNOT_REMOVE_SELF

    async def test_cannot_remove_owner(self, memory_store, projects):
        project, owner, _, _ = await _team(memory_store, projects)
        with pytest.raises(ServiceError) as exc:
            await projects.remove_collaborator(project.id, owner.id, owner.id)
        assert exc.value.code == ErrorCode.CANNOT_CHANGE_OWNER_ROLE
