"""Integration tests for the project and collaborator routes."""

import pytest

from conftest import bearer, login, register_and_verify


@pytest.fixture
def team(client):
    """An owner with a project shared to a viewer."""
    owner_id = register_and_verify(client, "owner@example.com", name="Owner")
    viewer_id = register_and_verify(client, "viewer@example.com", name="Viewer")
    owner = bearer(login(client, "owner@example.com"))
    viewer = bearer(login(client, "viewer@example.com"))
    created = client.post("/api/v1/projects", json={"name": "Mural"}, headers=owner)
    assert created.status_code == 201
    project_id = created.json()["data"]["id"]
    added = client.post(
        f"/api/v1/projects/{project_id}/collaborators",
        json={"email": "viewer@example.com", "role": "viewer"},
        headers=owner,
    )
    assert added.status_code == 201
    return {
        "project_id": project_id,
        "owner_id": owner_id,
        "viewer_id": viewer_id,
        "owner": owner,
        "viewer": viewer,
    }


class TestProjectRoutes:
    def test_requires_bearer(self, client):
        resp = client.get("/api/v1/projects")
        assert resp.status_code == 401

    def test_create_and_list(self, client, team):
        resp = client.get("/api/v1/projects", headers=team["viewer"])
        assert resp.status_code == 200
        items = resp.json()["data"]["items"]
        assert [p["id"] for p in items] == [team["project_id"]]
        assert items[0]["owner_id"] == team["owner_id"]

    def test_viewer_cannot_rename(self, client, team):
        resp = client.put(
            f"/api/v1/projects/{team['project_id']}",
            json={"name": "Renamed"},
            headers=team["viewer"],
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_owner_renames(self, client, team):
        resp = client.put(
            f"/api/v1/projects/{team['project_id']}",
            json={"name": "Renamed"},
            headers=team["owner"],
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "Renamed"

    def test_soft_delete(self, client, team):
        resp = client.delete(f"/api/v1/projects/{team['project_id']}", headers=team["owner"])
        assert resp.status_code == 200
        listed = client.get("/api/v1/projects", headers=team["owner"])
        assert listed.json()["data"]["items"] == []

    def test_unknown_project_forbidden(self, client, team):
        resp = client.get(
            "/api/v1/projects/00000000-0000-0000-0000-000000000000/collaborators",
            headers=team["owner"],
        )
        assert resp.status_code == 403


class TestCollaboratorRoutes:
    def test_list_collaborators(self, client, team):
        resp = client.get(
            f"/api/v1/projects/{team['project_id']}/collaborators", headers=team["viewer"]
        )
        assert resp.status_code == 200
        assert [(c["name"], c["role"]) for c in resp.json()["data"]["items"]] == [
            ("Owner", "owner"),
            ("Viewer", "viewer"),
        ]

    def test_add_unknown_user(self, client, team):
        resp = client.post(
            f"/api/v1/projects/{team['project_id']}/collaborators",
            json={"email": "ghost@example.com", "role": "editor"},
            headers=team["owner"],
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "USER_TO_ADD_NOT_FOUND"

    def test_add_twice(self, client, team):
        resp = client.post(
            f"/api/v1/projects/{team['project_id']}/collaborators",
            json={"email": "viewer@example.com", "role": "editor"},
            headers=team["owner"],
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "USER_ALREADY_COLLABORATOR"

    def test_owner_role_not_assignable(self, client, team):
        resp = client.put(
            f"/api/v1/projects/{team['project_id']}/collaborators/{team['viewer_id']}",
            json={"role": "owner"},
            headers=team["owner"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_viewer_changes_own_role(self, client, team):
        resp = client.put(
            f"/api/v1/projects/{team['project_id']}/collaborators/{team['viewer_id']}",
            json={"role": "editor"},
            headers=team["viewer"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "CANNOT_CHANGE_OWN_ROLE"

    def test_owner_changes_own_role(self, client, team):
        resp = client.put(
            f"/api/v1/projects/{team['project_id']}/collaborators/{team['owner_id']}",
            json={"role": "viewer"},
            headers=team["owner"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "CANNOT_CHANGE_OWNER_ROLE"

    def test_owner_promotes_viewer(self, client, team):
        resp = client.put(
            f"/api/v1/projects/{team['project_id']}/collaborators/{team['viewer_id']}",
            json={"role": "editor"},
            headers=team["owner"],
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["role"] == "editor"

        renamed = client.put(
            f"/api/v1/projects/{team['project_id']}",
            json={"name": "Shared"},
            headers=team["viewer"],
        )
        assert renamed.status_code == 200

    def test_remove_collaborator(self, client, team):
        resp = client.delete(
            f"/api/v1/projects/{team['project_id']}/collaborators/{team['viewer_id']}",
            headers=team["owner"],
        )
        assert resp.status_code == 200
        listed = client.get("/api/v1/projects", headers=team["viewer"])
        assert listed.json()["data"]["items"] == []

    def test_missing_collaborator(self, client, team):
        resp = client.delete(
            f"/api/v1/projects/{team['project_id']}/collaborators/999",
            headers=team["owner"],
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "COLLABORATOR_NOT_FOUND"
