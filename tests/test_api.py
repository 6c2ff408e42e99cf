import pytest
from fastapi.testclient import TestClient

import main
from gwm.errors import RuntimeFailure

PROJECT_ID = "proj_0000000000000001"
HEADERS = {"X-Internal-Key": "test-key"}
PREFIX = "/internal/postgrest"


@pytest.fixture
def client(orchestrator, settings):
    main.app.dependency_overrides[main.get_orchestrator] = lambda: orchestrator
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    # No context manager: startup would try to reach the platform database.
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_health_needs_no_key(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_missing_key_is_401(client):
    r = client.get(PREFIX)
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"


def test_wrong_key_is_403(client):
    r = client.get(PREFIX, headers={"X-Internal-Key": "nope"})
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"


def test_spawn_creates_then_converges(client, projects):
    projects.add(PROJECT_ID)
    body = {"projectId": PROJECT_ID, "authenticatorPassword": "auth-pw"}

    r = client.post(f"{PREFIX}/spawn", json=body, headers=HEADERS)
    assert r.status_code == 201
    data = r.json()
    assert data["projectId"] == PROJECT_ID
    assert data["containerName"] == f"postgrest-{PROJECT_ID}"
    assert data["status"] == "running"
    assert data["port"] == 3000
    assert len(data["configHash"]) == 16

    r = client.post(f"{PREFIX}/spawn", json=body, headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["status"] == "already_running"


def test_spawn_bad_project_id_is_400(client, containers):
    r = client.post(f"{PREFIX}/spawn", json={"projectId": "proj_nope"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["error"] == "bad_request"
    assert containers.created == []


def test_spawn_missing_project_id_is_400(client):
    r = client.post(f"{PREFIX}/spawn", json={}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["error"] == "bad_request"


def test_spawn_unknown_project_is_404(client):
    r = client.post(f"{PREFIX}/spawn", json={"projectId": PROJECT_ID}, headers=HEADERS)
    assert r.status_code == 404
    assert r.json() == {"error": "project_not_found", "message": f"Project {PROJECT_ID} not found"}


def test_spawn_health_timeout_is_504(client, projects, containers):
    projects.add(PROJECT_ID)
    containers.health_on_create = "starting"

    r = client.post(f"{PREFIX}/spawn", json={"projectId": PROJECT_ID}, headers=HEADERS)
    assert r.status_code == 504
    assert r.json()["error"] == "health_timeout"


def test_list_and_describe(client, projects):
    projects.add(PROJECT_ID)
    client.post(f"{PREFIX}/spawn", json={"projectId": PROJECT_ID}, headers=HEADERS)

    r = client.get(PREFIX, headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["containers"] == [
        {
            "projectId": PROJECT_ID,
            "containerName": f"postgrest-{PROJECT_ID}",
            "port": 3000,
            "status": "running",
            "health": "healthy",
        }
    ]

    r = client.get(f"{PREFIX}/{PROJECT_ID}", headers=HEADERS)
    assert r.status_code == 200
    data = r.json()
    assert data["state"] == "healthy"
    assert data["lastOperation"]["operation"] == "spawn"
    assert data["configHash"] is not None


def test_destroy(client, projects, registry):
    projects.add(PROJECT_ID)
    client.post(f"{PREFIX}/spawn", json={"projectId": PROJECT_ID}, headers=HEADERS)

    r = client.delete(f"{PREFIX}/{PROJECT_ID}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["status"] == "stopped"
    assert not registry.has_database(PROJECT_ID)

    r = client.delete(f"{PREFIX}/{PROJECT_ID}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["status"] == "cleaned_up"


def test_restart_without_container_is_404(client):
    r = client.post(f"{PREFIX}/{PROJECT_ID}/restart", headers=HEADERS)
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


def test_restart_running_gateway(client, projects, containers):
    projects.add(PROJECT_ID)
    client.post(f"{PREFIX}/spawn", json={"projectId": PROJECT_ID}, headers=HEADERS)

    r = client.post(f"{PREFIX}/{PROJECT_ID}/restart", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["status"] == "reloaded"
    assert containers.signals == [(f"postgrest-{PROJECT_ID}", "SIGHUP")]


def test_events_filtered_by_project(client, projects):
    projects.add(PROJECT_ID)
    client.post(f"{PREFIX}/spawn", json={"projectId": PROJECT_ID}, headers=HEADERS)

    r = client.get("/internal/events", params={"projectId": PROJECT_ID, "limit": 5}, headers=HEADERS)
    assert r.status_code == 200
    rows = r.json()
    assert 0 < len(rows) <= 5
    assert all(row["project_id"] == PROJECT_ID for row in rows)


def test_runtime_failure_has_error_body(client, containers, monkeypatch):
    def down(prefix):
        raise RuntimeFailure("Listing containers failed: socket proxy down")

    monkeypatch.setattr(containers, "list_gateways", down)

    r = client.get(PREFIX, headers=HEADERS)
    assert r.status_code == 500
    assert r.json() == {"error": "runtime_failed", "message": "Listing containers failed: socket proxy down"}
