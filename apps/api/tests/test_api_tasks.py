from fastapi.testclient import TestClient

from dashboard_api import main
from dashboard_api.main import app


client = TestClient(app)


def _headers(tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id}


def test_health() -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_task_lifecycle_is_scoped_to_tenant() -> None:
    tenant = "api-tasks-owner"
    project = client.post("/projects", json={"name": "main"}, headers=_headers(tenant))
    assert project.status_code == 200

    created = client.post(
        "/tasks",
        json={"project_id": project.json()["id"], "title": "write report", "priority_level": "high"},
        headers=_headers(tenant),
    )
    assert created.status_code == 200
    task = created.json()
    assert task["status"] == "todo"
    assert task["priority_level"] == "high"

    listed = client.get("/tasks", params={"project_id": project.json()["id"]}, headers=_headers(tenant))
    assert [row["id"] for row in listed.json()] == [task["id"]]

    hidden = client.get(f"/tasks/{task['id']}", headers=_headers("api-tasks-stranger"))
    assert hidden.status_code == 404
    assert client.get("/tasks", headers=_headers("api-tasks-stranger")).json() == []

    patched = client.patch(f"/tasks/{task['id']}", json={"title": "write final report"}, headers=_headers(tenant))
    assert patched.status_code == 200
    assert patched.json()["title"] == "write final report"

    deleted = client.delete(f"/tasks/{task['id']}", headers=_headers(tenant))
    assert deleted.status_code == 204
    assert client.get(f"/tasks/{task['id']}", headers=_headers(tenant)).status_code == 404


def test_task_for_unknown_project_is_not_found() -> None:
    response = client.post("/tasks", json={"project_id": 987654, "title": "orphan"}, headers=_headers("api-tasks-x"))
    assert response.status_code == 404


def test_missing_or_invalid_tenant_is_unauthorized() -> None:
    assert client.get("/tasks").status_code == 401
    assert client.get("/todos", headers={"X-Tenant-Id": "bad tenant"}).status_code == 401


def test_bearer_token_is_required_when_configured(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("API_AUTH_TOKEN", "api-token")

    missing = client.get("/todos", headers=_headers("api-tasks-token"))
    assert missing.status_code == 401

    allowed = client.get(
        "/todos",
        headers={"X-Tenant-Id": "api-tasks-token", "Authorization": "Bearer api-token"},
    )
    assert allowed.status_code == 200


def test_batch_size_limit_is_enforced(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr(main, "max_batch_size", 2)

    response = client.post("/todo-links/meta", json={"task_ids": [1, 2, 3]}, headers=_headers("api-tasks-batch"))
    assert response.status_code == 422

    ok = client.post("/todo-links/meta", json={"task_ids": [1, 2]}, headers=_headers("api-tasks-batch"))
    assert ok.status_code == 200
    assert ok.json() == []


def test_cors_preflight_allows_localhost_origin() -> None:
    origin = "http://localhost:5173"
    response = client.options(
        "/health",
        headers={
            "Origin": origin,
            "Access-Control-Request-Method": "GET",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == origin


def test_integer_settings_fall_back_or_clamp(monkeypatch, caplog) -> None:  # noqa: ANN001
    monkeypatch.setenv("API_TEST_LIMIT", "not-a-number")
    with caplog.at_level("WARNING", logger="dashboard_api.main"):
        assert main._env_int("API_TEST_LIMIT", 500) == 500
    assert "API_TEST_LIMIT" in caplog.text

    monkeypatch.setenv("API_TEST_LIMIT", "0")
    assert main._env_int("API_TEST_LIMIT", 500) == 1
    monkeypatch.setenv("API_TEST_LIMIT", "-20")
    assert main._env_int("API_TEST_LIMIT", 500) == 1

    monkeypatch.setenv("API_TEST_LIMIT", " 25 ")
    assert main._env_int("API_TEST_LIMIT", 500) == 25
    monkeypatch.delenv("API_TEST_LIMIT")
    assert main._env_int("API_TEST_LIMIT", 500) == 500
