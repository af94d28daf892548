from fastapi.testclient import TestClient

from dashboard_api.main import app


client = TestClient(app)


def _headers(tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id}


def _create_task(tenant_id: str, title: str) -> int:
    project = client.post("/projects", json={"name": f"{title}-project"}, headers=_headers(tenant_id))
    task = client.post(
        "/tasks",
        json={"project_id": project.json()["id"], "title": title},
        headers=_headers(tenant_id),
    )
    assert task.status_code == 200
    return task.json()["id"]


def test_progress_batch_over_http() -> None:
    tenant = "api-subtasks-progress"
    t1 = _create_task(tenant, "with subtasks")
    t2 = _create_task(tenant, "without subtasks")

    created = client.post(
        f"/tasks/{t1}/subtasks/bulk",
        json={"titles": ["one", "two", "three", "four"]},
        headers=_headers(tenant),
    )
    assert created.status_code == 200
    ids = [row["id"] for row in created.json()]
    for subtask_id in ids[:2]:
        toggled = client.post(f"/subtasks/{subtask_id}/toggle", headers=_headers(tenant))
        assert toggled.status_code == 200
        assert toggled.json()["status"] == "done"

    batch = client.post("/subtasks/progress-batch", json={"task_ids": [t1, t2]}, headers=_headers(tenant))
    assert batch.status_code == 200
    assert batch.json() == [
        {"completed": 2, "total": 4, "percentage": 0.5},
        {"completed": 0, "total": 0, "percentage": 0.0},
    ]

    single = client.get(f"/tasks/{t1}/subtask-progress", headers=_headers(tenant))
    assert single.json() == {"completed": 2, "total": 4, "percentage": 0.5}

    empty = client.post("/subtasks/progress-batch", json={"task_ids": []}, headers=_headers(tenant))
    assert empty.json() == []


def test_subtask_crud_and_parent_completion() -> None:
    tenant = "api-subtasks-crud"
    task_id = _create_task(tenant, "parent")

    created = client.post(f"/tasks/{task_id}/subtasks", json={"title": "  only step "}, headers=_headers(tenant))
    assert created.status_code == 200
    subtask = created.json()
    assert subtask["title"] == "only step"

    blank = client.post(f"/tasks/{task_id}/subtasks", json={"title": "   "}, headers=_headers(tenant))
    assert blank.status_code == 422

    updated = client.patch(f"/subtasks/{subtask['id']}", json={"status": "done"}, headers=_headers(tenant))
    assert updated.status_code == 200

    parent = client.get(f"/tasks/{task_id}", headers=_headers(tenant))
    assert parent.json()["status"] == "done"

    listed = client.get(f"/tasks/{task_id}/subtasks", headers=_headers(tenant))
    assert [row["id"] for row in listed.json()] == [subtask["id"]]

    deleted = client.delete(f"/subtasks/{subtask['id']}", headers=_headers(tenant))
    assert deleted.status_code == 204
    assert client.get(f"/tasks/{task_id}/subtasks", headers=_headers(tenant)).json() == []


def test_subtask_of_foreign_task_is_hidden() -> None:
    task_id = _create_task("api-subtasks-owner", "private")
    client.post(f"/tasks/{task_id}/subtasks", json={"title": "secret"}, headers=_headers("api-subtasks-owner"))

    response = client.post(
        f"/tasks/{task_id}/subtasks",
        json={"title": "intrusion"},
        headers=_headers("api-subtasks-stranger"),
    )
    assert response.status_code == 404

    progress = client.post(
        "/subtasks/progress-batch",
        json={"task_ids": [task_id]},
        headers=_headers("api-subtasks-stranger"),
    )
    assert progress.json() == [{"completed": 0, "total": 0, "percentage": 0.0}]
