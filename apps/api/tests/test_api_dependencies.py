from fastapi.testclient import TestClient

from dashboard_api.main import app


client = TestClient(app)


def _headers(tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id}


def _create_tasks(tenant_id: str, *titles: str) -> list[int]:
    project = client.post("/projects", json={"name": f"{tenant_id}-project"}, headers=_headers(tenant_id))
    assert project.status_code == 200
    task_ids: list[int] = []
    for title in titles:
        response = client.post(
            "/tasks",
            json={"project_id": project.json()["id"], "title": title},
            headers=_headers(tenant_id),
        )
        assert response.status_code == 200
        task_ids.append(response.json()["id"])
    return task_ids


def test_cycle_is_rejected_with_conflict() -> None:
    tenant = "api-deps-cycle"
    a, b, c = _create_tasks(tenant, "a", "b", "c")

    assert client.post("/dependencies", json={"blocking_task_id": a, "blocked_task_id": b}, headers=_headers(tenant)).status_code == 200
    assert client.post("/dependencies", json={"blocking_task_id": b, "blocked_task_id": c}, headers=_headers(tenant)).status_code == 200

    cyclic = client.post(
        "/dependencies",
        json={"blocking_task_id": c, "blocked_task_id": a},
        headers=_headers(tenant),
    )
    assert cyclic.status_code == 409
    assert "circular" in cyclic.json()["detail"]

    blockers = client.get(f"/tasks/{a}/blockers", headers=_headers(tenant))
    assert blockers.status_code == 200
    assert blockers.json() == []


def test_self_and_duplicate_dependencies() -> None:
    tenant = "api-deps-invalid"
    a, b = _create_tasks(tenant, "a", "b")

    self_edge = client.post(
        "/dependencies",
        json={"blocking_task_id": a, "blocked_task_id": a},
        headers=_headers(tenant),
    )
    assert self_edge.status_code == 422

    first = client.post("/dependencies", json={"blocking_task_id": a, "blocked_task_id": b}, headers=_headers(tenant))
    assert first.status_code == 200
    duplicate = client.post(
        "/dependencies",
        json={"blocking_task_id": a, "blocked_task_id": b},
        headers=_headers(tenant),
    )
    assert duplicate.status_code == 409


def test_dependency_across_tenants_is_not_found() -> None:
    (mine,) = _create_tasks("api-deps-owner", "mine")
    (theirs,) = _create_tasks("api-deps-other", "theirs")

    response = client.post(
        "/dependencies",
        json={"blocking_task_id": mine, "blocked_task_id": theirs},
        headers=_headers("api-deps-owner"),
    )
    assert response.status_code == 404

    blockers = client.get(f"/tasks/{theirs}/available-blockers", headers=_headers("api-deps-owner"))
    assert blockers.status_code == 404


def test_available_blockers_and_removal() -> None:
    tenant = "api-deps-available"
    a, b, c, d = _create_tasks(tenant, "a", "b", "c", "d")
    created = client.post("/dependencies", json={"blocking_task_id": a, "blocked_task_id": b}, headers=_headers(tenant))
    client.post("/dependencies", json={"blocking_task_id": b, "blocked_task_id": c}, headers=_headers(tenant))

    available = client.get(f"/tasks/{b}/available-blockers", headers=_headers(tenant))
    assert available.status_code == 200
    assert {task["id"] for task in available.json()} == {d}

    removed = client.delete(f"/dependencies/{created.json()['id']}", headers=_headers(tenant))
    assert removed.status_code == 204
    missing = client.delete(f"/dependencies/{created.json()['id']}", headers=_headers(tenant))
    assert missing.status_code == 404

    by_pair = client.post(
        "/dependencies/remove",
        json={"blocking_task_id": b, "blocked_task_id": c},
        headers=_headers(tenant),
    )
    assert by_pair.status_code == 204

    available_after = client.get(f"/tasks/{b}/available-blockers", headers=_headers(tenant))
    assert {task["id"] for task in available_after.json()} == {a, c, d}


def test_dependencies_batch_and_blocking_views() -> None:
    tenant = "api-deps-batch"
    a, b, c = _create_tasks(tenant, "a", "b", "c")
    client.post("/dependencies", json={"blocking_task_id": a, "blocked_task_id": c}, headers=_headers(tenant))
    client.post("/dependencies", json={"blocking_task_id": b, "blocked_task_id": c}, headers=_headers(tenant))

    blocking = client.get(f"/tasks/{a}/blocking", headers=_headers(tenant))
    assert [item["task"]["id"] for item in blocking.json()] == [c]

    batch = client.post("/dependencies/batch", json={"task_ids": [a, c]}, headers=_headers(tenant))
    assert batch.status_code == 200
    body = batch.json()
    assert body[str(a)] == {"blocker_ids": [], "blocking_ids": [c]}
    assert sorted(body[str(c)]["blocker_ids"]) == [a, b]


def test_dependency_routes_require_tenant() -> None:
    response = client.post("/dependencies", json={"blocking_task_id": 1, "blocked_task_id": 2})
    assert response.status_code == 401
