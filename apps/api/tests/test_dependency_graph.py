import pytest

from dashboard_api.dependency_graph import DependencyGraphManager, build_blocking_graph, is_reachable, reachable_from
from dashboard_api.schemas import ProjectCreate, TaskCreate
from dashboard_api.store import (
    CyclicDependencyError,
    DuplicateDependencyError,
    InMemoryStore,
    NotFoundError,
    SelfDependencyError,
)
from dashboard_api.workspace import WorkspaceService


TENANT = "user-graph"


def _seed(store: InMemoryStore, count: int, *, tenant_id: str = TENANT) -> list[int]:
    workspace = WorkspaceService(store)
    project = workspace.create_project(tenant_id, ProjectCreate(name="graph project"))
    return [
        workspace.create_task(tenant_id, TaskCreate(project_id=project.id, title=f"task {index}")).id
        for index in range(count)
    ]


def _edges(store: InMemoryStore, tenant_id: str = TENANT) -> set[tuple[int, int]]:
    with store.transaction() as tx:
        return {(edge.blocking_task_id, edge.blocked_task_id) for edge in tx.dependencies_for_tenant(tenant_id)}


def test_closing_a_cycle_is_rejected_and_edges_are_unchanged() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b, c = _seed(store, 3)

    first = graph.create_dependency(TENANT, a, b)
    second = graph.create_dependency(TENANT, b, c)
    assert first.blocking_task_id == a and first.blocked_task_id == b
    assert second.id != first.id

    with pytest.raises(CyclicDependencyError):
        graph.create_dependency(TENANT, c, a)

    assert _edges(store) == {(a, b), (b, c)}


def test_direct_reverse_edge_is_a_cycle() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b = _seed(store, 2)

    graph.create_dependency(TENANT, a, b)
    with pytest.raises(CyclicDependencyError):
        graph.create_dependency(TENANT, b, a)


def test_self_dependency_is_rejected_before_any_lookup() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)

    # Task 999 does not exist; the self check still wins.
    with pytest.raises(SelfDependencyError):
        graph.create_dependency(TENANT, 999, 999)


def test_duplicate_edge_is_rejected() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b = _seed(store, 2)

    graph.create_dependency(TENANT, a, b)
    with pytest.raises(DuplicateDependencyError):
        graph.create_dependency(TENANT, a, b)
    assert _edges(store) == {(a, b)}


def test_missing_or_foreign_task_is_not_found() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    (mine,) = _seed(store, 1)
    (theirs,) = _seed(store, 1, tenant_id="user-other")

    with pytest.raises(NotFoundError):
        graph.create_dependency(TENANT, mine, 12345)
    with pytest.raises(NotFoundError):
        graph.create_dependency(TENANT, mine, theirs)
    assert _edges(store) == set()


def test_diamond_is_allowed() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b, c, d = _seed(store, 4)

    graph.create_dependency(TENANT, a, b)
    graph.create_dependency(TENANT, a, c)
    graph.create_dependency(TENANT, b, d)
    graph.create_dependency(TENANT, c, d)

    assert len(_edges(store)) == 4


def test_available_blockers_exclude_self_existing_blockers_and_downstream() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b, c, d, e = _seed(store, 5)

    # a -> b -> c, d -> b
    graph.create_dependency(TENANT, a, b)
    graph.create_dependency(TENANT, b, c)
    graph.create_dependency(TENANT, d, b)

    available = {task.id for task in graph.get_available_blockers(TENANT, b)}
    assert available == {e}

    available_for_a = {task.id for task in graph.get_available_blockers(TENANT, a)}
    assert available_for_a == {d, e}


def test_every_available_blocker_can_be_added() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b, c, d = _seed(store, 4)
    graph.create_dependency(TENANT, a, b)
    graph.create_dependency(TENANT, b, c)

    for task in graph.get_available_blockers(TENANT, b):
        graph.create_dependency(TENANT, task.id, b)

    assert (d, b) in _edges(store)
    assert (c, b) not in _edges(store)


def test_available_blockers_unknown_task_is_not_found() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)

    with pytest.raises(NotFoundError):
        graph.get_available_blockers(TENANT, 41)


def test_remove_dependency_by_id_and_by_pair() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b, c = _seed(store, 3)
    first = graph.create_dependency(TENANT, a, b)
    graph.create_dependency(TENANT, b, c)

    graph.remove_dependency(TENANT, first.id)
    graph.remove_dependency_between(TENANT, b, c)
    assert _edges(store) == set()

    with pytest.raises(NotFoundError):
        graph.remove_dependency(TENANT, first.id)
    with pytest.raises(NotFoundError):
        graph.remove_dependency_between(TENANT, b, c)

    # Removing the edge frees the reverse direction.
    graph.create_dependency(TENANT, b, a)


def test_remove_dependency_of_other_tenant_is_not_found() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b = _seed(store, 2)
    created = graph.create_dependency(TENANT, a, b)

    with pytest.raises(NotFoundError):
        graph.remove_dependency("user-intruder", created.id)
    assert _edges(store) == {(a, b)}


def test_blockers_blocked_and_batch_views() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b, c = _seed(store, 3)
    graph.create_dependency(TENANT, a, c)
    graph.create_dependency(TENANT, b, c)

    assert {item.task.id for item in graph.get_blockers(TENANT, c)} == {a, b}
    assert [item.task.id for item in graph.get_blocked(TENANT, a)] == [c]
    assert graph.get_blocked(TENANT, c) == []

    batch = graph.get_dependencies_batch(TENANT, [a, c, 777])
    assert batch[a].blocker_ids == [] and batch[a].blocking_ids == [c]
    assert sorted(batch[c].blocker_ids) == [a, b]
    assert batch[777].blocker_ids == [] and batch[777].blocking_ids == []
    assert graph.get_dependencies_batch(TENANT, []) == {}


def test_graph_helpers() -> None:
    store = InMemoryStore()
    graph = DependencyGraphManager(store)
    a, b, c = _seed(store, 3)
    graph.create_dependency(TENANT, a, b)
    graph.create_dependency(TENANT, b, c)

    with store.transaction() as tx:
        adjacency = build_blocking_graph(tx.dependencies_for_tenant(TENANT))

    assert adjacency == {a: [b], b: [c]}
    assert reachable_from(adjacency, a) == {b, c}
    assert reachable_from(adjacency, c) == set()
    assert is_reachable(adjacency, a, c)
    assert not is_reachable(adjacency, c, a)
