from pathlib import Path

import pytest

from dashboard_api.dependency_graph import DependencyGraphManager
from dashboard_api.linking import LinkingCoordinator
from dashboard_api.schemas import ProjectCreate, SubtaskStatus, TaskCreate, TaskStatus, TodoCreate, TodoStatus
from dashboard_api.store import CyclicDependencyError, InMemoryStore, TaskAlreadyLinkedError
from dashboard_api.subtasks import SubtaskAggregator
from dashboard_api.workspace import WorkspaceService


TENANT = "user-persist"


def test_store_restores_snapshot_from_state_file(tmp_path: Path) -> None:
    state_file = tmp_path / "api-state.json"
    first = InMemoryStore(state_file=str(state_file))
    workspace = WorkspaceService(first)

    project = workspace.create_project(TENANT, ProjectCreate(name="persisted"))
    a = workspace.create_task(TENANT, TaskCreate(project_id=project.id, title="a", tags=["keep"]))
    b = workspace.create_task(TENANT, TaskCreate(project_id=project.id, title="b"))
    todo = workspace.create_todo(TENANT, TodoCreate(title="persisted todo"))
    DependencyGraphManager(first).create_dependency(TENANT, a.id, b.id)
    LinkingCoordinator(first).link_task_to_todo(TENANT, todo.id, a.id)
    subtask = SubtaskAggregator(first).create(TENANT, b.id, "persisted subtask")
    SubtaskAggregator(first).toggle(TENANT, subtask.id)

    assert state_file.exists()

    second = InMemoryStore(state_file=str(state_file))
    restored = WorkspaceService(second)

    assert restored.get_task(TENANT, a.id).tags == ["keep"]
    assert restored.get_todo(TENANT, todo.id).title == "persisted todo"
    assert SubtaskAggregator(second).get_subtask_progress(TENANT, b.id).completed == 1

    # Indexes are rebuilt, so the invariants still hold after a restart.
    with pytest.raises(CyclicDependencyError):
        DependencyGraphManager(second).create_dependency(TENANT, b.id, a.id)
    with pytest.raises(TaskAlreadyLinkedError):
        LinkingCoordinator(second).link_task_to_todo(TENANT, todo.id, a.id)

    # Sequences continue from the snapshot.
    c = restored.create_task(TENANT, TaskCreate(project_id=project.id, title="c"))
    assert c.id == b.id + 1


def test_failed_transaction_rolls_back_and_is_not_persisted(tmp_path: Path) -> None:
    state_file = tmp_path / "api-state.json"
    store = InMemoryStore(state_file=str(state_file))
    workspace = WorkspaceService(store)
    project = workspace.create_project(TENANT, ProjectCreate(name="rollback"))
    before = state_file.read_text(encoding="utf-8")

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.insert_task(TENANT, project_id=project.id, title="ghost")
            tx.insert_todo(TENANT, title="ghost todo")
            raise RuntimeError("boom")

    assert workspace.list_tasks(TENANT) == []
    assert workspace.list_todos(TENANT) == []
    assert state_file.read_text(encoding="utf-8") == before

    task = workspace.create_task(TENANT, TaskCreate(project_id=project.id, title="real"))
    assert task.id == 1


def test_write_outside_transaction_is_refused() -> None:
    store = InMemoryStore()

    with pytest.raises(RuntimeError):
        store.insert_todo(TENANT, title="loose")


def test_read_only_transaction_does_not_write_state(tmp_path: Path) -> None:
    state_file = tmp_path / "api-state.json"
    store = InMemoryStore(state_file=str(state_file))

    with store.transaction() as tx:
        assert tx.todos_for_tenant(TENANT) == []

    assert not state_file.exists()


def test_subtask_status_survives_restart(tmp_path: Path) -> None:
    state_file = tmp_path / "api-state.json"
    first = InMemoryStore(state_file=str(state_file))
    workspace = WorkspaceService(first)
    project = workspace.create_project(TENANT, ProjectCreate(name="subtasks"))
    task = workspace.create_task(TENANT, TaskCreate(project_id=project.id, title="parent"))
    rows = SubtaskAggregator(first).create_bulk(TENANT, task.id, ["a", "b"])
    SubtaskAggregator(first).update(TENANT, rows[0].id, status=SubtaskStatus.DONE)

    listed = SubtaskAggregator(InMemoryStore(state_file=str(state_file))).list_by_task(TENANT, task.id)

    assert [row.status for row in listed] == [SubtaskStatus.DONE, SubtaskStatus.TODO]


def test_commit_for_one_tenant_leaves_other_tenants_untouched(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    state_file = tmp_path / "api-state.json"
    store = InMemoryStore(state_file=str(state_file))
    workspace = WorkspaceService(store)
    project = workspace.create_project("tenant-a", ProjectCreate(name="a"))
    workspace.create_task("tenant-a", TaskCreate(project_id=project.id, title="a task"))

    with store.transaction() as tx:
        rows_before = list(tx.tasks_for_tenant("tenant-a"))
    shard_a = next(state_file.with_name("api-state.json.d").glob("tenant-a.json"))
    shard_a_stat = shard_a.stat()
    shard_a_text = shard_a.read_text(encoding="utf-8")

    snapshotted: list[str] = []
    original_snapshot = InMemoryStore._snapshot

    def counting_snapshot(self: InMemoryStore, tenant_id: str) -> dict:
        snapshotted.append(tenant_id)
        return original_snapshot(self, tenant_id)

    monkeypatch.setattr(InMemoryStore, "_snapshot", counting_snapshot)

    other = workspace.create_project("tenant-b", ProjectCreate(name="b"))
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.insert_task("tenant-b", project_id=other.id, title="ghost")
            raise RuntimeError("boom")

    assert snapshotted == ["tenant-b"]
    with store.transaction() as tx:
        rows_after = tx.tasks_for_tenant("tenant-a")
    assert len(rows_after) == len(rows_before)
    assert all(after is before for after, before in zip(rows_after, rows_before))
    assert shard_a.read_text(encoding="utf-8") == shard_a_text
    assert shard_a.stat().st_mtime_ns == shard_a_stat.st_mtime_ns


def test_unwritable_state_file_rolls_back_the_write(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied", encoding="utf-8")
    store = InMemoryStore(state_file=str(blocker / "api-state.json"))
    workspace = WorkspaceService(store)

    with pytest.raises(OSError):
        workspace.create_project(TENANT, ProjectCreate(name="lost"))

    assert workspace.list_projects(TENANT) == []
    with store.transaction() as tx:
        assert tx.projects_for_tenant(TENANT) == []


def test_failed_persist_restores_patched_and_deleted_rows(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    state_file = tmp_path / "api-state.json"
    store = InMemoryStore(state_file=str(state_file))
    workspace = WorkspaceService(store)
    project = workspace.create_project(TENANT, ProjectCreate(name="persist"))
    first = workspace.create_task(TENANT, TaskCreate(project_id=project.id, title="first"))
    second = workspace.create_task(TENANT, TaskCreate(project_id=project.id, title="second"))
    todo = workspace.create_todo(TENANT, TodoCreate(title="parent"))
    LinkingCoordinator(store).link_task_to_todo(TENANT, todo.id, first.id)

    def failing_persist(self: InMemoryStore, tenant_ids: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(InMemoryStore, "_persist_state", failing_persist)

    with pytest.raises(OSError):
        workspace.update_task_status(TENANT, first.id, TaskStatus.DONE)
    with pytest.raises(OSError):
        workspace.delete_task(TENANT, second.id)

    assert workspace.get_task(TENANT, first.id).status == TaskStatus.TODO
    assert workspace.get_task(TENANT, first.id).completed_at is None
    assert workspace.get_todo(TENANT, todo.id).status == TodoStatus.TODO
    assert [task.id for task in workspace.list_tasks(TENANT)] == [first.id, second.id]

    monkeypatch.undo()
    third = workspace.create_task(TENANT, TaskCreate(project_id=project.id, title="third"))
    assert third.id == second.id + 1
    reloaded = WorkspaceService(InMemoryStore(state_file=str(state_file)))
    assert [task.title for task in reloaded.list_tasks(TENANT)] == ["first", "second", "third"]
