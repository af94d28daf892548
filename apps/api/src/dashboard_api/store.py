from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote

from dashboard_api.schemas import (
    ChecklistItemRead,
    ChecklistStatus,
    DependencyRead,
    PriorityLevel,
    ProjectRead,
    ProjectStatus,
    SubtaskRead,
    SubtaskStatus,
    TaskRead,
    TaskStatus,
    TodoLinkRead,
    TodoRead,
    TodoStatus,
)

logger = logging.getLogger(__name__)


class UnauthorizedError(Exception):
    pass


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


class SelfDependencyError(ValidationError):
    pass


class DuplicateDependencyError(ConflictError):
    pass


class CyclicDependencyError(ConflictError):
    pass


class TaskAlreadyLinkedError(ConflictError):
    code = "TASK_ALREADY_LINKED"


class CascadeConfirmationError(ConflictError):
    code = "CONFIRM_CASCADE"


@dataclass
class _ProjectRecord:
    id: int
    tenant_id: str
    name: str
    status: str = ProjectStatus.ACTIVE.value
    created_at: str = ""


@dataclass
class _TaskRecord:
    id: int
    tenant_id: str
    project_id: int
    title: str
    status: str = TaskStatus.TODO.value
    priority_level: str = PriorityLevel.LOW.value
    description: str | None = None
    due_date: str | None = None
    milestone_id: int | None = None
    assignees: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    order: int = 0
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None


@dataclass
class _DependencyRecord:
    id: int
    tenant_id: str
    blocking_task_id: int
    blocked_task_id: int
    dependency_type: str = "finish_to_start"
    created_at: str = ""


@dataclass
class _TodoRecord:
    id: int
    tenant_id: str
    title: str
    status: str = TodoStatus.TODO.value
    description: str | None = None
    planned_date: str | None = None
    pin_for_today: bool = False
    order: int = 0


@dataclass
class _ChecklistItemRecord:
    id: int
    tenant_id: str
    todo_id: int
    title: str
    status: str = ChecklistStatus.TODO.value
    order: int = 0


@dataclass
class _TodoTaskLinkRecord:
    id: int
    tenant_id: str
    todo_id: int
    task_id: int
    task_status: str = TaskStatus.TODO.value
    linked_at: str = ""
    updated_at: str = ""


@dataclass
class _SubtaskRecord:
    id: int
    tenant_id: str
    task_id: int
    title: str
    status: str = SubtaskStatus.TODO.value
    order: int = 0
    created_at: str = ""


_TABLES: dict[str, type] = {
    "projects": _ProjectRecord,
    "tasks": _TaskRecord,
    "dependencies": _DependencyRecord,
    "todos": _TodoRecord,
    "todo_checklist": _ChecklistItemRecord,
    "todo_task_links": _TodoTaskLinkRecord,
    "subtasks": _SubtaskRecord,
}


class InMemoryStore:
    """Tenant-partitioned document store.

    Rows live in one dict per table keyed by id. Secondary indexes map a key
    (tenant, task, todo) to the set of row ids carrying it and are derived
    from the tables, so they are rebuilt rather than persisted.

    Every write must happen inside ``transaction()``. A transaction holds the
    store lock for its whole body, so a read that checks an invariant and the
    write that depends on it cannot interleave with another caller. Each write
    pushes its inverse onto the transaction's undo log; if the body or the
    commit raises, the log is replayed backwards and nothing is persisted.
    Rollback and persistence both cost only the rows and tenants the
    transaction touched.

    With a state file, each tenant's rows live in their own shard under
    ``<state file>.d/``. A commit rewrites the shards of the tenants it wrote.
    """

    def __init__(self, state_file: str | None = None) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: list[Callable[[], None]] | None = None
        self._dirty_tenants: set[str] = set()
        self._projects: dict[int, _ProjectRecord] = {}
        self._tasks: dict[int, _TaskRecord] = {}
        self._dependencies: dict[int, _DependencyRecord] = {}
        self._todos: dict[int, _TodoRecord] = {}
        self._checklist: dict[int, _ChecklistItemRecord] = {}
        self._links: dict[int, _TodoTaskLinkRecord] = {}
        self._subtasks: dict[int, _SubtaskRecord] = {}
        self._sequences: dict[str, int] = {name: 1 for name in _TABLES}
        self._reset_indexes()
        self._load_state()

    @contextmanager
    def transaction(self) -> Iterator[InMemoryStore]:
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            self._undo = None
            self._dirty_tenants = set()
            try:
                yield self
                if self._undo:
                    self._persist_state(self._dirty_tenants)
            except Exception:
                self._rollback()
                raise
            finally:
                self._depth = 0
                self._undo = None
                self._dirty_tenants = set()

    # projects

    def insert_project(self, tenant_id: str, *, name: str) -> _ProjectRecord:
        self._begin_write()
        record = _ProjectRecord(
            id=self._next_id("projects"),
            tenant_id=tenant_id,
            name=name,
            created_at=self.utc_now(),
        )
        self._add_row("projects", record)
        return record

    def find_project(self, tenant_id: str, project_id: int) -> _ProjectRecord | None:
        return self._owned(self._projects, tenant_id, project_id)

    def get_project(self, tenant_id: str, project_id: int) -> _ProjectRecord:
        record = self.find_project(tenant_id, project_id)
        if record is None:
            raise NotFoundError(f"project {project_id} not found")
        return record

    def projects_for_tenant(self, tenant_id: str) -> list[_ProjectRecord]:
        return self._tenant_rows("projects", tenant_id)

    def patch_project(self, record: _ProjectRecord, **changes: Any) -> _ProjectRecord:
        self._begin_write()
        return self._patch(record, changes)

    # tasks

    def insert_task(self, tenant_id: str, *, project_id: int, title: str, **fields: Any) -> _TaskRecord:
        self._begin_write()
        task_id = self._next_id("tasks")
        now = self.utc_now()
        record = _TaskRecord(
            id=task_id,
            tenant_id=tenant_id,
            project_id=project_id,
            title=title,
            order=task_id,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._add_row("tasks", record)
        return record

    def find_task(self, tenant_id: str, task_id: int) -> _TaskRecord | None:
        return self._owned(self._tasks, tenant_id, task_id)

    def get_task(self, tenant_id: str, task_id: int) -> _TaskRecord:
        record = self.find_task(tenant_id, task_id)
        if record is None:
            raise NotFoundError(f"task {task_id} not found")
        return record

    def tasks_for_tenant(self, tenant_id: str, *, project_id: int | None = None) -> list[_TaskRecord]:
        records = self._tenant_rows("tasks", tenant_id)
        if project_id is not None:
            records = [record for record in records if record.project_id == project_id]
        return records

    def patch_task(self, record: _TaskRecord, **changes: Any) -> _TaskRecord:
        self._begin_write()
        changes.setdefault("updated_at", self.utc_now())
        return self._patch(record, changes)

    def delete_task(self, task_id: int) -> None:
        self._begin_write()
        self._remove_row("tasks", task_id)

    # dependencies

    def insert_dependency(self, tenant_id: str, *, blocking_task_id: int, blocked_task_id: int) -> _DependencyRecord:
        self._begin_write()
        record = _DependencyRecord(
            id=self._next_id("dependencies"),
            tenant_id=tenant_id,
            blocking_task_id=blocking_task_id,
            blocked_task_id=blocked_task_id,
            created_at=self.utc_now(),
        )
        self._add_row("dependencies", record)
        return record

    def find_dependency(self, tenant_id: str, dependency_id: int) -> _DependencyRecord | None:
        return self._owned(self._dependencies, tenant_id, dependency_id)

    def find_dependency_between(
        self, tenant_id: str, blocking_task_id: int, blocked_task_id: int
    ) -> _DependencyRecord | None:
        for record in self.dependencies_into(blocked_task_id):
            if record.blocking_task_id == blocking_task_id and record.tenant_id == tenant_id:
                return record
        return None

    def dependencies_for_tenant(self, tenant_id: str) -> list[_DependencyRecord]:
        return self._tenant_rows("dependencies", tenant_id)

    def dependencies_into(self, task_id: int) -> list[_DependencyRecord]:
        """Edges whose blocked side is ``task_id`` (its blockers)."""
        return self._rows(self._dependencies, self._dependencies_by_blocked.get(task_id, ()))

    def dependencies_out_of(self, task_id: int) -> list[_DependencyRecord]:
        """Edges whose blocking side is ``task_id`` (what it blocks)."""
        return self._rows(self._dependencies, self._dependencies_by_blocking.get(task_id, ()))

    def delete_dependency(self, dependency_id: int) -> None:
        self._begin_write()
        self._remove_row("dependencies", dependency_id)

    # todos

    def insert_todo(self, tenant_id: str, *, title: str, **fields: Any) -> _TodoRecord:
        self._begin_write()
        todo_id = self._next_id("todos")
        record = _TodoRecord(id=todo_id, tenant_id=tenant_id, title=title, order=todo_id, **fields)
        self._add_row("todos", record)
        return record

    def find_todo(self, tenant_id: str, todo_id: int) -> _TodoRecord | None:
        return self._owned(self._todos, tenant_id, todo_id)

    def get_todo(self, tenant_id: str, todo_id: int) -> _TodoRecord:
        record = self.find_todo(tenant_id, todo_id)
        if record is None:
            raise NotFoundError(f"todo {todo_id} not found")
        return record

    def todos_for_tenant(self, tenant_id: str) -> list[_TodoRecord]:
        return self._tenant_rows("todos", tenant_id)

    def patch_todo(self, record: _TodoRecord, **changes: Any) -> _TodoRecord:
        self._begin_write()
        return self._patch(record, changes)

    def delete_todo(self, todo_id: int) -> None:
        self._begin_write()
        self._remove_row("todos", todo_id)

    # todo checklist

    def insert_checklist_item(self, tenant_id: str, *, todo_id: int, title: str) -> _ChecklistItemRecord:
        self._begin_write()
        item_id = self._next_id("todo_checklist")
        record = _ChecklistItemRecord(id=item_id, tenant_id=tenant_id, todo_id=todo_id, title=title, order=item_id)
        self._add_row("todo_checklist", record)
        return record

    def find_checklist_item(self, tenant_id: str, item_id: int) -> _ChecklistItemRecord | None:
        return self._owned(self._checklist, tenant_id, item_id)

    def get_checklist_item(self, tenant_id: str, item_id: int) -> _ChecklistItemRecord:
        record = self.find_checklist_item(tenant_id, item_id)
        if record is None:
            raise NotFoundError(f"checklist item {item_id} not found")
        return record

    def checklist_for_todo(self, todo_id: int) -> list[_ChecklistItemRecord]:
        rows = self._rows(self._checklist, self._checklist_by_todo.get(todo_id, ()))
        return sorted(rows, key=lambda row: row.order)

    def patch_checklist_item(self, record: _ChecklistItemRecord, **changes: Any) -> _ChecklistItemRecord:
        self._begin_write()
        return self._patch(record, changes)

    def delete_checklist_item(self, item_id: int) -> None:
        self._begin_write()
        self._remove_row("todo_checklist", item_id)

    # todo-task links

    def insert_link(self, tenant_id: str, *, todo_id: int, task_id: int, task_status: str) -> _TodoTaskLinkRecord:
        self._begin_write()
        now = self.utc_now()
        record = _TodoTaskLinkRecord(
            id=self._next_id("todo_task_links"),
            tenant_id=tenant_id,
            todo_id=todo_id,
            task_id=task_id,
            task_status=task_status,
            linked_at=now,
            updated_at=now,
        )
        self._add_row("todo_task_links", record)
        return record

    def link_for_task(self, tenant_id: str, task_id: int) -> _TodoTaskLinkRecord | None:
        records = [
            record
            for record in self._rows(self._links, self._links_by_task.get(task_id, ()))
            if record.tenant_id == tenant_id
        ]
        if len(records) > 1:
            raise ConflictError(f"task {task_id} has {len(records)} todo links")
        return records[0] if records else None

    def links_for_todo(self, todo_id: int) -> list[_TodoTaskLinkRecord]:
        return self._rows(self._links, self._links_by_todo.get(todo_id, ()))

    def links_for_tenant(self, tenant_id: str) -> list[_TodoTaskLinkRecord]:
        return self._tenant_rows("todo_task_links", tenant_id)

    def patch_link(self, record: _TodoTaskLinkRecord, **changes: Any) -> _TodoTaskLinkRecord:
        self._begin_write()
        changes.setdefault("updated_at", self.utc_now())
        return self._patch(record, changes)

    def delete_link(self, link_id: int) -> None:
        self._begin_write()
        self._remove_row("todo_task_links", link_id)

    # subtasks

    def insert_subtask(self, tenant_id: str, *, task_id: int, title: str) -> _SubtaskRecord:
        self._begin_write()
        subtask_id = self._next_id("subtasks")
        record = _SubtaskRecord(
            id=subtask_id,
            tenant_id=tenant_id,
            task_id=task_id,
            title=title,
            order=subtask_id,
            created_at=self.utc_now(),
        )
        self._add_row("subtasks", record)
        return record

    def find_subtask(self, tenant_id: str, subtask_id: int) -> _SubtaskRecord | None:
        return self._owned(self._subtasks, tenant_id, subtask_id)

    def get_subtask(self, tenant_id: str, subtask_id: int) -> _SubtaskRecord:
        record = self.find_subtask(tenant_id, subtask_id)
        if record is None:
            raise NotFoundError(f"subtask {subtask_id} not found")
        return record

    def subtasks_for_tasks(self, task_ids: Iterable[int]) -> dict[int, list[_SubtaskRecord]]:
        """Range lookup over the parent index for many parents at once."""
        grouped: dict[int, list[_SubtaskRecord]] = {}
        for task_id in set(task_ids):
            rows = self._rows(self._subtasks, self._subtasks_by_task.get(task_id, ()))
            grouped[task_id] = sorted(rows, key=lambda row: row.order)
        return grouped

    def patch_subtask(self, record: _SubtaskRecord, **changes: Any) -> _SubtaskRecord:
        self._begin_write()
        return self._patch(record, changes)

    def delete_subtask(self, subtask_id: int) -> None:
        self._begin_write()
        self._remove_row("subtasks", subtask_id)

    # conversion

    @staticmethod
    def to_project_read(record: _ProjectRecord) -> ProjectRead:
        return ProjectRead(
            id=record.id,
            name=record.name,
            status=record.status,
            created_at=record.created_at,
        )

    @staticmethod
    def to_task_read(record: _TaskRecord) -> TaskRead:
        return TaskRead(
            id=record.id,
            project_id=record.project_id,
            title=record.title,
            status=record.status,
            priority_level=record.priority_level,
            description=record.description,
            due_date=record.due_date,
            milestone_id=record.milestone_id,
            assignees=list(record.assignees),
            tags=list(record.tags),
            order=record.order,
            created_at=record.created_at,
            updated_at=record.updated_at,
            completed_at=record.completed_at,
        )

    @staticmethod
    def to_dependency_read(record: _DependencyRecord) -> DependencyRead:
        return DependencyRead(
            id=record.id,
            blocking_task_id=record.blocking_task_id,
            blocked_task_id=record.blocked_task_id,
            dependency_type=record.dependency_type,
            created_at=record.created_at,
        )

    @staticmethod
    def to_todo_read(record: _TodoRecord) -> TodoRead:
        return TodoRead(
            id=record.id,
            title=record.title,
            status=record.status,
            description=record.description,
            planned_date=record.planned_date,
            pin_for_today=record.pin_for_today,
            order=record.order,
        )

    @staticmethod
    def to_checklist_item_read(record: _ChecklistItemRecord) -> ChecklistItemRead:
        return ChecklistItemRead(
            id=record.id,
            todo_id=record.todo_id,
            title=record.title,
            status=record.status,
            order=record.order,
        )

    @staticmethod
    def to_link_read(record: _TodoTaskLinkRecord) -> TodoLinkRead:
        return TodoLinkRead(
            id=record.id,
            todo_id=record.todo_id,
            task_id=record.task_id,
            task_status=record.task_status,
            linked_at=record.linked_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def to_subtask_read(record: _SubtaskRecord) -> SubtaskRead:
        return SubtaskRead(
            id=record.id,
            task_id=record.task_id,
            title=record.title,
            status=record.status,
            order=record.order,
            created_at=record.created_at,
        )

    @staticmethod
    def utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # internals

    def _begin_write(self) -> None:
        if self._depth == 0:
            raise RuntimeError("store writes must run inside transaction()")
        if self._undo is None:
            self._undo = []

    def _rollback(self) -> None:
        if not self._undo:
            return
        for undo in reversed(self._undo):
            undo()
        logger.debug("transaction rolled back writes=%s", len(self._undo))

    def _table(self, table: str) -> dict[int, Any]:
        return {
            "projects": self._projects,
            "tasks": self._tasks,
            "dependencies": self._dependencies,
            "todos": self._todos,
            "todo_checklist": self._checklist,
            "todo_task_links": self._links,
            "subtasks": self._subtasks,
        }[table]

    def _next_id(self, table: str) -> int:
        value = self._sequences[table]
        self._sequences[table] = value + 1
        self._undo.append(lambda: self._sequences.__setitem__(table, value))
        return value

    def _add_row(self, table: str, record: Any) -> None:
        self._put_row(table, record)
        self._dirty_tenants.add(record.tenant_id)
        self._undo.append(lambda: self._drop_row(table, record.id))

    def _remove_row(self, table: str, row_id: int) -> Any:
        record = self._drop_row(table, row_id)
        self._dirty_tenants.add(record.tenant_id)
        self._undo.append(lambda: self._put_row(table, record))
        return record

    def _put_row(self, table: str, record: Any) -> None:
        self._table(table)[record.id] = record
        self._index_row(table, record, add=True)

    def _drop_row(self, table: str, row_id: int) -> Any:
        record = self._table(table).pop(row_id)
        self._index_row(table, record, add=False)
        return record

    def _patch(self, record: Any, changes: dict[str, Any]) -> Any:
        previous: dict[str, Any] = {}
        for name in changes:
            if not hasattr(record, name):
                raise AttributeError(f"{type(record).__name__} has no field '{name}'")
            previous[name] = getattr(record, name)
        self._assign(record, changes)
        self._dirty_tenants.add(record.tenant_id)
        self._undo.append(lambda: self._assign(record, previous))
        return record

    @staticmethod
    def _assign(record: Any, values: dict[str, Any]) -> None:
        for name, value in values.items():
            setattr(record, name, value)

    @staticmethod
    def _owned(table: dict[int, Any], tenant_id: str, row_id: int) -> Any:
        record = table.get(row_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record

    @staticmethod
    def _rows(table: dict[int, Any], ids: Iterable[int]) -> list[Any]:
        return [table[row_id] for row_id in sorted(ids) if row_id in table]

    def _tenant_rows(self, table: str, tenant_id: str) -> list[Any]:
        return self._rows(self._table(table), self._by_tenant.get((table, tenant_id), ()))

    @staticmethod
    def _index_add(index: dict[Any, set[int]], key: Any, row_id: int) -> None:
        index.setdefault(key, set()).add(row_id)

    @staticmethod
    def _index_discard(index: dict[Any, set[int]], key: Any, row_id: int) -> None:
        bucket = index.get(key)
        if bucket is None:
            return
        bucket.discard(row_id)
        if not bucket:
            del index[key]

    def _index_row(self, table: str, record: Any, *, add: bool) -> None:
        update = self._index_add if add else self._index_discard
        update(self._by_tenant, (table, record.tenant_id), record.id)
        if table == "dependencies":
            update(self._dependencies_by_blocking, record.blocking_task_id, record.id)
            update(self._dependencies_by_blocked, record.blocked_task_id, record.id)
        elif table == "todo_task_links":
            update(self._links_by_task, record.task_id, record.id)
            update(self._links_by_todo, record.todo_id, record.id)
        elif table == "subtasks":
            update(self._subtasks_by_task, record.task_id, record.id)
        elif table == "todo_checklist":
            update(self._checklist_by_todo, record.todo_id, record.id)

    def _reset_indexes(self) -> None:
        self._by_tenant: dict[tuple[str, str], set[int]] = {}
        self._dependencies_by_blocking: dict[int, set[int]] = {}
        self._dependencies_by_blocked: dict[int, set[int]] = {}
        self._links_by_task: dict[int, set[int]] = {}
        self._links_by_todo: dict[int, set[int]] = {}
        self._subtasks_by_task: dict[int, set[int]] = {}
        self._checklist_by_todo: dict[int, set[int]] = {}

    def _rebuild_indexes(self) -> None:
        self._reset_indexes()
        for table in _TABLES:
            for record in self._table(table).values():
                self._index_row(table, record, add=True)

    def _shard_dir(self, state_file: Path) -> Path:
        return state_file.with_name(f"{state_file.name}.d")

    def _persist_state(self, tenant_ids: Iterable[str]) -> None:
        if self._state_file is None:
            return

        shard_dir = self._shard_dir(self._state_file)
        shard_dir.mkdir(parents=True, exist_ok=True)
        for tenant_id in sorted(tenant_ids):
            shard = shard_dir / f"{quote(tenant_id, safe='')}.json"
            self._write_json(shard, self._snapshot(tenant_id))
            logger.debug("state persisted tenant=%s file=%s", tenant_id, shard)
        self._write_json(self._state_file, {"sequences": dict(self._sequences)})

    @staticmethod
    def _write_json(path: Path, payload: dict[str, Any]) -> None:
        tmp_file = path.with_name(f"{path.name}.tmp")
        tmp_file.write_text(json.dumps(payload, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        tmp_file.replace(path)

    def _load_state(self) -> None:
        if self._state_file is None:
            return
        shard_dir = self._shard_dir(self._state_file)
        if not shard_dir.is_dir():
            return

        shards = sorted(shard_dir.glob("*.json"))
        for shard in shards:
            data = json.loads(shard.read_text(encoding="utf-8"))
            for table, record_type in _TABLES.items():
                rows = self._table(table)
                for value in data.get(table, []):
                    record = record_type(**value)
                    rows[record.id] = record

        sequences: dict[str, Any] = {}
        if self._state_file.exists():
            sequences = json.loads(self._state_file.read_text(encoding="utf-8")).get("sequences", {})
        # A shard can be newer than the manifest if a commit stopped between the two writes.
        for table in _TABLES:
            highest = max(self._table(table), default=0)
            self._sequences[table] = max(int(sequences.get(table, 1)), highest + 1)

        self._rebuild_indexes()
        logger.info(
            "state loaded dir=%s tenants=%s tasks=%s dependencies=%s links=%s subtasks=%s",
            shard_dir,
            len(shards),
            len(self._tasks),
            len(self._dependencies),
            len(self._links),
            len(self._subtasks),
        )

    def _snapshot(self, tenant_id: str) -> dict[str, Any]:
        snapshot: dict[str, Any] = {
            table: [dict(record.__dict__) for record in self._tenant_rows(table, tenant_id)]
            for table in _TABLES
        }
        snapshot["tenant_id"] = tenant_id
        return snapshot
