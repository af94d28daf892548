from __future__ import annotations

import logging

from dashboard_api.linking import sync_task_link, sync_todo_status
from dashboard_api.schemas import (
    ProjectCreate,
    ProjectRead,
    ProjectStatus,
    TaskCreate,
    TaskRead,
    TaskStatus,
    TaskUpdate,
    TodoCreate,
    TodoRead,
    TodoUpdate,
)
from dashboard_api.store import InMemoryStore, ValidationError, _TaskRecord

logger = logging.getLogger(__name__)


class WorkspaceService:
    """Projects, tasks and todos: plain CRUD plus the task delete cascade."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def create_project(self, tenant_id: str, project: ProjectCreate) -> ProjectRead:
        with self._store.transaction() as tx:
            record = tx.insert_project(tenant_id, name=project.name)
            return tx.to_project_read(record)

    def list_projects(self, tenant_id: str, *, status: ProjectStatus = ProjectStatus.ACTIVE) -> list[ProjectRead]:
        with self._store.transaction() as tx:
            return [
                tx.to_project_read(record)
                for record in tx.projects_for_tenant(tenant_id)
                if record.status == status.value
            ]

    def set_project_status(self, tenant_id: str, project_id: int, status: ProjectStatus) -> ProjectRead:
        with self._store.transaction() as tx:
            record = tx.get_project(tenant_id, project_id)
            tx.patch_project(record, status=status.value)
            return tx.to_project_read(record)

    def create_task(self, tenant_id: str, task: TaskCreate) -> TaskRead:
        title = task.title.strip()
        if not title:
            raise ValidationError("title cannot be empty")

        with self._store.transaction() as tx:
            tx.get_project(tenant_id, task.project_id)
            record = tx.insert_task(
                tenant_id,
                project_id=task.project_id,
                title=title,
                priority_level=task.priority_level.value,
                description=task.description,
                due_date=task.due_date,
                milestone_id=task.milestone_id,
                assignees=list(task.assignees),
                tags=list(task.tags),
            )
            logger.info("task created id=%s project=%s tenant=%s", record.id, task.project_id, tenant_id)
            return tx.to_task_read(record)

    def list_tasks(self, tenant_id: str, *, project_id: int | None = None) -> list[TaskRead]:
        with self._store.transaction() as tx:
            if project_id is not None:
                tx.get_project(tenant_id, project_id)
            records = tx.tasks_for_tenant(tenant_id, project_id=project_id)
            return [tx.to_task_read(record) for record in sorted(records, key=lambda row: row.order)]

    def get_task(self, tenant_id: str, task_id: int) -> TaskRead:
        with self._store.transaction() as tx:
            return tx.to_task_read(tx.get_task(tenant_id, task_id))

    def update_task(self, tenant_id: str, task_id: int, update: TaskUpdate) -> TaskRead:
        changes = update.model_dump(exclude_unset=True)
        for name in ("title", "status", "priority_level", "assignees", "tags"):
            if name in changes and changes[name] is None:
                del changes[name]
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise ValidationError("title cannot be empty")
        if "priority_level" in changes:
            changes["priority_level"] = update.priority_level.value
        status = changes.pop("status", None)

        with self._store.transaction() as tx:
            record = tx.get_task(tenant_id, task_id)
            if changes:
                tx.patch_task(record, **changes)
            if status is not None:
                self._apply_status(tx, record, TaskStatus(status))
            return tx.to_task_read(record)

    def update_task_status(self, tenant_id: str, task_id: int, status: TaskStatus) -> TaskRead:
        with self._store.transaction() as tx:
            record = tx.get_task(tenant_id, task_id)
            self._apply_status(tx, record, status)
            return tx.to_task_read(record)

    def delete_task(self, tenant_id: str, task_id: int) -> None:
        with self._store.transaction() as tx:
            record = tx.get_task(tenant_id, task_id)

            edge_ids = {edge.id for edge in tx.dependencies_into(task_id)}
            edge_ids.update(edge.id for edge in tx.dependencies_out_of(task_id))
            for edge_id in sorted(edge_ids):
                tx.delete_dependency(edge_id)

            link = tx.link_for_task(tenant_id, task_id)
            if link is not None:
                tx.delete_link(link.id)

            subtasks = tx.subtasks_for_tasks([task_id])[task_id]
            for subtask in subtasks:
                tx.delete_subtask(subtask.id)

            tx.delete_task(record.id)
            if link is not None:
                sync_todo_status(tx, tenant_id, link.todo_id)
            logger.info(
                "task deleted id=%s tenant=%s dependencies=%s subtasks=%s linked=%s",
                task_id,
                tenant_id,
                len(edge_ids),
                len(subtasks),
                link is not None,
            )

    def create_todo(self, tenant_id: str, todo: TodoCreate) -> TodoRead:
        title = todo.title.strip()
        if not title:
            raise ValidationError("title cannot be empty")
        with self._store.transaction() as tx:
            record = tx.insert_todo(
                tenant_id,
                title=title,
                description=todo.description,
                planned_date=todo.planned_date,
                pin_for_today=todo.pin_for_today,
            )
            return tx.to_todo_read(record)

    def list_todos(self, tenant_id: str) -> list[TodoRead]:
        with self._store.transaction() as tx:
            records = sorted(tx.todos_for_tenant(tenant_id), key=lambda row: row.order)
            return [tx.to_todo_read(record) for record in records]

    def get_todo(self, tenant_id: str, todo_id: int) -> TodoRead:
        with self._store.transaction() as tx:
            return tx.to_todo_read(tx.get_todo(tenant_id, todo_id))

    def update_todo(self, tenant_id: str, todo_id: int, update: TodoUpdate) -> TodoRead:
        changes = update.model_dump(exclude_unset=True)
        for name in ("title", "status", "pin_for_today"):
            if name in changes and changes[name] is None:
                del changes[name]
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise ValidationError("title cannot be empty")
        if "status" in changes:
            changes["status"] = update.status.value

        with self._store.transaction() as tx:
            record = tx.get_todo(tenant_id, todo_id)
            if changes:
                tx.patch_todo(record, **changes)
            return tx.to_todo_read(record)

    def delete_todo(self, tenant_id: str, todo_id: int) -> None:
        with self._store.transaction() as tx:
            record = tx.get_todo(tenant_id, todo_id)
            links = tx.links_for_todo(todo_id)
            for link in links:
                tx.delete_link(link.id)
            checklist = tx.checklist_for_todo(todo_id)
            for item in checklist:
                tx.delete_checklist_item(item.id)
            tx.delete_todo(record.id)
            logger.info(
                "todo deleted id=%s tenant=%s unlinked_tasks=%s checklist_items=%s",
                todo_id,
                tenant_id,
                len(links),
                len(checklist),
            )

    @staticmethod
    def _apply_status(tx: InMemoryStore, record: _TaskRecord, status: TaskStatus) -> None:
        if record.status == status.value:
            return
        completed_at = tx.utc_now() if status == TaskStatus.DONE else None
        tx.patch_task(record, status=status.value, completed_at=completed_at)
        sync_task_link(tx, record)
