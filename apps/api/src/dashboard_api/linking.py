from __future__ import annotations

import logging

from dashboard_api.schemas import (
    ChecklistStatus,
    LinkedTaskRead,
    LinkedTodoMeta,
    TaskStatus,
    TodoLinkRead,
    TodoProgress,
    TodoStatus,
    TodoWithLinks,
)
from dashboard_api.store import (
    CascadeConfirmationError,
    ConflictError,
    InMemoryStore,
    TaskAlreadyLinkedError,
    _ChecklistItemRecord,
    _TaskRecord,
)

logger = logging.getLogger(__name__)


def derive_todo_status(task_statuses: list[str], checklist_statuses: list[str], current: str) -> str:
    """Status a todo should carry given its linked tasks and checklist items.

    A todo with no children keeps whatever status it was given by hand.
    """
    if not task_statuses and not checklist_statuses:
        return current
    tasks_done = all(status == TaskStatus.DONE.value for status in task_statuses)
    checklist_done = all(status == ChecklistStatus.DONE.value for status in checklist_statuses)
    if tasks_done and checklist_done:
        return TodoStatus.DONE.value
    if any(status == ChecklistStatus.DONE.value for status in checklist_statuses) or any(
        status in (TaskStatus.IN_PROGRESS.value, TaskStatus.DONE.value) for status in task_statuses
    ):
        return TodoStatus.IN_PROGRESS.value
    return TodoStatus.TODO.value


def summarize_todo_progress(
    task_statuses: list[str],
    checklist: list[_ChecklistItemRecord],
) -> TodoProgress:
    linked_done = sum(1 for status in task_statuses if status == TaskStatus.DONE.value)
    checklist_done = sum(1 for item in checklist if item.status == ChecklistStatus.DONE.value)
    total = len(task_statuses) + len(checklist)
    completed = linked_done + checklist_done
    return TodoProgress(
        total=total,
        completed=completed,
        linked_count=len(task_statuses),
        linked_done=linked_done,
        checklist_count=len(checklist),
        checklist_done=checklist_done,
        percentage=completed / total if total else 0.0,
    )


def _linked_task_statuses(tx: InMemoryStore, tenant_id: str, todo_id: int) -> list[str]:
    statuses: list[str] = []
    for link in tx.links_for_todo(todo_id):
        task = tx.find_task(tenant_id, link.task_id)
        statuses.append(task.status if task is not None else TaskStatus.TODO.value)
    return statuses


def sync_todo_status(tx: InMemoryStore, tenant_id: str, todo_id: int) -> None:
    """Derive a todo's status from its linked tasks and checklist. Call inside a transaction."""
    todo = tx.find_todo(tenant_id, todo_id)
    if todo is None:
        return
    next_status = derive_todo_status(
        _linked_task_statuses(tx, tenant_id, todo_id),
        [item.status for item in tx.checklist_for_todo(todo_id)],
        todo.status,
    )
    if next_status != todo.status:
        tx.patch_todo(todo, status=next_status)
        logger.debug("todo status synced id=%s status=%s", todo_id, next_status)


def sync_task_link(tx: InMemoryStore, task: _TaskRecord) -> None:
    """Mirror a task's status onto its link row and resync the parent todo."""
    link = tx.link_for_task(task.tenant_id, task.id)
    if link is None:
        return
    if link.task_status != task.status:
        tx.patch_link(link, task_status=task.status)
    sync_todo_status(tx, task.tenant_id, link.todo_id)


class LinkingCoordinator:
    """Enforces that a task has at most one todo parent."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def link_task_to_todo(self, tenant_id: str, todo_id: int, task_id: int) -> TodoLinkRead:
        with self._store.transaction() as tx:
            tx.get_todo(tenant_id, todo_id)
            task = tx.get_task(tenant_id, task_id)

            existing = tx.link_for_task(tenant_id, task_id)
            if existing is not None:
                logger.info(
                    "link rejected tenant=%s task=%s todo=%s current_todo=%s",
                    tenant_id,
                    task_id,
                    todo_id,
                    existing.todo_id,
                )
                raise TaskAlreadyLinkedError(f"task {task_id} is already linked to todo {existing.todo_id}")

            record = tx.insert_link(tenant_id, todo_id=todo_id, task_id=task_id, task_status=task.status)
            sync_todo_status(tx, tenant_id, todo_id)
            logger.info("task linked tenant=%s task=%s todo=%s", tenant_id, task_id, todo_id)
            return tx.to_link_read(record)

    def relink_task(
        self,
        tenant_id: str,
        target_todo_id: int,
        task_id: int,
        *,
        source_todo_id: int | None = None,
    ) -> TodoLinkRead:
        with self._store.transaction() as tx:
            tx.get_todo(tenant_id, target_todo_id)
            task = tx.get_task(tenant_id, task_id)

            existing = tx.link_for_task(tenant_id, task_id)
            previous_todo_id: int | None = None
            if existing is not None:
                if source_todo_id is not None and existing.todo_id != source_todo_id:
                    raise ConflictError(
                        f"source mismatch: task {task_id} is linked to todo {existing.todo_id}"
                    )
                previous_todo_id = existing.todo_id
                tx.delete_link(existing.id)

            record = tx.insert_link(tenant_id, todo_id=target_todo_id, task_id=task_id, task_status=task.status)
            if previous_todo_id is not None and previous_todo_id != target_todo_id:
                sync_todo_status(tx, tenant_id, previous_todo_id)
            sync_todo_status(tx, tenant_id, target_todo_id)
            logger.info(
                "task relinked tenant=%s task=%s from=%s to=%s",
                tenant_id,
                task_id,
                previous_todo_id,
                target_todo_id,
            )
            return tx.to_link_read(record)

    def unlink_task(self, tenant_id: str, todo_id: int, task_id: int) -> None:
        with self._store.transaction() as tx:
            tx.get_todo(tenant_id, todo_id)
            link = tx.link_for_task(tenant_id, task_id)
            if link is None or link.todo_id != todo_id:
                return
            tx.delete_link(link.id)
            sync_todo_status(tx, tenant_id, todo_id)
            logger.info("task unlinked tenant=%s task=%s todo=%s", tenant_id, task_id, todo_id)

    def get_linked_todo_meta(self, tenant_id: str, task_ids: list[int]) -> list[LinkedTodoMeta]:
        if not task_ids:
            return []
        wanted = set(task_ids)
        with self._store.transaction() as tx:
            result: list[LinkedTodoMeta] = []
            for link in tx.links_for_tenant(tenant_id):
                if link.task_id not in wanted:
                    continue
                todo = tx.find_todo(tenant_id, link.todo_id)
                result.append(
                    LinkedTodoMeta(
                        task_id=link.task_id,
                        todo_id=link.todo_id,
                        todo_title=todo.title if todo is not None else "Linked Todo",
                        todo_status=todo.status if todo is not None else TodoStatus.TODO,
                    )
                )
            return result

    def get_todo_with_links(self, tenant_id: str, todo_id: int) -> TodoWithLinks:
        with self._store.transaction() as tx:
            todo = tx.get_todo(tenant_id, todo_id)
            checklist = tx.checklist_for_todo(todo_id)
            links: list[LinkedTaskRead] = []
            statuses: list[str] = []
            for link in tx.links_for_todo(todo_id):
                task = tx.find_task(tenant_id, link.task_id)
                statuses.append(task.status if task is not None else TaskStatus.TODO.value)
                links.append(
                    LinkedTaskRead(
                        link=tx.to_link_read(link),
                        task=tx.to_task_read(task) if task is not None else None,
                    )
                )
            return TodoWithLinks(
                todo=tx.to_todo_read(todo),
                checklist=[tx.to_checklist_item_read(item) for item in checklist],
                links=links,
                progress=summarize_todo_progress(statuses, checklist),
            )

    def set_todo_status(
        self,
        tenant_id: str,
        todo_id: int,
        status: TodoStatus,
        *,
        cascade_children: bool = False,
    ) -> TodoWithLinks:
        """Set a todo's status by hand.

        Marking a todo done while a checklist item or linked task is still open
        needs ``cascade_children``; with it, the open children are completed in
        the same transaction. The stored status is then re-derived from the
        children, so a todo with children cannot be forced out of step with
        them.
        """
        with self._store.transaction() as tx:
            todo = tx.get_todo(tenant_id, todo_id)

            if status == TodoStatus.DONE:
                open_items = [
                    item for item in tx.checklist_for_todo(todo_id) if item.status != ChecklistStatus.DONE.value
                ]
                open_tasks: list[_TaskRecord] = []
                for link in tx.links_for_todo(todo_id):
                    task = tx.find_task(tenant_id, link.task_id)
                    if task is not None and task.status != TaskStatus.DONE.value:
                        open_tasks.append(task)

                if (open_items or open_tasks) and not cascade_children:
                    raise CascadeConfirmationError(
                        f"todo {todo_id} has {len(open_items) + len(open_tasks)} unfinished children"
                    )
                for item in open_items:
                    tx.patch_checklist_item(item, status=ChecklistStatus.DONE.value)
                now = tx.utc_now()
                for task in open_tasks:
                    tx.patch_task(task, status=TaskStatus.DONE.value, completed_at=now, updated_at=now)
                    sync_task_link(tx, task)
                if open_items or open_tasks:
                    logger.info(
                        "todo completion cascaded id=%s tenant=%s checklist=%s tasks=%s",
                        todo_id,
                        tenant_id,
                        len(open_items),
                        len(open_tasks),
                    )

            tx.patch_todo(todo, status=status.value)
            sync_todo_status(tx, tenant_id, todo_id)

        return self.get_todo_with_links(tenant_id, todo_id)
