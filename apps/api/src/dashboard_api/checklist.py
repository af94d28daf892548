from __future__ import annotations

import logging

from dashboard_api.linking import sync_todo_status
from dashboard_api.schemas import ChecklistItemRead, ChecklistStatus
from dashboard_api.store import InMemoryStore, ValidationError

logger = logging.getLogger(__name__)


class TodoChecklist:
    """Checklist items owned by a todo. Every change resyncs the todo's status."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def create_item(self, tenant_id: str, todo_id: int, title: str) -> ChecklistItemRead:
        trimmed = title.strip()
        if not trimmed:
            raise ValidationError("title cannot be empty")
        with self._store.transaction() as tx:
            tx.get_todo(tenant_id, todo_id)
            record = tx.insert_checklist_item(tenant_id, todo_id=todo_id, title=trimmed)
            sync_todo_status(tx, tenant_id, todo_id)
            logger.info("checklist item created id=%s todo=%s tenant=%s", record.id, todo_id, tenant_id)
            return tx.to_checklist_item_read(record)

    def list_items(self, tenant_id: str, todo_id: int) -> list[ChecklistItemRead]:
        with self._store.transaction() as tx:
            tx.get_todo(tenant_id, todo_id)
            return [tx.to_checklist_item_read(item) for item in tx.checklist_for_todo(todo_id)]

    def update_item(
        self,
        tenant_id: str,
        item_id: int,
        *,
        title: str | None = None,
        status: ChecklistStatus | None = None,
    ) -> ChecklistItemRead:
        changes: dict[str, str] = {}
        if title is not None:
            changes["title"] = title.strip()
            if not changes["title"]:
                raise ValidationError("title cannot be empty")
        if status is not None:
            changes["status"] = ChecklistStatus(status).value

        with self._store.transaction() as tx:
            record = tx.get_checklist_item(tenant_id, item_id)
            if changes:
                tx.patch_checklist_item(record, **changes)
                sync_todo_status(tx, tenant_id, record.todo_id)
            return tx.to_checklist_item_read(record)

    def delete_item(self, tenant_id: str, item_id: int) -> None:
        with self._store.transaction() as tx:
            record = tx.get_checklist_item(tenant_id, item_id)
            tx.delete_checklist_item(record.id)
            sync_todo_status(tx, tenant_id, record.todo_id)
            logger.info("checklist item deleted id=%s todo=%s tenant=%s", item_id, record.todo_id, tenant_id)
