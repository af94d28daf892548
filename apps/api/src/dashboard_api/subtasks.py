from __future__ import annotations

import logging

from dashboard_api.linking import sync_task_link
from dashboard_api.schemas import SubtaskProgress, SubtaskRead, SubtaskStatus, TaskStatus
from dashboard_api.store import InMemoryStore, ValidationError, _SubtaskRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 500


def summarize_progress(subtasks: list[_SubtaskRecord]) -> SubtaskProgress:
    total = len(subtasks)
    completed = sum(1 for subtask in subtasks if subtask.status == SubtaskStatus.DONE.value)
    return SubtaskProgress(
        completed=completed,
        total=total,
        percentage=completed / total if total else 0.0,
    )


def _clean_title(title: str) -> str:
    trimmed = title.strip()
    if not trimmed:
        raise ValidationError("title cannot be empty")
    return trimmed


class SubtaskAggregator:
    def __init__(self, store: InMemoryStore, *, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE) -> None:
        self._store = store
        self._max_batch_size = max_batch_size

    def create(self, tenant_id: str, task_id: int, title: str) -> SubtaskRead:
        trimmed = _clean_title(title)
        with self._store.transaction() as tx:
            task = tx.get_task(tenant_id, task_id)
            record = tx.insert_subtask(tenant_id, task_id=task.id, title=trimmed)
            tx.patch_task(task)
            logger.info("subtask created id=%s task=%s tenant=%s", record.id, task_id, tenant_id)
            return tx.to_subtask_read(record)

    def create_bulk(self, tenant_id: str, task_id: int, titles: list[str]) -> list[SubtaskRead]:
        valid_titles = [title.strip() for title in titles if title.strip()]
        if not valid_titles:
            raise ValidationError("at least one valid title is required")

        with self._store.transaction() as tx:
            task = tx.get_task(tenant_id, task_id)
            records = [tx.insert_subtask(tenant_id, task_id=task.id, title=title) for title in valid_titles]
            tx.patch_task(task)
            logger.info("subtasks created count=%s task=%s tenant=%s", len(records), task_id, tenant_id)
            return [tx.to_subtask_read(record) for record in records]

    def list_by_task(self, tenant_id: str, task_id: int) -> list[SubtaskRead]:
        with self._store.transaction() as tx:
            tx.get_task(tenant_id, task_id)
            rows = tx.subtasks_for_tasks([task_id])[task_id]
            return [tx.to_subtask_read(record) for record in rows]

    def toggle(self, tenant_id: str, subtask_id: int) -> SubtaskRead:
        with self._store.transaction() as tx:
            record = tx.get_subtask(tenant_id, subtask_id)
            next_status = (
                SubtaskStatus.TODO.value if record.status == SubtaskStatus.DONE.value else SubtaskStatus.DONE.value
            )
            tx.patch_subtask(record, status=next_status)
            self._touch_parent(tx, record, status_changed=True)
            return tx.to_subtask_read(record)

    def update(
        self,
        tenant_id: str,
        subtask_id: int,
        *,
        title: str | None = None,
        status: SubtaskStatus | None = None,
    ) -> SubtaskRead:
        changes: dict[str, str] = {}
        if title is not None:
            changes["title"] = _clean_title(title)
        if status is not None:
            changes["status"] = SubtaskStatus(status).value

        with self._store.transaction() as tx:
            record = tx.get_subtask(tenant_id, subtask_id)
            if changes:
                tx.patch_subtask(record, **changes)
                self._touch_parent(tx, record, status_changed="status" in changes)
            return tx.to_subtask_read(record)

    def remove(self, tenant_id: str, subtask_id: int) -> None:
        with self._store.transaction() as tx:
            record = tx.get_subtask(tenant_id, subtask_id)
            tx.delete_subtask(record.id)
            self._touch_parent(tx, record, status_changed=False)
            logger.info("subtask removed id=%s task=%s tenant=%s", subtask_id, record.task_id, tenant_id)

    def get_subtask_progress(self, tenant_id: str, task_id: int) -> SubtaskProgress:
        with self._store.transaction() as tx:
            if tx.find_task(tenant_id, task_id) is None:
                return SubtaskProgress()
            return summarize_progress(tx.subtasks_for_tasks([task_id])[task_id])

    def get_subtask_progress_batch(self, tenant_id: str, task_ids: list[int]) -> list[SubtaskProgress]:
        if len(task_ids) > self._max_batch_size:
            raise ValidationError(f"batch size {len(task_ids)} exceeds limit {self._max_batch_size}")
        if not task_ids:
            return []

        with self._store.transaction() as tx:
            owned = {task_id for task_id in set(task_ids) if tx.find_task(tenant_id, task_id) is not None}
            grouped = tx.subtasks_for_tasks(owned)
            return [
                summarize_progress(grouped[task_id]) if task_id in owned else SubtaskProgress()
                for task_id in task_ids
            ]

    @staticmethod
    def _touch_parent(tx: InMemoryStore, subtask: _SubtaskRecord, *, status_changed: bool) -> None:
        task = tx.find_task(subtask.tenant_id, subtask.task_id)
        if task is None:
            return
        tx.patch_task(task)
        if not status_changed:
            return

        siblings = tx.subtasks_for_tasks([task.id])[task.id]
        all_done = bool(siblings) and all(row.status == SubtaskStatus.DONE.value for row in siblings)
        if all_done and task.status != TaskStatus.DONE.value:
            now = tx.utc_now()
            tx.patch_task(task, status=TaskStatus.DONE.value, completed_at=now, updated_at=now)
            sync_task_link(tx, task)
            logger.info("task auto-completed id=%s tenant=%s", task.id, task.tenant_id)
