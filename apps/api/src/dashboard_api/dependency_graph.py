from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from dashboard_api.schemas import DependencyRead, DependentTaskRead, TaskDependencySummary, TaskRead
from dashboard_api.store import (
    CyclicDependencyError,
    DuplicateDependencyError,
    InMemoryStore,
    NotFoundError,
    SelfDependencyError,
    _DependencyRecord,
)

logger = logging.getLogger(__name__)


def build_blocking_graph(edges: Iterable[_DependencyRecord]) -> dict[int, list[int]]:
    """Adjacency map blocking_task_id -> [blocked_task_id, ...]."""
    graph: dict[int, list[int]] = {}
    for edge in edges:
        graph.setdefault(edge.blocking_task_id, []).append(edge.blocked_task_id)
    return graph


def reachable_from(graph: dict[int, list[int]], start: int) -> set[int]:
    """Every task reachable from ``start`` along blocking edges, ``start`` excluded."""
    seen: set[int] = set()
    queue = deque(graph.get(start, []))
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(graph.get(current, []))
    seen.discard(start)
    return seen


def is_reachable(graph: dict[int, list[int]], start: int, target: int) -> bool:
    visited: set[int] = set()
    queue = deque([start])
    while queue:
        current = queue.popleft()
        if current == target:
            return True
        if current in visited:
            continue
        visited.add(current)
        queue.extend(graph.get(current, []))
    return False


class DependencyGraphManager:
    """Keeps each tenant's blocking relation a simple DAG."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def create_dependency(self, tenant_id: str, blocking_task_id: int, blocked_task_id: int) -> DependencyRead:
        if blocking_task_id == blocked_task_id:
            raise SelfDependencyError("a task cannot block itself")

        with self._store.transaction() as tx:
            tx.get_task(tenant_id, blocking_task_id)
            tx.get_task(tenant_id, blocked_task_id)

            if tx.find_dependency_between(tenant_id, blocking_task_id, blocked_task_id) is not None:
                raise DuplicateDependencyError(
                    f"task {blocking_task_id} already blocks task {blocked_task_id}"
                )

            graph = build_blocking_graph(tx.dependencies_for_tenant(tenant_id))
            if is_reachable(graph, blocked_task_id, blocking_task_id):
                logger.info(
                    "dependency rejected tenant=%s blocking=%s blocked=%s reason=cycle",
                    tenant_id,
                    blocking_task_id,
                    blocked_task_id,
                )
                raise CyclicDependencyError("this dependency would create a circular reference")

            record = tx.insert_dependency(
                tenant_id,
                blocking_task_id=blocking_task_id,
                blocked_task_id=blocked_task_id,
            )
            logger.info(
                "dependency created id=%s tenant=%s blocking=%s blocked=%s",
                record.id,
                tenant_id,
                blocking_task_id,
                blocked_task_id,
            )
            return tx.to_dependency_read(record)

    def get_available_blockers(self, tenant_id: str, task_id: int) -> list[TaskRead]:
        with self._store.transaction() as tx:
            tx.get_task(tenant_id, task_id)

            existing_blocker_ids = {
                edge.blocking_task_id
                for edge in tx.dependencies_into(task_id)
                if edge.tenant_id == tenant_id
            }
            graph = build_blocking_graph(tx.dependencies_for_tenant(tenant_id))
            downstream = reachable_from(graph, task_id)

            excluded = existing_blocker_ids | downstream | {task_id}
            return [
                tx.to_task_read(task)
                for task in tx.tasks_for_tenant(tenant_id)
                if task.id not in excluded
            ]

    def remove_dependency(self, tenant_id: str, dependency_id: int) -> None:
        with self._store.transaction() as tx:
            record = tx.find_dependency(tenant_id, dependency_id)
            if record is None:
                raise NotFoundError(f"dependency {dependency_id} not found")
            tx.delete_dependency(record.id)
            logger.info("dependency removed id=%s tenant=%s", dependency_id, tenant_id)

    def remove_dependency_between(self, tenant_id: str, blocking_task_id: int, blocked_task_id: int) -> None:
        with self._store.transaction() as tx:
            record = tx.find_dependency_between(tenant_id, blocking_task_id, blocked_task_id)
            if record is None:
                raise NotFoundError(
                    f"dependency {blocking_task_id} -> {blocked_task_id} not found"
                )
            tx.delete_dependency(record.id)
            logger.info("dependency removed id=%s tenant=%s", record.id, tenant_id)

    def get_blockers(self, tenant_id: str, task_id: int) -> list[DependentTaskRead]:
        with self._store.transaction() as tx:
            tx.get_task(tenant_id, task_id)
            result: list[DependentTaskRead] = []
            for edge in tx.dependencies_into(task_id):
                blocker = tx.find_task(tenant_id, edge.blocking_task_id)
                if blocker is None:
                    continue
                result.append(DependentTaskRead(dependency_id=edge.id, task=tx.to_task_read(blocker)))
            return result

    def get_blocked(self, tenant_id: str, task_id: int) -> list[DependentTaskRead]:
        with self._store.transaction() as tx:
            tx.get_task(tenant_id, task_id)
            result: list[DependentTaskRead] = []
            for edge in tx.dependencies_out_of(task_id):
                blocked = tx.find_task(tenant_id, edge.blocked_task_id)
                if blocked is None:
                    continue
                result.append(DependentTaskRead(dependency_id=edge.id, task=tx.to_task_read(blocked)))
            return result

    def get_dependencies_batch(self, tenant_id: str, task_ids: list[int]) -> dict[int, TaskDependencySummary]:
        result = {task_id: TaskDependencySummary() for task_id in task_ids}
        if not task_ids:
            return result

        with self._store.transaction() as tx:
            for edge in tx.dependencies_for_tenant(tenant_id):
                if edge.blocked_task_id in result:
                    result[edge.blocked_task_id].blocker_ids.append(edge.blocking_task_id)
                if edge.blocking_task_id in result:
                    result[edge.blocking_task_id].blocking_ids.append(edge.blocked_task_id)
        return result
