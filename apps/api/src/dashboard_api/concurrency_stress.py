from __future__ import annotations

import itertools
import threading
import time
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from dashboard_api.dependency_graph import DependencyGraphManager
from dashboard_api.linking import LinkingCoordinator
from dashboard_api.schemas import ProjectCreate, TaskCreate, TodoCreate
from dashboard_api.store import (
    ConflictError,
    CyclicDependencyError,
    DuplicateDependencyError,
    InMemoryStore,
    TaskAlreadyLinkedError,
)
from dashboard_api.workspace import WorkspaceService


_tenant_seq = itertools.count(1)


@dataclass(frozen=True)
class ConcurrencyStressConfig:
    link_iterations: int = 4
    link_parallelism: int = 8
    link_todo_count: int = 8
    relink_iterations: int = 4
    relink_parallelism: int = 8
    relink_attempts: int = 32
    ring_iterations: int = 4
    ring_parallelism: int = 8
    ring_size: int = 12


def run_concurrency_stress_suite(config: ConcurrencyStressConfig | None = None) -> dict[str, Any]:
    cfg = config or ConcurrencyStressConfig()

    link_iterations = [_run_link_iteration(index, cfg) for index in range(cfg.link_iterations)]
    relink_iterations = [_run_relink_iteration(index, cfg) for index in range(cfg.relink_iterations)]
    ring_iterations = [_run_ring_iteration(index, cfg) for index in range(cfg.ring_iterations)]

    scenarios = [
        _scenario_report(
            name="parallel-link-race",
            objective="Concurrent links of one task to many todos leave exactly one parent.",
            iterations=link_iterations,
            metric_keys=[
                "attempts_total",
                "link_success_count",
                "already_linked_count",
                "unexpected_error_count",
                "final_link_rows",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="parallel-relink-race",
            objective="Concurrent relinks never leave a task with zero or two parents.",
            iterations=relink_iterations,
            metric_keys=[
                "attempts_total",
                "relink_success_count",
                "unexpected_error_count",
                "max_observed_link_rows",
                "min_observed_link_rows",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="dependency-ring-race",
            objective="Concurrent edges closing a ring never produce a cycle.",
            iterations=ring_iterations,
            metric_keys=[
                "attempts_total",
                "dependency_success_count",
                "cycle_rejected_count",
                "duplicate_rejected_count",
                "unexpected_error_count",
                "edge_count",
                "duration_ms",
            ],
        ),
    ]

    invariants_total = 0
    invariants_passed = 0
    for scenario in scenarios:
        invariants_total += len(scenario["invariants"])
        invariants_passed += sum(1 for item in scenario["invariants"] if item["passed"])

    overall_status = "pass" if invariants_total == invariants_passed else "fail"
    return {
        "suite": "relationship-concurrency",
        "generated_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "link_iterations": cfg.link_iterations,
            "link_parallelism": cfg.link_parallelism,
            "link_todo_count": cfg.link_todo_count,
            "relink_iterations": cfg.relink_iterations,
            "relink_parallelism": cfg.relink_parallelism,
            "relink_attempts": cfg.relink_attempts,
            "ring_iterations": cfg.ring_iterations,
            "ring_parallelism": cfg.ring_parallelism,
            "ring_size": cfg.ring_size,
        },
        "summary": {
            "scenario_count": len(scenarios),
            "invariants_total": invariants_total,
            "invariants_passed": invariants_passed,
            "overall_status": overall_status,
        },
        "scenarios": scenarios,
    }


def _run_link_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    workspace = WorkspaceService(store)
    linking = LinkingCoordinator(store)
    tenant_id = _next_tenant("link")

    task_id = _seed_tasks(workspace, tenant_id, count=1)[0]
    todo_ids = [
        workspace.create_todo(tenant_id, TodoCreate(title=f"link race todo {todo_index}")).id
        for todo_index in range(cfg.link_todo_count)
    ]

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    winners: list[int] = []

    def worker(todo_id: int) -> None:
        with lock:
            metrics["attempts_total"] += 1
        try:
            linking.link_task_to_todo(tenant_id, todo_id, task_id)
            with lock:
                metrics["link_success_count"] += 1
                winners.append(todo_id)
        except TaskAlreadyLinkedError:
            with lock:
                metrics["already_linked_count"] += 1
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.link_parallelism) as executor:
        futures = [executor.submit(worker, todo_id) for todo_id in todo_ids]
        for future in as_completed(futures):
            future.result()

    with store.transaction() as tx:
        final_links = [link for link in tx.links_for_tenant(tenant_id) if link.task_id == task_id]

    duration_ms = int((time.perf_counter() - started) * 1000)
    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "link_success_count": int(metrics["link_success_count"]),
        "already_linked_count": int(metrics["already_linked_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "final_link_rows": len(final_links),
        "final_todo_id": final_links[0].todo_id if final_links else None,
        "winner_todo_ids": list(winners),
        "duration_ms": duration_ms,
    }

    invariants = [
        _invariant(
            "single_link_success",
            "exactly one concurrent link attempt succeeded",
            metrics_payload["link_success_count"] == 1
            and metrics_payload["already_linked_count"] == cfg.link_todo_count - 1,
            expected={"link_success_count": 1, "already_linked_count": cfg.link_todo_count - 1},
            actual={
                "link_success_count": metrics_payload["link_success_count"],
                "already_linked_count": metrics_payload["already_linked_count"],
            },
        ),
        _invariant(
            "single_parent",
            "the task ended with exactly one link row pointing at the winner",
            metrics_payload["final_link_rows"] == 1 and metrics_payload["final_todo_id"] in winners,
            expected={"final_link_rows": 1},
            actual={
                "final_link_rows": metrics_payload["final_link_rows"],
                "final_todo_id": metrics_payload["final_todo_id"],
            },
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _run_relink_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    workspace = WorkspaceService(store)
    linking = LinkingCoordinator(store)
    tenant_id = _next_tenant("relink")

    task_id = _seed_tasks(workspace, tenant_id, count=1)[0]
    todo_ids = [
        workspace.create_todo(tenant_id, TodoCreate(title=f"relink race todo {todo_index}")).id
        for todo_index in range(cfg.relink_parallelism)
    ]
    linking.link_task_to_todo(tenant_id, todo_ids[0], task_id)

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    observed_rows: list[int] = []
    stop = threading.Event()

    def observer() -> None:
        while not stop.is_set():
            with store.transaction() as tx:
                rows = sum(1 for link in tx.links_for_tenant(tenant_id) if link.task_id == task_id)
            with lock:
                observed_rows.append(rows)
            time.sleep(0)

    def worker(attempt: int) -> None:
        target = todo_ids[attempt % len(todo_ids)]
        with lock:
            metrics["attempts_total"] += 1
        try:
            linking.relink_task(tenant_id, target, task_id)
            with lock:
                metrics["relink_success_count"] += 1
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1

    observer_thread = threading.Thread(target=observer, daemon=True)
    observer_thread.start()
    try:
        with ThreadPoolExecutor(max_workers=cfg.relink_parallelism) as executor:
            futures = [executor.submit(worker, attempt) for attempt in range(cfg.relink_attempts)]
            for future in as_completed(futures):
                future.result()
    finally:
        stop.set()
        observer_thread.join(timeout=5)

    with store.transaction() as tx:
        final_rows = sum(1 for link in tx.links_for_tenant(tenant_id) if link.task_id == task_id)
    observed_rows.append(final_rows)

    duration_ms = int((time.perf_counter() - started) * 1000)
    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "relink_success_count": int(metrics["relink_success_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "observations": len(observed_rows),
        "max_observed_link_rows": max(observed_rows),
        "min_observed_link_rows": min(observed_rows),
        "final_link_rows": final_rows,
        "duration_ms": duration_ms,
    }

    invariants = [
        _invariant(
            "all_relinks_succeeded",
            "every relink request committed",
            metrics_payload["relink_success_count"] == cfg.relink_attempts,
            expected={"relink_success_count": cfg.relink_attempts},
            actual={"relink_success_count": metrics_payload["relink_success_count"]},
        ),
        _invariant(
            "never_zero_or_two_parents",
            "every observation saw exactly one link row for the task",
            metrics_payload["max_observed_link_rows"] == 1 and metrics_payload["min_observed_link_rows"] == 1,
            expected={"observed_link_rows": 1},
            actual={
                "max_observed_link_rows": metrics_payload["max_observed_link_rows"],
                "min_observed_link_rows": metrics_payload["min_observed_link_rows"],
            },
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _run_ring_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    workspace = WorkspaceService(store)
    graph = DependencyGraphManager(store)
    tenant_id = _next_tenant("ring")

    task_ids = _seed_tasks(workspace, tenant_id, count=cfg.ring_size)
    # Every edge i -> i+1 plus the closing edge; each submitted twice.
    edges = [(task_ids[i], task_ids[(i + 1) % len(task_ids)]) for i in range(len(task_ids))] * 2

    lock = threading.Lock()
    metrics: Counter[str] = Counter()

    def worker(blocking_task_id: int, blocked_task_id: int) -> None:
        with lock:
            metrics["attempts_total"] += 1
        try:
            graph.create_dependency(tenant_id, blocking_task_id, blocked_task_id)
            with lock:
                metrics["dependency_success_count"] += 1
        except CyclicDependencyError:
            with lock:
                metrics["cycle_rejected_count"] += 1
        except DuplicateDependencyError:
            with lock:
                metrics["duplicate_rejected_count"] += 1
        except ConflictError:
            with lock:
                metrics["other_conflict_count"] += 1
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.ring_parallelism) as executor:
        futures = [executor.submit(worker, blocking, blocked) for blocking, blocked in edges]
        for future in as_completed(futures):
            future.result()

    with store.transaction() as tx:
        final_edges = [(edge.blocking_task_id, edge.blocked_task_id) for edge in tx.dependencies_for_tenant(tenant_id)]

    pair_counts = Counter(final_edges)
    duration_ms = int((time.perf_counter() - started) * 1000)
    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "dependency_success_count": int(metrics["dependency_success_count"]),
        "cycle_rejected_count": int(metrics["cycle_rejected_count"]),
        "duplicate_rejected_count": int(metrics["duplicate_rejected_count"]),
        "other_conflict_count": int(metrics["other_conflict_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "edge_count": len(final_edges),
        "max_edges_per_pair": max(pair_counts.values(), default=0),
        "acyclic": _is_acyclic(task_ids, final_edges),
        "duration_ms": duration_ms,
    }

    invariants = [
        _invariant(
            "graph_acyclic",
            "the final edge set contains no cycle",
            metrics_payload["acyclic"],
            expected={"acyclic": True},
            actual={"acyclic": metrics_payload["acyclic"]},
        ),
        _invariant(
            "ring_left_open",
            "exactly one edge of the ring was refused",
            metrics_payload["edge_count"] == cfg.ring_size - 1,
            expected={"edge_count": cfg.ring_size - 1},
            actual={"edge_count": metrics_payload["edge_count"]},
        ),
        _invariant(
            "no_duplicate_edges",
            "no ordered pair was stored twice",
            metrics_payload["max_edges_per_pair"] <= 1,
            expected={"max_edges_per_pair": 1},
            actual={"max_edges_per_pair": metrics_payload["max_edges_per_pair"]},
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0 and metrics_payload["other_conflict_count"] == 0,
            expected={"unexpected_error_count": 0, "other_conflict_count": 0},
            actual={
                "unexpected_error_count": metrics_payload["unexpected_error_count"],
                "other_conflict_count": metrics_payload["other_conflict_count"],
            },
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _scenario_report(
    *,
    name: str,
    objective: str,
    iterations: list[dict[str, Any]],
    metric_keys: list[str],
) -> dict[str, Any]:
    aggregates: dict[str, Any] = {}
    for key in metric_keys:
        values = [int(item["metrics"].get(key, 0)) for item in iterations]
        aggregates[key] = {
            "min": min(values) if values else 0,
            "max": max(values) if values else 0,
            "sum": sum(values),
            "avg": round(sum(values) / len(values), 2) if values else 0.0,
        }

    invariant_buckets: dict[str, dict[str, Any]] = {}
    for iteration in iterations:
        for invariant in iteration["invariants"]:
            bucket = invariant_buckets.setdefault(
                invariant["id"],
                {
                    "id": invariant["id"],
                    "description": invariant["description"],
                    "passed": True,
                    "expected": invariant["expected"],
                    "actual_failures": [],
                },
            )
            if not invariant["passed"]:
                bucket["passed"] = False
                bucket["actual_failures"].append(
                    {
                        "iteration": iteration["iteration"],
                        "actual": invariant["actual"],
                    }
                )

    invariants = list(invariant_buckets.values())
    status = "pass" if all(item["passed"] for item in invariants) else "fail"

    return {
        "name": name,
        "objective": objective,
        "status": status,
        "iterations": len(iterations),
        "metrics": aggregates,
        "invariants": invariants,
        "iteration_details": iterations,
    }


def _seed_tasks(workspace: WorkspaceService, tenant_id: str, *, count: int) -> list[int]:
    project = workspace.create_project(tenant_id, ProjectCreate(name=f"{tenant_id} project"))
    return [
        workspace.create_task(tenant_id, TaskCreate(project_id=project.id, title=f"stress task {task_index}")).id
        for task_index in range(count)
    ]


def _is_acyclic(task_ids: list[int], edges: list[tuple[int, int]]) -> bool:
    graph: dict[int, list[int]] = {task_id: [] for task_id in task_ids}
    indegree: dict[int, int] = {task_id: 0 for task_id in task_ids}
    for blocking, blocked in edges:
        graph.setdefault(blocking, []).append(blocked)
        indegree[blocked] = indegree.get(blocked, 0) + 1
        indegree.setdefault(blocking, 0)

    queue = deque([task_id for task_id, degree in indegree.items() if degree == 0])
    visited = 0
    while queue:
        current = queue.popleft()
        visited += 1
        for next_task in graph.get(current, []):
            indegree[next_task] -= 1
            if indegree[next_task] == 0:
                queue.append(next_task)
    return visited == len(indegree)


def _next_tenant(prefix: str) -> str:
    return f"stress-{prefix}-{next(_tenant_seq)}"


def _invariant(
    invariant_id: str,
    description: str,
    passed: bool,
    *,
    expected: dict[str, Any],
    actual: dict[str, Any],
) -> dict[str, Any]:
    return {
        "id": invariant_id,
        "description": description,
        "passed": passed,
        "expected": expected,
        "actual": actual,
    }
