from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from dashboard_api.checklist import TodoChecklist
from dashboard_api.dependency_graph import DependencyGraphManager
from dashboard_api.linking import LinkingCoordinator
from dashboard_api.logging_setup import setup_logging
from dashboard_api.schemas import (
    ChecklistItemCreate,
    ChecklistItemRead,
    ChecklistItemUpdate,
    DependencyCreate,
    DependencyRead,
    DependentTaskRead,
    LinkedTodoMeta,
    ProjectCreate,
    ProjectRead,
    ProjectStatus,
    ProjectStatusUpdate,
    SubtaskBulkCreate,
    SubtaskCreate,
    SubtaskProgress,
    SubtaskRead,
    SubtaskUpdate,
    TaskCreate,
    TaskDependencySummary,
    TaskIdsRequest,
    TaskRead,
    TaskStatusUpdate,
    TaskUpdate,
    TodoCreate,
    TodoLinkCreate,
    TodoLinkRead,
    TodoRead,
    TodoRelinkRequest,
    TodoStatusUpdate,
    TodoUpdate,
    TodoWithLinks,
)
from dashboard_api.store import (
    CascadeConfirmationError,
    ConflictError,
    InMemoryStore,
    NotFoundError,
    TaskAlreadyLinkedError,
    UnauthorizedError,
    ValidationError,
)
from dashboard_api.subtasks import DEFAULT_MAX_BATCH_SIZE, SubtaskAggregator
from dashboard_api.tenant import resolve_tenant_id
from dashboard_api.workspace import WorkspaceService


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _env_or_default(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("ignoring %s=%r: not an integer, using %s", name, raw, default)
        return default
    if value < minimum:
        logger.warning("clamping %s=%s to minimum %s", name, value, minimum)
        return minimum
    return value


setup_logging(level=_env_or_default("API_LOG_LEVEL", "INFO"), log_dir=os.getenv("API_LOG_DIR") or None)
logger = logging.getLogger(__name__)

app = FastAPI(title="dashboard api", version="0.1.0")
store = InMemoryStore(state_file=os.getenv("API_STATE_FILE"))
max_batch_size = _env_int("API_MAX_BATCH_SIZE", DEFAULT_MAX_BATCH_SIZE)
workspace = WorkspaceService(store)
dependencies = DependencyGraphManager(store)
linking = LinkingCoordinator(store)
checklist = TodoChecklist(store)
subtasks = SubtaskAggregator(store, max_batch_size=max_batch_size)

cors_allow_origins = _parse_csv_env("API_CORS_ALLOW_ORIGINS", default="null")
cors_allow_origin_regex = _env_or_default(
    "API_CORS_ALLOW_ORIGIN_REGEX",
    r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_origin_regex=cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/projects", response_model=ProjectRead)
def create_project(
    payload: ProjectCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> ProjectRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    return workspace.create_project(tenant_id, payload)


@app.get("/projects", response_model=list[ProjectRead])
def list_projects(
    status: ProjectStatus = ProjectStatus.ACTIVE,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[ProjectRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    return workspace.list_projects(tenant_id, status=status)


@app.patch("/projects/{project_id}/status", response_model=ProjectRead)
def update_project_status(
    project_id: int,
    payload: ProjectStatusUpdate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> ProjectRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.set_project_status(tenant_id, project_id, payload.status)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks", response_model=TaskRead)
def create_task(
    payload: TaskCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TaskRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.create_task(tenant_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    project_id: int | None = None,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[TaskRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.list_tasks(tenant_id, project_id=project_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(
    task_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TaskRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.get_task(tenant_id, task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/tasks/{task_id}", response_model=TaskRead)
def update_task(
    task_id: int,
    payload: TaskUpdate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TaskRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.update_task(tenant_id, task_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.patch("/tasks/{task_id}/status", response_model=TaskRead)
def update_task_status(
    task_id: int,
    payload: TaskStatusUpdate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TaskRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.update_task_status(tenant_id, task_id, payload.status)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/tasks/{task_id}", status_code=204)
def delete_task(
    task_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        workspace.delete_task(tenant_id, task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/todos", response_model=TodoRead)
def create_todo(
    payload: TodoCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TodoRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.create_todo(tenant_id, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/todos", response_model=list[TodoRead])
def list_todos(
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[TodoRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    return workspace.list_todos(tenant_id)


@app.get("/todos/{todo_id}", response_model=TodoRead)
def get_todo(
    todo_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TodoRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.get_todo(tenant_id, todo_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/todos/{todo_id}", response_model=TodoRead)
def update_todo(
    todo_id: int,
    payload: TodoUpdate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TodoRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return workspace.update_todo(tenant_id, todo_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.delete("/todos/{todo_id}", status_code=204)
def delete_todo(
    todo_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        workspace.delete_todo(tenant_id, todo_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/todos/{todo_id}/links", response_model=TodoWithLinks)
def get_todo_with_links(
    todo_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TodoWithLinks:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return linking.get_todo_with_links(tenant_id, todo_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/todos/{todo_id}/status", response_model=TodoWithLinks)
def set_todo_status(
    todo_id: int,
    payload: TodoStatusUpdate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TodoWithLinks:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return linking.set_todo_status(
            tenant_id,
            todo_id,
            payload.status,
            cascade_children=payload.cascade_children,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CascadeConfirmationError as exc:
        raise HTTPException(status_code=409, detail=CascadeConfirmationError.code) from exc


@app.post("/todos/{todo_id}/checklist", response_model=ChecklistItemRead)
def create_checklist_item(
    todo_id: int,
    payload: ChecklistItemCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> ChecklistItemRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return checklist.create_item(tenant_id, todo_id, payload.title)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/todos/{todo_id}/checklist", response_model=list[ChecklistItemRead])
def list_checklist_items(
    todo_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[ChecklistItemRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return checklist.list_items(tenant_id, todo_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/checklist/{item_id}", response_model=ChecklistItemRead)
def update_checklist_item(
    item_id: int,
    payload: ChecklistItemUpdate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> ChecklistItemRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return checklist.update_item(tenant_id, item_id, title=payload.title, status=payload.status)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.delete("/checklist/{item_id}", status_code=204)
def delete_checklist_item(
    item_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        checklist.delete_item(tenant_id, item_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/dependencies", response_model=DependencyRead)
def create_dependency(
    payload: DependencyCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> DependencyRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return dependencies.create_dependency(tenant_id, payload.blocking_task_id, payload.blocked_task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.delete("/dependencies/{dependency_id}", status_code=204)
def remove_dependency(
    dependency_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        dependencies.remove_dependency(tenant_id, dependency_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/dependencies/remove", status_code=204)
def remove_dependency_between(
    payload: DependencyCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        dependencies.remove_dependency_between(tenant_id, payload.blocking_task_id, payload.blocked_task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/dependencies/batch", response_model=dict[int, TaskDependencySummary])
def get_dependencies_batch(
    payload: TaskIdsRequest,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> dict[int, TaskDependencySummary]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    _require_batch_size(payload.task_ids)
    return dependencies.get_dependencies_batch(tenant_id, payload.task_ids)


@app.get("/tasks/{task_id}/available-blockers", response_model=list[TaskRead])
def get_available_blockers(
    task_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[TaskRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return dependencies.get_available_blockers(tenant_id, task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tasks/{task_id}/blockers", response_model=list[DependentTaskRead])
def get_blockers(
    task_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[DependentTaskRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return dependencies.get_blockers(tenant_id, task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tasks/{task_id}/blocking", response_model=list[DependentTaskRead])
def get_blocked(
    task_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[DependentTaskRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return dependencies.get_blocked(tenant_id, task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/todo-links", response_model=TodoLinkRead)
def link_task_to_todo(
    payload: TodoLinkCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TodoLinkRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return linking.link_task_to_todo(tenant_id, payload.todo_id, payload.task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TaskAlreadyLinkedError as exc:
        raise HTTPException(status_code=409, detail=TaskAlreadyLinkedError.code) from exc


@app.post("/todo-links/relink", response_model=TodoLinkRead)
def relink_task(
    payload: TodoRelinkRequest,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TodoLinkRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return linking.relink_task(
            tenant_id,
            payload.target_todo_id,
            payload.task_id,
            source_todo_id=payload.source_todo_id,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/todo-links/unlink", status_code=204)
def unlink_task(
    payload: TodoLinkCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        linking.unlink_task(tenant_id, payload.todo_id, payload.task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/todo-links/meta", response_model=list[LinkedTodoMeta])
def get_linked_todo_meta(
    payload: TaskIdsRequest,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[LinkedTodoMeta]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    _require_batch_size(payload.task_ids)
    return linking.get_linked_todo_meta(tenant_id, payload.task_ids)


@app.post("/tasks/{task_id}/subtasks", response_model=SubtaskRead)
def create_subtask(
    task_id: int,
    payload: SubtaskCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> SubtaskRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return subtasks.create(tenant_id, task_id, payload.title)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/subtasks/bulk", response_model=list[SubtaskRead])
def create_subtasks_bulk(
    task_id: int,
    payload: SubtaskBulkCreate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[SubtaskRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return subtasks.create_bulk(tenant_id, task_id, payload.titles)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/tasks/{task_id}/subtasks", response_model=list[SubtaskRead])
def list_subtasks(
    task_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[SubtaskRead]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return subtasks.list_by_task(tenant_id, task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tasks/{task_id}/subtask-progress", response_model=SubtaskProgress)
def get_subtask_progress(
    task_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> SubtaskProgress:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    return subtasks.get_subtask_progress(tenant_id, task_id)


@app.post("/subtasks/progress-batch", response_model=list[SubtaskProgress])
def get_subtask_progress_batch(
    payload: TaskIdsRequest,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> list[SubtaskProgress]:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return subtasks.get_subtask_progress_batch(tenant_id, payload.task_ids)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/subtasks/{subtask_id}/toggle", response_model=SubtaskRead)
def toggle_subtask(
    subtask_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> SubtaskRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return subtasks.toggle(tenant_id, subtask_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/subtasks/{subtask_id}", response_model=SubtaskRead)
def update_subtask(
    subtask_id: int,
    payload: SubtaskUpdate,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> SubtaskRead:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        return subtasks.update(tenant_id, subtask_id, title=payload.title, status=payload.status)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.delete("/subtasks/{subtask_id}", status_code=204)
def remove_subtask(
    subtask_id: int,
    x_tenant_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    tenant_id = _require_tenant(x_tenant_id, authorization)
    try:
        subtasks.remove(tenant_id, subtask_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _require_tenant(x_tenant_id: str | None, authorization: str | None) -> str:
    try:
        return resolve_tenant_id(
            x_tenant_id,
            authorization=authorization,
            expected_token=os.getenv("API_AUTH_TOKEN"),
        )
    except UnauthorizedError as exc:
        logger.warning("request rejected: %s", exc)
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def _require_batch_size(task_ids: list[int]) -> None:
    if len(task_ids) > max_batch_size:
        raise HTTPException(
            status_code=422,
            detail=f"batch size {len(task_ids)} exceeds limit {max_batch_size}",
        )
