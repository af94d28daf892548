from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, model_validator


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    IDEA = "idea"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class TodoStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class SubtaskStatus(str, Enum):
    TODO = "todo"
    DONE = "done"


class ChecklistStatus(str, Enum):
    TODO = "todo"
    DONE = "done"


class PriorityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class DependencyType(str, Enum):
    FINISH_TO_START = "finish_to_start"


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)

    @model_validator(mode="after")
    def normalize_fields(self) -> "ProjectCreate":
        self.name = self.name.strip()
        if not self.name:
            raise ValueError("project name cannot be empty")
        return self


class ProjectRead(BaseModel):
    id: int
    name: str
    status: ProjectStatus
    created_at: str


class ProjectStatusUpdate(BaseModel):
    status: ProjectStatus


class TaskCreate(BaseModel):
    project_id: int
    title: str = Field(min_length=1)
    priority_level: PriorityLevel = PriorityLevel.LOW
    description: str | None = None
    due_date: str | None = None
    milestone_id: int | None = None
    assignees: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskCreate":
        self.assignees = _normalize_string_list(self.assignees)
        self.tags = _normalize_string_list(self.tags)
        return self


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    priority_level: PriorityLevel | None = None
    due_date: str | None = None
    milestone_id: int | None = None
    assignees: list[str] | None = None
    tags: list[str] | None = None
    status: TaskStatus | None = None

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskUpdate":
        if self.assignees is not None:
            self.assignees = _normalize_string_list(self.assignees)
        if self.tags is not None:
            self.tags = _normalize_string_list(self.tags)
        return self


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskRead(BaseModel):
    id: int
    project_id: int
    title: str
    status: TaskStatus
    priority_level: PriorityLevel
    description: str | None = None
    due_date: str | None = None
    milestone_id: int | None = None
    assignees: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    order: int
    created_at: str
    updated_at: str
    completed_at: str | None = None


class TodoCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    planned_date: str | None = None
    pin_for_today: bool = False


class TodoUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    planned_date: str | None = None
    pin_for_today: bool | None = None
    status: TodoStatus | None = None


class TodoRead(BaseModel):
    id: int
    title: str
    status: TodoStatus
    description: str | None = None
    planned_date: str | None = None
    pin_for_today: bool = False
    order: int


class DependencyCreate(BaseModel):
    blocking_task_id: int
    blocked_task_id: int


class DependencyRead(BaseModel):
    id: int
    blocking_task_id: int
    blocked_task_id: int
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    created_at: str


class DependentTaskRead(BaseModel):
    dependency_id: int
    task: TaskRead


class TaskDependencySummary(BaseModel):
    blocker_ids: list[int] = Field(default_factory=list)
    blocking_ids: list[int] = Field(default_factory=list)


class TaskIdsRequest(BaseModel):
    task_ids: list[int] = Field(default_factory=list)


class TodoLinkCreate(BaseModel):
    todo_id: int
    task_id: int


class TodoRelinkRequest(BaseModel):
    target_todo_id: int
    task_id: int
    source_todo_id: int | None = None


class TodoLinkRead(BaseModel):
    id: int
    todo_id: int
    task_id: int
    task_status: TaskStatus
    linked_at: str
    updated_at: str


class LinkedTodoMeta(BaseModel):
    task_id: int
    todo_id: int
    todo_title: str
    todo_status: TodoStatus


class LinkedTaskRead(BaseModel):
    link: TodoLinkRead
    task: TaskRead | None = None


class TodoStatusUpdate(BaseModel):
    status: TodoStatus
    cascade_children: bool = False


class ChecklistItemCreate(BaseModel):
    title: str = Field(min_length=1)


class ChecklistItemUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    status: ChecklistStatus | None = None


class ChecklistItemRead(BaseModel):
    id: int
    todo_id: int
    title: str
    status: ChecklistStatus
    order: int


class TodoProgress(BaseModel):
    total: int = 0
    completed: int = 0
    linked_count: int = 0
    linked_done: int = 0
    checklist_count: int = 0
    checklist_done: int = 0
    percentage: float = 0.0


class TodoWithLinks(BaseModel):
    todo: TodoRead
    checklist: list[ChecklistItemRead] = Field(default_factory=list)
    links: list[LinkedTaskRead] = Field(default_factory=list)
    progress: TodoProgress


class SubtaskCreate(BaseModel):
    title: str = Field(min_length=1)


class SubtaskBulkCreate(BaseModel):
    titles: list[str] = Field(min_length=1)


class SubtaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    status: SubtaskStatus | None = None


class SubtaskRead(BaseModel):
    id: int
    task_id: int
    title: str
    status: SubtaskStatus
    order: int
    created_at: str


class SubtaskProgress(BaseModel):
    completed: int = 0
    total: int = 0
    percentage: float = 0.0


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        if trimmed in normalized:
            continue
        normalized.append(trimmed)
    return normalized
