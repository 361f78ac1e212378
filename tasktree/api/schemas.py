"""Request and response bodies for the TaskTree API."""

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from tasktree.models import (
    ReorderAssignment,
    SubtaskNode,
    Task,
    TaskCreate,
    TaskFieldChanges,
    TaskUpdate,
)


class TaskCreateRequest(TaskCreate):
    """POST /api/tasks body; a parent makes the new task a subtask."""

    parent_task_id: Optional[UUID] = None
    sibling_order: Optional[int] = None

    def to_fields(self) -> TaskCreate:
        return TaskCreate(**self.model_dump(exclude={"parent_task_id", "sibling_order"}))


class SubtaskCreateRequest(TaskCreate):
    """POST /api/subtasks body."""

    parent_task_id: UUID
    sibling_order: Optional[int] = None

    def to_fields(self) -> TaskCreate:
        return TaskCreate(**self.model_dump(exclude={"parent_task_id", "sibling_order"}))


class TaskUpdateRequest(TaskFieldChanges):
    """
    PUT /api/tasks/{id} body.

    ``parent_task_id`` is the only name for the parent; an explicit ``null``
    converts the task to a root. Unknown keys are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    parent_task_id: Optional[UUID] = None

    def to_update(self) -> TaskUpdate:
        data = self.model_dump(exclude_unset=True)
        if "parent_task_id" in data:
            data["parent_id"] = data.pop("parent_task_id")
        return TaskUpdate(**data)


class ReorderRequest(BaseModel):
    """PUT /api/subtasks/reorder body."""

    parent_task_id: UUID
    subtask_orders: List[ReorderAssignment]


class ReorderResponse(BaseModel):
    updated_count: int


class DeleteResponse(BaseModel):
    task_id: UUID
    deleted_count: int


class FlatTreeResponse(BaseModel):
    """A task followed by its subtree as level-ordered rows."""

    task: Task
    subtasks: List[SubtaskNode] = Field(default_factory=list)
