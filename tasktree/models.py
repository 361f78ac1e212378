"""
Pydantic models for TaskTree.

Defines the task entity with its hierarchy metadata, the closed policy
enums that drive aggregation, and the request/response shapes used by the
tree query and mutation services.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, model_validator

from tasktree.utils.path_utils import split_path

# Absolute ceiling for any configured depth; the engine default is 10 levels (0-9)
ABSOLUTE_MAX_LEVEL = 31


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


class TaskPriority(str, Enum):
    """Task priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CompletionBehavior(str, Enum):
    """Whether a task's status may be driven by its children."""
    MANUAL = "manual"
    AUTO_WHEN_SUBTASKS_COMPLETE = "auto_when_subtasks_complete"


class ProgressCalculation(str, Enum):
    """Whether a task's progress is set directly or derived from its children."""
    MANUAL = "manual"
    AVERAGE_SUBTASKS = "average_subtasks"
    WEIGHTED_SUBTASKS = "weighted_subtasks"


class DescendantPolicy(str, Enum):
    """What happens to the children of a deleted task."""
    REPARENT_TO_GRANDPARENT = "reparent_to_grandparent"
    CASCADE_DELETE = "cascade_delete"


class TaskSortField(str, Enum):
    """Sortable columns for flat task listings."""
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    TITLE = "title"
    PRIORITY = "priority"
    HIERARCHY_LEVEL = "hierarchy_level"
    SIBLING_ORDER = "sibling_order"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class Task(BaseModel):
    """
    Represents a single task with its hierarchy metadata.

    Hierarchy fields (level, path, counters) are derived by the engine and
    are never set directly by callers.
    """

    id: UUID = Field(default_factory=uuid4, description="Unique identifier for the task")
    title: str = Field(..., min_length=1, max_length=200, description="Task title")
    description: Optional[str] = Field(default=None, description="Optional task description")
    notes: Optional[str] = Field(default=None, max_length=5000, description="Optional task notes")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    due_date: Optional[datetime] = Field(default=None)
    estimated_duration: Optional[int] = Field(default=None, gt=0, description="Estimate in minutes")
    assignee: Optional[str] = Field(default=None)

    # Status and progress
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    progress: int = Field(default=0, ge=0, le=100)
    weight: float = Field(default=1.0, gt=0, description="Weight used by weighted_subtasks parents")
    auto_completed: bool = Field(default=False, description="Status was set by aggregation")

    # Hierarchy
    parent_id: Optional[UUID] = Field(default=None, description="Parent task ID; None for roots")
    hierarchy_level: int = Field(default=0, ge=0, le=ABSOLUTE_MAX_LEVEL)
    hierarchy_path: str = Field(default="", description="Root-to-self chain of task ids")
    sibling_order: int = Field(default=0, ge=0, description="Order within siblings")
    subtask_count: int = Field(default=0, ge=0)
    completed_subtask_count: int = Field(default=0, ge=0)

    # Policies
    completion_behavior: CompletionBehavior = Field(default=CompletionBehavior.MANUAL)
    progress_calculation: ProgressCalculation = Field(default=ProgressCalculation.MANUAL)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Last update timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Completion timestamp")

    class Config:
        """Pydantic configuration."""
        json_schema_extra = {
            "example": {
                "id": "123e4567-e89b-12d3-a456-426614174001",
                "title": "Research user requirements",
                "status": "pending",
                "progress": 0,
                "parent_id": "123e4567-e89b-12d3-a456-426614174000",
                "hierarchy_level": 1,
                "hierarchy_path": (
                    "123e4567-e89b-12d3-a456-426614174000/"
                    "123e4567-e89b-12d3-a456-426614174001"
                ),
                "sibling_order": 0,
                "subtask_count": 0,
                "completed_subtask_count": 0,
                "completion_behavior": "manual",
                "progress_calculation": "manual",
            }
        }

    @model_validator(mode='after')
    def validate_hierarchy_consistency(self) -> 'Task':
        """
        Validate that level, parent and path agree with each other.

        Returns:
            The validated task instance

        Raises:
            ValueError: If hierarchy fields are inconsistent
        """
        # Level 0 iff root
        if self.hierarchy_level == 0 and self.parent_id is not None:
            raise ValueError("Level 0 tasks cannot have a parent_id")
        if self.hierarchy_level > 0 and self.parent_id is None:
            raise ValueError(f"Level {self.hierarchy_level} tasks must have a parent_id")

        if self.hierarchy_path:
            segments = split_path(self.hierarchy_path)
            if segments[-1] != str(self.id):
                raise ValueError("hierarchy_path must end with the task's own id")
            if len(segments) != self.hierarchy_level + 1:
                raise ValueError(
                    f"hierarchy_path has {len(segments)} segments but level is {self.hierarchy_level}"
                )
            if self.parent_id is not None and segments[-2] != str(self.parent_id):
                raise ValueError("hierarchy_path must pass through parent_id")

        if self.completed_subtask_count > self.subtask_count:
            raise ValueError("completed_subtask_count cannot exceed subtask_count")

        return self

    @computed_field
    @property
    def progress_string(self) -> str:
        """
        Progress string for tasks with children (e.g., "2/5").

        Returns:
            Completed/total direct children, or empty string if no children
        """
        if self.subtask_count == 0:
            return ""
        return f"{self.completed_subtask_count}/{self.subtask_count}"

    @computed_field
    @property
    def has_children(self) -> bool:
        """Check if this task has any direct children."""
        return self.subtask_count > 0

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class TaskCreate(BaseModel):
    """Caller-settable fields for a new task."""

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=5000)
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    estimated_duration: Optional[int] = Field(default=None, gt=0)
    assignee: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    weight: float = Field(default=1.0, gt=0)
    completion_behavior: CompletionBehavior = CompletionBehavior.MANUAL
    progress_calculation: ProgressCalculation = ProgressCalculation.MANUAL


class TaskFieldChanges(BaseModel):
    """Partial update of a task's own fields, leaving its parent alone."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=5000)
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    estimated_duration: Optional[int] = Field(default=None, gt=0)
    assignee: Optional[str] = None
    status: Optional[TaskStatus] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    weight: Optional[float] = Field(default=None, gt=0)
    completion_behavior: Optional[CompletionBehavior] = None
    progress_calculation: Optional[ProgressCalculation] = None
    sibling_order: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode='after')
    def reject_null_for_required_columns(self) -> 'TaskFieldChanges':
        """Only the free-text and optional columns may be cleared with null."""
        non_nullable = (
            "title", "priority", "status", "progress", "weight",
            "completion_behavior", "progress_calculation", "sibling_order",
        )
        for name in non_nullable:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class TaskUpdate(TaskFieldChanges):
    """
    Partial update of a task.

    Only fields present in ``model_fields_set`` are applied, so an explicit
    ``parent_id: null`` (convert to root) is distinguishable from an absent
    ``parent_id`` (leave the parent alone).
    """

    parent_id: Optional[UUID] = None


class SubtaskNode(BaseModel):
    """One row of a subtree listing."""

    task_id: UUID
    parent_task_id: Optional[UUID]
    title: str
    status: TaskStatus
    progress: int
    hierarchy_level: int
    sibling_order: int


class TaskTreeNode(BaseModel):
    """A task with its children nested beneath it, ordered by sibling_order."""

    task: Task
    subtasks: List["TaskTreeNode"] = Field(default_factory=list)


class ReorderAssignment(BaseModel):
    """A single sibling-order change within a reorder batch."""

    task_id: UUID
    new_order: int = Field(..., ge=0)


class TaskQuery(BaseModel):
    """Filters and sorting for flat task listings."""

    parent_task_id: Optional[UUID] = None
    root_tasks_only: bool = False
    hierarchy_level: Optional[int] = Field(default=None, ge=0)
    include_subtasks: bool = True
    status: Optional[TaskStatus] = None
    sort_by: TaskSortField = TaskSortField.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)

    @model_validator(mode='after')
    def validate_filters(self) -> 'TaskQuery':
        """
        Reject contradictory hierarchy filters.

        Raises:
            ValueError: If root_tasks_only is combined with parent_task_id
        """
        if self.root_tasks_only and self.parent_task_id is not None:
            raise ValueError("root_tasks_only cannot be combined with parent_task_id")
        return self


TaskTreeNode.model_rebuild()
