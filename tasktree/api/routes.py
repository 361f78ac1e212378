"""
HTTP routes for TaskTree.

Thin handlers: each one validates its inputs, makes a single
HierarchyService call and returns the result. Engine errors propagate to
the handlers registered in tasktree.api.errors.
"""

from typing import List, Literal, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import ValidationError

from tasktree.api.errors import task_validation_error
from tasktree.api.schemas import (
    DeleteResponse,
    FlatTreeResponse,
    ReorderRequest,
    ReorderResponse,
    SubtaskCreateRequest,
    TaskCreateRequest,
    TaskUpdateRequest,
)
from tasktree.logging_config import get_logger
from tasktree.models import (
    DescendantPolicy,
    SortOrder,
    SubtaskNode,
    Task,
    TaskQuery,
    TaskSortField,
    TaskStatus,
    TaskTreeNode,
)
from tasktree.services.hierarchy_service import HierarchyService

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def get_hierarchy_service(request: Request) -> HierarchyService:
    return request.app.state.hierarchy_service


# ==============================================================================
# SUBTASKS
# ==============================================================================

@router.get("/subtasks", response_model=List[SubtaskNode])
async def list_subtasks(
    parent_task_id: UUID = Query(..., description="Root of the listed subtree (excluded)"),
    max_depth: Optional[int] = Query(None, ge=1, description="Relative levels to include"),
    include_completed: bool = Query(True),
    service: HierarchyService = Depends(get_hierarchy_service),
):
    """List the subtree under a task, ordered by level then sibling order."""
    return await service.get_subtasks(parent_task_id, max_depth, include_completed)


@router.post("/subtasks", response_model=Task, status_code=status.HTTP_201_CREATED)
async def create_subtask(
    payload: SubtaskCreateRequest,
    service: HierarchyService = Depends(get_hierarchy_service),
):
    """Create a subtask under an existing task."""
    return await service.create_subtask(
        payload.parent_task_id, payload.to_fields(), payload.sibling_order
    )


@router.put("/subtasks/reorder", response_model=ReorderResponse)
async def reorder_subtasks(
    payload: ReorderRequest,
    service: HierarchyService = Depends(get_hierarchy_service),
):
    """Reassign sibling orders for children of one parent in a single transaction."""
    updated = await service.reorder_subtasks(payload.parent_task_id, payload.subtask_orders)
    return ReorderResponse(updated_count=updated)


# ==============================================================================
# TASKS
# ==============================================================================

@router.get("/tasks", response_model=List[Task])
async def list_tasks(
    parent_task_id: Optional[UUID] = Query(None),
    root_tasks_only: bool = Query(False),
    hierarchy_level: Optional[int] = Query(None, ge=0),
    include_subtasks: bool = Query(True),
    task_status: Optional[TaskStatus] = Query(None, alias="status"),
    sort_by: TaskSortField = Query(TaskSortField.CREATED_AT),
    sort_order: SortOrder = Query(SortOrder.DESC),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: HierarchyService = Depends(get_hierarchy_service),
):
    """Flat filtered and sorted task listing."""
    try:
        query = TaskQuery(
            parent_task_id=parent_task_id,
            root_tasks_only=root_tasks_only,
            hierarchy_level=hierarchy_level,
            include_subtasks=include_subtasks,
            status=task_status,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
    except ValidationError as e:
        raise task_validation_error(e) from e
    return await service.list_tasks(query)


@router.post("/tasks", response_model=Task, status_code=status.HTTP_201_CREATED)
async def create_task(
    payload: TaskCreateRequest,
    service: HierarchyService = Depends(get_hierarchy_service),
):
    """Create a root task, or a subtask when parent_task_id is given."""
    return await service.create_task(
        payload.to_fields(), parent_id=payload.parent_task_id, sibling_order=payload.sibling_order
    )


@router.get("/tasks/{task_id}", response_model=Task)
async def get_task(
    task_id: UUID,
    service: HierarchyService = Depends(get_hierarchy_service),
):
    return await service.get_task(task_id)


@router.put("/tasks/{task_id}", response_model=Task)
async def update_task(
    task_id: UUID,
    payload: TaskUpdateRequest,
    service: HierarchyService = Depends(get_hierarchy_service),
):
    """
    Partially update a task.

    ``parent_task_id`` reparents (``null`` makes the task a root);
    ``status``/``progress`` propagate to ancestors per their policies.
    """
    return await service.update_task(task_id, payload.to_update())


@router.delete("/tasks/{task_id}", response_model=DeleteResponse)
async def delete_task(
    task_id: UUID,
    descendant_policy: Optional[DescendantPolicy] = Query(
        None, description="Defaults to the configured policy"
    ),
    service: HierarchyService = Depends(get_hierarchy_service),
):
    deleted = await service.delete_task(task_id, descendant_policy)
    return DeleteResponse(task_id=task_id, deleted_count=deleted)


@router.get("/tasks/{task_id}/tree", response_model=Union[TaskTreeNode, FlatTreeResponse])
async def get_task_tree(
    task_id: UUID,
    format: Literal["tree", "flat"] = Query("tree"),
    max_depth: Optional[int] = Query(None, ge=1),
    include_completed: bool = Query(True),
    service: HierarchyService = Depends(get_hierarchy_service),
):
    """Return a task with its subtree, nested (``tree``) or as level-ordered rows (``flat``)."""
    if format == "flat":
        task = await service.get_task(task_id)
        subtasks = await service.get_subtasks(task_id, max_depth, include_completed)
        return FlatTreeResponse(task=task, subtasks=subtasks)
    return await service.get_task_tree(task_id, max_depth, include_completed)
