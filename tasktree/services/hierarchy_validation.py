"""
Hierarchy validation for TaskTree.

Pure, side-effect-free checks run before any structural mutation. Callers
fetch whatever rows they need and hand them in; nothing here touches the
database.

Tasks can nest up to MAX_HIERARCHY_DEPTH levels (0-based, so the default of
10 allows levels 0-9).
"""

from enum import Enum
from typing import Any, Iterable, Optional, Protocol, Type

from tasktree.exceptions import (
    CycleDetectedError,
    DepthExceededError,
    InvalidEnumError,
    InvalidOrderError,
    TaskNotFoundError,
    TaskValidationError,
)
from tasktree.logging_config import get_logger
from tasktree.models import (
    CompletionBehavior,
    DescendantPolicy,
    ProgressCalculation,
    TaskPriority,
    TaskStatus,
)
from tasktree.utils.path_utils import is_same_or_descendant_path

logger = get_logger(__name__)

# Number of legal levels: 0 (roots) through MAX_HIERARCHY_DEPTH - 1
MAX_HIERARCHY_DEPTH = 10

MAX_REORDER_BATCH = 100

ENUM_FIELDS: dict[str, Type[Enum]] = {
    "status": TaskStatus,
    "priority": TaskPriority,
    "completion_behavior": CompletionBehavior,
    "progress_calculation": ProgressCalculation,
    "descendant_policy": DescendantPolicy,
}


class HierarchyNode(Protocol):
    """Anything carrying the hierarchy columns (ORM rows and Pydantic tasks alike)."""
    id: Any
    hierarchy_level: int
    hierarchy_path: str


def can_create_child(parent_level: int, max_depth: int = MAX_HIERARCHY_DEPTH) -> bool:
    """
    Check if a child task can be created under a parent at given level.

    Args:
        parent_level: The hierarchy level of the parent task (0-based)
        max_depth: Number of legal levels

    Returns:
        True if child can be created, False if parent is at max depth
    """
    return parent_level + 1 < max_depth


def validate_parent(
    child_id: Optional[Any],
    child_path: Optional[str],
    parent: Optional[HierarchyNode],
    proposed_parent_id: Any,
    max_depth: int = MAX_HIERARCHY_DEPTH,
) -> int:
    """
    Validate a proposed parent/child edge.

    Args:
        child_id: Id of the task being attached (None for a task not yet created)
        child_path: Current hierarchy path of that task (None if not yet created)
        parent: The proposed parent row, or None if the lookup found nothing
        proposed_parent_id: Id the caller asked for, used in error details
        max_depth: Number of legal levels

    Returns:
        The hierarchy level the child would take under this parent

    Raises:
        TaskNotFoundError: If the proposed parent does not exist
        CycleDetectedError: If the parent is the child itself or one of its descendants
        DepthExceededError: If the parent is already at the deepest level
    """
    if parent is None:
        raise TaskNotFoundError(
            f"Parent task with id {proposed_parent_id} not found",
            field="parent_task_id",
            task_id=proposed_parent_id,
        )

    if child_id is not None and child_path:
        # Prefix comparison on the materialized path; no link walking
        if is_same_or_descendant_path(parent.hierarchy_path, child_path):
            logger.warning(
                f"Cycle rejected: task {child_id} cannot move under {parent.id}"
            )
            raise CycleDetectedError(
                f"Task {child_id} cannot be placed under {parent.id}: "
                f"the proposed parent is the task itself or one of its descendants",
                field="parent_task_id",
                task_id=child_id,
            )

    if not can_create_child(parent.hierarchy_level, max_depth):
        logger.warning(
            f"Depth limit reached: parent_level={parent.hierarchy_level}, max_depth={max_depth}"
        )
        raise DepthExceededError(
            f"Parent task {parent.id} at level {parent.hierarchy_level} "
            f"has reached maximum hierarchy depth ({max_depth}).",
            field="parent_task_id",
            task_id=parent.id,
        )

    return parent.hierarchy_level + 1


def validate_subtree_depth(
    new_level: int,
    subtree_height: int,
    max_depth: int = MAX_HIERARCHY_DEPTH,
    task_id: Optional[Any] = None,
) -> None:
    """
    Validate that a moved subtree still fits under the depth ceiling.

    Args:
        new_level: Level the subtree's root would take
        subtree_height: Levels below the subtree root (0 for a leaf)
        max_depth: Number of legal levels
        task_id: Subtree root, used in error details

    Raises:
        DepthExceededError: If the deepest descendant would exceed the ceiling
    """
    deepest = new_level + subtree_height
    if deepest > max_depth - 1:
        logger.warning(
            f"Depth limit reached on move: deepest descendant would be at level {deepest}"
        )
        raise DepthExceededError(
            f"Moving task {task_id} would put a descendant at level {deepest}, "
            f"exceeding max depth {max_depth}.",
            field="parent_task_id",
            task_id=task_id,
        )


def validate_sibling_order(order: Any, task_id: Optional[Any] = None) -> int:
    """
    Validate a sibling order value.

    Raises:
        InvalidOrderError: If the order is not a non-negative integer
    """
    if isinstance(order, bool) or not isinstance(order, int) or order < 0:
        raise InvalidOrderError(
            f"Sibling order must be a non-negative integer, got {order!r}",
            field="sibling_order",
            task_id=task_id,
        )
    return order


def validate_enum(field: str, value: Any) -> Enum:
    """
    Validate a value against the declared set for a policy/status field.

    Args:
        field: One of the keys of ENUM_FIELDS
        value: Enum member or raw string

    Returns:
        The matching enum member

    Raises:
        InvalidEnumError: If the value is not in the declared set
    """
    enum_cls = ENUM_FIELDS.get(field)
    if enum_cls is None:
        raise InvalidEnumError(f"Unknown enumerated field '{field}'", field=field)
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidEnumError(
            f"Invalid value {value!r} for {field}; expected one of: {allowed}",
            field=field,
        ) from None


def validate_reorder_batch(
    assignments: Iterable[Any],
    max_batch: int = MAX_REORDER_BATCH,
) -> None:
    """
    Validate the shape of a reorder batch before any row is read.

    Args:
        assignments: Objects with ``task_id`` and ``new_order`` attributes
        max_batch: Largest accepted batch

    Raises:
        TaskValidationError: If the batch is empty, too large, or repeats a task or order
        InvalidOrderError: If any order is negative
    """
    assignments = list(assignments)
    if not assignments:
        raise TaskValidationError("Reorder batch must not be empty", field="subtask_orders")
    if len(assignments) > max_batch:
        raise TaskValidationError(
            f"Reorder batch has {len(assignments)} items; the limit is {max_batch}",
            field="subtask_orders",
        )

    seen_tasks = set()
    seen_orders = set()
    for assignment in assignments:
        validate_sibling_order(assignment.new_order, task_id=assignment.task_id)
        if assignment.task_id in seen_tasks:
            raise TaskValidationError(
                f"Task {assignment.task_id} appears more than once in the batch",
                field="task_id",
                task_id=assignment.task_id,
            )
        if assignment.new_order in seen_orders:
            raise TaskValidationError(
                f"Duplicate order value {assignment.new_order} in the batch",
                field="new_order",
                task_id=assignment.task_id,
            )
        seen_tasks.add(assignment.task_id)
        seen_orders.add(assignment.new_order)
