"""
Aggregation engine for TaskTree.

Keeps each task's ``subtask_count``/``completed_subtask_count`` equal to the
state of its direct children and, where the task's policies allow it,
derives the task's own status and progress from those children. Changes
propagate upward through ancestors until a ``manual`` policy (or an
unchanged value) stops them.

Policy evaluation is done by the pure functions at the top of the module;
``AggregationEngine`` only loads rows, applies results and recurses.
"""

from datetime import datetime
from math import floor
from typing import FrozenSet, List, Optional, Sequence, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tasktree.database import TaskORM
from tasktree.exceptions import TaskNotFoundError
from tasktree.logging_config import get_logger
from tasktree.models import CompletionBehavior, ProgressCalculation, TaskStatus

logger = get_logger(__name__)

COMPLETED = TaskStatus.COMPLETED.value


# ==============================================================================
# POLICY FUNCTIONS
# ==============================================================================

def completion_delta(old_status: str, new_status: str) -> int:
    """
    Change in a parent's completed count caused by one child's status change.

    Returns:
        +1 when entering completed, -1 when leaving it, 0 otherwise
    """
    was_completed = old_status == COMPLETED
    is_completed = new_status == COMPLETED
    if is_completed and not was_completed:
        return 1
    if was_completed and not is_completed:
        return -1
    return 0


def derive_status(
    completion_behavior: str,
    status: str,
    auto_completed: bool,
    subtask_count: int,
    completed_subtask_count: int,
) -> Optional[TaskStatus]:
    """
    Decide whether a task's status should be driven by its children.

    Args:
        completion_behavior: The task's completion policy
        status: The task's current status
        auto_completed: Whether the current completed status came from aggregation
        subtask_count: Number of direct children
        completed_subtask_count: Number of completed direct children

    Returns:
        The new status, or None if the status should stay as it is
    """
    if completion_behavior != CompletionBehavior.AUTO_WHEN_SUBTASKS_COMPLETE.value:
        return None

    all_done = subtask_count > 0 and completed_subtask_count == subtask_count
    if all_done and status != COMPLETED:
        return TaskStatus.COMPLETED
    # Removing finished children (down to none) is not a reopen
    reopened = subtask_count > 0 and completed_subtask_count < subtask_count
    if reopened and status == COMPLETED and auto_completed:
        return TaskStatus.IN_PROGRESS
    return None


def round_half_up(value: float) -> int:
    """Round a non-negative value to the nearest integer, halves going up."""
    return int(floor(value + 0.5))


def calculate_progress(
    progress_calculation: str,
    children: Sequence[Tuple[int, float]],
) -> Optional[int]:
    """
    Derive a task's progress from its direct children.

    Args:
        progress_calculation: The task's progress policy
        children: ``(progress, weight)`` for each direct child

    Returns:
        Progress in 0-100, or None when the policy is manual or there are no
        children (the task keeps its current progress)
    """
    if progress_calculation == ProgressCalculation.MANUAL.value or not children:
        return None

    if progress_calculation == ProgressCalculation.WEIGHTED_SUBTASKS.value:
        total_weight = sum(weight for _, weight in children)
        if total_weight > 0:
            value = sum(progress * weight for progress, weight in children) / total_weight
        else:
            value = sum(progress for progress, _ in children) / len(children)
    else:
        value = sum(progress for progress, _ in children) / len(children)

    return max(0, min(100, round_half_up(value)))


def apply_status_change(
    task: TaskORM,
    new_status: TaskStatus,
    auto: bool = False,
    fill_progress: bool = True,
) -> bool:
    """
    Set a task's status along with the fields that follow it.

    Entering completed stamps ``completed_at`` and, for manual-progress
    tasks, sets progress to 100 (unless ``fill_progress`` is False because
    the caller set progress explicitly). Leaving completed clears
    ``completed_at``.

    Returns:
        True if the task's progress changed as a side effect
    """
    old_status = task.status
    now = datetime.utcnow()
    progress_changed = False

    task.status = new_status.value
    task.auto_completed = auto and new_status == TaskStatus.COMPLETED
    task.updated_at = now

    if new_status == TaskStatus.COMPLETED:
        if old_status != COMPLETED:
            task.completed_at = now
        if (
            fill_progress
            and task.progress_calculation == ProgressCalculation.MANUAL.value
            and task.progress != 100
        ):
            task.progress = 100
            progress_changed = True
    else:
        task.completed_at = None

    return progress_changed


# ==============================================================================
# ENGINE
# ==============================================================================

class AggregationEngine:
    """
    Applies aggregate and derived-field updates inside the caller's transaction.

    ``explicit`` arguments name tasks whose own fields were set by the caller
    in the current request; derived recomputation never overwrites them.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _get(self, task_id: str) -> TaskORM:
        task = await self.session.get(TaskORM, str(task_id))
        if task is None:
            raise TaskNotFoundError(f"Task with id {task_id} not found", task_id=task_id)
        return task

    async def _child_progress(self, parent_id: str) -> List[Tuple[int, float]]:
        result = await self.session.execute(
            select(TaskORM.progress, TaskORM.weight).where(TaskORM.parent_id == str(parent_id))
        )
        return [(progress, weight) for progress, weight in result.all()]

    async def count_children(self, parent_id: str) -> Tuple[int, int]:
        """
        Count a task's direct children straight from the table.

        Returns:
            Tuple of (subtask_count, completed_subtask_count)
        """
        result = await self.session.execute(
            select(
                func.count(TaskORM.id),
                func.sum(case((TaskORM.status == COMPLETED, 1), else_=0)),
            ).where(TaskORM.parent_id == str(parent_id))
        )
        total, completed = result.one()
        return total or 0, completed or 0

    async def on_child_status_changed(
        self,
        child: TaskORM,
        old_status: str,
        new_status: str,
        explicit: FrozenSet[str] = frozenset(),
    ) -> None:
        """
        Update the parent after one child's status changed.

        Args:
            child: The child whose status changed (already holding new_status)
            old_status: Status before the change
            new_status: Status after the change
            explicit: Ids of tasks set directly by the caller in this request
        """
        if child.parent_id is None:
            return

        delta = completion_delta(old_status, new_status)
        if delta == 0:
            return

        parent = await self._get(child.parent_id)
        parent.completed_subtask_count += delta
        logger.debug(
            f"Completed count updated: task_id={parent.id}, "
            f"completed={parent.completed_subtask_count}/{parent.subtask_count}"
        )
        await self._apply_derived_status(parent, explicit)

    async def on_child_progress_changed(
        self,
        child: TaskORM,
        explicit: FrozenSet[str] = frozenset(),
    ) -> None:
        """
        Update the parent's derived progress after one child's progress or weight changed.

        Args:
            child: The child whose progress changed
            explicit: Ids of tasks set directly by the caller in this request
        """
        if child.parent_id is None:
            return
        parent = await self._get(child.parent_id)
        await self._apply_derived_progress(parent, explicit)

    async def on_children_changed(
        self,
        parent_id: Optional[str],
        explicit: FrozenSet[str] = frozenset(),
    ) -> None:
        """
        Recount a parent after children were added, removed or moved.

        Counters are taken from the table rather than adjusted, so the
        result is exact whatever mix of structural changes preceded it.
        """
        if parent_id is None:
            return
        parent = await self.session.get(TaskORM, str(parent_id))
        if parent is None:
            return

        total, completed = await self.count_children(parent.id)
        if (total, completed) != (parent.subtask_count, parent.completed_subtask_count):
            logger.debug(
                f"Child counts updated: task_id={parent.id}, "
                f"{parent.completed_subtask_count}/{parent.subtask_count} -> {completed}/{total}"
            )
            parent.subtask_count = total
            parent.completed_subtask_count = completed

        await self._apply_derived_status(parent, explicit)
        await self._apply_derived_progress(parent, explicit)

    async def reevaluate(
        self,
        task: TaskORM,
        explicit: FrozenSet[str] = frozenset(),
    ) -> None:
        """Re-derive a task's own status and progress, e.g. after a policy change."""
        await self._apply_derived_status(task, explicit)
        await self._apply_derived_progress(task, explicit)

    async def _apply_derived_status(self, task: TaskORM, explicit: FrozenSet[str]) -> None:
        if task.id in explicit:
            return

        new_status = derive_status(
            task.completion_behavior,
            task.status,
            task.auto_completed,
            task.subtask_count,
            task.completed_subtask_count,
        )
        if new_status is None:
            return

        old_status = task.status
        progress_changed = apply_status_change(task, new_status, auto=True)
        logger.info(
            f"Status derived from subtasks: task_id={task.id}, {old_status} -> {new_status.value}"
        )

        await self.on_child_status_changed(task, old_status, new_status.value, explicit)
        if progress_changed:
            await self.on_child_progress_changed(task, explicit)

    async def _apply_derived_progress(self, task: TaskORM, explicit: FrozenSet[str]) -> None:
        if task.id in explicit:
            return
        if task.progress_calculation == ProgressCalculation.MANUAL.value:
            return

        children = await self._child_progress(task.id)
        new_progress = calculate_progress(task.progress_calculation, children)
        if new_progress is None or new_progress == task.progress:
            return

        logger.debug(
            f"Progress derived from subtasks: task_id={task.id}, "
            f"{task.progress} -> {new_progress} ({task.progress_calculation})"
        )
        task.progress = new_progress
        task.updated_at = datetime.utcnow()

        await self.on_child_progress_changed(task, explicit)
