"""
Reorder service for TaskTree.

Reassigns sibling_order for a batch of tasks sharing one parent in a single
transaction. Siblings not named in the batch keep their current order.
"""

from datetime import datetime
from typing import Dict, List, Sequence, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tasktree.database import TaskORM
from tasktree.exceptions import TaskNotFoundError, TaskValidationError
from tasktree.logging_config import get_logger
from tasktree.models import ReorderAssignment
from tasktree.services.hierarchy_validation import MAX_REORDER_BATCH, validate_reorder_batch

logger = get_logger(__name__)


class ReorderService:
    """Applies sibling-order batches under one parent."""

    def __init__(self, session: AsyncSession, max_batch: int = MAX_REORDER_BATCH) -> None:
        """
        Initialize reorder service with database session.

        Args:
            session: Active async database session
            max_batch: Largest accepted number of assignments
        """
        self.session = session
        self.max_batch = max_batch

    async def _load_batch(
        self,
        parent_id: str,
        assignments: Sequence[ReorderAssignment],
    ) -> Dict[str, TaskORM]:
        """
        Load every task named in the batch and check it belongs to the parent.

        Raises:
            TaskNotFoundError: If a task in the batch does not exist
            TaskValidationError: If a task exists but is not a direct child of the parent
        """
        ids = [str(assignment.task_id) for assignment in assignments]
        result = await self.session.execute(select(TaskORM).where(TaskORM.id.in_(ids)))
        rows = {row.id: row for row in result.scalars().all()}

        for task_id in ids:
            row = rows.get(task_id)
            if row is None:
                raise TaskNotFoundError(
                    f"Task with id {task_id} not found", field="task_id", task_id=task_id
                )
            if row.parent_id != parent_id:
                logger.warning(f"Reorder rejected: task {task_id} is not a child of {parent_id}")
                raise TaskValidationError(
                    f"Task {task_id} is not a direct child of {parent_id}",
                    field="task_id",
                    task_id=task_id,
                )
        return rows

    async def reorder_siblings(
        self,
        parent_id: Union[UUID, str],
        assignments: Sequence[ReorderAssignment],
    ) -> int:
        """
        Reassign sibling orders for direct children of a parent.

        Orders are written in two passes: every assigned row first moves to a
        temporary order above all current and requested values, then to its
        final order. The unique (parent_id, sibling_order) index therefore
        never sees an intermediate collision, even for swaps and rotations.

        Args:
            parent_id: UUID of the parent whose children are reordered
            assignments: ``task_id``/``new_order`` pairs

        Returns:
            Number of rows updated

        Raises:
            TaskValidationError: If the batch is empty, too large, repeats a task
                or an order, names a task under another parent, or collides
                with a sibling left out of the batch
            InvalidOrderError: If an order is negative
            TaskNotFoundError: If the parent or a task in the batch does not exist
        """
        assignments = list(assignments)
        logger.debug(f"Reordering {len(assignments)} children of {parent_id}")

        validate_reorder_batch(assignments, self.max_batch)

        parent_orm = await self.session.get(TaskORM, str(parent_id))
        if parent_orm is None:
            raise TaskNotFoundError(
                f"Parent task with id {parent_id} not found",
                field="parent_task_id",
                task_id=parent_id,
            )

        rows = await self._load_batch(parent_orm.id, assignments)

        result = await self.session.execute(
            select(TaskORM.id, TaskORM.sibling_order).where(TaskORM.parent_id == parent_orm.id)
        )
        siblings: List[tuple] = list(result.all())

        untouched = {order: task_id for task_id, order in siblings if task_id not in rows}
        for assignment in assignments:
            holder = untouched.get(assignment.new_order)
            if holder is not None:
                raise TaskValidationError(
                    f"Order {assignment.new_order} is held by task {holder}, "
                    f"which is not part of the batch",
                    field="new_order",
                    task_id=assignment.task_id,
                )

        ceiling = max(
            [order for _, order in siblings] + [a.new_order for a in assignments]
        )
        for offset, assignment in enumerate(assignments):
            rows[str(assignment.task_id)].sibling_order = ceiling + 1 + offset
        await self.session.flush()

        now = datetime.utcnow()
        for assignment in assignments:
            row = rows[str(assignment.task_id)]
            row.sibling_order = assignment.new_order
            row.updated_at = now
        await self.session.flush()

        logger.info(f"Reordered children of {parent_orm.id}: updated={len(assignments)}")
        return len(assignments)
