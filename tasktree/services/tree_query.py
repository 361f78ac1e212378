"""
Tree query service for TaskTree.

Read-only views over the task table: subtree listings, nested trees,
ancestor chains and flat filtered listings. Nothing is cached; every call
re-derives its view from the committed rows.
"""

from collections import defaultdict
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import asc, case, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from tasktree.database import TaskORM
from tasktree.exceptions import TaskNotFoundError, TaskValidationError
from tasktree.logging_config import get_logger
from tasktree.models import (
    SortOrder,
    SubtaskNode,
    Task,
    TaskPriority,
    TaskQuery,
    TaskSortField,
    TaskStatus,
    TaskTreeNode,
)
from tasktree.services.hierarchy_validation import MAX_HIERARCHY_DEPTH
from tasktree.services.task_service import orm_to_task
from tasktree.utils.path_utils import build_path, descendant_prefix, path_depth, split_path

logger = get_logger(__name__)

TaskId = Union[UUID, str]

_PRIORITY_RANK = {
    TaskPriority.LOW.value: 0,
    TaskPriority.MEDIUM.value: 1,
    TaskPriority.HIGH.value: 2,
    TaskPriority.URGENT.value: 3,
}


def _to_subtask_node(task_orm: TaskORM) -> SubtaskNode:
    return SubtaskNode(
        task_id=UUID(task_orm.id),
        parent_task_id=UUID(task_orm.parent_id) if task_orm.parent_id else None,
        title=task_orm.title,
        status=task_orm.status,
        progress=task_orm.progress,
        hierarchy_level=task_orm.hierarchy_level,
        sibling_order=task_orm.sibling_order,
    )


class TreeQueryService:
    """Read-only traversal and filtering over the task forest."""

    def __init__(self, session: AsyncSession, max_depth: int = MAX_HIERARCHY_DEPTH) -> None:
        self.session = session
        self.max_depth = max_depth

    async def _get_task_or_raise(self, task_id: TaskId, field: Optional[str] = None) -> TaskORM:
        task_orm = await self.session.get(TaskORM, str(task_id))
        if task_orm is None:
            raise TaskNotFoundError(f"Task with id {task_id} not found", field=field, task_id=task_id)
        return task_orm

    async def _subtree_rows(
        self,
        root: TaskORM,
        max_depth: Optional[int],
        include_completed: bool,
    ) -> List[TaskORM]:
        """Descendants of ``root`` by path prefix, ordered by level then sibling order."""
        if max_depth is not None and max_depth < 1:
            raise TaskValidationError(
                f"max_depth must be at least 1, got {max_depth}", field="max_depth"
            )

        query = select(TaskORM).where(
            TaskORM.hierarchy_path.startswith(descendant_prefix(root.hierarchy_path), autoescape=True)
        )
        if max_depth is not None:
            query = query.where(TaskORM.hierarchy_level <= root.hierarchy_level + max_depth)
        if not include_completed:
            query = query.where(TaskORM.status != TaskStatus.COMPLETED.value)
        query = query.order_by(TaskORM.hierarchy_level, TaskORM.sibling_order)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_subtasks(
        self,
        parent_task_id: TaskId,
        max_depth: Optional[int] = None,
        include_completed: bool = True,
    ) -> List[SubtaskNode]:
        """
        List the subtree rooted at (but excluding) a task.

        Args:
            parent_task_id: Root of the subtree
            max_depth: Number of levels below the parent to include (None for all)
            include_completed: Whether completed tasks are listed

        Returns:
            Rows ordered by hierarchy level, then sibling order

        Raises:
            TaskNotFoundError: If the parent does not exist
            TaskValidationError: If max_depth is below 1
        """
        logger.debug(
            f"Listing subtasks: parent={parent_task_id}, max_depth={max_depth}, "
            f"include_completed={include_completed}"
        )
        parent = await self._get_task_or_raise(parent_task_id, field="parent_task_id")
        rows = await self._subtree_rows(parent, max_depth, include_completed)
        return [_to_subtask_node(row) for row in rows]

    async def get_task_tree(
        self,
        task_id: TaskId,
        max_depth: Optional[int] = None,
        include_completed: bool = True,
    ) -> TaskTreeNode:
        """
        Build the nested tree rooted at a task.

        A node filtered out by ``include_completed`` takes its subtree with it.

        Returns:
            TaskTreeNode with children sorted by sibling_order at every level
        """
        root = await self._get_task_or_raise(task_id)
        rows = await self._subtree_rows(root, max_depth, include_completed)

        tree = TaskTreeNode(task=orm_to_task(root))
        nodes: Dict[str, TaskTreeNode] = {root.id: tree}
        for row in rows:
            parent_node = nodes.get(row.parent_id)
            if parent_node is None:
                continue
            node = TaskTreeNode(task=orm_to_task(row))
            parent_node.subtasks.append(node)
            nodes[row.id] = node
        return tree

    async def get_children(self, parent_id: TaskId) -> List[Task]:
        """
        Get the direct children of a task ordered by sibling_order.

        Raises:
            TaskNotFoundError: If the parent does not exist
        """
        parent = await self._get_task_or_raise(parent_id, field="parent_task_id")
        result = await self.session.execute(
            select(TaskORM)
            .where(TaskORM.parent_id == parent.id)
            .order_by(TaskORM.sibling_order)
        )
        return [orm_to_task(row) for row in result.scalars().all()]

    async def get_ancestors(self, task_id: TaskId) -> List[Task]:
        """
        Get a task's ancestors from its materialized path.

        Returns:
            Ancestors ordered root first, ending with the direct parent
        """
        task_orm = await self._get_task_or_raise(task_id)
        ancestor_ids = split_path(task_orm.hierarchy_path)[:-1]
        if not ancestor_ids:
            return []
        result = await self.session.execute(
            select(TaskORM)
            .where(TaskORM.id.in_(ancestor_ids))
            .order_by(TaskORM.hierarchy_level)
        )
        return [orm_to_task(row) for row in result.scalars().all()]

    async def list_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        """
        Flat, filtered and sorted task listing.

        With ``parent_task_id``, ``include_subtasks`` selects the whole subtree
        (True) or only direct children (False). Without it,
        ``root_tasks_only`` or ``include_subtasks=False`` restricts the
        listing to roots.

        Args:
            query: Filters, sorting and paging (defaults apply when omitted)

        Returns:
            List of Task instances

        Raises:
            TaskNotFoundError: If parent_task_id does not exist
        """
        query = query or TaskQuery()
        logger.debug(f"Listing tasks: {query.model_dump(exclude_defaults=True)}")

        stmt = select(TaskORM)

        if query.parent_task_id is not None:
            parent = await self._get_task_or_raise(query.parent_task_id, field="parent_task_id")
            if query.include_subtasks:
                stmt = stmt.where(
                    TaskORM.hierarchy_path.startswith(
                        descendant_prefix(parent.hierarchy_path), autoescape=True
                    )
                )
            else:
                stmt = stmt.where(TaskORM.parent_id == parent.id)
        elif query.root_tasks_only or not query.include_subtasks:
            stmt = stmt.where(TaskORM.parent_id.is_(None))

        if query.hierarchy_level is not None:
            stmt = stmt.where(TaskORM.hierarchy_level == query.hierarchy_level)
        if query.status is not None:
            stmt = stmt.where(TaskORM.status == query.status.value)

        if query.sort_by == TaskSortField.PRIORITY:
            sort_column = case(_PRIORITY_RANK, value=TaskORM.priority, else_=-1)
        else:
            sort_column = getattr(TaskORM, query.sort_by.value)
        direction = asc if query.sort_order == SortOrder.ASC else desc
        stmt = stmt.order_by(direction(sort_column), TaskORM.sibling_order, TaskORM.id)

        stmt = stmt.offset(query.offset).limit(query.limit)

        result = await self.session.execute(stmt)
        return [orm_to_task(row) for row in result.scalars().all()]

    async def find_invariant_violations(self) -> List[str]:
        """
        Check the whole table for hierarchy inconsistencies.

        Covers level/parent agreement, path shape, the depth ceiling, sibling
        order uniqueness and the direct-child counters.

        Returns:
            Human-readable description of each violation (empty if consistent)
        """
        result = await self.session.execute(select(TaskORM))
        rows = list(result.scalars().all())
        by_id = {row.id: row for row in rows}

        problems: List[str] = []
        children = defaultdict(list)
        for row in rows:
            children[row.parent_id].append(row)

        for row in rows:
            parent = by_id.get(row.parent_id) if row.parent_id else None
            if row.parent_id is None:
                if row.hierarchy_level != 0:
                    problems.append(f"{row.id}: root at level {row.hierarchy_level}")
                expected_path = build_path(None, row.id)
            elif parent is None:
                problems.append(f"{row.id}: parent {row.parent_id} does not exist")
                continue
            else:
                if row.hierarchy_level != parent.hierarchy_level + 1:
                    problems.append(
                        f"{row.id}: level {row.hierarchy_level} under parent at "
                        f"level {parent.hierarchy_level}"
                    )
                expected_path = build_path(parent.hierarchy_path, row.id)

            if row.hierarchy_path != expected_path:
                problems.append(f"{row.id}: path '{row.hierarchy_path}' != '{expected_path}'")
            if path_depth(row.hierarchy_path) != row.hierarchy_level:
                problems.append(
                    f"{row.id}: path depth {path_depth(row.hierarchy_path)} != level {row.hierarchy_level}"
                )
            if row.hierarchy_level > self.max_depth - 1:
                problems.append(f"{row.id}: level {row.hierarchy_level} exceeds max depth")

            kids = children.get(row.id, [])
            completed = sum(1 for kid in kids if kid.status == TaskStatus.COMPLETED.value)
            if row.subtask_count != len(kids):
                problems.append(f"{row.id}: subtask_count {row.subtask_count} != {len(kids)}")
            if row.completed_subtask_count != completed:
                problems.append(
                    f"{row.id}: completed_subtask_count {row.completed_subtask_count} != {completed}"
                )

        for parent_id, siblings in children.items():
            seen: Dict[int, str] = {}
            for sibling in siblings:
                other = seen.get(sibling.sibling_order)
                if other is not None:
                    problems.append(
                        f"{sibling.id}: sibling_order {sibling.sibling_order} also used by {other}"
                    )
                seen[sibling.sibling_order] = sibling.id

        if problems:
            logger.warning(f"Hierarchy check found {len(problems)} problem(s)")
        else:
            logger.info(f"Hierarchy check passed for {len(rows)} task(s)")
        return problems
