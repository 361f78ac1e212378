"""
Transactional entry points for TaskTree.

Each public method opens one session, runs one operation from the task,
reorder or query services inside it, and commits. An optional per-operation
timeout cancels the work before commit, so a timed-out call leaves no
partial writes behind.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from tasktree.config import HierarchySettings
from tasktree.database import DatabaseManager
from tasktree.exceptions import ConflictError
from tasktree.logging_config import get_logger
from tasktree.models import (
    DescendantPolicy,
    ReorderAssignment,
    SubtaskNode,
    Task,
    TaskCreate,
    TaskQuery,
    TaskTreeNode,
    TaskUpdate,
)
from tasktree.services.reorder_service import ReorderService
from tasktree.services.task_service import TaskService
from tasktree.services.tree_query import TreeQueryService

logger = get_logger(__name__)

T = TypeVar("T")
TaskId = Union[UUID, str]


class HierarchyService:
    """One transaction per call over the hierarchy engine."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        settings: Optional[HierarchySettings] = None,
    ) -> None:
        """
        Args:
            db_manager: Initialized database manager
            settings: Hierarchy limits and defaults (library defaults if omitted)
        """
        self.db_manager = db_manager
        self.settings = settings or HierarchySettings()

    async def _run(self, name: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def in_transaction() -> T:
            async with self.db_manager.get_session() as session:
                return await work(session)

        timeout = self.settings.operation_timeout
        if timeout is None:
            return await in_transaction()

        try:
            return await asyncio.wait_for(in_transaction(), timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Operation {name} timed out after {timeout}s; transaction rolled back")
            raise ConflictError(
                f"Operation {name} timed out after {timeout}s; no changes were committed"
            ) from e

    def _tasks(self, session: AsyncSession) -> TaskService:
        return TaskService(session, max_depth=self.settings.max_depth)

    def _queries(self, session: AsyncSession) -> TreeQueryService:
        return TreeQueryService(session, max_depth=self.settings.max_depth)

    # Queries

    async def get_subtasks(
        self,
        parent_task_id: TaskId,
        max_depth: Optional[int] = None,
        include_completed: bool = True,
    ) -> List[SubtaskNode]:
        return await self._run(
            "get_subtasks",
            lambda s: self._queries(s).get_subtasks(parent_task_id, max_depth, include_completed),
        )

    async def get_task(self, task_id: TaskId) -> Task:
        return await self._run("get_task", lambda s: self._tasks(s).get_task(task_id))

    async def get_task_tree(
        self,
        task_id: TaskId,
        max_depth: Optional[int] = None,
        include_completed: bool = True,
    ) -> TaskTreeNode:
        return await self._run(
            "get_task_tree",
            lambda s: self._queries(s).get_task_tree(task_id, max_depth, include_completed),
        )

    async def get_ancestors(self, task_id: TaskId) -> List[Task]:
        return await self._run("get_ancestors", lambda s: self._queries(s).get_ancestors(task_id))

    async def list_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        return await self._run("list_tasks", lambda s: self._queries(s).list_tasks(query))

    async def check_integrity(self) -> List[str]:
        """Return every hierarchy inconsistency found in the store."""
        return await self._run(
            "check_integrity", lambda s: self._queries(s).find_invariant_violations()
        )

    # Mutations

    async def create_task(
        self,
        fields: TaskCreate,
        parent_id: Optional[TaskId] = None,
        sibling_order: Optional[int] = None,
    ) -> Task:
        return await self._run(
            "create_task",
            lambda s: self._tasks(s).create_task(fields, parent_id=parent_id, sibling_order=sibling_order),
        )

    async def create_subtask(
        self,
        parent_task_id: TaskId,
        fields: TaskCreate,
        sibling_order: Optional[int] = None,
    ) -> Task:
        return await self._run(
            "create_subtask",
            lambda s: self._tasks(s).create_subtask(parent_task_id, fields, sibling_order),
        )

    async def update_task(self, task_id: TaskId, changes: TaskUpdate) -> Task:
        return await self._run("update_task", lambda s: self._tasks(s).update_task(task_id, changes))

    async def delete_task(
        self,
        task_id: TaskId,
        descendant_policy: Optional[Union[DescendantPolicy, str]] = None,
    ) -> int:
        """
        Delete a task; without an explicit policy the configured one applies.

        Returns:
            Number of tasks deleted
        """
        policy = descendant_policy or self.settings.delete_policy
        return await self._run("delete_task", lambda s: self._tasks(s).delete_task(task_id, policy))

    async def reorder_subtasks(
        self,
        parent_task_id: TaskId,
        assignments: Sequence[ReorderAssignment],
    ) -> int:
        return await self._run(
            "reorder_subtasks",
            lambda s: ReorderService(s, max_batch=self.settings.max_reorder_batch).reorder_siblings(
                parent_task_id, assignments
            ),
        )
