"""
Task service for TaskTree.

Implements the structural operations on the task forest: creating roots and
subtasks, reparenting, deleting with an explicit descendant policy, and
field updates. Every structural change keeps level, materialized path and
sibling order consistent for the task and all of its descendants, and hands
counter/derived-field updates to the aggregation engine in the same
transaction.
"""

from datetime import datetime
from typing import List, Optional, Union
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tasktree.database import TaskORM
from tasktree.exceptions import (
    InvalidOrderError,
    TaskNotFoundError,
    TaskTreeError,
    TaskValidationError,
)
from tasktree.logging_config import get_logger
from tasktree.models import (
    DescendantPolicy,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
)
from tasktree.services.aggregation import AggregationEngine, apply_status_change
from tasktree.services.hierarchy_validation import (
    MAX_HIERARCHY_DEPTH,
    validate_enum,
    validate_parent,
    validate_sibling_order,
    validate_subtree_depth,
)
from tasktree.utils.path_utils import build_path, descendant_prefix, rebase_path, remove_segment

logger = get_logger(__name__)

TaskId = Union[UUID, str]

# Plain columns a caller may update without touching the hierarchy
_PLAIN_FIELDS = (
    "title", "description", "notes", "priority", "due_date", "estimated_duration", "assignee",
)
_POLICY_FIELDS = ("completion_behavior", "progress_calculation")


def orm_to_task(task_orm: TaskORM) -> Task:
    """
    Convert TaskORM to Pydantic Task model.

    Args:
        task_orm: SQLAlchemy ORM task instance

    Returns:
        Pydantic Task instance
    """
    return Task.model_validate(
        {
            "id": UUID(task_orm.id),
            "title": task_orm.title,
            "description": task_orm.description,
            "notes": task_orm.notes,
            "priority": task_orm.priority,
            "due_date": task_orm.due_date,
            "estimated_duration": task_orm.estimated_duration,
            "assignee": task_orm.assignee,
            "status": task_orm.status,
            "progress": task_orm.progress,
            "weight": task_orm.weight,
            "auto_completed": task_orm.auto_completed,
            "parent_id": UUID(task_orm.parent_id) if task_orm.parent_id else None,
            "hierarchy_level": task_orm.hierarchy_level,
            "hierarchy_path": task_orm.hierarchy_path,
            "sibling_order": task_orm.sibling_order,
            "subtask_count": task_orm.subtask_count,
            "completed_subtask_count": task_orm.completed_subtask_count,
            "completion_behavior": task_orm.completion_behavior,
            "progress_calculation": task_orm.progress_calculation,
            "created_at": task_orm.created_at,
            "updated_at": task_orm.updated_at,
            "completed_at": task_orm.completed_at,
        }
    )


def _enum_value(value):
    return getattr(value, "value", value)


class TaskService:
    """
    Service layer for structural task operations.

    Handles creation, reparenting, deletion and updates with hierarchy
    validation. All work happens on the session it is given; the caller
    owns the transaction.
    """

    def __init__(self, session: AsyncSession, max_depth: int = MAX_HIERARCHY_DEPTH) -> None:
        """
        Initialize task service with database session.

        Args:
            session: Active async database session
            max_depth: Number of legal hierarchy levels
        """
        self.session = session
        self.max_depth = max_depth
        self.aggregation = AggregationEngine(session)

    # ==============================================================================
    # LOOKUP HELPERS
    # ==============================================================================

    async def _get_task_or_none(self, task_id: TaskId) -> Optional[TaskORM]:
        return await self.session.get(TaskORM, str(task_id))

    async def _get_task_or_raise(self, task_id: TaskId, field: Optional[str] = None) -> TaskORM:
        """
        Get a task by ID or raise an exception.

        Args:
            task_id: UUID of the task
            field: Request field the id came from, for error details

        Returns:
            TaskORM instance

        Raises:
            TaskNotFoundError: If task does not exist
        """
        task_orm = await self._get_task_or_none(task_id)
        if not task_orm:
            raise TaskNotFoundError(f"Task with id {task_id} not found", field=field, task_id=task_id)
        return task_orm

    def _sibling_filter(self, parent_id: Optional[str]):
        if parent_id is None:
            return TaskORM.parent_id.is_(None)
        return TaskORM.parent_id == str(parent_id)

    async def _get_next_sibling_order(self, parent_id: Optional[str]) -> int:
        """
        Get the next sibling order under a parent (or among roots).

        Returns:
            max(sibling_order) + 1, or 0 if there are no siblings yet
        """
        result = await self.session.execute(
            select(func.max(TaskORM.sibling_order)).where(self._sibling_filter(parent_id))
        )
        current_max = result.scalar_one_or_none()
        return 0 if current_max is None else current_max + 1

    async def _ensure_order_available(
        self,
        parent_id: Optional[str],
        order: int,
        exclude_id: Optional[str] = None,
    ) -> None:
        """
        Raise if a sibling already holds the requested order.

        Raises:
            InvalidOrderError: If the order is taken
        """
        query = select(TaskORM.id).where(
            self._sibling_filter(parent_id),
            TaskORM.sibling_order == order,
        )
        if exclude_id is not None:
            query = query.where(TaskORM.id != str(exclude_id))
        result = await self.session.execute(query.limit(1))
        holder = result.scalar_one_or_none()
        if holder is not None:
            raise InvalidOrderError(
                f"Sibling order {order} is already used by task {holder}",
                field="sibling_order",
                task_id=holder,
            )

    async def _get_descendants(self, task_orm: TaskORM) -> List[TaskORM]:
        """
        Get every descendant of a task through its materialized path.

        Returns:
            Descendant rows ordered by level, then sibling order
        """
        result = await self.session.execute(
            select(TaskORM)
            .where(TaskORM.hierarchy_path.startswith(
                descendant_prefix(task_orm.hierarchy_path), autoescape=True
            ))
            .order_by(TaskORM.hierarchy_level, TaskORM.sibling_order)
        )
        return list(result.scalars().all())

    # ==============================================================================
    # CREATE OPERATIONS
    # ==============================================================================

    async def create_task(
        self,
        fields: TaskCreate,
        parent_id: Optional[TaskId] = None,
        sibling_order: Optional[int] = None,
        task_id: Optional[UUID] = None,
    ) -> Task:
        """
        Create a new task (root or subtask).

        Args:
            fields: Caller-settable task fields
            parent_id: Optional parent task UUID (for subtasks)
            sibling_order: Optional order among siblings (next free order if omitted)
            task_id: Optional UUID for the task

        Returns:
            Created Task with derived hierarchy fields

        Raises:
            TaskNotFoundError: If parent task does not exist
            DepthExceededError: If the parent is at the deepest level
            InvalidOrderError: If sibling_order is negative or already used
        """
        try:
            logger.debug(f"Creating task: title='{fields.title}', parent_id={parent_id}")

            new_id = str(task_id or uuid4())

            parent_orm = None
            level = 0
            if parent_id is not None:
                parent_orm = await self._get_task_or_none(parent_id)
                level = validate_parent(None, None, parent_orm, parent_id, self.max_depth)
            parent_key = parent_orm.id if parent_orm else None

            if sibling_order is None:
                sibling_order = await self._get_next_sibling_order(parent_key)
            else:
                validate_sibling_order(sibling_order)
                await self._ensure_order_available(parent_key, sibling_order)

            now = datetime.utcnow()
            status = TaskStatus(fields.status)
            task_orm = TaskORM(
                id=new_id,
                title=fields.title,
                description=fields.description,
                notes=fields.notes,
                priority=_enum_value(fields.priority),
                due_date=fields.due_date,
                estimated_duration=fields.estimated_duration,
                assignee=fields.assignee,
                status=status.value,
                progress=fields.progress,
                weight=fields.weight,
                auto_completed=False,
                parent_id=parent_key,
                hierarchy_level=level,
                hierarchy_path=build_path(parent_orm.hierarchy_path if parent_orm else None, new_id),
                sibling_order=sibling_order,
                subtask_count=0,
                completed_subtask_count=0,
                completion_behavior=_enum_value(fields.completion_behavior),
                progress_calculation=_enum_value(fields.progress_calculation),
                created_at=now,
                updated_at=now,
                completed_at=now if status == TaskStatus.COMPLETED else None,
            )
            self.session.add(task_orm)
            await self.session.flush()

            await self.aggregation.on_children_changed(parent_key)

            logger.info(
                f"Created task: id={new_id}, title='{fields.title}', "
                f"level={level}, parent_id={parent_key}, order={sibling_order}"
            )
            return orm_to_task(task_orm)
        except TaskTreeError as e:
            logger.warning(f"Failed to create task: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to create task: {e}", exc_info=True)
            raise

    async def create_root(self, fields: TaskCreate, sibling_order: Optional[int] = None) -> Task:
        """Create a top-level task."""
        return await self.create_task(fields, parent_id=None, sibling_order=sibling_order)

    async def create_subtask(
        self,
        parent_id: TaskId,
        fields: TaskCreate,
        sibling_order: Optional[int] = None,
    ) -> Task:
        """
        Create a subtask under an existing task.

        The parent's subtask_count (and derived status/progress, per its
        policies) is updated in the same transaction.
        """
        return await self.create_task(fields, parent_id=parent_id, sibling_order=sibling_order)

    # ==============================================================================
    # READ OPERATIONS
    # ==============================================================================

    async def get_task_by_id(self, task_id: TaskId) -> Optional[Task]:
        """
        Get a task by its ID.

        Returns:
            Task instance or None if not found
        """
        task_orm = await self._get_task_or_none(task_id)
        if not task_orm:
            return None
        return orm_to_task(task_orm)

    async def get_task(self, task_id: TaskId) -> Task:
        """Get a task by its ID, raising TaskNotFoundError if it does not exist."""
        return orm_to_task(await self._get_task_or_raise(task_id))

    # ==============================================================================
    # UPDATE OPERATIONS
    # ==============================================================================

    async def update_task(self, task_id: TaskId, changes: TaskUpdate) -> Task:
        """
        Apply a partial update to a task.

        Setting ``parent_id`` reparents the task (``None`` makes it a root);
        ``sibling_order`` moves it among its siblings; ``status``/``progress``
        trigger ancestor aggregation. Values set here win over any derived
        recomputation of the same task within this call.

        Args:
            task_id: UUID of the task to update
            changes: Fields to change; only explicitly set fields are applied

        Returns:
            Updated Task instance

        Raises:
            TaskValidationError: If no fields are provided
            TaskNotFoundError: If the task or a new parent does not exist
            DepthExceededError / CycleDetectedError: On an invalid reparent
            InvalidOrderError: If the requested order is taken
        """
        try:
            fields = changes.model_fields_set
            if not fields:
                raise TaskValidationError("At least one field must be provided", task_id=task_id)

            logger.debug(f"Updating task {task_id}: fields={sorted(fields)}")

            task_orm = await self._get_task_or_raise(task_id)

            # Hierarchy placement first so aggregation below sees the final parent
            if "parent_id" in fields:
                new_parent = str(changes.parent_id) if changes.parent_id is not None else None
                order = changes.sibling_order if "sibling_order" in fields else None
                if new_parent != task_orm.parent_id:
                    await self._reparent(task_orm, new_parent, order)
                elif order is not None:
                    await self._set_sibling_order(task_orm, order)
            elif "sibling_order" in fields:
                await self._set_sibling_order(task_orm, changes.sibling_order)

            for name in _PLAIN_FIELDS:
                if name in fields:
                    setattr(task_orm, name, _enum_value(getattr(changes, name)))

            policy_changed = False
            for name in _POLICY_FIELDS:
                if name in fields:
                    value = validate_enum(name, getattr(changes, name)).value
                    if value != getattr(task_orm, name):
                        setattr(task_orm, name, value)
                        policy_changed = True

            status_set = "status" in fields
            progress_set = "progress" in fields
            explicit = frozenset({task_orm.id}) if (status_set or progress_set) else frozenset()

            if status_set:
                new_status = validate_enum("status", changes.status)
                old_status = task_orm.status
                if new_status.value != old_status:
                    progress_filled = apply_status_change(
                        task_orm, new_status, auto=False, fill_progress=not progress_set
                    )
                    await self.aggregation.on_child_status_changed(
                        task_orm, old_status, new_status.value, explicit
                    )
                    if progress_filled:
                        await self.aggregation.on_child_progress_changed(task_orm, explicit)
                else:
                    # Re-asserting a status makes it the caller's, not aggregation's
                    task_orm.auto_completed = False

            if progress_set and changes.progress != task_orm.progress:
                task_orm.progress = changes.progress
                await self.aggregation.on_child_progress_changed(task_orm, explicit)

            if "weight" in fields and changes.weight != task_orm.weight:
                task_orm.weight = changes.weight
                await self.aggregation.on_child_progress_changed(task_orm, explicit)

            if policy_changed:
                await self.aggregation.reevaluate(task_orm, explicit)

            task_orm.updated_at = datetime.utcnow()
            await self.session.flush()

            logger.info(f"Updated task: id={task_orm.id}, fields={sorted(fields)}")
            return orm_to_task(task_orm)
        except TaskTreeError as e:
            logger.warning(f"Failed to update task {task_id}: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to update task {task_id}: {e}", exc_info=True)
            raise

    async def set_status(self, task_id: TaskId, status: Union[TaskStatus, str]) -> Task:
        """Change a task's status, triggering ancestor aggregation."""
        return await self.update_task(
            task_id, TaskUpdate(status=validate_enum("status", status))
        )

    async def set_progress(self, task_id: TaskId, progress: int) -> Task:
        """Change a task's progress, triggering ancestor aggregation."""
        return await self.update_task(task_id, TaskUpdate(progress=progress))

    async def _set_sibling_order(self, task_orm: TaskORM, order: int) -> None:
        validate_sibling_order(order, task_id=task_orm.id)
        if order == task_orm.sibling_order:
            return
        await self._ensure_order_available(task_orm.parent_id, order, exclude_id=task_orm.id)
        task_orm.sibling_order = order

    # ==============================================================================
    # HIERARCHY OPERATIONS
    # ==============================================================================

    async def reparent(
        self,
        task_id: TaskId,
        new_parent_id: Optional[TaskId],
        sibling_order: Optional[int] = None,
    ) -> Task:
        """
        Move a task (with its whole subtree) under a new parent.

        Args:
            task_id: UUID of the task to move
            new_parent_id: New parent ID, or None to make the task a root
            sibling_order: Order under the new parent (appended at the end if omitted)

        Returns:
            Updated Task instance

        Raises:
            TaskNotFoundError: If task or new parent does not exist
            CycleDetectedError: If the new parent lies within the task's subtree
            DepthExceededError: If any node of the subtree would exceed the max depth
        """
        try:
            task_orm = await self._get_task_or_raise(task_id)
            new_parent = str(new_parent_id) if new_parent_id is not None else None

            if new_parent == task_orm.parent_id:
                if sibling_order is not None:
                    await self._set_sibling_order(task_orm, sibling_order)
                    await self.session.flush()
                return orm_to_task(task_orm)

            await self._reparent(task_orm, new_parent, sibling_order)
            return orm_to_task(task_orm)
        except TaskTreeError as e:
            logger.warning(f"Failed to reparent task {task_id}: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to reparent task {task_id}: {e}", exc_info=True)
            raise

    async def _reparent(
        self,
        task_orm: TaskORM,
        new_parent_id: Optional[str],
        sibling_order: Optional[int],
    ) -> None:
        """Validate and apply a move, rewriting level/path for the whole subtree."""
        new_parent_orm = None
        new_level = 0
        if new_parent_id is not None:
            new_parent_orm = await self._get_task_or_none(new_parent_id)
            new_level = validate_parent(
                task_orm.id, task_orm.hierarchy_path, new_parent_orm, new_parent_id, self.max_depth
            )

        descendants = await self._get_descendants(task_orm)
        deepest = max((d.hierarchy_level for d in descendants), default=task_orm.hierarchy_level)
        validate_subtree_depth(
            new_level, deepest - task_orm.hierarchy_level, self.max_depth, task_id=task_orm.id
        )

        if sibling_order is None:
            sibling_order = await self._get_next_sibling_order(new_parent_id)
        else:
            validate_sibling_order(sibling_order, task_id=task_orm.id)
            await self._ensure_order_available(new_parent_id, sibling_order, exclude_id=task_orm.id)

        old_parent_id = task_orm.parent_id
        old_path = task_orm.hierarchy_path
        new_path = build_path(new_parent_orm.hierarchy_path if new_parent_orm else None, task_orm.id)
        level_delta = new_level - task_orm.hierarchy_level

        task_orm.parent_id = new_parent_id
        task_orm.hierarchy_level = new_level
        task_orm.hierarchy_path = new_path
        task_orm.sibling_order = sibling_order
        task_orm.updated_at = datetime.utcnow()

        for descendant in descendants:
            descendant.hierarchy_path = rebase_path(descendant.hierarchy_path, old_path, new_path)
            descendant.hierarchy_level += level_delta

        await self.session.flush()

        await self.aggregation.on_children_changed(old_parent_id)
        await self.aggregation.on_children_changed(new_parent_id)

        logger.info(
            f"Reparented task: id={task_orm.id}, {old_parent_id} -> {new_parent_id}, "
            f"level={new_level}, descendants={len(descendants)}"
        )

    # ==============================================================================
    # DELETE OPERATIONS
    # ==============================================================================

    async def delete_task(
        self,
        task_id: TaskId,
        descendant_policy: Union[DescendantPolicy, str],
    ) -> int:
        """
        Delete a task, resolving its descendants by an explicit policy.

        ``reparent_to_grandparent`` moves the direct children under the
        deleted task's parent (or makes them roots), appended after the
        existing siblings in their current order; the rest of the subtree
        moves up one level with them. ``cascade_delete`` removes the whole
        subtree.

        Args:
            task_id: UUID of the task to delete
            descendant_policy: What to do with the task's descendants

        Returns:
            Number of tasks deleted

        Raises:
            InvalidEnumError: If the policy is not recognized
            TaskNotFoundError: If task does not exist
        """
        try:
            policy = validate_enum("descendant_policy", descendant_policy)

            logger.debug(f"Deleting task {task_id} with policy {policy.value}")

            task_orm = await self._get_task_or_raise(task_id)
            deleted_id = task_orm.id
            parent_id = task_orm.parent_id
            title = task_orm.title

            descendants = await self._get_descendants(task_orm)

            if policy == DescendantPolicy.CASCADE_DELETE:
                # Deepest first so no row is left pointing at a removed parent
                for descendant in sorted(descendants, key=lambda d: d.hierarchy_level, reverse=True):
                    await self.session.delete(descendant)
                await self.session.delete(task_orm)
                deleted = len(descendants) + 1
            else:
                children = [d for d in descendants if d.parent_id == deleted_id]
                next_order = await self._get_next_sibling_order(parent_id)

                await self.session.delete(task_orm)
                await self.session.flush()

                for offset, child in enumerate(children):
                    child.parent_id = parent_id
                    child.sibling_order = next_order + offset
                for descendant in descendants:
                    descendant.hierarchy_path = remove_segment(descendant.hierarchy_path, deleted_id)
                    descendant.hierarchy_level -= 1
                deleted = 1

            await self.session.flush()
            await self.aggregation.on_children_changed(parent_id)

            logger.info(
                f"Deleted task: id={deleted_id}, title='{title}', policy={policy.value}, "
                f"deleted={deleted}, descendants={len(descendants)}"
            )
            return deleted
        except TaskTreeError as e:
            logger.warning(f"Failed to delete task {task_id}: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to delete task {task_id}: {e}", exc_info=True)
            raise
