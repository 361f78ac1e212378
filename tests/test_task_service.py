"""
Tests for TaskService - structural operations on the task forest.

Tests cover creation (roots and subtasks), depth limits, reparenting with
descendant recomputation, cycle rejection, deletion policies and updates.
"""

import logging

import pytest
from uuid import uuid4

from sqlalchemy import select

from tasktree.database import TaskORM
from tasktree.exceptions import (
    CycleDetectedError,
    DepthExceededError,
    InvalidEnumError,
    InvalidOrderError,
    TaskNotFoundError,
    TaskValidationError,
)
from tasktree.models import DescendantPolicy, TaskCreate, TaskStatus, TaskUpdate
from tasktree.services.task_service import TaskService
from tasktree.services.tree_query import TreeQueryService


async def assert_consistent(session):
    problems = await TreeQueryService(session).find_invariant_violations()
    assert problems == []


async def build_chain(make_task, length):
    """Create a single chain of ``length`` tasks; returns them root first."""
    chain = [await make_task("Level 0")]
    for level in range(1, length):
        chain.append(await make_task(f"Level {level}", parent=chain[-1]))
    return chain


class TestTaskServiceCreate:
    """Tests for task creation operations."""

    @pytest.mark.asyncio
    async def test_create_root(self, task_service):
        """Test creating a basic top-level task."""
        task = await task_service.create_root(TaskCreate(title="Plan", description="Quarterly"))

        assert task.title == "Plan"
        assert task.description == "Quarterly"
        assert task.hierarchy_level == 0
        assert task.parent_id is None
        assert task.hierarchy_path == str(task.id)
        assert task.sibling_order == 0
        assert task.subtask_count == 0
        assert task.status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_create_subtask_derives_hierarchy_fields(self, task_service, make_task):
        """Child level is parent level + 1 and its path extends the parent's."""
        root = await make_task("Root")
        child = await task_service.create_subtask(root.id, TaskCreate(title="Child"))

        assert child.parent_id == root.id
        assert child.hierarchy_level == 1
        assert child.hierarchy_path == f"{root.hierarchy_path}/{child.id}"

    @pytest.mark.asyncio
    async def test_create_subtask_increments_parent_count(self, task_service, make_task):
        root = await make_task("Root")
        await make_task("One", parent=root)
        await make_task("Two", parent=root)

        parent = await task_service.get_task(root.id)
        assert parent.subtask_count == 2
        assert parent.completed_subtask_count == 0

    @pytest.mark.asyncio
    async def test_create_completed_subtask_counts_as_completed(self, task_service, make_task):
        root = await make_task("Root")
        await make_task("Done", parent=root, status="completed")

        parent = await task_service.get_task(root.id)
        assert parent.completed_subtask_count == 1

    @pytest.mark.asyncio
    async def test_sibling_orders_increment(self, make_task):
        """Test that orders increment for sibling tasks."""
        root = await make_task("Root")
        first = await make_task("First", parent=root)
        second = await make_task("Second", parent=root)
        third = await make_task("Third", parent=root)

        assert [first.sibling_order, second.sibling_order, third.sibling_order] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_next_order_follows_max_not_count(self, make_task):
        """Orders need not be contiguous; the next one is max + 1."""
        root = await make_task("Root")
        await make_task("Sparse", parent=root, sibling_order=5)
        nxt = await make_task("Next", parent=root)

        assert nxt.sibling_order == 6

    @pytest.mark.asyncio
    async def test_root_orders_are_independent_of_children(self, make_task):
        root = await make_task("Root")
        await make_task("Child", parent=root)
        second_root = await make_task("Second root")

        assert second_root.sibling_order == 1

    @pytest.mark.asyncio
    async def test_explicit_order_collision(self, make_task):
        root = await make_task("Root")
        await make_task("Taken", parent=root, sibling_order=0)

        with pytest.raises(InvalidOrderError):
            await make_task("Clash", parent=root, sibling_order=0)

    @pytest.mark.asyncio
    async def test_negative_order_rejected(self, make_task):
        root = await make_task("Root")
        with pytest.raises(InvalidOrderError):
            await make_task("Negative", parent=root, sibling_order=-1)

    @pytest.mark.asyncio
    async def test_missing_parent(self, task_service):
        ghost = uuid4()
        with pytest.raises(TaskNotFoundError) as exc_info:
            await task_service.create_subtask(ghost, TaskCreate(title="Orphan"))
        assert exc_info.value.task_id == str(ghost)

    @pytest.mark.asyncio
    async def test_depth_ceiling(self, make_task):
        """A child of level 8 lands on level 9; a child of level 9 is rejected."""
        chain = await build_chain(make_task, 9)
        assert chain[-1].hierarchy_level == 8

        deepest = await make_task("Level 9", parent=chain[-1])
        assert deepest.hierarchy_level == 9

        with pytest.raises(DepthExceededError):
            await make_task("Level 10", parent=deepest)

    @pytest.mark.asyncio
    async def test_configured_max_depth(self, db_session):
        service = TaskService(db_session, max_depth=2)
        root = await service.create_root(TaskCreate(title="Root"))
        child = await service.create_subtask(root.id, TaskCreate(title="Child"))

        with pytest.raises(DepthExceededError):
            await service.create_subtask(child.id, TaskCreate(title="Too deep"))

    @pytest.mark.asyncio
    async def test_depth_failure_writes_nothing(self, db_session, make_task):
        chain = await build_chain(make_task, 10)
        before = len((await db_session.execute(select(TaskORM))).scalars().all())

        with pytest.raises(DepthExceededError):
            await make_task("Rejected", parent=chain[-1])

        after = len((await db_session.execute(select(TaskORM))).scalars().all())
        assert after == before


class TestTaskServiceReparent:
    """Tests for moving tasks between parents."""

    @pytest.mark.asyncio
    async def test_reparent_rewrites_descendants(self, db_session, task_service, make_task, task_hierarchy):
        root, child, grandchild = (
            task_hierarchy["root"], task_hierarchy["child"], task_hierarchy["grandchild"]
        )
        other = await make_task("Other root")
        mid = await make_task("Mid", parent=other)

        moved = await task_service.reparent(child.id, mid.id)
        assert moved.parent_id == mid.id
        assert moved.hierarchy_level == 2
        assert moved.hierarchy_path == f"{mid.hierarchy_path}/{child.id}"

        moved_grandchild = await task_service.get_task(grandchild.id)
        assert moved_grandchild.hierarchy_level == 3
        assert moved_grandchild.hierarchy_path == f"{moved.hierarchy_path}/{grandchild.id}"

        assert (await task_service.get_task(root.id)).subtask_count == 0
        assert (await task_service.get_task(mid.id)).subtask_count == 1
        await assert_consistent(db_session)

    @pytest.mark.asyncio
    async def test_reparent_to_root(self, db_session, task_service, task_hierarchy):
        child, grandchild = task_hierarchy["child"], task_hierarchy["grandchild"]

        moved = await task_service.reparent(child.id, None)
        assert moved.parent_id is None
        assert moved.hierarchy_level == 0
        assert moved.hierarchy_path == str(child.id)
        assert moved.sibling_order == 1  # after the existing root

        moved_grandchild = await task_service.get_task(grandchild.id)
        assert moved_grandchild.hierarchy_level == 1
        assert moved_grandchild.hierarchy_path == f"{child.id}/{grandchild.id}"
        await assert_consistent(db_session)

    @pytest.mark.asyncio
    async def test_reparent_updates_completed_counts(self, task_service, make_task):
        old_parent = await make_task("Old")
        new_parent = await make_task("New")
        done = await make_task("Done", parent=old_parent, status="completed")

        await task_service.reparent(done.id, new_parent.id)

        old = await task_service.get_task(old_parent.id)
        new = await task_service.get_task(new_parent.id)
        assert (old.subtask_count, old.completed_subtask_count) == (0, 0)
        assert (new.subtask_count, new.completed_subtask_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_reparent_under_self_is_cycle(self, task_service, task_hierarchy):
        child = task_hierarchy["child"]
        with pytest.raises(CycleDetectedError):
            await task_service.reparent(child.id, child.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("depth", [1, 3, 6])
    async def test_reparent_under_descendant_is_cycle(self, task_service, make_task, depth):
        chain = await build_chain(make_task, depth + 1)
        with pytest.raises(CycleDetectedError):
            await task_service.reparent(chain[0].id, chain[-1].id)

    @pytest.mark.asyncio
    async def test_reparent_subtree_depth_checked(self, task_service, make_task):
        """The deepest descendant, not just the moved task, must fit."""
        deep_chain = await build_chain(make_task, 8)  # levels 0..7
        subtree_root = await make_task("Subtree")
        await make_task("Leaf", parent=await make_task("Middle", parent=subtree_root))

        # Subtree root would land on 8 and its leaf on 10
        with pytest.raises(DepthExceededError):
            await task_service.reparent(subtree_root.id, deep_chain[-1].id)

    @pytest.mark.asyncio
    async def test_reparent_missing_parent(self, task_service, task_hierarchy):
        with pytest.raises(TaskNotFoundError):
            await task_service.reparent(task_hierarchy["child"].id, uuid4())

    @pytest.mark.asyncio
    async def test_reparent_same_parent_is_noop(self, task_service, task_hierarchy):
        child = task_hierarchy["child"]
        result = await task_service.reparent(child.id, task_hierarchy["root"].id)
        assert result.hierarchy_path == child.hierarchy_path
        assert result.sibling_order == child.sibling_order


class TestTaskServiceDelete:
    """Tests for deletion with descendant policies."""

    @pytest.mark.asyncio
    async def test_delete_reparent_to_grandparent(self, db_session, task_service, task_hierarchy):
        """R -> A -> B; deleting A moves B directly under R at level 1."""
        root, child, grandchild = (
            task_hierarchy["root"], task_hierarchy["child"], task_hierarchy["grandchild"]
        )

        deleted = await task_service.delete_task(child.id, DescendantPolicy.REPARENT_TO_GRANDPARENT)
        assert deleted == 1

        assert await task_service.get_task_by_id(child.id) is None
        moved = await task_service.get_task(grandchild.id)
        assert moved.parent_id == root.id
        assert moved.hierarchy_level == 1
        assert moved.hierarchy_path == f"{root.id}/{grandchild.id}"

        parent = await task_service.get_task(root.id)
        assert parent.subtask_count == 1
        await assert_consistent(db_session)

    @pytest.mark.asyncio
    async def test_reparented_children_keep_relative_order(self, task_service, make_task):
        root = await make_task("Root")
        existing = await make_task("Existing", parent=root)
        doomed = await make_task("Doomed", parent=root)
        first = await make_task("First", parent=doomed)
        second = await make_task("Second", parent=doomed)

        await task_service.delete_task(doomed.id, "reparent_to_grandparent")

        first_after = await task_service.get_task(first.id)
        second_after = await task_service.get_task(second.id)
        assert existing.sibling_order < first_after.sibling_order < second_after.sibling_order

    @pytest.mark.asyncio
    async def test_delete_root_with_reparent_makes_children_roots(self, task_service, task_hierarchy):
        root, child, grandchild = (
            task_hierarchy["root"], task_hierarchy["child"], task_hierarchy["grandchild"]
        )
        await task_service.delete_task(root.id, DescendantPolicy.REPARENT_TO_GRANDPARENT)

        new_root = await task_service.get_task(child.id)
        assert new_root.parent_id is None
        assert new_root.hierarchy_level == 0
        assert new_root.hierarchy_path == str(child.id)
        assert (await task_service.get_task(grandchild.id)).hierarchy_level == 1

    @pytest.mark.asyncio
    async def test_cascade_delete(self, db_session, task_service, task_hierarchy):
        root, child, grandchild = (
            task_hierarchy["root"], task_hierarchy["child"], task_hierarchy["grandchild"]
        )

        deleted = await task_service.delete_task(child.id, DescendantPolicy.CASCADE_DELETE)
        assert deleted == 2

        assert await task_service.get_task_by_id(child.id) is None
        assert await task_service.get_task_by_id(grandchild.id) is None
        assert (await task_service.get_task(root.id)).subtask_count == 0
        await assert_consistent(db_session)

    @pytest.mark.asyncio
    async def test_delete_completed_child_updates_count(self, task_service, make_task):
        root = await make_task("Root")
        done = await make_task("Done", parent=root, status="completed")
        await make_task("Open", parent=root)

        await task_service.delete_task(done.id, "cascade_delete")

        parent = await task_service.get_task(root.id)
        assert (parent.subtask_count, parent.completed_subtask_count) == (1, 0)

    @pytest.mark.asyncio
    async def test_delete_unknown_policy(self, task_service, task_hierarchy):
        with pytest.raises(InvalidEnumError):
            await task_service.delete_task(task_hierarchy["child"].id, "archive")

    @pytest.mark.asyncio
    async def test_delete_missing_task(self, task_service):
        with pytest.raises(TaskNotFoundError):
            await task_service.delete_task(uuid4(), DescendantPolicy.CASCADE_DELETE)


class TestTaskServiceUpdate:
    """Tests for partial updates."""

    @pytest.mark.asyncio
    async def test_update_plain_fields(self, task_service, make_task):
        task = await make_task("Draft")
        updated = await task_service.update_task(
            task.id, TaskUpdate(title="Final", priority="high", assignee="sam")
        )
        assert updated.title == "Final"
        assert updated.priority == "high"
        assert updated.assignee == "sam"
        assert updated.updated_at >= task.updated_at

    @pytest.mark.asyncio
    async def test_update_requires_a_field(self, task_service, make_task):
        task = await make_task("Draft")
        with pytest.raises(TaskValidationError):
            await task_service.update_task(task.id, TaskUpdate())

    @pytest.mark.asyncio
    async def test_update_parent_reparents(self, task_service, make_task, task_hierarchy):
        other = await make_task("Other")
        updated = await task_service.update_task(
            task_hierarchy["grandchild"].id, TaskUpdate(parent_id=other.id)
        )
        assert updated.parent_id == other.id
        assert updated.hierarchy_level == 1

    @pytest.mark.asyncio
    async def test_update_parent_null_makes_root(self, task_service, task_hierarchy):
        updated = await task_service.update_task(
            task_hierarchy["grandchild"].id, TaskUpdate(parent_id=None)
        )
        assert updated.parent_id is None
        assert updated.hierarchy_level == 0

    @pytest.mark.asyncio
    async def test_update_absent_parent_leaves_parent(self, task_service, task_hierarchy):
        grandchild = task_hierarchy["grandchild"]
        updated = await task_service.update_task(grandchild.id, TaskUpdate(title="Renamed"))
        assert updated.parent_id == grandchild.parent_id

    @pytest.mark.asyncio
    async def test_update_sibling_order(self, task_service, make_task):
        root = await make_task("Root")
        first = await make_task("First", parent=root)
        second = await make_task("Second", parent=root)

        updated = await task_service.update_task(first.id, TaskUpdate(sibling_order=7))
        assert updated.sibling_order == 7

        with pytest.raises(InvalidOrderError):
            await task_service.update_task(second.id, TaskUpdate(sibling_order=7))

    @pytest.mark.asyncio
    async def test_completing_sets_completed_at_and_progress(self, task_service, make_task):
        task = await make_task("Work", progress=30)

        done = await task_service.set_status(task.id, TaskStatus.COMPLETED)
        assert done.completed_at is not None
        assert done.progress == 100

        reopened = await task_service.set_status(task.id, "in_progress")
        assert reopened.completed_at is None

    @pytest.mark.asyncio
    async def test_explicit_progress_with_completion_wins(self, task_service, make_task):
        task = await make_task("Work")
        done = await task_service.update_task(task.id, TaskUpdate(status="completed", progress=80))
        assert done.status == TaskStatus.COMPLETED
        assert done.progress == 80

    @pytest.mark.asyncio
    async def test_set_status_rejects_unknown_value(self, task_service, make_task):
        task = await make_task("Work")
        with pytest.raises(InvalidEnumError):
            await task_service.set_status(task.id, "done")


class TestTaskServiceFailureLogging:
    """Failed mutations are logged before the error propagates."""

    LOGGER = "tasktree.services.task_service"

    @pytest.mark.asyncio
    async def test_unexpected_error_logged_with_traceback(self, task_service, monkeypatch, caplog):
        async def broken(parent_id):
            raise RuntimeError("store went away")

        monkeypatch.setattr(task_service.aggregation, "on_children_changed", broken)

        with caplog.at_level(logging.DEBUG, logger=self.LOGGER):
            with pytest.raises(RuntimeError, match="store went away"):
                await task_service.create_root(TaskCreate(title="Doomed"))

        errors = [
            r for r in caplog.records
            if r.levelno == logging.ERROR and "Failed to create task" in r.getMessage()
        ]
        assert len(errors) == 1
        assert errors[0].exc_info is not None

    @pytest.mark.asyncio
    async def test_engine_error_logged_as_warning(self, task_service, caplog):
        with caplog.at_level(logging.DEBUG, logger=self.LOGGER):
            with pytest.raises(TaskNotFoundError):
                await task_service.create_subtask(uuid4(), TaskCreate(title="Orphan"))

        warnings = [r for r in caplog.records if "Failed to create task" in r.getMessage()]
        assert [r.levelno for r in warnings] == [logging.WARNING]

    @pytest.mark.asyncio
    async def test_update_and_delete_failures_logged(self, task_service, caplog):
        missing = uuid4()
        with caplog.at_level(logging.DEBUG, logger=self.LOGGER):
            with pytest.raises(TaskNotFoundError):
                await task_service.update_task(missing, TaskUpdate(title="Nope"))
            with pytest.raises(TaskNotFoundError):
                await task_service.delete_task(missing, DescendantPolicy.CASCADE_DELETE)

        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith(f"Failed to update task {missing}") for m in messages)
        assert any(m.startswith(f"Failed to delete task {missing}") for m in messages)
