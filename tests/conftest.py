"""
Pytest configuration and fixtures for TaskTree tests.

Provides database fixtures, task factories, and a small ready-made hierarchy.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tasktree.api.app import create_app
from tasktree.config import HierarchySettings
from tasktree.database import DatabaseManager
from tasktree.models import TaskCreate
from tasktree.services.hierarchy_service import HierarchyService
from tasktree.services.task_service import TaskService


@pytest_asyncio.fixture
async def db_manager():
    """
    Create an in-memory SQLite database for testing.

    Yields:
        DatabaseManager instance with in-memory database

    Example:
        async def test_something(db_manager):
            async with db_manager.get_session() as session:
                # Test database operations
    """
    # Use in-memory SQLite for tests
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.initialize()

    yield manager

    # Cleanup
    await manager.close()


@pytest_asyncio.fixture
async def file_db_manager(tmp_path):
    """
    Create a file-backed SQLite database, for tests that open several
    independent sessions (API, transactional service).
    """
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'tasktree.db'}")
    await manager.initialize()

    yield manager

    await manager.close()


@pytest_asyncio.fixture
async def db_session(db_manager):
    """
    Provide a database session for tests.

    Args:
        db_manager: Database manager fixture

    Yields:
        AsyncSession for database operations
    """
    async with db_manager.get_session() as session:
        yield session


@pytest.fixture
def task_service(db_session):
    """TaskService bound to the test session with the default depth limit."""
    return TaskService(db_session)


@pytest.fixture
def make_task(task_service):
    """
    Factory creating tasks through TaskService.

    Example:
        root = await make_task("Root")
        child = await make_task("Child", parent=root, progress=40)
    """
    async def _make(title, parent=None, sibling_order=None, **fields):
        return await task_service.create_task(
            TaskCreate(title=title, **fields),
            parent_id=parent.id if parent is not None else None,
            sibling_order=sibling_order,
        )

    return _make


@pytest_asyncio.fixture
async def task_hierarchy(make_task):
    """
    Create a three-level hierarchy.

    Creates:
        - Level 0: Root (R)
          - Level 1: Child A
            - Level 2: Grandchild B

    Returns:
        Dictionary with the created Task instances
    """
    root = await make_task("Root")
    child = await make_task("Child A", parent=root)
    grandchild = await make_task("Grandchild B", parent=child)
    return {"root": root, "child": child, "grandchild": grandchild}


@pytest.fixture
def hierarchy_service(file_db_manager):
    """HierarchyService running each call in its own transaction."""
    return HierarchyService(file_db_manager, HierarchySettings())


@pytest_asyncio.fixture
async def api_client(file_db_manager):
    """
    HTTP client talking to the API app in-process.

    Yields:
        httpx.AsyncClient bound to the ASGI app
    """
    app = create_app(db_manager=file_db_manager, settings=HierarchySettings())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
