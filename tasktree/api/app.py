"""
FastAPI application factory for TaskTree.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from tasktree.api.errors import register_exception_handlers
from tasktree.api.routes import router
from tasktree.config import Config, HierarchySettings
from tasktree.database import DatabaseManager
from tasktree.logging_config import get_logger
from tasktree.services.hierarchy_service import HierarchyService

logger = get_logger(__name__)


def create_app(
    db_manager: Optional[DatabaseManager] = None,
    settings: Optional[HierarchySettings] = None,
    config: Optional[Config] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        db_manager: Database manager to use; built from config when omitted.
            If it is not initialized yet, the app initializes it on startup
            and closes it on shutdown.
        settings: Hierarchy settings; read from config when omitted
        config: Configuration source (default config file when omitted)

    Returns:
        Configured FastAPI application
    """
    if db_manager is None or settings is None:
        config = config or Config()
    if db_manager is None:
        db_config = config.get_database_config()
        db_manager = DatabaseManager(db_config["url"], echo=db_config["echo"])
    if settings is None:
        settings = config.get_hierarchy_config()

    owns_database = db_manager.session_maker is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_database:
            await db_manager.initialize()
        logger.info(
            f"TaskTree API started: max_depth={settings.max_depth}, "
            f"delete_policy={settings.delete_policy.value}"
        )
        yield
        if owns_database:
            await db_manager.close()
        logger.info("TaskTree API stopped")

    app = FastAPI(title="TaskTree", version="0.1.0", lifespan=lifespan)
    app.state.db_manager = db_manager
    app.state.settings = settings
    app.state.hierarchy_service = HierarchyService(db_manager, settings)

    register_exception_handlers(app)
    app.include_router(router)

    return app
