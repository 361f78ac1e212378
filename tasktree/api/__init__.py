"""TaskTree HTTP API - FastAPI application and routes."""

from tasktree.api.app import create_app

__all__ = ["create_app"]
