"""Entry point for the TaskTree API server.

This module allows running TaskTree as a module:
    python -m tasktree

Or as an installed command:
    tasktree
"""

import argparse
import sys
from typing import Optional

from tasktree.logging_config import setup_logging, get_logger

# Initialize logger for this module
logger = get_logger(__name__)


def main(args: Optional[list[str]] = None) -> int:
    """Main entry point for TaskTree.

    Args:
        args: Command-line arguments (defaults to sys.argv)

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    if args is None:
        args = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="tasktree", description="Serve the TaskTree API")
    parser.add_argument("--host", help="Bind address (overrides config)")
    parser.add_argument("--port", type=int, help="Bind port (overrides config)")
    parser.add_argument("--log-level", help="Log level (overrides TASKTREE_LOG_LEVEL)")
    parser.add_argument("--dev", action="store_true", help="Also log to stderr")
    options = parser.parse_args(args)

    # Initialize logging before any other operations
    setup_logging(options.log_level, use_console_handler=options.dev)

    # Import here to avoid circular imports and improve startup time
    import uvicorn

    from tasktree.api.app import create_app
    from tasktree.config import Config

    try:
        config = Config()
        api_config = config.get_api_config()
        app = create_app(config=config)
        uvicorn.run(
            app,
            host=options.host or api_config["host"],
            port=options.port or api_config["port"],
            log_config=None,
        )
        logger.info("TaskTree API exited normally")
        return 0
    except KeyboardInterrupt:
        logger.info("TaskTree API stopped by user (Ctrl+C)")
        return 0
    except Exception:
        logger.error("Error running TaskTree API", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
