"""
Configuration management for TaskTree.

Loads settings from config.ini with environment variable overrides.
Provides centralized configuration for the task store, the hierarchy
engine and the API server.
"""

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from tasktree.exceptions import TaskValidationError
from tasktree.logging_config import get_logger
from tasktree.models import DescendantPolicy

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".tasktree" / "config.ini"
DEFAULT_DATABASE_URL = f"sqlite+aiosqlite:///{Path.home() / '.tasktree' / 'tasktree.db'}"


class HierarchySettings(BaseModel):
    """Tunable limits and policies of the hierarchy engine.

    Attributes:
        max_depth: Number of legal levels; levels 0..max_depth-1 are allowed.
        delete_policy: Descendant policy applied by DELETE when the caller gives none.
        max_reorder_batch: Largest number of assignments accepted in one reorder.
        operation_timeout: Seconds before a mutation is aborted, or None for no limit.
    """

    max_depth: int = Field(default=10, ge=1, le=32)
    delete_policy: DescendantPolicy = DescendantPolicy.REPARENT_TO_GRANDPARENT
    max_reorder_batch: int = Field(default=100, ge=1, le=10000)
    operation_timeout: Optional[float] = Field(default=None, gt=0)


class Config:
    """Application configuration manager."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config file, defaults to ~/.tasktree/config.ini
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = configparser.ConfigParser()
        self._load()

    def _load(self):
        """Load configuration from file."""
        if self.config_path.exists():
            try:
                self._config.read(self.config_path)
                logger.info(f"Loaded configuration from {self.config_path}")
            except configparser.Error as e:
                logger.warning(f"Failed to read config file: {e}. Using defaults.")
        else:
            logger.debug(f"Config file not found at {self.config_path}. Using defaults.")

    def get_database_config(self) -> Dict[str, Any]:
        """
        Get task store configuration with environment overrides.

        Environment variables take precedence over config file:
        - TASKTREE_DATABASE_URL
        - TASKTREE_DATABASE_ECHO

        Returns:
            Dictionary with database configuration
        """
        echo_env = os.getenv('TASKTREE_DATABASE_ECHO', '').lower()
        config = {
            'url': os.getenv('TASKTREE_DATABASE_URL') or
                   self._config.get('database', 'url', fallback=DEFAULT_DATABASE_URL),
            'echo': (
                echo_env == 'true'
                if echo_env
                else self._config.getboolean('database', 'echo', fallback=False)
            ),
        }

        logger.debug(f"Database config: url={config['url']}, echo={config['echo']}")

        return config

    def get_hierarchy_config(self) -> HierarchySettings:
        """
        Get hierarchy engine settings with environment overrides.

        Environment variables take precedence over config file:
        - TASKTREE_MAX_DEPTH
        - TASKTREE_DELETE_POLICY
        - TASKTREE_MAX_REORDER_BATCH
        - TASKTREE_OPERATION_TIMEOUT

        Returns:
            Validated HierarchySettings

        Raises:
            TaskValidationError: If a configured value is out of range
        """
        raw = {
            'max_depth': os.getenv('TASKTREE_MAX_DEPTH') or
                         self._config.get('hierarchy', 'max_depth', fallback='10'),
            'delete_policy': os.getenv('TASKTREE_DELETE_POLICY') or
                             self._config.get('hierarchy', 'delete_policy',
                                              fallback=DescendantPolicy.REPARENT_TO_GRANDPARENT.value),
            'max_reorder_batch': os.getenv('TASKTREE_MAX_REORDER_BATCH') or
                                 self._config.get('hierarchy', 'max_reorder_batch', fallback='100'),
            'operation_timeout': os.getenv('TASKTREE_OPERATION_TIMEOUT') or
                                 self._config.get('hierarchy', 'operation_timeout', fallback=None),
        }

        try:
            settings = HierarchySettings(**raw)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            logger.error(f"Invalid hierarchy configuration: {field}: {first['msg']}")
            raise TaskValidationError(
                f"Invalid hierarchy configuration for {field}: {first['msg']}",
                field=field,
            ) from e

        logger.debug(
            f"Hierarchy config: max_depth={settings.max_depth}, "
            f"delete_policy={settings.delete_policy.value}, "
            f"max_reorder_batch={settings.max_reorder_batch}, "
            f"operation_timeout={settings.operation_timeout}"
        )

        return settings

    def get_api_config(self) -> Dict[str, Any]:
        """
        Get API server configuration with environment overrides.

        Environment variables take precedence over config file:
        - TASKTREE_API_HOST
        - TASKTREE_API_PORT

        Returns:
            Dictionary with API configuration
        """
        config = {
            'host': os.getenv('TASKTREE_API_HOST') or
                    self._config.get('api', 'host', fallback='127.0.0.1'),
            'port': int(os.getenv('TASKTREE_API_PORT') or
                        self._config.get('api', 'port', fallback='8000')),
        }

        logger.debug(f"API config: host={config['host']}, port={config['port']}")

        return config

    def get(self, section: str, key: str, fallback: Any = None) -> Any:
        """
        Get configuration value with fallback.

        Args:
            section: Config section name
            key: Config key name
            fallback: Default value if not found

        Returns:
            Configuration value or fallback
        """
        return self._config.get(section, key, fallback=fallback)

    def get_bool(self, section: str, key: str, fallback: bool = False) -> bool:
        """Get boolean configuration value."""
        return self._config.getboolean(section, key, fallback=fallback)

    def get_int(self, section: str, key: str, fallback: int = 0) -> int:
        """Get integer configuration value."""
        return self._config.getint(section, key, fallback=fallback)

    def has_section(self, section: str) -> bool:
        """
        Check if config section exists.

        Args:
            section: Section name to check

        Returns:
            True if section exists
        """
        return self._config.has_section(section)

    def sections(self) -> list:
        """Get list of all configuration sections."""
        return self._config.sections()
