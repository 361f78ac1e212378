"""
Tests for configuration management.

Tests the Config class and configuration loading from files and environment variables.
"""

from pathlib import Path

import pytest

from tasktree.config import DEFAULT_DATABASE_URL, Config, HierarchySettings
from tasktree.exceptions import TaskValidationError
from tasktree.models import DescendantPolicy

ENV_VARS = (
    "TASKTREE_DATABASE_URL",
    "TASKTREE_DATABASE_ECHO",
    "TASKTREE_MAX_DEPTH",
    "TASKTREE_DELETE_POLICY",
    "TASKTREE_MAX_REORDER_BATCH",
    "TASKTREE_OPERATION_TIMEOUT",
    "TASKTREE_API_HOST",
    "TASKTREE_API_PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Make sure no TASKTREE_* variables leak in from the environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    """Write an INI file and return its path."""
    def _write(content: str) -> Path:
        path = tmp_path / "config.ini"
        path.write_text(content)
        return path

    return _write


class TestConfig:
    """Tests for Config class."""

    def test_default_config_path(self):
        """Test default config path is ~/.tasktree/config.ini."""
        config = Config()
        assert config.config_path == Path.home() / ".tasktree" / "config.ini"

    def test_custom_config_path(self, tmp_path):
        custom_path = tmp_path / "custom.ini"
        config = Config(custom_path)
        assert config.config_path == custom_path

    def test_missing_config_file_uses_defaults(self, tmp_path):
        """Test that missing config file falls back to defaults."""
        config = Config(tmp_path / "nonexistent.ini")

        assert config.get_database_config() == {"url": DEFAULT_DATABASE_URL, "echo": False}
        assert config.get_hierarchy_config() == HierarchySettings()
        assert config.get_api_config() == {"host": "127.0.0.1", "port": 8000}

    def test_config_file_parsing(self, config_file):
        """Test parsing valid config file."""
        path = config_file("""
[database]
url = sqlite+aiosqlite:///tmp/test.db
echo = true

[hierarchy]
max_depth = 5
delete_policy = cascade_delete
max_reorder_batch = 20
operation_timeout = 2.5

[api]
host = 0.0.0.0
port = 9000
""")
        config = Config(path)

        db = config.get_database_config()
        assert db["url"] == "sqlite+aiosqlite:///tmp/test.db"
        assert db["echo"] is True

        hierarchy = config.get_hierarchy_config()
        assert hierarchy.max_depth == 5
        assert hierarchy.delete_policy == DescendantPolicy.CASCADE_DELETE
        assert hierarchy.max_reorder_batch == 20
        assert hierarchy.operation_timeout == 2.5

        assert config.get_api_config() == {"host": "0.0.0.0", "port": 9000}

    def test_environment_variable_override(self, config_file, monkeypatch):
        """Test environment variables override config file."""
        path = config_file("""
[hierarchy]
max_depth = 5

[api]
port = 9000
""")
        monkeypatch.setenv("TASKTREE_MAX_DEPTH", "7")
        monkeypatch.setenv("TASKTREE_DELETE_POLICY", "cascade_delete")
        monkeypatch.setenv("TASKTREE_API_PORT", "8888")
        monkeypatch.setenv("TASKTREE_DATABASE_ECHO", "true")

        config = Config(path)

        assert config.get_hierarchy_config().max_depth == 7
        assert config.get_hierarchy_config().delete_policy == DescendantPolicy.CASCADE_DELETE
        assert config.get_api_config()["port"] == 8888
        assert config.get_database_config()["echo"] is True

    @pytest.mark.parametrize(
        "key,value",
        [
            ("max_depth", "0"),
            ("max_depth", "33"),
            ("delete_policy", "archive"),
            ("max_reorder_batch", "0"),
            ("operation_timeout", "-1"),
        ],
    )
    def test_invalid_hierarchy_values(self, config_file, key, value):
        path = config_file(f"[hierarchy]\n{key} = {value}\n")

        with pytest.raises(TaskValidationError) as exc_info:
            Config(path).get_hierarchy_config()
        assert exc_info.value.field == key

    def test_malformed_file_uses_defaults(self, config_file):
        path = config_file("this is not [an ini file")
        config = Config(path)
        assert config.get_hierarchy_config().max_depth == 10

    def test_generic_accessors(self, config_file):
        path = config_file("""
[custom]
name = value
flag = yes
count = 3
""")
        config = Config(path)

        assert config.has_section("custom")
        assert not config.has_section("missing")
        assert "custom" in config.sections()
        assert config.get("custom", "name") == "value"
        assert config.get("custom", "absent", fallback="x") == "x"
        assert config.get_bool("custom", "flag") is True
        assert config.get_int("custom", "count") == 3
