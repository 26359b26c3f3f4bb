import pytest
from pathlib import Path
from chunkflow.config import (
    env_overrides,
    get_config_value,
    load_yaml,
    merge_dicts,
    resolve_config,
    set_config_value,
)
from chunkflow.models import EngineConfig


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config(environ={})
    assert isinstance(config, EngineConfig)
    assert config.queue.chunk_size == 500
    assert config.workers.count == 10
    assert config.retry.max_retries == 3
    assert config.janitor.interval_s == 300


def test_default_yaml_matches_model_defaults():
    """Test the shipped YAML agrees with the model defaults."""
    from_yaml = EngineConfig.from_dict(load_yaml(Path("config/default.yaml")))
    assert from_yaml == EngineConfig()


def test_cli_override_workers():
    """Test CLI args override YAML defaults."""
    config = resolve_config({"workers": 4}, environ={})
    assert config.workers.count == 4


def test_cli_override_ignores_none():
    """Test flags that were not given leave the config alone."""
    config = resolve_config({"workers": None, "chunk_size": None}, environ={})
    assert config.workers.count == 10
    assert config.queue.chunk_size == 500


def test_multiple_cli_overrides():
    """Test multiple CLI overrides work together."""
    config = resolve_config({
        "db_path": "/tmp/x.db",
        "chunk_size": 50,
        "max_retries": 5,
        "generator": "stub",
        "log_level": "debug",
    }, environ={})
    assert config.database.path == "/tmp/x.db"
    assert config.queue.chunk_size == 50
    assert config.retry.max_retries == 5
    assert config.generator.backend == "stub"
    assert config.logging.level == "DEBUG"


def test_env_overrides_file():
    """Test environment variables override YAML."""
    config = resolve_config(environ={"CHUNKFLOW_WORKERS": "3", "CHUNKFLOW_CHUNK_SIZE": "100"})
    assert config.workers.count == 3
    assert config.queue.chunk_size == 100


def test_cli_overrides_env():
    """Test CLI beats environment."""
    config = resolve_config({"workers": 7}, environ={"CHUNKFLOW_WORKERS": "3"})
    assert config.workers.count == 7


def test_env_overrides_nested_dict():
    """Test env vars become a nested dict; blanks are ignored."""
    result = env_overrides({"CHUNKFLOW_DB_PATH": "a.db", "CHUNKFLOW_GENERATOR": ""})
    assert result == {"database": {"path": "a.db"}}


def test_explicit_config_file(tmp_path):
    """Test a --config file replaces local.yaml."""
    path = tmp_path / "custom.yaml"
    path.write_text("queue:\n  chunk_size: 25\nretry:\n  base_delay_s: 0.5\n")
    config = resolve_config(config_path=path, environ={})
    assert config.queue.chunk_size == 25
    assert config.retry.base_delay_s == 0.5
    assert config.workers.count == 10


def test_explicit_config_file_missing(tmp_path):
    """Test a missing --config file is an error."""
    with pytest.raises(FileNotFoundError):
        resolve_config(config_path=tmp_path / "nope.yaml", environ={})


def test_invalid_value_rejected(tmp_path):
    """Test validation errors surface from resolve_config."""
    from pydantic import ValidationError

    path = tmp_path / "bad.yaml"
    path.write_text("queue:\n  chunk_size: 0\n")
    with pytest.raises(ValidationError):
        resolve_config(config_path=path, environ={})


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_merge_dicts_recursive():
    """Test nested sections merge key by key."""
    merged = merge_dicts({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


def test_set_config_value_creates_sections():
    """Test dotted paths create missing sections."""
    data = {}
    set_config_value(data, "workers.count", 2)
    assert data == {"workers": {"count": 2}}


def test_get_config_value_with_pydantic():
    """Test get_config_value helper with Pydantic model."""
    config = resolve_config(environ={})
    value = get_config_value(config, "queue.chunk_size")
    assert value == 500


def test_get_config_value_with_dict():
    """Test get_config_value helper with dict."""
    config_dict = {"queue": {"chunk_size": 25}}
    value = get_config_value(config_dict, "queue.chunk_size")
    assert value == 25


def test_get_config_value_missing_returns_default():
    """Test get_config_value returns default for missing keys."""
    config_dict = {"queue": {}}
    value = get_config_value(config_dict, "queue.nonexistent", default="default_val")
    assert value == "default_val"
