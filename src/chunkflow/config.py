import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .models import EngineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "CHUNKFLOW_DB_PATH": "database.path",
    "CHUNKFLOW_WORKERS": "workers.count",
    "CHUNKFLOW_CHUNK_SIZE": "queue.chunk_size",
    "CHUNKFLOW_MAX_RETRIES": "retry.max_retries",
    "CHUNKFLOW_GENERATOR": "generator.backend",
    "CHUNKFLOW_LOG_LEVEL": "logging.level",
}


def get_config_value(config: Union[EngineConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: EngineConfig model or dict
        path: Dot-separated path like "queue.chunk_size"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, EngineConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def set_config_value(config: Dict[str, Any], path: str, value: Any) -> None:
    """Set a nested dict value by dotted path, creating sections as needed."""
    keys = path.split(".")
    node = config
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect CHUNKFLOW_* overrides as a nested dict.

    Values stay strings; pydantic coerces them when the model is built.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value not in (None, ""):
            set_config_value(overrides, path, value)
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineConfig:
    """
    Resolve config: Default < Local (or --config file) < Environment < CLI
    Returns validated Pydantic EngineConfig model.

    Raises:
        pydantic.ValidationError: If the merged configuration is invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides, or an explicit file in their place
    local_path = Path(config_path) if config_path else LOCAL_CONFIG_PATH
    if config_path and not local_path.exists():
        raise FileNotFoundError(f"Config file not found: {local_path}")
    config_data = merge_dicts(config_data, load_yaml(local_path))

    # 3. Merge environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate and apply CLI overrides
    config = EngineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
