import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import TranscoderConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
CONFIG_ENV_VAR = "ABR_TRANSCODER_CONFIG"


def get_config_value(config: Union[TranscoderConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: TranscoderConfig model or dict
        path: Dot-separated path like "queue.max_attempts"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, TranscoderConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


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


def resolve_config(
    cli_args: Dict[str, Any] = None, config_path: Optional[Path] = None
) -> TranscoderConfig:
    """
    Resolve config: Default < Local (or $ABR_TRANSCODER_CONFIG / config_path) < CLI
    Returns validated Pydantic TranscoderConfig model.

    Raises:
        pydantic.ValidationError: If the merged YAML does not validate.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    override_path = config_path or os.environ.get(CONFIG_ENV_VAR)
    local_data = load_yaml(Path(override_path) if override_path else LOCAL_CONFIG_PATH)
    config_data = merge_dicts(config_data, local_data)

    config = TranscoderConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
