import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import MediaJobsConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Flat overrides read from the environment, lowest priority after YAML
ENV_OVERRIDES = {
    "MEDIA_JOBS_DB": "db",
    "MEDIA_JOBS_BLOB_ROOT": "blob_root",
    "MEDIA_JOBS_DATABASE_URL": "database_url",
    "MEDIA_JOBS_LOG_LEVEL": "log_level",
    "MEDIA_JOBS_TEMP_DIR": "temp_dir",
}


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


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect flat overrides from MEDIA_JOBS_* environment variables."""
    environ = os.environ if environ is None else environ
    return {key: environ[name] for name, key in ENV_OVERRIDES.items() if environ.get(name)}


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> MediaJobsConfig:
    """
    Resolve config: Default < Local < Env < CLI
    Returns validated Pydantic MediaJobsConfig model.
    """
    cli_args = {k: v for k, v in (cli_args or {}).items() if v is not None}

    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    config = MediaJobsConfig.from_dict(config_data)

    overrides = env_overrides()
    overrides.update(cli_args)
    return config.merge_overrides(overrides)
