"""Configuration management for mlimage."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

# Pick up a .env file next to the working directory, if any
load_dotenv()

DEFAULT_BASE_IMAGE = 'nvidia/cuda:11.8.0-cudnn8-runtime-ubuntu22.04'
DEFAULT_CONDA_INSTALLER_URL = (
    'https://repo.anaconda.com/miniconda/Miniconda3-latest-Linux-x86_64.sh'
)
DEFAULT_SYSTEM_PACKAGES = 'wget,bzip2,ca-certificates,git'

TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


def _env_str(var_name: str, default: str) -> str:
    return os.getenv(var_name, default)


def _env_int(var_name: str, default: str) -> int:
    """Safely parse integer from environment variable."""
    value = os.getenv(var_name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def _env_bool(var_name: str, default: str) -> bool:
    return os.getenv(var_name, default).strip().lower() in TRUE_VALUES


def _env_list(var_name: str, default: str) -> List[str]:
    value = os.getenv(var_name, default)
    return [item.strip() for item in value.split(',') if item.strip()]


def _from_env(reader, var_name: str, default: str):
    return field(default_factory=lambda: reader(var_name, default))


def _coerce(name: str, value: Any, field_type: Any) -> Any:
    """Convert a YAML scalar or list (loaded as strings) to a field's type."""
    if field_type == List[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return [item.strip() for item in value if item.strip()]
        raise ValueError(f"Configuration field '{name}' must be a list of strings")

    if not isinstance(value, str):
        raise ValueError(f"Configuration field '{name}' must be a scalar")

    if field_type is bool:
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise ValueError(f"Configuration field '{name}' must be true or false, got '{value}'")

    if field_type is int:
        try:
            return int(value)
        except ValueError:
            raise ValueError(
                f"Configuration field '{name}' must be an integer, got '{value}'"
            ) from None

    return value


@dataclass
class Config:
    """Central configuration for recipe rendering and engine operations."""

    # Recipe
    base_image: str = _from_env(_env_str, 'MLIMAGE_BASE_IMAGE', DEFAULT_BASE_IMAGE)
    conda_installer_url: str = _from_env(
        _env_str, 'MLIMAGE_CONDA_INSTALLER_URL', DEFAULT_CONDA_INSTALLER_URL
    )
    conda_dir: str = _from_env(_env_str, 'MLIMAGE_CONDA_DIR', '/opt/conda')
    env_name: str = _from_env(_env_str, 'MLIMAGE_ENV_NAME', 'ml')
    python_version: str = _from_env(_env_str, 'MLIMAGE_PYTHON_VERSION', '3.10')
    numerics_library: str = _from_env(_env_str, 'MLIMAGE_NUMERICS_LIBRARY', 'pytorch')
    accelerator_toolkit: str = _from_env(_env_str, 'MLIMAGE_ACCELERATOR_TOOLKIT', '11.8')
    system_packages: List[str] = _from_env(
        _env_list, 'MLIMAGE_SYSTEM_PACKAGES', DEFAULT_SYSTEM_PACKAGES
    )
    workdir: str = _from_env(_env_str, 'MLIMAGE_WORKDIR', '/workspace')

    # Engine
    image_tag: str = _from_env(_env_str, 'MLIMAGE_IMAGE_TAG', 'mlimage:latest')
    registry: str = _from_env(_env_str, 'MLIMAGE_REGISTRY', '')

    # Logging and monitoring
    log_level: str = _from_env(_env_str, 'MLIMAGE_LOG_LEVEL', 'INFO')
    log_structured: bool = _from_env(_env_bool, 'MLIMAGE_LOG_STRUCTURED', 'false')
    metrics_port: int = _from_env(_env_int, 'MLIMAGE_METRICS_PORT', '0')

    @property
    def env_prefix(self) -> str:
        """Filesystem prefix of the named conda environment."""
        return f"{self.conda_dir.rstrip('/')}/envs/{self.env_name}"

    @classmethod
    def from_yaml(cls, path: str, overrides: Optional[Dict[str, Any]] = None) -> 'Config':
        """
        Load configuration from a YAML file on top of the environment defaults.

        Scalars are read as strings and converted to each field's type, so an
        unquoted `python_version: 3.10` stays "3.10".

        Args:
            path: YAML file with lowercase field names as keys
            overrides: Extra values applied after the file

        Returns:
            Config instance

        Raises:
            ValueError: Unknown key or a value of the wrong type
            yaml.YAMLError: Malformed YAML
        """
        with open(Path(path), 'r') as f:
            file_config = yaml.load(f, Loader=yaml.BaseLoader) or {}

        if not isinstance(file_config, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")

        file_config.update(overrides or {})

        types = {f.name: f.type for f in fields(cls)}
        unknown = sorted(set(file_config) - set(types))
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

        values = {
            name: _coerce(name, value, types[name])
            for name, value in file_config.items()
        }
        return cls(**values)

    def validate(self) -> bool:
        """Validate configuration."""
        from ..recipe.templates import NUMERICS_LIBRARIES

        required_fields = [
            'base_image',
            'conda_installer_url',
            'conda_dir',
            'env_name',
            'python_version',
            'workdir',
        ]

        for name in required_fields:
            if not getattr(self, name):
                raise ValueError(f"Required configuration field '{name}' is not set")

        for name in ('conda_dir', 'workdir'):
            if not getattr(self, name).startswith('/'):
                raise ValueError(f"Configuration field '{name}' must be an absolute path")

        if self.numerics_library not in NUMERICS_LIBRARIES:
            raise ValueError(
                f"Unknown numerics library '{self.numerics_library}'. "
                f"Choose from: {', '.join(sorted(NUMERICS_LIBRARIES))}"
            )

        return True
