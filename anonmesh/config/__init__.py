"""Configuration module for anonmesh."""

from anonmesh.config.loader import get_config_path, load_config, save_config
from anonmesh.config.schema import Config, MeshConfig, RelayConfig

__all__ = [
    "Config",
    "MeshConfig",
    "RelayConfig",
    "get_config_path",
    "load_config",
    "save_config",
]
