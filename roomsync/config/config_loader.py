import functools
import os
from collections.abc import Mapping

import yaml

CONFIG_ENV_VAR = "ROOMSYNC_CONFIG"
default_config_file = "config.yaml"


def get_project_dir():
    """Directory holding the runtime data/ folder (the working directory)."""
    return os.getcwd() + "/"


def get_default_config_path():
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), default_config_file)


def get_custom_config_path():
    path = os.environ.get(CONFIG_ENV_VAR)
    if path:
        return path
    return get_project_dir() + "data/." + default_config_file


def read_config(config_path):
    with open(config_path, "r", encoding="utf-8") as file:
        config = yaml.safe_load(file)
    return config or {}


@functools.lru_cache(maxsize=1)
def load_config():
    """Load the packaged defaults merged with the optional custom config."""
    config = read_config(get_default_config_path())

    custom_config_path = get_custom_config_path()
    if os.path.isfile(custom_config_path):
        config = merge_configs(config, read_config(custom_config_path))

    ensure_directories(config)
    return config


def reload_config():
    load_config.cache_clear()
    return load_config()


def ensure_directories(config):
    log_dir = config.get("log", {}).get("log_dir")
    if not log_dir:
        return
    try:
        os.makedirs(os.path.join(get_project_dir(), log_dir), exist_ok=True)
    except PermissionError:
        print(f"Warning: cannot create log directory {log_dir}; check permissions")


def merge_configs(default_config, custom_config):
    """
    Recursively merge configs; values from custom_config win.

    Args:
        default_config: packaged defaults
        custom_config: deployment overrides

    Returns:
        The merged config
    """
    if not isinstance(default_config, Mapping) or not isinstance(
        custom_config, Mapping
    ):
        return custom_config

    merged = dict(default_config)

    for key, value in custom_config.items():
        if (
            key in merged
            and isinstance(merged[key], Mapping)
            and isinstance(value, Mapping)
        ):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged
