"""Utilities for resolving and managing application paths."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

DEFAULT_CONFIG_DIR = "~/.queries"
DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_STATE_FILE = "state.yaml"

CONFIG_DIR_ENV = "QUERIES_CONFIG_DIR"
CONFIG_FILE_ENV = "QUERIES_CONFIG_PATH"
STATE_FILE_ENV = "QUERIES_STATE_PATH"


def _expand(path_str: str) -> Path:
    """Return a Path with user and environment variables expanded."""
    return Path(os.path.expandvars(path_str)).expanduser()


def get_config_dir(create: bool = False, env: Mapping[str, str] | None = None) -> Path:
    """Return the configuration directory, optionally creating it."""
    env = env if env is not None else os.environ
    raw = env.get(CONFIG_DIR_ENV, DEFAULT_CONFIG_DIR)
    path = _expand(raw)
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


def _file_in_config_dir(
    override_env: str,
    filename: str,
    create_parents: bool,
    env: Mapping[str, str] | None,
) -> Path:
    env = env if env is not None else os.environ
    override = env.get(override_env)
    if override:
        path = _expand(override)
        if create_parents:
            path.parent.mkdir(parents=True, exist_ok=True)
        return path
    return get_config_dir(create=create_parents, env=env) / filename


def default_config_path(create_parents: bool = False, env: Mapping[str, str] | None = None) -> Path:
    """Return the default config file path, optionally ensuring parent dirs exist."""
    return _file_in_config_dir(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE, create_parents, env)


def default_state_path(create_parents: bool = False, env: Mapping[str, str] | None = None) -> Path:
    """Return the persisted user-state document path."""
    return _file_in_config_dir(STATE_FILE_ENV, DEFAULT_STATE_FILE, create_parents, env)


def resolve_path(path_str: str | Path) -> Path:
    """Expand user and environment variables for arbitrary paths."""
    if isinstance(path_str, Path):
        return _expand(str(path_str))
    return _expand(path_str)
