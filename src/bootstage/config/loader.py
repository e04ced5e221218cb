# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/config/loader.py

import logging
from pathlib import Path
from string import Template
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from bootstage.errors import ConfigError
from .models import Config

log = logging.getLogger("bootstage")

CONFIG_FILE_ENV = "BOOTSTAGE_CONFIG_FILE"

# environment variable -> dotted config key
ENV_VARS: dict[str, str] = {
    "BOOTSTAGE_SSH_HOST": "tunnel.host",
    "BOOTSTAGE_SSH_PORT": "tunnel.ssh_port",
    "BOOTSTAGE_SSH_USER": "tunnel.user",
    "BOOTSTAGE_SSH_KEY": "tunnel.key_path",
    "BOOTSTAGE_TUNNEL_REQUIRED": "tunnel.required",
    "BOOTSTAGE_AGENT_VERSION": "agent.version",
    "BOOTSTAGE_AGENT_SERVER": "agent.server",
    "BOOTSTAGE_BANNER_TEXT": "banner.text",
    "BOOTSTAGE_STATE_FILE": "paths.state_file",
    "BOOTSTAGE_LOCK_FILE": "paths.lock_file",
    "BOOTSTAGE_LOG_DIR": "paths.log_dir",
    "BOOTSTAGE_STAGE_ATTEMPTS": "stage_attempts",
    "BOOTSTAGE_HOOK_BACKEND": "hook_backend",
    "BOOTSTAGE_REBOOT_DELAY": "reboot_delay",
}


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _nest(dotted: Mapping[str, Any]) -> dict:
    """{"tunnel.host": "x"} -> {"tunnel": {"host": "x"}}"""
    out: dict = {}
    for key, value in dotted.items():
        node = out
        *parents, leaf = key.split(".")
        for p in parents:
            node = node.setdefault(p, {})
        node[leaf] = value
    return out


def _load_yaml(path: Path, environ: Optional[Mapping[str, str]] = None) -> dict:
    """
    Load a YAML file. With *environ*, ${VAR} references are expanded from
    it; unknown names are left as written.
    """
    try:
        raw = path.read_text()
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    expanded = Template(raw).safe_substitute(environ) if environ is not None else raw
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def env_overrides(environ: Mapping[str, str]) -> dict:
    return _nest({key: environ[var] for var, key in ENV_VARS.items() if environ.get(var)})


def resolve(
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    config_file: Optional[str | Path] = None,
    expand_env: bool = True,
) -> Config:
    """
    Build the immutable Config. Precedence, lowest first:

      1. built-in defaults (``Config`` field defaults)
      2. YAML file: *config_file*, else ``BOOTSTAGE_CONFIG_FILE``
      3. ``BOOTSTAGE_*`` environment variables (see ``ENV_VARS``)
      4. *overrides*: dotted keys from CLI flags; ``None`` means "not given"

    ${VAR} references in the file are expanded from *environ* unless
    *expand_env* is off. The reboot snapshot is read that way, since its
    values were already resolved once.

    Pure function of its arguments.
    """
    environ = environ or {}
    data: dict = {}

    path = config_file or environ.get(CONFIG_FILE_ENV)
    if path:
        log.debug("Loading config file %s", path)
        _deep_merge(data, _load_yaml(Path(path), environ if expand_env else None))

    _deep_merge(data, env_overrides(environ))
    _deep_merge(data, _nest({k: v for k, v in (overrides or {}).items() if v is not None}))

    try:
        return Config.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc
