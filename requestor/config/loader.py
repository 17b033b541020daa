"""YAML/environment loaders for the config subsystem.

The requestor reads at most one YAML file, then layers environment variables
and command-line overrides on top of it before validating the result via
models.py. Overrides use dotted keys (``api.market_url``) so the CLI does not
need to know the nesting of :class:`RequestorConfig`.
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml
from pydantic import ValidationError

from requestor.core.errors import ConfigurationError

from .models import RequestorConfig

CONFIG_PATH_ENV = "REQUESTOR_CONFIG"
LOG_LEVEL_ENV = "REQUESTOR_LOG"
APP_KEY_ENV = "YAGNA_APPKEY"
NODE_ID_ENV = "YAGNA_NODE_ID"

ENV_OVERRIDES: Mapping[str, str] = {
    LOG_LEVEL_ENV: "telemetry.log_level",
    APP_KEY_ENV: "identity.app_key",
    NODE_ID_ENV: "identity.node_id",
}


def _read_yaml(path: Path) -> Mapping:
    """Read a YAML file and return a mapping (empty dict if file is blank)."""

    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as fp:
        try:
            data = yaml.safe_load(fp) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"YAML root must be a mapping in {path}")
    return data


def _set_dotted(target: MutableMapping[str, Any], dotted_key: str, value: Any) -> None:
    node = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, MutableMapping):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def resolve_config_path(explicit: Path | str | None, env: Mapping[str, str]) -> Optional[Path]:
    """Return the config path from the CLI, then ``REQUESTOR_CONFIG``, else ``None``."""

    if explicit:
        return Path(explicit)
    env_path = env.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return None


def load_requestor_config(
    path: Path | str | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RequestorConfig:
    """Load YAML (optional), apply env and dotted overrides, validate.

    Precedence, lowest to highest: model defaults, YAML file, environment
    (``REQUESTOR_LOG``, ``YAGNA_APPKEY``, ``YAGNA_NODE_ID``), ``overrides``.
    ``None`` override values are ignored so unset CLI flags keep lower layers.
    """

    environ = os.environ if env is None else env
    config_path = resolve_config_path(path, environ)
    data: Dict[str, Any] = {}
    if config_path is not None:
        data = copy.deepcopy(dict(_read_yaml(config_path)))
    for env_name, dotted_key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            _set_dotted(data, dotted_key, value)
    for dotted_key, value in (overrides or {}).items():
        if value is not None:
            _set_dotted(data, dotted_key, value)
    try:
        return RequestorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid requestor config: {exc}") from exc
