from __future__ import annotations

import logging
import os
import re
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigError, MissingConfigKeyError, PlaceholderFormatError

logger = logging.getLogger("cadence.config")

ENV_PREFIX = "APP"
PLACEHOLDER_RE = re.compile(r"^\$\{(?P<key>[^{}:]+)(?::(?P<default>[^{}]*))?\}$")
KEY_RE = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)*$")


class ConfigStore:
    """Read-only key/value lookup over a nested mapping, queried by dotted path."""

    def __init__(self, payload: Optional[Mapping[str, Any]] = None, source: str = "<memory>"):
        self._data: Dict[str, Any] = _lower_keys(payload or {})
        self.source = source

    def get(self, key: str) -> Optional[str]:
        node: Any = self._data
        for part in key.strip().lower().split("."):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return _scalar_text(node)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def overlay_env(self, environ: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX) -> "ConfigStore":
        """Return a copy where APP_<A>_<B> variables override key a.b."""
        environ = os.environ if environ is None else environ
        merged = _copy_tree(self._data)
        marker = prefix.upper() + "_"
        for name, value in environ.items():
            if not name.upper().startswith(marker) or len(name) == len(marker):
                continue
            parts = [part for part in name[len(marker):].lower().split("_") if part]
            if not parts:
                continue
            node = merged
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
        return ConfigStore(merged, source=self.source)

    def __repr__(self) -> str:
        return f"ConfigStore(source={self.source!r})"


def _lower_keys(payload: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in payload.items():
        out[str(key).lower()] = _lower_keys(value) if isinstance(value, Mapping) else value
    return out


def _copy_tree(node: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _copy_tree(value) if isinstance(value, dict) else value for key, value in node.items()}


def _scalar_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def _read_config_file(config_path: Path) -> str:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")
    return config_path.read_text(encoding="utf-8")


def load_yaml_config(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> ConfigStore:
    config_path = Path(path)
    text = _read_config_file(config_path)
    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level config in {config_path} must be a mapping.")
    return ConfigStore(payload, source=str(config_path)).overlay_env(environ)


def load_toml_config(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> ConfigStore:
    config_path = Path(path)
    text = _read_config_file(config_path)
    try:
        payload = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Error: Failed to parse TOML in {config_path}: {exc}") from exc
    return ConfigStore(payload, source=str(config_path)).overlay_env(environ)


def load_config(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> ConfigStore:
    suffix = Path(path).suffix.lower()
    if suffix in {".yaml", ".yml"}:
        return load_yaml_config(path, environ)
    if suffix == ".toml":
        return load_toml_config(path, environ)
    raise ConfigError(f'Error: Unsupported config format "{suffix}" for {path}; use .yaml, .yml or .toml.')


def is_placeholder(value: str) -> bool:
    return value.strip().startswith("${")


def resolve(raw: str, config: ConfigStore) -> str:
    """Resolve ${key} or ${key:default} against the store; literals pass through."""
    match = PLACEHOLDER_RE.match(raw.strip())
    if not match:
        return raw
    key = match.group("key").strip()
    default = match.group("default")
    value = config.get(key)
    if value is not None:
        return value
    if default is None:
        raise MissingConfigKeyError(key)
    logger.warning("Config key '%s' not found, using default value '%s'", key, default)
    return default


def validate_placeholder(value: str, field_name: str, task_name: str) -> None:
    text = value.strip()
    start = text.find("${")
    if start == -1:
        return
    if start > 0:
        raise PlaceholderFormatError(
            f"Error: Invalid format '{value}' in {field_name} for task '{task_name}': "
            f"unexpected text '{text[:start]}' before the config placeholder."
        )
    close = text.find("}")
    if close == -1:
        raise PlaceholderFormatError(
            f"Error: Malformed config placeholder '{value}' in {field_name} for task '{task_name}': "
            "missing closing brace '}'. Use ${config.key} or ${config.key:default}."
        )
    trailing = text[close + 1:]
    if trailing:
        hint = (
            " Cannot append a time suffix to a config placeholder; put it in the value "
            "(${app.interval:5s}) or use time_unit."
            if any(ch.isalpha() for ch in trailing)
            else ""
        )
        raise PlaceholderFormatError(
            f"Error: Invalid format '{value}' in {field_name} for task '{task_name}': "
            f"extra characters '{trailing}' after the config placeholder.{hint}"
        )
    match = PLACEHOLDER_RE.match(text)
    if not match or not KEY_RE.match(match.group("key")):
        raise PlaceholderFormatError(
            f"Error: Invalid config key in '{value}' for {field_name} of task '{task_name}': "
            "keys are dotted names like app.interval."
        )
