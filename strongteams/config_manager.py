from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from strongteams.errors import ConfigError
from strongteams.models import AppConfig, default_app_config

MASK = "***"

# Secrets may live in the environment instead of the YAML file.
SECRET_ENV_VARS: dict[tuple[str, str], str] = {
    ("calendar", "password"): "STRONGTEAMS_CALDAV_PASSWORD",
    ("assessment_api", "api_key"): "STRONGTEAMS_IDS_API_KEY",
    ("email", "password"): "STRONGTEAMS_SMTP_PASSWORD",
}
CONFIG_FILE_MODE = 0o600


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _without_placeholder_secrets(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop secrets sent back as the mask or blank so stored values survive."""
    cleaned = copy.deepcopy(payload)
    for section, key in SECRET_ENV_VARS:
        values = cleaned.get(section)
        if isinstance(values, dict) and str(values.get(key) or "").strip() in {"", MASK}:
            values.pop(key, None)
    return cleaned


def _with_env_secrets(data: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(data)
    for (section, key), env_name in SECRET_ENV_VARS.items():
        value = os.getenv(env_name)
        if value:
            section_values = merged.get(section)
            if not isinstance(section_values, dict):
                section_values = merged[section] = {}
            section_values[key] = value
    return merged


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file {self.config_path} is not valid YAML: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a mapping, got {type(data).__name__}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(_with_env_secrets(self._read_file()))

    def _write_yaml(self, path: Path, data: dict[str, Any]) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)
        os.chmod(path, CONFIG_FILE_MODE)

    def save(self, config: AppConfig) -> None:
        data = config.to_dict()
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._write_yaml(tmp_path, data)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                self._write_yaml(self.config_path, data)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge ``payload`` into the file; secrets from the environment are never written."""
        with self._lock:
            stored = AppConfig.from_dict(self._read_file()).to_dict()
            config = AppConfig.from_dict(_deep_merge(stored, _without_placeholder_secrets(payload)))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        for section, key in SECRET_ENV_VARS:
            if data[section][key]:
                data[section][key] = MASK
        return data
