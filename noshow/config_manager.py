from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from noshow.models import AppConfig, default_app_config

logger = logging.getLogger("noshow.config_manager")

# Environment variables that take precedence over the YAML file.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "NOSHOW_FIRESTORE_PROJECT": ("firestore", "project_id"),
    "NOSHOW_FIRESTORE_CREDENTIALS": ("firestore", "credentials_path"),
    "NOSHOW_USER_ID": ("session", "user_id"),
    "NOSHOW_CLINIC_ID": ("session", "clinic_id"),
}


def _deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name, "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def _dump_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self._environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing default config to %s", self.config_path)
        self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a mapping, got {type(data).__name__}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read_file()
        return AppConfig.from_dict(_deep_merge(data, _env_overrides(self._environ)))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _dump_yaml(tmp_path, config_dict)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                logger.debug("Atomic replace of %s busy; writing in place", self.config_path)
                _dump_yaml(self.config_path, config_dict)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: Mapping[str, Any]) -> AppConfig:
        # Merge onto the file contents, not the env-overridden view, so
        # overrides are never persisted.
        with self._lock:
            merged = _deep_merge(AppConfig.from_dict(self._read_file()).to_dict(), payload)
            self.save(AppConfig.from_dict(merged))
        return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("firestore", {}).get("credentials_path"):
            config["firestore"]["credentials_path"] = "***"
        return config
