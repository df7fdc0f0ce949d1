from __future__ import annotations

import copy
import errno
import os
import re
import threading
from pathlib import Path
from typing import Any

import yaml

from attendee_mirror.errors import ConfigurationError
from attendee_mirror.models import AppConfig, default_app_config


SECRET_FIELDS = ("client_secret", "refresh_token")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_target_emails(value: str | None) -> list[str]:
    if value is None:
        raise ConfigurationError("target_emails is not configured")
    compact = re.sub(r"\s", "", value)
    if not compact:
        raise ConfigurationError("target_emails is empty")
    return compact.split(",")


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def target_emails(self) -> list[str]:
        """Target addresses in configured order; TARGET_EMAILS in the environment wins over the file."""
        return parse_target_emails(self.load().resolved_target_emails())

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        google = config.get("google", {})
        for key in SECRET_FIELDS:
            if google.get(key):
                google[key] = "***"
        return config
