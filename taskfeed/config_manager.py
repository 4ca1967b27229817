from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from taskfeed.feed_parser import resolve_timezone
from taskfeed.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ("feeds", "remote", "sync")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_payload(payload: dict[str, Any]) -> None:
    """Reject config updates that would save but never work."""
    unknown = sorted(set(payload) - set(CONFIG_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(unknown)}")
    for section in CONFIG_SECTIONS:
        value = payload.get(section)
        if value is not None and not isinstance(value, dict):
            raise ValueError(f"Config section '{section}' must be a mapping.")

    sync = payload.get("sync") or {}
    if "timezone" in sync:
        resolve_timezone(sync.get("timezone"))

    proxies = (payload.get("feeds") or {}).get("proxies")
    if isinstance(proxies, str):
        proxies = [proxies]
    for template in proxies or []:
        if str(template).strip() and "{url}" not in str(template):
            raise ValueError(f"Proxy template must contain {{url}}: {template}")

    base_url = str((payload.get("remote") or {}).get("base_url", "") or "").strip()
    if base_url and not base_url.startswith(("http://", "https://", "memory://")):
        raise ValueError("remote.base_url must be an http(s) URL or memory://")


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing default config to %s", self.config_path)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            try:
                with self.config_path.open("r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Config file {self.config_path} is not valid YAML: {exc}") from exc
            if not isinstance(data, dict):
                raise ValueError(f"Config file {self.config_path} must hold a mapping.")
            return AppConfig.from_dict(data)

    def _write(self, path: Path, config_dict: dict[str, Any]) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._write(tmp_path, config_dict)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._write(self.config_path, config_dict)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        validate_payload(payload)
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
        logger.info("Config updated: %s", ", ".join(sorted(payload)) or "no changes")
        return config
