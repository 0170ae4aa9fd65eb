from __future__ import annotations

import abc
import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from .tenants import TenantConfig

log = logging.getLogger("remote_subs.storage")


class ConfigStore(abc.ABC):
    """Tenant configurations keyed by tenant key."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[TenantConfig]:
        """Stored config for ``key`` or None."""

    @abc.abstractmethod
    def set(self, key: str, config: TenantConfig) -> None:
        """Store ``config`` under ``key``, replacing any previous one."""

    def has(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryConfigStore(ConfigStore):
    def __init__(self) -> None:
        self._configs: Dict[str, TenantConfig] = {}

    def get(self, key: str) -> Optional[TenantConfig]:
        return self._configs.get(key)

    def set(self, key: str, config: TenantConfig) -> None:
        self._configs[key] = config


def atomic_write_text(path: Path, data: str) -> None:
    """Write via a temp file, fsync and rename so readers never see a torn file."""
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except OSError:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError as exc:
                log.error("Failed to clean up temp file %s: %s", tmp_path, exc)
        raise


class JsonFileConfigStore(ConfigStore):
    """All configs in one JSON file under ``data_dir``.

    A failed write rolls the in-memory map back and re-raises, so memory and
    disk never disagree about a saved config.
    """

    def __init__(self, data_dir: str, filename: str = "configs.json") -> None:
        self._dir = Path(data_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._path = self._dir / filename
        self._lock = threading.Lock()
        self._configs = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, TenantConfig]:
        if not self._path.exists():
            return {}
        with open(self._path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
        configs = {key: TenantConfig.from_dict(value) for key, value in raw.items()}
        log.info("Loaded %d tenant configs from %s", len(configs), self._path)
        return configs

    def _save(self) -> None:
        payload = {key: cfg.to_dict() for key, cfg in self._configs.items()}
        atomic_write_text(self._path, json.dumps(payload, ensure_ascii=False, indent=2))

    def get(self, key: str) -> Optional[TenantConfig]:
        return self._configs.get(key)

    def set(self, key: str, config: TenantConfig) -> None:
        with self._lock:
            previous = self._configs.get(key)
            self._configs[key] = config
            try:
                self._save()
            except OSError:
                if previous is not None:
                    self._configs[key] = previous
                else:
                    self._configs.pop(key, None)
                log.exception("Failed to save config for %s", key)
                raise
