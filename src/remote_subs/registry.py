from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from . import metadata
from .cache import DirectoryCache
from .runtime import MetadataLookup, SourceFactory, TenantRuntime
from .settings import Settings
from .sources import open_source
from .storage import ConfigStore, JsonFileConfigStore
from .tenants import ConfigMissing

log = logging.getLogger("remote_subs.registry")

RuntimeFactory = Callable[[str, int], TenantRuntime]


class RuntimeRegistry:
    """Process-local map of tenant key to its live runtime.

    Runtimes are built lazily on first use. A config change must be followed
    by ``invalidate(key)`` (or ``replace(key)``) so that later requests see
    the new connection parameters; nothing is rebuilt implicitly.
    """

    def __init__(self, factory: RuntimeFactory, on_invalidate: Optional[Callable[[str], None]] = None) -> None:
        self._factory = factory
        self._on_invalidate = on_invalidate
        self._runtimes: Dict[str, TenantRuntime] = {}
        self._versions: Dict[str, int] = {}

    def get(self, key: str) -> TenantRuntime:
        runtime = self._runtimes.get(key)
        if runtime is None:
            version = self._versions.get(key, 0)
            runtime = self._factory(key, version)
            self._runtimes[key] = runtime
            log.info("Built runtime for %s (v%d)", key, version)
        return runtime

    def peek(self, key: str) -> Optional[TenantRuntime]:
        return self._runtimes.get(key)

    def invalidate(self, key: str) -> None:
        self._runtimes.pop(key, None)
        self._versions[key] = self._versions.get(key, 0) + 1
        if self._on_invalidate is not None:
            self._on_invalidate(key)

    def replace(self, key: str) -> TenantRuntime:
        self.invalidate(key)
        return self.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._runtimes


@dataclass
class AppContext:
    """Everything a request handler needs, created once per process."""

    settings: Settings
    config_store: ConfigStore
    directory_cache: DirectoryCache
    source_factory: SourceFactory
    metadata_lookup: MetadataLookup
    registry: RuntimeRegistry = field(init=False)

    def __post_init__(self) -> None:
        self.registry = RuntimeRegistry(self.build_runtime, on_invalidate=self.directory_cache.invalidate)

    def build_runtime(self, key: str, version: int = 0) -> TenantRuntime:
        config = self.config_store.get(key)
        if config is None:
            raise ConfigMissing(key)
        return TenantRuntime(
            config,
            settings=self.settings,
            directory_cache=self.directory_cache,
            source_factory=self.source_factory,
            metadata_lookup=self.metadata_lookup,
            version=version,
        )


def build_context(settings: Settings, config_store: Optional[ConfigStore] = None) -> AppContext:
    return AppContext(
        settings=settings,
        config_store=config_store or JsonFileConfigStore(settings.data_dir),
        directory_cache=DirectoryCache(ttl=settings.cache_ttl_seconds),
        source_factory=functools.partial(open_source, settings=settings),
        metadata_lookup=functools.partial(
            metadata.lookup,
            base_url=settings.cinemeta_url,
            timeout=settings.metadata_timeout_seconds,
        ),
    )
