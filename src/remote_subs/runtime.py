from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, BinaryIO, Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote, urlencode

from .cache import DirectoryCache
from .matching import MatchSignals, build_match_signals, derive_language, score
from .metrics import SUBTITLES_COUNT
from .settings import Settings
from .sources.base import RemoteConnection, RemoteFile, RemoteSource, RemoteTransferError
from .sources.traversal import collect_subtitle_files
from .tenants import TenantConfig
from .utils import extension_lower, with_timeout

log = logging.getLogger("remote_subs.runtime")

MEDIA_TYPES = ("movie", "series", "other")
SUCCESS_CACHE_MAX_AGE = 3600
FALLBACK_CACHE_MAX_AGE = 30
KIND_LABELS = {"ftp": "FTP", "drive": "Drive"}

MetadataLookup = Callable[[str, str], Awaitable[Optional[dict]]]
SourceFactory = Callable[[TenantConfig], RemoteSource]


@dataclass(frozen=True)
class ScoredFile:
    file: RemoteFile
    score: int


@dataclass(frozen=True)
class SubtitleDescriptor:
    id: str
    url: str
    lang: str
    title: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "url": self.url, "lang": self.lang, "title": self.title, "name": self.title}


def descriptor_id(identifier: str) -> str:
    return hashlib.md5(identifier.encode("utf-8")).hexdigest()


def proxy_url(base_url: str, key: str, remote_file: RemoteFile) -> str:
    query = urlencode(
        {
            "path": remote_file.identifier,
            "ext": extension_lower(remote_file.name),
            "name": remote_file.name,
        },
        quote_via=quote,
    )
    return f"{base_url}/u/{key}/file?{query}"


def build_descriptor(remote_file: RemoteFile, key: str, base_url: str, label: str) -> SubtitleDescriptor:
    title = f"{label} · {remote_file.name}"
    return SubtitleDescriptor(
        id=descriptor_id(remote_file.identifier),
        url=proxy_url(base_url, key, remote_file),
        lang=derive_language(remote_file.name),
        title=title,
    )


def rank_files(files: Sequence[RemoteFile], signals: MatchSignals, limit: int) -> List[ScoredFile]:
    """Best ``limit`` files with a positive score, highest first.

    When nothing scores above zero the first ``limit`` files in traversal
    order are returned instead, so a tenant with files always gets some.
    """
    scored = [ScoredFile(file=f, score=score(f.name, signals)) for f in files]
    picked = sorted((s for s in scored if s.score > 0), key=lambda s: s.score, reverse=True)[:limit]
    if not picked:
        picked = scored[:limit]
    return picked


def build_manifest(settings: Settings, key: Optional[str] = None) -> Dict[str, Any]:
    if key is None:
        return {
            "id": settings.addon_id_prefix,
            "version": settings.addon_version,
            "name": f"{settings.addon_name} (unconfigured)",
            "description": "Open /configure to set up your FTP server or Drive folder and install your personal link",
            "resources": ["subtitles"],
            "types": list(MEDIA_TYPES),
            "catalogs": [],
            "behaviorHints": {"configurable": True, "configurationRequired": True},
        }
    return {
        "id": f"{settings.addon_id_prefix}.{key}",
        "version": settings.addon_version,
        "name": settings.addon_name,
        "description": settings.addon_description,
        "resources": ["subtitles"],
        "types": list(MEDIA_TYPES),
        "catalogs": [],
        "behaviorHints": {"configurable": True, "configurationRequired": False},
    }


def empty_response() -> Dict[str, Any]:
    return {"subtitles": [], "cacheMaxAge": FALLBACK_CACHE_MAX_AGE}


class TenantRuntime:
    """Subtitle lookup for one tenant, bound to a snapshot of its config."""

    def __init__(
        self,
        config: TenantConfig,
        *,
        settings: Settings,
        directory_cache: DirectoryCache,
        source_factory: SourceFactory,
        metadata_lookup: MetadataLookup,
        version: int = 0,
    ) -> None:
        self.config = config
        self.key = config.key
        self.version = version
        self.manifest = build_manifest(settings, config.key)
        self._settings = settings
        self._cache = directory_cache
        self._source_factory = source_factory
        self._metadata_lookup = metadata_lookup
        self._label = KIND_LABELS.get(config.remote_kind, config.remote_kind.upper())

    async def _traverse(self) -> Sequence[RemoteFile]:
        source = self._source_factory(self.config)
        return await collect_subtitle_files(
            source,
            max_depth=self._settings.max_depth,
            timeout=self._settings.traversal_timeout_seconds,
            extensions=self._settings.subtitle_extensions,
        )

    async def list_files(self) -> Sequence[RemoteFile]:
        return await self._cache.list_files(self.key, self._traverse)

    async def _lookup_metadata(self, media_type: str, media_id: str) -> Optional[dict]:
        try:
            return await self._metadata_lookup(media_type, media_id)
        except Exception as exc:  # noqa: BLE001
            log.warning("[metadata] lookup for %s raised %s, continuing without", media_id, exc)
            return None

    async def _collect(self, media_type: str, media_id: str) -> Dict[str, Any]:
        meta = await self._lookup_metadata(media_type, media_id)
        signals = build_match_signals(media_type, media_id, meta)
        files = await self.list_files()
        picked = rank_files(files, signals, self._settings.max_results)
        base_url = self._settings.base_url
        subtitles = [build_descriptor(s.file, self.key, base_url, self._label).to_dict() for s in picked]
        log.info(
            "[subtitles] key=%s %s/%s signals=%s listed=%d returned=%d",
            self.key, media_type, media_id, signals, len(files), len(subtitles),
        )
        return {"subtitles": subtitles, "cacheMaxAge": SUCCESS_CACHE_MAX_AGE}

    async def get_subtitles(
        self, media_type: str, media_id: str, extras: Optional[Mapping[str, str]] = None
    ) -> Dict[str, Any]:
        """Ranked subtitles for a media id within the total time budget.

        Never raises: a timeout or an unexpected error yields an empty list
        with a short cacheMaxAge so the player asks again soon.
        """
        started = time.monotonic()
        budget = self._settings.subtitles_total_timeout_seconds
        if extras:
            # videoHash / filename hints are accepted but not used for ranking
            log.debug("[subtitles] key=%s extras=%s", self.key, sorted(extras))
        try:
            result = await with_timeout(self._collect(media_type, media_id), budget, None)
        except Exception:
            log.exception("[subtitles] key=%s %s/%s failed", self.key, media_type, media_id)
            SUBTITLES_COUNT.labels(media_type=media_type, outcome="error").inc()
            return empty_response()

        if result is None:
            log.warning(
                "[subtitles] key=%s %s/%s exceeded %.1fs budget after %.0fms",
                self.key, media_type, media_id, budget, (time.monotonic() - started) * 1000,
            )
            SUBTITLES_COUNT.labels(media_type=media_type, outcome="timeout").inc()
            return empty_response()

        SUBTITLES_COUNT.labels(media_type=media_type, outcome="ok").inc()
        return result

    async def download(self, identifier: str, sink: BinaryIO) -> None:
        """Copy one remote file into ``sink``.

        Raises RemoteSourceError subclasses; running past the download
        budget is reported as RemoteTransferError.
        """
        source = self._source_factory(self.config)
        opened: List[Optional[RemoteConnection]] = [None]

        async def _run() -> bool:
            conn = await source.connect()
            opened[0] = conn
            await conn.download(identifier, sink)
            return True

        try:
            finished = await with_timeout(_run(), self._settings.download_timeout_seconds, False)
        finally:
            if opened[0] is not None:
                await opened[0].close()
        if not finished:
            raise RemoteTransferError(f"download of {identifier} timed out")
