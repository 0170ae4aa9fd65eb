import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

from remote_subs.cache import DirectoryCache
from remote_subs.registry import AppContext
from remote_subs.settings import Settings
from remote_subs.sources.base import (
    RemoteConnection,
    RemoteConnectionError,
    RemoteEntry,
    RemoteListError,
    RemoteSource,
    RemoteTransferError,
)
from remote_subs.storage import MemoryConfigStore
from remote_subs.tenants import TenantConfig

TENANT_KEY = "0123456789abcdef"


def make_tree(layout: Dict[str, Iterable[str]]) -> Dict[str, List[RemoteEntry]]:
    """Build a listing map; names ending in '/' are directories."""
    tree: Dict[str, List[RemoteEntry]] = {}
    for directory, names in layout.items():
        entries = []
        for name in names:
            is_dir = name.endswith("/")
            clean = name.rstrip("/")
            parent = "" if directory == "/" else directory
            entries.append(RemoteEntry(name=clean, identifier=f"{parent}/{clean}", is_dir=is_dir))
        tree[directory] = entries
    return tree


class StubConnection(RemoteConnection):
    def __init__(self, source: "StubSource") -> None:
        self.source = source
        self.close_calls = 0
        self.closed = False

    async def list(self, identifier: str) -> List[RemoteEntry]:
        self.source.list_calls.append(identifier)
        if self.source.hang_on_list or identifier in self.source.hang_dirs:
            await asyncio.Event().wait()
        if self.source.list_delay:
            await asyncio.sleep(self.source.list_delay)
        if identifier in self.source.failing_dirs:
            raise RemoteListError(f"cannot list {identifier}")
        return list(self.source.tree.get(identifier, []))

    async def download(self, identifier: str, sink) -> None:
        if identifier not in self.source.contents:
            raise RemoteTransferError(f"no such file {identifier}")
        sink.write(self.source.contents[identifier])

    async def close(self) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        self.source.closed += 1


class StubSource(RemoteSource):
    """In-memory remote that counts connections."""

    kind = "ftp"

    def __init__(
        self,
        tree: Optional[Dict[str, List[RemoteEntry]]] = None,
        root: str = "/subs",
        contents: Optional[Dict[str, bytes]] = None,
        hang_on_list: bool = False,
        list_delay: float = 0.0,
        connect_error: bool = False,
        failing_dirs: Iterable[str] = (),
        hang_dirs: Iterable[str] = (),
    ) -> None:
        self.tree = tree or {}
        self._root = root
        self.contents = contents or {}
        self.hang_on_list = hang_on_list
        self.list_delay = list_delay
        self.connect_error = connect_error
        self.failing_dirs = set(failing_dirs)
        self.hang_dirs = set(hang_dirs)
        self.connections = 0
        self.closed = 0
        self.list_calls: List[str] = []
        self.opened: List[StubConnection] = []

    @property
    def root(self) -> str:
        return self._root

    async def connect(self) -> StubConnection:
        self.connections += 1
        if self.connect_error:
            raise RemoteConnectionError("connection refused")
        conn = StubConnection(self)
        self.opened.append(conn)
        return conn


def fast_settings(**overrides) -> Settings:
    values = dict(
        public_url="http://testserver",
        subtitles_total_timeout_seconds=0.5,
        traversal_timeout_seconds=0.3,
        metadata_timeout_seconds=0.1,
        download_timeout_seconds=0.5,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_context(source: StubSource, meta: Optional[dict] = None, settings: Optional[Settings] = None) -> AppContext:
    cfg = settings or fast_settings()

    async def _lookup(media_type, media_id):
        return meta

    return AppContext(
        settings=cfg,
        config_store=MemoryConfigStore(),
        directory_cache=DirectoryCache(ttl=cfg.cache_ttl_seconds),
        source_factory=lambda config: source,
        metadata_lookup=_lookup,
    )


@pytest.fixture
def tenant_config():
    return TenantConfig(key=TENANT_KEY, ftp_host="ftp.example.org", ftp_user="demo", ftp_pass="pw", ftp_base="/subs")


@pytest.fixture
def movie_source():
    tree = make_tree(
        {
            "/subs": ["Movie.Name.2020.en.srt", "Movie.Name.2020.zh.srt", "Other.Film.1999.srt", "notes.txt", "Series/"],
            "/subs/Series": ["Show.S01E05.eng.srt"],
        }
    )
    return StubSource(tree=tree, contents={"/subs/Movie.Name.2020.en.srt": b"1\n00:00:01,000 --> 00:00:02,000\nHi\n"})
