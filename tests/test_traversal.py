import time

import pytest

from conftest import StubConnection, StubSource, make_tree
from remote_subs.sources.traversal import collect_subtitle_files

EXTS = [".srt", ".vtt", ".ass", ".ssa", ".sub"]


async def _collect(source, timeout=1.0, max_depth=2):
    return await collect_subtitle_files(source, max_depth=max_depth, timeout=timeout, extensions=EXTS)


@pytest.mark.asyncio
async def test_walk_respects_depth_bound():
    tree = make_tree(
        {
            "/subs": ["root.srt", "a/"],
            "/subs/a": ["one.srt", "b/"],
            "/subs/a/b": ["two.srt", "c/"],
            "/subs/a/b/c": ["three.srt"],
        }
    )
    source = StubSource(tree=tree)
    files = await _collect(source)
    names = [f.name for f in files]
    assert names == ["root.srt", "one.srt", "two.srt"]
    assert "/subs/a/b/c" not in source.list_calls


@pytest.mark.asyncio
async def test_walk_filters_extensions_case_insensitively():
    tree = make_tree({"/subs": ["A.SRT", "b.VTT", "c.txt", "d.mkv", "e.ass", "f"]})
    files = await _collect(StubSource(tree=tree))
    assert [f.name for f in files] == ["A.SRT", "b.VTT", "e.ass"]
    assert files[0].identifier == "/subs/A.SRT"


@pytest.mark.asyncio
async def test_list_failure_keeps_partial_results():
    tree = make_tree({"/subs": ["first.srt", "broken/", "late.srt"], "/subs/broken": []})
    source = StubSource(tree=tree, failing_dirs={"/subs/broken"})
    files = await _collect(source)
    assert [f.name for f in files] == ["first.srt"]
    assert source.closed == 1


class _OddConnection(StubConnection):
    async def list(self, identifier):
        if identifier == "/subs/odd":
            raise ValueError("unexpected listing row")
        return await super().list(identifier)


class _OddSource(StubSource):
    async def connect(self):
        self.connections += 1
        conn = _OddConnection(self)
        self.opened.append(conn)
        return conn


@pytest.mark.asyncio
async def test_unexpected_error_keeps_partial_results():
    tree = make_tree({"/subs": ["first.srt", "odd/", "late.srt"], "/subs/odd": []})
    source = _OddSource(tree=tree)
    files = await _collect(source)
    assert [f.name for f in files] == ["first.srt"]
    assert source.closed == 1


@pytest.mark.asyncio
async def test_connect_failure_returns_empty():
    source = StubSource(connect_error=True)
    assert await _collect(source) == ()
    assert source.connections == 1


@pytest.mark.asyncio
async def test_timeout_returns_partial_and_closes_once():
    tree = make_tree({"/subs": ["found.srt", "slow/", "after.srt"], "/subs/slow": ["never.srt"]})
    source = StubSource(tree=tree, hang_dirs={"/subs/slow"})
    started = time.monotonic()
    files = await _collect(source, timeout=0.2)
    elapsed = time.monotonic() - started

    assert [f.name for f in files] == ["found.srt"]
    assert elapsed < 1.0
    assert source.closed == 1
    assert source.opened[0].close_calls == 1


@pytest.mark.asyncio
async def test_depth_zero_lists_only_root():
    tree = make_tree({"/subs": ["a.srt", "d/"], "/subs/d": ["b.srt"]})
    source = StubSource(tree=tree)
    files = await _collect(source, max_depth=0)
    assert [f.name for f in files] == ["a.srt"]
    assert source.list_calls == ["/subs"]
