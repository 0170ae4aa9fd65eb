import io
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from remote_subs.sources.base import RemoteConnectionError, RemoteListError
from remote_subs.sources.drive import (
    FOLDER_MIME,
    DriveSource,
    authorization_url,
    exchange_code,
    token_expired,
)

FRESH = {"access_token": "tok", "refresh_token": "ref", "expires_at": int(time.time()) + 3600}


def test_authorization_url():
    url = urlparse(authorization_url("cid", "https://addon.test/u/k/google-callback", state="folder1"))
    query = parse_qs(url.query)
    assert url.netloc == "accounts.google.com"
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["state"] == ["folder1"]
    assert query["scope"] == ["https://www.googleapis.com/auth/drive.readonly"]


def test_token_expiry():
    now = 1_000_000.0
    assert token_expired({"access_token": "a", "expires_at": now + 30}, now=now)
    assert not token_expired({"access_token": "a", "expires_at": now + 600}, now=now)
    assert not token_expired({"access_token": "a", "expiry_date": (now + 600) * 1000}, now=now)
    assert not token_expired({"access_token": "a"}, now=now)
    assert token_expired({}, now=now)


@pytest.mark.asyncio
async def test_list_paginates_and_marks_folders():
    seen_tokens = []

    def handler(request):
        assert request.headers["authorization"] == "Bearer tok"
        page = request.url.params.get("pageToken")
        seen_tokens.append(page)
        if page is None:
            return httpx.Response(
                200,
                json={
                    "nextPageToken": "p2",
                    "files": [{"id": "f1", "name": "Season 1", "mimeType": FOLDER_MIME}],
                },
            )
        return httpx.Response(200, json={"files": [{"id": "f2", "name": "a.srt", "mimeType": "text/plain"}]})

    source = DriveSource("", FRESH, transport=httpx.MockTransport(handler))
    assert source.root == "root"
    async with await source.connect() as conn:
        entries = await conn.list(source.root)

    assert [(e.name, e.identifier, e.is_dir) for e in entries] == [("Season 1", "f1", True), ("a.srt", "f2", False)]
    assert seen_tokens == [None, "p2"]


@pytest.mark.asyncio
async def test_list_error_is_wrapped():
    source = DriveSource("folder", FRESH, transport=httpx.MockTransport(lambda request: httpx.Response(403)))
    conn = await source.connect()
    with pytest.raises(RemoteListError):
        await conn.list("folder")
    await conn.close()
    await conn.close()


@pytest.mark.asyncio
async def test_download_streams_bytes():
    def handler(request):
        assert request.url.path == "/drive/v3/files/f2"
        assert request.url.params["alt"] == "media"
        return httpx.Response(200, content=b"WEBVTT\n")

    source = DriveSource("folder", FRESH, transport=httpx.MockTransport(handler))
    sink = io.BytesIO()
    async with await source.connect() as conn:
        await conn.download("f2", sink)
    assert sink.getvalue() == b"WEBVTT\n"


@pytest.mark.asyncio
async def test_expired_token_is_refreshed():
    calls = []

    def handler(request):
        calls.append(request.url.host)
        if request.url.host == "oauth2.googleapis.com":
            body = parse_qs(request.content.decode())
            assert body["grant_type"] == ["refresh_token"]
            return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})
        assert request.headers["authorization"] == "Bearer new"
        return httpx.Response(200, json={"files": []})

    stale = {"access_token": "old", "refresh_token": "ref", "expires_at": 0}
    source = DriveSource("folder", stale, client_id="cid", client_secret="sec", transport=httpx.MockTransport(handler))
    async with await source.connect() as conn:
        assert await conn.list("folder") == []
    assert calls[0] == "oauth2.googleapis.com"
    assert source.tokens["access_token"] == "new"
    assert source.tokens["refresh_token"] == "ref"


@pytest.mark.asyncio
async def test_expired_token_without_client_fails():
    stale = {"access_token": "old", "refresh_token": "ref", "expires_at": 0}
    source = DriveSource("folder", stale, transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    with pytest.raises(RemoteConnectionError):
        await source.connect()


@pytest.mark.asyncio
async def test_not_connected_fails():
    with pytest.raises(RemoteConnectionError):
        await DriveSource("folder", None).connect()


@pytest.mark.asyncio
async def test_exchange_code_sets_expiry():
    def handler(request):
        body = parse_qs(request.content.decode())
        assert body["code"] == ["abc"]
        assert body["grant_type"] == ["authorization_code"]
        return httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": 60})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tokens = await exchange_code(client, "abc", client_id="cid", client_secret="sec", redirect_uri="https://x/cb")
    assert "expires_in" not in tokens
    assert tokens["expires_at"] >= int(time.time())
