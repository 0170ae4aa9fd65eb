"""Google Drive folder access through the Drive v3 REST API."""

from __future__ import annotations

import logging
import time
from typing import BinaryIO, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .base import (
    RemoteConnection,
    RemoteConnectionError,
    RemoteEntry,
    RemoteListError,
    RemoteSource,
    RemoteTransferError,
)

log = logging.getLogger("remote_subs.sources.drive")

DRIVE_API = "https://www.googleapis.com/drive/v3"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.readonly"
FOLDER_MIME = "application/vnd.google-apps.folder"
PAGE_SIZE = 1000
# refresh a little before the token actually expires
EXPIRY_SLACK_SECONDS = 60


def authorization_url(client_id: str, redirect_uri: str, state: str = "") -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": DRIVE_SCOPE,
        "access_type": "offline",
        "prompt": "consent",
    }
    if state:
        params["state"] = state
    return f"{AUTH_URL}?{urlencode(params)}"


def _with_expiry(tokens: Dict) -> Dict:
    stored = dict(tokens)
    expires_in = stored.pop("expires_in", None)
    if expires_in is not None:
        stored["expires_at"] = int(time.time()) + int(expires_in)
    return stored


def token_expired(tokens: Dict, now: Optional[float] = None) -> bool:
    current = time.time() if now is None else now
    expires_at = tokens.get("expires_at")
    if expires_at is None and tokens.get("expiry_date"):
        # tokens written by the Node googleapis client carry milliseconds
        expires_at = float(tokens["expiry_date"]) / 1000.0
    if expires_at is None:
        return not tokens.get("access_token")
    return float(expires_at) - EXPIRY_SLACK_SECONDS <= current


async def exchange_code(
    client: httpx.AsyncClient,
    code: str,
    *,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
) -> Dict:
    """Trade an OAuth authorization code for access and refresh tokens."""
    resp = await client.post(
        TOKEN_URL,
        data={
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
    )
    resp.raise_for_status()
    return _with_expiry(resp.json())


async def refresh_tokens(
    client: httpx.AsyncClient,
    tokens: Dict,
    *,
    client_id: str,
    client_secret: str,
) -> Dict:
    resp = await client.post(
        TOKEN_URL,
        data={
            "refresh_token": tokens["refresh_token"],
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
        },
    )
    resp.raise_for_status()
    refreshed = dict(tokens)
    refreshed.update(_with_expiry(resp.json()))
    return refreshed


class DriveConnection(RemoteConnection):
    def __init__(self, client: httpx.AsyncClient, access_token: str) -> None:
        self._client = client
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._closed = False

    async def list(self, identifier: str) -> List[RemoteEntry]:
        if self._closed:
            raise RemoteListError("connection closed")
        entries: List[RemoteEntry] = []
        params = {
            "q": f"'{identifier}' in parents and trashed=false",
            "fields": "nextPageToken,files(id,name,mimeType)",
            "pageSize": str(PAGE_SIZE),
        }
        while True:
            try:
                resp = await self._client.get(f"{DRIVE_API}/files", params=params, headers=self._headers)
                resp.raise_for_status()
                payload = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise RemoteListError(f"files.list {identifier} failed: {exc}") from exc
            for item in payload.get("files") or []:
                entries.append(
                    RemoteEntry(
                        name=item.get("name", ""),
                        identifier=item.get("id", ""),
                        is_dir=item.get("mimeType") == FOLDER_MIME,
                    )
                )
            page_token = payload.get("nextPageToken")
            if not page_token:
                return entries
            params["pageToken"] = page_token

    async def download(self, identifier: str, sink: BinaryIO) -> None:
        if self._closed:
            raise RemoteTransferError("connection closed")
        try:
            async with self._client.stream(
                "GET", f"{DRIVE_API}/files/{identifier}", params={"alt": "media"}, headers=self._headers
            ) as resp:
                resp.raise_for_status()
                async for chunk in resp.aiter_bytes():
                    sink.write(chunk)
        except httpx.HTTPError as exc:
            raise RemoteTransferError(f"files.get {identifier} failed: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()


class DriveSource(RemoteSource):
    kind = "drive"

    def __init__(
        self,
        folder_id: str,
        tokens: Optional[Dict],
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.folder_id = (folder_id or "").strip() or "root"
        self.tokens = dict(tokens or {})
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    @property
    def root(self) -> str:
        return self.folder_id

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if not token_expired(self.tokens):
            return self.tokens["access_token"]
        if not (self.tokens.get("refresh_token") and self.client_id and self.client_secret):
            raise RemoteConnectionError("Drive access token expired and cannot be refreshed")
        try:
            self.tokens = await refresh_tokens(
                client, self.tokens, client_id=self.client_id, client_secret=self.client_secret
            )
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise RemoteConnectionError(f"Drive token refresh failed: {exc}") from exc
        log.info("[drive] refreshed access token")
        return self.tokens["access_token"]

    async def connect(self) -> DriveConnection:
        if not self.tokens:
            raise RemoteConnectionError("Google Drive is not connected")
        client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        try:
            token = await self._access_token(client)
        except BaseException:
            await client.aclose()
            raise
        return DriveConnection(client, token)
