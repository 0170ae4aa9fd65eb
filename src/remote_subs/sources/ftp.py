"""FTP / FTPS access on top of ``ftplib``.

ftplib is blocking, so every call runs in a worker thread via
``asyncio.to_thread``. Closing a connection from the event loop shuts the
control socket down in both directions before closing it, so a worker
blocked in ``recv`` wakes up with an error instead of waiting out the socket
timeout.
"""

from __future__ import annotations

import asyncio
import ftplib
import logging
import socket
import threading
import time
from typing import BinaryIO, Dict, List, Optional, Tuple

from ..utils import with_timeout
from .base import (
    RemoteConnection,
    RemoteConnectionError,
    RemoteEntry,
    RemoteListError,
    RemoteSource,
    RemoteTransferError,
)

log = logging.getLogger("remote_subs.sources.ftp")

DEFAULT_PORT = 21
# ftplib raises AttributeError when the socket was closed under it and
# UnicodeDecodeError for listings that are not valid UTF-8
_FTP_ERRORS = ftplib.all_errors + (AttributeError, UnicodeError)


def hard_close(ftp: ftplib.FTP) -> None:
    """Shut the control socket down, then close it; never raises."""
    sock = getattr(ftp, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            log.debug("[ftp] shutdown failed: %s", exc)
    try:
        ftp.close()
    except OSError as exc:
        log.debug("[ftp] close failed: %s", exc)


def child_path(directory: str, name: str) -> str:
    parent = "" if directory in ("", "/") else directory.rstrip("/")
    return f"{parent}/{name}"


def split_host(raw: str) -> Tuple[str, int]:
    host = (raw or "").strip()
    if host.startswith("ftp://"):
        host = host[len("ftp://"):]
    host = host.rstrip("/")
    if host.count(":") == 1:
        name, _, port = host.partition(":")
        if port.isdigit():
            return name, int(port)
    return host, DEFAULT_PORT


def parse_list_line(line: str) -> Optional[Tuple[str, bool]]:
    """Parse one ``LIST`` row in unix or DOS style into (name, is_dir)."""
    text = line.rstrip("\r\n")
    if not text or text.lower().startswith("total "):
        return None
    if text[0] in "-dlbcps":
        parts = text.split(None, 8)
        if len(parts) < 9:
            return None
        name = parts[8]
        if text[0] == "l" and " -> " in name:
            name = name.split(" -> ", 1)[0]
        return name, text[0] == "d"
    parts = text.split(None, 3)
    if len(parts) == 4 and parts[0][:1].isdigit():
        return parts[3], parts[2].upper() == "<DIR>"
    return None


class FtpConnection(RemoteConnection):
    def __init__(self, ftp: ftplib.FTP) -> None:
        self._ftp = ftp
        self._closed = False
        self._lock = threading.Lock()

    def _list_sync(self, path: str) -> List[RemoteEntry]:
        entries: List[RemoteEntry] = []
        try:
            rows = list(self._ftp.mlsd(path))
        except ftplib.error_perm:
            rows = None

        if rows is not None:
            for name, facts in rows:
                kind = facts.get("type", "").lower()
                if name in (".", "..") or kind in ("cdir", "pdir"):
                    continue
                entries.append(RemoteEntry(name=name, identifier=child_path(path, name), is_dir=kind == "dir"))
            return entries

        # Server without MLSD support
        lines: List[str] = []
        self._ftp.retrlines(f"LIST {path}", lines.append)
        for line in lines:
            parsed = parse_list_line(line)
            if not parsed:
                continue
            name, is_dir = parsed
            if name in (".", ".."):
                continue
            entries.append(RemoteEntry(name=name, identifier=child_path(path, name), is_dir=is_dir))
        return entries

    async def list(self, identifier: str) -> List[RemoteEntry]:
        if self._closed:
            raise RemoteListError("connection closed")
        try:
            return await asyncio.to_thread(self._list_sync, identifier)
        except _FTP_ERRORS as exc:
            raise RemoteListError(f"LIST {identifier} failed: {exc}") from exc

    async def download(self, identifier: str, sink: BinaryIO) -> None:
        if self._closed:
            raise RemoteTransferError("connection closed")
        try:
            await asyncio.to_thread(self._ftp.retrbinary, f"RETR {identifier}", sink.write)
        except _FTP_ERRORS as exc:
            raise RemoteTransferError(f"RETR {identifier} failed: {exc}") from exc

    def close_sync(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        hard_close(self._ftp)

    async def close(self) -> None:
        self.close_sync()


class FtpSource(RemoteSource):
    kind = "ftp"

    def __init__(
        self,
        host: str,
        user: str = "",
        password: str = "",
        secure: bool = False,
        base_path: str = "/",
        timeout: float = 10.0,
    ) -> None:
        self.host, self.port = split_host(host)
        self.user = user or "anonymous"
        self.password = password or ""
        self.secure = secure
        self.base_path = (base_path or "/").strip() or "/"
        self.timeout = timeout

    @property
    def root(self) -> str:
        return self.base_path

    def _login_sync(self, pending: Dict) -> ftplib.FTP:
        ftp: ftplib.FTP = ftplib.FTP_TLS(timeout=self.timeout) if self.secure else ftplib.FTP(timeout=self.timeout)
        with pending["lock"]:
            pending["ftp"] = ftp
        try:
            ftp.connect(self.host, self.port)
            ftp.login(self.user, self.password)
            if self.secure:
                ftp.prot_p()
        except _FTP_ERRORS:
            hard_close(ftp)
            raise
        with pending["lock"]:
            abandoned = pending["abandoned"]
        if abandoned:
            # The caller stopped waiting; nobody else will close this socket.
            hard_close(ftp)
        return ftp

    async def connect(self) -> FtpConnection:
        if not self.host:
            raise RemoteConnectionError("FTP host is not configured")
        pending: Dict = {"lock": threading.Lock(), "ftp": None, "abandoned": False}
        try:
            ftp = await asyncio.to_thread(self._login_sync, pending)
        except asyncio.CancelledError:
            with pending["lock"]:
                pending["abandoned"] = True
                ftp_in_progress = pending["ftp"]
            if ftp_in_progress is not None:
                hard_close(ftp_in_progress)
            raise
        except _FTP_ERRORS as exc:
            raise RemoteConnectionError(f"cannot connect to {self.host}:{self.port}: {exc}") from exc
        return FtpConnection(ftp)


async def probe_connection(source: FtpSource, timeout: float) -> Dict:
    """Connect, list the base directory and report a small sample.

    Used by the configuration page to validate parameters before saving.
    """
    started = time.monotonic()
    holder: Dict[str, Optional[RemoteConnection]] = {"conn": None}

    def _elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    async def _probe() -> Dict:
        conn = await source.connect()
        holder["conn"] = conn
        entries = await conn.list(source.root)
        return {
            "ok": True,
            "elapsedMs": _elapsed_ms(),
            "base": source.root,
            "count": len(entries),
            "sample": [{"name": e.name, "dir": e.is_dir} for e in entries[:5]],
        }

    try:
        result = await with_timeout(_probe(), timeout, None)
    except (RemoteConnectionError, RemoteListError) as exc:
        return {"ok": False, "elapsedMs": _elapsed_ms(), "error": str(exc)}
    finally:
        if holder["conn"] is not None:
            await holder["conn"].close()

    if result is None:
        return {"ok": False, "elapsedMs": _elapsed_ms(), "error": "timeout"}
    return result
