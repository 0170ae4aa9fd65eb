from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional, Tuple

from ..utils import extension_lower, with_timeout
from .base import RemoteConnection, RemoteFile, RemoteSource, RemoteSourceError

log = logging.getLogger("remote_subs.traversal")


class CancelFlag:
    """Cooperative stop signal checked between remote calls."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


async def walk(
    conn: RemoteConnection,
    directory: str,
    depth: int,
    *,
    max_depth: int,
    extensions: Iterable[str],
    results: List[RemoteFile],
    flag: CancelFlag,
) -> None:
    if flag.cancelled:
        return
    entries = await conn.list(directory)
    for entry in entries:
        if flag.cancelled:
            return
        if entry.is_dir:
            if depth < max_depth:
                await walk(
                    conn,
                    entry.identifier,
                    depth + 1,
                    max_depth=max_depth,
                    extensions=extensions,
                    results=results,
                    flag=flag,
                )
        elif extension_lower(entry.name) in extensions:
            results.append(RemoteFile(identifier=entry.identifier, name=entry.name))


async def collect_subtitle_files(
    source: RemoteSource,
    *,
    max_depth: int,
    timeout: float,
    extensions: Iterable[str],
) -> Tuple[RemoteFile, ...]:
    """Walk ``source`` from its root and return the subtitle files found.

    Whatever was collected when the time budget runs out or the remote fails
    is returned as the final answer; errors from the remote are logged, never
    raised.
    The connection is closed on every exit path.
    """
    started = time.monotonic()
    results: List[RemoteFile] = []
    flag = CancelFlag()
    exts = {e.lower() for e in extensions}
    opened: List[Optional[RemoteConnection]] = [None]

    async def _run() -> List[RemoteFile]:
        conn = await source.connect()
        opened[0] = conn
        await walk(conn, source.root, 0, max_depth=max_depth, extensions=exts, results=results, flag=flag)
        return results

    def _expired() -> None:
        flag.cancel()
        log.warning(
            "[traversal] %s walk of %s hit %.1fs budget, keeping %d partial results",
            source.kind, source.root, timeout, len(results),
        )

    try:
        await with_timeout(_run(), timeout, results, on_timeout=_expired)
    except RemoteSourceError as exc:
        flag.cancel()
        log.warning("[traversal] %s walk of %s aborted: %s (kept %d)", source.kind, source.root, exc, len(results))
    except Exception:
        flag.cancel()
        log.exception("[traversal] %s walk of %s failed (kept %d)", source.kind, source.root, len(results))
    finally:
        if opened[0] is not None:
            await opened[0].close()

    log.info(
        "[traversal] %s root=%s files=%d duration_ms=%.0f",
        source.kind, source.root, len(results), (time.monotonic() - started) * 1000,
    )
    return tuple(results)
