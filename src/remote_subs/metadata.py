from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import unquote

import httpx

from .settings import settings
from .utils import with_timeout

log = logging.getLogger("remote_subs.metadata")

USER_AGENT = "remote-subs-addon"


def base_media_id(raw_id: str) -> str:
    """Strip the ``:season:episode`` tail from a Stremio id.

    Ids may arrive URL-encoded once or twice (``tt0369179%253A1%253A2``).
    """
    s = raw_id or ""
    for _ in range(2):
        decoded = unquote(s)
        if decoded == s:
            break
        s = decoded
    return s.split(":", 1)[0]


async def _fetch_meta(
    client: httpx.AsyncClient, base_url: str, media_type: str, media_id: str
) -> Optional[dict]:
    url = f"{base_url.rstrip('/')}/meta/{media_type}/{media_id}.json"
    try:
        resp = await client.get(url, headers={"user-agent": USER_AGENT})
        if not resp.is_success:
            log.info("[metadata] %s returned status=%s", url, resp.status_code)
            return None
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        log.warning("[metadata] lookup failed for %s: %s", media_id, exc)
        return None
    meta = payload.get("meta") if isinstance(payload, dict) else None
    return meta if isinstance(meta, dict) else None


async def lookup(
    media_type: str,
    media_id: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[dict]:
    """Resolve Cinemeta metadata for a media id, or None.

    Non-200 responses, network and parse errors and the time budget expiring
    all come back as None; this never raises.
    """
    budget = settings.metadata_timeout_seconds if timeout is None else timeout
    base = base_url or settings.cinemeta_url
    target = base_media_id(media_id)
    if not target:
        return None

    async def _run() -> Optional[dict]:
        if client is not None:
            return await _fetch_meta(client, base, media_type, target)
        async with httpx.AsyncClient(timeout=budget) as own_client:
            return await _fetch_meta(own_client, base, media_type, target)

    def _expired() -> None:
        log.info("[metadata] lookup for %s/%s exceeded %.1fs", media_type, target, budget)

    return await with_timeout(_run(), budget, None, on_timeout=_expired)
