from __future__ import annotations

import asyncio
import re
import secrets
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar
from urllib.parse import parse_qsl, quote, unquote

T = TypeVar("T")

TENANT_KEY_RE = re.compile(r"^[a-f0-9]{16}$", re.IGNORECASE)
_EXT_RE = re.compile(r"\.[a-z0-9]+$")


async def with_timeout(
    operation: Awaitable[T],
    seconds: float,
    fallback: T,
    on_timeout: Optional[Callable[[], None]] = None,
) -> T:
    """Return the result of ``operation`` or ``fallback`` once ``seconds`` elapse.

    The losing operation is cancelled; ``on_timeout`` runs before the fallback
    is returned so callers can flag cooperative cancellation or close
    resources the operation was holding.
    """
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError:
        if on_timeout is not None:
            on_timeout()
        return fallback


def extension_lower(name: str) -> str:
    """Lowercase extension including the dot, or '' when there is none."""
    match = _EXT_RE.search(str(name).lower())
    return match.group(0) if match else ""


def new_tenant_key() -> str:
    return secrets.token_hex(8)


def normalize_tenant_key(raw: str) -> Optional[str]:
    if not raw or not TENANT_KEY_RE.match(raw):
        return None
    return raw.lower()


def split_subtitles_path(raw_path: str) -> Tuple[str, Dict[str, str]]:
    """Split ``<id>[/<extras>][.json]`` into the media id and extras map.

    Examples:
    - tt0369179.json
    - tt0369179:1:2.json
    - tt8367814/videoHash=abc&videoSize=123.json
    """
    path = (raw_path or "").rstrip("/")
    if path.endswith(".json"):
        path = path[: -len(".json")]
    raw_id, _, extras_segment = path.partition("/")
    extras: Dict[str, str] = {}
    if extras_segment:
        extras = {k: v for k, v in parse_qsl(unquote(extras_segment)) if k}
    return unquote(raw_id), extras


def sanitize_display_name(raw: Optional[str], default: str = "subtitle") -> str:
    name = re.sub(r"[/\\]", "", str(raw or ""))
    return name or default


def content_disposition(name: str, disposition: str = "inline") -> str:
    """Build a Content-Disposition value safe for non-ASCII names.

    The plain ``filename`` attribute carries an ASCII-only fallback while
    ``filename*`` carries the exact name percent-encoded as UTF-8 (RFC 5987).
    """
    ascii_name = name.encode("ascii", "replace").decode("ascii").replace("?", "_")
    ascii_name = ascii_name.replace('"', "").replace("\r", "").replace("\n", "")
    return f"{disposition}; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(name, safe='')}"
