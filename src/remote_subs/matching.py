"""Filename heuristics used to rank remote subtitle files against a title."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional

_APOSTROPHES_RE = re.compile(r"['’]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_YEAR_RE = re.compile(r"(19|20)\d{2}")

# Checked in order, first hit wins. Chinese goes first so that short tokens
# such as "sc" or "tc" are not claimed by a later language.
LANGUAGE_PATTERNS = [
    ("zh", re.compile(r"\b(zh|chs|sc|chi|zho|cn|chinese)\b")),
    ("zh", re.compile(r"\b(zht|cht|tc)\b")),
    ("en", re.compile(r"\b(en|eng|english)\b")),
    ("es", re.compile(r"\b(es|spa|spanish)\b")),
    ("fr", re.compile(r"\b(fr|fre|fra|french)\b")),
    ("de", re.compile(r"\b(de|ger|deu|german)\b")),
    ("pt", re.compile(r"\b(pt|por|portuguese|pt-br)\b")),
    ("ru", re.compile(r"\b(ru|rus|russian)\b")),
]
DEFAULT_LANGUAGE = "en"

SUBTITLE_HINT_RE = re.compile(r"\b(sub|subs|subtitle|subtitles|chs|cht|eng|vost)\b")
SUBTITLE_HINT_MARKERS = ("简", "繁")

TITLE_BONUS = 5
YEAR_BONUS = 2
EPISODE_BONUS = 5
HINT_BONUS = 1


@dataclass(frozen=True)
class MatchSignals:
    title_slug: Optional[str] = None
    year: Optional[str] = None
    season_episode_tag: Optional[str] = None


def normalize(text: Optional[str]) -> str:
    """Collapse text into a dotted lowercase slug.

    >>> normalize("Don't Look Up (2021)")
    'dont.look.up.2021'
    """
    s = (text or "").lower()
    s = _APOSTROPHES_RE.sub("", s)
    s = _NON_ALNUM_RE.sub(".", s)
    return s.strip(".")


def derive_language(filename: str) -> str:
    name = str(filename).lower()
    for code, pattern in LANGUAGE_PATTERNS:
        if pattern.search(name):
            return code
    return DEFAULT_LANGUAGE


def _release_year(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    text = str(raw)
    match = _YEAR_RE.search(text)
    return match.group(0) if match else text


def build_match_signals(media_type: str, media_id: str, meta: Optional[Mapping]) -> MatchSignals:
    title_slug = None
    year = None
    if meta:
        title_slug = normalize(meta.get("name")) or None
        year = _release_year(meta.get("year"))

    tag = None
    if media_type == "series":
        parts = str(media_id).split(":")
        if len(parts) >= 3 and parts[1].isdigit() and parts[2].isdigit():
            tag = f"s{int(parts[1]):02d}e{int(parts[2]):02d}"

    return MatchSignals(title_slug=title_slug, year=year, season_episode_tag=tag)


def has_subtitle_hint(filename: str) -> bool:
    name = str(filename).lower()
    if SUBTITLE_HINT_RE.search(name):
        return True
    return any(marker in name for marker in SUBTITLE_HINT_MARKERS)


def score(filename: str, signals: MatchSignals) -> int:
    slug = normalize(filename)
    total = 0
    if signals.title_slug and signals.title_slug in slug:
        total += TITLE_BONUS
    if signals.year and signals.year in slug:
        total += YEAR_BONUS
    if signals.season_episode_tag and signals.season_episode_tag in slug:
        total += EPISODE_BONUS
    if has_subtitle_hint(filename):
        total += HINT_BONUS
    return total


__all__ = [
    "MatchSignals",
    "build_match_signals",
    "derive_language",
    "has_subtitle_hint",
    "normalize",
    "score",
]
