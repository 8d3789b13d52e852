"""Content-rating normalisation and group policy checks."""

from __future__ import annotations

from typing import Final

from .models import GroupPolicy
from .utils import MediaType

UNSUPPORTED: Final = "__UNSUPPORTED__"

_MOVIE_ALIASES = {
    "G": "G",
    "PG": "PG",
    "PG13": "PG-13",
    "PG-13": "PG-13",
    "R": "R",
}

_TV_ALIASES = {
    "TVY": "TV-Y",
    "TV-Y": "TV-Y",
    "TVY7": "TV-Y7",
    "TV-Y7": "TV-Y7",
    "TVG": "TV-G",
    "TV-G": "TV-G",
    "TVPG": "TV-PG",
    "TV-PG": "TV-PG",
    "TV14": "TV-14",
    "TV-14": "TV-14",
    "TVMA": "TV-MA",
    "TV-MA": "TV-MA",
}

_POLICY_FLAGS = {
    "G": "allow_g",
    "PG": "allow_pg",
    "PG-13": "allow_pg13",
    "R": "allow_r",
    "TV-Y": "allow_tvy",
    "TV-Y7": "allow_tvy7",
    "TV-G": "allow_tvg",
    "TV-PG": "allow_tvpg",
    "TV-14": "allow_tv14",
    "TV-MA": "allow_tvma",
}


def normalize_certification(media_type: MediaType, raw: str | None) -> str | None:
    """Map a raw certification onto the closed set for the media type.

    Returns ``None`` when no rating is known and :data:`UNSUPPORTED` for any
    non-empty value outside the recognised enumeration.
    """

    if raw is None:
        return None
    token = raw.strip().upper()
    if not token:
        return None
    aliases = _MOVIE_ALIASES if media_type == "movie" else _TV_ALIASES
    return aliases.get(token, UNSUPPORTED)


def is_allowed(policy: GroupPolicy, media_type: MediaType, raw_certification: str | None) -> bool:
    """Return whether a title with the certification passes the group policy."""

    rating = normalize_certification(media_type, raw_certification)
    if rating is None:
        return True
    if rating == UNSUPPORTED:
        return False
    return bool(getattr(policy, _POLICY_FLAGS[rating]))
