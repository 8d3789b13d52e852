"""Utility helpers for the ChooseAMovie service."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

MediaType = Literal["movie", "tv"]

TITLE_KEY_RE = re.compile(r"^tmdb:(movie|tv):(\d+)$")
YEAR_PREFIX_RE = re.compile(r"^(\d{4})")


@dataclass(frozen=True, slots=True)
class ParsedTitleKey:
    """Components of a ``tmdb:<type>:<id>`` title key."""

    provider: str
    type: MediaType
    id: int


def build_title_key(media_type: str, provider_id: int | str) -> str:
    """Return the stable cross-session key for a TMDB title.

    Invalid identifiers produce an empty string so callers can skip the row.
    """

    if media_type not in ("movie", "tv"):
        return ""
    if isinstance(provider_id, bool):
        return ""
    try:
        parsed = int(provider_id)
    except (TypeError, ValueError):
        return ""
    if isinstance(provider_id, str) and str(parsed) != provider_id.strip():
        return ""
    if parsed <= 0:
        return ""
    return f"tmdb:{media_type}:{parsed}"


def parse_title_key(title_key: str) -> ParsedTitleKey | None:
    """Parse a title key produced by :func:`build_title_key`."""

    match = TITLE_KEY_RE.match((title_key or "").strip())
    if not match:
        return None
    provider_id = int(match.group(2))
    if provider_id <= 0:
        return None
    return ParsedTitleKey(provider="tmdb", type=match.group(1), id=provider_id)  # type: ignore[arg-type]


def extract_year(value: str | None) -> str | None:
    """Return the leading four-digit year of an ISO-like date string."""

    if not value:
        return None
    match = YEAR_PREFIX_RE.match(value.strip())
    return match.group(1) if match else None


def load_json(raw: str | None) -> Any:
    """Decode stored JSON text, returning ``None`` for missing or corrupt data."""

    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def dump_json(value: Any) -> str:
    """Serialise state compactly for storage."""

    return json.dumps(value, separators=(",", ":"), sort_keys=False)
