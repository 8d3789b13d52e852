"""Pydantic models describing queue payloads and group policy."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .utils import MediaType, build_title_key

PolicyMediaType = Literal["movies", "tv", "movies_and_tv"]
QueueState = Literal["ready", "low", "caught_up", "no_matches"]

DEFAULT_MIN_VOTE_COUNT = 200


class QueueItem(BaseModel):
    """A candidate title offered to a member for rating."""

    model_config = ConfigDict(populate_by_name=True)

    title_id: str
    type: MediaType
    id: int = Field(gt=0)
    title: str = Field(min_length=1)
    year: str | None = None
    poster_path: str | None = None
    overview: str = ""
    tmdb_payload_keys: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _legacy_title_key(cls, data: Any) -> Any:
        """Accept records stored before ``title_id`` replaced ``title_key``."""

        if not isinstance(data, dict):
            return data
        title_id = data.get("title_id")
        if isinstance(title_id, str) and title_id.strip():
            return data
        legacy = data.get("title_key")
        if isinstance(legacy, str) and legacy.strip():
            return {**data, "title_id": legacy}
        return data

    @field_validator("title_id", "title", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("year", "poster_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip() or None
        return None

    @field_validator("overview", mode="before")
    @classmethod
    def _coerce_overview(cls, value: object) -> object:
        return value if isinstance(value, str) else ""

    @field_validator("tmdb_payload_keys", mode="before")
    @classmethod
    def _string_keys(cls, value: object) -> object:
        if not isinstance(value, (list, tuple)):
            return []
        return [entry for entry in value if isinstance(entry, str)]

    @field_validator("title_id")
    @classmethod
    def _require_title_id(cls, value: str) -> str:
        if not value:
            raise ValueError("title_id must not be empty")
        return value

    @classmethod
    def from_discover_result(cls, result: "DiscoverResult") -> "QueueItem | None":
        """Build a queue item from a discover row, or ``None`` if unusable."""

        title_id = build_title_key(result.type, result.id)
        title = (result.title or "").strip()
        if not title_id or not title or not result.poster_path:
            return None
        return cls(
            title_id=title_id,
            type=result.type,
            id=result.id,
            title=title,
            year=result.year,
            poster_path=result.poster_path,
            overview=result.overview or "",
            tmdb_payload_keys=list(result.raw_keys),
        )


class GroupPolicy(BaseModel):
    """Content policy configured on a group for the endless queue."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    media_type: PolicyMediaType = Field(
        default="movies", validation_alias=AliasChoices("media_type", "mediaType")
    )
    filter_unpopular: bool = Field(
        default=True,
        validation_alias=AliasChoices("filter_unpopular", "filterUnpopular"),
    )
    min_vote_count: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("min_vote_count", "minVoteCount"),
    )
    excluded_genre_ids: tuple[int, ...] = Field(
        default=(),
        validation_alias=AliasChoices("excluded_genre_ids", "excludedGenreIds"),
    )
    release_from: date | None = Field(
        default=None, validation_alias=AliasChoices("release_from", "releaseFrom")
    )
    release_to: date | None = Field(
        default=None, validation_alias=AliasChoices("release_to", "releaseTo")
    )

    allow_g: bool = Field(default=True, validation_alias=AliasChoices("allow_g", "allowG"))
    allow_pg: bool = Field(default=True, validation_alias=AliasChoices("allow_pg", "allowPG"))
    allow_pg13: bool = Field(
        default=True, validation_alias=AliasChoices("allow_pg13", "allowPG13")
    )
    allow_r: bool = Field(default=True, validation_alias=AliasChoices("allow_r", "allowR"))
    allow_tvy: bool = Field(
        default=True, validation_alias=AliasChoices("allow_tvy", "allowTVY")
    )
    allow_tvy7: bool = Field(
        default=True, validation_alias=AliasChoices("allow_tvy7", "allowTVY7")
    )
    allow_tvg: bool = Field(
        default=True, validation_alias=AliasChoices("allow_tvg", "allowTVG")
    )
    allow_tvpg: bool = Field(
        default=True, validation_alias=AliasChoices("allow_tvpg", "allowTVPG")
    )
    allow_tv14: bool = Field(
        default=True, validation_alias=AliasChoices("allow_tv14", "allowTV14")
    )
    allow_tvma: bool = Field(
        default=True, validation_alias=AliasChoices("allow_tvma", "allowTVMA")
    )

    @model_validator(mode="before")
    @classmethod
    def _migrate_content_type(cls, data: Any) -> Any:
        """Map the older ``contentType`` setting onto ``media_type``."""

        if not isinstance(data, dict):
            return data
        if "media_type" in data or "mediaType" in data:
            return data
        legacy = data.get("contentType") or data.get("content_type")
        if legacy is None:
            return data
        migrated = dict(data)
        migrated["media_type"] = "movies_and_tv" if legacy == "movies_and_shows" else "movies"
        return migrated

    @field_validator("excluded_genre_ids", mode="before")
    @classmethod
    def _parse_genre_ids(cls, value: object) -> object:
        if value is None or value == "":
            return ()
        if isinstance(value, str):
            raw_values: list[object] = [part.strip() for part in value.split(",")]
        elif isinstance(value, (list, tuple, set, frozenset)):
            raw_values = list(value)
        else:
            raise ValueError("excludedGenreIds must be a string or a list of integers")

        cleaned: set[int] = set()
        for entry in raw_values:
            if entry == "" or entry is None:
                continue
            if isinstance(entry, bool):
                raise ValueError("Genre ids must be positive integers")
            try:
                genre_id = int(str(entry))
            except ValueError as exc:
                raise ValueError("Genre ids must be positive integers") from exc
            if genre_id <= 0:
                raise ValueError("Genre ids must be positive integers")
            cleaned.add(genre_id)
        return tuple(sorted(cleaned))

    @field_validator("release_from", "release_to", mode="before")
    @classmethod
    def _blank_date(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_release_window(self) -> "GroupPolicy":
        if self.release_from and self.release_to and self.release_from > self.release_to:
            raise ValueError("releaseFrom must not be later than releaseTo")
        return self

    @property
    def media_types(self) -> tuple[MediaType, ...]:
        """Return the discover media types in scope, in round-robin order."""

        if self.media_type == "movies_and_tv":
            return ("movie", "tv")
        if self.media_type == "tv":
            return ("tv",)
        return ("movie",)

    @property
    def effective_min_vote_count(self) -> int | None:
        if not self.filter_unpopular:
            return None
        if self.min_vote_count is None:
            return DEFAULT_MIN_VOTE_COUNT
        return self.min_vote_count

    def discover_filters(self) -> "DiscoverFilters":
        return DiscoverFilters(
            min_vote_count=self.effective_min_vote_count,
            excluded_genre_ids=self.excluded_genre_ids,
            release_from=self.release_from,
            release_to=self.release_to,
        )

    def fingerprint(self) -> str:
        """Return a stable key over every input that shapes queue contents."""

        payload = {
            "mediaType": self.media_type,
            "filterUnpopular": self.filter_unpopular,
            "minVoteCount": self.effective_min_vote_count,
            "excludedGenreIds": list(self.excluded_genre_ids),
            "releaseFrom": self.release_from.isoformat() if self.release_from else None,
            "releaseTo": self.release_to.isoformat() if self.release_to else None,
            "allowG": self.allow_g,
            "allowPG": self.allow_pg,
            "allowPG13": self.allow_pg13,
            "allowR": self.allow_r,
            "allowTVY": self.allow_tvy,
            "allowTVY7": self.allow_tvy7,
            "allowTVG": self.allow_tvg,
            "allowTVPG": self.allow_tvpg,
            "allowTV14": self.allow_tv14,
            "allowTVMA": self.allow_tvma,
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class DiscoverFilters:
    """Upstream filter parameters for a discover page request."""

    min_vote_count: int | None = None
    excluded_genre_ids: tuple[int, ...] = ()
    release_from: date | None = None
    release_to: date | None = None


@dataclass(slots=True)
class DiscoverResult:
    """Normalized view of a TMDB discover row."""

    id: int
    type: MediaType
    title: str
    release_date: str | None = None
    year: str | None = None
    poster_path: str | None = None
    overview: str = ""
    vote_count: int | None = None
    raw_keys: tuple[str, ...] = ()


@dataclass(slots=True)
class DiscoverPage:
    """A page of discover results together with pagination metadata."""

    page: int
    total_pages: int | None
    results: list[DiscoverResult] = field(default_factory=list)

    @property
    def no_more(self) -> bool:
        """Return whether upstream has nothing beyond this page."""

        if not self.results:
            return True
        return self.total_pages is not None and self.page >= self.total_pages


@dataclass(slots=True)
class QueueStatus:
    """Describe whether a member's queue is healthy or has run dry."""

    state: QueueState
    size: int
    exhausted_by_type: dict[str, bool]

    def to_payload(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "size": self.size,
            "exhaustedByType": dict(self.exhausted_by_type),
        }
