"""Discover and certification lookups against The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import DiscoverFilters, DiscoverPage, DiscoverResult
from ..utils import MediaType, extract_year

logger = logging.getLogger(__name__)

MAX_DISCOVER_PAGE = 500


class TransientUpstreamError(RuntimeError):
    """Raised when TMDB answers a discover request with a failure."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TMDBClient:
    """Client for the paginated discover and certification endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_configured:
            raise ValueError(
                "TMDB_READ_TOKEN or TMDB_API_KEY is required when initialising TMDBClient"
            )
        self._settings = settings
        self._client = http_client
        self._semaphore = asyncio.Semaphore(settings.certification_concurrency)

    async def discover(
        self, media_type: MediaType, page: int, filters: DiscoverFilters
    ) -> DiscoverPage:
        """Return one popularity-ordered discover page for the media type."""

        if not 1 <= page <= MAX_DISCOVER_PAGE:
            raise ValueError(f"page must be between 1 and {MAX_DISCOVER_PAGE}")

        params = self._discover_params(media_type, page, filters)
        try:
            response = await self._client.get(
                f"/discover/{media_type}", params=params, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise TransientUpstreamError(
                f"Network error while fetching TMDB discover {media_type} page {page}: {exc}"
            ) from exc

        if response.status_code >= 400:
            raise TransientUpstreamError(
                f"TMDB discover {media_type} page {page} failed with {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientUpstreamError(
                f"TMDB discover {media_type} page {page} returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise TransientUpstreamError(
                f"Unexpected TMDB discover response structure for {media_type}"
            )

        raw_results = payload.get("results") or []
        results = [
            self._normalize_result(entry, media_type)
            for entry in raw_results
            if isinstance(entry, dict) and self._valid_id(entry.get("id"))
        ]
        page_value = payload.get("page")
        total_pages = payload.get("total_pages")
        return DiscoverPage(
            page=page_value if isinstance(page_value, int) else page,
            total_pages=total_pages if isinstance(total_pages, int) else None,
            results=results,
        )

    async def certification(self, media_type: MediaType, provider_id: int) -> str | None:
        """Return the raw rating string for the configured country, if any."""

        if media_type == "movie":
            path = f"/movie/{provider_id}/release_dates"
        else:
            path = f"/tv/{provider_id}/content_ratings"

        try:
            async with self._semaphore:
                response = await self._client.get(
                    path, params=self._auth_params(), headers=self._headers()
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "TMDB certification lookup failed for %s %s: %s",
                media_type,
                provider_id,
                exc,
            )
            return None
        if response.status_code >= 400:
            logger.debug(
                "TMDB certification lookup for %s %s returned %s",
                media_type,
                provider_id,
                response.status_code,
            )
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON TMDB certification response for %s", provider_id)
            return None
        if media_type == "movie":
            return self._extract_movie_certification(payload)
        return self._extract_tv_rating(payload)

    def _discover_params(
        self, media_type: MediaType, page: int, filters: DiscoverFilters
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "page": page,
            "language": self._settings.tmdb_language,
            "sort_by": "popularity.desc",
            "include_adult": "false",
        }
        if filters.min_vote_count is not None:
            params["vote_count.gte"] = filters.min_vote_count
        if filters.excluded_genre_ids:
            params["without_genres"] = ",".join(str(genre) for genre in filters.excluded_genre_ids)
        if media_type == "movie":
            from_key, to_key = "primary_release_date.gte", "primary_release_date.lte"
        else:
            from_key, to_key = "first_air_date.gte", "first_air_date.lte"
        if filters.release_from:
            params[from_key] = filters.release_from.isoformat()
        if filters.release_to:
            params[to_key] = filters.release_to.isoformat()
        params.update(self._auth_params())
        return params

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._settings.tmdb_read_token:
            headers["Authorization"] = f"Bearer {self._settings.tmdb_read_token}"
        return headers

    def _auth_params(self) -> dict[str, str]:
        if self._settings.tmdb_read_token or not self._settings.tmdb_api_key:
            return {}
        return {"api_key": self._settings.tmdb_api_key}

    def _extract_movie_certification(self, payload: Any) -> str | None:
        for entry in self._country_entries(payload):
            release_dates = entry.get("release_dates") or []
            if not isinstance(release_dates, list):
                continue
            for release in release_dates:
                if not isinstance(release, dict):
                    continue
                certification = release.get("certification")
                if isinstance(certification, str) and certification.strip():
                    return certification.strip()
        return None

    def _extract_tv_rating(self, payload: Any) -> str | None:
        for entry in self._country_entries(payload):
            rating = entry.get("rating")
            if isinstance(rating, str) and rating.strip():
                return rating.strip()
        return None

    def _country_entries(self, payload: Any) -> list[dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        results = payload.get("results") or []
        if not isinstance(results, list):
            return []
        country = self._settings.certification_country
        return [
            entry
            for entry in results
            if isinstance(entry, dict) and entry.get("iso_3166_1") == country
        ]

    @staticmethod
    def _normalize_result(entry: dict[str, Any], media_type: MediaType) -> DiscoverResult:
        if media_type == "movie":
            title = entry.get("title")
            release_date = entry.get("release_date")
        else:
            title = entry.get("name")
            release_date = entry.get("first_air_date")
        release_date = release_date if isinstance(release_date, str) and release_date else None
        vote_count = entry.get("vote_count")
        overview = entry.get("overview")
        poster_path = entry.get("poster_path")
        return DiscoverResult(
            id=int(entry["id"]),
            type=media_type,
            title=title if isinstance(title, str) else "",
            release_date=release_date,
            year=extract_year(release_date),
            poster_path=poster_path if isinstance(poster_path, str) and poster_path else None,
            overview=overview if isinstance(overview, str) else "",
            vote_count=vote_count if isinstance(vote_count, int) else None,
            raw_keys=tuple(entry.keys()),
        )

    @staticmethod
    def _valid_id(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool) and value > 0
