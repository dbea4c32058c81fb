"""TMDB API v3 client for request metadata (titles, genres, ratings, seasons)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from app.config import settings
from app.errors import ServiceRequestError, ServiceUnavailableError
from app.clients.radarr import read_json

logger = logging.getLogger(__name__)

SERVICE = "tmdb"


@dataclass
class SeasonInfo:
    season_number: int
    episode_count: int = 0
    name: Optional[str] = None


@dataclass
class MediaMetadata:
    """The subset of TMDB details the request engine needs."""
    tmdb_id: int
    media_type: str  # "movie" or "tv"
    title: str
    release_year: Optional[int] = None
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    genre_ids: list[int] = field(default_factory=list)
    vote_average: Optional[float] = None
    popularity: Optional[float] = None
    certification: Optional[str] = None
    tvdb_id: Optional[int] = None
    seasons: list[SeasonInfo] = field(default_factory=list)

    @property
    def regular_seasons(self) -> list[int]:
        """Season numbers >= 1 (season 0 is specials)."""
        return sorted(s.season_number for s in self.seasons if s.season_number >= 1)


@dataclass
class CollectionPart:
    tmdb_id: int
    title: str
    release_year: Optional[int] = None
    poster_path: Optional[str] = None


@dataclass
class CollectionInfo:
    collection_id: int
    name: str
    parts: list[CollectionPart] = field(default_factory=list)


def _year(date_str: Optional[str]) -> Optional[int]:
    if date_str and len(date_str) >= 4 and date_str[:4].isdigit():
        return int(date_str[:4])
    return None


def _movie_certification(data: dict, region: str) -> Optional[str]:
    """Pick the first non-empty theatrical certification for the region."""
    for country in data.get("release_dates", {}).get("results", []):
        if country.get("iso_3166_1") != region:
            continue
        for release in country.get("release_dates", []):
            if release.get("certification"):
                return release["certification"]
    return None


def _tv_certification(data: dict, region: str) -> Optional[str]:
    for rating in data.get("content_ratings", {}).get("results", []):
        if rating.get("iso_3166_1") == region and rating.get("rating"):
            return rating["rating"]
    return None


class TmdbClient:
    """
    Async client for TMDB API v3.

    Used for:
    - Movie / TV details with certification and genres (approval context)
    - TV season lists (default season selection)
    - Collection parts (collection requests)

    Unknown IDs return None. Network failures and 5xx raise
    ServiceUnavailableError.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url or settings.TMDB_BASE_URL
        self.api_key = settings.TMDB_API_KEY if api_key is None else api_key
        self.region = settings.TMDB_REGION
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.EXTERNAL_TIMEOUT,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, **params: Any) -> Optional[dict]:
        try:
            client = await self._get_client()
            response = await client.get(path, params={"api_key": self.api_key, **params})
        except httpx.TimeoutException as e:
            logger.warning(f"TMDB timeout on {path}: {e}")
            raise ServiceUnavailableError(SERVICE, "Request timed out") from e
        except httpx.RequestError as e:
            logger.warning(f"TMDB request error on {path}: {e}")
            raise ServiceUnavailableError(SERVICE, f"Request error: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 500 or response.status_code == 429:
            raise ServiceUnavailableError(SERVICE, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ServiceRequestError(SERVICE, f"HTTP {response.status_code}", response.status_code)
        return read_json(response, SERVICE)

    async def get_movie(self, tmdb_id: int) -> Optional[MediaMetadata]:
        """Fetch movie details including the regional certification."""
        data = await self._get(f"/movie/{tmdb_id}", append_to_response="release_dates")
        if data is None:
            return None
        return MediaMetadata(
            tmdb_id=tmdb_id,
            media_type="movie",
            title=data.get("title") or data.get("original_title") or f"TMDB {tmdb_id}",
            release_year=_year(data.get("release_date")),
            poster_path=data.get("poster_path"),
            backdrop_path=data.get("backdrop_path"),
            genre_ids=[g["id"] for g in data.get("genres", []) if "id" in g],
            vote_average=data.get("vote_average"),
            popularity=data.get("popularity"),
            certification=_movie_certification(data, self.region),
        )

    async def get_tv(self, tmdb_id: int) -> Optional[MediaMetadata]:
        """Fetch TV details including seasons, content rating and TVDB ID."""
        data = await self._get(f"/tv/{tmdb_id}", append_to_response="content_ratings,external_ids")
        if data is None:
            return None
        return MediaMetadata(
            tmdb_id=tmdb_id,
            media_type="tv",
            title=data.get("name") or data.get("original_name") or f"TMDB {tmdb_id}",
            release_year=_year(data.get("first_air_date")),
            poster_path=data.get("poster_path"),
            backdrop_path=data.get("backdrop_path"),
            genre_ids=[g["id"] for g in data.get("genres", []) if "id" in g],
            vote_average=data.get("vote_average"),
            popularity=data.get("popularity"),
            certification=_tv_certification(data, self.region),
            tvdb_id=data.get("external_ids", {}).get("tvdb_id"),
            seasons=[
                SeasonInfo(
                    season_number=s["season_number"],
                    episode_count=s.get("episode_count") or 0,
                    name=s.get("name"),
                )
                for s in data.get("seasons", [])
                if s.get("season_number") is not None
            ],
        )

    async def get_metadata(self, media_type: str, tmdb_id: int) -> Optional[MediaMetadata]:
        if media_type == "movie":
            return await self.get_movie(tmdb_id)
        return await self.get_tv(tmdb_id)

    async def get_collection(self, collection_id: int) -> Optional[CollectionInfo]:
        data = await self._get(f"/collection/{collection_id}")
        if data is None:
            return None
        return CollectionInfo(
            collection_id=collection_id,
            name=data.get("name", f"Collection {collection_id}"),
            parts=[
                CollectionPart(
                    tmdb_id=p["id"],
                    title=p.get("title") or p.get("original_title") or f"TMDB {p['id']}",
                    release_year=_year(p.get("release_date")),
                    poster_path=p.get("poster_path"),
                )
                for p in data.get("parts", [])
                if p.get("id")
            ],
        )


# Singleton instance
tmdb_client = TmdbClient()
