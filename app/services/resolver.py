"""Media Identity Resolver.

Maps (media type, TMDB ID, TVDB ID) to the Radarr movie / Sonarr series that
represents it, creating the entry on demand. Lookups are cached for a short
TTL; an unreachable service is never cached so the next call retries.

resolve() never raises for service failures. The result says whether the
media was found, not found, or whether the service could not be asked.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from app.clients.radarr import RadarrClient, radarr_client
from app.clients.sonarr import SonarrClient, sonarr_client
from app.config import settings
from app.core.cache import MISSING, TTLCache
from app.errors import ServiceRequestError, ServiceUnavailableError
from app.models import MediaType

logger = logging.getLogger(__name__)


class ResolveStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNREACHABLE = "unreachable"


@dataclass
class ExternalServiceRef:
    """Pointer to the download manager's entry for a piece of media."""
    service: str  # radarr, sonarr
    external_id: int
    tmdb_id: Optional[int] = None
    tvdb_id: Optional[int] = None
    title: Optional[str] = None
    monitored: bool = False
    has_file: bool = False
    # Sonarr only: season number -> statistics dict
    season_statistics: dict[int, dict] = field(default_factory=dict)


@dataclass
class ResolveResult:
    status: ResolveStatus
    ref: Optional[ExternalServiceRef] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status == ResolveStatus.FOUND


@dataclass
class EnsureResult:
    """Outcome of making sure the media exists in Radarr/Sonarr."""
    ref: ExternalServiceRef
    created: bool

    @property
    def already_existed(self) -> bool:
        return not self.created


@dataclass
class QualityProfileList:
    profiles: list[dict] = field(default_factory=list)
    error: Optional[str] = None


def service_for(media_type: MediaType) -> str:
    return "radarr" if media_type == MediaType.MOVIE else "sonarr"


def _movie_ref(movie: dict) -> ExternalServiceRef:
    return ExternalServiceRef(
        service="radarr",
        external_id=movie["id"],
        tmdb_id=movie.get("tmdbId"),
        title=movie.get("title"),
        monitored=bool(movie.get("monitored")),
        has_file=bool(movie.get("hasFile")) or (movie.get("sizeOnDisk") or 0) > 0,
    )


def _series_ref(series: dict) -> ExternalServiceRef:
    stats = series.get("statistics") or {}
    return ExternalServiceRef(
        service="sonarr",
        external_id=series["id"],
        tmdb_id=series.get("tmdbId"),
        tvdb_id=series.get("tvdbId"),
        title=series.get("title"),
        monitored=bool(series.get("monitored")),
        has_file=(stats.get("episodeFileCount") or 0) > 0 or (stats.get("sizeOnDisk") or 0) > 0,
        season_statistics={
            s["seasonNumber"]: s.get("statistics") or {}
            for s in series.get("seasons", [])
            if s.get("seasonNumber") is not None
        },
    )


class MediaIdentityResolver:
    """
    Resolves and ensures Radarr/Sonarr entries for requested media.

    Usage:
        result = await resolver.resolve(MediaType.MOVIE, 603)
        if result.status == ResolveStatus.UNREACHABLE:
            ...
        ensured = await resolver.ensure(MediaType.MOVIE, 603, title="The Matrix", year=1999)
    """

    def __init__(
        self,
        radarr: Optional[RadarrClient] = None,
        sonarr: Optional[SonarrClient] = None,
        ttl: Optional[float] = None,
        profile_ttl: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.radarr = radarr or radarr_client
        self.sonarr = sonarr or sonarr_client
        self._lookups: TTLCache = TTLCache(
            settings.SERVICE_CACHE_TTL if ttl is None else ttl, clock=clock
        )
        self._profiles: TTLCache = TTLCache(
            settings.QUALITY_PROFILE_CACHE_TTL if profile_ttl is None else profile_ttl, clock=clock
        )

    def _client(self, service: str):
        if service == "radarr":
            return self.radarr
        if service == "sonarr":
            return self.sonarr
        raise ValueError(f"Unknown service: {service}")

    def is_service_configured(self, service: str) -> bool:
        """Whether the download manager for this service has credentials."""
        key = ("configured", service)
        cached = self._lookups.get(key)
        if cached is not MISSING:
            return cached
        configured = bool(self._client(service).is_configured)
        self._lookups.set(key, configured)
        return configured

    def invalidate(self, media_type: MediaType, tmdb_id: int, tvdb_id: Optional[int] = None) -> None:
        self._lookups.invalidate((MediaType(media_type).value, tmdb_id, tvdb_id))

    async def resolve(
        self,
        media_type: MediaType,
        tmdb_id: int,
        tvdb_id: Optional[int] = None,
    ) -> ResolveResult:
        """
        Find the Radarr movie / Sonarr series for the media.

        TV looks up by TVDB ID first and falls back to TMDB ID.
        """
        media_type = MediaType(media_type)
        key = (media_type.value, tmdb_id, tvdb_id)
        return await self._lookups.get_or_load(
            key,
            lambda: self._lookup(media_type, tmdb_id, tvdb_id),
            should_cache=lambda r: r.status != ResolveStatus.UNREACHABLE,
        )

    async def _lookup(
        self,
        media_type: MediaType,
        tmdb_id: int,
        tvdb_id: Optional[int],
    ) -> ResolveResult:
        service = service_for(media_type)
        if not self.is_service_configured(service):
            return ResolveResult(ResolveStatus.UNREACHABLE, error=f"{service} is not configured")

        try:
            if media_type == MediaType.MOVIE:
                movie = await self.radarr.get_movie_by_tmdb(tmdb_id)
                ref = _movie_ref(movie) if movie else None
            else:
                series = None
                if tvdb_id:
                    series = await self.sonarr.get_series_by_tvdb(tvdb_id)
                if series is None:
                    series = await self.sonarr.get_series_by_tmdb(tmdb_id)
                ref = _series_ref(series) if series else None
        except (ServiceUnavailableError, ServiceRequestError) as e:
            logger.warning(f"Could not resolve {media_type.value} TMDB {tmdb_id} in {service}: {e.message}")
            return ResolveResult(ResolveStatus.UNREACHABLE, error=e.message)

        if ref is None:
            return ResolveResult(ResolveStatus.NOT_FOUND)
        return ResolveResult(ResolveStatus.FOUND, ref=ref)

    async def ensure(
        self,
        media_type: MediaType,
        tmdb_id: int,
        tvdb_id: Optional[int] = None,
        title: Optional[str] = None,
        year: Optional[int] = None,
        seasons: Optional[list[int]] = None,
        quality_profile_id: Optional[int] = None,
        poster_url: Optional[str] = None,
    ) -> EnsureResult:
        """
        Make sure the media exists in Radarr/Sonarr and is being searched.

        For TV the requested seasons' episodes are monitored and searched,
        whether or not the series already existed.

        Raises:
            ServiceUnavailableError: service unreachable
            ServiceRequestError: service rejected the add
        """
        media_type = MediaType(media_type)
        self.invalidate(media_type, tmdb_id, tvdb_id)
        result = await self.resolve(media_type, tmdb_id, tvdb_id)
        if result.status == ResolveStatus.UNREACHABLE:
            raise ServiceUnavailableError(service_for(media_type), result.error or "unreachable")

        created = False
        ref = result.ref
        try:
            if ref is None:
                if media_type == MediaType.MOVIE:
                    movie = await self.radarr.add_movie(
                        tmdb_id=tmdb_id,
                        title=title or f"TMDB {tmdb_id}",
                        year=year,
                        quality_profile_id=quality_profile_id,
                        poster_url=poster_url,
                    )
                    ref = _movie_ref(movie)
                else:
                    if not tvdb_id:
                        raise ServiceRequestError("sonarr", "TV series requires a TVDB id")
                    lookup = await self.sonarr.lookup_series(tvdb_id)
                    if not lookup:
                        raise ServiceRequestError("sonarr", "Sonarr lookup returned no results", 404)
                    series = await self.sonarr.add_series(lookup, quality_profile_id=quality_profile_id)
                    ref = _series_ref(series)
                created = True
        except ServiceRequestError as e:
            if not e.is_already_exists:
                raise
            # Lost a race with another add; treat as existing
            logger.info(f"{e.service} already has TMDB {tmdb_id}: {e.message}")
            self.invalidate(media_type, tmdb_id, tvdb_id)
            again = await self.resolve(media_type, tmdb_id, tvdb_id)
            if again.ref is None:
                raise
            ref = again.ref

        if media_type == MediaType.TV and seasons:
            await self._monitor_seasons(ref.external_id, seasons)

        self.invalidate(media_type, tmdb_id, tvdb_id)
        return EnsureResult(ref=ref, created=created)

    async def _monitor_seasons(self, series_id: int, seasons: list[int]) -> None:
        wanted = set(seasons)
        episodes = await self.sonarr.get_episodes(series_id)
        episode_ids = [e["id"] for e in episodes if e.get("seasonNumber") in wanted and "id" in e]
        if not episode_ids:
            logger.warning(f"No Sonarr episodes found for series {series_id} seasons {sorted(wanted)}")
            return
        await self.sonarr.set_episodes_monitored(episode_ids, True)
        await self.sonarr.episode_search(episode_ids)

    async def list_quality_profiles(self, service: str) -> QualityProfileList:
        """
        Quality profiles for a service.

        Read path: failures degrade to an empty list plus an error string.
        """
        if service not in ("radarr", "sonarr"):
            return QualityProfileList(error=f"Unknown service: {service}")
        if not self.is_service_configured(service):
            return QualityProfileList(error=f"{service} is not configured")

        async def load() -> QualityProfileList:
            try:
                profiles = await self._client(service).list_quality_profiles()
            except (ServiceUnavailableError, ServiceRequestError) as e:
                logger.warning(f"Could not list {service} quality profiles: {e.message}")
                return QualityProfileList(error=e.message)
            return QualityProfileList(
                profiles=[{"id": p.get("id"), "name": p.get("name")} for p in profiles]
            )

        return await self._profiles.get_or_load(
            service, load, should_cache=lambda r: r.error is None
        )


# Global instance
resolver = MediaIdentityResolver()
