"""Availability reconciliation.

Periodically checks pending/submitted requests against Jellyfin and
Radarr/Sonarr and moves them to AVAILABLE once the media can be watched.
Jellyfin sightings are written to the availability cache on the way.

Flow per request:
1. Movie: Jellyfin has a playable item, or Radarr reports a file
2. TV: every requested season has files in Sonarr or episodes in Jellyfin
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select

from app.clients.jellyfin import JellyfinClient, jellyfin_client
from app.models import MediaRequest, MediaType, RequestState, RequestType
from app.services import availability_cache
from app.services.lifecycle import RequestLifecycleManager, lifecycle as default_lifecycle
from app.services.resolver import ResolveStatus
from app.services.seasons import get_available_seasons

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Requests still waiting for their media
SYNC_STATES = [RequestState.PENDING, RequestState.SUBMITTED]


@dataclass
class SyncResult:
    """Result of one reconciliation pass."""

    checked: int = 0
    made_available: int = 0
    errors: int = 0
    available_ids: list[str] = field(default_factory=list)
    error_details: list[str] = field(default_factory=list)


class AvailabilitySyncService:
    """
    Reconciles request status with what the library actually holds.

    Usage:
        async with async_session() as db:
            result = await AvailabilitySyncService(db).sync()
    """

    def __init__(
        self,
        db: "AsyncSession",
        lifecycle: Optional[RequestLifecycleManager] = None,
        jellyfin: Optional[JellyfinClient] = None,
    ):
        self.db = db
        self.lifecycle = lifecycle or default_lifecycle
        self.resolver = self.lifecycle.resolver
        self.jellyfin = jellyfin or jellyfin_client

    async def sync(self) -> SyncResult:
        result = SyncResult()

        stmt = select(MediaRequest.id, MediaRequest.title).where(MediaRequest.status.in_(SYNC_STATES))
        targets = list((await self.db.execute(stmt)).all())
        if not targets:
            return result

        for request_id, title in targets:
            result.checked += 1
            try:
                # A rollback for an earlier item expires everything in the session
                request = await self.db.get(MediaRequest, request_id, populate_existing=True)
                if request is None or request.status not in SYNC_STATES:
                    continue
                if request.request_type == RequestType.MOVIE:
                    source = await self._movie_source(request)
                else:
                    source = await self._series_source(request)
                await self.db.commit()

                if source and await self.lifecycle.mark_available(
                    self.db, request, service=source, details=f"Found in {source}"
                ):
                    result.made_available += 1
                    result.available_ids.append(request.id)

            except Exception as e:
                result.errors += 1
                error_msg = f"Error checking '{title}' ({request_id}): {e}"
                result.error_details.append(error_msg)
                logger.error(error_msg)
                await self.db.rollback()

        logger.info(
            f"Availability sync: checked {result.checked}, "
            f"{result.made_available} now available, {result.errors} errors"
        )
        return result

    async def _movie_source(self, request: MediaRequest) -> Optional[str]:
        """Where the movie is available, or None."""
        if self.jellyfin.is_configured:
            item = await self.jellyfin.find_item_by_tmdb(request.tmdb_id, "Movie")
            if item:
                await availability_cache.record_movie(self.db, item, tmdb_id=request.tmdb_id)
                return "jellyfin"

        self.resolver.invalidate(MediaType.MOVIE, request.tmdb_id)
        resolved = await self.resolver.resolve(MediaType.MOVIE, request.tmdb_id)
        if resolved.status == ResolveStatus.FOUND and resolved.ref.has_file:
            return "radarr"
        return None

    async def _series_source(self, request: MediaRequest) -> Optional[str]:
        """'library' when every requested season is available, else None."""
        wanted = set(request.seasons)
        if not wanted:
            return None

        if self.jellyfin.is_configured:
            series = None
            if request.tvdb_id:
                series = await self.jellyfin.find_item_by_tvdb(request.tvdb_id, "Series")
            if series is None:
                series = await self.jellyfin.find_item_by_tmdb(request.tmdb_id, "Series")
            if series:
                episodes = await self.jellyfin.get_series_episodes(series["Id"])
                await availability_cache.record_series(
                    self.db, series, episodes, tmdb_id=request.tmdb_id, tvdb_id=request.tvdb_id
                )
                await self.db.flush()

        self.resolver.invalidate(MediaType.TV, request.tmdb_id, request.tvdb_id)
        available = set(await get_available_seasons(
            self.db, request.tmdb_id, request.tvdb_id, resolver=self.resolver
        ))
        if wanted <= available:
            return "library"
        logger.debug(
            f"Request {request.id}: seasons {sorted(wanted - available)} not available yet"
        )
        return None


async def run_availability_sync(db: "AsyncSession") -> SyncResult:
    """Convenience wrapper used by the background loop."""
    return await AvailabilitySyncService(db).sync()
