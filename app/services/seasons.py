"""Season/Episode aggregator for TV requests.

TV requests are stored as one request row per ask with one item per season,
so a show can have several requests covering different seasons. These
helpers merge them back into per-season and per-series views and combine
Sonarr and Jellyfin signals into the set of seasons that are available.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

from sqlalchemy import select

from app.models import ACTIVE_STATES, MediaRequest, MediaType, RequestItem, RequestState, RequestType
from app.services import availability_cache
from app.services.resolver import MediaIdentityResolver, ResolveStatus, resolver as default_resolver

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass
class SeasonRequestSummary:
    """Active requests covering one season."""
    season: int
    request_count: int = 0
    request_ids: list[str] = field(default_factory=list)
    status: Optional[RequestState] = None  # Status of the newest request
    episode_count: Optional[int] = None


@dataclass
class SeriesRequestSummary:
    """All episode requests of one show merged together."""
    tmdb_id: int
    title: str
    request_ids: list[str] = field(default_factory=list)
    seasons: list[int] = field(default_factory=list)
    status: Optional[RequestState] = None
    requested_by: list[str] = field(default_factory=list)
    latest_at: Optional[datetime] = None


def season_has_files(statistics: Optional[dict]) -> bool:
    """
    Whether Sonarr reports files for a season.

    Either counter is enough: Sonarr sometimes reports sizeOnDisk before
    episodeFileCount catches up.
    """
    if not statistics:
        return False
    return (statistics.get("episodeFileCount") or 0) > 0 or (statistics.get("sizeOnDisk") or 0) > 0


async def get_requested_seasons(db: "AsyncSession", tmdb_id: int) -> dict[int, SeasonRequestSummary]:
    """
    Count active request items per season for a show.

    Returns:
        season number -> SeasonRequestSummary
    """
    stmt = (
        select(RequestItem, MediaRequest)
        .join(MediaRequest, RequestItem.request_id == MediaRequest.id)
        .where(
            MediaRequest.request_type == RequestType.EPISODE,
            MediaRequest.tmdb_id == tmdb_id,
            MediaRequest.status.in_(ACTIVE_STATES),
        )
        .order_by(MediaRequest.created_at.asc())
    )
    result = await db.execute(stmt)

    summaries: dict[int, SeasonRequestSummary] = {}
    for item, request in result.all():
        summary = summaries.setdefault(item.season, SeasonRequestSummary(season=item.season))
        summary.request_count += 1
        summary.request_ids.append(request.id)
        # Ordered oldest first, so the last one seen is the newest
        summary.status = request.status
        if item.episode_count is not None:
            summary.episode_count = item.episode_count
    return summaries


async def get_available_seasons(
    db: "AsyncSession",
    tmdb_id: int,
    tvdb_id: Optional[int] = None,
    resolver: Optional[MediaIdentityResolver] = None,
) -> list[int]:
    """
    Seasons that have files in Sonarr or episodes in Jellyfin.

    Read path: an unreachable Sonarr just contributes nothing.
    """
    resolver = resolver or default_resolver
    seasons: set[int] = set()

    resolved = await resolver.resolve(MediaType.TV, tmdb_id, tvdb_id)
    if resolved.status == ResolveStatus.FOUND and resolved.ref:
        seasons.update(
            number for number, stats in resolved.ref.season_statistics.items()
            if number >= 1 and season_has_files(stats)
        )
    elif resolved.status == ResolveStatus.UNREACHABLE:
        logger.warning(f"Sonarr unreachable for TMDB {tmdb_id} seasons: {resolved.error}")

    seasons.update(await availability_cache.get_available_seasons(db, tmdb_id, tvdb_id))
    return sorted(seasons)


def aggregate_series_requests(requests: Iterable[MediaRequest]) -> list[SeriesRequestSummary]:
    """
    Group episode requests by show.

    Status is the status of the newest request; seasons are the union of
    all requests' items. Movie requests are ignored.
    """
    by_show: dict[int, SeriesRequestSummary] = {}
    for request in sorted(requests, key=lambda r: r.created_at or datetime.min):
        if request.request_type != RequestType.EPISODE:
            continue
        summary = by_show.setdefault(
            request.tmdb_id, SeriesRequestSummary(tmdb_id=request.tmdb_id, title=request.title)
        )
        summary.request_ids.append(request.id)
        summary.seasons = sorted(set(summary.seasons) | {item.season for item in request.items})
        summary.status = request.status
        summary.latest_at = request.created_at
        username = request.requested_by_username or request.requested_by
        if username not in summary.requested_by:
            summary.requested_by.append(username)

    return sorted(by_show.values(), key=lambda s: s.latest_at or datetime.min, reverse=True)


async def get_season_overview(
    db: "AsyncSession",
    tmdb_id: int,
    season_numbers: list[int],
    tvdb_id: Optional[int] = None,
    episode_counts: Optional[dict[int, int]] = None,
    resolver: Optional[MediaIdentityResolver] = None,
) -> list[dict]:
    """
    Per-season view for the request UI: requested / available flags.

    in_jellyfin is set when the availability cache holds an episode of the
    season; available also counts Sonarr files.
    """
    requested = await get_requested_seasons(db, tmdb_id)
    available = set(await get_available_seasons(db, tmdb_id, tvdb_id, resolver=resolver))
    episode_counts = episode_counts or {}

    overview = []
    for number in sorted(set(season_numbers) | set(requested) | available):
        if number < 1:
            continue
        summary = requested.get(number)
        overview.append({
            "season_number": number,
            "episode_count": episode_counts.get(number),
            "requested": summary is not None,
            "request_status": summary.status if summary else None,
            "request_ids": summary.request_ids if summary else [],
            "available": number in available,
            "in_jellyfin": await availability_cache.has_cached_episode_availability(
                db, tmdb_id, tvdb_id, number
            ),
        })
    return overview
