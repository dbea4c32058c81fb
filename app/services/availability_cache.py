"""Jellyfin availability cache.

Rows in jellyfin_availability record which movies, series and episodes were
seen in the Jellyfin library and when. The availability sync writes them;
request creation and the season aggregator read them so they don't need a
Jellyfin round-trip per item.
"""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy import or_, select

from app.models import JellyfinAvailability

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _provider_int(item: dict, provider: str) -> Optional[int]:
    value = (item.get("ProviderIds") or {}).get(provider)
    try:
        return int(value) if value else None
    except (TypeError, ValueError):
        return None


def _series_filter(tmdb_id: Optional[int], tvdb_id: Optional[int]):
    clauses = []
    if tmdb_id:
        clauses.append(JellyfinAvailability.tmdb_id == tmdb_id)
    if tvdb_id:
        clauses.append(JellyfinAvailability.tvdb_id == tvdb_id)
    return or_(*clauses) if clauses else None


async def _upsert(
    db: "AsyncSession",
    jellyfin_item_id: str,
    media_type: str,
    tmdb_id: Optional[int],
    tvdb_id: Optional[int],
    title: Optional[str] = None,
    season_number: Optional[int] = None,
    episode_number: Optional[int] = None,
    seen_at: Optional[datetime] = None,
) -> JellyfinAvailability:
    result = await db.execute(
        select(JellyfinAvailability).where(JellyfinAvailability.jellyfin_item_id == jellyfin_item_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = JellyfinAvailability(jellyfin_item_id=jellyfin_item_id)
        db.add(row)
    row.media_type = media_type
    row.tmdb_id = tmdb_id
    row.tvdb_id = tvdb_id
    row.title = title
    row.season_number = season_number
    row.episode_number = episode_number
    row.last_seen_at = seen_at or datetime.utcnow()
    return row


async def record_movie(db: "AsyncSession", item: dict, tmdb_id: Optional[int] = None) -> JellyfinAvailability:
    """Store a Jellyfin movie item as available."""
    return await _upsert(
        db,
        jellyfin_item_id=item["Id"],
        media_type="movie",
        tmdb_id=tmdb_id or _provider_int(item, "Tmdb"),
        tvdb_id=None,
        title=item.get("Name"),
    )


async def record_series(
    db: "AsyncSession",
    series_item: dict,
    episodes: list[dict],
    tmdb_id: Optional[int] = None,
    tvdb_id: Optional[int] = None,
) -> int:
    """
    Store a Jellyfin series and its playable episodes.

    Returns:
        Number of episode rows written
    """
    tmdb_id = tmdb_id or _provider_int(series_item, "Tmdb")
    tvdb_id = tvdb_id or _provider_int(series_item, "Tvdb")
    await _upsert(
        db,
        jellyfin_item_id=series_item["Id"],
        media_type="series",
        tmdb_id=tmdb_id,
        tvdb_id=tvdb_id,
        title=series_item.get("Name"),
    )
    written = 0
    for ep in episodes:
        if not ep.get("Id") or ep.get("ParentIndexNumber") is None:
            continue
        await _upsert(
            db,
            jellyfin_item_id=ep["Id"],
            media_type="episode",
            tmdb_id=tmdb_id,
            tvdb_id=tvdb_id,
            title=ep.get("Name"),
            season_number=ep["ParentIndexNumber"],
            episode_number=ep.get("IndexNumber"),
        )
        written += 1
    return written


async def is_movie_available(
    db: "AsyncSession",
    tmdb_id: int,
    max_age: Optional[int] = None,
) -> bool:
    """
    Whether Jellyfin was seen holding the movie.

    Args:
        max_age: Ignore entries older than this many seconds (None = any age)
    """
    stmt = select(JellyfinAvailability.id).where(
        JellyfinAvailability.media_type == "movie",
        JellyfinAvailability.tmdb_id == tmdb_id,
    )
    if max_age is not None:
        stmt = stmt.where(JellyfinAvailability.last_seen_at >= datetime.utcnow() - timedelta(seconds=max_age))
    result = await db.execute(stmt.limit(1))
    return result.first() is not None


async def has_cached_episode_availability(
    db: "AsyncSession",
    tmdb_id: Optional[int],
    tvdb_id: Optional[int],
    season_number: int,
    episode_number: Optional[int] = None,
) -> bool:
    """Whether any (or a specific) episode of the season is cached as available."""
    series_filter = _series_filter(tmdb_id, tvdb_id)
    if series_filter is None:
        return False
    stmt = select(JellyfinAvailability.id).where(
        JellyfinAvailability.media_type == "episode",
        JellyfinAvailability.season_number == season_number,
        series_filter,
    )
    if episode_number is not None:
        stmt = stmt.where(JellyfinAvailability.episode_number == episode_number)
    result = await db.execute(stmt.limit(1))
    return result.first() is not None


async def get_available_seasons(
    db: "AsyncSession",
    tmdb_id: Optional[int],
    tvdb_id: Optional[int] = None,
) -> list[int]:
    """Regular seasons with at least one cached episode, ascending."""
    series_filter = _series_filter(tmdb_id, tvdb_id)
    if series_filter is None:
        return []
    stmt = select(JellyfinAvailability.season_number).where(
        JellyfinAvailability.media_type == "episode",
        JellyfinAvailability.season_number >= 1,
        series_filter,
    ).distinct()
    result = await db.execute(stmt)
    return sorted(s for s in result.scalars().all() if s is not None)


async def get_cached_series_item_id(
    db: "AsyncSession",
    tmdb_id: Optional[int],
    tvdb_id: Optional[int] = None,
) -> Optional[str]:
    """Jellyfin item ID of the series, if cached."""
    series_filter = _series_filter(tmdb_id, tvdb_id)
    if series_filter is None:
        return None
    stmt = select(JellyfinAvailability.jellyfin_item_id).where(
        JellyfinAvailability.media_type == "series",
        series_filter,
    ).order_by(JellyfinAvailability.last_seen_at.desc()).limit(1)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()
