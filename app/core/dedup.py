"""Deduplication guard.

Finds the active request (if any) that already covers a piece of media.
Movies are keyed by TMDB ID; TV is keyed per (TMDB ID, season) through
request items.

This is the fast-path check. The UNIQUE active_key columns are what
actually stop two concurrent writers; see movie_active_key /
season_active_key.
"""

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select

from app.models import ACTIVE_STATES, MediaRequest, RequestItem, RequestType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def movie_active_key(tmdb_id: int) -> str:
    return f"movie:{tmdb_id}"


def season_active_key(tmdb_id: int, season: int) -> str:
    return f"{tmdb_id}:{season}"


class DeduplicationGuard:
    """
    Read-only lookups against active requests.

    Usage:
        guard = DeduplicationGuard()
        existing = await guard.find_active_request(db, RequestType.MOVIE, 603)
        taken = await guard.active_seasons(db, 1399)
    """

    async def find_active_request(
        self,
        db: "AsyncSession",
        request_type: RequestType,
        tmdb_id: int,
        season: Optional[int] = None,
    ) -> Optional[MediaRequest]:
        """
        Return the newest active request for the media, or None.

        For TV with a season, only a request owning an item for that season
        counts. Without a season, any active TV request for the show counts.
        """
        stmt = select(MediaRequest).where(
            MediaRequest.request_type == request_type,
            MediaRequest.tmdb_id == tmdb_id,
            MediaRequest.status.in_(ACTIVE_STATES),
        )
        if request_type == RequestType.EPISODE and season is not None:
            stmt = stmt.join(RequestItem, RequestItem.request_id == MediaRequest.id).where(
                RequestItem.season == season
            )
        stmt = stmt.order_by(MediaRequest.created_at.desc()).limit(1)

        result = await db.execute(stmt)
        return result.scalars().first()

    async def active_seasons(self, db: "AsyncSession", tmdb_id: int) -> set[int]:
        """Seasons of a show that are already covered by an active request."""
        stmt = (
            select(RequestItem.season)
            .join(MediaRequest, RequestItem.request_id == MediaRequest.id)
            .where(
                MediaRequest.request_type == RequestType.EPISODE,
                MediaRequest.tmdb_id == tmdb_id,
                MediaRequest.status.in_(ACTIVE_STATES),
            )
        )
        result = await db.execute(stmt)
        return set(result.scalars().all())


# Global instance
dedup_guard = DeduplicationGuard()
