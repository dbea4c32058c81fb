"""Notification dispatch for request lifecycle events.

Posts a JSON payload to each enabled webhook endpoint assigned to the
requester. Delivery failures are logged and never fail the request
operation that triggered them.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

import httpx
from sqlalchemy import func, select

from app.models import MediaRequest, NotificationEndpoint

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p/w500"

# Event names sent in the "event" field
REQUEST_PENDING = "request_pending"
REQUEST_SUBMITTED = "request_submitted"
REQUEST_APPROVED = "request_approved"
REQUEST_DENIED = "request_denied"
REQUEST_FAILED = "request_failed"
REQUEST_ALREADY_EXISTS = "request_already_exists"
REQUEST_AVAILABLE = "request_available"


def request_payload(request: MediaRequest) -> dict[str, Any]:
    """Common payload fields for a persisted request."""
    return {
        "requestId": request.id,
        "requestType": request.request_type.value,
        "tmdbId": request.tmdb_id,
        "tvdbId": request.tvdb_id,
        "title": request.title,
        "year": request.release_year,
        "imageUrl": f"{TMDB_IMAGE_BASE}{request.poster_path}" if request.poster_path else None,
        "status": request.status.value,
        "seasons": request.seasons,
        "userId": request.requested_by,
        "username": request.requested_by_username,
    }


class NotificationDispatcher:
    """
    Sends request events to users' webhook endpoints.

    Usage:
        await notifier.notify(db, REQUEST_SUBMITTED, request.requested_by, request_payload(request))
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def has_assigned_endpoints(self, db: "AsyncSession", user_id: str) -> bool:
        """Whether the user has at least one enabled notification endpoint."""
        stmt = select(func.count()).select_from(NotificationEndpoint).where(
            NotificationEndpoint.user_id == user_id,
            NotificationEndpoint.enabled.is_(True),
        )
        result = await db.execute(stmt)
        return result.scalar_one() > 0

    async def _endpoints(self, db: "AsyncSession", user_id: str) -> list[NotificationEndpoint]:
        stmt = select(NotificationEndpoint).where(
            NotificationEndpoint.user_id == user_id,
            NotificationEndpoint.enabled.is_(True),
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def notify(
        self,
        db: "AsyncSession",
        event: str,
        user_id: str,
        payload: dict[str, Any],
    ) -> int:
        """
        Send an event to every enabled endpoint of the user.

        Returns:
            Number of endpoints that accepted the event
        """
        endpoints = await self._endpoints(db, user_id)
        if not endpoints:
            logger.debug(f"No notification endpoints for user {user_id}, skipping {event}")
            return 0

        body = {"event": event, "timestamp": datetime.utcnow().isoformat(), **payload}
        delivered = 0
        client = await self._get_client()
        for endpoint in endpoints:
            if endpoint.kind != "webhook":
                logger.debug(f"Skipping unsupported endpoint kind {endpoint.kind} ({endpoint.id})")
                continue
            try:
                response = await client.post(endpoint.target, json=body)
                if response.status_code >= 400:
                    logger.warning(
                        f"Notification {event} to endpoint {endpoint.id} returned {response.status_code}"
                    )
                    continue
                delivered += 1
            except httpx.HTTPError as e:
                logger.warning(f"Notification {event} to endpoint {endpoint.id} failed: {e}")

        logger.info(f"Dispatched {event} to {delivered}/{len(endpoints)} endpoints for user {user_id}")
        return delivered


# Global instance
notifier = NotificationDispatcher()
