"""SQLAlchemy ORM models for media requests and approval rules."""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Enum, ForeignKey, Text, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class RequestType(str, enum.Enum):
    """Type of request row. TV requests are stored per episode/season items."""

    MOVIE = "movie"
    EPISODE = "episode"


class MediaType(str, enum.Enum):
    """Media type as exposed to API callers."""

    MOVIE = "movie"
    TV = "tv"

    @property
    def request_type(self) -> RequestType:
        return RequestType.MOVIE if self is MediaType.MOVIE else RequestType.EPISODE


class RequestState(str, enum.Enum):
    """
    States a media request can be in.
    Lifecycle: PENDING -> SUBMITTED -> AVAILABLE
    Side branches: DENIED, FAILED; terminal REMOVED.
    """

    PENDING = "pending"  # Awaiting admin approval or submission in flight
    SUBMITTED = "submitted"  # Radarr/Sonarr has the entry
    AVAILABLE = "available"  # Files on disk or present in Jellyfin
    DENIED = "denied"  # Rejected by an admin
    FAILED = "failed"  # Submission to the download manager errored
    REMOVED = "removed"  # Soft-deleted


# States that hold the uniqueness slot for a piece of media.
# FAILED stays active so a broken submission is not silently resubmitted.
ACTIVE_STATES = [
    RequestState.PENDING,
    RequestState.SUBMITTED,
    RequestState.AVAILABLE,
    RequestState.FAILED,
]


class OperationOutcome(str, enum.Enum):
    """Result of a request-creation call (separate from the request's state)."""

    CREATED = "created"
    CONFLICT = "conflict"
    FAILED = "failed"


class ConflictReason(str, enum.Enum):
    """Why a creation call short-circuited without a new request."""

    ALREADY_REQUESTED = "already_requested"  # Active request exists here
    ALREADY_EXISTS = "already_exists"  # Radarr/Sonarr already has the media


class RuleType(str, enum.Enum):
    """Auto-approval rule kinds."""

    USER_TRUST = "user_trust"
    POPULARITY = "popularity"
    TIME_BASED = "time_based"
    GENRE = "genre"
    CONTENT_RATING = "content_rating"


class MediaRequest(Base):
    """
    One user's ask for a piece of media.

    active_key is set while the request is in ACTIVE_STATES and cleared when
    it leaves them. The UNIQUE constraint on it is what actually prevents two
    concurrent writers from both creating an active movie request.
    TV uniqueness lives on RequestItem.active_key (per season).
    """

    __tablename__ = "requests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    request_type: Mapped[RequestType] = mapped_column(Enum(RequestType))
    tmdb_id: Mapped[int] = mapped_column(Integer, index=True)
    tvdb_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Display info (from TMDB at creation time)
    title: Mapped[str] = mapped_column(String(500))
    poster_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    backdrop_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    release_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[RequestState] = mapped_column(
        Enum(RequestState), default=RequestState.PENDING, index=True
    )
    active_key: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )

    # Requester
    requested_by: Mapped[str] = mapped_column(String(100), index=True)  # User ID
    requested_by_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Submission info
    external_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # Radarr movie / Sonarr series ID
    quality_profile_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    matched_rule_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    status_changed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    items: Mapped[list["RequestItem"]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestItem.season",
        lazy="selectin",
    )
    events: Mapped[list["RequestEvent"]] = relationship(
        back_populates="request", cascade="all, delete-orphan", order_by="RequestEvent.timestamp"
    )

    @property
    def media_type(self) -> MediaType:
        return MediaType.MOVIE if self.request_type == RequestType.MOVIE else MediaType.TV

    @property
    def seasons(self) -> list[int]:
        return sorted({item.season for item in self.items})


class RequestItem(Base):
    """One season's worth of a TV request."""

    __tablename__ = "request_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    request_id: Mapped[str] = mapped_column(ForeignKey("requests.id"), index=True)

    # Denormalised from the parent so the uniqueness key can be built per row
    tmdb_id: Mapped[int] = mapped_column(Integer, index=True)
    season: Mapped[int] = mapped_column(Integer)
    episode_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # Partial season

    active_key: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    request: Mapped["MediaRequest"] = relationship(back_populates="items")


class RequestEvent(Base):
    """
    Individual event in a request's history.
    Each status change or significant event creates a new entry.
    """

    __tablename__ = "request_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    request_id: Mapped[str] = mapped_column(ForeignKey("requests.id"), index=True)

    service: Mapped[str] = mapped_column(String(50))  # e.g., "api", "radarr", "availability_sync"
    event_type: Mapped[str] = mapped_column(String(100))  # e.g., "Created", "Approved"
    from_status: Mapped[Optional[RequestState]] = mapped_column(Enum(RequestState), nullable=True)
    to_status: Mapped[RequestState] = mapped_column(Enum(RequestState))

    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    request: Mapped["MediaRequest"] = relationship(back_populates="events")


class ApprovalRule(Base):
    """
    Admin-defined auto-approval policy.

    conditions is a JSON payload whose shape depends on rule_type; it is
    validated against app.core.approval condition models on write.
    """

    __tablename__ = "approval_rules"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    rule_type: Mapped[RuleType] = mapped_column(Enum(RuleType))
    conditions: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class JellyfinAvailability(Base):
    """
    Cached Jellyfin library presence.

    Filled by the availability sync so availability checks don't need a
    Jellyfin round-trip per item.
    """

    __tablename__ = "jellyfin_availability"

    id: Mapped[int] = mapped_column(primary_key=True)
    tmdb_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    tvdb_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    media_type: Mapped[str] = mapped_column(String(10))  # movie, series, episode
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    season_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    episode_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    jellyfin_item_id: Mapped[str] = mapped_column(String(100), unique=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class NotificationEndpoint(Base):
    """A notification target assigned to a user."""

    __tablename__ = "notification_endpoints"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    kind: Mapped[str] = mapped_column(String(20), default="webhook")
    target: Mapped[str] = mapped_column(String(1000))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
