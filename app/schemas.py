"""Pydantic schemas for API requests and responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.models import MediaType, OperationOutcome, RequestState, RuleType


# ============================================
# Request Payloads
# ============================================


class CreateRequestPayload(BaseModel):
    """Payload for creating a single movie or TV request."""

    media_type: str
    tmdb_id: int
    seasons: Optional[list[int]] = None  # TV only; omitted means every regular season
    quality_profile_id: Optional[int] = None


class BulkItemPayload(BaseModel):
    tmdb_id: int
    media_type: str = "movie"
    seasons: Optional[list[int]] = None


class BulkRequestPayload(BaseModel):
    """Payload for requesting several titles at once."""

    items: list[BulkItemPayload]


class CollectionRequestPayload(BaseModel):
    """Payload for requesting a TMDB collection."""

    collection_id: int
    tmdb_ids: Optional[list[int]] = None  # Subset of the collection; all parts when omitted
    force: bool = False
    quality_profile_id: Optional[int] = None


class DenyRequestPayload(BaseModel):
    reason: Optional[str] = None


class ApprovalRuleCreate(BaseModel):
    """Payload for creating an approval rule. Field limits are checked by the engine."""

    name: str
    description: Optional[str] = None
    enabled: bool = True
    priority: int = 0
    rule_type: RuleType
    conditions: dict[str, Any] = Field(default_factory=dict)


class ApprovalRuleUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    name: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None
    rule_type: Optional[RuleType] = None
    conditions: Optional[dict[str, Any]] = None


# ============================================
# API Response Schemas
# ============================================


class RequestEventResponse(BaseModel):
    """Single event in a request's history."""

    id: int
    service: str
    event_type: str
    from_status: Optional[RequestState] = None
    to_status: RequestState
    details: Optional[str] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class MediaRequestResponse(BaseModel):
    """Single media request for API response."""

    id: str
    media_type: MediaType
    tmdb_id: int
    tvdb_id: Optional[int] = None
    title: str
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    release_year: Optional[int] = None
    status: RequestState
    seasons: list[int] = []

    # Requester
    requested_by: str
    requested_by_username: Optional[str] = None

    # Submission
    external_id: Optional[int] = None
    quality_profile_id: Optional[int] = None
    matched_rule_id: Optional[int] = None
    error_message: Optional[str] = None

    # Timestamps
    created_at: datetime
    updated_at: datetime
    status_changed_at: datetime

    class Config:
        from_attributes = True


class MediaRequestDetailResponse(MediaRequestResponse):
    """Media request with its full event history."""

    events: list[RequestEventResponse] = []


class RequestListResponse(BaseModel):
    requests: list[MediaRequestResponse]
    limit: int
    offset: int


class RequestCheckResponse(BaseModel):
    """Whether an active request already covers the media."""

    requested: bool
    request: Optional[MediaRequestResponse] = None


class CreateRequestResponse(BaseModel):
    """Result of a single creation call."""

    outcome: OperationOutcome
    status: str  # Request state, or the conflict reason
    request: Optional[MediaRequestResponse] = None
    media_type: Optional[MediaType] = None
    tmdb_id: Optional[int] = None
    title: Optional[str] = None
    seasons: list[int] = []
    skipped_seasons: list[int] = []  # Seasons dropped because another request covers them
    matched_rule_id: Optional[int] = None
    error: Optional[str] = None


class BulkItemResultResponse(BaseModel):
    tmdb_id: int
    media_type: str
    outcome: OperationOutcome
    status: str
    request_id: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class BulkResultResponse(BaseModel):
    """Per-item outcomes of a bulk request."""

    created: int
    skipped: int
    failed: int
    request_ids: list[str] = []
    results: list[BulkItemResultResponse] = []

    class Config:
        from_attributes = True


class CollectionItemResponse(BaseModel):
    tmdb_id: int
    title: str
    status: str  # submitted, pending, already_exists, already_requested, failed
    request_id: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class CollectionResultResponse(BaseModel):
    """Per-movie outcomes of a collection request."""

    collection_id: int
    name: str
    submitted: int = 0
    pending: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[CollectionItemResponse] = []


class SeasonStatusResponse(BaseModel):
    season_number: int
    episode_count: Optional[int] = None
    requested: bool
    request_status: Optional[RequestState] = None
    request_ids: list[str] = []
    available: bool
    in_jellyfin: bool = False


class SeasonOverviewResponse(BaseModel):
    """Per-season requested/available view of a show."""

    tmdb_id: int
    tvdb_id: Optional[int] = None
    title: Optional[str] = None
    seasons: list[SeasonStatusResponse] = []
    jellyfin_item_id: Optional[str] = None
    error: Optional[str] = None  # Set when TMDB could not be reached


class SeriesRequestSummaryResponse(BaseModel):
    """Every episode request of one show merged together."""

    tmdb_id: int
    title: str
    request_ids: list[str] = []
    seasons: list[int] = []
    status: Optional[RequestState] = None  # Status of the newest request
    requested_by: list[str] = []
    latest_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QualityProfileResponse(BaseModel):
    id: int
    name: str


class QualityProfileListResponse(BaseModel):
    """Quality profiles of a download manager; empty with an error when unreachable."""

    service: str
    profiles: list[QualityProfileResponse] = []
    error: Optional[str] = None


class ApprovalRuleResponse(BaseModel):
    """Approval rule for API response."""

    id: int
    name: str
    description: Optional[str] = None
    enabled: bool
    priority: int
    rule_type: RuleType
    conditions: dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    services: dict[str, bool] = {}  # service name -> reachable
