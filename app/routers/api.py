"""REST API endpoints for media requests.

Provides:
- Health check
- Create requests (single, bulk, collection)
- List/check/get requests, TV requests grouped by show
- Approve/deny/retry/remove requests (admin only)
- Season overview for TV shows
- Quality profiles of Radarr/Sonarr
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients import radarr_client, sonarr_client, jellyfin_client
from app.database import get_db
from app.errors import RequestEngineError, ServiceRequestError, ServiceUnavailableError
from app.models import ConflictReason, MediaRequest, MediaType, OperationOutcome, RequestState
from app.schemas import (
    BulkRequestPayload,
    BulkResultResponse,
    CollectionItemResponse,
    CollectionRequestPayload,
    CollectionResultResponse,
    CreateRequestPayload,
    CreateRequestResponse,
    DenyRequestPayload,
    HealthResponse,
    MediaRequestDetailResponse,
    MediaRequestResponse,
    QualityProfileListResponse,
    QualityProfileResponse,
    RequestCheckResponse,
    RequestListResponse,
    SeasonOverviewResponse,
    SeasonStatusResponse,
    SeriesRequestSummaryResponse,
)
from app.services.auth import Requester, require_admin_user, require_authenticated_user
from app.services.lifecycle import BulkItem, RequestResult, lifecycle
from app.services import availability_cache
from app.services.seasons import aggregate_series_requests, get_season_overview

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])

# Version for health check
VERSION = "0.1.0"


def engine_error(e: RequestEngineError) -> HTTPException:
    """Translate a domain error into an HTTP error."""
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def _create_response(result: RequestResult) -> CreateRequestResponse:
    return CreateRequestResponse(
        outcome=result.outcome,
        status=result.status,
        request=MediaRequestResponse.model_validate(result.request) if result.request else None,
        media_type=result.media_type,
        tmdb_id=result.tmdb_id,
        title=result.title,
        seasons=result.seasons,
        skipped_seasons=result.skipped_seasons,
        matched_rule_id=result.matched_rule_id,
        error=result.error,
    )


def _conflict_message(result: RequestResult) -> str:
    if result.conflict_reason == ConflictReason.ALREADY_REQUESTED:
        return f"{result.title} has already been requested"
    service = "Radarr" if result.media_type == MediaType.MOVIE else "Sonarr"
    return f"{result.title} is already in {service}"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Used by Docker healthcheck and monitoring systems.
    Returns database status and reachability of configured services.
    """
    try:
        await db.execute(select(func.count()).select_from(MediaRequest))
        db_status = "connected"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        db_status = f"error: {str(e)}"

    services = {}
    for name, client in (
        ("radarr", radarr_client),
        ("sonarr", sonarr_client),
        ("jellyfin", jellyfin_client),
    ):
        if client.is_configured:
            services[name] = await client.health_check()

    return HealthResponse(
        status="healthy" if db_status == "connected" else "degraded",
        version=VERSION,
        database=db_status,
        services=services,
    )


# ============================================
# Request Creation
# ============================================


@router.post("/requests", response_model=CreateRequestResponse, status_code=201)
async def create_request(
    payload: CreateRequestPayload,
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Request a movie or TV show.

    Returns 201 with the new request (pending or submitted).
    Returns 409 when an active request already covers the media
    (already_requested) or the download manager already has it
    (already_exists). Returns 502 when no request could be created because
    an external service failed; a submission failure after the request was
    stored is returned as 201 with status "failed".
    """
    try:
        result = await lifecycle.create_request(
            db,
            user,
            payload.media_type,
            payload.tmdb_id,
            seasons=payload.seasons,
            quality_profile_id=payload.quality_profile_id,
        )
    except RequestEngineError as e:
        raise engine_error(e)

    if result.outcome == OperationOutcome.CONFLICT:
        raise HTTPException(
            status_code=409,
            detail={
                "error": result.conflict_reason.value,
                "message": _conflict_message(result),
                "requestId": result.existing_request_id,
            },
        )
    if result.outcome == OperationOutcome.FAILED and result.request is None:
        raise HTTPException(
            status_code=502,
            detail={"error": "service_unavailable", "message": result.error},
        )

    return _create_response(result)


@router.post("/requests/bulk", response_model=BulkResultResponse)
async def create_bulk_requests(
    payload: BulkRequestPayload,
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Request several titles at once.

    Each item gets its own outcome; one failing item never aborts the batch.
    """
    items = [BulkItem(tmdb_id=i.tmdb_id, media_type=i.media_type, seasons=i.seasons) for i in payload.items]
    try:
        result = await lifecycle.create_bulk_requests(db, user, items)
    except RequestEngineError as e:
        raise engine_error(e)
    return BulkResultResponse.model_validate(result)


@router.post("/requests/collection", response_model=CollectionResultResponse)
async def create_collection_request(
    payload: CollectionRequestPayload,
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Request every movie of a TMDB collection (or the selected ones).

    Movies already in the library are skipped unless force is set.
    """
    try:
        result = await lifecycle.create_collection_request(
            db,
            user,
            payload.collection_id,
            tmdb_ids=payload.tmdb_ids,
            force=payload.force,
            quality_profile_id=payload.quality_profile_id,
        )
    except RequestEngineError as e:
        raise engine_error(e)

    return CollectionResultResponse(
        collection_id=result.collection_id,
        name=result.name,
        submitted=result.count("submitted"),
        pending=result.count("pending"),
        skipped=result.count("already_exists") + result.count("already_requested"),
        failed=result.count("failed"),
        results=[CollectionItemResponse.model_validate(r) for r in result.results],
    )


# ============================================
# Request Queries
# ============================================


@router.get("/requests", response_model=RequestListResponse)
async def list_requests(
    status: Optional[RequestState] = None,
    media_type: Optional[MediaType] = None,
    mine: bool = False,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """
    List requests, newest first.

    Non-admins only see their own requests.
    """
    requested_by = user.user_id if (mine or not user.is_admin) else None
    requests = await lifecycle.list_requests(
        db, requested_by=requested_by, status=status, media_type=media_type, limit=limit, offset=offset
    )
    return RequestListResponse(
        requests=[MediaRequestResponse.model_validate(r) for r in requests],
        limit=limit,
        offset=offset,
    )


@router.get("/requests/check", response_model=RequestCheckResponse)
async def check_request(
    media_type: str,
    tmdb_id: int,
    season: Optional[int] = None,
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """Whether an active request already covers the media (or season)."""
    try:
        request = await lifecycle.check_request(db, media_type, tmdb_id, season)
    except RequestEngineError as e:
        raise engine_error(e)
    return RequestCheckResponse(
        requested=request is not None,
        request=MediaRequestResponse.model_validate(request) if request else None,
    )


@router.get("/requests/series", response_model=list[SeriesRequestSummaryResponse])
async def list_series_requests(
    status: Optional[RequestState] = None,
    limit: int = Query(100, ge=1, le=500),
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """
    TV requests grouped by show.

    A show requested season by season appears once, with the union of
    the requested seasons. Non-admins only see their own requests.
    """
    requests = await lifecycle.list_requests(
        db,
        requested_by=None if user.is_admin else user.user_id,
        status=status,
        media_type=MediaType.TV,
        limit=limit,
    )
    return [SeriesRequestSummaryResponse.model_validate(s) for s in aggregate_series_requests(requests)]


@router.get("/requests/{request_id}", response_model=MediaRequestDetailResponse)
async def get_request(
    request_id: str,
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Get a single request with its event history.

    Returns 404 if the request does not exist or belongs to someone else.
    """
    try:
        request = await lifecycle.get_request(db, request_id, with_events=True)
    except RequestEngineError as e:
        raise engine_error(e)

    if not user.is_admin and request.requested_by != user.user_id:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Request not found"})

    return MediaRequestDetailResponse.model_validate(request)


# ============================================
# Admin Transitions
# ============================================


@router.post("/requests/{request_id}/approve", response_model=MediaRequestResponse)
async def approve_request(
    request_id: str,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Approve a pending request and submit it to Radarr/Sonarr.

    The request ends up submitted, or failed with error_message set.
    """
    try:
        request = await lifecycle.approve(db, request_id, user)
    except RequestEngineError as e:
        raise engine_error(e)
    logger.info(f"Request {request_id} ({request.title}) approved by {user.username}: {request.status.value}")
    return MediaRequestResponse.model_validate(request)


@router.post("/requests/{request_id}/deny", response_model=MediaRequestResponse)
async def deny_request(
    request_id: str,
    payload: Optional[DenyRequestPayload] = None,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """Deny a pending request."""
    try:
        request = await lifecycle.deny(db, request_id, user, reason=payload.reason if payload else None)
    except RequestEngineError as e:
        raise engine_error(e)
    logger.info(f"Request {request_id} ({request.title}) denied by {user.username}")
    return MediaRequestResponse.model_validate(request)


@router.post("/requests/{request_id}/retry", response_model=MediaRequestResponse)
async def retry_request(
    request_id: str,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Retry a failed request.

    Reuses the same request row: failed -> pending -> submitted/failed.
    """
    try:
        request = await lifecycle.retry(db, request_id, user)
    except RequestEngineError as e:
        raise engine_error(e)
    logger.info(f"Request {request_id} ({request.title}) retried by {user.username}: {request.status.value}")
    return MediaRequestResponse.model_validate(request)


@router.post("/requests/{request_id}/remove", response_model=MediaRequestResponse)
async def remove_request(
    request_id: str,
    user: Requester = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Soft-delete a request.

    The media can be requested again afterwards.
    """
    try:
        request = await lifecycle.remove(db, request_id, user)
    except RequestEngineError as e:
        raise engine_error(e)
    logger.info(f"Request {request_id} ({request.title}) removed by {user.username}")
    return MediaRequestResponse.model_validate(request)


# ============================================
# TV Seasons / Quality Profiles
# ============================================


@router.get("/tv/{tmdb_id}/seasons", response_model=SeasonOverviewResponse)
async def get_tv_seasons(
    tmdb_id: int,
    user: Requester = Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Per-season requested/available flags for a show.

    Read path: if TMDB is unreachable the overview is built from requests
    and the availability cache alone, with error set.
    """
    metadata = None
    error = None
    try:
        metadata = await lifecycle.tmdb.get_metadata("tv", tmdb_id)
    except (ServiceUnavailableError, ServiceRequestError) as e:
        logger.warning(f"TMDB lookup for TV {tmdb_id} failed: {e.message}")
        error = e.message
    else:
        if metadata is None:
            raise HTTPException(
                status_code=404,
                detail={"error": "not_found", "message": f"TMDB has no TV show with id {tmdb_id}"},
            )

    season_numbers = [s.season_number for s in metadata.seasons] if metadata else []
    episode_counts = {s.season_number: s.episode_count for s in metadata.seasons} if metadata else {}
    tvdb_id = metadata.tvdb_id if metadata else None

    overview = await get_season_overview(
        db,
        tmdb_id,
        season_numbers,
        tvdb_id=tvdb_id,
        episode_counts=episode_counts,
        resolver=lifecycle.resolver,
    )
    return SeasonOverviewResponse(
        tmdb_id=tmdb_id,
        tvdb_id=tvdb_id,
        title=metadata.title if metadata else None,
        seasons=[SeasonStatusResponse(**s) for s in overview],
        jellyfin_item_id=await availability_cache.get_cached_series_item_id(db, tmdb_id, tvdb_id),
        error=error,
    )


@router.get("/services/{service}/quality-profiles", response_model=QualityProfileListResponse)
async def list_quality_profiles(
    service: str,
    user: Requester = Depends(require_authenticated_user),
):
    """
    Quality profiles of Radarr or Sonarr.

    Never fails: an unreachable service yields an empty list with error set.
    """
    profiles = await lifecycle.resolver.list_quality_profiles(service)
    return QualityProfileListResponse(
        service=service,
        profiles=[QualityProfileResponse(**p) for p in profiles.profiles],
        error=profiles.error,
    )
