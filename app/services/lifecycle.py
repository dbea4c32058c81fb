"""Request lifecycle manager.

Creates requests and drives them through
pending -> submitted -> available, with denied / failed / removed branches.

Creation runs as a pipeline of phases over one or more drafts:

    dedup -> TMDB metadata -> season selection -> approval
          -> Radarr/Sonarr pre-check -> insert (claims the slot)
          -> submit -> finalize + notify

Phases that touch the database run sequentially on the caller's session.
Phases that call external services run concurrently (bounded by a
semaphore) with a per-item timeout, so bulk and collection requests reuse
the same code as single requests. A single request is just a batch of one.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.clients.tmdb import MediaMetadata, TmdbClient, tmdb_client
from app.config import settings
from app.core.approval import ApprovalContext, ApprovalDecision, ApprovalEngine, approval_engine
from app.core.dedup import DeduplicationGuard, dedup_guard, movie_active_key, season_active_key
from app.core.state_machine import state_machine
from app.errors import (
    ExternalServiceError,
    InvalidTransitionError,
    NotificationsRequiredError,
    RequestEngineError,
    RequestNotFoundError,
    RequestValidationError,
    ServiceRequestError,
    ServiceUnavailableError,
)
from app.models import (
    ConflictReason,
    MediaRequest,
    MediaType,
    OperationOutcome,
    RequestItem,
    RequestState,
    RequestType,
)
from app.services import availability_cache
from app.services.auth import Requester
from app.services.notifications import (
    REQUEST_ALREADY_EXISTS,
    REQUEST_APPROVED,
    REQUEST_AVAILABLE,
    REQUEST_DENIED,
    REQUEST_FAILED,
    REQUEST_PENDING,
    REQUEST_SUBMITTED,
    TMDB_IMAGE_BASE,
    NotificationDispatcher,
    notifier as default_notifier,
    request_payload,
)
from app.services.resolver import (
    MediaIdentityResolver,
    ResolveStatus,
    resolver as default_resolver,
    service_for,
)
from app.services.seasons import season_has_files

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


# ============================================
# Results
# ============================================


@dataclass
class RequestResult:
    """Outcome of one creation attempt."""
    outcome: OperationOutcome
    request: Optional[MediaRequest] = None
    conflict_reason: Optional[ConflictReason] = None
    existing_request_id: Optional[str] = None
    error: Optional[str] = None
    media_type: Optional[MediaType] = None
    tmdb_id: Optional[int] = None
    title: Optional[str] = None
    seasons: list[int] = field(default_factory=list)
    skipped_seasons: list[int] = field(default_factory=list)
    matched_rule_id: Optional[int] = None

    @property
    def status(self) -> str:
        """Wire status: a request state, or the conflict reason."""
        if self.conflict_reason is not None:
            return self.conflict_reason.value
        if self.request is not None:
            return self.request.status.value
        return RequestState.FAILED.value

    @property
    def request_id(self) -> Optional[str]:
        return self.request.id if self.request is not None else None


@dataclass
class BulkItem:
    tmdb_id: int
    media_type: str = "movie"
    seasons: Optional[list[int]] = None


@dataclass
class BulkItemResult:
    tmdb_id: int
    media_type: str
    outcome: OperationOutcome
    status: str
    request_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BulkResult:
    created: int = 0
    skipped: int = 0
    failed: int = 0
    request_ids: list[str] = field(default_factory=list)
    results: list[BulkItemResult] = field(default_factory=list)


@dataclass
class CollectionItemResult:
    tmdb_id: int
    title: str
    status: str  # submitted, pending, already_exists, already_requested, failed
    request_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CollectionResult:
    collection_id: int
    name: str
    results: list[CollectionItemResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)


# ============================================
# Pipeline state
# ============================================


@dataclass
class _Draft:
    """One item moving through the creation pipeline."""
    raw_media_type: str
    tmdb_id: int
    media_type: Optional[MediaType] = None
    seasons: Optional[list[int]] = None
    quality_profile_id: Optional[int] = None
    active_seasons: set[int] = field(default_factory=set)
    skipped_seasons: list[int] = field(default_factory=list)
    metadata: Optional[MediaMetadata] = None
    decision: Optional[ApprovalDecision] = None
    request_id: Optional[str] = None
    request: Optional[MediaRequest] = None
    external_id: Optional[int] = None
    submit_error: Optional[str] = None
    error: Optional[RequestEngineError] = None  # Raised back to single-request callers
    result: Optional[RequestResult] = None

    @property
    def live(self) -> bool:
        return self.result is None

    @property
    def title(self) -> str:
        return self.metadata.title if self.metadata else f"TMDB {self.tmdb_id}"

    @property
    def approved(self) -> bool:
        return bool(self.decision and self.decision.auto_approved)


def _poster_url(poster_path: Optional[str]) -> Optional[str]:
    return f"{TMDB_IMAGE_BASE}{poster_path}" if poster_path else None


def _approval_details(decision: ApprovalDecision) -> str:
    if decision.reason == "admin":
        return "Requested by an admin"
    return f"Auto-approved by rule '{decision.matched_rule_name}'"


class RequestLifecycleManager:
    """
    Creates requests and applies admin / background transitions.

    Usage:
        result = await lifecycle.create_request(db, requester, "movie", 603)
        if result.outcome == OperationOutcome.CONFLICT:
            ...
    """

    def __init__(
        self,
        resolver: Optional[MediaIdentityResolver] = None,
        tmdb: Optional[TmdbClient] = None,
        notifier: Optional[NotificationDispatcher] = None,
        guard: Optional[DeduplicationGuard] = None,
        engine: Optional[ApprovalEngine] = None,
    ):
        self.resolver = resolver or default_resolver
        self.tmdb = tmdb or tmdb_client
        self.notifier = notifier or default_notifier
        self.guard = guard or dedup_guard
        self.engine = engine or approval_engine

    # ------------------------------------------
    # Creation entry points
    # ------------------------------------------

    async def create_request(
        self,
        db: "AsyncSession",
        requester: Requester,
        media_type: Union[MediaType, str],
        tmdb_id: int,
        seasons: Optional[list[int]] = None,
        quality_profile_id: Optional[int] = None,
    ) -> RequestResult:
        """
        Create a movie or TV request.

        Raises:
            RequestValidationError: malformed input or unknown TMDB ID
            NotificationsRequiredError: requester has no notification endpoint

        Returns:
            RequestResult; conflicts and submission failures are outcomes,
            not exceptions.
        """
        draft = self._new_draft(media_type, tmdb_id, seasons, quality_profile_id)
        if draft.error:
            raise draft.error
        await self._check_notifications(db, requester)

        await self._run(db, requester, [draft], timeout=settings.EXTERNAL_TIMEOUT, concurrency=1)
        if draft.error:
            raise draft.error
        return draft.result

    async def create_bulk_requests(
        self,
        db: "AsyncSession",
        requester: Requester,
        items: list[BulkItem],
    ) -> BulkResult:
        """
        Create up to BULK_MAX_ITEMS requests; no item aborts the batch.

        Raises:
            RequestValidationError: empty or oversized batch
            NotificationsRequiredError: requester has no notification endpoint
        """
        if not items:
            raise RequestValidationError("At least one item is required", code="empty_batch")
        if len(items) > settings.BULK_MAX_ITEMS:
            raise RequestValidationError(
                f"At most {settings.BULK_MAX_ITEMS} items per batch", code="batch_too_large"
            )
        await self._check_notifications(db, requester)

        drafts = [self._new_draft(i.media_type, i.tmdb_id, i.seasons, None) for i in items]
        await self._run(
            db, requester, drafts,
            timeout=settings.ITEM_TIMEOUT,
            concurrency=settings.BULK_CONCURRENCY,
        )

        bulk = BulkResult()
        for draft in drafts:
            result = draft.result
            if result.outcome == OperationOutcome.CREATED:
                bulk.created += 1
                bulk.request_ids.append(result.request_id)
            elif result.outcome == OperationOutcome.CONFLICT:
                bulk.skipped += 1
            else:
                bulk.failed += 1
            bulk.results.append(BulkItemResult(
                tmdb_id=draft.tmdb_id,
                media_type=draft.raw_media_type,
                outcome=result.outcome,
                status=result.status,
                request_id=result.request_id,
                error=result.error,
            ))

        logger.info(
            f"Bulk request by {requester.username}: {bulk.created} created, "
            f"{bulk.skipped} skipped, {bulk.failed} failed"
        )
        return bulk

    async def create_collection_request(
        self,
        db: "AsyncSession",
        requester: Requester,
        collection_id: int,
        tmdb_ids: Optional[list[int]] = None,
        force: bool = False,
        quality_profile_id: Optional[int] = None,
    ) -> CollectionResult:
        """
        Request every movie of a TMDB collection (or the selected ones).

        Movies the Jellyfin cache recently saw are reported as already_exists
        without contacting Radarr, unless force is set.
        """
        if isinstance(collection_id, bool) or not isinstance(collection_id, int) or collection_id <= 0:
            raise RequestValidationError("Invalid collection id", code="invalid_tmdb_id")
        await self._check_notifications(db, requester)

        try:
            collection = await asyncio.wait_for(
                self.tmdb.get_collection(collection_id), timeout=settings.EXTERNAL_TIMEOUT
            )
        except (ServiceUnavailableError, ServiceRequestError) as e:
            raise ExternalServiceError(f"TMDB collection lookup failed: {e.message}") from e
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("TMDB collection lookup timed out") from e
        if collection is None:
            raise RequestNotFoundError(f"Collection {collection_id} not found")

        parts = collection.parts
        if tmdb_ids:
            wanted = set(tmdb_ids)
            parts = [p for p in parts if p.tmdb_id in wanted]
        if not parts:
            raise RequestValidationError("No movies selected from the collection", code="empty_batch")
        if len(parts) > settings.BULK_MAX_ITEMS:
            raise RequestValidationError(
                f"At most {settings.BULK_MAX_ITEMS} movies per collection request", code="batch_too_large"
            )

        outcome = CollectionResult(collection_id=collection_id, name=collection.name)
        by_tmdb: dict[int, CollectionItemResult] = {}
        drafts: list[_Draft] = []
        for part in parts:
            if not force and await availability_cache.is_movie_available(
                db, part.tmdb_id, max_age=settings.COLLECTION_AVAILABILITY_MAX_AGE
            ):
                by_tmdb[part.tmdb_id] = CollectionItemResult(
                    tmdb_id=part.tmdb_id, title=part.title, status=ConflictReason.ALREADY_EXISTS.value
                )
                continue
            drafts.append(self._new_draft(MediaType.MOVIE, part.tmdb_id, None, quality_profile_id))

        await self._run(
            db, requester, drafts,
            timeout=settings.ITEM_TIMEOUT,
            concurrency=settings.BULK_CONCURRENCY,
            precheck_all=not force,
        )

        for draft in drafts:
            by_tmdb[draft.tmdb_id] = CollectionItemResult(
                tmdb_id=draft.tmdb_id,
                title=draft.result.title or draft.title,
                status=draft.result.status,
                request_id=draft.result.request_id,
                error=draft.result.error,
            )
        outcome.results = [by_tmdb[p.tmdb_id] for p in parts if p.tmdb_id in by_tmdb]

        logger.info(
            f"Collection request {collection_id} ({collection.name}) by {requester.username}: "
            f"{outcome.count('submitted')} submitted, {outcome.count('pending')} pending, "
            f"{outcome.count('already_exists') + outcome.count('already_requested')} skipped, "
            f"{outcome.count('failed')} failed"
        )
        return outcome

    # ------------------------------------------
    # Pipeline
    # ------------------------------------------

    def _new_draft(
        self,
        media_type: Union[MediaType, str],
        tmdb_id: int,
        seasons: Optional[list[int]],
        quality_profile_id: Optional[int],
    ) -> _Draft:
        raw = media_type.value if isinstance(media_type, MediaType) else str(media_type)
        draft = _Draft(raw_media_type=raw, tmdb_id=tmdb_id, quality_profile_id=quality_profile_id)

        try:
            draft.media_type = MediaType(raw)
        except ValueError:
            self._invalid(draft, f"Unsupported media type: {raw}", "unsupported_media_type")
            return draft

        if isinstance(tmdb_id, bool) or not isinstance(tmdb_id, int) or tmdb_id <= 0:
            self._invalid(draft, f"Invalid TMDB id: {tmdb_id}", "invalid_tmdb_id")
            return draft

        if seasons is not None:
            if draft.media_type == MediaType.MOVIE:
                self._invalid(draft, "Seasons only apply to TV requests", "invalid_season")
                return draft
            if not seasons or any(
                isinstance(s, bool) or not isinstance(s, int) or s < 1 for s in seasons
            ):
                self._invalid(draft, "Seasons must be positive integers", "invalid_season")
                return draft
            draft.seasons = sorted(set(seasons))
        return draft

    def _result(self, draft: _Draft, outcome: OperationOutcome, **kwargs) -> RequestResult:
        draft.result = RequestResult(
            outcome=outcome,
            media_type=draft.media_type,
            tmdb_id=draft.tmdb_id,
            title=draft.title,
            seasons=list(draft.seasons or []),
            skipped_seasons=list(draft.skipped_seasons),
            matched_rule_id=draft.decision.matched_rule_id if draft.decision else None,
            **kwargs,
        )
        return draft.result

    def _invalid(self, draft: _Draft, message: str, code: str) -> None:
        draft.error = RequestValidationError(message, code=code)
        self._result(draft, OperationOutcome.FAILED, error=message)

    def _fail(self, draft: _Draft, message: str) -> None:
        self._result(draft, OperationOutcome.FAILED, error=message)

    def _conflict(self, draft: _Draft, reason: ConflictReason, existing_id: Optional[str] = None) -> None:
        self._result(
            draft, OperationOutcome.CONFLICT, conflict_reason=reason, existing_request_id=existing_id
        )

    async def _check_notifications(self, db: "AsyncSession", requester: Requester) -> None:
        if not settings.REQUIRE_NOTIFICATION_ENDPOINTS:
            return
        if not await self.notifier.has_assigned_endpoints(db, requester.user_id):
            logger.info(f"Blocking request by {requester.username}: no notification endpoints")
            raise NotificationsRequiredError()

    async def _run(
        self,
        db: "AsyncSession",
        requester: Requester,
        drafts: list[_Draft],
        timeout: float,
        concurrency: int,
        precheck_all: bool = False,
    ) -> None:
        await self._dedup(db, drafts)
        await self._gather(
            drafts, self._fetch_metadata, timeout, concurrency,
            on_error=lambda d, reason: self._fail(d, f"TMDB lookup failed: {reason}"),
        )
        await self._select_seasons(db, drafts)
        await self._approve(db, requester, drafts)
        await self._gather(
            [d for d in drafts if precheck_all or d.approved],
            self._precheck, timeout, concurrency,
            on_error=lambda d, reason: logger.warning(
                f"Pre-check for TMDB {d.tmdb_id} failed ({reason}), continuing"
            ),
        )
        await self._insert(db, requester, drafts)

        def submit_failed(d: _Draft, reason: str) -> None:
            d.submit_error = f"Submission failed: {reason}"

        await self._gather(
            [d for d in drafts if d.request_id and d.approved],
            self._submit, timeout, concurrency,
            on_error=submit_failed,
        )
        await self._finalize(db, requester, drafts)

    async def _gather(
        self,
        drafts: list[_Draft],
        step: Callable[[_Draft], Awaitable[None]],
        timeout: float,
        concurrency: int,
        on_error: Callable[[_Draft, str], None],
    ) -> None:
        """
        Run an external step for each live draft with bounded concurrency.

        A timeout or unexpected error in one draft's step is handed to
        on_error for that draft only; sibling drafts keep going.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(draft: _Draft) -> None:
            async with semaphore:
                try:
                    await asyncio.wait_for(step(draft), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"{step.__name__} timed out for TMDB {draft.tmdb_id} after {timeout:g}s")
                    on_error(draft, f"timed out after {timeout:g}s")
                except Exception as e:
                    logger.error(
                        f"{step.__name__} failed for TMDB {draft.tmdb_id}: {type(e).__name__}: {e}",
                        exc_info=True,
                    )
                    on_error(draft, f"unexpected error ({type(e).__name__}: {e})")

        await asyncio.gather(*(run(d) for d in drafts if d.live))

    async def _dedup(self, db: "AsyncSession", drafts: list[_Draft]) -> None:
        for draft in drafts:
            if not draft.live:
                continue
            if draft.media_type == MediaType.MOVIE:
                existing = await self.guard.find_active_request(db, RequestType.MOVIE, draft.tmdb_id)
                if existing:
                    self._conflict(draft, ConflictReason.ALREADY_REQUESTED, existing.id)
                continue

            draft.active_seasons = await self.guard.active_seasons(db, draft.tmdb_id)
            if draft.seasons and set(draft.seasons) <= draft.active_seasons:
                draft.skipped_seasons = list(draft.seasons)
                existing = await self.guard.find_active_request(
                    db, RequestType.EPISODE, draft.tmdb_id, draft.seasons[0]
                )
                self._conflict(draft, ConflictReason.ALREADY_REQUESTED, existing.id if existing else None)

    async def _fetch_metadata(self, draft: _Draft) -> None:
        try:
            metadata = await self.tmdb.get_metadata(draft.media_type.value, draft.tmdb_id)
        except (ServiceUnavailableError, ServiceRequestError) as e:
            self._fail(draft, f"TMDB lookup failed: {e.message}")
            return
        if metadata is None:
            self._invalid(
                draft, f"TMDB has no {draft.media_type.value} with id {draft.tmdb_id}", "invalid_tmdb_id"
            )
            return
        draft.metadata = metadata

    async def _select_seasons(self, db: "AsyncSession", drafts: list[_Draft]) -> None:
        """TV: default to every regular season and drop already-requested ones."""
        for draft in drafts:
            if not draft.live or draft.media_type != MediaType.TV:
                continue
            if not draft.metadata.tvdb_id:
                self._invalid(draft, "TV series requires a TVDB id", "missing_tvdb_id")
                continue

            requested = draft.seasons or draft.metadata.regular_seasons
            if not requested:
                self._invalid(draft, "No regular seasons to request", "invalid_season")
                continue

            draft.skipped_seasons = [s for s in requested if s in draft.active_seasons]
            remaining = [s for s in requested if s not in draft.active_seasons]
            if not remaining:
                draft.seasons = requested
                existing = await self.guard.find_active_request(
                    db, RequestType.EPISODE, draft.tmdb_id, requested[0]
                )
                self._conflict(draft, ConflictReason.ALREADY_REQUESTED, existing.id if existing else None)
                continue
            draft.seasons = remaining

    async def _approve(self, db: "AsyncSession", requester: Requester, drafts: list[_Draft]) -> None:
        approved_count: Optional[int] = None
        for draft in drafts:
            if not draft.live:
                continue
            context = ApprovalContext(
                requester_id=requester.user_id,
                is_admin=requester.is_admin,
                approved_count=approved_count,
                genre_ids=draft.metadata.genre_ids,
                vote_average=draft.metadata.vote_average,
                popularity=draft.metadata.popularity,
                certification=draft.metadata.certification,
            )
            draft.decision = await self.engine.evaluate_request(db, context)
            approved_count = context.approved_count

    async def _precheck(self, draft: _Draft) -> None:
        """Short-circuit media Radarr/Sonarr already has."""
        resolved = await self.resolver.resolve(draft.media_type, draft.tmdb_id, draft.metadata.tvdb_id)
        if resolved.status != ResolveStatus.FOUND:
            return
        if draft.media_type == MediaType.MOVIE:
            self._conflict(draft, ConflictReason.ALREADY_EXISTS)
            return
        stats = resolved.ref.season_statistics
        if all(season_has_files(stats.get(s)) for s in draft.seasons):
            self._conflict(draft, ConflictReason.ALREADY_EXISTS)

    async def _insert(self, db: "AsyncSession", requester: Requester, drafts: list[_Draft]) -> None:
        """Persist pending rows; the unique active keys settle concurrent writers."""
        rolled_back = False
        for draft in drafts:
            if not draft.live:
                continue
            metadata = draft.metadata
            is_movie = draft.media_type == MediaType.MOVIE
            request = MediaRequest(
                id=str(uuid.uuid4()),
                request_type=draft.media_type.request_type,
                tmdb_id=draft.tmdb_id,
                tvdb_id=metadata.tvdb_id,
                title=metadata.title,
                poster_path=metadata.poster_path,
                backdrop_path=metadata.backdrop_path,
                release_year=metadata.release_year,
                status=RequestState.PENDING,
                active_key=movie_active_key(draft.tmdb_id) if is_movie else None,
                requested_by=requester.user_id,
                requested_by_username=requester.username,
                quality_profile_id=draft.quality_profile_id,
                matched_rule_id=draft.decision.matched_rule_id,
                items=[] if is_movie else [
                    RequestItem(
                        tmdb_id=draft.tmdb_id,
                        season=season,
                        active_key=season_active_key(draft.tmdb_id, season),
                    )
                    for season in draft.seasons
                ],
            )
            db.add(request)
            state_machine.add_event(
                request, db, "api", "Created",
                details=f"Requested by {requester.username}"
                + (f" (seasons {', '.join(map(str, draft.seasons))})" if not is_movie else ""),
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                rolled_back = True
                existing_id = await self._find_conflicting(db, draft)
                logger.info(
                    f"Lost race for {draft.media_type.value} TMDB {draft.tmdb_id}; "
                    f"active request {existing_id} holds it"
                )
                self._conflict(draft, ConflictReason.ALREADY_REQUESTED, existing_id)
                continue
            draft.request_id = request.id
            draft.request = request
            logger.info(
                f"Created request {request.id} for {request.title} "
                f"({draft.media_type.value} TMDB {draft.tmdb_id}) by {requester.username}"
            )

        if rolled_back:
            # Rollback expired every instance in the session
            for draft in drafts:
                if draft.live and draft.request_id:
                    draft.request = await db.get(MediaRequest, draft.request_id, populate_existing=True)

    async def _find_conflicting(self, db: "AsyncSession", draft: _Draft) -> Optional[str]:
        if draft.media_type == MediaType.MOVIE:
            existing = await self.guard.find_active_request(db, RequestType.MOVIE, draft.tmdb_id)
            return existing.id if existing else None
        for season in draft.seasons:
            existing = await self.guard.find_active_request(db, RequestType.EPISODE, draft.tmdb_id, season)
            if existing:
                return existing.id
        return None

    async def _submit(self, draft: _Draft) -> None:
        metadata = draft.metadata
        try:
            ensured = await self.resolver.ensure(
                draft.media_type,
                draft.tmdb_id,
                tvdb_id=metadata.tvdb_id,
                title=metadata.title,
                year=metadata.release_year,
                seasons=draft.seasons if draft.media_type == MediaType.TV else None,
                quality_profile_id=draft.quality_profile_id,
                poster_url=_poster_url(metadata.poster_path),
            )
        except (ServiceUnavailableError, ServiceRequestError) as e:
            logger.error(f"Submitting TMDB {draft.tmdb_id} to {e.service} failed: {e.message}")
            draft.submit_error = e.message
            return
        draft.external_id = ensured.ref.external_id

    async def _finalize(self, db: "AsyncSession", requester: Requester, drafts: list[_Draft]) -> None:
        """Apply submission results, commit, then notify."""
        to_notify: list[tuple[str, dict]] = []

        for draft in drafts:
            if not draft.live:
                if draft.result.conflict_reason == ConflictReason.ALREADY_EXISTS and draft.metadata:
                    to_notify.append((REQUEST_ALREADY_EXISTS, {
                        "requestType": draft.media_type.request_type.value,
                        "tmdbId": draft.tmdb_id,
                        "title": draft.metadata.title,
                        "year": draft.metadata.release_year,
                        "imageUrl": _poster_url(draft.metadata.poster_path),
                        "userId": requester.user_id,
                        "username": requester.username,
                    }))
                continue
            if draft.request is None:
                continue

            request = draft.request
            service = service_for(draft.media_type)
            if not draft.approved:
                event = REQUEST_PENDING
                self._result(draft, OperationOutcome.CREATED, request=request)
            elif draft.submit_error:
                event = REQUEST_FAILED
                request.error_message = draft.submit_error
                await state_machine.transition(
                    request, RequestState.FAILED, db, service, "SubmitFailed", details=draft.submit_error
                )
                self._result(draft, OperationOutcome.FAILED, request=request, error=draft.submit_error)
            else:
                event = REQUEST_SUBMITTED
                request.external_id = draft.external_id
                await state_machine.transition(
                    request, RequestState.SUBMITTED, db, service, "AutoApproved",
                    details=_approval_details(draft.decision),
                )
                self._result(draft, OperationOutcome.CREATED, request=request)
            to_notify.append((event, request_payload(request)))

        await db.commit()

        for event, payload in to_notify:
            await self._notify(db, event, requester.user_id, payload)

    # ------------------------------------------
    # Admin / background transitions
    # ------------------------------------------

    async def get_request(self, db: "AsyncSession", request_id: str, with_events: bool = False) -> MediaRequest:
        stmt = select(MediaRequest).where(MediaRequest.id == request_id)
        if with_events:
            stmt = stmt.options(selectinload(MediaRequest.events)).execution_options(populate_existing=True)
        result = await db.execute(stmt)
        request = result.scalar_one_or_none()
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found")
        return request

    async def list_requests(
        self,
        db: "AsyncSession",
        requested_by: Optional[str] = None,
        status: Optional[RequestState] = None,
        media_type: Optional[MediaType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MediaRequest]:
        stmt = select(MediaRequest).order_by(MediaRequest.created_at.desc())
        if requested_by:
            stmt = stmt.where(MediaRequest.requested_by == requested_by)
        if status:
            stmt = stmt.where(MediaRequest.status == status)
        if media_type:
            stmt = stmt.where(MediaRequest.request_type == MediaType(media_type).request_type)
        result = await db.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def check_request(
        self,
        db: "AsyncSession",
        media_type: Union[MediaType, str],
        tmdb_id: int,
        season: Optional[int] = None,
    ) -> Optional[MediaRequest]:
        """Active request covering the media, for "Request" vs "Requested" UI."""
        try:
            media_type = MediaType(media_type)
        except ValueError as e:
            raise RequestValidationError(f"Unsupported media type: {media_type}", code="unsupported_media_type") from e
        return await self.guard.find_active_request(db, media_type.request_type, tmdb_id, season)

    async def approve(self, db: "AsyncSession", request_id: str, admin: Requester) -> MediaRequest:
        """Approve a pending request and submit it."""
        request = await self.get_request(db, request_id)
        if request.status != RequestState.PENDING:
            raise InvalidTransitionError(f"Cannot approve a {request.status.value} request")

        submitted = await self._submit_request(
            db, request, "Approved", f"Approved by {admin.username}"
        )
        await self._notify_request(db, REQUEST_APPROVED if submitted else REQUEST_FAILED, request)
        return request

    async def deny(
        self,
        db: "AsyncSession",
        request_id: str,
        admin: Requester,
        reason: Optional[str] = None,
    ) -> MediaRequest:
        request = await self.get_request(db, request_id)
        if request.status != RequestState.PENDING:
            raise InvalidTransitionError(f"Cannot deny a {request.status.value} request")

        details = f"Denied by {admin.username}" + (f": {reason}" if reason else "")
        await state_machine.transition(request, RequestState.DENIED, db, "api", "Denied", details=details)
        await db.commit()
        await self._notify_request(db, REQUEST_DENIED, request, reason=reason)
        return request

    async def retry(self, db: "AsyncSession", request_id: str, admin: Requester) -> MediaRequest:
        """Resubmit a failed request, reusing its row."""
        request = await self.get_request(db, request_id)
        if request.status != RequestState.FAILED:
            raise InvalidTransitionError(f"Cannot retry a {request.status.value} request")

        await state_machine.transition(
            request, RequestState.PENDING, db, "api", "Retry", details=f"Retried by {admin.username}"
        )
        request.error_message = None
        submitted = await self._submit_request(db, request, "Resubmitted", f"Resubmitted by {admin.username}")
        await self._notify_request(db, REQUEST_SUBMITTED if submitted else REQUEST_FAILED, request)
        return request

    async def remove(self, db: "AsyncSession", request_id: str, admin: Requester) -> MediaRequest:
        """Soft-delete; frees the media for a new request."""
        request = await self.get_request(db, request_id)
        if not state_machine.can_transition(request.status, RequestState.REMOVED):
            raise InvalidTransitionError(f"Cannot remove a {request.status.value} request")

        await state_machine.transition(
            request, RequestState.REMOVED, db, "api", "Removed", details=f"Removed by {admin.username}"
        )
        await db.commit()
        return request

    async def mark_available(
        self,
        db: "AsyncSession",
        request: MediaRequest,
        service: str = "availability_sync",
        details: Optional[str] = None,
    ) -> bool:
        """Move a pending/submitted request to available. Returns False if not allowed."""
        if not state_machine.can_transition(request.status, RequestState.AVAILABLE):
            return False
        await state_machine.transition(
            request, RequestState.AVAILABLE, db, service, "Available", details=details
        )
        request.error_message = None
        await db.commit()
        await self._notify_request(db, REQUEST_AVAILABLE, request)
        return True

    async def _submit_request(
        self,
        db: "AsyncSession",
        request: MediaRequest,
        event_type: str,
        details: str,
    ) -> bool:
        """Submit a persisted pending request; ends in submitted or failed."""
        media_type = request.media_type
        service = service_for(media_type)
        error: Optional[str] = None
        try:
            ensured = await asyncio.wait_for(
                self.resolver.ensure(
                    media_type,
                    request.tmdb_id,
                    tvdb_id=request.tvdb_id,
                    title=request.title,
                    year=request.release_year,
                    seasons=request.seasons or None,
                    quality_profile_id=request.quality_profile_id,
                    poster_url=_poster_url(request.poster_path),
                ),
                timeout=settings.EXTERNAL_TIMEOUT,
            )
        except (ServiceUnavailableError, ServiceRequestError) as e:
            error = e.message
        except asyncio.TimeoutError:
            error = f"Submission timed out after {settings.EXTERNAL_TIMEOUT:g}s"
        except Exception as e:
            logger.error(f"Unexpected error submitting request {request.id}: {type(e).__name__}: {e}", exc_info=True)
            error = f"Submission failed: unexpected error ({type(e).__name__}: {e})"

        if error:
            logger.error(f"Submitting request {request.id} to {service} failed: {error}")
            request.error_message = error
            await state_machine.transition(request, RequestState.FAILED, db, service, "SubmitFailed", details=error)
        else:
            request.external_id = ensured.ref.external_id
            await state_machine.transition(request, RequestState.SUBMITTED, db, service, event_type, details=details)
        await db.commit()
        return error is None

    async def _notify(self, db: "AsyncSession", event: str, user_id: str, payload: dict) -> None:
        """Dispatch a notification; failures are logged, never raised."""
        try:
            await self.notifier.notify(db, event, user_id, payload)
        except Exception as e:
            logger.error(f"Notification {event} for user {user_id} failed: {e}")

    async def _notify_request(self, db: "AsyncSession", event: str, request: MediaRequest, **extra) -> None:
        await self._notify(db, event, request.requested_by, {**request_payload(request), **extra})


# Global instance
lifecycle = RequestLifecycleManager()
