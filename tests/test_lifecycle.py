"""Request lifecycle tests for movie requests.

Covers creation outcomes (pending, submitted, failed, conflicts), the admin
transitions (approve, deny, retry, remove), availability and notifications.
"""

import pytest
from sqlalchemy import func, select

from app.config import settings
from app.core.approval import create_rule
from app.errors import (
    InvalidTransitionError,
    NotificationsRequiredError,
    RequestNotFoundError,
    RequestValidationError,
    ServiceRequestError,
)
from app.models import (
    ConflictReason,
    MediaRequest,
    MediaType,
    NotificationEndpoint,
    OperationOutcome,
    RequestState,
    RuleType,
)
from app.services.notifications import NotificationDispatcher


async def count_requests(db) -> int:
    result = await db.execute(select(func.count()).select_from(MediaRequest))
    return result.scalar_one()


@pytest.fixture
def matrix(tmdb):
    return tmdb.add_movie(603, "The Matrix", year=1999, genre_ids=[28, 878], vote_average=8.2)


class TestCreateMovieRequest:

    @pytest.mark.asyncio
    async def test_no_matching_rule_stays_pending(self, db_session, manager, matrix, user, radarr, notifier):
        result = await manager.create_request(db_session, user, "movie", 603)

        assert result.outcome == OperationOutcome.CREATED
        assert result.status == "pending"
        assert result.request.title == "The Matrix"
        assert result.request.release_year == 1999
        assert result.request.requested_by == "user-1"
        assert result.request.active_key == "movie:603"
        assert radarr.added == []
        assert notifier.event_names() == ["request_pending"]

    @pytest.mark.asyncio
    async def test_admin_request_is_submitted(self, db_session, manager, matrix, admin, radarr, notifier):
        result = await manager.create_request(db_session, admin, "movie", 603, quality_profile_id=4)

        assert result.outcome == OperationOutcome.CREATED
        assert result.status == "submitted"
        assert result.matched_rule_id is None
        assert result.request.external_id == radarr.added[0]["id"]
        assert radarr.added[0]["qualityProfileId"] == 4
        assert notifier.event_names() == ["request_submitted"]

    @pytest.mark.asyncio
    async def test_matching_rule_auto_approves(self, db_session, manager, matrix, user, radarr):
        rule = await create_rule(db_session, "Action", RuleType.GENRE, {"allowedGenres": [28]}, priority=5)

        result = await manager.create_request(db_session, user, MediaType.MOVIE, 603)

        assert result.status == "submitted"
        assert result.matched_rule_id == rule.id
        assert result.request.matched_rule_id == rule.id
        assert len(radarr.added) == 1

    @pytest.mark.asyncio
    async def test_creation_events_recorded(self, db_session, manager, matrix, admin):
        result = await manager.create_request(db_session, admin, "movie", 603)

        request = await manager.get_request(db_session, result.request_id, with_events=True)
        event_types = {e.event_type for e in request.events}

        assert {"Created", "AutoApproved"} <= event_types

    @pytest.mark.asyncio
    async def test_submission_failure_keeps_row(self, db_session, manager, matrix, admin, radarr, notifier):
        radarr.add_error = ServiceRequestError("radarr", "Root folder does not exist", 400)

        result = await manager.create_request(db_session, admin, "movie", 603)

        assert result.outcome == OperationOutcome.FAILED
        assert result.request.status == RequestState.FAILED
        assert "Root folder" in result.request.error_message
        assert result.error == result.request.error_message
        assert notifier.event_names() == ["request_failed"]

    @pytest.mark.asyncio
    async def test_unreachable_radarr_fails_submission(self, db_session, manager, matrix, admin, radarr):
        radarr.unreachable = True

        result = await manager.create_request(db_session, admin, "movie", 603)

        assert result.outcome == OperationOutcome.FAILED
        assert result.request.status == RequestState.FAILED

    @pytest.mark.asyncio
    async def test_failed_request_blocks_duplicates(self, db_session, manager, matrix, admin, user, radarr):
        radarr.add_error = ServiceRequestError("radarr", "Root folder does not exist", 400)
        failed = await manager.create_request(db_session, admin, "movie", 603)

        again = await manager.create_request(db_session, user, "movie", 603)

        assert again.outcome == OperationOutcome.CONFLICT
        assert again.status == "already_requested"
        assert again.existing_request_id == failed.request_id

    @pytest.mark.asyncio
    async def test_already_in_radarr_short_circuits(self, db_session, manager, matrix, admin, radarr, notifier):
        radarr.add_existing(603, "The Matrix", has_file=True)

        result = await manager.create_request(db_session, admin, "movie", 603)

        assert result.outcome == OperationOutcome.CONFLICT
        assert result.conflict_reason == ConflictReason.ALREADY_EXISTS
        assert result.request is None
        assert await count_requests(db_session) == 0
        assert notifier.event_names() == ["request_already_exists"]

    @pytest.mark.asyncio
    async def test_tmdb_unreachable_creates_nothing(self, db_session, manager, matrix, user, tmdb):
        tmdb.unreachable = True

        result = await manager.create_request(db_session, user, "movie", 603)

        assert result.outcome == OperationOutcome.FAILED
        assert result.request is None
        assert "TMDB" in result.error
        assert await count_requests(db_session) == 0

    @pytest.mark.asyncio
    async def test_unknown_tmdb_id_rejected(self, db_session, manager, user):
        with pytest.raises(RequestValidationError) as exc:
            await manager.create_request(db_session, user, "movie", 999999)

        assert exc.value.code == "invalid_tmdb_id"
        assert await count_requests(db_session) == 0


class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("media_type,tmdb_id,seasons,code", [
        ("music", 603, None, "unsupported_media_type"),
        ("movie", 0, None, "invalid_tmdb_id"),
        ("movie", -5, None, "invalid_tmdb_id"),
        ("movie", 603, [1], "invalid_season"),
        ("tv", 1399, [], "invalid_season"),
        ("tv", 1399, [0, 1], "invalid_season"),
    ])
    async def test_rejected_before_side_effects(
        self, db_session, manager, matrix, user, tmdb, media_type, tmdb_id, seasons, code
    ):
        with pytest.raises(RequestValidationError) as exc:
            await manager.create_request(db_session, user, media_type, tmdb_id, seasons=seasons)

        assert exc.value.code == code
        assert tmdb.calls == []
        assert await count_requests(db_session) == 0


class TestNotificationRequirement:

    @pytest.mark.asyncio
    async def test_blocks_without_endpoint(self, db_session, manager, matrix, user, monkeypatch):
        monkeypatch.setattr(settings, "REQUIRE_NOTIFICATION_ENDPOINTS", True)

        with pytest.raises(NotificationsRequiredError) as exc:
            await manager.create_request(db_session, user, "movie", 603)

        assert exc.value.code == "notifications_required"
        assert await count_requests(db_session) == 0

    @pytest.mark.asyncio
    async def test_allows_with_endpoint(self, db_session, manager, matrix, user, notifier, monkeypatch):
        monkeypatch.setattr(settings, "REQUIRE_NOTIFICATION_ENDPOINTS", True)
        notifier.users_with_endpoints.add(user.user_id)

        result = await manager.create_request(db_session, user, "movie", 603)

        assert result.outcome == OperationOutcome.CREATED

    @pytest.mark.asyncio
    async def test_real_dispatcher_counts_enabled_endpoints(self, db_session):
        db_session.add(NotificationEndpoint(user_id="user-1", target="http://hooks.local/a", enabled=False))
        await db_session.commit()
        dispatcher = NotificationDispatcher()

        assert not await dispatcher.has_assigned_endpoints(db_session, "user-1")

        db_session.add(NotificationEndpoint(user_id="user-1", target="http://hooks.local/b"))
        await db_session.commit()

        assert await dispatcher.has_assigned_endpoints(db_session, "user-1")

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_request(self, db_session, manager, matrix, admin, notifier):
        notifier.fail = True

        result = await manager.create_request(db_session, admin, "movie", 603)

        assert result.outcome == OperationOutcome.CREATED
        assert result.request.status == RequestState.SUBMITTED


class TestAdminTransitions:

    @pytest.mark.asyncio
    async def test_approve_submits(self, db_session, manager, matrix, user, admin, radarr, notifier):
        pending = (await manager.create_request(db_session, user, "movie", 603)).request

        request = await manager.approve(db_session, pending.id, admin)

        assert request.status == RequestState.SUBMITTED
        assert request.external_id == radarr.added[0]["id"]
        assert notifier.event_names() == ["request_pending", "request_approved"]
        assert notifier.sent[-1][1] == "user-1"

    @pytest.mark.asyncio
    async def test_approve_failure_marks_failed(self, db_session, manager, matrix, user, admin, radarr, notifier):
        pending = (await manager.create_request(db_session, user, "movie", 603)).request
        radarr.unreachable = True

        request = await manager.approve(db_session, pending.id, admin)

        assert request.status == RequestState.FAILED
        assert request.error_message
        assert notifier.event_names()[-1] == "request_failed"

    @pytest.mark.asyncio
    async def test_approve_unexpected_error_marks_failed(self, db_session, manager, matrix, user, admin, radarr):
        pending = (await manager.create_request(db_session, user, "movie", 603)).request
        radarr.add_error = KeyError("id")

        request = await manager.approve(db_session, pending.id, admin)

        assert request.status == RequestState.FAILED
        assert "KeyError" in request.error_message

    @pytest.mark.asyncio
    async def test_approve_only_pending(self, db_session, manager, matrix, admin):
        submitted = (await manager.create_request(db_session, admin, "movie", 603)).request

        with pytest.raises(InvalidTransitionError):
            await manager.approve(db_session, submitted.id, admin)

    @pytest.mark.asyncio
    async def test_deny_frees_slot_and_notifies_reason(self, db_session, manager, matrix, user, admin, notifier):
        pending = (await manager.create_request(db_session, user, "movie", 603)).request

        request = await manager.deny(db_session, pending.id, admin, reason="Not in this library")

        assert request.status == RequestState.DENIED
        assert request.active_key is None
        event, user_id, payload = notifier.sent[-1]
        assert event == "request_denied"
        assert payload["reason"] == "Not in this library"

        again = await manager.create_request(db_session, user, "movie", 603)
        assert again.outcome == OperationOutcome.CREATED
        assert again.request_id != pending.id

    @pytest.mark.asyncio
    async def test_denied_request_cannot_be_approved(self, db_session, manager, matrix, user, admin):
        pending = (await manager.create_request(db_session, user, "movie", 603)).request
        await manager.deny(db_session, pending.id, admin)

        with pytest.raises(InvalidTransitionError):
            await manager.approve(db_session, pending.id, admin)
        with pytest.raises(InvalidTransitionError):
            await manager.retry(db_session, pending.id, admin)

    @pytest.mark.asyncio
    async def test_retry_reuses_row(self, db_session, manager, matrix, admin, radarr, notifier):
        radarr.add_error = ServiceRequestError("radarr", "Root folder does not exist", 400)
        failed = (await manager.create_request(db_session, admin, "movie", 603)).request
        radarr.add_error = None

        request = await manager.retry(db_session, failed.id, admin)

        assert request.id == failed.id
        assert request.status == RequestState.SUBMITTED
        assert request.error_message is None
        assert await count_requests(db_session) == 1
        assert notifier.event_names()[-1] == "request_submitted"

        request = await manager.get_request(db_session, failed.id, with_events=True)
        assert "Retry" in [e.event_type for e in request.events]

    @pytest.mark.asyncio
    async def test_retry_only_failed(self, db_session, manager, matrix, user, admin):
        pending = (await manager.create_request(db_session, user, "movie", 603)).request

        with pytest.raises(InvalidTransitionError):
            await manager.retry(db_session, pending.id, admin)

    @pytest.mark.asyncio
    async def test_remove_is_terminal(self, db_session, manager, matrix, admin):
        submitted = (await manager.create_request(db_session, admin, "movie", 603)).request

        request = await manager.remove(db_session, submitted.id, admin)

        assert request.status == RequestState.REMOVED
        assert request.active_key is None
        with pytest.raises(InvalidTransitionError):
            await manager.remove(db_session, submitted.id, admin)

    @pytest.mark.asyncio
    async def test_unknown_request(self, db_session, manager, admin):
        with pytest.raises(RequestNotFoundError):
            await manager.approve(db_session, "does-not-exist", admin)


class TestMarkAvailable:

    @pytest.mark.asyncio
    async def test_submitted_becomes_available(self, db_session, manager, matrix, admin, notifier):
        request = (await manager.create_request(db_session, admin, "movie", 603)).request

        assert await manager.mark_available(db_session, request, service="radarr", details="File imported")

        assert request.status == RequestState.AVAILABLE
        assert request.active_key == "movie:603"
        assert notifier.event_names()[-1] == "request_available"

    @pytest.mark.asyncio
    async def test_pending_can_become_available(self, db_session, manager, matrix, user):
        request = (await manager.create_request(db_session, user, "movie", 603)).request

        assert await manager.mark_available(db_session, request)
        assert request.status == RequestState.AVAILABLE

    @pytest.mark.asyncio
    async def test_removed_is_not_revived(self, db_session, manager, matrix, admin, notifier):
        request = (await manager.create_request(db_session, admin, "movie", 603)).request
        await manager.remove(db_session, request.id, admin)
        sent_before = len(notifier.sent)

        assert not await manager.mark_available(db_session, request)
        assert request.status == RequestState.REMOVED
        assert len(notifier.sent) == sent_before


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_and_check(self, db_session, manager, tmdb, user, other_user, admin):
        tmdb.add_movie(1, "One")
        tmdb.add_movie(2, "Two")
        tmdb.add_tv(1399, "Game of Thrones", tvdb_id=121361, seasons={1: 10, 2: 10})
        await manager.create_request(db_session, user, "movie", 1)
        await manager.create_request(db_session, other_user, "movie", 2)
        await manager.create_request(db_session, user, "tv", 1399, seasons=[2])

        mine = await manager.list_requests(db_session, requested_by="user-1")
        movies = await manager.list_requests(db_session, media_type=MediaType.MOVIE)
        pending = await manager.list_requests(db_session, status=RequestState.PENDING, limit=2)

        assert {r.tmdb_id for r in mine} == {1, 1399}
        assert {r.tmdb_id for r in movies} == {1, 2}
        assert len(pending) == 2

        assert (await manager.check_request(db_session, "movie", 2)) is not None
        assert (await manager.check_request(db_session, "tv", 1399, season=2)) is not None
        assert (await manager.check_request(db_session, "tv", 1399, season=1)) is None
        with pytest.raises(RequestValidationError):
            await manager.check_request(db_session, "music", 1)
