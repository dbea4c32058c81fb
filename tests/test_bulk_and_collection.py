"""Bulk and collection request tests."""

import json
from datetime import datetime, timedelta

import httpx
import pytest

from app.clients.radarr import RadarrClient
from app.config import settings
from app.errors import (
    ExternalServiceError,
    NotificationsRequiredError,
    RequestNotFoundError,
    RequestValidationError,
)
from app.models import MediaRequest, OperationOutcome, RequestState
from app.services import availability_cache
from app.services.lifecycle import BulkItem, RequestLifecycleManager
from app.services.resolver import MediaIdentityResolver
from tests.mocks import MockRadarrClient


class ExplodingRadarr(MockRadarrClient):
    """Radarr mock whose add blows up with a non-service error for some movies."""

    def __init__(self, exploding: set[int]):
        super().__init__()
        self.exploding = exploding

    async def add_movie(self, tmdb_id, *args, **kwargs):
        if tmdb_id in self.exploding:
            raise KeyError("id")
        return await super().add_movie(tmdb_id, *args, **kwargs)


def radarr_behind_proxy(html_for: set[int]) -> RadarrClient:
    """
    Real RadarrClient on a mock transport.

    Adding any movie in html_for answers 200 with an HTML page instead of JSON.
    """
    next_id = iter(range(100, 200))

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path == "/api/v3/movie":
            return httpx.Response(200, json=[])
        if request.method == "GET" and path == "/api/v3/rootfolder":
            return httpx.Response(200, json=[{"path": "/movies"}])
        if request.method == "POST" and path == "/api/v3/movie":
            payload = json.loads(request.content)
            if payload["tmdbId"] in html_for:
                return httpx.Response(200, text="<html>proxy login</html>")
            return httpx.Response(201, json={"id": next(next_id), "tmdbId": payload["tmdbId"], "hasFile": False})
        return httpx.Response(404)

    client = RadarrClient(base_url="http://radarr.test", api_key="test-key")
    client._client = httpx.AsyncClient(base_url="http://radarr.test", transport=httpx.MockTransport(handler))
    return client


@pytest.fixture
def movies(tmdb):
    for tmdb_id in (1, 2, 3):
        tmdb.add_movie(tmdb_id, f"Movie {tmdb_id}")


@pytest.fixture
def matrix_collection(tmdb):
    return tmdb.add_collection(2344, "The Matrix Collection", [
        (603, "The Matrix"),
        (604, "The Matrix Reloaded"),
        (605, "The Matrix Revolutions"),
    ])


class TestBulkRequests:

    @pytest.mark.asyncio
    async def test_partial_failure_does_not_abort_batch(self, db_session, manager, movies, admin, radarr):
        radarr.failing_tmdb_ids = {2}

        bulk = await manager.create_bulk_requests(
            db_session, admin, [BulkItem(1), BulkItem(2), BulkItem(3)]
        )

        assert bulk.created == 2
        assert bulk.failed == 1
        assert bulk.skipped == 0
        assert len(bulk.request_ids) == 2
        assert [r.status for r in bulk.results] == ["submitted", "failed", "submitted"]

        failed = bulk.results[1]
        row = await db_session.get(MediaRequest, failed.request_id)
        assert row.status == RequestState.FAILED
        assert row.error_message == failed.error

    @pytest.mark.asyncio
    async def test_non_json_success_response_fails_only_that_item(
        self, db_session, movies, tmdb, sonarr, notifier, clock, admin
    ):
        radarr = radarr_behind_proxy(html_for={2})
        resolver = MediaIdentityResolver(radarr=radarr, sonarr=sonarr, clock=clock)
        manager = RequestLifecycleManager(resolver=resolver, tmdb=tmdb, notifier=notifier)

        bulk = await manager.create_bulk_requests(
            db_session, admin, [BulkItem(1), BulkItem(2), BulkItem(3)]
        )
        await radarr.close()

        assert [r.status for r in bulk.results] == ["submitted", "failed", "submitted"]
        assert "Invalid JSON" in bulk.results[1].error

        rows = {r.tmdb_id: await db_session.get(MediaRequest, r.request_id) for r in bulk.results}
        assert rows[1].status == RequestState.SUBMITTED
        assert rows[1].external_id is not None
        assert rows[2].status == RequestState.FAILED
        assert rows[2].error_message == bulk.results[1].error
        assert rows[3].status == RequestState.SUBMITTED
        assert notifier.event_names().count("request_submitted") == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_only_that_item(
        self, db_session, movies, tmdb, sonarr, notifier, clock, admin
    ):
        resolver = MediaIdentityResolver(radarr=ExplodingRadarr({2}), sonarr=sonarr, clock=clock)
        manager = RequestLifecycleManager(resolver=resolver, tmdb=tmdb, notifier=notifier)

        bulk = await manager.create_bulk_requests(
            db_session, admin, [BulkItem(1), BulkItem(2), BulkItem(3)]
        )

        assert bulk.created == 2
        assert bulk.failed == 1
        broken = bulk.results[1]
        assert broken.status == "failed"
        assert "KeyError" in broken.error
        row = await db_session.get(MediaRequest, broken.request_id)
        assert row.status == RequestState.FAILED
        assert row.active_key == "movie:2"

    @pytest.mark.asyncio
    async def test_unexpected_error_on_single_request(self, db_session, movies, tmdb, sonarr, notifier, clock, admin):
        resolver = MediaIdentityResolver(radarr=ExplodingRadarr({1}), sonarr=sonarr, clock=clock)
        manager = RequestLifecycleManager(resolver=resolver, tmdb=tmdb, notifier=notifier)

        result = await manager.create_request(db_session, admin, "movie", 1)

        assert result.outcome == OperationOutcome.FAILED
        assert result.request.status == RequestState.FAILED
        assert "KeyError" in result.request.error_message

    @pytest.mark.asyncio
    async def test_mixed_batch(self, db_session, manager, movies, tmdb, user):
        tmdb.add_tv(1399, "Game of Thrones", tvdb_id=121361, seasons={1: 10, 2: 10})
        await manager.create_request(db_session, user, "movie", 3)

        bulk = await manager.create_bulk_requests(db_session, user, [
            BulkItem(1),
            BulkItem(1399, media_type="tv", seasons=[2]),
            BulkItem(3),
            BulkItem(0),
        ])

        assert bulk.created == 2
        assert bulk.skipped == 1
        assert bulk.failed == 1
        assert [r.outcome for r in bulk.results] == [
            OperationOutcome.CREATED,
            OperationOutcome.CREATED,
            OperationOutcome.CONFLICT,
            OperationOutcome.FAILED,
        ]
        assert bulk.results[2].status == "already_requested"
        assert bulk.results[1].media_type == "tv"

    @pytest.mark.asyncio
    async def test_duplicate_items_in_one_batch(self, db_session, manager, movies, user):
        bulk = await manager.create_bulk_requests(db_session, user, [BulkItem(1), BulkItem(1)])

        assert bulk.created == 1
        assert bulk.skipped == 1

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, db_session, manager, user):
        with pytest.raises(RequestValidationError) as exc:
            await manager.create_bulk_requests(db_session, user, [])

        assert exc.value.code == "empty_batch"

    @pytest.mark.asyncio
    async def test_oversized_batch_rejected(self, db_session, manager, movies, user, tmdb, monkeypatch):
        monkeypatch.setattr(settings, "BULK_MAX_ITEMS", 2)

        with pytest.raises(RequestValidationError) as exc:
            await manager.create_bulk_requests(db_session, user, [BulkItem(1), BulkItem(2), BulkItem(3)])

        assert exc.value.code == "batch_too_large"
        assert tmdb.calls == []

    @pytest.mark.asyncio
    async def test_slow_item_times_out_alone(self, db_session, manager, movies, user, tmdb, monkeypatch):
        monkeypatch.setattr(settings, "ITEM_TIMEOUT", 0.05)
        tmdb.delays[2] = 1.0

        bulk = await manager.create_bulk_requests(
            db_session, user, [BulkItem(1), BulkItem(2), BulkItem(3)]
        )

        assert bulk.created == 2
        assert bulk.failed == 1
        slow = bulk.results[1]
        assert slow.outcome == OperationOutcome.FAILED
        assert slow.request_id is None
        assert "timed out" in slow.error

    @pytest.mark.asyncio
    async def test_notifications_required_blocks_whole_batch(
        self, db_session, manager, movies, user, tmdb, monkeypatch
    ):
        monkeypatch.setattr(settings, "REQUIRE_NOTIFICATION_ENDPOINTS", True)

        with pytest.raises(NotificationsRequiredError):
            await manager.create_bulk_requests(db_session, user, [BulkItem(1)])

        assert tmdb.calls == []


class TestCollectionRequests:

    @pytest.mark.asyncio
    async def test_requests_every_part(self, db_session, manager, matrix_collection, user):
        outcome = await manager.create_collection_request(db_session, user, 2344)

        assert outcome.name == "The Matrix Collection"
        assert [r.tmdb_id for r in outcome.results] == [603, 604, 605]
        assert outcome.count("pending") == 3

    @pytest.mark.asyncio
    async def test_selected_parts_only(self, db_session, manager, matrix_collection, admin, radarr):
        outcome = await manager.create_collection_request(db_session, admin, 2344, tmdb_ids=[604])

        assert [r.tmdb_id for r in outcome.results] == [604]
        assert outcome.count("submitted") == 1
        assert [m["tmdbId"] for m in radarr.added] == [604]

    @pytest.mark.asyncio
    async def test_recently_seen_in_jellyfin_is_skipped(self, db_session, manager, matrix_collection, user, radarr):
        await availability_cache.record_movie(db_session, {"Id": "jf-603", "Name": "The Matrix"}, tmdb_id=603)
        await db_session.commit()

        outcome = await manager.create_collection_request(db_session, user, 2344)

        statuses = {r.tmdb_id: r.status for r in outcome.results}
        assert statuses == {603: "already_exists", 604: "pending", 605: "pending"}
        assert radarr.lookup_calls == 2

    @pytest.mark.asyncio
    async def test_stale_jellyfin_entry_is_not_trusted(self, db_session, manager, matrix_collection, user):
        row = await availability_cache.record_movie(db_session, {"Id": "jf-603", "Name": "The Matrix"}, tmdb_id=603)
        row.last_seen_at = datetime.utcnow() - timedelta(seconds=settings.COLLECTION_AVAILABILITY_MAX_AGE + 60)
        await db_session.commit()

        outcome = await manager.create_collection_request(db_session, user, 2344)

        assert outcome.count("pending") == 3

    @pytest.mark.asyncio
    async def test_force_ignores_cache(self, db_session, manager, matrix_collection, user):
        await availability_cache.record_movie(db_session, {"Id": "jf-603", "Name": "The Matrix"}, tmdb_id=603)
        await db_session.commit()

        outcome = await manager.create_collection_request(db_session, user, 2344, force=True)

        assert outcome.count("pending") == 3

    @pytest.mark.asyncio
    async def test_parts_in_radarr_skipped_even_without_approval(
        self, db_session, manager, matrix_collection, user, radarr
    ):
        radarr.add_existing(605, "The Matrix Revolutions", has_file=True)

        outcome = await manager.create_collection_request(db_session, user, 2344)

        statuses = {r.tmdb_id: r.status for r in outcome.results}
        assert statuses[605] == "already_exists"
        assert outcome.count("pending") == 2

    @pytest.mark.asyncio
    async def test_already_requested_part(self, db_session, manager, matrix_collection, user, other_user):
        first = await manager.create_request(db_session, user, "movie", 604)

        outcome = await manager.create_collection_request(db_session, other_user, 2344)

        part = next(r for r in outcome.results if r.tmdb_id == 604)
        assert part.status == "already_requested"
        assert part.request_id is None
        assert first.request.status == RequestState.PENDING

    @pytest.mark.asyncio
    async def test_unknown_collection(self, db_session, manager, user):
        with pytest.raises(RequestNotFoundError):
            await manager.create_collection_request(db_session, user, 999)

    @pytest.mark.asyncio
    async def test_invalid_collection_id(self, db_session, manager, user):
        with pytest.raises(RequestValidationError):
            await manager.create_collection_request(db_session, user, 0)

    @pytest.mark.asyncio
    async def test_tmdb_down_is_external_error(self, db_session, manager, matrix_collection, user, tmdb):
        tmdb.unreachable = True

        with pytest.raises(ExternalServiceError) as exc:
            await manager.create_collection_request(db_session, user, 2344)

        assert exc.value.status_code == 502

    @pytest.mark.asyncio
    async def test_selection_outside_collection_rejected(self, db_session, manager, matrix_collection, user):
        with pytest.raises(RequestValidationError) as exc:
            await manager.create_collection_request(db_session, user, 2344, tmdb_ids=[1])

        assert exc.value.code == "empty_batch"
