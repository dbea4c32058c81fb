"""Availability sync tests.

The sync moves pending/submitted requests to AVAILABLE once Jellyfin or the
download manager has the media, and records Jellyfin sightings in the cache.
"""

import pytest

from app.models import RequestState
from app.services import availability_cache
from app.services.availability_sync import AvailabilitySyncService
from tests.mocks import MockJellyfinClient


class FlakyJellyfin(MockJellyfinClient):
    """Jellyfin that errors for one TMDB id."""

    def __init__(self, broken_tmdb_id: int):
        super().__init__()
        self.broken_tmdb_id = broken_tmdb_id

    async def find_item_by_tmdb(self, tmdb_id, item_type="Movie"):
        if tmdb_id == self.broken_tmdb_id:
            raise RuntimeError("Jellyfin returned 500")
        return await super().find_item_by_tmdb(tmdb_id, item_type)


@pytest.fixture
def jellyfin():
    return MockJellyfinClient()


@pytest.fixture
def sync_service(db_session, manager, jellyfin):
    return AvailabilitySyncService(db_session, lifecycle=manager, jellyfin=jellyfin)


class TestMovieAvailability:

    @pytest.mark.asyncio
    async def test_found_in_jellyfin(self, db_session, manager, sync_service, tmdb, jellyfin, admin, notifier):
        tmdb.add_movie(603, "The Matrix")
        request = (await manager.create_request(db_session, admin, "movie", 603)).request
        jellyfin.add_item("jf-603", "The Matrix", "Movie", tmdb_id=603)

        result = await sync_service.sync()

        assert result.checked == 1
        assert result.made_available == 1
        assert result.available_ids == [request.id]
        assert request.status == RequestState.AVAILABLE
        assert await availability_cache.is_movie_available(db_session, 603)
        assert notifier.event_names()[-1] == "request_available"

        events = (await manager.get_request(db_session, request.id, with_events=True)).events
        assert events[-1].service == "jellyfin"

    @pytest.mark.asyncio
    async def test_radarr_file_counts(self, db_session, manager, sync_service, tmdb, admin, radarr):
        tmdb.add_movie(603, "The Matrix")
        request = (await manager.create_request(db_session, admin, "movie", 603)).request
        radarr.movies[603]["hasFile"] = True

        result = await sync_service.sync()

        assert result.made_available == 1
        assert request.status == RequestState.AVAILABLE

    @pytest.mark.asyncio
    async def test_not_yet_available(self, db_session, manager, sync_service, tmdb, admin):
        tmdb.add_movie(603, "The Matrix")
        request = (await manager.create_request(db_session, admin, "movie", 603)).request

        result = await sync_service.sync()

        assert result.checked == 1
        assert result.made_available == 0
        assert request.status == RequestState.SUBMITTED

    @pytest.mark.asyncio
    async def test_denied_and_failed_are_not_checked(self, db_session, manager, sync_service, tmdb, user, admin, radarr):
        tmdb.add_movie(1, "One")
        tmdb.add_movie(2, "Two")
        denied = (await manager.create_request(db_session, user, "movie", 1)).request
        await manager.deny(db_session, denied.id, admin)
        radarr.unreachable = True
        await manager.create_request(db_session, admin, "movie", 2)

        result = await sync_service.sync()

        assert result.checked == 0

    @pytest.mark.asyncio
    async def test_one_error_does_not_stop_the_pass(self, db_session, manager, tmdb, user):
        tmdb.add_movie(1, "Broken")
        tmdb.add_movie(2, "Fine")
        await manager.create_request(db_session, user, "movie", 1)
        fine_id = (await manager.create_request(db_session, user, "movie", 2)).request_id
        jellyfin = FlakyJellyfin(broken_tmdb_id=1)
        jellyfin.add_item("jf-2", "Fine", "Movie", tmdb_id=2)

        result = await AvailabilitySyncService(db_session, lifecycle=manager, jellyfin=jellyfin).sync()

        assert result.checked == 2
        assert result.errors == 1
        assert "Broken" in result.error_details[0]
        assert result.available_ids == [fine_id]


class TestSeriesAvailability:

    @pytest.fixture
    def show(self, tmdb, sonarr):
        sonarr.add_lookup(tvdb_id=121361, tmdb_id=1399, title="Game of Thrones", seasons=[1, 2, 3])
        return tmdb.add_tv(1399, "Game of Thrones", tvdb_id=121361, seasons={1: 10, 2: 10, 3: 10})

    @pytest.mark.asyncio
    async def test_all_requested_seasons_needed(self, db_session, manager, sync_service, show, user, jellyfin):
        request = (await manager.create_request(db_session, user, "tv", 1399, seasons=[1, 2])).request
        jellyfin.add_item("jf-got", "Game of Thrones", "Series", tmdb_id=1399, tvdb_id=121361)
        jellyfin.add_episodes("jf-got", 1, 10)

        first = await sync_service.sync()

        assert first.made_available == 0
        assert request.status == RequestState.PENDING
        assert await availability_cache.has_cached_episode_availability(db_session, 1399, 121361, 1)

        jellyfin.add_episodes("jf-got", 2, 1)
        second = await sync_service.sync()

        assert second.made_available == 1
        assert request.status == RequestState.AVAILABLE

    @pytest.mark.asyncio
    async def test_sonarr_files_count(self, db_session, manager, sync_service, show, admin, sonarr):
        request = (await manager.create_request(db_session, admin, "tv", 1399, seasons=[2])).request
        series = sonarr.added[0]
        for season in series["seasons"]:
            if season["seasonNumber"] == 2:
                season["statistics"] = {"episodeFileCount": 10, "sizeOnDisk": 10240}

        result = await sync_service.sync()

        assert result.made_available == 1
        assert request.status == RequestState.AVAILABLE

    @pytest.mark.asyncio
    async def test_jellyfin_not_configured(self, db_session, manager, show, user, sonarr):
        await manager.create_request(db_session, user, "tv", 1399, seasons=[1])
        sonarr.add_existing(121361, 1399, season_files={1: 10})
        jellyfin = MockJellyfinClient(configured=False)

        result = await AvailabilitySyncService(db_session, lifecycle=manager, jellyfin=jellyfin).sync()

        assert result.made_available == 1
