"""Mock clients for testing."""

from .jellyfin import MockJellyfinClient
from .notifier import MockNotifier
from .radarr import MockRadarrClient
from .sonarr import MockSonarrClient
from .tmdb import MockTmdbClient

__all__ = [
    "MockJellyfinClient",
    "MockNotifier",
    "MockRadarrClient",
    "MockSonarrClient",
    "MockTmdbClient",
]
