"""API clients for external services."""

from app.clients.jellyfin import JellyfinClient, jellyfin_client
from app.clients.sonarr import SonarrClient, sonarr_client
from app.clients.radarr import RadarrClient, radarr_client
from app.clients.tmdb import TmdbClient, tmdb_client

__all__ = [
    "JellyfinClient",
    "jellyfin_client",
    "SonarrClient",
    "sonarr_client",
    "RadarrClient",
    "radarr_client",
    "TmdbClient",
    "tmdb_client",
]
