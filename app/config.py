"""Application configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    All settings via environment variables.
    Same image for dev/prod, just change env vars.
    """

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # Database
    DATABASE_URL: str = "sqlite:///config/requests.db"

    # Radarr API (movie submission)
    RADARR_HOST: str = "radarr"
    RADARR_PORT: int = 7878
    RADARR_API_KEY: str = ""
    RADARR_ROOT_FOLDER: str = ""  # Falls back to first root folder Radarr reports
    RADARR_QUALITY_PROFILE_ID: int = 1
    RADARR_MINIMUM_AVAILABILITY: str = "released"

    # Sonarr API (series submission)
    SONARR_HOST: str = "sonarr"
    SONARR_PORT: int = 8989
    SONARR_API_KEY: str = ""
    SONARR_ROOT_FOLDER: str = ""
    SONARR_QUALITY_PROFILE_ID: int = 1
    SONARR_LANGUAGE_PROFILE_ID: int = 1
    SONARR_SERIES_TYPE: str = "standard"
    SONARR_SEASON_FOLDER: bool = True

    # Jellyfin API (auth + availability)
    JELLYFIN_HOST: str = "jellyfin"
    JELLYFIN_PORT: int = 8096
    JELLYFIN_API_KEY: str = ""

    # TMDB metadata
    TMDB_API_KEY: str = ""
    TMDB_BASE_URL: str = "https://api.themoviedb.org/3"
    TMDB_REGION: str = "US"  # Region used to pick the certification

    # Admin users (comma-separated Jellyfin user IDs)
    ADMIN_USER_IDS: str = ""

    # Refuse new requests until the requester has a notification endpoint
    REQUIRE_NOTIFICATION_ENDPOINTS: bool = False

    # Bulk / collection requests
    BULK_MAX_ITEMS: int = 50
    BULK_CONCURRENCY: int = 5
    ITEM_TIMEOUT: float = 5.0  # seconds per bulk item

    # Timeout for single external calls made while creating a request (seconds)
    EXTERNAL_TIMEOUT: float = 15.0

    # Cache TTLs (seconds)
    SERVICE_CACHE_TTL: int = 30
    QUALITY_PROFILE_CACHE_TTL: int = 30

    # How old a cached Jellyfin availability entry may be before a collection
    # request stops trusting it to skip an owned movie (seconds)
    COLLECTION_AVAILABILITY_MAX_AGE: int = 21600

    # Background availability reconciliation
    ENABLE_AVAILABILITY_SYNC: bool = True
    AVAILABILITY_SYNC_INTERVAL: int = 300

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def admin_user_ids_list(self) -> list[str]:
        """Parse comma-separated admin user IDs into list."""
        if not self.ADMIN_USER_IDS:
            return []
        return [x.strip() for x in self.ADMIN_USER_IDS.split(",") if x.strip()]

    @property
    def jellyfin_base_url(self) -> str:
        """Jellyfin API base URL."""
        return f"http://{self.JELLYFIN_HOST}:{self.JELLYFIN_PORT}"

    @property
    def sonarr_base_url(self) -> str:
        """Sonarr API base URL."""
        return f"http://{self.SONARR_HOST}:{self.SONARR_PORT}"

    @property
    def radarr_base_url(self) -> str:
        """Radarr API base URL."""
        return f"http://{self.RADARR_HOST}:{self.RADARR_PORT}"


settings = Settings()
