"""Sonarr API v3 client for series lookup and submission."""

import logging
from typing import Any, Optional

import httpx

from app.config import settings
from app.errors import ServiceRequestError, ServiceUnavailableError
from app.clients.radarr import extract_error_message, read_json

logger = logging.getLogger(__name__)

SERVICE = "sonarr"


class SonarrClient:
    """
    Async client for Sonarr API v3.

    Used for:
    - Looking up series by TVDB / TMDB ID
    - Adding series and monitoring requested seasons
    - Listing quality profiles / root folders

    Same error contract as RadarrClient: ServiceUnavailableError for
    unreachable, ServiceRequestError for rejected calls, None for not found.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url or settings.sonarr_base_url
        self.api_key = settings.SONARR_API_KEY if api_key is None else api_key
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=30.0,
                headers={
                    "X-Api-Key": self.api_key,
                    "Content-Type": "application/json",
                }
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            client = await self._get_client()
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Sonarr timeout on {method} {path}: {e}")
            raise ServiceUnavailableError(SERVICE, "Request timed out") from e
        except httpx.RequestError as e:
            logger.warning(f"Sonarr request error on {method} {path}: {e}")
            raise ServiceUnavailableError(SERVICE, f"Request error: {e}") from e

        if response.status_code >= 500:
            message = extract_error_message(response)
            logger.error(f"Sonarr {method} {path} failed with {response.status_code}: {message}")
            raise ServiceUnavailableError(SERVICE, message)
        if response.status_code >= 400 and response.status_code != 404:
            message = extract_error_message(response)
            logger.warning(f"Sonarr rejected {method} {path} ({response.status_code}): {message}")
            raise ServiceRequestError(SERVICE, message, response.status_code)
        return response

    async def _first_series(self, params: dict) -> Optional[dict]:
        response = await self._request("GET", "/api/v3/series", params=params)
        if response.status_code == 404:
            return None
        series_list = read_json(response, SERVICE)
        if isinstance(series_list, list) and series_list:
            return series_list[0]
        return None

    async def get_series_by_tvdb(self, tvdb_id: int) -> Optional[dict]:
        """Lookup a series already in Sonarr by TVDB ID."""
        return await self._first_series({"tvdbId": tvdb_id})

    async def get_series_by_tmdb(self, tmdb_id: int) -> Optional[dict]:
        """Lookup a series already in Sonarr by TMDB ID (Sonarr v4)."""
        series = await self._first_series({"tmdbId": tmdb_id})
        # Older Sonarr ignores the tmdbId filter and returns everything
        if series and series.get("tmdbId") not in (None, tmdb_id):
            return None
        return series

    async def lookup_series(self, tvdb_id: int) -> Optional[dict]:
        """
        Lookup series metadata via Sonarr (for adding it).

        Returns:
            First lookup result, None if Sonarr found nothing
        """
        response = await self._request(
            "GET", "/api/v3/series/lookup", params={"term": f"tvdb:{tvdb_id}"}
        )
        if response.status_code == 404:
            return None
        results = read_json(response, SERVICE)
        return results[0] if isinstance(results, list) and results else None

    async def list_quality_profiles(self) -> list[dict]:
        response = await self._request("GET", "/api/v3/qualityprofile")
        profiles = read_json(response, SERVICE) if response.status_code == 200 else []
        return profiles if isinstance(profiles, list) else []

    async def get_root_folders(self) -> list[dict]:
        response = await self._request("GET", "/api/v3/rootfolder")
        roots = read_json(response, SERVICE) if response.status_code == 200 else []
        return roots if isinstance(roots, list) else []

    async def add_series(
        self,
        lookup: dict,
        quality_profile_id: Optional[int] = None,
    ) -> dict:
        """
        Add a series from a lookup result, unmonitored.

        Seasons are monitored individually afterwards so only requested
        seasons get searched.
        """
        roots = await self.get_root_folders()
        if not roots:
            raise ServiceRequestError(SERVICE, "No Sonarr root folders are configured")
        desired = settings.SONARR_ROOT_FOLDER or None
        root = next((r for r in roots if desired and r.get("path") == desired), roots[0])

        payload = {
            **lookup,
            "rootFolderPath": root["path"],
            "qualityProfileId": quality_profile_id or lookup.get("qualityProfileId") or settings.SONARR_QUALITY_PROFILE_ID,
            "languageProfileId": lookup.get("languageProfileId") or settings.SONARR_LANGUAGE_PROFILE_ID,
            "seriesType": settings.SONARR_SERIES_TYPE,
            "seasonFolder": settings.SONARR_SEASON_FOLDER,
            "monitored": False,
            "addOptions": {
                "searchForMissingEpisodes": False,
                "searchForCutoffUnmetEpisodes": False,
            },
        }
        if isinstance(payload.get("seasons"), list):
            payload["seasons"] = [{**s, "monitored": False} for s in payload["seasons"]]

        response = await self._request("POST", "/api/v3/series", json=payload)
        if response.status_code == 404:
            raise ServiceRequestError(SERVICE, "Series endpoint not found", 404)
        series = read_json(response, SERVICE)
        logger.info(f"Added series to Sonarr: {series.get('title')} -> id {series.get('id')}")
        return series

    async def get_episodes(self, series_id: int, season_number: Optional[int] = None) -> list[dict]:
        params: dict = {"seriesId": series_id}
        if season_number is not None:
            params["seasonNumber"] = season_number
        response = await self._request("GET", "/api/v3/episode", params=params)
        episodes = read_json(response, SERVICE) if response.status_code == 200 else []
        return episodes if isinstance(episodes, list) else []

    async def set_episodes_monitored(self, episode_ids: list[int], monitored: bool = True) -> None:
        if not episode_ids:
            return
        await self._request(
            "PUT", "/api/v3/episode/monitor",
            json={"episodeIds": episode_ids, "monitored": monitored},
        )

    async def episode_search(self, episode_ids: list[int]) -> None:
        if not episode_ids:
            return
        await self._request(
            "POST", "/api/v3/command",
            json={"name": "EpisodeSearch", "episodeIds": episode_ids},
        )
        logger.info(f"Triggered Sonarr search for {len(episode_ids)} episodes")

    async def health_check(self) -> bool:
        """Check if Sonarr is reachable."""
        try:
            response = await self._request("GET", "/api/v3/system/status")
            return response.status_code == 200
        except (ServiceUnavailableError, ServiceRequestError) as e:
            logger.error(f"Sonarr health check failed: {e}")
            return False


# Singleton instance
sonarr_client = SonarrClient()
