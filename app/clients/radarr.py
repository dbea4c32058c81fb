"""Radarr API v3 client for movie lookup and submission."""

import logging
import re
from typing import Any, Optional

import httpx

from app.config import settings
from app.errors import ServiceRequestError, ServiceUnavailableError

logger = logging.getLogger(__name__)

SERVICE = "radarr"


def extract_error_message(response: httpx.Response) -> str:
    """
    Pull a readable message out of a *arr error response.

    Radarr/Sonarr return either {"message": ...} or a list of validation
    failures [{"errorMessage": ...}, ...].
    """
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] if response.text else f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    if isinstance(data, list):
        messages = [str(e.get("errorMessage")) for e in data if isinstance(e, dict) and e.get("errorMessage")]
        if messages:
            return "; ".join(messages)
    return f"HTTP {response.status_code}"


def read_json(response: httpx.Response, service: str) -> Any:
    """
    Decode a successful response body.

    A 200 that is not JSON (a reverse-proxy login page, a wrong base URL)
    means the service is not really reachable at the configured address.
    """
    try:
        return response.json()
    except ValueError as e:
        snippet = response.text[:80].strip() if response.text else "empty body"
        logger.error(f"{service} returned non-JSON (HTTP {response.status_code}): {snippet}")
        raise ServiceUnavailableError(service, f"Invalid JSON response (HTTP {response.status_code})") from e


def slugify_title(title: str, tmdb_id: int) -> str:
    """Radarr wants a titleSlug on add; mirror its own format."""
    base = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    base = re.sub(r"-{2,}", "-", base)
    return f"{base or 'movie'}-{tmdb_id}"


class RadarrClient:
    """
    Async client for Radarr API v3.

    Used for:
    - Looking up movies by TMDB ID
    - Adding movies (with search)
    - Listing quality profiles / root folders

    Methods raise ServiceUnavailableError when Radarr can't be reached and
    ServiceRequestError when it rejects the call. A 404 on lookup is "not found",
    returned as None.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url or settings.radarr_base_url
        self.api_key = settings.RADARR_API_KEY if api_key is None else api_key
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
        """Send a request, mapping transport failures and error statuses to typed errors."""
        try:
            client = await self._get_client()
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Radarr timeout on {method} {path}: {e}")
            raise ServiceUnavailableError(SERVICE, "Request timed out") from e
        except httpx.RequestError as e:
            logger.warning(f"Radarr request error on {method} {path}: {e}")
            raise ServiceUnavailableError(SERVICE, f"Request error: {e}") from e

        if response.status_code >= 500:
            message = extract_error_message(response)
            logger.error(f"Radarr {method} {path} failed with {response.status_code}: {message}")
            raise ServiceUnavailableError(SERVICE, message)
        if response.status_code >= 400 and response.status_code != 404:
            message = extract_error_message(response)
            logger.warning(f"Radarr rejected {method} {path} ({response.status_code}): {message}")
            raise ServiceRequestError(SERVICE, message, response.status_code)
        return response

    async def get_movie_by_tmdb(self, tmdb_id: int) -> Optional[dict]:
        """
        Lookup a movie already in Radarr by TMDB ID.

        Returns:
            Movie data dict if Radarr has it, None otherwise
        """
        response = await self._request("GET", "/api/v3/movie", params={"tmdbId": tmdb_id})
        if response.status_code == 404:
            return None
        movies = read_json(response, SERVICE)
        if isinstance(movies, list) and movies:
            return movies[0]
        return None

    async def list_quality_profiles(self) -> list[dict]:
        """Fetch configured quality profiles."""
        response = await self._request("GET", "/api/v3/qualityprofile")
        profiles = read_json(response, SERVICE) if response.status_code == 200 else []
        return profiles if isinstance(profiles, list) else []

    async def get_root_folders(self) -> list[dict]:
        response = await self._request("GET", "/api/v3/rootfolder")
        roots = read_json(response, SERVICE) if response.status_code == 200 else []
        return roots if isinstance(roots, list) else []

    async def _resolve_root_folder(self, desired: Optional[str]) -> str:
        roots = await self.get_root_folders()
        if not roots:
            raise ServiceRequestError(SERVICE, "No Radarr root folders are configured")
        match = next((r for r in roots if desired and r.get("path") == desired), None)
        return (match or roots[0])["path"]

    async def add_movie(
        self,
        tmdb_id: int,
        title: str,
        year: Optional[int] = None,
        quality_profile_id: Optional[int] = None,
        poster_url: Optional[str] = None,
    ) -> dict:
        """
        Add a movie to Radarr, monitored, and start a search.

        Returns:
            The created Radarr movie (contains "id")
        """
        root_folder = await self._resolve_root_folder(settings.RADARR_ROOT_FOLDER or None)
        payload = {
            "title": title,
            "tmdbId": tmdb_id,
            "year": year,
            "titleSlug": slugify_title(title, tmdb_id),
            "images": [{"coverType": "poster", "url": poster_url}] if poster_url else [],
            "rootFolderPath": root_folder,
            "qualityProfileId": quality_profile_id or settings.RADARR_QUALITY_PROFILE_ID,
            "monitored": True,
            "minimumAvailability": settings.RADARR_MINIMUM_AVAILABILITY,
            "addOptions": {"searchForMovie": True},
        }
        response = await self._request("POST", "/api/v3/movie", json=payload)
        if response.status_code == 404:
            raise ServiceRequestError(SERVICE, "Movie endpoint not found", 404)
        movie = read_json(response, SERVICE)
        logger.info(f"Added movie to Radarr: {title} (TMDB {tmdb_id}) -> id {movie.get('id')}")
        return movie

    async def health_check(self) -> bool:
        """Check if Radarr is reachable."""
        try:
            response = await self._request("GET", "/api/v3/system/status")
            return response.status_code == 200
        except (ServiceUnavailableError, ServiceRequestError) as e:
            logger.error(f"Radarr health check failed: {e}")
            return False


# Singleton instance
radarr_client = RadarrClient()
