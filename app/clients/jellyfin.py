"""Jellyfin API client for user validation and library availability lookups."""

import logging
from typing import Optional
from dataclasses import dataclass

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class JellyfinUser:
    """Jellyfin user info."""
    user_id: str
    username: str
    is_admin: bool


class JellyfinClient:
    """
    Async client for Jellyfin API.

    Used for:
    - Validating user tokens (auth)
    - Checking admin status
    - Looking up library items by TMDB/TVDB ID
    - Listing a series' episodes (season availability)

    Lookups degrade to None / [] on errors; availability is best-effort.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url or settings.jellyfin_base_url
        self.api_key = settings.JELLYFIN_API_KEY if api_key is None else api_key
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
                    "X-Emby-Token": self.api_key,
                    "Content-Type": "application/json",
                }
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def validate_token(self, token: str) -> Optional[JellyfinUser]:
        """
        Validate a Jellyfin token and return user info.

        Args:
            token: Jellyfin access token from client

        Returns:
            JellyfinUser if valid, None if invalid
        """
        try:
            client = await self._get_client()
            # Use the user's token to get their session info
            response = await client.get(
                "/Sessions",
                headers={"X-Emby-Token": token}
            )

            if response.status_code != 200:
                logger.warning(f"Token validation failed: {response.status_code}")
                return None

            sessions = response.json()
            if not sessions:
                logger.warning("No active sessions found for token")
                return None

            # First session should be the current one
            session = sessions[0]
            user_id = session.get("UserId", "")

            return JellyfinUser(
                user_id=user_id,
                username=session.get("UserName", ""),
                is_admin=user_id in settings.admin_user_ids_list,
            )

        except httpx.RequestError as e:
            logger.error(f"Request error validating token: {e}")
            return None
        except ValueError as e:
            logger.error(f"Invalid session payload validating token: {e}")
            return None

    async def health_check(self) -> bool:
        """Check if Jellyfin is reachable."""
        try:
            client = await self._get_client()
            response = await client.get("/System/Info/Public")
            return response.status_code == 200
        except httpx.RequestError as e:
            logger.error(f"Jellyfin health check failed: {e}")
            return False

    async def find_item_by_provider(
        self,
        provider: str,
        provider_id: int,
        item_type: str,
    ) -> Optional[dict]:
        """
        Find a single PLAYABLE Jellyfin item by provider ID.

        Jellyfin can hold metadata-only items that carry provider IDs but no
        video files; those are filtered out.

        Args:
            provider: "Tmdb" or "Tvdb"
            provider_id: The external ID to search for
            item_type: Item type ("Movie" or "Series")

        Returns:
            Jellyfin item dict if found AND playable, None otherwise
        """
        try:
            client = await self._get_client()
            response = await client.get(
                "/Items",
                params={
                    "Recursive": "true",
                    "IncludeItemTypes": item_type,
                    "AnyProviderIdEquals": f"{provider}.{provider_id}",
                    "Fields": "ProviderIds,MediaSources,Path",
                }
            )

            if response.status_code != 200:
                logger.warning(
                    f"Failed to search Jellyfin by {provider} {provider_id}: {response.status_code}"
                )
                return None

            items = response.json().get("Items", [])
        except (httpx.RequestError, ValueError) as e:
            logger.warning(f"Error searching Jellyfin by {provider} {provider_id}: {e}")
            return None

        # AnyProviderIdEquals returns unrelated items too; verify exact match
        item = next(
            (i for i in items if i.get("ProviderIds", {}).get(provider) == str(provider_id)),
            None,
        )
        if item is None:
            return None

        # Series are containers; only movies need a media source to count
        if item_type == "Movie" and not (item.get("MediaSources") or item.get("Path")):
            logger.debug(
                f"Jellyfin item {item.get('Name')} has {provider} {provider_id} but is not playable"
            )
            return None
        return item

    async def find_item_by_tmdb(self, tmdb_id: int, item_type: str = "Movie") -> Optional[dict]:
        return await self.find_item_by_provider("Tmdb", tmdb_id, item_type)

    async def find_item_by_tvdb(self, tvdb_id: int, item_type: str = "Series") -> Optional[dict]:
        return await self.find_item_by_provider("Tvdb", tvdb_id, item_type)

    async def get_series_episodes(self, series_id: str) -> list[dict]:
        """
        List episodes of a Jellyfin series that have media.

        Returns:
            Episode dicts (ParentIndexNumber = season, IndexNumber = episode)
        """
        try:
            client = await self._get_client()
            response = await client.get(
                f"/Shows/{series_id}/Episodes",
                params={"Fields": "ProviderIds,Path,MediaSources"},
            )
            if response.status_code != 200:
                logger.warning(f"Failed to list episodes for series {series_id}: {response.status_code}")
                return []
            episodes = response.json().get("Items", [])
        except (httpx.RequestError, ValueError) as e:
            logger.warning(f"Error listing Jellyfin episodes for {series_id}: {e}")
            return []

        return [
            ep for ep in episodes
            if ep.get("LocationType") != "Virtual" and (ep.get("Path") or ep.get("MediaSources"))
        ]


# Singleton instance
jellyfin_client = JellyfinClient()
