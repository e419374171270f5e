"""Capability interfaces onto the marketplace backend.

The orchestrator never touches the relational store directly. Searches,
profile mutation and region lookups go through the ``Capabilities`` protocol;
``BackendCapabilities`` implements it against the backend's REST API.
"""

import logging
import time
from typing import Any, Protocol

import aiohttp

from src.assistant.config import BackendConfig
from src.assistant.errors import ToolExecutionError

logger = logging.getLogger(__name__)

DEFAULT_REGIONS = ["London", "Manchester", "Birmingham", "Istanbul", "Ankara"]


class Capabilities(Protocol):
    """Narrow interface the tool dispatcher and prompts depend on."""

    async def search_jobs(self, search: str | None, location: str | None) -> dict[str, Any]: ...

    async def search_providers(
        self, service_slug: str | None, location: str | None
    ) -> dict[str, Any]: ...

    async def save_cv_data(self, user_id: str, cv: dict[str, Any]) -> dict[str, Any]: ...

    async def get_service_locations(self, service_slug: str | None) -> dict[str, Any]: ...

    async def active_regions(self) -> list[str]: ...


def _city(location: str) -> str:
    """Extract the city part of a "City, Area" location string."""
    return location.split(",")[0].strip()


class BackendCapabilities:
    """REST client for the marketplace backend.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, config: BackendConfig) -> None:
        """Initialize backend client.

        Args:
            config: Backend connection settings
        """
        self.config = config
        self._session: aiohttp.ClientSession | None = None
        self._regions: list[str] = []
        self._regions_fetched_at: float | None = None

    async def connect(self) -> None:
        """Create the HTTP client session."""
        if self._session is not None:
            return
        headers = {}
        if self.config.service_token:
            headers["Authorization"] = f"Bearer {self.config.service_token}"
        self._session = aiohttp.ClientSession(
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.config.timeout_s),
        )
        logger.info("Backend client connected", extra={"url": self.config.url})

    async def disconnect(self) -> None:
        """Close the HTTP client session. Safe to call multiple times."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        tool_name: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        if self._session is None:
            await self.connect()
        assert self._session is not None

        clean_params = {k: str(v) for k, v in (params or {}).items() if v is not None}
        try:
            async with self._session.request(
                method, self.config.url.rstrip("/") + path, params=clean_params, json=json_body
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise ToolExecutionError(
                        tool_name, f"backend returned {response.status}: {text[:200]}"
                    )
                return await response.json()
        except aiohttp.ClientError as e:
            raise ToolExecutionError(tool_name, f"backend unreachable: {e}") from e
        except TimeoutError as e:
            raise ToolExecutionError(tool_name, "backend timed out") from e

    async def search_jobs(self, search: str | None, location: str | None) -> dict[str, Any]:
        data = await self._request(
            "search_jobs",
            "GET",
            "/jobs",
            params={"search": search, "location": location, "limit": self.config.result_limit},
        )
        jobs = data.get("data", data.get("jobs", [])) if isinstance(data, dict) else data
        return {
            "count": len(jobs),
            "jobs": [
                {
                    "id": job.get("id"),
                    "title": job.get("title"),
                    "company": job.get("companyName") or job.get("company"),
                    "location": job.get("location"),
                }
                for job in jobs
            ],
        }

    async def search_providers(
        self, service_slug: str | None, location: str | None
    ) -> dict[str, Any]:
        data = await self._request(
            "search_providers",
            "GET",
            "/providers",
            params={
                "serviceSlug": service_slug,
                "location": location,
                "limit": self.config.result_limit,
            },
        )
        providers = data.get("data", data.get("providers", [])) if isinstance(data, dict) else data
        return {
            "count": len(providers),
            "providers": [
                {
                    "id": p.get("id"),
                    "name": p.get("businessName") or p.get("name"),
                    "rating": p.get("rating"),
                    "location": p.get("location"),
                }
                for p in providers
            ],
        }

    async def save_cv_data(self, user_id: str, cv: dict[str, Any]) -> dict[str, Any]:
        data = await self._request(
            "save_cv_data",
            "POST",
            "/candidates/profile/cv",
            json_body={"userId": user_id, **cv},
        )
        return {"success": True, "saved": True, "profileId": data.get("id")}

    async def get_service_locations(self, service_slug: str | None) -> dict[str, Any]:
        data = await self._request(
            "get_service_locations",
            "GET",
            "/providers",
            params={"serviceSlug": service_slug, "verified": "true", "limit": 100},
        )
        providers = data.get("data", data.get("providers", [])) if isinstance(data, dict) else data
        locations: list[str] = []
        for provider in providers:
            location = provider.get("location")
            if location and _city(location) not in locations:
                locations.append(_city(location))
        return {"serviceSlug": service_slug, "locations": locations}

    async def active_regions(self) -> list[str]:
        """Distinct provider cities, cached for ``regions_cache_ttl_s``.

        Falls back to a default list when the backend is unavailable.
        """
        now = time.monotonic()
        if (
            self._regions
            and self._regions_fetched_at is not None
            and now - self._regions_fetched_at < self.config.regions_cache_ttl_s
        ):
            return self._regions

        try:
            result = await self.get_service_locations(None)
        except ToolExecutionError as e:
            logger.warning("Failed to fetch active regions", extra={"error": str(e)})
            return list(DEFAULT_REGIONS)

        self._regions = result["locations"][:10] or list(DEFAULT_REGIONS)
        self._regions_fetched_at = now
        logger.info("Cached active regions", extra={"count": len(self._regions)})
        return self._regions
