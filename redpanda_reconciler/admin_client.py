"""
Redpanda admin API client.

Only the cluster health overview is needed: it lists every broker the
cluster still considers a member, which gates readiness while dead brokers
are being decommissioned.
"""

from typing import Any, Dict, Set

import httpx
import structlog

from .config import settings
from .errors import AdminAPIError

logger = structlog.get_logger(__name__)

HEALTH_OVERVIEW_PATH = "/v1/cluster/health_overview"


class AdminClient:
    """Query a Redpanda cluster's admin API."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str) -> Any:
        """Issue a GET request and return the JSON body."""
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()

    async def get_health_overview(self) -> Dict[str, Any]:
        """GET /v1/cluster/health_overview"""
        try:
            health = await self._get(HEALTH_OVERVIEW_PATH)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Failed to get cluster health overview",
                url=self.base_url,
                error=str(exc),
            )
            raise AdminAPIError(f"health overview from {self.base_url}: {exc}") from exc
        if not isinstance(health, dict):
            raise AdminAPIError(
                f"health overview from {self.base_url}: expected an object, "
                f"got {type(health).__name__}"
            )
        return health

    async def live_members(self) -> Set[int]:
        """IDs of every broker the cluster still counts as a member."""
        health = await self.get_health_overview()
        return set(health.get("all_nodes") or [])


class AdminClientFactory:
    """Builds an AdminClient for a cluster from its namespace and name."""

    def __init__(
        self,
        url_template: str = settings.admin_api_url_template,
        timeout: float = settings.admin_api_timeout_seconds,
    ):
        self.url_template = url_template
        self.timeout = timeout

    def for_cluster(self, rp: Dict[str, Any]) -> AdminClient:
        meta = rp.get("metadata") or {}
        url = self.url_template.format(
            name=meta.get("name", ""), namespace=meta.get("namespace", "")
        )
        return AdminClient(url, timeout=self.timeout)
