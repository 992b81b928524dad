"""
Metric Catalog Cache — per-account TTL cache of the Klaviyo metric catalog.

One instance lives on app.state for the process lifetime. Every read checks
the entry age against the TTL; an expired or missing entry is refetched
before the caller proceeds. Concurrent refreshes for the same key are
allowed and the last one to finish wins.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from app.klaviyo_client import KlaviyoClient, UpstreamError, create_klaviyo_client

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_KEY = "__default__"
DEFAULT_TTL_SECONDS = 600


class RemoteUnavailableError(Exception):
    """The catalog could not be fetched (no credentials, or Klaviyo failed)."""

    def __init__(self, message: str, status_code: Optional[int] = None, missing_credentials: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.missing_credentials = missing_credentials


@dataclass
class CatalogEntry:
    id_to_name: dict[str, str]
    name_to_id: dict[str, str]
    entries: list[dict] = field(default_factory=list)
    fetched_at: float = 0.0

    @classmethod
    def from_metrics(cls, metrics: list[dict], fetched_at: float) -> "CatalogEntry":
        id_to_name, name_to_id, entries = {}, {}, []
        for m in metrics:
            if m["id"] in id_to_name:
                continue
            id_to_name[m["id"]] = m["name"]
            name_to_id[m["name"]] = m["id"]
            entries.append({"id": m["id"], "name": m["name"]})
        return cls(id_to_name, name_to_id, entries, fetched_at)

    def to_dict(self) -> dict:
        return {
            "metricIdToName": self.id_to_name,
            "metricNameToId": self.name_to_id,
            "allMetrics": self.entries,
        }


class MetricCatalogCache:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        client_factory: Callable[[str], KlaviyoClient] = create_klaviyo_client,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.client_factory = client_factory
        self._entries: dict[str, CatalogEntry] = {}

    @staticmethod
    def cache_key(account_id: Optional[str]) -> str:
        return account_id or DEFAULT_CATALOG_KEY

    def _fresh(self, key: str) -> Optional[CatalogEntry]:
        entry = self._entries.get(key)
        if entry is not None and self.clock() - entry.fetched_at < self.ttl_seconds:
            return entry
        return None

    async def resolve(self, credentials, account_id: Optional[str] = None) -> CatalogEntry:
        """
        Return the catalog for an account, refetching when the cached entry
        is missing or older than the TTL.

        `credentials` is anything with an async `get_private_key(account_id)`.
        """
        entry = self._fresh(self.cache_key(account_id))
        if entry is not None:
            return entry
        return await self.refresh(credentials, account_id)

    async def refresh(self, credentials, account_id: Optional[str] = None) -> CatalogEntry:
        key = self.cache_key(account_id)
        private_key = await credentials.get_private_key(account_id)
        if not private_key:
            raise RemoteUnavailableError(
                "No API key configured for metrics. Please add a Klaviyo account in Settings.",
                missing_credentials=True,
            )

        client = self.client_factory(private_key)
        try:
            metrics = await client.list_metrics()
        except UpstreamError as e:
            logger.error(f"Error fetching Klaviyo metrics for {key}: {e}")
            raise RemoteUnavailableError(f"Failed to fetch metrics: {e}", e.status_code) from e

        entry = CatalogEntry.from_metrics(metrics, self.clock())
        self._entries[key] = entry
        logger.info(f"Cached {len(entry.entries)} metrics for account {key}")
        return entry

    def invalidate(self, account_id: Optional[str] = None) -> None:
        self._entries.pop(self.cache_key(account_id), None)

    def clear(self) -> None:
        self._entries.clear()
