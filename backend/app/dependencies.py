"""
FastAPI dependencies wiring the per-request stores and the process-wide
metric catalog cache into the routers.
"""

from typing import Callable
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.klaviyo_client import KlaviyoClient, create_klaviyo_client
from app.services.credential_store import CredentialStore
from app.services.events_service import EventsGateway
from app.services.metric_catalog import MetricCatalogCache
from app.services.metric_mapping import MetricMappingStore
from app.services.profile_service import MultiAccountMerger, ProfilePager
from app.services.profile_stats import ProfileStatsAggregator


def get_client_factory() -> Callable[[str], KlaviyoClient]:
    return create_klaviyo_client


def get_metric_catalog(request: Request) -> MetricCatalogCache:
    return request.app.state.metric_catalog


def get_credential_store(db: AsyncSession = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db, fallback_key=get_settings().klaviyo_api_key)


def get_mapping_store(db: AsyncSession = Depends(get_db)) -> MetricMappingStore:
    return MetricMappingStore(db)


def get_events_gateway(
    credentials: CredentialStore = Depends(get_credential_store),
    catalog: MetricCatalogCache = Depends(get_metric_catalog),
    client_factory: Callable[[str], KlaviyoClient] = Depends(get_client_factory),
) -> EventsGateway:
    return EventsGateway(
        credentials,
        client_factory=client_factory,
        catalog=catalog,
        page_size=get_settings().events_page_size,
        max_pages=get_settings().events_max_pages,
    )


def get_stats_aggregator(
    events: EventsGateway = Depends(get_events_gateway),
    mappings: MetricMappingStore = Depends(get_mapping_store),
) -> ProfileStatsAggregator:
    return ProfileStatsAggregator(events, mappings, page_size=get_settings().stats_page_size)


def get_profile_merger(
    credentials: CredentialStore = Depends(get_credential_store),
    client_factory: Callable[[str], KlaviyoClient] = Depends(get_client_factory),
) -> MultiAccountMerger:
    return MultiAccountMerger(ProfilePager(credentials, client_factory=client_factory), credentials)
