"""
Profiles Router — Profile browsing across accounts, per-profile stats and timeline.
"""

import logging
import math
from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query

from app.dependencies import (
    get_credential_store, get_events_gateway, get_metric_catalog, get_profile_merger, get_stats_aggregator,
)
from app.services.credential_store import DEFAULT_ACCOUNT_ID, CredentialStore
from app.services.events_service import EventsGateway, filter_events, metric_names_from_included
from app.services.metric_catalog import MetricCatalogCache, RemoteUnavailableError
from app.services.profile_service import MultiAccountMerger, ProfileNavigator
from app.services.profile_stats import ProfileStatsAggregator
from app.utils import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter()


async def _selected_accounts(account_ids: list[str], credentials: CredentialStore) -> list[str]:
    """Explicit selection, else the first stored account, else the fallback key."""
    selected = [a for a in account_ids if a]
    if selected:
        return selected
    accounts = await credentials.list_accounts()
    return [accounts[0]["id"]] if accounts else [DEFAULT_ACCOUNT_ID]


@router.get("")
async def list_profiles(
    account_id: list[str] = Query(default=[]),
    page_size: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None, description="Opaque token from nextCursor / prevCursor"),
    search: Optional[str] = Query(None, description="Exact email match"),
    allow_partial: bool = Query(False),
    credentials: CredentialStore = Depends(get_credential_store),
    merger: MultiAccountMerger = Depends(get_profile_merger),
):
    account_ids = await _selected_accounts(account_id, credentials)
    navigator = ProfileNavigator(
        merger,
        account_ids,
        page_size=page_size,
        search_email=(search or "").strip() or None,
        allow_partial=allow_partial,
    )
    try:
        navigator.restore(cursor)
        page = await navigator.load()
    except Exception as e:
        raise to_http_exception(e)

    return {
        "data": page.profiles,
        "nextCursor": navigator.next_token(),
        "prevCursor": navigator.prev_token(),
        "total": page.total,
        "hasNext": navigator.has_next,
        "hasPrev": navigator.has_prev,
        "accounts": account_ids,
        "errors": page.errors,
    }


@router.get("/{profile_id}/stats")
async def get_profile_stats(
    profile_id: str,
    account_id: Optional[str] = Query(None),
    aggregator: ProfileStatsAggregator = Depends(get_stats_aggregator),
):
    stats = await aggregator.get_profile_stats(profile_id, account_id)
    return stats.to_dict()


@router.get("/{profile_id}/events")
async def get_profile_events(
    profile_id: str,
    account_id: Optional[str] = Query(None),
    metric_id: Optional[str] = Query(None),
    metric_name: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    limit: Optional[int] = Query(None, ge=1),
    credentials: CredentialStore = Depends(get_credential_store),
    events: EventsGateway = Depends(get_events_gateway),
    catalog: MetricCatalogCache = Depends(get_metric_catalog),
):
    try:
        result = await events.fetch_events(
            profile_id=profile_id,
            metric_id=metric_id,
            metric_name=metric_name,
            account_id=account_id,
            limit=limit,
        )
    except Exception as e:
        raise to_http_exception(e)

    names = metric_names_from_included(result.included)
    missing = {e.metric_id for e in result.events if e.metric_id and e.metric_id not in names}
    if missing:
        try:
            names = {**(await catalog.resolve(credentials, account_id)).id_to_name, **names}
        except RemoteUnavailableError as e:
            logger.warning(f"Metric names unavailable for account {account_id}: {e}")

    selected = filter_events(result.events, metric_id=metric_id, date_from=date_from, date_to=date_to)
    total = len(selected)
    start = (page - 1) * page_size
    rows = [
        {**e.to_dict(), "metricName": names.get(e.metric_id, e.metric_id)}
        for e in selected[start:start + page_size]
    ]
    return {
        "data": rows,
        "metrics": names,
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPages": max(1, math.ceil(total / page_size)),
        "pageCount": result.page_count,
        "truncated": result.truncated,
    }
