"""
Metrics Router — Klaviyo metric catalog and the per-account category mapping.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_credential_store, get_mapping_store, get_metric_catalog
from app.models import ActivityLog
from app.services.credential_store import CredentialStore
from app.services.metric_catalog import MetricCatalogCache
from app.services.metric_mapping import DEFAULT_MAPPING_KEY, MetricMappingStore, has_mappings
from app.utils import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter()


class MetricMappingPayload(BaseModel):
    """Category → Klaviyo metric id. Empty string means unmapped."""
    model_config = ConfigDict(extra="ignore")

    received: str = ""
    opened: str = ""
    clicked: str = ""
    placedOrder: str = ""
    productsOrdered: str = ""
    smsReceived: str = ""
    smsClicked: str = ""


@router.get("/catalog")
async def get_metric_catalog_for_account(
    account_id: Optional[str] = Query(None),
    credentials: CredentialStore = Depends(get_credential_store),
    catalog: MetricCatalogCache = Depends(get_metric_catalog),
):
    try:
        entry = await catalog.resolve(credentials, account_id)
    except Exception as e:
        raise to_http_exception(e)
    return entry.to_dict()


@router.get("/mapping")
async def get_mapping(
    account_id: Optional[str] = Query(None),
    mappings: MetricMappingStore = Depends(get_mapping_store),
):
    mapping = await mappings.get_mapping(account_id)
    return {
        "accountId": account_id or DEFAULT_MAPPING_KEY,
        "mapping": mapping,
        "hasMappings": has_mappings(mapping),
    }


@router.put("/mapping")
async def set_mapping(
    payload: MetricMappingPayload,
    account_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    mappings: MetricMappingStore = Depends(get_mapping_store),
):
    saved = await mappings.set_mapping(account_id, payload.model_dump())
    key = account_id or DEFAULT_MAPPING_KEY
    db.add(ActivityLog(
        action="mapping_updated",
        category="metrics",
        description=f"Updated metric mapping for {key}",
        entity_type="mapping",
        entity_id=key,
        details={"mapped": [c for c, v in saved.items() if v]},
    ))
    return {"accountId": key, "mapping": saved, "hasMappings": has_mappings(saved)}
