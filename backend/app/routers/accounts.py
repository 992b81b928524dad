"""
Accounts Router — Manage Klaviyo account credentials.
Keys are validated against Klaviyo before they are stored; private keys
never leave the server except masked.
"""

import logging
from typing import Callable, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import (
    get_client_factory, get_credential_store, get_mapping_store, get_metric_catalog,
)
from app.klaviyo_client import KlaviyoClient, UpstreamError, UpstreamAuthError, UpstreamNotFoundError
from app.models import ActivityLog
from app.services.credential_store import CredentialStore
from app.services.metric_catalog import MetricCatalogCache
from app.services.metric_mapping import MetricMappingStore
from app.utils import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AccountCreate(_CamelModel):
    public_key: str
    private_key: str
    display_name: Optional[str] = None


class AccountUpdate(_CamelModel):
    display_name: Optional[str] = None
    public_key: Optional[str] = None
    private_key: Optional[str] = None


class KeyValidation(_CamelModel):
    public_key: str
    private_key: str


# ── Helpers ───────────────────────────────────────────────────────────
def _organization_name(account: dict) -> Optional[str]:
    attrs = (account.get("data") or {}).get("attributes") or {}
    return (attrs.get("contact_information") or {}).get("organization_name")


async def _validate_keys(
    public_key: str,
    private_key: str,
    client_factory: Callable[[str], KlaviyoClient],
) -> dict:
    """Check a key pair against GET /accounts/{public_key}."""
    if not public_key or not private_key:
        raise HTTPException(status_code=400, detail="Both private and public API keys are required")
    try:
        account = await client_factory(private_key).get_account(public_key)
    except UpstreamAuthError as e:
        if e.status_code == 403:
            raise HTTPException(status_code=403, detail="API key does not have required permissions")
        raise HTTPException(status_code=401, detail="Invalid API key")
    except UpstreamNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found. Please check your public API key.")
    except UpstreamError as e:
        logger.error(f"Error validating API keys for {public_key}: {e}")
        raise HTTPException(status_code=502, detail="Failed to validate API keys")
    return {"publicKey": public_key, "organizationName": _organization_name(account)}


async def _first_account_id(credentials: CredentialStore) -> Optional[str]:
    """The account behind the default catalog scope, if any is stored."""
    accounts = await credentials.list_accounts()
    return accounts[0]["id"] if accounts else None


def _log(db: AsyncSession, action: str, description: str, entity_id: Optional[str], details: dict = None):
    db.add(ActivityLog(
        action=action,
        category="accounts",
        description=description,
        entity_type="account",
        entity_id=entity_id,
        details=details,
    ))


# ── Endpoints ────────────────────────────────────────────────────────
@router.get("")
async def list_accounts(
    masked: bool = Query(False, description="Include a masked private key for display"),
    credentials: CredentialStore = Depends(get_credential_store),
):
    if masked:
        return await credentials.list_accounts_masked()
    return await credentials.list_accounts()


@router.post("/validate")
async def validate_keys(
    payload: KeyValidation,
    client_factory: Callable[[str], KlaviyoClient] = Depends(get_client_factory),
):
    return await _validate_keys(payload.public_key.strip(), payload.private_key.strip(), client_factory)


@router.post("", status_code=201)
async def add_account(
    payload: AccountCreate,
    db: AsyncSession = Depends(get_db),
    credentials: CredentialStore = Depends(get_credential_store),
    catalog: MetricCatalogCache = Depends(get_metric_catalog),
    client_factory: Callable[[str], KlaviyoClient] = Depends(get_client_factory),
):
    public_key, private_key = payload.public_key.strip(), payload.private_key.strip()
    if await credentials.get_account(public_key):
        raise HTTPException(status_code=409, detail=f"Account with public key {public_key} already exists")

    info = await _validate_keys(public_key, private_key, client_factory)
    first_id = await _first_account_id(credentials)
    try:
        account = await credentials.add_account(
            public_key=public_key,
            private_key=private_key,
            display_name=payload.display_name or info["organizationName"],
        )
    except Exception as e:
        raise to_http_exception(e)

    if first_id is None:
        # The default scope was served by the fallback key until now
        catalog.invalidate(None)
    _log(db, "account_added", f"Added Klaviyo account: {account['displayName']}", account["id"])
    return account


@router.put("/{account_id}")
async def update_account(
    account_id: str,
    payload: AccountUpdate,
    db: AsyncSession = Depends(get_db),
    credentials: CredentialStore = Depends(get_credential_store),
    mappings: MetricMappingStore = Depends(get_mapping_store),
    catalog: MetricCatalogCache = Depends(get_metric_catalog),
    client_factory: Callable[[str], KlaviyoClient] = Depends(get_client_factory),
):
    existing = await credentials.get_account(account_id)
    if not existing:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")

    # Rotated keys must work before they replace the stored ones
    if payload.public_key or payload.private_key:
        public_key = (payload.public_key or existing["publicKey"]).strip()
        private_key = (payload.private_key or await credentials.get_private_key(existing["id"]) or "").strip()
        await _validate_keys(public_key, private_key, client_factory)

    was_default = await _first_account_id(credentials) == existing["id"]
    try:
        account = await credentials.update_account(
            existing["id"],
            display_name=payload.display_name,
            public_key=payload.public_key,
            private_key=payload.private_key,
        )
    except Exception as e:
        raise to_http_exception(e)

    old_id = existing["id"]
    keys_changed = account["id"] != old_id or bool(payload.private_key)
    if account["id"] != old_id:
        # Same session as the credential write, so both land in one commit
        await mappings.rekey(old_id, account["id"])
    if keys_changed:
        catalog.invalidate(old_id)
        if was_default:
            catalog.invalidate(None)

    _log(
        db, "account_updated", f"Updated Klaviyo account: {account['displayName']}", account["id"],
        details={
            "updated_fields": [k for k, v in payload.model_dump().items() if v],
            "previous_id": old_id,
        },
    )
    return account


@router.delete("/{account_id}")
async def delete_account(
    account_id: str,
    db: AsyncSession = Depends(get_db),
    credentials: CredentialStore = Depends(get_credential_store),
    mappings: MetricMappingStore = Depends(get_mapping_store),
    catalog: MetricCatalogCache = Depends(get_metric_catalog),
):
    was_default = await _first_account_id(credentials) == account_id
    try:
        account = await credentials.delete_account(account_id)
    except Exception as e:
        raise to_http_exception(e)
    await mappings.delete_mapping(account["id"])
    catalog.invalidate(account["id"])
    if was_default:
        catalog.invalidate(None)
    _log(db, "account_deleted", f"Deleted Klaviyo account: {account['displayName']}", account["id"])
    return {"status": "deleted", "id": account["id"]}


@router.delete("")
async def clear_accounts(
    db: AsyncSession = Depends(get_db),
    credentials: CredentialStore = Depends(get_credential_store),
    catalog: MetricCatalogCache = Depends(get_metric_catalog),
):
    await credentials.clear_all()
    catalog.clear()
    _log(db, "accounts_cleared", "Cleared all Klaviyo accounts", None)
    return {"message": "Account settings cleared successfully"}
