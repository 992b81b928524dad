"""
Credential Store — Klaviyo account records (public key, private key, display name).

Persisted as one document: {"accounts": [{id, publicKey, privateKey, displayName}]}.
The single-account layout written by earlier releases,
{privateApiKey, publicApiKey, accountName}, is upgraded on read and only
rewritten in the new layout on the next mutation.
"""

import asyncio
import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.crypto import encrypt_secret, decrypt_secret, mask_key
from app.models import ACCOUNT_SETTINGS_KEY
from app.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

# Stands for "whichever key resolves without an account id"
DEFAULT_ACCOUNT_ID = "__default__"


class ConfigurationError(Exception):
    """No Klaviyo credentials could be resolved."""

    def __init__(self, message: str = "No API key configured. Please add a Klaviyo account in Settings."):
        super().__init__(message)


class DuplicateAccountError(Exception):
    """An account with the same public key already exists."""


class AccountNotFoundError(Exception):
    pass


def _normalize_record(record: dict) -> dict:
    public_key = record.get("publicKey") or record.get("id")
    return {
        "id": public_key,
        "publicKey": public_key,
        "privateKey": record.get("privateKey"),
        "displayName": record.get("displayName") or record.get("name") or public_key,
    }


def normalize_credentials_document(doc: Optional[dict]) -> dict:
    """
    Return the multi-account layout for any stored credentials document.

    Pure and idempotent: a normalized document normalizes to itself, and
    `id` always equals `publicKey`.
    """
    if not isinstance(doc, dict):
        return {"accounts": []}
    if isinstance(doc.get("accounts"), list):
        return {
            "accounts": [
                _normalize_record(r) for r in doc["accounts"] if isinstance(r, dict)
            ]
        }
    if doc.get("privateApiKey") or doc.get("publicApiKey"):
        public_key = doc.get("publicApiKey")
        return {
            "accounts": [{
                "id": public_key,
                "publicKey": public_key,
                "privateKey": doc.get("privateApiKey"),
                "displayName": doc.get("accountName") or public_key,
            }]
        }
    return {"accounts": []}


def _safe_view(record: dict) -> dict:
    return {
        "id": record["id"],
        "publicKey": record["publicKey"],
        "displayName": record["displayName"],
    }


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


class CredentialStore:
    """
    Account records for one request. `fallback_key` is the KLAVIYO_API_KEY
    env value used only when no account is stored.
    """

    def __init__(self, db: AsyncSession, fallback_key: Optional[str] = None):
        self.documents = DocumentStore(db)
        self.fallback_key = fallback_key or None
        # Fan-out callers resolve keys concurrently; an AsyncSession takes one operation at a time
        self._lock = asyncio.Lock()

    async def _load(self) -> dict:
        async with self._lock:
            return normalize_credentials_document(await self.documents.get(ACCOUNT_SETTINGS_KEY))

    async def _save(self, doc: dict) -> None:
        await self.documents.set(ACCOUNT_SETTINGS_KEY, doc)

    @staticmethod
    def _find(doc: dict, account_id: str) -> Optional[dict]:
        for record in doc["accounts"]:
            if record["id"] == account_id or record["publicKey"] == account_id:
                return record
        return None

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_accounts(self) -> list[dict]:
        doc = await self._load()
        return [_safe_view(r) for r in doc["accounts"]]

    async def list_accounts_masked(self) -> list[dict]:
        """Safe views plus a masked private key, for the settings screen."""
        doc = await self._load()
        return [
            {**_safe_view(r), "privateKeyMasked": mask_key(decrypt_secret(r["privateKey"]))}
            for r in doc["accounts"]
        ]

    async def get_account(self, account_id: str) -> Optional[dict]:
        record = self._find(await self._load(), account_id)
        return _safe_view(record) if record else None

    async def get_private_key(self, account_id: Optional[str] = None) -> Optional[str]:
        """
        Resolve the private key for an account id (or public key).
        Without an id the first stored account wins; with no accounts at all
        the fallback key is used. Returns None when nothing resolves.
        """
        if account_id == DEFAULT_ACCOUNT_ID:
            account_id = None
        doc = await self._load()
        accounts = doc["accounts"]
        if not accounts:
            return self.fallback_key
        if account_id:
            record = self._find(doc, account_id)
            if record is None:
                logger.warning(f"No stored account matches '{account_id}'")
                return None
        else:
            record = accounts[0]
        return decrypt_secret(record["privateKey"]) or None

    async def require_private_key(self, account_id: Optional[str] = None) -> str:
        key = await self.get_private_key(account_id)
        if not key:
            raise ConfigurationError()
        return key

    # ── Mutations ─────────────────────────────────────────────────────

    async def add_account(
        self,
        public_key: Optional[str],
        private_key: Optional[str],
        display_name: Optional[str] = None,
    ) -> dict:
        public_key, private_key = _clean(public_key), _clean(private_key)
        if not public_key or not private_key:
            raise ValueError("Both private and public API keys are required")

        doc = await self._load()
        if self._find(doc, public_key):
            raise DuplicateAccountError(f"Account with public key {public_key} already exists")

        record = {
            "id": public_key,
            "publicKey": public_key,
            "privateKey": encrypt_secret(private_key),
            "displayName": _clean(display_name) or public_key,
        }
        doc["accounts"].append(record)
        await self._save(doc)
        logger.info(f"Added Klaviyo account {public_key} ({record['displayName']})")
        return _safe_view(record)

    async def update_account(
        self,
        account_id: str,
        display_name: Optional[str] = None,
        public_key: Optional[str] = None,
        private_key: Optional[str] = None,
    ) -> dict:
        """
        Partial update. Changing the public key changes the id as well; the
        caller is responsible for re-keying mapping and cache entries.
        """
        doc = await self._load()
        record = self._find(doc, account_id)
        if record is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        public_key = _clean(public_key)
        if public_key and public_key != record["publicKey"]:
            clash = self._find(doc, public_key)
            if clash is not None and clash is not record:
                raise DuplicateAccountError(f"Account with public key {public_key} already exists")
            record["publicKey"] = public_key
            record["id"] = public_key
        if _clean(private_key):
            record["privateKey"] = encrypt_secret(_clean(private_key))
        if _clean(display_name):
            record["displayName"] = _clean(display_name)

        await self._save(doc)
        return _safe_view(record)

    async def delete_account(self, account_id: str) -> dict:
        doc = await self._load()
        record = self._find(doc, account_id)
        if record is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        doc["accounts"].remove(record)
        await self._save(doc)
        logger.info(f"Deleted Klaviyo account {record['id']}")
        return _safe_view(record)

    async def clear_all(self) -> None:
        await self.documents.delete(ACCOUNT_SETTINGS_KEY)
        logger.info("Cleared all Klaviyo accounts")
