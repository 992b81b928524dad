"""
Metric Mapping Store — which Klaviyo metric id feeds each dashboard category.

Stored as {"byAccount": {<account id> | "__default__": {<category>: <metric id>}}}.
Earlier releases stored a single flat mapping at the top level; that layout
is migrated into byAccount.__default__ on read.
"""

import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.models import METRIC_MAPPING_KEY
from app.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_MAPPING_KEY = "__default__"

CATEGORIES = (
    "received",
    "opened",
    "clicked",
    "placedOrder",
    "productsOrdered",
    "smsReceived",
    "smsClicked",
)


def empty_mapping() -> dict[str, str]:
    return {c: "" for c in CATEGORIES}


def clean_mapping(mapping: Optional[dict]) -> dict[str, str]:
    """Recognized categories only; anything absent or non-string is unmapped."""
    mapping = mapping or {}
    cleaned = empty_mapping()
    for c in CATEGORIES:
        value = mapping.get(c)
        if isinstance(value, str):
            cleaned[c] = value.strip()
    return cleaned


def has_mappings(mapping: Optional[dict]) -> bool:
    return any(clean_mapping(mapping).values())


def migrate_legacy_mapping(doc: Optional[dict]) -> dict:
    """
    Pure migration of a stored mapping document. Idempotent; keeps every
    recognized category with a non-empty value.
    """
    if not isinstance(doc, dict):
        return {"byAccount": {}}
    if isinstance(doc.get("byAccount"), dict):
        return doc
    legacy = {c: doc[c] for c in CATEGORIES if isinstance(doc.get(c), str) and doc[c]}
    if legacy:
        return {"byAccount": {DEFAULT_MAPPING_KEY: legacy}}
    return {"byAccount": {}}


class MetricMappingStore:
    def __init__(self, db: AsyncSession):
        self.documents = DocumentStore(db)

    async def load_document(self) -> dict:
        return migrate_legacy_mapping(await self.documents.get(METRIC_MAPPING_KEY))

    async def get_mapping(self, account_id: Optional[str] = None) -> dict[str, str]:
        """Account mapping, else the default mapping, else all-empty."""
        by_account = (await self.load_document())["byAccount"]
        if account_id and account_id in by_account:
            return clean_mapping(by_account[account_id])
        if DEFAULT_MAPPING_KEY in by_account:
            return clean_mapping(by_account[DEFAULT_MAPPING_KEY])
        return empty_mapping()

    async def set_mapping(self, account_id: Optional[str], mapping: dict) -> dict[str, str]:
        """Replace one account's mapping, leaving the others untouched."""
        doc = await self.load_document()
        cleaned = clean_mapping(mapping)
        doc["byAccount"][account_id or DEFAULT_MAPPING_KEY] = cleaned
        await self.documents.set(METRIC_MAPPING_KEY, doc)
        logger.info(f"Saved metric mapping for {account_id or DEFAULT_MAPPING_KEY}")
        return cleaned

    async def delete_mapping(self, account_id: str) -> bool:
        doc = await self.load_document()
        if account_id not in doc["byAccount"]:
            return False
        del doc["byAccount"][account_id]
        await self.documents.set(METRIC_MAPPING_KEY, doc)
        return True

    async def rekey(self, old_id: str, new_id: str) -> bool:
        """Move a mapping to a new account id after a public-key rotation."""
        if old_id == new_id:
            return False
        doc = await self.load_document()
        by_account = doc["byAccount"]
        if old_id not in by_account:
            return False
        by_account[new_id] = by_account.pop(old_id)
        await self.documents.set(METRIC_MAPPING_KEY, doc)
        logger.info(f"Moved metric mapping from {old_id} to {new_id}")
        return True
