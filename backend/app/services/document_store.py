"""
Document Store — key/value JSON records on top of the app_documents table.
"""

import copy
import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.models import StoredDocument

logger = logging.getLogger(__name__)


class DocumentStore:
    """get/set/delete whole documents by key within the caller's session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, key: str) -> Optional[dict]:
        row = await self.db.get(StoredDocument, key)
        if row is None:
            return None
        # Callers mutate what they read; never hand out the tracked value
        return copy.deepcopy(row.value)

    async def set(self, key: str, value: dict) -> None:
        row = await self.db.get(StoredDocument, key)
        if row is None:
            self.db.add(StoredDocument(key=key, value=copy.deepcopy(value)))
        else:
            row.value = copy.deepcopy(value)
        await self.db.flush()

    async def delete(self, key: str) -> bool:
        row = await self.db.get(StoredDocument, key)
        if row is None:
            return False
        await self.db.delete(row)
        await self.db.flush()
        logger.info(f"Deleted document '{key}'")
        return True
