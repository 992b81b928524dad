"""
Profile Insights — Database Models
Settings live as JSON documents addressed by key; mutations are logged
to the activity log.
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Text, DateTime, JSON, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


def _utcnow() -> datetime:
    """Naive UTC now, matching DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Document keys
ACCOUNT_SETTINGS_KEY = "account_settings"
METRIC_MAPPING_KEY = "metric_mapping"


# ══════════════════════════════════════════════════════════════════════
#  DOCUMENTS — key/value JSON records (credentials, metric mappings)
# ══════════════════════════════════════════════════════════════════════

class StoredDocument(Base):
    """One JSON document per key. Reads and writes replace the whole value."""
    __tablename__ = "app_documents"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOG — account and mapping changes
# ══════════════════════════════════════════════════════════════════════

class ActivityLog(Base):
    """Logs settings changes made from the dashboard."""
    __tablename__ = "activity_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # accounts, metrics
    description: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)  # account, mapping
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="success")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_activity_log_category", "category"),
        Index("ix_activity_log_action", "action"),
        Index("ix_activity_log_created_at", "created_at"),
        Index("ix_activity_log_entity", "entity_type", "entity_id"),
    )
