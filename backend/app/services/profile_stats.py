"""
Profile Stats — engagement summary for one profile.

For every mapped category the profile's events for that metric are fetched
concurrently; each category reports its latest timestamp and event count,
and received / SMS received / placed order also pull display fields out of
the latest event's properties. A metric that fails to load leaves its
category at zero; only an unexpected error fails the whole summary.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from app.services.events_service import EventsGateway, TimelineEvent
from app.services.metric_mapping import CATEGORIES, MetricMappingStore, clean_mapping, has_mappings

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"

# Property names Klaviyo integrations use for the same logical field, in probe order
RECEIVED_CAMPAIGN_ALIASES = (
    "Campaign Name", "campaign_name", "campaign", "Campaign",
    "Email Campaign", "email_campaign", "Email Name", "email_name", "Subject",
)
SMS_MESSAGE_ALIASES = (
    "Message Name", "message_name", "Message", "message",
    "SMS Name", "sms_name", "Campaign Name", "campaign_name",
)
ORDER_NAME_ALIASES = ("Order Name", "order_name", "order", "Order", "Order ID", "order_id")
ORDER_ITEMS_ALIASES = ("Items", "items", "Products", "products")
ORDER_VALUE_ALIASES = ("$value", "value", "Order Value", "order_value")


class StatsState(str, enum.Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    READY = "ready"
    ERRORED = "errored"


@dataclass
class CategorySummary:
    last_timestamp: str = ""
    count: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"lastTimestamp": self.last_timestamp, "count": self.count, **self.details}


@dataclass
class ProfileStats:
    has_mappings: bool = False
    state: StatsState = StatsState.IDLE
    error: str = ""
    categories: dict[str, CategorySummary] = field(
        default_factory=lambda: {c: CategorySummary() for c in CATEGORIES}
    )

    @property
    def loading(self) -> bool:
        return self.state not in (StatsState.IDLE, StatsState.READY, StatsState.ERRORED)

    def to_dict(self) -> dict:
        return {
            "hasMappings": self.has_mappings,
            "state": self.state.value,
            "loading": self.loading,
            "error": self.error,
            **{c: s.to_dict() for c, s in self.categories.items()},
        }


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def first_alias(properties: dict, aliases: tuple[str, ...], default: Any = NOT_AVAILABLE) -> Any:
    for key in aliases:
        value = properties.get(key)
        if not _is_empty(value):
            return value
    return default


def _item_label(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("title") or item.get("name") or item.get("ProductName") or item)
    return str(item)


def extract_order_items(properties: dict) -> str:
    items = first_alias(properties, ORDER_ITEMS_ALIASES, default=None)
    if items is None:
        line_items = (properties.get("$extra") or {}).get("line_items")
        if isinstance(line_items, list):
            items = [li.get("title") for li in line_items if isinstance(li, dict) and li.get("title")]
    if isinstance(items, list) and items:
        return ", ".join(_item_label(i) for i in items)
    if isinstance(items, str) and items:
        return items
    return NOT_AVAILABLE


def extract_order_value(properties: dict):
    value = first_alias(properties, ORDER_VALUE_ALIASES, default=None)
    if isinstance(value, bool):
        return NOT_AVAILABLE
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.replace(",", ""))
        except ValueError:
            return NOT_AVAILABLE
    return NOT_AVAILABLE


def summarize_category(category: str, events: list[TimelineEvent]) -> CategorySummary:
    """Latest-event summary; events arrive newest first."""
    summary = CategorySummary()
    if not events:
        return summary
    latest = events[0]
    summary.last_timestamp = latest.timestamp or ""
    summary.count = len(events)
    props = latest.properties or {}

    if category == "received":
        summary.details["campaignName"] = str(first_alias(props, RECEIVED_CAMPAIGN_ALIASES))
    elif category == "smsReceived":
        summary.details["campaignName"] = str(first_alias(props, SMS_MESSAGE_ALIASES))
    elif category == "placedOrder":
        summary.details["orderName"] = str(first_alias(props, ORDER_NAME_ALIASES))
        summary.details["items"] = extract_order_items(props)
        summary.details["value"] = extract_order_value(props)
    return summary


class ProfileStatsAggregator:
    def __init__(self, events: EventsGateway, mappings: MetricMappingStore, page_size: int = 10):
        self.events = events
        self.mappings = mappings
        self.page_size = page_size

    async def get_profile_stats(
        self,
        profile_id: str,
        account_id: Optional[str] = None,
        mapping: Optional[dict] = None,
    ) -> ProfileStats:
        stats = ProfileStats()
        try:
            stats.state = StatsState.RESOLVING
            if mapping is None:
                mapping = await self.mappings.get_mapping(account_id)
            mapping = clean_mapping(mapping)
            stats.has_mappings = has_mappings(mapping)
            if not stats.has_mappings:
                stats.state = StatsState.READY
                return stats

            stats.state = StatsState.FETCHING
            mapped = [(c, mapping[c]) for c in CATEGORIES if mapping[c]]
            pages = await asyncio.gather(*(
                self.events.fetch_events_for_metric(
                    profile_id, metric_id, account_id, page_size=self.page_size
                )
                for _, metric_id in mapped
            ))

            stats.state = StatsState.AGGREGATING
            for (category, _), page in zip(mapped, pages):
                stats.categories[category] = summarize_category(category, page.events)
            stats.state = StatsState.READY
        except Exception as e:
            logger.error(f"Error loading profile stats for {profile_id}: {e}", exc_info=True)
            stats.state = StatsState.ERRORED
            stats.error = str(e) or "Failed to load profile stats"
        return stats
