"""
Events Gateway — profile timeline events from Klaviyo.

Drains cursor pages from GET /events until the cursor runs out or the
requested limit is reached. The per-metric variant used by profile stats
absorbs upstream failures: metric ids are account-scoped, so a mapping that
references a metric the account does not have gets a 400 back, and that
simply means "no events".
"""

import logging
from datetime import date, datetime, time, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from app.klaviyo_client import KlaviyoClient, UpstreamError, create_klaviyo_client, extract_cursor

logger = logging.getLogger(__name__)

MAX_EVENT_PAGES = 200


@dataclass
class TimelineEvent:
    id: str
    metric_id: Optional[str]
    timestamp: Optional[str]
    properties: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: dict) -> "TimelineEvent":
        attrs = raw.get("attributes") or {}
        metric = ((raw.get("relationships") or {}).get("metric") or {}).get("data") or {}
        timestamp = attrs.get("datetime") or attrs.get("timestamp")
        return cls(
            id=raw.get("id"),
            metric_id=metric.get("id") or attrs.get("metric_id"),
            timestamp=str(timestamp) if timestamp is not None else None,
            properties=attrs.get("event_properties") or {},
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "metricId": self.metric_id,
            "timestamp": self.timestamp,
            "properties": self.properties,
        }


@dataclass
class EventsPage:
    events: list[TimelineEvent] = field(default_factory=list)
    included: list[dict] = field(default_factory=list)
    page_count: int = 0
    truncated: bool = False  # stopped at max_pages with a cursor still pending

    @property
    def count(self) -> int:
        return len(self.events)


def build_event_filter(profile_id: Optional[str], metric_id: Optional[str]) -> Optional[str]:
    parts = []
    if profile_id:
        parts.append(f'equals(profile_id,"{profile_id}")')
    if metric_id:
        parts.append(f'equals(metric_id,"{metric_id}")')
    return ",".join(parts) or None


class EventsGateway:
    def __init__(
        self,
        credentials,
        client_factory: Callable[[str], KlaviyoClient] = create_klaviyo_client,
        catalog=None,
        page_size: int = 100,
        max_pages: int = MAX_EVENT_PAGES,
    ):
        self.credentials = credentials
        self.client_factory = client_factory
        self.catalog = catalog
        self.page_size = page_size
        self.max_pages = max_pages

    async def _resolve_metric_name(self, metric_name: str, account_id: Optional[str]) -> Optional[str]:
        if self.catalog is None:
            return None
        entry = await self.catalog.resolve(self.credentials, account_id)
        return entry.name_to_id.get(metric_name)

    async def fetch_events(
        self,
        profile_id: Optional[str] = None,
        metric_id: Optional[str] = None,
        account_id: Optional[str] = None,
        page_size: Optional[int] = None,
        limit: Optional[int] = None,
        metric_name: Optional[str] = None,
    ) -> EventsPage:
        """Fetch events, concatenating `data` and `included` across cursor pages."""
        private_key = await self.credentials.require_private_key(account_id)
        client = self.client_factory(private_key)

        if not metric_id and metric_name:
            metric_id = await self._resolve_metric_name(metric_name, account_id)

        params: dict[str, Any] = {
            "include": "metric",
            "sort": "-datetime",
            "page[size]": page_size or self.page_size,
        }
        event_filter = build_event_filter(profile_id, metric_id)
        if event_filter:
            params["filter"] = event_filter

        result = EventsPage()
        cursor = None
        while True:
            if cursor:
                params["page[cursor]"] = cursor
            data = await client.get_events_page(dict(params))
            result.events.extend(TimelineEvent.from_api(e) for e in data.get("data") or [])
            result.included.extend(data.get("included") or [])
            result.page_count += 1
            cursor = extract_cursor((data.get("links") or {}).get("next"))
            if not cursor or (limit and len(result.events) >= limit):
                break
            if result.page_count >= self.max_pages:
                result.truncated = True
                logger.warning(f"Stopped draining events after {self.max_pages} pages (profile {profile_id})")
                break

        if limit and len(result.events) > limit:
            result.events = result.events[:limit]
        logger.info(f"Fetched {result.count} events in {result.page_count} page(s) "
                    f"(profile={profile_id}, metric={metric_id})")
        return result

    async def fetch_events_for_metric(
        self,
        profile_id: str,
        metric_id: str,
        account_id: Optional[str] = None,
        page_size: int = 10,
    ) -> EventsPage:
        """Like fetch_events, but an upstream failure for this metric yields no events."""
        try:
            return await self.fetch_events(
                profile_id=profile_id,
                metric_id=metric_id,
                account_id=account_id,
                page_size=page_size,
            )
        except UpstreamError as e:
            logger.warning(f"Metric {metric_id} not available for account {account_id}: {e}")
            return EventsPage()


# ── Timeline helpers for the profile events view ─────────────────────

def parse_event_time(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 or epoch seconds; naive values are taken as UTC."""
    if not value:
        return None
    try:
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def metric_names_from_included(included: list[dict]) -> dict[str, str]:
    names = {}
    for item in included or []:
        name = (item.get("attributes") or {}).get("name")
        if item.get("type") == "metric" and item.get("id") and name:
            names[item["id"]] = name
    return names


def filter_events(
    events: list[TimelineEvent],
    metric_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> list[TimelineEvent]:
    """
    Metric and inclusive date-range filter, newest first. `date_to` covers
    the whole day. Events without a parseable time are dropped once a date
    bound is given.
    """
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
    end = datetime.combine(date_to, time.max, tzinfo=timezone.utc) if date_to else None

    selected = []
    for event in events:
        if metric_id and event.metric_id != metric_id:
            continue
        if start or end:
            when = parse_event_time(event.timestamp)
            if when is None or (start and when < start) or (end and when > end):
                continue
        selected.append(event)

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    selected.sort(key=lambda e: parse_event_time(e.timestamp) or epoch, reverse=True)
    return selected
