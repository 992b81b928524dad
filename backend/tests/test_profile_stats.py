"""
Tests for per-profile engagement stats.
"""

import pytest

from app.services.events_service import EventsGateway, TimelineEvent
from app.services.metric_mapping import MetricMappingStore
from app.services.profile_stats import (
    NOT_AVAILABLE,
    ProfileStatsAggregator,
    StatsState,
    extract_order_items,
    extract_order_value,
    first_alias,
    summarize_category,
    RECEIVED_CAMPAIGN_ALIASES,
)

from tests.conftest import StubCredentials


@pytest.fixture
def klaviyo(fake_klaviyo):
    fake_klaviyo.add_account("pk_a", "PUB_A")
    fake_klaviyo.add_event("pk_a", "P1", "M_RCV", "2025-03-01T10:00:00+00:00", campaign_name="Spring Launch")
    fake_klaviyo.add_event("pk_a", "P1", "M_RCV", "2025-03-04T10:00:00+00:00", **{"Campaign Name": "Spring Follow-up"})
    fake_klaviyo.add_event(
        "pk_a", "P1", "M_PO", "2025-03-05T12:30:00+00:00",
        **{"Order Name": "#1001", "Items": ["Tee", "Cap"], "$value": 59.9},
    )
    fake_klaviyo.failing_metrics["M_BROKEN"] = 400
    return fake_klaviyo


def _aggregator(klaviyo, db_session, keys=None):
    credentials = StubCredentials({"PUB_A": "pk_a"} if keys is None else keys)
    events = EventsGateway(credentials, client_factory=klaviyo.client_factory)
    return ProfileStatsAggregator(events, MetricMappingStore(db_session))


@pytest.mark.anyio
async def test_no_mapping_means_no_fetches(klaviyo, db_session):
    stats = await _aggregator(klaviyo, db_session).get_profile_stats("P1", "PUB_A")

    assert stats.has_mappings is False
    assert stats.state == StatsState.READY
    assert klaviyo.requests_for("events") == []
    assert stats.to_dict()["received"] == {"lastTimestamp": "", "count": 0}


@pytest.mark.anyio
async def test_stats_summarize_each_mapped_category(klaviyo, db_session):
    await MetricMappingStore(db_session).set_mapping("PUB_A", {
        "received": "M_RCV",
        "placedOrder": "M_PO",
        "opened": "M_BROKEN",
    })

    stats = await _aggregator(klaviyo, db_session).get_profile_stats("P1", "PUB_A")
    result = stats.to_dict()

    assert result["hasMappings"] is True
    assert result["state"] == "ready"
    assert result["loading"] is False
    assert result["error"] == ""
    assert result["received"] == {
        "lastTimestamp": "2025-03-04T10:00:00+00:00",
        "count": 2,
        "campaignName": "Spring Follow-up",
    }
    assert result["placedOrder"] == {
        "lastTimestamp": "2025-03-05T12:30:00+00:00",
        "count": 1,
        "orderName": "#1001",
        "items": "Tee, Cap",
        "value": 59.9,
    }
    # A metric the account does not have leaves its category empty
    assert result["opened"] == {"lastTimestamp": "", "count": 0}
    assert len(klaviyo.requests_for("events")) == 3


@pytest.mark.anyio
async def test_explicit_mapping_skips_store(klaviyo, db_session):
    stats = await _aggregator(klaviyo, db_session).get_profile_stats(
        "P1", "PUB_A", mapping={"received": "M_RCV"},
    )
    assert stats.categories["received"].count == 2


@pytest.mark.anyio
async def test_missing_credentials_mark_stats_errored(klaviyo, db_session):
    await MetricMappingStore(db_session).set_mapping(None, {"received": "M_RCV"})

    stats = await _aggregator(klaviyo, db_session, keys={}).get_profile_stats("P1")

    assert stats.state == StatsState.ERRORED
    assert "No API key configured" in stats.error
    assert stats.categories["received"].count == 0


def test_first_alias_skips_empty_values():
    props = {"Campaign Name": "", "campaign_name": None, "campaign": "Weekly"}
    assert first_alias(props, RECEIVED_CAMPAIGN_ALIASES) == "Weekly"
    assert first_alias({}, RECEIVED_CAMPAIGN_ALIASES) == NOT_AVAILABLE


def test_sms_received_uses_message_name():
    summary = summarize_category("smsReceived", [
        TimelineEvent("E1", "M_SMS", "2025-03-01T10:00:00+00:00", {"Message Name": "Flash Sale"}),
    ])
    assert summary.to_dict()["campaignName"] == "Flash Sale"


@pytest.mark.parametrize("props, expected", [
    ({"Items": ["A", "B"]}, "A, B"),
    ({"products": [{"title": "Mug"}, {"name": "Plate"}]}, "Mug, Plate"),
    ({"$extra": {"line_items": [{"title": "Socks"}, {"sku": "x"}]}}, "Socks"),
    ({"items": "Gift card"}, "Gift card"),
    ({"Items": []}, NOT_AVAILABLE),
    ({}, NOT_AVAILABLE),
])
def test_extract_order_items(props, expected):
    assert extract_order_items(props) == expected


@pytest.mark.parametrize("props, expected", [
    ({"$value": 42}, 42),
    ({"value": "1,234.50"}, 1234.5),
    ({"Order Value": "n/a"}, NOT_AVAILABLE),
    ({"order_value": True}, NOT_AVAILABLE),
    ({}, NOT_AVAILABLE),
])
def test_extract_order_value(props, expected):
    assert extract_order_value(props) == expected


def test_placed_order_without_fields_reports_not_available():
    summary = summarize_category("placedOrder", [TimelineEvent("E1", "M_PO", "2025-03-01T10:00:00+00:00", {})])
    assert summary.to_dict() == {
        "lastTimestamp": "2025-03-01T10:00:00+00:00",
        "count": 1,
        "orderName": NOT_AVAILABLE,
        "items": NOT_AVAILABLE,
        "value": NOT_AVAILABLE,
    }
