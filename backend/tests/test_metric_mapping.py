"""
Tests for the metric mapping store and the flat-to-per-account migration.
"""

import pytest

from app.models import METRIC_MAPPING_KEY
from app.services.document_store import DocumentStore
from app.services.metric_mapping import (
    CATEGORIES,
    MetricMappingStore,
    clean_mapping,
    empty_mapping,
    has_mappings,
    migrate_legacy_mapping,
)


def test_migrate_flat_mapping_into_default():
    legacy = {"received": "M_RCV", "opened": "", "clicked": "M_CLK", "unrelated": "x"}
    migrated = migrate_legacy_mapping(legacy)
    assert migrated == {"byAccount": {"__default__": {"received": "M_RCV", "clicked": "M_CLK"}}}


def test_migrate_is_idempotent():
    once = migrate_legacy_mapping({"placedOrder": "M_PO"})
    assert migrate_legacy_mapping(once) == once


@pytest.mark.parametrize("doc", [None, {}, {"opened": ""}])
def test_migrate_without_values(doc):
    assert migrate_legacy_mapping(doc) == {"byAccount": {}}


def test_clean_mapping_keeps_known_categories_only():
    cleaned = clean_mapping({"received": " M1 ", "smsClicked": 7, "bogus": "M2"})
    assert set(cleaned) == set(CATEGORIES)
    assert cleaned["received"] == "M1"
    assert cleaned["smsClicked"] == ""


def test_has_mappings():
    assert has_mappings(empty_mapping()) is False
    assert has_mappings({"opened": "M_OPEN"}) is True
    assert has_mappings(None) is False


@pytest.mark.anyio
async def test_empty_store_returns_unmapped(db_session):
    mapping = await MetricMappingStore(db_session).get_mapping("PUB_A")
    assert mapping == empty_mapping()


@pytest.mark.anyio
async def test_legacy_document_serves_every_account(db_session):
    await DocumentStore(db_session).set(METRIC_MAPPING_KEY, {"received": "M_RCV"})
    store = MetricMappingStore(db_session)

    assert (await store.get_mapping("PUB_A"))["received"] == "M_RCV"
    assert (await store.get_mapping(None))["received"] == "M_RCV"


@pytest.mark.anyio
async def test_account_mapping_overrides_default(db_session):
    store = MetricMappingStore(db_session)
    await store.set_mapping(None, {"received": "M_DEFAULT"})
    await store.set_mapping("PUB_A", {"received": "M_A", "opened": "M_A_OPEN"})

    assert (await store.get_mapping("PUB_A"))["received"] == "M_A"
    assert (await store.get_mapping("PUB_B"))["received"] == "M_DEFAULT"
    assert (await store.get_mapping("PUB_B"))["opened"] == ""


@pytest.mark.anyio
async def test_set_mapping_replaces_whole_account_entry(db_session):
    store = MetricMappingStore(db_session)
    await store.set_mapping("PUB_A", {"received": "M1", "opened": "M2"})
    saved = await store.set_mapping("PUB_A", {"clicked": "M3"})

    assert saved["received"] == ""
    assert saved["clicked"] == "M3"
    assert await store.get_mapping("PUB_A") == saved


@pytest.mark.anyio
async def test_set_mapping_persists_migrated_layout(db_session):
    documents = DocumentStore(db_session)
    await documents.set(METRIC_MAPPING_KEY, {"received": "M_RCV"})
    await MetricMappingStore(db_session).set_mapping("PUB_A", {"opened": "M_OPEN"})

    stored = await documents.get(METRIC_MAPPING_KEY)
    assert stored["byAccount"]["__default__"] == {"received": "M_RCV"}
    assert stored["byAccount"]["PUB_A"]["opened"] == "M_OPEN"


@pytest.mark.anyio
async def test_rekey_and_delete(db_session):
    store = MetricMappingStore(db_session)
    await store.set_mapping("PUB_OLD", {"received": "M1"})

    assert await store.rekey("PUB_OLD", "PUB_NEW") is True
    assert (await store.get_mapping("PUB_NEW"))["received"] == "M1"
    assert "PUB_OLD" not in (await store.load_document())["byAccount"]

    assert await store.delete_mapping("PUB_NEW") is True
    assert await store.delete_mapping("PUB_NEW") is False
