from __future__ import annotations

from bubble_ingestor.conventions import (Convention, ConventionCache,
                                         SchemaTypeDetector, classify_columns)


def test_classify_columns() -> None:
    assert classify_columns(["bubble_id", "created_date", "amount"]) is Convention.NORMALIZED
    assert classify_columns(["_id", "Created Date"]) is Convention.RAW
    assert classify_columns(["_id", "Amount"]) is Convention.RAW
    assert classify_columns(["_id", "created date"]) is Convention.RAW


async def test_detect_caches_per_table(store) -> None:
    store.create_table("agent", {"_id": "text", "Full Name": "text"})
    detector = SchemaTypeDetector(store)

    assert await detector.detect("agent") is Convention.RAW
    # A later layout change is not seen until the table is invalidated.
    store.create_table("agent", {"bubble_id": "text", "full_name": "text"})
    assert await detector.detect("agent") is Convention.RAW

    detector.invalidate("agent")
    assert await detector.detect("agent") is Convention.NORMALIZED


async def test_missing_table_defaults_to_normalized_without_caching(store) -> None:
    detector = SchemaTypeDetector(store)

    assert await detector.detect("invoice") is Convention.NORMALIZED
    assert "invoice" not in detector.cache

    store.create_table("invoice", {"_id": "text", "Invoice No": "text"})
    assert await detector.detect("invoice") is Convention.RAW
    assert "invoice" in detector.cache


def test_cache_is_shared_by_reference(store) -> None:
    cache = ConventionCache()
    first = SchemaTypeDetector(store, cache)
    second = SchemaTypeDetector(store, cache)
    cache.put("agent", Convention.RAW)

    assert first.cache.get("agent") is Convention.RAW
    second.invalidate()
    assert first.cache.get("agent") is None
