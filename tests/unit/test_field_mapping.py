from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from bubble_ingestor.conventions import Convention
from bubble_ingestor.field_mapping import (MissingExternalIdError, coerce_value,
                                           map_field, map_record)
from bubble_ingestor.naming import (InvalidIdentifierError, safe_table_name,
                                    title_case_guess, validate_identifier)

RECORD_ID = "1700000000000x123456789012345678"


def test_map_field_under_both_conventions() -> None:
    assert map_field("2nd Payment %", Convention.RAW) == "2nd Payment %"
    assert map_field("2nd Payment %", Convention.NORMALIZED) == "2nd_payment_"


def test_map_field_is_stable() -> None:
    names = ["Created Date", "Modified Date", "Linked Agent", "amount (RM)"]
    first = [map_field(name, Convention.NORMALIZED) for name in names]
    second = [map_field(name, Convention.NORMALIZED) for name in names]
    assert first == second
    assert first == ["created_date", "modified_date", "linked_agent", "amount_rm_"]


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-05-01", datetime(2024, 5, 1)),
        ("2024-05-01T10:20:30", datetime(2024, 5, 1, 10, 20, 30)),
        ("2024-05-01T10:20:30.123Z", datetime(2024, 5, 1, 10, 20, 30, 123000, tzinfo=timezone.utc)),
        (
            "2024-05-01T10:20:30+08:00",
            datetime(2024, 5, 1, 10, 20, 30, tzinfo=timezone(timedelta(hours=8))),
        ),
    ],
)
def test_iso_dates_become_timestamps(value: str, expected: datetime) -> None:
    assert coerce_value(value) == expected


def test_malformed_dates_keep_the_string() -> None:
    assert coerce_value("2024-13-45") == "2024-13-45"
    assert coerce_value("next tuesday") == "next tuesday"


def test_arrays_and_objects() -> None:
    linked = ["1700000000000x123456789012345678"]
    assert coerce_value(linked, "Agent") == linked
    assert coerce_value(["a", "b"], "Tags") == json.dumps(["a", "b"])
    assert coerce_value([], "Tags") == "[]"
    assert json.loads(coerce_value({"lat": 3.1, "lng": 101.6})) == {"lat": 3.1, "lng": 101.6}


def test_primitives_pass_through() -> None:
    assert coerce_value(None) is None
    assert coerce_value(12.5) == 12.5
    assert coerce_value(True) is True
    assert coerce_value("plain text") == "plain text"


def test_map_record_normalized() -> None:
    mapped = map_record(
        {"_id": RECORD_ID, "Amount": 10, "Created Date": "2024-05-01", "Tags": ["x"]},
        Convention.NORMALIZED,
    )
    assert mapped.id_column == "bubble_id"
    assert mapped.row() == {
        "bubble_id": RECORD_ID,
        "amount": 10,
        "created_date": datetime(2024, 5, 1),
        "tags": '["x"]',
    }
    assert mapped.sources["created_date"] == "Created Date"


def test_map_record_raw_keeps_names() -> None:
    mapped = map_record({"_id": RECORD_ID, "Full Name": "Ali"}, Convention.RAW)
    assert mapped.row() == {"_id": RECORD_ID, "Full Name": "Ali"}


def test_map_record_requires_id() -> None:
    with pytest.raises(MissingExternalIdError):
        map_record({"Name": "no id"}, Convention.NORMALIZED)


def test_colliding_columns_are_reported(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="bubble.ingestor.mapping")

    mapped = map_record(
        {"_id": RECORD_ID, "Total Amount": 10, "total_amount": 12},
        Convention.NORMALIZED,
    )

    assert mapped.values == {"total_amount": 12}
    assert mapped.sources["total_amount"] == "total_amount"
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "'Total Amount'" in warnings[0] and "'total_amount'" in warnings[0]


def test_distinct_columns_do_not_warn(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="bubble.ingestor.mapping")

    map_record({"_id": RECORD_ID, "Total Amount": 10, "Paid": True}, Convention.NORMALIZED)

    assert not [r for r in caplog.records if r.levelno == logging.WARNING]


def test_identifier_helpers() -> None:
    assert safe_table_name("Invoice Item") == "invoice_item"
    assert title_case_guess("bonus_pct") == "Bonus Pct"
    assert validate_identifier("2nd Payment %") == "2nd Payment %"


@pytest.mark.parametrize("name", ["Paid?", "Status: Open", "Ref #1 [old]", 'say "hi"', "Größe"])
def test_any_quotable_identifier_is_accepted(name: str) -> None:
    assert validate_identifier(name) == name


@pytest.mark.parametrize("name", ["", "a\x00b", "x" * 64, "é" * 32])
def test_unusable_identifiers_are_refused(name: str) -> None:
    with pytest.raises(InvalidIdentifierError):
        validate_identifier(name)
