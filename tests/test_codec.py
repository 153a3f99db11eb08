"""Tests for the record codec and record schema models."""

from __future__ import annotations

from datetime import date

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from xlmirror.contracts.records import ENTRY_SCHEMA, FieldSpec, Record, RecordSchema
from xlmirror.engine import codec


# ---------------------------------------------------------------------------
# parse_int / parse_date
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("42", 42),
        (" 7 ", 7),
        ("-3", -3),
        ("12 pcs", 12),
        ("1.000", 1000),
        ("-5kg", -5),
        ("5-3", 53),
        ("abc", 0),
        ("", 0),
        ("-", 0),
        (None, 0),
        (9, 9),
    ],
)
def test_parse_int(raw, expected):
    assert codec.parse_int(raw) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-03-01", date(2024, 3, 1)),
        ("2024/3/1", date(2024, 3, 1)),
        ("01.03.2024", date(2024, 3, 1)),
        ("3/1/2024", date(2024, 3, 1)),
        ("2024-03-01T08:30:00", date(2024, 3, 1)),
        ("not a date", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_date(raw, expected):
    assert codec.parse_date(raw) == expected


@given(st.integers(min_value=-(10**12), max_value=10**12))
def test_parse_int_of_str_is_identity(n: int):
    assert codec.parse_int(str(n)) == n


# ---------------------------------------------------------------------------
# encode / decode
# ---------------------------------------------------------------------------


def test_decode_fills_missing_fields(schema: RecordSchema):
    record = codec.decode(["2024-01-01"], schema)
    assert record.to_dict() == {"Date": "2024-01-01", "Item": "", "Qty": 0}


def test_decode_never_raises_on_content(schema: RecordSchema):
    record = codec.decode(["garbage", "x", "lots"], schema)
    assert record["Qty"] == 0
    assert record["Date"] == "garbage"


def test_to_row_and_from_row(schema: RecordSchema):
    record = schema.new_record(Date="2024-01-01", Item="bolt", Qty=5)
    row = codec.to_row(12, record, schema)
    assert row == ["12", "2024-01-01", "bolt", "5"]
    identifier, back = codec.from_row(row, schema)
    assert identifier == 12
    assert back == record


def test_unmirrored_row_has_empty_identifier(schema: RecordSchema):
    row = codec.to_row(None, schema.new_record(), schema)
    assert row == ["", "", "", "0"]
    assert codec.from_row(row, schema)[0] is None


@pytest.mark.parametrize(("text", "expected"), [("5", 5), (" 8 ", 8), ("", None), ("0", None), ("-2", None), ("x1", None)])
def test_parse_identifier(text: str, expected):
    assert codec.parse_identifier(text) == expected


safe_text = st.text(alphabet=st.characters(blacklist_categories=("Cs",)), max_size=20)


@given(
    st.fixed_dictionaries(
        {
            "Date": safe_text,
            "Shift": safe_text,
            "CodeReference": safe_text,
            "MachineNumber": safe_text,
            "Area": safe_text,
            "AutoAdjustment": safe_text,
            "TopTec": safe_text,
            "FinalTester": safe_text,
            "Packaging": safe_text,
            "QuantityInput": st.integers(-(10**9), 10**9),
            "QuantityGood": st.integers(-(10**9), 10**9),
            "QuantityBad": st.integers(-(10**9), 10**9),
            "Reject": st.integers(-(10**9), 10**9),
        }
    )
)
def test_decode_inverts_encode(values: dict):
    record = ENTRY_SCHEMA.new_record(**values)
    assert codec.decode(codec.encode(record, ENTRY_SCHEMA), ENTRY_SCHEMA) == record


# ---------------------------------------------------------------------------
# Schema models
# ---------------------------------------------------------------------------


def test_entry_schema_shape():
    assert len(ENTRY_SCHEMA) == 13
    assert ENTRY_SCHEMA.headers[0] == "Id"
    integers = [f.name for f in ENTRY_SCHEMA.fields if f.kind == "integer"]
    assert integers == ["QuantityInput", "QuantityGood", "QuantityBad", "Reject"]


@pytest.mark.parametrize(
    "names",
    [[], ["A", "a"], ["Id", "Value"], ["id"]],
)
def test_schema_rejects_bad_field_lists(names: list[str]):
    with pytest.raises(ValidationError):
        RecordSchema(fields=tuple(FieldSpec(name=n) for n in names))


def test_new_record_type_checks(schema: RecordSchema):
    with pytest.raises(ValueError):
        schema.new_record(Qty="five")
    with pytest.raises(ValueError):
        schema.new_record(Item=3)
    with pytest.raises(ValueError):
        schema.new_record(Colour="red")


def test_record_is_frozen(schema: RecordSchema):
    record: Record = schema.new_record(Item="a")
    with pytest.raises(ValidationError):
        record.values = {}
