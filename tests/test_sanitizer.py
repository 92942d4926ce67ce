from decimal import Decimal

import pytest

from sanitizer import (
    MASK_RULES,
    build_dummy_value,
    classify_and_mask,
    is_likely_pii,
    looks_like_email,
    looks_like_phone,
    match_mask_rule,
    sanitize_samples,
)


def test_primary_key_and_date_columns_never_masked():
    pk = {"data_type": "INTEGER", "is_primary": True}
    assert classify_and_mask(pk, "email", "alice@x.com", 0) == "alice@x.com"

    for data_type in ("DATE", "timestamp with time zone", "TIME"):
        meta = {"data_type": data_type, "is_primary": False}
        assert classify_and_mask(meta, "birth_date", "1990-01-01", 0) == "1990-01-01"


@pytest.mark.parametrize("column", ["email", "contact", "notes", "status"])
def test_email_shaped_values_masked_regardless_of_column(column):
    meta = {"data_type": "TEXT", "is_primary": False}
    assert classify_and_mask(meta, column, "someone@corp.io", 4) == "user5@example.com"


def test_ssn_is_redacted_without_shape_match():
    meta = {"data_type": "TEXT", "is_primary": False}
    assert is_likely_pii(meta, "ssn", "abc")
    assert classify_and_mask(meta, "ssn", "abc", 0) == "redacted_1"


def test_phone_shape_without_name_hint():
    meta = {"data_type": "TEXT", "is_primary": False}
    assert classify_and_mask(meta, "contact", "+1 (415) 555-0101", 2) == "555010003"


def test_name_rules_win_over_phone_shape():
    assert build_dummy_value("city", "4155550101", 0) == "City1"


def test_shape_helpers():
    assert looks_like_email("a@b.co")
    assert not looks_like_email("a@b")
    assert not looks_like_email(42)
    assert looks_like_phone("555-010-0001")
    assert not looks_like_phone("12345")
    assert not looks_like_phone("1" * 16)


@pytest.mark.parametrize(
    "column,expected",
    [
        ("first_name", "FirstName3"),
        ("lastname", "LastName3"),
        ("full_name", "Person 3"),
        ("name", "Name3"),
        ("product_name", "Name3"),
        ("street_address", "103 Example St"),
        ("zip_code", "00003"),
        ("country", "Country3"),
        ("username", "user_3"),
        ("api_token", "redacted_3"),
        ("mobile", "555010003"),
    ],
)
def test_rule_table_substitutes(column, expected):
    assert build_dummy_value(column, "x", 2) == expected


def test_rule_table_is_ordered():
    labels = [r.label for r in MASK_RULES]
    assert labels.index("first_name") < labels.index("name")
    assert match_mask_rule("first_name").label == "first_name"
    assert match_mask_rule("amount") is None


def test_type_fallbacks():
    # no rule matches these names, so the value type decides
    assert build_dummy_value("dob", "x", 0) == "redacted_1"
    assert build_dummy_value("dob", True, 0) is False
    assert build_dummy_value("dob", 1234, 6) == 7
    assert build_dummy_value("dob", 3.5, 0) == 1
    assert build_dummy_value("email", None, 0) is None
    assert build_dummy_value("passport", object(), 0) == "redacted_1"


def test_sanitize_samples_uses_per_table_metadata():
    schema = [
        {"table_name": "customers", "column_name": "id", "data_type": "INTEGER", "is_primary": True},
        {"table_name": "customers", "column_name": "email", "data_type": "TEXT", "is_primary": False},
        {"table_name": "orders", "column_name": "status", "data_type": "TEXT", "is_primary": False},
    ]
    samples = {
        "customers": [{"id": 1, "email": "alice@x.com"}, {"id": 2, "email": "bob@x.com"}],
        "orders": [{"status": "shipped"}],
    }
    out = sanitize_samples(schema, samples)
    assert out["customers"] == [{"id": 1, "email": "user1@example.com"}, {"id": 2, "email": "user2@example.com"}]
    assert out["orders"] == [{"status": "shipped"}]
    # input untouched
    assert samples["customers"][0]["email"] == "alice@x.com"


def test_non_primitive_values_in_flagged_columns_are_masked():
    meta = {"data_type": "NUMERIC", "is_primary": False}
    assert classify_and_mask(meta, "ssn", Decimal("123456789"), 0) == 1
    assert classify_and_mask(meta, "passport", Decimal("9.5"), 1) == 2

    json_meta = {"data_type": "JSONB", "is_primary": False}
    assert classify_and_mask(json_meta, "dob", {"y": 1990, "m": 4}, 0) == "redacted_1"
    assert classify_and_mask(json_meta, "api_key", ["k1", "k2"], 2) == "redacted_3"
