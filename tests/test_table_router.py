import pytest
from prometheus_client import REGISTRY

from errors import ClassificationParseError, CompletionError
from snapshot import SchemaColumn, TableMetadata
from table_router import (
    SelectionKind,
    TableRouter,
    decode_table_selection,
    follow_up_reason,
    is_follow_up,
    parse_table_names,
)

METADATA = {
    "customers": TableMetadata(
        description="Customer accounts.",
        columns=[SchemaColumn(table_name="customers", column_name="email", data_type="TEXT")],
    ),
    "orders": TableMetadata(columns=[SchemaColumn(table_name="orders", column_name="total", data_type="REAL")]),
}

# long enough and free of continuation markers
FRESH_QUERY = "Show me the full list of products in the catalogue please"


def _decisions(outcome):
    return REGISTRY.get_sample_value("dbexplorer_router_decisions_total", {"outcome": outcome}) or 0.0


@pytest.mark.parametrize(
    "query,reason",
    [
        ("What about last month?", "continuation_marker"),
        ("Show those grouped by region for every sales office", "continuation_marker"),
        ("Include refunds as well as the shipping fees and taxes", "continuation_marker"),
        ("revenue by month?", "short_query"),
        (FRESH_QUERY, None),
        ("List all customers who signed up during the last quarter of the year", None),
    ],
)
def test_follow_up_rules(query, reason):
    assert follow_up_reason(query) == reason
    assert is_follow_up(query) is (reason is not None)


def test_decode_selected_drops_unknown_names():
    sel = decode_table_selection('["orders", "ghost_table", "orders"]', ["orders", "customers"])
    assert sel.kind is SelectionKind.SELECTED
    assert sel.tables == ("orders",)
    assert sel.dropped == ("ghost_table",)

    mixed = decode_table_selection('["orders", null, 3, "customers"]', ["orders", "customers"])
    assert mixed.kind is SelectionKind.SELECTED
    assert mixed.tables == ("orders", "customers")


def test_decode_fenced_and_empty():
    assert decode_table_selection('```json\n["customers"]\n```', ["customers"]).tables == ("customers",)
    assert decode_table_selection("[]", ["customers"]).kind is SelectionKind.FALLBACK
    assert decode_table_selection('["ghost"]', ["customers"]).kind is SelectionKind.FALLBACK
    assert decode_table_selection("[1, 2]", ["customers"]).kind is SelectionKind.FALLBACK


@pytest.mark.parametrize("raw", ["", "orders", '{"tables": ["orders"]}', '["orders"'])
def test_decode_malformed(raw):
    assert decode_table_selection(raw, ["orders"]).kind is SelectionKind.MALFORMED
    with pytest.raises(ClassificationParseError):
        parse_table_names(raw)


def test_no_metadata_falls_back_without_calls(fake_llm, topic_cache):
    llm = fake_llm()
    router = TableRouter(llm, topic_cache)

    for metadata in (None, {}):
        result = router.route("which table has emails?", "c1", metadata)
        assert result.is_fallback
        assert result.reason == "no_metadata"
    assert llm.calls == []


def test_cache_hit_on_follow_up_skips_classification(fake_llm, topic_cache):
    llm = fake_llm()
    topic_cache.set("c1", ["orders"])
    before = _decisions("cache_hit")

    result = TableRouter(llm, topic_cache).route("What about last month?", "c1", METADATA)

    assert result.tables == ("orders",)
    assert result.cache_hit
    assert llm.calls == []
    assert _decisions("cache_hit") == before + 1


def test_non_follow_up_reclassifies_and_overwrites_cache(fake_llm, topic_cache):
    llm = fake_llm(classify=['["customers"]'])
    topic_cache.set("c1", ["orders"])

    result = TableRouter(llm, topic_cache).route(FRESH_QUERY, "c1", METADATA)

    assert result.tables == ("customers",)
    assert not result.cache_hit
    assert topic_cache.get("c1").tables == ("customers",)
    assert llm.purposes() == ["classify"]
    assert llm.calls[0]["temperature"] == 0.0


def test_hallucinated_table_dropped(fake_llm, topic_cache):
    llm = fake_llm(classify=['["orders","ghost_table"]'])
    result = TableRouter(llm, topic_cache).route(FRESH_QUERY, "c1", METADATA)
    assert result.tables == ("orders",)
    assert topic_cache.get("c1").tables == ("orders",)


def test_prompt_lists_tables_with_descriptions(fake_llm, topic_cache):
    llm = fake_llm(classify=["[]"])
    TableRouter(llm, topic_cache).route(FRESH_QUERY, "c1", METADATA)
    prompt = llm.calls[0]["messages"][0].content
    assert "- customers: Customer accounts." in prompt
    assert "- orders: columns: total" in prompt
    assert FRESH_QUERY in prompt


@pytest.mark.parametrize(
    "reply,reason",
    [
        ("[]", "empty_selection"),
        ("not json at all", "malformed"),
        (CompletionError("timeout", purpose="classify"), "classifier_error"),
    ],
)
def test_undecided_classification_keeps_existing_cache(fake_llm, topic_cache, reply, reason):
    llm = fake_llm(classify=[reply])
    topic_cache.set("c1", ["orders"])

    result = TableRouter(llm, topic_cache).route(FRESH_QUERY, "c1", METADATA)

    assert result.is_fallback
    assert result.reason == reason
    assert topic_cache.get("c1").tables == ("orders",)


def test_stale_cached_tables_trigger_classification(fake_llm, topic_cache):
    llm = fake_llm(classify=['["customers"]'])
    topic_cache.set("c1", ["dropped_table"])

    result = TableRouter(llm, topic_cache).route("and those?", "c1", METADATA)

    assert result.tables == ("customers",)
    assert llm.purposes() == ["classify"]


def test_non_string_items_in_classification_are_ignored(fake_llm, topic_cache):
    llm = fake_llm(classify=['["orders", null, 3]'])
    result = TableRouter(llm, topic_cache).route(FRESH_QUERY, "c1", METADATA)
    assert result.tables == ("orders",)
    assert topic_cache.get("c1").tables == ("orders",)
