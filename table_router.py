"""Two-pass, cache-aware selection of the tables relevant to a chat turn.

Pass one reuses the conversation's cached table scope when the new message
reads like a follow-up. Otherwise pass two asks the model to classify the
query against the known tables. Anything the router cannot decide falls back
to the full schema snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from langchain_core.prompts import ChatPromptTemplate
from pydantic import TypeAdapter, ValidationError

from conversations import TopicCache
from errors import ClassificationParseError, CompletionError
from llm import LLMClient, strip_code_fences
from metrics import ROUTER_DECISIONS_TOTAL
from snapshot import TableMetadata

logger = logging.getLogger("dbexplorer.router")

CLASSIFY_TEMPERATURE = 0.0
CLASSIFY_MAX_TOKENS = 50

# ------------------------------------------------------------
# Follow-up heuristic
# ------------------------------------------------------------
FOLLOW_UP_MARKERS = (
    "those",
    "they",
    "it ",
    "these",
    "that ",
    "same",
    " also",
    "additionally",
    "furthermore",
    "what about",
    " and ",
)
SHORT_QUERY_TOKENS = 5


class FollowUpRule(NamedTuple):
    label: str
    matches: Callable[[str], bool]


FOLLOW_UP_RULES = (
    FollowUpRule("continuation_marker", lambda q: any(m in q for m in FOLLOW_UP_MARKERS)),
    FollowUpRule("short_query", lambda q: len(q.split()) < SHORT_QUERY_TOKENS),
)


def follow_up_reason(query: str) -> Optional[str]:
    """Label of the first follow-up rule the query satisfies, else None."""
    lower = (query or "").lower().strip()
    for rule in FOLLOW_UP_RULES:
        if rule.matches(lower):
            return rule.label
    return None


def is_follow_up(query: str) -> bool:
    return follow_up_reason(query) is not None


# ------------------------------------------------------------
# Classification decode
# ------------------------------------------------------------
class SelectionKind(str, Enum):
    SELECTED = "selected"
    FALLBACK = "fallback"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class TableSelection:
    kind: SelectionKind
    tables: Tuple[str, ...] = ()
    dropped: Tuple[str, ...] = ()


_names_adapter = TypeAdapter(List[Any])


def parse_table_names(raw: str) -> List[str]:
    """Decode a JSON array and keep its string items; raises ClassificationParseError."""
    try:
        items = _names_adapter.validate_json(strip_code_fences(raw))
    except ValidationError as e:
        raise ClassificationParseError(f"expected a JSON array of table names ({e.error_count()} error(s))", raw=raw) from e
    return [item for item in items if isinstance(item, str)]


def decode_table_selection(raw: str, known_tables: Sequence[str]) -> TableSelection:
    try:
        names = parse_table_names(raw)
    except ClassificationParseError:
        return TableSelection(SelectionKind.MALFORMED)

    known = set(known_tables)
    kept = tuple(dict.fromkeys(n for n in names if n in known))
    dropped = tuple(n for n in names if n not in known)
    if not kept:
        return TableSelection(SelectionKind.FALLBACK, dropped=dropped)
    return TableSelection(SelectionKind.SELECTED, tables=kept, dropped=dropped)


# ------------------------------------------------------------
# Router
# ------------------------------------------------------------
@dataclass(frozen=True)
class RouteResult:
    tables: Tuple[str, ...] = ()
    cache_hit: bool = False
    reason: str = ""

    @property
    def is_fallback(self) -> bool:
        return not self.tables

    @classmethod
    def fallback(cls, reason: str) -> "RouteResult":
        return cls(reason=reason)


route_prompt = ChatPromptTemplate.from_messages(
    [
        ("human",
         "You are a database query router. Given a user query, return a JSON array of table names needed to answer it.\n\n"
         "Tables:\n{table_list}\n\n"
         'Query: "{query}"\n\n'
         'Respond with ONLY a JSON array of relevant table names, e.g. ["table1", "table2"]. '
         "Return [] if no tables are clearly relevant."),
    ]
)


def describe_tables(metadata: Mapping[str, TableMetadata]) -> str:
    lines = []
    for name, meta in metadata.items():
        cols = ", ".join(c.column_name for c in meta.columns)
        lines.append(f"- {name}: {meta.description or f'columns: {cols}'}")
    return "\n".join(lines)


class TableRouter:
    def __init__(self, llm: LLMClient, cache: TopicCache):
        self.llm = llm
        self.cache = cache

    def classify(self, query: str, metadata: Mapping[str, TableMetadata]) -> TableSelection:
        reply = self.llm.complete(
            route_prompt.format_messages(table_list=describe_tables(metadata), query=query),
            temperature=CLASSIFY_TEMPERATURE,
            max_tokens=CLASSIFY_MAX_TOKENS,
            purpose="classify",
        )
        return decode_table_selection(reply.content, list(metadata.keys()))

    def route(
        self,
        query: str,
        conversation_id: str,
        metadata: Optional[Mapping[str, TableMetadata]],
    ) -> RouteResult:
        if not metadata:
            ROUTER_DECISIONS_TOTAL.labels(outcome="fallback").inc()
            logger.info("router_fallback", extra={"conversation_id": conversation_id, "reason": "no_metadata"})
            return RouteResult.fallback("no_metadata")

        cached = self.cache.get(conversation_id)
        if cached is not None:
            reason = follow_up_reason(query)
            tables = tuple(t for t in cached.tables if t in metadata)
            if reason and tables:
                ROUTER_DECISIONS_TOTAL.labels(outcome="cache_hit").inc()
                logger.info(
                    "router_cache_hit",
                    extra={"conversation_id": conversation_id, "tables": list(tables), "reason": reason},
                )
                return RouteResult(tables=tables, cache_hit=True, reason=reason)

        try:
            selection = self.classify(query, metadata)
        except CompletionError as e:
            ROUTER_DECISIONS_TOTAL.labels(outcome="fallback").inc()
            logger.warning("router_fallback", extra={"conversation_id": conversation_id, "reason": "classifier_error", "error": str(e)})
            return RouteResult.fallback("classifier_error")

        if selection.dropped:
            logger.info("router_dropped_unknown_tables", extra={"conversation_id": conversation_id, "tables": list(selection.dropped)})

        if selection.kind is not SelectionKind.SELECTED:
            ROUTER_DECISIONS_TOTAL.labels(outcome="fallback").inc()
            reason = "malformed" if selection.kind is SelectionKind.MALFORMED else "empty_selection"
            logger.info("router_fallback", extra={"conversation_id": conversation_id, "reason": reason})
            return RouteResult.fallback(reason)

        self.cache.set(conversation_id, list(selection.tables))
        ROUTER_DECISIONS_TOTAL.labels(outcome="classified").inc()
        logger.info("router_classified", extra={"conversation_id": conversation_id, "tables": list(selection.tables)})
        return RouteResult(tables=selection.tables, reason="classified")
