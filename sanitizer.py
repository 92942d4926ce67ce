"""Heuristic PII detection and masking for sample rows.

Detection and substitution are both driven by ordered rule tables so each
heuristic can be tested without going through the masking control flow.
"""

from __future__ import annotations

import numbers
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional

# ------------------------------------------------------------
# Detection
# ------------------------------------------------------------
PII_NAME_FRAGMENTS = (
    "name",
    "email",
    "phone",
    "mobile",
    "ssn",
    "social_security",
    "passport",
    "first_name",
    "lastname",
    "last_name",
    "fullname",
    "full_name",
    "middle_name",
    "dob",
    "birth",
    "address",
    "street",
    "city",
    "state",
    "zip",
    "postal",
    "country",
    "username",
    "user_name",
    "password",
    "passcode",
    "token",
    "secret",
    "api_key",
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGIT_RE = re.compile(r"\D")


def _meta_get(column_meta: Any, key: str) -> Any:
    if column_meta is None:
        return None
    if isinstance(column_meta, Mapping):
        return column_meta.get(key)
    return getattr(column_meta, key, None)


def is_date_type(column_meta: Any) -> bool:
    data_type = str(_meta_get(column_meta, "data_type") or "").lower()
    return "date" in data_type or "time" in data_type


def looks_like_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL_RE.match(value))


def looks_like_phone(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    digits = _NON_DIGIT_RE.sub("", value)
    return 10 <= len(digits) <= 15


def has_pii_name(column_name: str) -> bool:
    name = (column_name or "").lower()
    return any(fragment in name for fragment in PII_NAME_FRAGMENTS)


def is_likely_pii(column_meta: Any, column_name: str, value: Any) -> bool:
    if _meta_get(column_meta, "is_primary"):
        return False
    if is_date_type(column_meta):
        return False
    if has_pii_name(column_name):
        return True
    return looks_like_email(value) or looks_like_phone(value)


# ------------------------------------------------------------
# Substitution
# ------------------------------------------------------------
class MaskRule(NamedTuple):
    label: str
    matches: Callable[[str], bool]
    substitute: Callable[[int], Any]


def _contains(*fragments: str) -> Callable[[str], bool]:
    return lambda name: any(f in name for f in fragments)


MASK_RULES = (
    MaskRule("email", _contains("email"), lambda n: f"user{n}@example.com"),
    MaskRule("phone", _contains("phone", "mobile"), lambda n: f"555010{n:03d}"),
    MaskRule("first_name", _contains("first_name"), lambda n: f"FirstName{n}"),
    MaskRule("last_name", _contains("last_name", "lastname"), lambda n: f"LastName{n}"),
    MaskRule("full_name", _contains("full_name", "fullname"), lambda n: f"Person {n}"),
    MaskRule("name", lambda name: name == "name" or name.endswith("_name"), lambda n: f"Name{n}"),
    MaskRule("address", _contains("address", "street"), lambda n: f"{100 + n} Example St"),
    MaskRule("city", _contains("city"), lambda n: f"City{n}"),
    MaskRule("state", _contains("state"), lambda n: f"State{n}"),
    MaskRule("zip", _contains("zip", "postal"), lambda n: f"000{n:02d}"),
    MaskRule("country", _contains("country"), lambda n: f"Country{n}"),
    MaskRule("username", _contains("username", "user_name"), lambda n: f"user_{n}"),
    MaskRule("secret", _contains("password", "passcode", "token", "secret"), lambda n: f"redacted_{n}"),
)

_RULES_BY_LABEL = {rule.label: rule for rule in MASK_RULES}


def match_mask_rule(column_name: str) -> Optional[MaskRule]:
    """First substitution rule whose predicate accepts the column name."""
    name = (column_name or "").lower()
    for rule in MASK_RULES:
        if rule.matches(name):
            return rule
    return None


def build_dummy_value(column_name: str, value: Any, row_index: int) -> Any:
    if value is None:
        return value

    n = row_index + 1

    # Email-shaped values are masked as emails whatever the column is called.
    if looks_like_email(value):
        return _RULES_BY_LABEL["email"].substitute(n)

    rule = match_mask_rule(column_name)
    if rule is not None:
        return rule.substitute(n)

    if looks_like_phone(value):
        return _RULES_BY_LABEL["phone"].substitute(n)

    if isinstance(value, str):
        return f"redacted_{n}"
    if isinstance(value, bool):
        return False
    if isinstance(value, numbers.Number):
        return n
    return f"redacted_{n}"


def classify_and_mask(column_meta: Any, column_name: str, value: Any, row_index: int) -> Any:
    """Return ``value`` unchanged, or a deterministic substitute when it looks sensitive."""
    if is_likely_pii(column_meta, column_name, value):
        return build_dummy_value(column_name, value, row_index)
    return value


def sanitize_samples(
    schema_rows: Iterable[Any],
    table_samples: Mapping[str, List[Dict[str, Any]]],
) -> Dict[str, List[Dict[str, Any]]]:
    """Mask every cell of every sample row, looking up column metadata per table."""
    column_meta: Dict[str, Dict[str, Any]] = {}
    for row in schema_rows:
        table = _meta_get(row, "table_name")
        column_meta.setdefault(table, {})[_meta_get(row, "column_name")] = row

    sanitized: Dict[str, List[Dict[str, Any]]] = {}
    for table_name, rows in table_samples.items():
        table_meta = column_meta.get(table_name, {})
        sanitized[table_name] = [
            {
                column: classify_and_mask(table_meta.get(column), column, value, row_index)
                for column, value in row.items()
            }
            for row_index, row in enumerate(rows)
        ]
    return sanitized
