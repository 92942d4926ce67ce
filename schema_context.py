"""Markdown rendering of per-table schema sections.

The full snapshot and the per-query partial context share one table layout:
a column table with key markers, then up to ten sample rows.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Iterable, List, Mapping, Optional, Sequence


def _attr(obj: Any, key: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def format_scalar(value: Any) -> str:
    if value is None:
        return "`null`"
    if isinstance(value, bool):
        return f"`{'true' if value else 'false'}`"
    if isinstance(value, (int, float)):
        return f"`{value}`"
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return f"`{value.isoformat()}`"
    s = str(value).replace("|", "\\|").replace("\r\n", " ").replace("\n", " ")
    return f"`{s}`"


def column_keys(column: Any) -> str:
    keys = [k for k, flag in (("PK", _attr(column, "is_primary")), ("FK", _attr(column, "is_foreign"))) if flag]
    return ", ".join(keys) or "-"


def column_reference(column: Any) -> str:
    if _attr(column, "is_foreign") and _attr(column, "foreign_table") and _attr(column, "foreign_column"):
        return f"{_attr(column, 'foreign_table')}.{_attr(column, 'foreign_column')}"
    return "-"


def render_table_section(
    table_name: str,
    columns: Sequence[Any],
    sample_rows: Sequence[Mapping[str, Any]],
    description: Optional[str] = None,
) -> List[str]:
    lines = [f"### {table_name}", ""]
    if description:
        lines.extend([description, ""])

    lines.extend(["Columns:", ""])
    if not columns:
        lines.append("- No columns found.")
    else:
        lines.append("| Name | Type | Keys | References |")
        lines.append("|---|---|---|---|")
        for column in columns:
            lines.append(
                f"| {_attr(column, 'column_name')} | {_attr(column, 'data_type')} "
                f"| {column_keys(column)} | {column_reference(column)} |"
            )

    lines.extend(["", "Top 10 records:", ""])
    if not sample_rows:
        lines.extend(["_No rows found._", ""])
        return lines

    headers = list(sample_rows[0].keys())
    lines.append(f"| {' | '.join(headers)} |")
    lines.append(f"| {' | '.join('---' for _ in headers)} |")
    for row in sample_rows:
        lines.append(f"| {' | '.join(format_scalar(row.get(col)) for col in headers)} |")
    lines.append("")
    return lines


def render_partial_context(selection: Iterable[str], metadata: Mapping[str, Any]) -> str:
    """Schema context limited to the selected tables; unknown names are skipped."""
    lines = ["## Relevant Table Details", ""]
    for table_name in selection:
        meta = metadata.get(table_name)
        if meta is None:
            continue
        lines.extend(
            render_table_section(
                table_name,
                _attr(meta, "columns") or [],
                _attr(meta, "sample_rows") or [],
                description=_attr(meta, "description"),
            )
        )
    return "\n".join(lines)
