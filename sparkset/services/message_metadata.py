"""
Versioned metadata stored next to assistant messages that carry a query result.

``build_message_metadata`` always writes the current schema version with both
a nested ``result`` object and flat mirrors for older readers.
``parse_message_metadata`` reads every historical shape and returns ``None``
for anything that is not a query result.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

CONVERSATION_MESSAGE_METADATA_VERSION = 2
CONVERSATION_MESSAGE_METADATA_KIND_QUERY_RESULT = "query-result"


@dataclass
class ParsedQueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    sql: Optional[str] = None
    summary: Optional[str] = None
    row_count: Optional[int] = None
    has_result: Optional[bool] = None
    datasource_id: Optional[int] = None
    ai_provider_id: Optional[int] = None
    limit: Optional[int] = None


@dataclass
class ParsedMessageMetadata:
    schema_version: int
    kind: str
    row_count: Optional[int]
    sql: Optional[str] = None
    result: Optional[ParsedQueryResult] = None
    summary: Optional[str] = None
    has_result: Optional[bool] = None
    datasource_id: Optional[int] = None
    ai_provider_id: Optional[int] = None
    limit: Optional[int] = None


# ---------------------------
# Scalar coercion
# ---------------------------

def _to_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def parse_positive_int(value: Any, allow_zero: bool = False) -> Optional[int]:
    """Accept ints, integral floats and numeric strings such as ``"3"`` or ``"0"``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        number = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        if not math.isfinite(parsed) or not parsed.is_integer():
            return None
        number = int(parsed)
    else:
        return None

    if number > 0 or (allow_zero and number == 0):
        return number
    return None


def parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 0:
            return False
        if value == 1:
            return True
        return None
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("true", "1"):
            return True
        if normalized in ("false", "0"):
            return False
    return None


def _parse_rows(value: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(value, list):
        return None
    return [dict(row) if isinstance(row, Mapping) else {} for row in value]


# ---------------------------
# Parse
# ---------------------------

def _parse_nested_result(value: Any, fallback_sql: Optional[str]) -> Dict[str, Any]:
    if isinstance(value, list):
        # Legacy shape: the result was stored as a bare rows array.
        rows = _parse_rows(value) or []
        row_count = len(rows)
        return {
            "result": ParsedQueryResult(rows=rows, sql=fallback_sql),
            "row_count": row_count,
            "has_result": row_count > 0,
        }
    if not isinstance(value, Mapping):
        return {}

    rows = _parse_rows(value.get("rows"))
    has_result = parse_boolean(value.get("hasResult"))
    row_count = parse_positive_int(value.get("rowCount"), allow_zero=True)
    datasource_id = parse_positive_int(value.get("datasourceId"))
    ai_provider_id = parse_positive_int(value.get("aiProviderId"))
    limit = parse_positive_int(value.get("limit"))
    summary = _to_text(value.get("summary"))
    sql = _to_text(value.get("sql"))

    parsed: Dict[str, Any] = {
        "row_count": row_count,
        "summary": summary,
        "has_result": has_result,
        "datasource_id": datasource_id,
        "ai_provider_id": ai_provider_id,
        "limit": limit,
    }
    if rows is None:
        return parsed

    effective_count = row_count if row_count is not None else len(rows)
    parsed["result"] = ParsedQueryResult(
        rows=rows,
        sql=sql,
        summary=summary,
        row_count=row_count,
        has_result=has_result,
        datasource_id=datasource_id,
        ai_provider_id=ai_provider_id,
        limit=limit,
    )
    parsed["row_count"] = effective_count
    parsed["has_result"] = has_result if has_result is not None else effective_count > 0
    return parsed


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def parse_message_metadata(metadata: Any) -> Optional[ParsedMessageMetadata]:
    if not isinstance(metadata, Mapping):
        return None

    version = parse_positive_int(
        _first_present(metadata.get("schemaVersion"), metadata.get("version"), metadata.get("metadataVersion"))
    )
    kind = _to_text(metadata.get("kind"))
    if kind and kind != CONVERSATION_MESSAGE_METADATA_KIND_QUERY_RESULT:
        return None

    raw_sql = _to_text(metadata.get("sql"))
    nested = _parse_nested_result(metadata.get("result"), raw_sql)
    root_has_result = parse_boolean(metadata.get("hasResult"))

    row_count = _first_present(
        nested.get("row_count"), parse_positive_int(metadata.get("rowCount"), allow_zero=True)
    )
    summary = _first_present(nested.get("summary"), _to_text(metadata.get("summary")))
    has_result = _first_present(
        root_has_result, nested.get("has_result"), row_count > 0 if row_count is not None else None
    )
    datasource_id = _first_present(nested.get("datasource_id"), parse_positive_int(metadata.get("datasourceId")))
    ai_provider_id = _first_present(nested.get("ai_provider_id"), parse_positive_int(metadata.get("aiProviderId")))
    limit = _first_present(nested.get("limit"), parse_positive_int(metadata.get("limit")))
    result: Optional[ParsedQueryResult] = nested.get("result")

    has_query_shape = any(
        value is not None
        for value in (raw_sql, result, row_count, summary, datasource_id, ai_provider_id, limit, root_has_result)
    )
    if not has_query_shape:
        return None

    return ParsedMessageMetadata(
        schema_version=version or CONVERSATION_MESSAGE_METADATA_VERSION,
        kind=CONVERSATION_MESSAGE_METADATA_KIND_QUERY_RESULT,
        row_count=row_count,
        sql=raw_sql or (result.sql if result else None),
        result=result,
        summary=summary,
        has_result=has_result,
        datasource_id=datasource_id,
        ai_provider_id=ai_provider_id,
        limit=limit,
    )


# ---------------------------
# Legacy reply text
# ---------------------------

_ZERO_RESULT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"no\s+rows?",
        r"no\s+matching\s+rows?",
        r"no\s+matching\s+records?",
        r"no\s+data\s+returned",
        r"no\s+records?\s+found",
        r"no\s+results?\s+found",
        r"no\s+data\s+found",
        r"did(?:\s+not|n(?:'|’)?t)\s+return(?:\s+any)?\s+rows?",
        r"没有\s*查询到?结果",
        r"未查询到.*?(?:记录|结果|数据)",
        r"未找到.*?(?:记录|结果|数据)",
        r"查无.*?(?:记录|结果|数据)",
        r"查询结果.*为空",
        r"结果.*为空",
        r"暂未\s*查到.*结果",
        r"未查询到",
        r"没有\s*返回.*(?:数据|结果)",
        r"(?<![\d,])0\s*条.*(?:记录|结果|数据)",
        r"found\s+0\s*(?:records?|rows?)",
        r"returned\s+0\s*rows?",
        r"returned\s+0\s*records?",
    )
]

_ROW_COUNT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(\d[\d,]*)\s*条数据",
        r"(\d[\d,]*)\s*条结果",
        r"返回\s*(\d[\d,]*)\s*条",
        r"找到\s*(\d[\d,]*)\s*条",
        r"共\s*(\d[\d,]*)\s*条",
        r"found\s+(\d[\d,]*)\s*records?",
        r"found\s+(\d[\d,]*)\s*rows?",
        r"(\d[\d,]*)\s*records?\s+found",
        r"returned\s+(\d[\d,]*)\s*rows?",
        r"(\d[\d,]*)\s*rows?\s+returned",
        r"got\s+(\d[\d,]*)\s*rows?",
    )
]


def parse_legacy_row_count(content: str) -> Optional[int]:
    """Recover a row count from reply text written before metadata existed."""
    if not content:
        return None
    if any(pattern.search(content) for pattern in _ZERO_RESULT_PATTERNS):
        return 0
    for pattern in _ROW_COUNT_PATTERNS:
        match = pattern.search(content)
        if match:
            digits = match.group(1).replace(",", "").strip()
            if digits.isdigit():
                return int(digits)
    return None


def get_message_row_count(metadata: Any, fallback_content: Optional[str] = None) -> Optional[int]:
    parsed = parse_message_metadata(metadata)
    if parsed is not None:
        if parsed.row_count is not None:
            return parsed.row_count
        if parsed.has_result is False:
            return 0
    if not fallback_content:
        return None
    return parse_legacy_row_count(fallback_content)


# ---------------------------
# Build
# ---------------------------

def build_message_metadata(
    result: Mapping[str, Any],
    datasource_id: Optional[int] = None,
    ai_provider_id: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Build the metadata envelope for a finished query.

    ``result`` uses the wire keys: ``sql``, ``rows`` and optionally
    ``rowCount``, ``summary``, ``datasourceId``, ``aiProviderId``, ``limit``.
    """
    rows = _parse_rows(result.get("rows")) or []
    row_count = parse_positive_int(result.get("rowCount"), allow_zero=True)
    if row_count is None:
        row_count = len(rows)
    has_result = row_count > 0
    datasource_id = parse_positive_int(result.get("datasourceId")) or datasource_id
    ai_provider_id = parse_positive_int(result.get("aiProviderId")) or ai_provider_id
    limit = parse_positive_int(result.get("limit")) or limit
    sql = result.get("sql")
    summary = result.get("summary")

    context: Dict[str, Any] = {}
    if datasource_id:
        context["datasourceId"] = datasource_id
    if ai_provider_id:
        context["aiProviderId"] = ai_provider_id
    if limit:
        context["limit"] = limit

    nested: Dict[str, Any] = {"sql": sql, "rows": rows}
    if summary:
        nested["summary"] = summary
    nested.update({"rowCount": row_count, "hasResult": has_result, **context})

    return {
        "schemaVersion": CONVERSATION_MESSAGE_METADATA_VERSION,
        "kind": CONVERSATION_MESSAGE_METADATA_KIND_QUERY_RESULT,
        "sql": sql,
        "rowCount": row_count,
        "summary": summary,
        "hasResult": has_result,
        "result": nested,
        **context,
    }
