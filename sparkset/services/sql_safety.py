"""
Pattern-based SQL safety gate.

This is conservative gatekeeping, not a SQL parser. String literals and
comments are masked before looking for structural semicolons; the prefix and
keyword checks run on a comment-free copy that keeps string literals.
"""
from __future__ import annotations

import enum
import re

from sparkset.services.errors import SafetyViolation


class SafetyMode(str, enum.Enum):
    READ_ONLY = "read-only"
    ACTION = "action"


READ_ONLY_PREFIXES = ("select", "with", "show", "describe", "explain")

_TRAILING_SEMICOLONS_RE = re.compile(r";+\s*$")
_SINGLE_QUOTED_RE = re.compile(r"'([^'\\]|\\.)*'")
_DOUBLE_QUOTED_RE = re.compile(r'"([^"\\]|\\.)*"')
_LINE_COMMENT_RE = re.compile(r"--[^\n]*")
_BLOCK_COMMENT_RE = re.compile(r"/\*[\s\S]*?\*/")
# Literals are matched first so comment markers inside them are left alone.
_LITERAL_OR_COMMENT_RE = re.compile(r"""'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*"|--[^\n]*|/\*[\s\S]*?\*/""")

_WRITE_KEYWORDS_RE = re.compile(
    r"\b(insert|update|delete|drop|alter|truncate|create|grant|revoke)\b", re.IGNORECASE
)
_DDL_KEYWORDS_RE = re.compile(r"\b(drop|alter|truncate|create|grant|revoke)\b", re.IGNORECASE)

MULTI_STATEMENT_PREVIEW_CHARS = 200


def strip_trailing_semicolons(sql: str) -> str:
    return _TRAILING_SEMICOLONS_RE.sub("", (sql or "").strip()).strip()


def scan_copy(sql: str) -> str:
    """Return ``sql`` with string literals replaced and comments removed."""
    cleaned = _SINGLE_QUOTED_RE.sub("__STRING__", sql)
    cleaned = _DOUBLE_QUOTED_RE.sub("__STRING__", cleaned)
    cleaned = _LINE_COMMENT_RE.sub("", cleaned)
    return _BLOCK_COMMENT_RE.sub("", cleaned)


def strip_comments(sql: str) -> str:
    """Return ``sql`` without comments; string literals are kept verbatim."""

    def _keep_literals(match: "re.Match[str]") -> str:
        token = match.group(0)
        return token if token[0] in "'\"" else " "

    return _LITERAL_OR_COMMENT_RE.sub(_keep_literals, sql).strip()


def has_multiple_statements(sql: str) -> bool:
    return ";" in scan_copy(strip_trailing_semicolons(sql))


def _multi_statement_message(sql: str) -> str:
    preview = sql[:MULTI_STATEMENT_PREVIEW_CHARS]
    suffix = "..." if len(sql) > MULTI_STATEMENT_PREVIEW_CHARS else ""
    return f"Multi-statement queries are not allowed. SQL: {preview}{suffix}"


def ensure_safe_sql(sql: str, mode: SafetyMode = SafetyMode.READ_ONLY) -> str:
    """
    Validate one statement for the given execution path.

    Returns the statement with trailing semicolons removed, or raises
    ``SafetyViolation``.
    """
    trimmed = strip_trailing_semicolons(sql)
    if ";" in scan_copy(trimmed):
        raise SafetyViolation(_multi_statement_message(trimmed))

    checked = strip_comments(trimmed)
    if mode == SafetyMode.READ_ONLY:
        if not checked.lower().startswith(READ_ONLY_PREFIXES):
            raise SafetyViolation("Only read-only queries are allowed (SELECT/SHOW/DESCRIBE/EXPLAIN)")
        if _WRITE_KEYWORDS_RE.search(checked):
            raise SafetyViolation("Write operations are blocked in query runner")
    elif _DDL_KEYWORDS_RE.search(checked):
        raise SafetyViolation("DDL operations (CREATE/ALTER/DROP) are not allowed in Actions")

    return trimmed


def ensure_read_only(sql: str) -> str:
    return ensure_safe_sql(sql, SafetyMode.READ_ONLY)


def ensure_action_safe(sql: str) -> str:
    return ensure_safe_sql(sql, SafetyMode.ACTION)


def is_read_only(sql: str) -> bool:
    try:
        ensure_read_only(sql)
    except SafetyViolation:
        return False
    return True
