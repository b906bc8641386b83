"""Textual ``:name`` placeholder substitution for action SQL templates."""
from __future__ import annotations

import json
import re
from typing import Any, Mapping, Optional


def sql_literal(value: Any) -> str:
    """Encode one Python value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    encoded = json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return "'" + encoded.replace("'", "''") + "'"


def substitute_parameters(sql: str, parameters: Optional[Mapping[str, Any]]) -> str:
    """
    Replace every ``:name`` placeholder in ``sql`` with a quoted literal.

    Longer names are substituted first so ``:user_id`` is never clobbered by
    ``:user``. The result is plain text and must still go through the safety
    validator.
    """
    if not parameters:
        return sql
    result = sql
    for name in sorted(parameters, key=len, reverse=True):
        literal = sql_literal(parameters[name])
        pattern = re.compile(":" + re.escape(name) + r"\b")
        result = pattern.sub(lambda _m: literal, result)
    return result
