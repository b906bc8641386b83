"""
Recover the SQL part of a language-model reply.

Models wrap SQL in code fences, prepend explanations and sometimes append
a second statement. ``extract_sql`` keeps the first statement only; it does
not check safety.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional, Pattern

_FENCED_BLOCK_RE = re.compile(r"```(?:sql)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_LEADING_FENCE_RE = re.compile(r"^```(?:sql)?\s*", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\s*```$")
_TRAILING_SEMICOLONS_RE = re.compile(r";+$")

_STATEMENT_START_RE = re.compile(r"^(?:--|(?:select|with)\b)", re.IGNORECASE)
_CLAUSE_RE = re.compile(
    r"^(?:--|[()]|(?:select|with|from|where|join|inner|left|right|full|cross|on|and|or|group|order|"
    r"having|limit|offset|union|case|when|then|else|end|as)\b)",
    re.IGNORECASE,
)

# Openers of explanatory text, per assistant language.
PROSE_OPENERS: Dict[str, Pattern[str]] = {
    "en": re.compile(
        r"^(?:(?:here|the|this|these|please|note|explanation|assuming)\b|sql\s*(?:query|statement)?\s*:)",
        re.IGNORECASE,
    ),
    "zh": re.compile(r"^(生成的|查询|语句|根据|以下|注意|说明|这)"),
}


def _prose_patterns(locale: Optional[str]) -> List[Pattern[str]]:
    if locale and locale in PROSE_OPENERS:
        patterns = [PROSE_OPENERS["en"]]
        if locale != "en":
            patterns.append(PROSE_OPENERS[locale])
        return patterns
    return list(PROSE_OPENERS.values())


def looks_like_prose(line: str, locale: Optional[str] = None) -> bool:
    stripped = line.strip()
    return any(p.match(stripped) for p in _prose_patterns(locale))


def strip_code_fence(text: str) -> str:
    match = _FENCED_BLOCK_RE.search(text or "")
    if match:
        return match.group(1).strip()
    cleaned = _LEADING_FENCE_RE.sub("", (text or "").strip())
    return _TRAILING_FENCE_RE.sub("", cleaned).strip()


def extract_sql(text: str, locale: Optional[str] = None) -> str:
    """Return a single SQL statement from raw model output, best-effort."""
    body = strip_code_fence(text)
    collected: List[str] = []
    collecting = False

    for line in body.split("\n"):
        stripped = line.strip()
        if not collecting:
            if not _STATEMENT_START_RE.match(stripped):
                continue
            collecting = True
        elif stripped and not _CLAUSE_RE.match(stripped) and looks_like_prose(stripped, locale):
            continue
        collected.append(line)
        if ";" in stripped:
            break

    sql = "\n".join(collected).strip()
    if not sql:
        sql = body
    return _TRAILING_SEMICOLONS_RE.sub("", sql).strip()
