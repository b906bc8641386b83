"""
Read-only query executor and write-capable action executor.

Both run snippets strictly in order and concatenate their rows. Safety
violations propagate untouched; only datastore failures are rewritten by
``translate_database_error``.
"""
from __future__ import annotations

import inspect
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from sparkset.services.errors import DatabaseError
from sparkset.services.models import ExecutionResult, SqlSnippet
from sparkset.services.runtime import log_event
from sparkset.services.sql_safety import SafetyMode, ensure_safe_sql, strip_trailing_semicolons

logger = logging.getLogger("executor")

MaybeAwaitable = Union[Any, Awaitable[Any]]
ClientResolver = Callable[[int], MaybeAwaitable]
ConfigResolver = Callable[[int], MaybeAwaitable]

_HAS_LIMIT_RE = re.compile(r"limit\s+\d+", re.IGNORECASE)
_SELECT_RE = re.compile(r"^\s*select\b", re.IGNORECASE)


async def resolve_maybe_async(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def apply_limit(sql: str, limit: Optional[int]) -> str:
    """Append ``LIMIT n`` unless the statement already carries a limit."""
    if not limit or _HAS_LIMIT_RE.search(sql):
        return sql
    # A trailing line comment would swallow a same-line LIMIT.
    separator = "\n" if "--" in sql.rsplit("\n", 1)[-1] else " "
    return f"{sql}{separator}LIMIT {int(limit)}"


# ---------------------------
# Datastore error translation
# ---------------------------

_ERROR_PATTERNS = (
    (re.compile(r"Table '?`?([\w.]+)`?'? doesn't exist", re.IGNORECASE), 'Table "{0}" does not exist'),
    (re.compile(r'relation "([\w.]+)" does not exist', re.IGNORECASE), 'Table "{0}" does not exist'),
    (re.compile(r"no such table: ([\w.]+)", re.IGNORECASE), 'Table "{0}" does not exist'),
    (re.compile(r"Unknown column '?`?([\w.]+)`?'?", re.IGNORECASE), 'Column "{0}" does not exist'),
    (re.compile(r'column "([\w.]+)" does not exist', re.IGNORECASE), 'Column "{0}" does not exist'),
    (re.compile(r"no such column: ([\w.]+)", re.IGNORECASE), 'Column "{0}" does not exist'),
    (re.compile(r"You have an error in your SQL syntax", re.IGNORECASE), "SQL syntax error"),
    (re.compile(r"syntax error at or near", re.IGNORECASE), "SQL syntax error"),
    (re.compile(r"Access denied for user", re.IGNORECASE), "Database access denied, check the username and password"),
    (re.compile(r"Unknown database '?`?([\w.]+)`?'?", re.IGNORECASE), 'Database "{0}" does not exist'),
)

_ERROR_CODE_RE = re.compile(r"code:\s*'?(\d+)'?", re.IGNORECASE)
_DRIVER_CODE_RE = re.compile(r"^\(?(\d{4})\b")

_ERROR_CODE_MESSAGES = {
    1146: "Table does not exist",
    1054: "Column does not exist",
    1064: "SQL syntax error",
    1045: "Database access denied, check the username and password",
    1049: "Database does not exist",
}


def _error_text(error: BaseException) -> str:
    orig = getattr(error, "orig", None)
    if orig is not None:
        return str(orig)
    return str(error)


def _error_code(error: BaseException, message: str) -> Optional[int]:
    orig = getattr(error, "orig", None)
    args = getattr(orig, "args", None) or ()
    if args and isinstance(args[0], int):
        return args[0]
    for pattern in (_ERROR_CODE_RE, _DRIVER_CODE_RE):
        match = pattern.search(message)
        if match:
            return int(match.group(1))
    return None


def translate_database_error(error: BaseException) -> BaseException:
    """
    Rewrite a driver error into a short user-facing ``DatabaseError``.

    Returns ``error`` itself when nothing recognisable is found.
    """
    message = _error_text(error)
    for pattern, template in _ERROR_PATTERNS:
        match = pattern.search(message)
        if match:
            return DatabaseError(template.format(*match.groups()))

    code = _error_code(error, message)
    if code is not None and code in _ERROR_CODE_MESSAGES:
        return DatabaseError(_ERROR_CODE_MESSAGES[code])
    return error


# ---------------------------
# Executors
# ---------------------------

class _SnippetRunner:
    mode = SafetyMode.READ_ONLY

    def __init__(self, get_client: ClientResolver, get_config: ConfigResolver):
        self._get_client = get_client
        self._get_config = get_config

    def prepare(self, sql: str, limit: Optional[int]) -> str:
        raise NotImplementedError

    async def _run_one(self, snippet: SqlSnippet, sql: str) -> List[Dict[str, Any]]:
        try:
            client = await resolve_maybe_async(self._get_client(snippet.datasource_id))
            config = await resolve_maybe_async(self._get_config(snippet.datasource_id))
            result = await resolve_maybe_async(client.query(config, sql))
        except Exception as exc:
            translated = translate_database_error(exc)
            log_event(
                logger,
                logging.WARNING,
                "snippet_failed",
                mode=self.mode.value,
                datasource_id=snippet.datasource_id,
                error=str(exc)[:300],
                translated=str(translated) if translated is not exc else None,
            )
            if translated is exc:
                raise
            raise translated from exc
        return list(result.get("rows") or [])

    async def execute(self, snippets: Sequence[SqlSnippet], limit: Optional[int] = None) -> ExecutionResult:
        rows: List[Dict[str, Any]] = []
        started = time.perf_counter()
        for snippet in snippets:
            sql = self.prepare(snippet.sql, limit)
            rows.extend(await self._run_one(snippet, sql))
        log_event(
            logger,
            logging.INFO,
            "snippets_executed",
            mode=self.mode.value,
            count=len(snippets),
            rows=len(rows),
            elapsed_ms=int((time.perf_counter() - started) * 1000),
        )
        return ExecutionResult(rows=rows, sql=list(snippets), summary=f"Executed {len(snippets)} query(s)")


class QueryExecutor(_SnippetRunner):
    """Runs planner output on the read-only path."""

    mode = SafetyMode.READ_ONLY

    def prepare(self, sql: str, limit: Optional[int]) -> str:
        limited = apply_limit(strip_trailing_semicolons(sql), limit)
        return ensure_safe_sql(limited, SafetyMode.READ_ONLY)


class SqlActionExecutor(_SnippetRunner):
    """Runs action SQL: writes allowed, DDL and multiple statements are not."""

    mode = SafetyMode.ACTION

    def prepare(self, sql: str, limit: Optional[int]) -> str:
        statement = ensure_safe_sql(sql, SafetyMode.ACTION)
        if _SELECT_RE.match(statement):
            statement = apply_limit(statement, limit)
        return statement
