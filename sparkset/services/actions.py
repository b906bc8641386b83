"""
Action registry and built-in handlers.

An action is a typed, parameterised request. SQL actions substitute their
parameters into each template and run through ``SqlActionExecutor``.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sparkset.services.errors import ActionHandlerNotFound, ConfigurationError, QueryValidationError
from sparkset.services.executor import SqlActionExecutor, resolve_maybe_async
from sparkset.services.models import ActionContext, ActionResult, SqlSnippet
from sparkset.services.runtime import log_event
from sparkset.services.sql_params import substitute_parameters

logger = logging.getLogger("actions")

ActionHandler = Callable[[ActionContext], Awaitable[Any]]
DefaultDatasource = Union[int, Callable[[], Any], None]


class ActionRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def get(self, action_type: str) -> Optional[ActionHandler]:
        return self._handlers.get(action_type)

    def types(self) -> List[str]:
        return sorted(self._handlers)


class ActionExecutor:
    def __init__(self, registry: ActionRegistry):
        self.registry = registry

    async def run(self, ctx: ActionContext) -> ActionResult:
        handler = self.registry.get(ctx.type)
        if handler is None:
            log_event(logger, logging.WARNING, "action_handler_missing", action_type=ctx.type)
            return ActionResult(success=False, action_id=ctx.action_id, error=ActionHandlerNotFound(ctx.type))
        try:
            data = await handler(ctx)
        except Exception as exc:
            log_event(logger, logging.WARNING, "action_failed", action_type=ctx.type, error=str(exc)[:300])
            return ActionResult(success=False, action_id=ctx.action_id, error=exc)
        log_event(logger, logging.INFO, "action_ok", action_type=ctx.type, action_id=ctx.action_id)
        return ActionResult(success=True, action_id=ctx.action_id, data=data)


def _payload_templates(sql: Any) -> List[str]:
    if isinstance(sql, str):
        return [sql]
    if isinstance(sql, SqlSnippet):
        return [sql.sql]
    if isinstance(sql, dict):
        return [str(sql.get("sql") or "")]
    if isinstance(sql, (list, tuple)):
        templates: List[str] = []
        for item in sql:
            templates.extend(_payload_templates(item))
        return templates
    raise QueryValidationError("SQL action payload must contain sql as a string or a list")


def _optional_positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def create_sql_action_handler(executor: SqlActionExecutor, default_datasource: DefaultDatasource = None) -> ActionHandler:
    async def _handler(ctx: ActionContext) -> Dict[str, Any]:
        payload = ctx.payload or {}
        datasource_id = _optional_positive_int(payload.get("datasourceId"))
        if datasource_id is None and default_datasource is not None:
            resolved = default_datasource() if callable(default_datasource) else default_datasource
            datasource_id = _optional_positive_int(await resolve_maybe_async(resolved))
        if datasource_id is None:
            raise ConfigurationError("Datasource is required for SQL action")

        templates = [t for t in _payload_templates(payload.get("sql")) if t.strip()]
        if not templates:
            raise QueryValidationError("SQL action payload contains no SQL")

        snippets = [
            SqlSnippet(sql=substitute_parameters(template, ctx.parameters), datasource_id=datasource_id)
            for template in templates
        ]
        result = await executor.execute(snippets, limit=_optional_positive_int(payload.get("limit")))
        return {
            "rows": result.rows,
            "sql": [snippet.sql for snippet in result.sql],
            "summary": result.summary,
        }

    return _handler


def create_echo_handler() -> ActionHandler:
    async def _handler(ctx: ActionContext) -> Dict[str, Any]:
        return {"echo": ctx.payload}

    return _handler
