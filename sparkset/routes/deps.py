"""Shared route dependencies: service singletons, auth check and error rendering."""
import logging
import secrets
from functools import lru_cache
from typing import Optional

from fastapi import Header
from fastapi.responses import JSONResponse

from sparkset.services import settings
from sparkset.services.action_generator import ActionSqlGenerator
from sparkset.services.actions import ActionExecutor, ActionRegistry, create_echo_handler, create_sql_action_handler
from sparkset.services.errors import AuthenticationError
from sparkset.services.executor import SqlActionExecutor
from sparkset.services.query_errors import QueryErrorEnvelope
from sparkset.services.query_service import QueryService
from sparkset.services.registry import AIProviderRegistry, DatasourceRegistry, SchemaService
from sparkset.services.runtime import set_session_id

logger = logging.getLogger("deps")


@lru_cache(maxsize=1)
def get_datasource_registry() -> DatasourceRegistry:
    return DatasourceRegistry.from_settings()


@lru_cache(maxsize=1)
def get_ai_provider_registry() -> AIProviderRegistry:
    return AIProviderRegistry.from_settings()


@lru_cache(maxsize=1)
def get_query_service() -> QueryService:
    return QueryService(get_datasource_registry(), get_ai_provider_registry())


@lru_cache(maxsize=1)
def get_action_executor() -> ActionExecutor:
    datasources = get_datasource_registry()
    registry = ActionRegistry()
    sql_executor = SqlActionExecutor(datasources.get_client, datasources.get_config)
    registry.register("sql", create_sql_action_handler(sql_executor, default_datasource=datasources.default_id))
    echo = create_echo_handler()
    registry.register("api", echo)
    registry.register("file", echo)
    return ActionExecutor(registry)


@lru_cache(maxsize=1)
def get_action_sql_generator() -> ActionSqlGenerator:
    return ActionSqlGenerator(get_ai_provider_registry(), SchemaService(get_datasource_registry()).list)


def require_api_token(authorization: Optional[str] = Header(None)) -> None:
    expected = settings.api_token()
    if not expected:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization header")
    token = authorization[7:]
    if not secrets.compare_digest(token, expected):
        raise AuthenticationError("Invalid authentication token")
    set_session_id("api-token")


def envelope_response(envelope: QueryErrorEnvelope) -> JSONResponse:
    return JSONResponse(status_code=envelope.status, content=envelope.payload, headers=envelope.headers())
