"""
End-to-end question answering: pick provider and datasource, plan, execute.

Failures leave this module as typed ``SparksetError`` subclasses so the
error taxonomy can classify them by code first and by message second.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sparkset.services.ai_client import AIClientConfig, LangChainAIClient, ModelCallOptions
from sparkset.services.errors import (
    ConfigurationError,
    DatabaseError,
    ExternalServiceError,
    QueryValidationError,
    RateLimitError,
    SparksetError,
)
from sparkset.services.executor import QueryExecutor
from sparkset.services.message_metadata import build_message_metadata
from sparkset.services.models import ExecutionResult
from sparkset.services.planner import QueryPlanner
from sparkset.services.registry import AIProviderRecord, AIProviderRegistry, DatasourceRegistry, SchemaService
from sparkset.services.runtime import log_event

logger = logging.getLogger("query_service")

CONFIGURATION_MESSAGE_RE = re.compile(
    r"no tables found|schema.*not synced|no schema|not configured|no datasource|selected datasource|"
    r"no ai provider|selected ai provider|please configure",
    re.I,
)
RATE_LIMIT_MESSAGE_RE = re.compile(r"rate\s*limit|too\s*many\s*requests|retry\s+(after|in)|429", re.I)
DATABASE_MESSAGE_RE = re.compile(
    r"table.*does not exist|column.*does not exist|unknown column|sql syntax|syntax error|doesn't exist|"
    r"不存在|不合法|access denied|denied for user",
    re.I,
)
READ_ONLY_MESSAGE_RE = re.compile(
    r"only read-only queries are allowed|write operations are blocked|multi-statement queries are not allowed",
    re.I,
)
EXTERNAL_SERVICE_RE = re.compile(r"connect|connection|timeout|timed out|network|unreachable|refused|reset", re.I)

# Errors that already carry the right classification pass through untouched.
_CLASSIFIED = (RateLimitError, ConfigurationError, QueryValidationError, DatabaseError)


@dataclass
class QueryRunResult:
    question: str
    execution: ExecutionResult
    datasource_id: int
    ai_provider_id: int
    limit: Optional[int] = None

    @property
    def sql(self) -> str:
        return "\n".join(snippet.sql for snippet in self.execution.sql)

    @property
    def row_count(self) -> int:
        return len(self.execution.rows)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "sql": self.sql,
            "rows": self.execution.rows,
            "summary": self.execution.summary,
            "rowCount": self.row_count,
            "hasResult": self.row_count > 0,
            "datasourceId": self.datasource_id,
            "aiProviderId": self.ai_provider_id,
            "limit": self.limit,
        }
        body["reply"] = build_assistant_reply(self.row_count, self.execution.summary)
        body["metadata"] = build_message_metadata(
            body, datasource_id=self.datasource_id, ai_provider_id=self.ai_provider_id, limit=self.limit
        )
        return body


def build_assistant_reply(row_count: int, summary: Optional[str]) -> str:
    if row_count > 0:
        text = f"Query executed successfully, returned {row_count} rows."
        return f"{text} {summary}" if summary else text
    return summary or "Query executed successfully with no data returned"


def map_planner_error(error: Exception) -> SparksetError:
    message = str(error)
    if RATE_LIMIT_MESSAGE_RE.search(message):
        return RateLimitError(message)
    if CONFIGURATION_MESSAGE_RE.search(message):
        return ConfigurationError(message)
    if isinstance(error, SparksetError) and not isinstance(error, ExternalServiceError):
        return error
    return ExternalServiceError("AI provider", message)


def map_executor_error(error: Exception) -> SparksetError:
    message = str(error)
    if READ_ONLY_MESSAGE_RE.search(message):
        return QueryValidationError(message, details=[message])
    if isinstance(error, _CLASSIFIED):
        return error
    if RATE_LIMIT_MESSAGE_RE.search(message):
        return RateLimitError(message)
    if CONFIGURATION_MESSAGE_RE.search(message):
        return ConfigurationError(message)
    if EXTERNAL_SERVICE_RE.search(message):
        return ExternalServiceError("Datasource", message)
    if DATABASE_MESSAGE_RE.search(message):
        return DatabaseError(message)
    return ExternalServiceError("Datasource", message)


class QueryService:
    def __init__(
        self,
        datasources: DatasourceRegistry,
        providers: AIProviderRegistry,
        ai_config: Optional[AIClientConfig] = None,
        ai_client: Optional[LangChainAIClient] = None,
        executor: Optional[QueryExecutor] = None,
        schema_service: Optional[SchemaService] = None,
    ):
        self.datasources = datasources
        self.providers = providers
        self.ai_client = ai_client or LangChainAIClient(ai_config or AIClientConfig.from_settings())
        self.executor = executor or QueryExecutor(datasources.get_client, datasources.get_config)
        self.schema_service = schema_service or SchemaService(datasources)

    def _pick_provider(self, ai_provider_id: Optional[int]) -> AIProviderRecord:
        if ai_provider_id is not None:
            return self.providers.get(ai_provider_id)
        provider = self.providers.default()
        if provider is None:
            raise ConfigurationError("No AI provider configured. Please configure an AI provider before querying.")
        return provider

    def _pick_datasource(self, datasource_id: Optional[int]) -> int:
        if datasource_id is not None:
            known = {c.id for c in self.datasources.list()}
            if datasource_id not in known:
                raise QueryValidationError(
                    f"Selected datasource (ID: {datasource_id}) not found. Please select a valid datasource."
                )
            return datasource_id
        default_id = self.datasources.default_id()
        if default_id is None:
            raise ConfigurationError("No datasource configured. Please configure a datasource before querying.")
        return default_id

    async def run(
        self,
        question: str,
        datasource_id: Optional[int] = None,
        ai_provider_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> QueryRunResult:
        provider = self._pick_provider(ai_provider_id)
        ds = self._pick_datasource(datasource_id)
        log_event(logger, logging.INFO, "query_start", datasource_id=ds, ai_provider_id=provider.id, limit=limit)

        planner = QueryPlanner(self.ai_client, self.schema_service.list)
        options = ModelCallOptions(
            prompt="",
            model=provider.default_model,
            provider=provider.type,
            api_key=provider.api_key,
            base_url=provider.base_url,
        )
        try:
            plan = await planner.plan(question, ds, limit, model_options=options)
        except Exception as exc:
            raise map_planner_error(exc) from exc

        try:
            execution = await self.executor.execute(plan.sql, limit=limit)
        except Exception as exc:
            raise map_executor_error(exc) from exc

        log_event(logger, logging.INFO, "query_done", datasource_id=ds, rows=len(execution.rows))
        return QueryRunResult(
            question=question,
            execution=execution,
            datasource_id=ds,
            ai_provider_id=provider.id,
            limit=limit,
        )
