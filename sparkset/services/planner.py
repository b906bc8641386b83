"""Turns a question into SQL snippets using schema metadata and the AI client."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from sparkset.services.ai_client import LangChainAIClient, ModelCallOptions
from sparkset.services.errors import ConfigurationError, ExternalServiceError
from sparkset.services.executor import resolve_maybe_async
from sparkset.services.models import SqlSnippet, TableSchema
from sparkset.services.prompt_builder import build_prompt
from sparkset.services.runtime import log_event

logger = logging.getLogger("planner")

SchemaLookup = Callable[[int], Awaitable[List[TableSchema]]]
DatasourceChooser = Callable[[str], object]


@dataclass
class QueryPlan:
    question: str
    sql: List[SqlSnippet] = field(default_factory=list)
    limit: Optional[int] = None


class QueryPlanner:
    def __init__(
        self,
        ai_client: LangChainAIClient,
        get_schemas: SchemaLookup,
        choose_datasource: Optional[DatasourceChooser] = None,
    ):
        self.ai_client = ai_client
        self.get_schemas = get_schemas
        self.choose_datasource = choose_datasource

    async def plan(
        self,
        question: str,
        datasource_id: Optional[int] = None,
        limit: Optional[int] = None,
        model_options: Optional[ModelCallOptions] = None,
    ) -> QueryPlan:
        ds = datasource_id
        if ds is None and self.choose_datasource is not None:
            ds = await resolve_maybe_async(self.choose_datasource(question))
        if not ds:
            raise ConfigurationError("No datasource available")

        try:
            schemas = await self.get_schemas(ds)
            log_event(
                logger,
                logging.INFO,
                "planner_schemas",
                datasource_id=ds,
                tables=[s.table_name for s in schemas],
            )
            if not schemas:
                raise ConfigurationError(
                    f"No tables found in datasource {ds}. Please sync the datasource schema first."
                )

            prompt = build_prompt(question, schemas, limit)
            options = model_options or ModelCallOptions(prompt=prompt)
            options.prompt = prompt
            sql = await self.ai_client.generate_sql(options)
        except Exception as exc:
            log_event(logger, logging.WARNING, "planner_failed", datasource_id=ds, error=str(exc)[:300])
            raise ExternalServiceError("AI provider", f"Failed to generate SQL using AI: {exc}") from exc

        log_event(logger, logging.INFO, "planner_ok", datasource_id=ds, sql=sql[:500])
        return QueryPlan(question=question, sql=[SqlSnippet(sql=sql, datasource_id=ds)], limit=limit)
