import asyncio

import pytest

from datastore.db_utils import DatasourceConfig, SqlAlchemyClient, dispose_engines
from sparkset.services.errors import (
    AIGenerationError,
    ConfigurationError,
    DatabaseError,
    ExternalServiceError,
    QueryValidationError,
    RateLimitError,
)
from sparkset.services.models import ColumnDefinition, TableSchema
from sparkset.services.planner import QueryPlanner
from sparkset.services.query_errors import build_internal_query_error_response
from sparkset.services.query_service import (
    QueryService,
    build_assistant_reply,
    map_executor_error,
    map_planner_error,
)
from sparkset.services.registry import AIProviderRecord, AIProviderRegistry, DatasourceRegistry


class _FakeAIClient:
    def __init__(self, sql=None, error=None):
        self.sql = sql
        self.error = error
        self.options = []

    async def generate_sql(self, options):
        self.options.append(options)
        if self.error is not None:
            raise self.error
        return self.sql


class _FakeSchemas:
    def __init__(self, schemas):
        self.schemas = schemas

    async def list(self, datasource_id):
        return self.schemas


class _FakeDatastore:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.seen = []

    async def query(self, config, sql):
        self.seen.append(sql)
        if self.error is not None:
            raise self.error
        return {"rows": self.rows}


ORDERS = [TableSchema("orders", [ColumnDefinition("id", "INTEGER"), ColumnDefinition("total", "DECIMAL")])]


def _providers(*records):
    return AIProviderRegistry(list(records) or [AIProviderRecord(id=1, name="main", type="openai", api_key="sk-x")])


def _service(ai_client, datastore=None, schemas=ORDERS, providers=None, configs=None):
    if configs is None:
        configs = [DatasourceConfig(id=1, name="shop", type="mysql", database="shop")]
    datasources = DatasourceRegistry(configs, client=datastore or _FakeDatastore())
    return QueryService(
        datasources,
        providers or _providers(),
        ai_client=ai_client,
        schema_service=_FakeSchemas(schemas),
    )


# ---------------------------
# Planner
# ---------------------------

def test_planner_builds_prompt_from_schema():
    ai = _FakeAIClient(sql="SELECT id FROM orders")
    planner = QueryPlanner(ai, _FakeSchemas(ORDERS).list)

    plan = asyncio.run(planner.plan("how many orders?", datasource_id=4, limit=20))

    assert plan.sql[0].sql == "SELECT id FROM orders"
    assert plan.sql[0].datasource_id == 4
    prompt = ai.options[0].prompt
    assert "### Table: `orders`" in prompt
    assert "LIMIT 20" in prompt
    assert "how many orders?" in prompt


def test_planner_uses_chooser_when_no_datasource_given():
    planner = QueryPlanner(_FakeAIClient(sql="SELECT 1"), _FakeSchemas(ORDERS).list, choose_datasource=lambda q: 9)
    assert asyncio.run(planner.plan("q")).sql[0].datasource_id == 9


def test_planner_without_datasource():
    planner = QueryPlanner(_FakeAIClient(sql="SELECT 1"), _FakeSchemas(ORDERS).list)
    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(planner.plan("q"))
    assert str(exc.value) == "No datasource available"


def test_planner_wraps_failures():
    planner = QueryPlanner(_FakeAIClient(sql="SELECT 1"), _FakeSchemas([]).list)
    with pytest.raises(ExternalServiceError) as exc:
        asyncio.run(planner.plan("q", datasource_id=2))
    assert str(exc.value) == (
        "Failed to generate SQL using AI: No tables found in datasource 2. Please sync the datasource schema first."
    )


# ---------------------------
# Service
# ---------------------------

def test_run_returns_rows_and_metadata():
    datastore = _FakeDatastore(rows=[{"id": 1}, {"id": 2}])
    ai = _FakeAIClient(sql="SELECT id FROM orders")
    service = _service(ai, datastore)

    result = asyncio.run(service.run("list orders", limit=5))
    body = result.to_response()

    assert datastore.seen == ["SELECT id FROM orders LIMIT 5"]
    assert body["rowCount"] == 2
    assert body["hasResult"] is True
    assert body["reply"] == "Query executed successfully, returned 2 rows. Executed 1 query(s)"
    assert body["metadata"]["kind"] == "query-result"
    assert body["metadata"]["result"]["rows"] == [{"id": 1}, {"id": 2}]
    assert (body["datasourceId"], body["aiProviderId"], body["limit"]) == (1, 1, 5)
    assert ai.options[0].provider == "openai"
    assert ai.options[0].api_key == "sk-x"


def test_default_provider_and_datasource_are_preferred():
    providers = AIProviderRegistry(
        [
            AIProviderRecord(id=1, name="a", type="openai"),
            AIProviderRecord(id=2, name="b", type="anthropic", default_model="claude-3-5-haiku-latest", is_default=True),
        ]
    )
    configs = [
        DatasourceConfig(id=1, name="a", type="mysql", database="a"),
        DatasourceConfig(id=3, name="b", type="mysql", database="b", is_default=True),
    ]
    ai = _FakeAIClient(sql="SELECT 1")
    result = asyncio.run(_service(ai, providers=providers, configs=configs).run("q"))

    assert (result.datasource_id, result.ai_provider_id) == (3, 2)
    assert ai.options[0].model == "claude-3-5-haiku-latest"


def test_missing_provider_and_datasource():
    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(_service(_FakeAIClient(sql="SELECT 1"), providers=AIProviderRegistry([])).run("q"))
    assert "No AI provider configured" in str(exc.value)

    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(_service(_FakeAIClient(sql="SELECT 1"), configs=[]).run("q"))
    assert "No datasource configured" in str(exc.value)

    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(_service(_FakeAIClient(sql="SELECT 1")).run("q", ai_provider_id=9))
    assert str(exc.value) == "Selected AI provider 9 not found"


def test_unknown_datasource_is_a_validation_error():
    with pytest.raises(QueryValidationError) as exc:
        asyncio.run(_service(_FakeAIClient(sql="SELECT 1")).run("q", datasource_id=42))
    assert str(exc.value) == "Selected datasource (ID: 42) not found. Please select a valid datasource."


def test_unsynced_schema_becomes_configuration_error():
    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(_service(_FakeAIClient(sql="SELECT 1"), schemas=[]).run("q"))
    assert "No tables found in datasource 1" in str(exc.value)
    assert build_internal_query_error_response(exc.value).code == "CONFIGURATION_ERROR"


def test_provider_rate_limit_is_surfaced():
    error = AIGenerationError(
        "Failed to generate SQL after trying 1 model(s). Last error: Error code: 429 - rate limit reached", 1
    )
    with pytest.raises(RateLimitError) as exc:
        asyncio.run(_service(_FakeAIClient(error=error)).run("q"))
    envelope = build_internal_query_error_response(exc.value)
    assert envelope.status == 429
    assert envelope.headers()["Retry-After"] == "10"


def test_generic_provider_failure_is_internal():
    error = AIGenerationError("Failed to generate SQL after trying 1 model(s). Last error: boom", 1)
    with pytest.raises(ExternalServiceError) as exc:
        asyncio.run(_service(_FakeAIClient(error=error)).run("q"))
    assert build_internal_query_error_response(exc.value).status == 500


def test_write_sql_from_model_is_rejected():
    datastore = _FakeDatastore()
    with pytest.raises(QueryValidationError) as exc:
        asyncio.run(_service(_FakeAIClient(sql="DELETE FROM orders"), datastore).run("remove everything"))
    assert exc.value.details == ["Only read-only queries are allowed (SELECT/SHOW/DESCRIBE/EXPLAIN)"]
    assert datastore.seen == []
    envelope = build_internal_query_error_response(exc.value)
    assert (envelope.status, envelope.code) == (400, "VALIDATION_ERROR")
    assert envelope.payload["details"] == ["Only read-only queries are allowed (SELECT/SHOW/DESCRIBE/EXPLAIN)"]


def test_database_failure_is_translated():
    datastore = _FakeDatastore(error=RuntimeError("Unknown column 'totl' in 'field list'"))
    with pytest.raises(DatabaseError) as exc:
        asyncio.run(_service(_FakeAIClient(sql="SELECT totl FROM orders"), datastore).run("q"))
    assert str(exc.value) == 'Column "totl" does not exist'


def test_executor_error_mapping():
    assert isinstance(map_executor_error(RuntimeError("connection refused")), ExternalServiceError)
    assert isinstance(map_executor_error(RuntimeError("syntax error near FORM")), DatabaseError)
    assert isinstance(map_executor_error(RuntimeError("Too many requests")), RateLimitError)
    assert isinstance(map_executor_error(RuntimeError("mystery")), ExternalServiceError)


def test_planner_error_mapping_keeps_typed_errors():
    original = QueryValidationError("bad")
    assert map_planner_error(original) is original
    assert isinstance(map_planner_error(RuntimeError("Selected datasource missing")), ConfigurationError)


def test_reply_text():
    assert build_assistant_reply(0, None) == "Query executed successfully with no data returned"
    assert build_assistant_reply(0, "Executed 1 query(s)") == "Executed 1 query(s)"
    assert build_assistant_reply(3, None) == "Query executed successfully, returned 3 rows."


def test_end_to_end_over_sqlite(tmp_path):
    config = DatasourceConfig(id=1, name="shop", type="sqlite", database=str(tmp_path / "shop.db"))
    client = SqlAlchemyClient()
    asyncio.run(client.query(config, "CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT)"))
    asyncio.run(client.query(config, "INSERT INTO customers (id, name) VALUES (1, 'Ada'), (2, 'Grace'), (3, 'Linus')"))
    try:
        ai = _FakeAIClient(sql="SELECT name FROM customers ORDER BY id")
        service = QueryService(DatasourceRegistry([config], client=client), _providers(), ai_client=ai)

        result = asyncio.run(service.run("who are our customers?", limit=2))

        assert result.execution.rows == [{"name": "Ada"}, {"name": "Grace"}]
        assert result.sql == "SELECT name FROM customers ORDER BY id LIMIT 2"
        assert "`customers`" in ai.options[0].prompt
    finally:
        dispose_engines()
