import asyncio

import pytest

from datastore.db_utils import DatasourceConfig, SqlAlchemyClient, dispose_engines, load_table_schemas
from sparkset.services.errors import DatabaseError, SafetyViolation
from sparkset.services.executor import QueryExecutor, SqlActionExecutor, apply_limit, translate_database_error
from sparkset.services.models import SqlSnippet


class _RecordingClient:
    def __init__(self, rows_by_sql=None, error=None):
        self.rows_by_sql = rows_by_sql or {}
        self.error = error
        self.seen = []

    async def query(self, config, sql):
        self.seen.append((config, sql))
        if self.error is not None:
            raise self.error
        return {"rows": self.rows_by_sql.get(sql, [])}


def _executor(cls, client):
    return cls(get_client=lambda _id: client, get_config=lambda datasource_id: {"id": datasource_id})


def test_apply_limit_appends_once():
    assert apply_limit("SELECT * FROM t", 5) == "SELECT * FROM t LIMIT 5"
    assert apply_limit("SELECT * FROM t limit 10", 5) == "SELECT * FROM t limit 10"
    assert apply_limit("SELECT * FROM t", None) == "SELECT * FROM t"


def test_apply_limit_moves_past_trailing_line_comment():
    assert apply_limit("SELECT * FROM t -- recent", 5) == "SELECT * FROM t -- recent\nLIMIT 5"
    assert apply_limit("-- recent\nSELECT * FROM t", 5) == "-- recent\nSELECT * FROM t LIMIT 5"


def test_query_executor_concatenates_rows_in_order():
    client = _RecordingClient(
        {
            "SELECT a FROM one LIMIT 2": [{"a": 1}, {"a": 2}],
            "SELECT b FROM two LIMIT 2": [{"b": 3}],
        }
    )
    executor = _executor(QueryExecutor, client)

    result = asyncio.run(
        executor.execute([SqlSnippet("SELECT a FROM one;", 1), SqlSnippet("SELECT b FROM two", 2)], limit=2)
    )

    assert result.rows == [{"a": 1}, {"a": 2}, {"b": 3}]
    assert result.summary == "Executed 2 query(s)"
    assert [sql for _, sql in client.seen] == ["SELECT a FROM one LIMIT 2", "SELECT b FROM two LIMIT 2"]
    assert [config["id"] for config, _ in client.seen] == [1, 2]


def test_existing_limit_is_not_duplicated():
    client = _RecordingClient()
    asyncio.run(_executor(QueryExecutor, client).execute([SqlSnippet("SELECT * FROM t LIMIT 3", 1)], limit=50))
    assert client.seen[0][1] == "SELECT * FROM t LIMIT 3"


def test_safety_violation_stops_before_datastore():
    client = _RecordingClient()
    with pytest.raises(SafetyViolation):
        asyncio.run(_executor(QueryExecutor, client).execute([SqlSnippet("DELETE FROM users", 1)]))
    assert client.seen == []


def test_driver_error_is_translated():
    client = _RecordingClient(error=RuntimeError("(1054, \"Unknown column 'emial' in 'field list'\")"))
    with pytest.raises(DatabaseError) as exc:
        asyncio.run(_executor(QueryExecutor, client).execute([SqlSnippet("SELECT emial FROM users", 1)]))
    assert str(exc.value) == 'Column "emial" does not exist'
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_unrecognised_error_passes_through():
    boom = ConnectionResetError("peer went away")
    client = _RecordingClient(error=boom)
    with pytest.raises(ConnectionResetError):
        asyncio.run(_executor(QueryExecutor, client).execute([SqlSnippet("SELECT 1", 1)]))


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Table 'shop.orderz' doesn't exist", 'Table "shop.orderz" does not exist'),
        ('relation "orderz" does not exist', 'Table "orderz" does not exist'),
        ("no such column: emial", 'Column "emial" does not exist'),
        ("You have an error in your SQL syntax near 'FORM'", "SQL syntax error"),
        ("Access denied for user 'app'@'%'", "Database access denied, check the username and password"),
        ("Unknown database 'shopp'", 'Database "shopp" does not exist'),
        ("driver failure, code: 1146", "Table does not exist"),
    ],
)
def test_translation_table(message, expected):
    translated = translate_database_error(Exception(message))
    assert isinstance(translated, DatabaseError)
    assert str(translated) == expected


def test_action_executor_limits_only_selects():
    client = _RecordingClient()
    executor = _executor(SqlActionExecutor, client)
    asyncio.run(
        executor.execute(
            [SqlSnippet("UPDATE users SET status = 'x' WHERE id = 1", 1), SqlSnippet("SELECT * FROM users", 1)],
            limit=10,
        )
    )
    assert [sql for _, sql in client.seen] == [
        "UPDATE users SET status = 'x' WHERE id = 1",
        "SELECT * FROM users LIMIT 10",
    ]


def test_action_executor_rejects_ddl():
    client = _RecordingClient()
    with pytest.raises(SafetyViolation):
        asyncio.run(_executor(SqlActionExecutor, client).execute([SqlSnippet("ALTER TABLE users ADD x INT", 1)]))
    assert client.seen == []


# ---------------------------
# SQLite-backed datastore
# ---------------------------

@pytest.fixture
def sqlite_config(tmp_path):
    config = DatasourceConfig(id=7, name="shop", type="sqlite", database=str(tmp_path / "shop.db"))
    client = SqlAlchemyClient()
    asyncio.run(client.query(config, "CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT, note TEXT)"))
    asyncio.run(
        client.query(
            config,
            "INSERT INTO customers (id, name, note) VALUES (1, 'Ada', 'vip:yes'), (2, 'Linus', NULL)",
        )
    )
    yield config
    dispose_engines()


def test_sqlalchemy_client_round_trip(sqlite_config):
    client = SqlAlchemyClient()
    result = asyncio.run(client.query(sqlite_config, "SELECT id, name FROM customers WHERE note = 'vip:yes'"))
    assert result == {"rows": [{"id": 1, "name": "Ada"}]}
    assert asyncio.run(client.test_connection(sqlite_config)) is True


def test_executor_over_sqlite_translates_missing_table(sqlite_config):
    client = SqlAlchemyClient()
    executor = QueryExecutor(get_client=lambda _id: client, get_config=lambda _id: sqlite_config)

    result = asyncio.run(executor.execute([SqlSnippet("SELECT name FROM customers ORDER BY id", 7)], limit=1))
    assert result.rows == [{"name": "Ada"}]

    with pytest.raises(DatabaseError) as exc:
        asyncio.run(executor.execute([SqlSnippet("SELECT * FROM orders", 7)]))
    assert str(exc.value) == 'Table "orders" does not exist'


def test_load_table_schemas_reflects_columns(sqlite_config):
    schemas = load_table_schemas(sqlite_config)
    assert [s.table_name for s in schemas] == ["customers"]
    assert [c.name for c in schemas[0].columns] == ["id", "name", "note"]
    assert schemas[0].columns[0].type == "INTEGER"


def test_datasource_config_urls():
    mysql = DatasourceConfig(id=1, name="m", type="mysql", database="shop", host="db", port=3306, username="u", password="p")
    assert mysql.connection_uri == "mysql+pymysql://u:p@db:3306/shop"
    memory = DatasourceConfig(id=2, name="mem", type="sqlite", database=":memory:")
    assert memory.connection_uri == "sqlite://"
    with pytest.raises(ValueError):
        DatasourceConfig(id=3, name="x", type="oracle", database="d").url
