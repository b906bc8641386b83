"""
Datastore access over SQLAlchemy: engine cache, timeouts and schema reflection.

This is the "execute SQL against a named datasource" capability the query
core consumes. Blocking driver calls run on the shared foreground pool.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from sparkset.services.errors import QueryTimeoutError
from sparkset.services.models import ColumnDefinition, TableSchema
from sparkset.services.runtime import get_foreground_executor, log_event

logger = logging.getLogger("db_utils")

_ENGINE_CACHE: Dict[str, Engine] = {}
_ENGINE_CACHE_LOCK = threading.RLock()
_ENGINE_CACHE_MAX = 100

_DRIVERS = {
    "mysql": "mysql+pymysql",
    "postgres": "postgresql+psycopg",
    "postgresql": "postgresql+psycopg",
    "sqlite": "sqlite",
}

# Colons left in already-substituted SQL are literal text, not bind markers.
_BIND_LIKE_RE = re.compile(r"(?<![:\w\\]):(?=\w)")


@dataclass
class DatasourceConfig:
    """Connection settings for one registered datasource."""
    id: int
    name: str
    type: str
    database: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None

    connect_timeout: int = 10
    query_timeout: int = 30
    is_default: bool = False

    @property
    def connection_uri(self) -> str:
        return self.url.render_as_string(hide_password=False)

    @property
    def url(self) -> URL:
        kind = (self.type or "").strip().lower()
        driver = _DRIVERS.get(kind)
        if driver is None:
            raise ValueError(f"Unsupported datasource type: {self.type}")
        if driver == "sqlite":
            database = self.database if self.database and self.database != ":memory:" else None
            return URL.create("sqlite", database=database)
        return URL.create(
            driver,
            username=self.username or None,
            password=self.password or None,
            host=(self.host or "").strip() or None,
            port=int(self.port) if self.port else None,
            database=(self.database or "").strip() or None,
        )

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], **defaults: Any) -> "DatasourceConfig":
        port = raw.get("port")
        return cls(
            id=int(raw["id"]),
            name=str(raw.get("name") or f"datasource-{raw['id']}"),
            type=str(raw.get("type") or "mysql"),
            database=str(raw.get("database") or ""),
            host=raw.get("host"),
            port=int(port) if port not in (None, "") else None,
            username=raw.get("username"),
            password=raw.get("password"),
            is_default=bool(raw.get("isDefault") or raw.get("is_default")),
            **defaults,
        )


def _get_cached_engine(connection_uri: str) -> Optional[Engine]:
    with _ENGINE_CACHE_LOCK:
        return _ENGINE_CACHE.get(connection_uri)


def _set_cached_engine(connection_uri: str, engine: Engine) -> None:
    with _ENGINE_CACHE_LOCK:
        _ENGINE_CACHE[connection_uri] = engine
        if len(_ENGINE_CACHE) > _ENGINE_CACHE_MAX:
            for key in list(_ENGINE_CACHE.keys())[: len(_ENGINE_CACHE) - _ENGINE_CACHE_MAX]:
                stale = _ENGINE_CACHE.pop(key, None)
                if stale is not None:
                    stale.dispose()


def get_engine(config: DatasourceConfig) -> Engine:
    """Return the cached engine for ``config``, creating it on first use."""
    uri = config.connection_uri
    cached = _get_cached_engine(uri)
    if cached is not None:
        return cached

    with _ENGINE_CACHE_LOCK:
        cached = _ENGINE_CACHE.get(uri)
        if cached is not None:
            return cached
        if config.url.get_backend_name() == "sqlite":
            # One shared connection so in-memory databases survive across calls.
            engine = create_engine(
                config.url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(
                config.url,
                pool_pre_ping=True,
                pool_recycle=300,
                pool_size=5,
                max_overflow=10,
                connect_args={"connect_timeout": int(config.connect_timeout)},
            )
        _set_cached_engine(uri, engine)
    log_event(logger, logging.INFO, "engine_created", datasource_id=config.id, dialect=engine.dialect.name)
    return engine


def dispose_engines() -> None:
    with _ENGINE_CACHE_LOCK:
        engines = list(_ENGINE_CACHE.values())
        _ENGINE_CACHE.clear()
    for engine in engines:
        engine.dispose()


def _is_transient_operational_error(error_text: str) -> bool:
    text_low = (error_text or "").lower()
    transient_signals = (
        "could not connect",
        "connection reset",
        "connection refused",
        "server has gone away",
        "lost connection",
        "deadlock",
    )
    return any(sig in text_low for sig in transient_signals)


def _run_statement(engine: Engine, sql: str) -> List[Dict[str, Any]]:
    clause = text(_BIND_LIKE_RE.sub(r"\\:", sql))
    with engine.begin() as conn:
        result = conn.execute(clause)
        if not result.returns_rows:
            return []
        return [dict(row) for row in result.mappings()]


def execute_statement(config: DatasourceConfig, sql: str) -> List[Dict[str, Any]]:
    """Run one statement synchronously, retrying once on a dropped connection."""
    engine = get_engine(config)
    max_retries = max(0, int(os.getenv("DB_TRANSIENT_RETRIES", "1")))
    base_backoff = max(0.05, float(os.getenv("DB_TRANSIENT_RETRY_BACKOFF_SECONDS", "0.2")))

    attempt = 0
    while True:
        started = time.perf_counter()
        try:
            rows = _run_statement(engine, sql)
        except OperationalError as exc:
            error_str = str(exc)
            if attempt < max_retries and _is_transient_operational_error(error_str):
                delay = round(base_backoff * (2 ** attempt), 3)
                logger.warning(
                    "transient_db_error retrying attempt=%s max=%s delay=%ss error=%s",
                    attempt + 1,
                    max_retries,
                    delay,
                    error_str[:180],
                )
                time.sleep(delay)
                attempt += 1
                continue
            raise
        log_event(
            logger,
            logging.DEBUG,
            "db_statement_ok",
            datasource_id=config.id,
            rows=len(rows),
            elapsed_ms=int((time.perf_counter() - started) * 1000),
        )
        return rows


class SqlAlchemyClient:
    """Async facade used by the executors: ``await client.query(config, sql)``."""

    async def query(self, config: DatasourceConfig, sql: str) -> Dict[str, List[Dict[str, Any]]]:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(get_foreground_executor(), partial(execute_statement, config, sql))
        try:
            rows = await asyncio.wait_for(future, timeout=max(1, int(config.query_timeout)))
        except asyncio.TimeoutError as exc:
            raise QueryTimeoutError(
                f"Query timed out after {config.query_timeout} seconds on datasource {config.id}"
            ) from exc
        return {"rows": rows}

    async def test_connection(self, config: DatasourceConfig) -> bool:
        await self.query(config, "SELECT 1")
        return True


def load_table_schemas(config: DatasourceConfig) -> List[TableSchema]:
    """Reflect tables and columns for prompt construction."""
    inspector = inspect(get_engine(config))
    schemas: List[TableSchema] = []
    for table_name in sorted(inspector.get_table_names()):
        try:
            table_comment = (inspector.get_table_comment(table_name) or {}).get("text")
        except NotImplementedError:
            table_comment = None
        columns = [
            ColumnDefinition(name=col["name"], type=str(col["type"]), comment=col.get("comment") or None)
            for col in inspector.get_columns(table_name)
        ]
        schemas.append(TableSchema(table_name=table_name, columns=columns, table_comment=table_comment))
    return schemas
