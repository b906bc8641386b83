"""
In-memory registries for datasources and AI providers.

Records come from settings at startup; they implement the resolver
callables the executors and planner consume.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from datastore.db_utils import DatasourceConfig, SqlAlchemyClient, load_table_schemas
from sparkset.services import settings
from sparkset.services.errors import ConfigurationError, DatasourceNotFoundError
from sparkset.services.models import TableSchema
from sparkset.services.runtime import get_foreground_executor, log_event

logger = logging.getLogger("registry")


@dataclass
class AIProviderRecord:
    id: int
    name: str
    type: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    default_model: Optional[str] = None
    is_default: bool = False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AIProviderRecord":
        return cls(
            id=int(raw["id"]),
            name=str(raw.get("name") or raw.get("type") or f"provider-{raw['id']}"),
            type=str(raw.get("type") or "openai"),
            api_key=raw.get("apiKey") or raw.get("api_key") or None,
            base_url=raw.get("baseURL") or raw.get("base_url") or None,
            default_model=raw.get("defaultModel") or raw.get("default_model") or None,
            is_default=bool(raw.get("isDefault") or raw.get("is_default")),
        )


class DatasourceRegistry:
    def __init__(self, configs: Optional[List[DatasourceConfig]] = None, client: Any = None):
        self._configs: Dict[int, DatasourceConfig] = {c.id: c for c in (configs or [])}
        self._client = client or SqlAlchemyClient()

    @classmethod
    def from_settings(cls) -> "DatasourceRegistry":
        configs = []
        for raw in settings.datasources():
            try:
                configs.append(
                    DatasourceConfig.from_dict(
                        raw,
                        connect_timeout=settings.DATASOURCE_CONNECT_TIMEOUT_S,
                        query_timeout=settings.DATASOURCE_QUERY_TIMEOUT_S,
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid datasource entry: %s", exc)
        return cls(configs)

    def list(self) -> List[DatasourceConfig]:
        return sorted(self._configs.values(), key=lambda c: c.id)

    def default_id(self) -> Optional[int]:
        configs = self.list()
        for config in configs:
            if config.is_default:
                return config.id
        return configs[0].id if configs else None

    def get_config(self, datasource_id: int) -> DatasourceConfig:
        config = self._configs.get(datasource_id)
        if config is None:
            raise DatasourceNotFoundError(datasource_id)
        return config

    def get_client(self, datasource_id: int) -> Any:
        self.get_config(datasource_id)
        return self._client


class AIProviderRegistry:
    def __init__(self, records: Optional[List[AIProviderRecord]] = None):
        self._records: Dict[int, AIProviderRecord] = {r.id: r for r in (records or [])}

    @classmethod
    def from_settings(cls) -> "AIProviderRegistry":
        records = []
        for raw in settings.ai_providers():
            try:
                records.append(AIProviderRecord.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid AI provider entry: %s", exc)
        return cls(records)

    def list(self) -> List[AIProviderRecord]:
        return sorted(self._records.values(), key=lambda r: r.id)

    def get(self, provider_id: int) -> AIProviderRecord:
        record = self._records.get(provider_id)
        if record is None:
            raise ConfigurationError(f"Selected AI provider {provider_id} not found")
        return record

    def default(self) -> Optional[AIProviderRecord]:
        records = self.list()
        for record in records:
            if record.is_default:
                return record
        return records[0] if records else None


class SchemaService:
    """Reflects table schemas for prompt construction."""

    def __init__(self, datasources: DatasourceRegistry):
        self._datasources = datasources

    async def list(self, datasource_id: int) -> List[TableSchema]:
        config = self._datasources.get_config(datasource_id)
        loop = asyncio.get_running_loop()
        schemas = await loop.run_in_executor(get_foreground_executor(), load_table_schemas, config)
        log_event(logger, logging.DEBUG, "schemas_loaded", datasource_id=datasource_id, tables=len(schemas))
        return schemas
