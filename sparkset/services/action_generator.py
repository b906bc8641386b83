"""
Drafts the SQL body of a saved Action from its name and description.

The model is asked for a JSON object ``{success, sql, parameters}``. A reply
that is plain SQL is accepted as well; when the reply lists no parameters
they are inferred from the ``:name`` placeholders in the statement.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sparkset.services.ai_client import AIClientConfig, LangChainAIClient, ModelCallOptions
from sparkset.services.errors import ConfigurationError, ExternalServiceError, QueryValidationError
from sparkset.services.models import TableSchema
from sparkset.services.prompt_builder import build_action_prompt
from sparkset.services.registry import AIProviderRecord, AIProviderRegistry
from sparkset.services.runtime import log_event
from sparkset.services.sql_safety import ensure_action_safe

logger = logging.getLogger("action_generator")

SchemaLookup = Callable[[int], Awaitable[List[TableSchema]]]

# ``::`` casts are not placeholders.
_PLACEHOLDER_RE = re.compile(r"(?<![:\w]):([A-Za-z_]\w*)")
_CAMEL_BOUNDARY_RE = re.compile(r"([a-z])([A-Z])")

_NUMBER_NAME_HINTS = ("id", "count", "num", "limit", "offset")
_NUMBER_DESCRIPTION_HINTS = ("{} id", "{} 数量", "{} 编号")
_BOOLEAN_NAME_HINTS = ("is", "has", "can", "enabled", "active", "status")
_BOOLEAN_DESCRIPTION_HINTS = ("{} 是否", "{} 状态")

_SQL_HINTS = ("select", "insert", "update", "delete", "from", "where", "set", "values")
_REFUSAL_HINTS = ("无法", "错误", "不存在", "失败", "不能", "unable", "error", "failed")

UNPARSEABLE_REPLY_MESSAGE = (
    "AI returned a reply that could not be parsed as JSON. "
    "Please retry or check the action description and datasource configuration."
)


@dataclass
class ActionParameter:
    name: str
    type: str = "string"
    required: bool = True
    description: Optional[str] = None
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "type": self.type, "required": self.required}
        if self.description:
            data["description"] = self.description
        if self.label:
            data["label"] = self.label
        return data


@dataclass
class GeneratedActionSql:
    sql: str
    parameters: List[ActionParameter] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"sql": self.sql, "inputSchema": {"parameters": [p.to_dict() for p in self.parameters]}}


# ---------------------------
# Parameter inference
# ---------------------------

def infer_parameter_type(name: str, description: str = "") -> str:
    lowered = name.lower()
    text = (description or "").lower()
    if any(hint in lowered for hint in _NUMBER_NAME_HINTS) or any(
        hint.format(lowered) in text for hint in _NUMBER_DESCRIPTION_HINTS
    ):
        return "number"
    if any(hint in lowered for hint in _BOOLEAN_NAME_HINTS) or any(
        hint.format(lowered) in text for hint in _BOOLEAN_DESCRIPTION_HINTS
    ):
        return "boolean"
    return "string"


def infer_parameter_description(name: str, description: str = "") -> Optional[str]:
    """Pick the phrase describing ``name`` out of the action description, if any."""
    if not description:
        return None
    escaped = re.escape(name)
    patterns = (
        re.compile(escaped + r"[：:]([^，,。.\n]+)", re.IGNORECASE),
        re.compile("(" + escaped + r"[^，,。.\n]+)", re.IGNORECASE),
    )
    for pattern in patterns:
        match = pattern.search(description)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def format_parameter_label(name: str) -> str:
    spaced = _CAMEL_BOUNDARY_RE.sub(r"\1 \2", name.replace("_", " "))
    return " ".join(word[:1].upper() + word[1:].lower() for word in spaced.split(" "))


def parse_parameters(sql: str, description: str = "") -> List[ActionParameter]:
    """Build parameter definitions from ``:name`` placeholders, first occurrence order."""
    names: List[str] = []
    for match in _PLACEHOLDER_RE.finditer(sql):
        if match.group(1) not in names:
            names.append(match.group(1))
    return [
        ActionParameter(
            name=name,
            type=infer_parameter_type(name, description),
            required=True,
            description=infer_parameter_description(name, description),
            label=format_parameter_label(name),
        )
        for name in names
    ]


# ---------------------------
# Reply parsing
# ---------------------------

def _strip_json_fence(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned.startswith("```"):
        return cleaned
    lines = cleaned.split("\n")
    lines.pop(0)
    if lines and lines[-1].strip() == "```":
        lines.pop()
    return "\n".join(lines).strip()


def _looks_like_plain_sql(text: str) -> bool:
    lowered = text.lower()
    return any(hint in lowered for hint in _SQL_HINTS) and not any(hint in lowered for hint in _REFUSAL_HINTS)


def _parameters_from_reply(raw: List[Any], description: str) -> List[ActionParameter]:
    parameters = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        name = str(item["name"])
        required = item.get("required")
        parameters.append(
            ActionParameter(
                name=name,
                type=item.get("type") or infer_parameter_type(name, description),
                required=True if required is None else bool(required),
                description=item.get("description"),
                label=item.get("label"),
            )
        )
    return parameters


def parse_action_response(text: str, description: str = "") -> GeneratedActionSql:
    """
    Turn a model reply into SQL plus parameter definitions.

    Raises ``QueryValidationError`` when the model declined the request and
    ``ExternalServiceError`` when the reply is neither JSON nor plain SQL.
    """
    cleaned = _strip_json_fence(text)
    try:
        reply = json.loads(cleaned)
    except ValueError:
        reply = None
    if not isinstance(reply, dict):
        if not _looks_like_plain_sql(cleaned):
            raise ExternalServiceError("AI provider", UNPARSEABLE_REPLY_MESSAGE)
        log_event(logger, logging.WARNING, "action_reply_plain_sql", preview=cleaned[:200])
        reply = {"success": True, "sql": cleaned}

    if not reply.get("success"):
        message = str(reply.get("error") or "Failed to generate SQL")
        raise QueryValidationError(message, details=[message])

    sql = str(reply.get("sql") or "").strip()
    if not sql:
        raise ExternalServiceError("AI provider", "AI returned success but no SQL was generated")

    raw_parameters = reply.get("parameters")
    if isinstance(raw_parameters, list):
        parameters = _parameters_from_reply(raw_parameters, description)
    else:
        parameters = parse_parameters(sql, description)
    return GeneratedActionSql(sql=sql, parameters=parameters)


# ---------------------------
# Generator
# ---------------------------

class ActionSqlGenerator:
    def __init__(
        self,
        providers: AIProviderRegistry,
        get_schemas: SchemaLookup,
        ai_client: Optional[LangChainAIClient] = None,
    ):
        self.providers = providers
        self.get_schemas = get_schemas
        self.ai_client = ai_client or LangChainAIClient(AIClientConfig.from_settings())

    def _pick_provider(self, ai_provider_id: Optional[int]) -> AIProviderRecord:
        provider = None
        if ai_provider_id is not None:
            try:
                provider = self.providers.get(ai_provider_id)
            except ConfigurationError:
                log_event(logger, logging.WARNING, "action_provider_missing", ai_provider_id=ai_provider_id)
        provider = provider or self.providers.default()
        if provider is None:
            raise ConfigurationError("No AI provider available. Please configure an AI provider first.")
        return provider

    async def generate(
        self,
        name: str,
        description: Optional[str],
        datasource_id: int,
        ai_provider_id: Optional[int] = None,
    ) -> GeneratedActionSql:
        description = description or ""
        schemas = await self.get_schemas(datasource_id)
        if not schemas:
            raise ConfigurationError(
                f"No tables found in datasource {datasource_id}. Please sync the datasource schema first."
            )
        provider = self._pick_provider(ai_provider_id)

        prompt = build_action_prompt(name, description, schemas)
        log_event(
            logger,
            logging.INFO,
            "action_sql_start",
            action=name,
            datasource_id=datasource_id,
            ai_provider_id=provider.id,
            prompt_chars=len(prompt),
        )
        reply = await self.ai_client.generate_text(
            ModelCallOptions(
                prompt=prompt,
                model=provider.default_model,
                provider=provider.type,
                api_key=provider.api_key,
                base_url=provider.base_url,
            )
        )

        generated = parse_action_response(reply, description)
        generated.sql = ensure_action_safe(generated.sql)
        log_event(
            logger,
            logging.INFO,
            "action_sql_done",
            action=name,
            sql=generated.sql[:500],
            parameters=[p.name for p in generated.parameters],
        )
        return generated
