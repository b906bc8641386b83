import asyncio
import json

import pytest

from sparkset.services.action_generator import (
    ActionSqlGenerator,
    format_parameter_label,
    infer_parameter_description,
    infer_parameter_type,
    parse_action_response,
    parse_parameters,
)
from sparkset.services.errors import ConfigurationError, ExternalServiceError, QueryValidationError, SafetyViolation
from sparkset.services.models import ColumnDefinition, TableSchema
from sparkset.services.registry import AIProviderRecord, AIProviderRegistry


class _ReplyingAI:
    def __init__(self, reply):
        self.reply = reply
        self.options = []

    async def generate_text(self, options):
        self.options.append(options)
        return self.reply


def _schemas(tables):
    async def lookup(datasource_id):
        return tables

    return lookup


USERS = [TableSchema("users", [ColumnDefinition("id", "INTEGER"), ColumnDefinition("status", "VARCHAR")])]


def _generator(reply, providers=None, tables=USERS):
    registry = AIProviderRegistry(
        providers
        if providers is not None
        else [
            AIProviderRecord(id=1, name="main", type="openai", api_key="sk-1", default_model="gpt-4o-mini"),
            AIProviderRecord(id=2, name="alt", type="deepseek", api_key="sk-2", is_default=True),
        ]
    )
    ai = _ReplyingAI(reply)
    return ActionSqlGenerator(registry, _schemas(tables), ai_client=ai), ai


def test_placeholders_are_collected_once_in_order():
    sql = "UPDATE users SET status = :status WHERE id = :user_id AND org = :org_id OR id = :user_id"
    assert [p.name for p in parse_parameters(sql)] == ["status", "user_id", "org_id"]


def test_casts_and_literals_without_colon_names_are_not_placeholders():
    sql = "SELECT created_at::date FROM events WHERE kind = :kind"
    assert [p.name for p in parse_parameters(sql)] == ["kind"]
    assert parse_parameters("SELECT 1") == []


@pytest.mark.parametrize(
    "name, description, expected",
    [
        ("user_id", "", "number"),
        ("maxCount", "", "number"),
        ("page_limit", "", "number"),
        ("is_vip", "", "boolean"),
        ("enabled", "", "boolean"),
        ("email", "", "string"),
        ("owner", "owner id of the record", "number"),
        ("flag", "flag 是否 生效", "boolean"),
    ],
)
def test_parameter_type_inference(name, description, expected):
    assert infer_parameter_type(name, description) == expected


def test_parameter_description_is_lifted_from_action_description():
    assert infer_parameter_description("user_id", "user_id: 要封禁的用户，执行后立即生效") == "要封禁的用户"
    assert infer_parameter_description("reason", "Ban a user. reason for the ban is logged") == "reason for the ban is logged"
    assert infer_parameter_description("reason", "") is None


def test_parameter_labels():
    assert format_parameter_label("user_id") == "User Id"
    assert format_parameter_label("orderStatus") == "Order Status"
    assert format_parameter_label("EMAIL") == "Email"


def test_parsed_parameters_carry_inferred_fields():
    params = parse_parameters("DELETE FROM users WHERE id = :user_id", "user_id: target user")
    assert [p.to_dict() for p in params] == [
        {"name": "user_id", "type": "number", "required": True, "description": "target user", "label": "User Id"}
    ]


def test_json_reply_with_parameters_is_used_as_is():
    reply = json.dumps(
        {
            "success": True,
            "sql": " UPDATE users SET status = :status WHERE id = :id ",
            "parameters": [
                {"name": "status", "type": "string", "label": "New status"},
                {"name": "id", "type": "number", "required": False},
            ],
        }
    )
    result = parse_action_response("```json\n" + reply + "\n```")

    assert result.sql == "UPDATE users SET status = :status WHERE id = :id"
    assert result.to_dict()["inputSchema"]["parameters"] == [
        {"name": "status", "type": "string", "required": True, "label": "New status"},
        {"name": "id", "type": "number", "required": False},
    ]


def test_json_reply_without_parameters_falls_back_to_placeholders():
    result = parse_action_response('{"success": true, "sql": "DELETE FROM users WHERE id = :user_id"}')
    assert [(p.name, p.type) for p in result.parameters] == [("user_id", "number")]


def test_plain_sql_reply_is_accepted():
    result = parse_action_response("UPDATE users SET status = 'banned' WHERE id = :user_id")
    assert result.sql == "UPDATE users SET status = 'banned' WHERE id = :user_id"
    assert [p.name for p in result.parameters] == ["user_id"]


def test_refusal_text_is_not_mistaken_for_sql():
    with pytest.raises(ExternalServiceError):
        parse_action_response("无法生成，表 orders 不存在 (select failed)")


def test_declined_reply_is_a_validation_error():
    with pytest.raises(QueryValidationError) as exc:
        parse_action_response('{"success": false, "error": "Table payments does not exist"}')
    assert exc.value.message == "Table payments does not exist"

    with pytest.raises(QueryValidationError) as exc:
        parse_action_response('{"success": false}')
    assert exc.value.message == "Failed to generate SQL"


def test_success_without_sql_is_rejected():
    with pytest.raises(ExternalServiceError) as exc:
        parse_action_response('{"success": true, "sql": ""}')
    assert str(exc.value) == "AI returned success but no SQL was generated"


def test_generator_uses_requested_provider_and_action_prompt():
    generator, ai = _generator('{"success": true, "sql": "UPDATE users SET status = :status WHERE id = :user_id;"}')

    result = asyncio.run(generator.generate("Ban user", "status 状态 of the user", 7, ai_provider_id=1))

    assert result.sql == "UPDATE users SET status = :status WHERE id = :user_id"
    assert [(p.name, p.type) for p in result.parameters] == [("status", "boolean"), ("user_id", "number")]
    options = ai.options[0]
    assert (options.provider, options.model, options.api_key) == ("openai", "gpt-4o-mini", "sk-1")
    assert "Name: Ban user" in options.prompt
    assert "`users`" in options.prompt


def test_unknown_provider_falls_back_to_default():
    generator, ai = _generator('{"success": true, "sql": "SELECT id FROM users"}')
    asyncio.run(generator.generate("List users", None, 7, ai_provider_id=99))
    assert ai.options[0].provider == "deepseek"


def test_missing_provider_and_empty_schema_are_configuration_errors():
    generator, _ = _generator("SELECT 1", providers=[])
    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(generator.generate("x", "", 7))
    assert str(exc.value) == "No AI provider available. Please configure an AI provider first."

    generator, ai = _generator("SELECT 1", tables=[])
    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(generator.generate("x", "", 7))
    assert str(exc.value) == "No tables found in datasource 7. Please sync the datasource schema first."
    assert ai.options == []


def test_generated_ddl_is_refused():
    generator, _ = _generator('{"success": true, "sql": "DROP TABLE users"}')
    with pytest.raises(SafetyViolation):
        asyncio.run(generator.generate("Reset", "", 7))
