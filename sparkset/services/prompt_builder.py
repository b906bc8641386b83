"""Prompt construction for SQL generation."""
from __future__ import annotations

from typing import List, Optional

from sparkset.services.models import TableSchema

SQL_GENERATION_PROMPT = """You are a professional SQL generation assistant. Based on the user's question and database Schema information, generate accurate and secure SQL query statements.

## Database Schema Information

{schema_section}

## Important Constraints

1. **Only use provided tables**: **Strictly prohibited** to use tables not listed in the Schema information. If the user's question involves a table that is not in the Schema, clearly inform the user that the table does not exist.
2. **Only use provided columns**: **Strictly prohibited** to use column names not listed in the table. Only use columns explicitly listed in the Schema.
3. **Read-only queries**: Only generate SELECT query statements
4. **No DDL**: CREATE, ALTER, DROP and other data definition statements are not allowed
5. **No DML**: INSERT, UPDATE, DELETE and other data modification statements are not allowed
6. **No system operations**: Accessing system tables or executing system functions is not allowed
7. **Auto-add LIMIT**: If the user's question involves operations like "list" or "show" without specifying a quantity, add LIMIT 100 by default

## Output Requirements

1. **Pure SQL statement**: Only output SQL code, do not include markdown code block markers (such as ```sql)
2. **Single statement**: Only generate one SQL statement
3. **Format specification**: Use standard SQL syntax, wrap table names and column names with backticks (if they contain special characters)
4. **LIMIT handling**: {limit_rule}
5. **Table name validation**: Before generating SQL, confirm that all table names are in the Schema information above. If a table in the user's question does not exist, generate a simple SELECT statement with a comment explaining that the table does not exist.

## User Question

{question}

Please generate a SQL query statement based on the above information:"""

EMPTY_SCHEMA_TEXT = "No tables available in the current datasource."


def format_schemas(schemas: List[TableSchema]) -> str:
    if not schemas:
        return EMPTY_SCHEMA_TEXT

    sections = []
    for schema in schemas:
        header = f"### Table: `{schema.table_name}`"
        if schema.table_comment:
            header += f" ({schema.table_comment})"
        if schema.semantic_description:
            header += f"\n  Semantic Description: {schema.semantic_description}"

        lines = [header]
        for col in schema.columns:
            semantic = f" [{col.semantic_description}]" if col.semantic_description else ""
            comment = f" -- {col.comment}" if col.comment else ""
            lines.append(f"  - `{col.name}` {col.type}{semantic}{comment}")
        sections.append("\n".join(lines))

    return "\n\n".join(sections)


def build_prompt(question: str, schemas: List[TableSchema], limit: Optional[int] = None) -> str:
    if limit:
        limit_rule = f"This query is limited to return {limit} records, please add LIMIT {limit} to the SQL"
    else:
        limit_rule = (
            "If the query may return a large amount of data, add an appropriate LIMIT clause "
            "(recommended LIMIT 100)"
        )
    return SQL_GENERATION_PROMPT.format(
        schema_section=format_schemas(schemas),
        limit_rule=limit_rule,
        question=question,
    )


ACTION_SQL_PROMPT = """You are a professional SQL generation assistant. Write one reusable SQL statement for a saved Action, based on the Action's name, its description and the database Schema information.

## Database Schema Information

{schema_section}

## Action

Name: {name}
Description: {description}

## Important Constraints

1. **Only use provided tables and columns**: **Strictly prohibited** to use tables or columns not listed in the Schema information.
2. **Data changes are allowed**: SELECT, INSERT, UPDATE and DELETE statements may be generated
3. **No DDL**: CREATE, ALTER, DROP, TRUNCATE and other data definition statements are not allowed
4. **Single statement**: Only generate one SQL statement
5. **Named parameters**: Values the caller supplies at run time must be written as named placeholders such as `:user_id`, never inlined

## Output Requirements

Reply with a single JSON object and nothing else, without markdown code block markers:

{{"success": true, "sql": "UPDATE users SET status = :status WHERE id = :user_id", "parameters": [{{"name": "user_id", "type": "number", "required": true, "label": "User Id", "description": "ID of the user to update"}}]}}

- `type` is one of "string", "number" or "boolean"
- If the Action cannot be expressed with the tables above, reply {{"success": false, "error": "<reason>"}}

Please generate the Action SQL based on the above information:"""


def build_action_prompt(name: str, description: Optional[str], schemas: List[TableSchema]) -> str:
    return ACTION_SQL_PROMPT.format(
        schema_section=format_schemas(schemas),
        name=name,
        description=(description or "").strip() or "(none)",
    )
