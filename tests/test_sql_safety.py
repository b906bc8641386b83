import pytest

from sparkset.services.errors import SafetyViolation
from sparkset.services.sql_extraction import extract_sql
from sparkset.services.sql_safety import (
    SafetyMode,
    ensure_action_safe,
    ensure_read_only,
    ensure_safe_sql,
    has_multiple_statements,
    is_read_only,
    strip_comments,
)


def test_trailing_semicolons_are_stripped():
    assert ensure_read_only("SELECT 1;;;") == "SELECT 1"


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM notes WHERE body = 'a;b'",
        'SELECT * FROM notes WHERE body = "x;y"',
        "SELECT 1 -- trailing; comment",
        "SELECT /* ; */ 1",
        "SELECT 'it''s; fine' AS v",
    ],
)
def test_semicolons_in_literals_and_comments_are_not_structural(sql):
    assert ensure_read_only(sql)
    assert not has_multiple_statements(sql)


def test_structural_semicolon_is_rejected_with_preview():
    with pytest.raises(SafetyViolation) as exc:
        ensure_read_only("SELECT 1; SELECT 2")
    assert str(exc.value).startswith("Multi-statement queries are not allowed. SQL: SELECT 1; SELECT 2")
    assert not str(exc.value).endswith("...")


def test_multi_statement_preview_is_truncated():
    long_sql = "SELECT 1; SELECT '" + "x" * 300 + "'"
    with pytest.raises(SafetyViolation) as exc:
        ensure_read_only(long_sql)
    message = str(exc.value)
    assert message.endswith("...")
    assert len(message) < 260


@pytest.mark.parametrize("sql", ["select 1", "WITH t AS (SELECT 1) SELECT * FROM t", "SHOW TABLES", "describe users", "EXPLAIN SELECT 1"])
def test_read_only_prefixes_are_accepted(sql):
    assert is_read_only(sql)


@pytest.mark.parametrize("sql", ["UPDATE users SET a = 1", "", "   ", "CALL proc()"])
def test_non_read_only_prefix_is_rejected(sql):
    with pytest.raises(SafetyViolation) as exc:
        ensure_read_only(sql)
    assert exc.value.reason == "Only read-only queries are allowed (SELECT/SHOW/DESCRIBE/EXPLAIN)"


def test_write_keyword_inside_select_is_rejected():
    with pytest.raises(SafetyViolation) as exc:
        ensure_read_only("WITH x AS (DELETE FROM users RETURNING *) SELECT * FROM x")
    assert exc.value.reason == "Write operations are blocked in query runner"


def test_identifiers_containing_keywords_are_allowed():
    sql = "SELECT created_at, updated_by, deleted_flag FROM audit_log"
    assert ensure_read_only(sql) == sql


def test_action_path_allows_dml_but_not_ddl():
    assert ensure_action_safe("UPDATE users SET status = 'banned' WHERE id = 42")
    assert ensure_action_safe("INSERT INTO t (a) VALUES (1)")
    with pytest.raises(SafetyViolation) as exc:
        ensure_action_safe("DROP TABLE users")
    assert exc.value.reason == "DDL operations (CREATE/ALTER/DROP) are not allowed in Actions"


def test_action_path_still_rejects_multiple_statements():
    with pytest.raises(SafetyViolation):
        ensure_safe_sql("UPDATE t SET a = 1; DELETE FROM t", SafetyMode.ACTION)


def test_update_passes_action_path_but_not_read_only_path():
    sql = "UPDATE users SET status = 'banned' WHERE id = 42"
    assert ensure_action_safe(sql) == sql
    with pytest.raises(SafetyViolation):
        ensure_read_only(sql)


def test_safety_violation_is_a_validation_error():
    with pytest.raises(SafetyViolation) as exc:
        ensure_read_only("DROP TABLE x")
    assert exc.value.code == "E_VALIDATION_ERROR"
    assert exc.value.status == 400


def test_leading_comment_line_does_not_hide_select():
    sql = extract_sql("-- table orders does not exist\nSELECT 1")
    assert ensure_read_only(sql) == "-- table orders does not exist\nSELECT 1"


def test_keyword_inside_comment_is_ignored():
    sql = "SELECT id FROM orders -- do not update this report"
    assert ensure_read_only(sql) == sql
    assert ensure_read_only("SELECT id /* drop me later */ FROM orders") == "SELECT id /* drop me later */ FROM orders"
    assert ensure_action_safe("UPDATE t SET a = 1 /* never DROP */") == "UPDATE t SET a = 1 /* never DROP */"


def test_keyword_inside_literal_is_still_rejected():
    with pytest.raises(SafetyViolation):
        ensure_read_only("SELECT 'delete' AS label")


def test_strip_comments_keeps_literals():
    assert strip_comments("SELECT '-- not a comment' -- real one") == "SELECT '-- not a comment'"
    assert strip_comments("/* lead */ SELECT 1") == "SELECT 1"
