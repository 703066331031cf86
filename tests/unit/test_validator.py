"""
Unit tests for the statement validator.

Pure functions over PolicyConfig - no DB, no backend.
"""

import pytest

from sqlgate.services.safety.validator import (
    StatementClass, classify, leading_verb, tokenize, validate,
)
from sqlgate.services.shared.config import PolicyConfig


@pytest.fixture
def read(config) -> PolicyConfig:
    return config.policy("read")


@pytest.fixture
def write(config) -> PolicyConfig:
    return config.policy("write")


@pytest.fixture
def ddl(config) -> PolicyConfig:
    return config.policy("ddl")


# ── End-to-end scenarios ──────────────────────────────────────────────────────

def test_plain_select_is_valid_without_warnings(read):
    result = validate("SELECT * FROM Sales.Customer", read)
    assert result.is_valid
    assert result.errors == []
    assert result.warnings == []


def test_delete_without_where_mentions_where(write):
    result = validate("DELETE FROM Sales.Customer", write)
    assert not result.is_valid
    assert any("WHERE" in e for e in result.errors)


def test_delete_with_where_is_valid(write):
    assert validate("DELETE FROM Sales.Customer WHERE id = 7", write).is_valid


def test_update_without_where_rejected(write):
    result = validate("UPDATE Sales.Customer SET name = 'x'", write)
    assert not result.is_valid
    assert any("WHERE" in e for e in result.errors)


def test_where_inside_literal_does_not_count(write):
    result = validate("UPDATE Sales.Customer SET note = 'WHERE id = 1'", write)
    assert not result.is_valid


@pytest.mark.parametrize("statement", [
    "DELETE FROM Sales.Customer -- WHERE",
    "DELETE FROM Sales.Customer /* WHERE */",
    "UPDATE Sales.Customer SET x = 1 -- WHERE id = 1",
    "UPDATE Sales.Customer SET x = 1 /* WHERE id = 1 */",
])
def test_where_inside_comment_does_not_count(write, statement):
    result = validate(statement, write)
    assert not result.is_valid
    assert any("without a WHERE clause" in e for e in result.errors)


def test_comment_before_real_where_is_fine(write):
    assert validate("DELETE FROM Sales.Customer /* old rows */ WHERE id < 10", write).is_valid


# ── Blocked keywords ──────────────────────────────────────────────────────────

@pytest.mark.parametrize("statement,keyword", [
    ("DROP TABLE Sales.Customer", "DROP"),
    ("TRUNCATE TABLE Sales.Customer", "TRUNCATE"),
    ("ALTER TABLE Sales.Customer ADD x INT", "ALTER"),
    ("GRANT SELECT ON Sales.Customer TO bob", "GRANT"),
    ("INSERT INTO Sales.Customer VALUES (1)", "INSERT"),
])
def test_blocked_leading_verbs_name_the_keyword(read, statement, keyword):
    result = validate(statement, read)
    assert not result.is_valid
    assert any(keyword in e for e in result.errors)


def test_glob_blocks_extended_procedures(read):
    result = validate("SELECT xp_cmdshell('dir')", read)
    assert not result.is_valid
    assert any("XP_CMDSHELL" in e for e in result.errors)


def test_keyword_inside_string_literal_is_ignored(read):
    result = validate("SELECT * FROM Sales.Note WHERE body = 'please DROP TABLE x'", read)
    assert result.is_valid


def test_escaped_quote_inside_literal(read):
    result = validate("SELECT * FROM t WHERE name = 'O''Brien; DROP TABLE t'", read)
    assert result.is_valid


def test_keyword_hidden_in_comment_is_still_seen(read):
    result = validate("SELECT 1 FROM t -- DROP TABLE t", read)
    assert not result.is_valid
    assert any("DROP" in e for e in result.errors)


def test_drop_allowed_in_ddl_profile(ddl):
    assert validate("DROP TABLE Sales.Old", ddl).is_valid


def test_drop_truncate_flag_blocks_when_not_in_blocked_list(write):
    custom = write.model_copy(update={"blocked_keywords": frozenset({"GRANT"})})
    result = validate("TRUNCATE TABLE Sales.Customer", custom)
    assert not result.is_valid
    assert any("TRUNCATE" in e for e in result.errors)


# ── System objects / structure ────────────────────────────────────────────────

@pytest.mark.parametrize("statement", [
    "SELECT * FROM sys.objects",
    "SELECT * FROM [sys].[tables]",
    'SELECT * FROM "information_schema"."columns"',
    "SELECT * FROM INFORMATION_SCHEMA.TABLES",
    "SELECT name FROM sysobjects",
])
def test_system_objects_blocked(read, statement):
    result = validate(statement, read)
    assert not result.is_valid
    assert any("system" in e.lower() for e in result.errors)


def test_similar_schema_names_are_not_system(read):
    assert validate("SELECT * FROM mysys.orders", read).is_valid


def test_multiple_statements_rejected(read):
    result = validate("SELECT 1 FROM t; SELECT 2 FROM t", read)
    assert not result.is_valid
    assert any("Multiple statements" in e for e in result.errors)


def test_single_trailing_semicolon_is_fine(read):
    assert validate("SELECT 1 FROM t;", read).is_valid


def test_multiple_statements_allowed_by_flag(read):
    relaxed = read.model_copy(update={"allow_multiple_statements": True})
    assert validate("SELECT 1 FROM t; SELECT 2 FROM t", relaxed).is_valid


def test_length_limit(read):
    statement = "SELECT " + "x," * read.max_statement_length + "1"
    result = validate(statement, read)
    assert not result.is_valid
    assert "exceeds maximum" in result.errors[0]


def test_empty_statement(read):
    assert not validate("   ", read).is_valid


def test_no_allowed_keyword_is_only_a_warning(write):
    result = validate("CALL refresh_stats()", write)
    assert result.is_valid
    assert result.warnings


def test_select_only_mode_rejects_other_verbs(read):
    result = validate("VALUES (1)", read)
    assert not result.is_valid
    assert any("Only SELECT/WITH" in e for e in result.errors)


# ── Lexing helpers ────────────────────────────────────────────────────────────

def test_leading_verb_skips_comments_and_parentheses():
    assert leading_verb("/* note */ (SELECT 1)") == "SELECT"
    assert leading_verb("-- header\nwith x as (select 1) select * from x") == "WITH"
    assert leading_verb("") is None


def test_tokenize_drops_literal_contents():
    assert tokenize("select 'drop' from t") == ["SELECT", "FROM", "T"]


# ── Classification ────────────────────────────────────────────────────────────

def test_classify_blocked(read):
    decision = classify("DROP TABLE x", read)
    assert decision.classification == StatementClass.blocked
    assert decision.leading_verb == "DROP"


def test_classify_merge_requires_approval(write):
    decision = classify("MERGE INTO t USING s ON t.id = s.id WHEN MATCHED THEN UPDATE SET a = 1", write)
    assert decision.classification == StatementClass.requires_approval


def test_classify_ddl_requires_approval(ddl):
    assert classify("CREATE TABLE Sales.Audit (id INT)", ddl).classification == StatementClass.requires_approval


def test_classify_allowed(ddl, read):
    assert classify("ANALYZE Sales.Customer", ddl).classification == StatementClass.allowed
    assert classify("SELECT 1 FROM t", read).classification == StatementClass.allowed
