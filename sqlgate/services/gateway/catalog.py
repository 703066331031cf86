"""
Fixed catalog templates and the static MCP resource / prompt listings.

The `schema` tool never runs agent-supplied SQL: it picks one of the
templates below and binds the object name as a parameter. Templates use
information_schema (portable across PostgreSQL, MySQL and SQL Server);
indexes come from pg_indexes, which is PostgreSQL-only.
"""

from typing import Any, Optional

from sqlgate.services.safety.contracts import QUALIFIED_NAME_RE
from sqlgate.services.shared.errors import ValidationFailure

OBJECT_TYPES = ("table", "view", "procedure", "function", "index")


# ── Schema templates ──────────────────────────────────────────────────────────

_LIST_TEMPLATES = {
    "table": """
        SELECT table_schema, table_name
        FROM information_schema.tables
        WHERE table_type = 'BASE TABLE' {filter}
        ORDER BY table_schema, table_name""",
    "view": """
        SELECT table_schema, table_name, view_definition
        FROM information_schema.views
        WHERE 1 = 1 {filter}
        ORDER BY table_schema, table_name""",
    "procedure": """
        SELECT routine_schema, routine_name, data_type
        FROM information_schema.routines
        WHERE routine_type = 'PROCEDURE' {filter}
        ORDER BY routine_schema, routine_name""",
    "function": """
        SELECT routine_schema, routine_name, data_type
        FROM information_schema.routines
        WHERE routine_type = 'FUNCTION' {filter}
        ORDER BY routine_schema, routine_name""",
    "index": """
        SELECT schemaname, tablename, indexname, indexdef
        FROM pg_indexes
        WHERE 1 = 1 {filter}
        ORDER BY schemaname, tablename, indexname""",
}

_NAME_COLUMNS = {
    "table":     ("table_schema", "table_name"),
    "view":      ("table_schema", "table_name"),
    "procedure": ("routine_schema", "routine_name"),
    "function":  ("routine_schema", "routine_name"),
    "index":     ("schemaname", "tablename"),
}

_TABLE_COLUMNS_TEMPLATE = """
        SELECT column_name, data_type, is_nullable, character_maximum_length, ordinal_position
        FROM information_schema.columns
        WHERE table_name = :object_name {schema_filter}
        ORDER BY ordinal_position"""


def split_name(object_name: str) -> tuple[Optional[str], str]:
    if not QUALIFIED_NAME_RE.match(object_name):
        raise ValidationFailure(
            f"Invalid object name '{object_name}'",
            errors=[f"objectName must be 'schema.name' or 'name', got '{object_name}'"],
            data={"field": "objectName"},
        )
    schema, _, name = object_name.rpartition(".")
    return schema or None, name


def build_schema_query(object_type: str, object_name: Optional[str] = None) -> tuple[str, dict[str, Any]]:
    """Template SQL and binds for one schema inspection."""
    if object_type not in _LIST_TEMPLATES:
        raise ValidationFailure(
            f"Unsupported objectType '{object_type}'",
            errors=[f"objectType must be one of {', '.join(OBJECT_TYPES)}"],
            data={"field": "objectType"},
        )

    if not object_name:
        return _LIST_TEMPLATES[object_type].format(filter=""), {}

    schema, name = split_name(object_name)
    binds: dict[str, Any] = {"object_name": name}

    if object_type == "table":
        schema_filter = ""
        if schema:
            schema_filter = "AND table_schema = :object_schema"
            binds["object_schema"] = schema
        return _TABLE_COLUMNS_TEMPLATE.format(schema_filter=schema_filter), binds

    schema_col, name_col = _NAME_COLUMNS[object_type]
    clause = f"AND {name_col} = :object_name"
    if schema:
        clause += f" AND {schema_col} = :object_schema"
        binds["object_schema"] = schema
    return _LIST_TEMPLATES[object_type].format(filter=clause), binds


# ── Resources & prompts ───────────────────────────────────────────────────────

RESOURCE_KINDS = {
    "tables":     "Tables of {db}",
    "views":      "Views of {db}",
    "procedures": "Stored procedures of {db}",
}


def list_resources(databases: list[str]) -> list[dict[str, Any]]:
    resources = [{
        "uri":         "sqlgate://databases",
        "name":        "databases",
        "description": "Logical databases reachable through this gateway",
        "mimeType":    "application/json",
    }]
    for db in databases:
        for kind, description in RESOURCE_KINDS.items():
            resources.append({
                "uri":         f"sqlgate://{db}/{kind}",
                "name":        f"{db}/{kind}",
                "description": description.format(db=db),
                "mimeType":    "application/json",
            })
    return resources


PROMPTS = [
    {
        "name": "sql-generation",
        "description": "Draft a read-only SQL query for a question about one database",
        "arguments": [
            {"name": "database", "description": "Target database", "required": True},
            {"name": "question", "description": "What the query should answer", "required": True},
        ],
    },
    {
        "name": "optimization",
        "description": "Suggest improvements for a slow query using its execution plan",
        "arguments": [
            {"name": "database", "description": "Target database", "required": True},
            {"name": "query",    "description": "The query to optimize", "required": True},
        ],
    },
    {
        "name": "security-review",
        "description": "Review a statement against the gateway's safety policies",
        "arguments": [
            {"name": "statement", "description": "Statement to review", "required": True},
        ],
    },
]
