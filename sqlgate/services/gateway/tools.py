"""
Tool catalog and handlers.

Each tool is a ToolSpec in a registered table: name, description, JSON-Schema
style inputSchema and one async handler. The dispatcher looks tools up by
name; nothing is resolved by reflection.

  query              read profile, untracked, rows/columns/rowCount
  execute            write profile, bind parameters sanitized, tracked task
  schema             fixed catalog templates, no agent SQL
  analyze            security | performance | statistics | patterns
  execute_procedure  sanitizer + contract cache, critical procedures need approval
  schema_migrate     ddl profile, DDL verbs need approval
  task_status        task detail

Rejections (ValidationFailure, ContractMismatch) are audited once, in
invoke(). Untracked executions audit their own outcome; tracked ones are
audited by the task workflow's transitions.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.orm import Session

from sqlgate.services.gateway.catalog import OBJECT_TYPES, build_schema_query, split_name
from sqlgate.services.gateway.components import Components
from sqlgate.services.safety.contracts import SecurityLevel, build_call, normalize_qualified_name
from sqlgate.services.safety.results import ValidationResult
from sqlgate.services.safety.sanitizer import bind_name, coerce_parameters, escape_for_logging, to_log_string
from sqlgate.services.safety.validator import StatementClass, StatementDecision, classify
from sqlgate.services.shared.backend import QueryResult
from sqlgate.services.shared.config import REQUIRED_PROFILES, ResiliencePolicy
from sqlgate.services.shared.errors import (
    INVALID_PARAMS, ContractMismatch, GatewayError, ProtocolError, ValidationFailure,
)
from sqlgate.services.shared.models import AuditSeverity, TaskType
from sqlgate.services.shared.schemas import DatabaseTaskOut, ProcedureParameter
from sqlgate.services.workflow.tasks import task_type_for

logger = structlog.get_logger()

ANALYSIS_TYPES = ("performance", "statistics", "patterns", "security")
PATTERN_SAMPLE_ROWS = 1000
MIN_TIMEOUT, MAX_TIMEOUT, DEFAULT_TIMEOUT = 1, 300, 30


@dataclass
class ToolCall:
    db:             Session
    caller:         str
    correlation_id: str
    arguments:      dict[str, Any]


@dataclass(frozen=True)
class ToolSpec:
    name:         str
    description:  str
    input_schema: dict[str, Any]
    handler:      Callable[[ToolCall], Awaitable[dict[str, Any]]]

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


# ── Input schemas ─────────────────────────────────────────────────────────────

_DATABASE = {"type": "string", "description": "Logical database name"}
_TIMEOUT = {
    "type": "integer", "minimum": MIN_TIMEOUT, "maximum": MAX_TIMEOUT, "default": DEFAULT_TIMEOUT,
    "description": "Timeout in seconds",
}
_PARAMETERS = {
    "description": "Bind parameters: a name/value object or an array of parameter objects",
    "oneOf": [
        {"type": "object"},
        {"type": "array", "items": {
            "type": "object",
            "properties": {
                "name":        {"type": "string"},
                "value":       {},
                "dataType":    {"type": "string"},
                "direction":   {"type": "string", "enum": ["input", "output", "input_output", "return_value"]},
                "isSensitive": {"type": "boolean"},
                "size":        {"type": "integer"},
            },
            "required": ["name"],
        }},
    ],
}

QUERY_SCHEMA = {
    "type": "object",
    "properties": {
        "database": _DATABASE,
        "query":    {"type": "string", "description": "A single SELECT or WITH statement"},
        "timeout":  _TIMEOUT,
    },
    "required": ["database", "query"],
}

EXECUTE_SCHEMA = {
    "type": "object",
    "properties": {
        "database":   _DATABASE,
        "command":    {"type": "string", "description": "INSERT, UPDATE, DELETE or MERGE statement"},
        "parameters": _PARAMETERS,
        "reason":     {"type": "string", "description": "Why the change is needed"},
        "timeout":    _TIMEOUT,
    },
    "required": ["database", "command"],
}

SCHEMA_SCHEMA = {
    "type": "object",
    "properties": {
        "database":   _DATABASE,
        "objectType": {"type": "string", "enum": list(OBJECT_TYPES)},
        "objectName": {"type": "string", "description": "Optional 'schema.name' filter"},
    },
    "required": ["database", "objectType"],
}

ANALYZE_SCHEMA = {
    "type": "object",
    "properties": {
        "database":     _DATABASE,
        "analysisType": {"type": "string", "enum": list(ANALYSIS_TYPES)},
        "target":       {"type": "string", "description": "Statement (security, performance) or table (statistics, patterns)"},
    },
    "required": ["database", "analysisType", "target"],
}

EXECUTE_PROCEDURE_SCHEMA = {
    "type": "object",
    "properties": {
        "database":   _DATABASE,
        "procedure":  {"type": "string", "description": "'schema.name' of the stored procedure"},
        "parameters": _PARAMETERS,
        "reason":     {"type": "string"},
    },
    "required": ["database", "procedure"],
}

SCHEMA_MIGRATE_SCHEMA = {
    "type": "object",
    "properties": {
        "database":  _DATABASE,
        "statement": {"type": "string", "description": "One DDL statement"},
        "reason":    {"type": "string", "description": "Shown to the approver"},
    },
    "required": ["database", "statement"],
}

TASK_STATUS_SCHEMA = {
    "type": "object",
    "properties": {"taskId": {"type": "string"}},
    "required": ["taskId"],
}


def check_arguments(schema: dict[str, Any], arguments: dict[str, Any]) -> None:
    """Required fields, enums and integer bounds from an inputSchema."""
    for name in schema.get("required", []):
        value = arguments.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationFailure(
                f"Missing required argument '{name}'",
                errors=[f"Missing required argument '{name}'"],
                data={"field": name},
            )

    for name, prop in schema.get("properties", {}).items():
        if name not in arguments or arguments[name] is None:
            continue
        value = arguments[name]
        kind = prop.get("type")
        if kind == "string" and not isinstance(value, str):
            raise ValidationFailure(f"Argument '{name}' must be a string", data={"field": name})
        if kind == "integer":
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationFailure(f"Argument '{name}' must be an integer", data={"field": name})
            lo, hi = prop.get("minimum"), prop.get("maximum")
            if (lo is not None and value < lo) or (hi is not None and value > hi):
                raise ValidationFailure(
                    f"Argument '{name}' must be between {lo} and {hi}", data={"field": name}
                )
        if "enum" in prop and value not in prop["enum"]:
            raise ValidationFailure(
                f"Argument '{name}' must be one of: {', '.join(prop['enum'])}", data={"field": name}
            )


def _reject(message: str, result: ValidationResult, **data: Any) -> ValidationFailure:
    return ValidationFailure(message, errors=result.errors, data={**data, "warnings": result.warnings})


# ── Tools ─────────────────────────────────────────────────────────────────────

class GatewayTools:
    def __init__(self, components: Components):
        self.c = components
        self.specs: dict[str, ToolSpec] = {
            spec.name: spec for spec in (
                ToolSpec("query", "Run a read-only query under the read policy", QUERY_SCHEMA, self.query),
                ToolSpec("execute", "Run a data-modifying statement as a tracked task", EXECUTE_SCHEMA, self.execute),
                ToolSpec("schema", "Inspect tables, views, procedures, functions or indexes", SCHEMA_SCHEMA, self.schema),
                ToolSpec("analyze", "Security, performance, statistics or pattern analysis", ANALYZE_SCHEMA, self.analyze),
                ToolSpec("execute_procedure", "Call a stored procedure checked against its contract",
                         EXECUTE_PROCEDURE_SCHEMA, self.execute_procedure),
                ToolSpec("schema_migrate", "Submit a DDL change for approval", SCHEMA_MIGRATE_SCHEMA, self.schema_migrate),
                ToolSpec("task_status", "Status, progress and results of a task", TASK_STATUS_SCHEMA, self.task_status),
            )
        }

    def describe(self) -> list[dict[str, Any]]:
        return [spec.describe() for spec in self.specs.values()]

    async def invoke(self, name: str, call: ToolCall) -> dict[str, Any]:
        spec = self.specs.get(name)
        if spec is None:
            raise ProtocolError(f"Unknown tool '{name}'", code=INVALID_PARAMS, data={"tool": name})
        try:
            check_arguments(spec.input_schema, call.arguments)
            return await spec.handler(call)
        except (ValidationFailure, ContractMismatch) as exc:
            await self._audit_rejection(call, name, exc)
            raise

    # ── Shared steps ───────────────────────────────────────────────────────────

    async def _audit(self, call: ToolCall, **fields: Any) -> None:
        """Audit writes are blocking SQLAlchemy commits; keep them off the event loop."""
        await asyncio.to_thread(
            self.c.audit.record, call.db, user_id=call.caller, correlation_id=call.correlation_id, **fields
        )

    async def _audit_rejection(self, call: ToolCall, tool: str, exc: GatewayError) -> None:
        mismatch = isinstance(exc, ContractMismatch)
        await self._audit(
            call,
            entity_type="procedure" if mismatch else "tool",
            entity_id=call.arguments.get("procedure") if mismatch else tool,
            action="contract_mismatch" if mismatch else "request_rejected",
            success=False,
            severity=AuditSeverity.error if mismatch else AuditSeverity.warning,
            detail=exc.message,
            data={"tool": tool, "database": call.arguments.get("database"), **exc.data},
        )

    def _database(self, call: ToolCall) -> str:
        database = call.arguments["database"]
        if database not in self.c.config.databases:
            raise ValidationFailure(
                f"Unknown database '{database}'",
                errors=[f"Unknown database '{database}'"],
                data={"field": "database"},
            )
        return database

    def _resilience(self, timeout: Optional[int]) -> ResiliencePolicy:
        if timeout is None:
            return self.c.config.resilience
        return self.c.config.resilience.model_copy(update={"timeout": float(timeout)})

    def _classify(self, statement: str, profile: str) -> StatementDecision:
        decision = classify(statement, self.c.config.policy(profile))
        if decision.classification == StatementClass.blocked:
            raise _reject(
                f"Statement rejected by the {profile} policy",
                decision.result,
                profile=profile,
                leadingVerb=decision.leading_verb,
            )
        return decision

    def _parameters(self, raw: Any) -> list[ProcedureParameter]:
        try:
            return coerce_parameters(raw)
        except (TypeError, ValidationError) as exc:
            raise ValidationFailure(
                "Malformed parameters",
                errors=[str(exc).splitlines()[0]],
                data={"field": "parameters"},
            ) from exc

    async def _run_untracked(
        self, call: ToolCall, tool: str, database: str, statement: str,
        binds: dict[str, Any], timeout: Optional[int] = None,
    ) -> QueryResult:
        policy = self._resilience(timeout)
        backend = self.c.backend
        audit_data = {"tool": tool, "statement": escape_for_logging(statement[:500])}
        try:
            result = await self.c.executor.execute(
                database,
                lambda: backend.execute(database, statement, binds, policy.timeout),
                policy,
            )
        except asyncio.CancelledError:
            await self._audit(
                call,
                entity_type="statement",
                entity_id=database,
                action=f"{tool}_cancelled",
                success=False,
                severity=AuditSeverity.warning,
                detail="Execution cancelled by the caller",
                data=audit_data,
            )
            raise
        except GatewayError as exc:
            await self._audit(
                call,
                entity_type="statement",
                entity_id=database,
                action=f"{tool}_failed",
                success=False,
                severity=AuditSeverity.error,
                detail=exc.safe_message,
                data={**audit_data, "kind": exc.kind.value},
            )
            raise
        await self._audit(
            call,
            entity_type="statement",
            entity_id=database,
            action=f"{tool}_executed",
            success=True,
            detail=f"{result.row_count} rows returned",
            data={**audit_data, "rowCount": result.row_count, "executionTimeMs": round(result.execution_time_ms, 3)},
        )
        return result

    async def _flag_warnings(self, call: ToolCall, tool: str, warnings: list[str]) -> None:
        if not warnings:
            return
        await self._audit(
            call,
            entity_type="tool",
            entity_id=tool,
            action="suspicious_input_flagged",
            success=True,
            severity=AuditSeverity.warning,
            detail="; ".join(warnings),
            data={"tool": tool, "database": call.arguments.get("database"), "warnings": warnings},
        )

    async def _tracked(
        self,
        call: ToolCall,
        tool: str,
        database: str,
        statement: str,
        *,
        task_type: TaskType,
        requires_approval: bool,
        binds: Optional[dict[str, Any]] = None,
        sensitive: frozenset[str] | set[str] = frozenset(),
        warnings: Optional[list[str]] = None,
        timeout: Optional[int] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        warnings = list(warnings or [])
        task = await asyncio.to_thread(
            self.c.workflow.submit,
            call.db,
            task_type=task_type,
            database=database,
            created_by=call.caller,
            tool_name=tool,
            statement=statement,
            binds=binds,
            sensitive=sensitive,
            requires_approval=requires_approval,
            reason=call.arguments.get("reason"),
            correlation_id=call.correlation_id,
        )
        payload: dict[str, Any] = {"taskId": task.id, "warnings": warnings, **(extra or {})}
        if requires_approval:
            payload.update(
                status=task.status.value,
                requiresApproval=True,
                message="Operation requires approval; no statement has been executed",
            )
            return payload

        result = await self.c.workflow.execute(
            call.db, task, call.caller, correlation_id=call.correlation_id,
            timeout=float(timeout) if timeout else None,
        )
        payload.update(status=task.status.value, requiresApproval=False, **result.to_dict())
        return payload

    # ── Handlers ───────────────────────────────────────────────────────────────

    async def query(self, call: ToolCall) -> dict[str, Any]:
        database = self._database(call)
        statement = call.arguments["query"]
        decision = self._classify(statement, "read")
        if decision.classification == StatementClass.requires_approval:
            return await self._tracked(
                call, "query", database, statement,
                task_type=TaskType.query, requires_approval=True, warnings=decision.result.warnings,
            )
        result = await self._run_untracked(
            call, "query", database, statement, {}, call.arguments.get("timeout", DEFAULT_TIMEOUT)
        )
        return {**result.to_dict(), "warnings": decision.result.warnings}

    async def execute(self, call: ToolCall) -> dict[str, Any]:
        database = self._database(call)
        command = call.arguments["command"]
        params = self._parameters(call.arguments.get("parameters"))

        sanitized = self.c.sanitizer.validate_parameters("execute", params)
        decision = classify(command, self.c.config.policy("write"))
        combined = decision.result.merge(sanitized)
        if not combined.is_valid:
            raise _reject("Statement rejected by the write policy", combined,
                          profile="write", leadingVerb=decision.leading_verb)
        await self._flag_warnings(call, "execute", sanitized.warnings)

        return await self._tracked(
            call, "execute", database, command,
            task_type=task_type_for(decision.leading_verb),
            requires_approval=decision.classification == StatementClass.requires_approval,
            binds={bind_name(p.name): p.value for p in params},
            sensitive={bind_name(p.name) for p in params if p.is_sensitive},
            warnings=combined.warnings,
            timeout=call.arguments.get("timeout"),
        )

    async def schema(self, call: ToolCall) -> dict[str, Any]:
        database = self._database(call)
        object_type = call.arguments["objectType"]
        object_name = call.arguments.get("objectName")
        statement, binds = build_schema_query(object_type, object_name)
        result = await self._run_untracked(call, "schema", database, statement, binds)
        return {"objectType": object_type, "objectName": object_name, **result.to_dict()}

    async def analyze(self, call: ToolCall) -> dict[str, Any]:
        database = self._database(call)
        analysis = call.arguments["analysisType"]
        target = call.arguments["target"]

        if analysis == "security":
            profiles = {}
            for profile in REQUIRED_PROFILES:
                decision = classify(target, self.c.config.policy(profile))
                profiles[profile] = {"classification": decision.classification.value, **decision.result.to_dict()}
            signatures = [{"category": m.category, "pattern": m.pattern} for m in self.c.sanitizer.scan(target)]
            await self._audit(
                call,
                entity_type="statement",
                entity_id=database,
                action="security_analysis",
                success=True,
                severity=AuditSeverity.warning if signatures else AuditSeverity.info,
                detail=f"{len(signatures)} injection signatures",
                data={"profiles": {p: v["classification"] for p, v in profiles.items()}, "signatures": signatures},
            )
            return {"analysisType": analysis, "profiles": profiles, "signatures": signatures}

        if analysis == "performance":
            decision = self._classify(target, "read")
            result = await self._run_untracked(call, "analyze", database, f"EXPLAIN {target}", {})
            return {"analysisType": analysis, "plan": result.rows, "columns": result.columns,
                    "warnings": decision.result.warnings}

        split_name(target)
        if analysis == "statistics":
            statement = f"SELECT COUNT(*) AS row_count FROM {target}"
            self._classify(statement, "read")
            result = await self._run_untracked(call, "analyze", database, statement, {})
            row_count = result.rows[0][0] if result.rows else 0
            return {"analysisType": analysis, "target": target, "rowCount": row_count}

        statement = f"SELECT * FROM {target} LIMIT {PATTERN_SAMPLE_ROWS}"
        self._classify(statement, "read")
        result = await self._run_untracked(call, "analyze", database, statement, {})
        return {"analysisType": analysis, "target": target, **profile_columns(result)}

    async def execute_procedure(self, call: ToolCall) -> dict[str, Any]:
        database = self._database(call)
        name = normalize_qualified_name(call.arguments["procedure"])
        params = self._parameters(call.arguments.get("parameters"))

        sanitized = self.c.sanitizer.validate_parameters(name, params)
        if not sanitized.is_valid:
            raise _reject(f"Parameters for '{name}' failed sanitization", sanitized, procedure=name)
        await self._flag_warnings(call, "execute_procedure", sanitized.warnings)

        contracts = self.c.contracts
        contract = await self.c.executor.execute(database, lambda: contracts.get_or_refresh(database, name))
        checked = contracts.validate(contract, params)
        if not checked.is_valid:
            raise ContractMismatch(
                f"Parameters do not match the contract of '{name}'",
                errors=checked.errors,
                data={"procedure": name},
            )

        statement, binds, sensitive = build_call(contract, params)
        logger.info(
            "procedure_call_prepared",
            procedure=name,
            security_level=contract.security_level.value,
            parameters=[to_log_string(p) for p in params],
        )
        return await self._tracked(
            call, "execute_procedure", database, statement,
            task_type=TaskType.command,
            requires_approval=contract.security_level == SecurityLevel.critical,
            binds=binds,
            sensitive=sensitive,
            warnings=sanitized.warnings + checked.warnings,
            extra={"procedure": name, "securityLevel": contract.security_level.value},
        )

    async def schema_migrate(self, call: ToolCall) -> dict[str, Any]:
        database = self._database(call)
        statement = call.arguments["statement"]
        decision = self._classify(statement, "ddl")
        return await self._tracked(
            call, "schema_migrate", database, statement,
            task_type=task_type_for(decision.leading_verb),
            requires_approval=decision.classification == StatementClass.requires_approval,
            warnings=decision.result.warnings,
        )

    async def task_status(self, call: ToolCall) -> dict[str, Any]:
        def load() -> dict[str, Any]:
            task = self.c.workflow.get(call.db, call.arguments["taskId"])
            return DatabaseTaskOut.model_validate(task).model_dump(mode="json")

        return await asyncio.to_thread(load)


def profile_columns(result: QueryResult) -> dict[str, Any]:
    """Null and distinct counts per column over a bounded sample."""
    size = result.row_count
    columns = []
    for i, name in enumerate(result.columns):
        values = [row[i] for row in result.rows]
        nulls = sum(1 for v in values if v is None)
        columns.append({
            "name":          name,
            "nullCount":     nulls,
            "nullRate":      round(nulls / size, 4) if size else 0.0,
            "distinctCount": len({v for v in values if v is not None}),
        })
    return {"sampleSize": size, "columns": columns}
