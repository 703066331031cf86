"""
Unit tests for the JSON-RPC dispatcher and the tool handlers behind it.

Runs the full pipeline (envelope → tool → validator/sanitizer/contracts →
workflow → FakeBackend) against the in-memory SQLite audit/task tables.
"""

import asyncio
import json
import threading

import pytest

from sqlgate.services.shared.errors import (
    CONTRACT_MISMATCH, INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND,
    PARSE_ERROR, SERVICE_UNAVAILABLE, TASK_NOT_FOUND, VALIDATION_FAILED, TransientBackendFailure,
)
from sqlgate.services.shared.models import AuditEvent, DatabaseTask, TaskStatus


# ── Helpers ───────────────────────────────────────────────────────────────────

def _rpc(method, params=None, id=1):
    message = {"jsonrpc": "2.0", "method": method, "id": id}
    if params is not None:
        message["params"] = params
    return message


async def _call(dispatcher, tool, caller="agent-7", **arguments):
    return await dispatcher.handle_message(
        _rpc("tools/call", {"name": tool, "arguments": arguments}), caller=caller
    )


def _audit_actions(db) -> list[str]:
    return [e.action for e in db.query(AuditEvent).order_by(AuditEvent.id).all()]


# ── Protocol ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_initialize(dispatcher):
    response = await dispatcher.handle_message(_rpc("initialize", {"clientInfo": {"name": "agent"}}))
    assert response["result"]["serverInfo"]["name"] == "sqlgate"
    assert "tools" in response["result"]["capabilities"]


@pytest.mark.asyncio
async def test_tools_list_describes_every_tool(dispatcher):
    response = await dispatcher.handle_message(_rpc("tools/list"))
    tools = {t["name"]: t for t in response["result"]["tools"]}
    assert set(tools) == {
        "query", "execute", "schema", "analyze", "execute_procedure", "schema_migrate", "task_status",
    }
    assert tools["query"]["inputSchema"]["required"] == ["database", "query"]


@pytest.mark.asyncio
async def test_resources_and_prompts(dispatcher):
    resources = (await dispatcher.handle_message(_rpc("resources/list")))["result"]["resources"]
    assert any("sales" in r["uri"] for r in resources)
    prompts = (await dispatcher.handle_message(_rpc("prompts/list")))["result"]["prompts"]
    assert {p["name"] for p in prompts} >= {"sql-generation", "security-review"}


@pytest.mark.asyncio
async def test_unknown_method(dispatcher):
    response = await dispatcher.handle_message(_rpc("tools/explode", id=9))
    assert response["id"] == 9
    assert response["error"]["code"] == METHOD_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_tool(dispatcher):
    response = await _call(dispatcher, "drop_everything", database="sales")
    assert response["error"]["code"] == INVALID_PARAMS


@pytest.mark.asyncio
async def test_parse_error(dispatcher):
    response = await dispatcher.handle_raw('{"jsonrpc": "2.0", "method": ')
    assert response["error"]["code"] == PARSE_ERROR
    assert response["id"] is None


@pytest.mark.asyncio
async def test_invalid_envelope(dispatcher):
    response = await dispatcher.handle_message({"method": "ping", "id": 3})
    assert response["error"]["code"] == INVALID_REQUEST
    assert response["id"] == 3


@pytest.mark.asyncio
async def test_notifications_get_no_response(dispatcher):
    assert await dispatcher.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None
    assert await dispatcher.handle_message({"jsonrpc": "2.0", "method": "ping"}) is None


@pytest.mark.asyncio
async def test_batch(dispatcher):
    batch = [
        _rpc("ping", id=1),
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        _rpc("nope", id=2),
    ]
    responses = await dispatcher.handle_raw(json.dumps(batch))
    assert [r["id"] for r in responses] == [1, 2]
    assert "result" in responses[0]
    assert responses[1]["error"]["code"] == METHOD_NOT_FOUND


@pytest.mark.asyncio
async def test_empty_batch(dispatcher):
    response = await dispatcher.handle_raw("[]")
    assert response["error"]["code"] == INVALID_REQUEST


# ── Argument validation ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missing_database_names_the_field(dispatcher, db):
    response = await _call(dispatcher, "query", query="SELECT 1 FROM t")
    error = response["error"]
    assert error["code"] == VALIDATION_FAILED
    assert error["data"]["field"] == "database"
    assert "database" in error["message"]
    assert error["data"]["correlationId"]
    assert _audit_actions(db) == ["request_rejected"]


@pytest.mark.asyncio
async def test_unknown_database(dispatcher):
    response = await _call(dispatcher, "query", database="hr", query="SELECT 1 FROM t")
    assert response["error"]["code"] == VALIDATION_FAILED


@pytest.mark.asyncio
async def test_timeout_out_of_range(dispatcher):
    response = await _call(dispatcher, "query", database="sales", query="SELECT 1 FROM t", timeout=999)
    assert response["error"]["data"]["field"] == "timeout"


# ── query / execute ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_query_returns_rows_and_is_audited_once(dispatcher, backend, db):
    response = await _call(dispatcher, "query", database="sales", query="SELECT * FROM Sales.Customer")
    result = response["result"]
    assert result["isError"] is False
    assert result["structuredContent"]["rowCount"] == 2
    assert result["structuredContent"]["columns"] == ["id", "name"]
    assert json.loads(result["content"][0]["text"])["rows"][0] == [1, "Ada"]
    assert len(backend.calls) == 1

    events = db.query(AuditEvent).all()
    assert [e.action for e in events] == ["query_executed"]
    assert events[0].user_id == "agent-7"


@pytest.mark.asyncio
async def test_delete_without_where_is_rejected_before_backend(dispatcher, backend, db):
    response = await _call(dispatcher, "execute", database="sales", command="DELETE FROM Sales.Customer")
    error = response["error"]
    assert error["code"] == VALIDATION_FAILED
    assert any("WHERE" in e for e in error["data"]["errors"])
    assert backend.calls == []
    assert _audit_actions(db) == ["request_rejected"]


@pytest.mark.asyncio
async def test_audit_writes_leave_the_event_loop_thread(dispatcher, components):
    loop_thread = threading.get_ident()
    threads = []
    record = components.audit.record

    def tracking(*args, **kwargs):
        threads.append(threading.get_ident())
        return record(*args, **kwargs)

    components.audit.record = tracking
    await _call(dispatcher, "query", database="sales", query="SELECT * FROM Sales.Customer")
    await _call(dispatcher, "query", database="hr", query="SELECT 1 FROM t")
    assert len(threads) == 2
    assert loop_thread not in threads


@pytest.mark.asyncio
async def test_delete_with_commented_out_where_is_rejected(dispatcher, backend):
    response = await _call(
        dispatcher, "execute", database="sales", command="DELETE FROM Sales.Customer -- WHERE id = 1"
    )
    assert response["error"]["code"] == VALIDATION_FAILED
    assert backend.calls == []


@pytest.mark.asyncio
async def test_query_blocked_by_read_policy(dispatcher, backend):
    response = await _call(dispatcher, "query", database="sales", query="DROP TABLE Sales.Customer")
    assert response["error"]["code"] == VALIDATION_FAILED
    assert backend.calls == []


@pytest.mark.asyncio
async def test_execute_runs_tracked_task_with_flagged_parameter(dispatcher, backend, db):
    response = await _call(
        dispatcher, "execute",
        database="sales",
        command="UPDATE Sales.Customer SET name = :name WHERE id = :id",
        parameters={"name": "Ada", "id": "1; DROP TABLE Users"},
    )
    result = response["result"]["structuredContent"]
    assert result["status"] == "completed"
    assert any("suspicious pattern" in w for w in result["warnings"])
    assert backend.calls[0][2] == {"name": "Ada", "id": "1; DROP TABLE Users"}
    actions = _audit_actions(db)
    assert "suspicious_input_flagged" in actions
    assert actions[-1] == "task_completed"


@pytest.mark.asyncio
async def test_merge_waits_for_approval(dispatcher, backend):
    response = await _call(
        dispatcher, "execute",
        database="sales",
        command="MERGE INTO Sales.Customer t USING Sales.Staging s ON t.id = s.id WHEN MATCHED THEN UPDATE SET name = s.name",
    )
    result = response["result"]["structuredContent"]
    assert result["status"] == "pending_approval"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_malformed_parameters(dispatcher):
    response = await _call(
        dispatcher, "execute", database="sales",
        command="UPDATE t SET a = 1 WHERE id = 2", parameters="id=2",
    )
    assert response["error"]["data"]["field"] == "parameters"


# ── schema_migrate / task_status ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_schema_migrate_creates_pending_task_without_executing(dispatcher, backend, db):
    response = await _call(
        dispatcher, "schema_migrate",
        database="sales", statement="CREATE TABLE Sales.Audit (id INT)", reason="audit table",
    )
    result = response["result"]["structuredContent"]
    assert result["status"] == "pending_approval"
    assert result["requiresApproval"] is True
    assert backend.calls == []

    task = db.get(DatabaseTask, result["taskId"])
    assert task.status == TaskStatus.pending_approval
    assert task.reason == "audit table"

    status = await _call(dispatcher, "task_status", taskId=result["taskId"])
    assert status["result"]["structuredContent"]["status"] == "pending_approval"


@pytest.mark.asyncio
async def test_task_status_unknown(dispatcher):
    response = await _call(dispatcher, "task_status", taskId="missing")
    assert response["error"]["code"] == TASK_NOT_FOUND


# ── execute_procedure ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_standard_procedure_runs(dispatcher, backend):
    response = await _call(
        dispatcher, "execute_procedure",
        database="sales", procedure="sales.get_customer", parameters={"customer_id": 7},
    )
    result = response["result"]["structuredContent"]
    assert result["status"] == "completed"
    assert result["securityLevel"] == "standard"
    assert backend.calls == [("sales", "CALL sales.get_customer(:p0)", {"p0": 7})]


@pytest.mark.asyncio
async def test_critical_procedure_needs_approval(dispatcher, backend):
    response = await _call(
        dispatcher, "execute_procedure",
        database="sales", procedure="sales.purge_orders", parameters={"before": "2024-01-01"},
    )
    result = response["result"]["structuredContent"]
    assert result["status"] == "pending_approval"
    assert result["securityLevel"] == "critical"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_contract_mismatch(dispatcher, backend, db):
    response = await _call(
        dispatcher, "execute_procedure",
        database="sales", procedure="sales.get_customer", parameters={"customer_id": "abc"},
    )
    assert response["error"]["code"] == CONTRACT_MISMATCH
    assert backend.calls == []
    assert _audit_actions(db) == ["contract_mismatch"]


@pytest.mark.asyncio
async def test_invalid_procedure_name(dispatcher):
    response = await _call(
        dispatcher, "execute_procedure", database="sales", procedure="sales.x; DROP TABLE y",
    )
    assert response["error"]["code"] == VALIDATION_FAILED


# ── analyze / schema ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_security_analysis_does_not_execute(dispatcher, backend):
    response = await _call(
        dispatcher, "analyze", database="sales", analysisType="security", target="DELETE FROM Sales.Customer",
    )
    result = response["result"]["structuredContent"]
    assert result["profiles"]["read"]["classification"] == "blocked"
    assert result["profiles"]["write"]["isValid"] is False
    assert backend.calls == []


@pytest.mark.asyncio
async def test_patterns_profile_columns(dispatcher):
    response = await _call(dispatcher, "analyze", database="sales", analysisType="patterns", target="Sales.Customer")
    result = response["result"]["structuredContent"]
    assert result["sampleSize"] == 2
    assert result["columns"][1] == {"name": "name", "nullCount": 1, "nullRate": 0.5, "distinctCount": 1}


@pytest.mark.asyncio
async def test_schema_binds_object_name(dispatcher, backend):
    response = await _call(dispatcher, "schema", database="sales", objectType="table", objectName="sales.customer")
    assert "result" in response
    statement, binds = backend.calls[0][1], backend.calls[0][2]
    assert "customer" not in statement.lower()
    assert "customer" in binds.values()


# ── Backend failures ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_resilience_exhausted_maps_to_service_unavailable(dispatcher, backend, db):
    backend.failures = [TransientBackendFailure("connection reset") for _ in range(10)]
    response = await _call(dispatcher, "query", database="sales", query="SELECT * FROM Sales.Customer")
    assert response["error"]["code"] == SERVICE_UNAVAILABLE
    assert len(backend.calls) == 4
    assert _audit_actions(db) == ["query_failed"]


@pytest.mark.asyncio
async def test_cancelled_query_is_audited(dispatcher, backend, db):
    started = asyncio.Event()

    async def blocked(database, statement, parameters, timeout):
        started.set()
        await asyncio.Event().wait()

    backend.execute = blocked
    running = asyncio.create_task(
        _call(dispatcher, "query", database="sales", query="SELECT * FROM Sales.Customer")
    )
    await started.wait()
    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running

    events = db.query(AuditEvent).all()
    assert [e.action for e in events] == ["query_cancelled"]
    assert events[0].success is False
    assert events[0].user_id == "agent-7"


@pytest.mark.asyncio
async def test_unexpected_exception_is_internal_error(dispatcher, backend):
    backend.failures = [RuntimeError("password=hunter2 leaked in driver message")]
    response = await _call(dispatcher, "query", database="sales", query="SELECT * FROM Sales.Customer")
    error = response["error"]
    assert error["code"] == INTERNAL_ERROR
    assert error["message"] == "Internal error"
    assert "hunter2" not in json.dumps(error)
    assert error["data"]["correlationId"]
