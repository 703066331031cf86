"""
JSON-RPC 2.0 dispatcher for the MCP surface.

Methods are looked up in a registered handler table:

  initialize      server identity + capabilities
  ping            liveness
  tools/list      tool catalog with inputSchemas
  tools/call      run one tool (one DB session per call)
  resources/list  databases and per-database tables/views/procedures
  prompts/list    canned prompt templates
  notifications/* accepted, never answered

Error mapping:
  unparsable JSON      -32700
  malformed envelope   -32600 (also an empty batch)
  unknown method       -32601
  unknown tool         -32602
  GatewayError         its own code (-32001 .. -32005)
  anything else        -32603 "Internal error" + correlationId, full
                       context only in the server log

A JSON array is a batch: each member is handled in order and the array of
non-notification responses is returned (nothing at all if every member was
a notification).
"""

import json
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from pydantic import ValidationError

from sqlgate.services.gateway.catalog import PROMPTS, list_resources
from sqlgate.services.gateway.components import Components
from sqlgate.services.gateway.tools import GatewayTools, ToolCall
from sqlgate.services.shared.errors import (
    INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR,
    GatewayError, InternalError, ProtocolError,
)
from sqlgate.services.shared.schemas import JsonRpcRequest

logger = structlog.get_logger()

PROTOCOL_VERSION = "2024-11-05"

Payload = Union[dict[str, Any], list[Any]]
MethodHandler = Callable[[dict[str, Any], str, str], Awaitable[Any]]


def error_response(request_id: Any, error: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def result_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


class Dispatcher:
    def __init__(self, components: Components):
        self.c = components
        self.tools = GatewayTools(components)
        self.methods: dict[str, MethodHandler] = {
            "initialize":     self._initialize,
            "ping":           self._ping,
            "tools/list":     self._tools_list,
            "tools/call":     self._tools_call,
            "resources/list": self._resources_list,
            "prompts/list":   self._prompts_list,
        }

    # ── Entry points ───────────────────────────────────────────────────────────

    async def handle_raw(self, raw: Union[str, bytes], caller: str = "anonymous") -> Optional[Payload]:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.info("rpc_parse_error", error=str(exc))
            return error_response(None, {"code": PARSE_ERROR, "message": "Parse error"})
        return await self.handle_payload(payload, caller)

    async def handle_payload(self, payload: Any, caller: str = "anonymous") -> Optional[Payload]:
        if isinstance(payload, list):
            if not payload:
                return error_response(None, {"code": INVALID_REQUEST, "message": "Invalid Request: empty batch"})
            responses = []
            for message in payload:
                response = await self.handle_message(message, caller)
                if response is not None:
                    responses.append(response)
            return responses or None
        return await self.handle_message(payload, caller)

    async def handle_message(self, message: Any, caller: str = "anonymous") -> Optional[dict[str, Any]]:
        request_id = message.get("id") if isinstance(message, dict) else None
        correlation_id = uuid.uuid4().hex

        try:
            request = JsonRpcRequest.model_validate(message)
        except ValidationError as exc:
            problems = [f"{'.'.join(str(p) for p in e['loc']) or 'request'}: {e['msg']}" for e in exc.errors()]
            return error_response(
                request_id if isinstance(request_id, (str, int)) else None,
                {"code": INVALID_REQUEST, "message": "Invalid Request", "data": {"errors": problems}},
            )

        if request.method.startswith("notifications/"):
            logger.debug("rpc_notification", method=request.method)
            return None

        log = logger.bind(method=request.method, request_id=request.id, correlation_id=correlation_id, caller=caller)
        handler = self.methods.get(request.method)
        try:
            if handler is None:
                raise ProtocolError(
                    f"Method not found: {request.method}",
                    code=METHOD_NOT_FOUND,
                    data={"method": request.method},
                )
            result = await handler(request.params or {}, caller, correlation_id)
        except GatewayError as exc:
            exc.correlation_id = correlation_id
            log.info("rpc_error", kind=exc.kind.value, code=exc.code, error=exc.message)
            response = error_response(request.id, exc.to_error())
        except Exception as exc:
            log.error("rpc_internal_error", error=str(exc), exc_info=True)
            response = error_response(
                request.id, InternalError(str(exc), correlation_id=correlation_id).to_error()
            )
        else:
            log.info("rpc_ok")
            response = result_response(request.id, result)

        return None if request.is_notification else response

    # ── Method handlers ────────────────────────────────────────────────────────

    async def _initialize(self, params: dict[str, Any], caller: str, correlation_id: str) -> dict[str, Any]:
        server = self.c.config.server
        logger.info("mcp_client_initialized", caller=caller, client=params.get("clientInfo"))
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": server.name, "version": server.version},
            "capabilities": {
                "tools":     {"listChanged": False},
                "resources": {"listChanged": False, "kinds": ["databases", "tables", "procedures", "views"]},
                "prompts":   {"listChanged": False},
            },
        }

    async def _ping(self, params: dict[str, Any], caller: str, correlation_id: str) -> dict[str, Any]:
        return {}

    async def _tools_list(self, params: dict[str, Any], caller: str, correlation_id: str) -> dict[str, Any]:
        return {"tools": self.tools.describe()}

    async def _resources_list(self, params: dict[str, Any], caller: str, correlation_id: str) -> dict[str, Any]:
        return {"resources": list_resources(self.c.databases())}

    async def _prompts_list(self, params: dict[str, Any], caller: str, correlation_id: str) -> dict[str, Any]:
        return {"prompts": PROMPTS}

    async def _tools_call(self, params: dict[str, Any], caller: str, correlation_id: str) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not name:
            raise ProtocolError("tools/call requires a tool name", code=INVALID_PARAMS, data={"field": "name"})
        if not isinstance(arguments, dict):
            raise ProtocolError("tools/call arguments must be an object", code=INVALID_PARAMS,
                                data={"field": "arguments"})

        with self.c.session_factory() as db:
            result = await self.tools.invoke(
                name, ToolCall(db=db, caller=caller, correlation_id=correlation_id, arguments=arguments)
            )
        return {
            "content": [{"type": "text", "text": json.dumps(result, default=str)}],
            "structuredContent": result,
            "isError": False,
        }
