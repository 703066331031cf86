"""
MCP over HTTP.

  POST /mcp   one JSON-RPC request or a batch array
              200 with the response (or array of responses)
              204 when every message was a notification
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from sqlgate.services.shared.auth import get_caller

router = APIRouter()


@router.post("/mcp")
async def mcp_endpoint(request: Request, caller: str = Depends(get_caller)):
    dispatcher = request.app.state.dispatcher
    body = await request.body()
    response = await dispatcher.handle_raw(body, caller=caller)
    if response is None:
        return Response(status_code=204)
    return JSONResponse(response)
