"""
SQLGate Gateway Service (port 8400)
------------------------------------
Exposes the safety & execution gateway to agents over MCP (JSON-RPC 2.0 on
POST /mcp) and to human reviewers over REST (tasks, audit trail).

The policy document is loaded once here; a missing or invalid document stops
startup with ConfigurationError.
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sqlgate.services.gateway.components import build_components
from sqlgate.services.gateway.dispatcher import Dispatcher
from sqlgate.services.shared.config import load_config
from sqlgate.services.shared.database import create_all_tables

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("sqlgate_gateway_starting")
    create_all_tables()
    # tests pre-wire components around a fake backend
    if getattr(app.state, "components", None) is None:
        config = load_config()
        app.state.components = build_components(config)
        logger.info(
            "sqlgate_policy_loaded",
            profiles=sorted(config.policies),
            databases=sorted(config.databases),
        )
    app.state.dispatcher = Dispatcher(app.state.components)
    logger.info("sqlgate_gateway_ready")
    yield
    dispose = getattr(app.state.components.backend, "dispose", None)
    if dispose is not None:
        dispose()
    logger.info("sqlgate_gateway_stopping")


app = FastAPI(
    title="SQLGate Gateway",
    version="0.1.0",
    description="Policy-checked, audited, approval-gated database access for AI agents.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

from sqlgate.services.gateway.routes_mcp   import router as mcp_router    # noqa: E402
from sqlgate.services.gateway.routes_tasks import router as tasks_router  # noqa: E402
from sqlgate.services.gateway.routes_audit import router as audit_router  # noqa: E402

app.include_router(mcp_router,                 tags=["MCP"])
app.include_router(tasks_router, prefix="/api", tags=["Tasks"])
app.include_router(audit_router, prefix="/api", tags=["Audit"])


@app.get("/health", tags=["Health"])
def health(request: Request):
    components = request.app.state.components
    return {
        "status":   "healthy",
        "service":  "sqlgate-gateway",
        "version":  components.config.server.version,
        "circuits": components.registry.states(),
    }
