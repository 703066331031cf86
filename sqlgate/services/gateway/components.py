"""
Wiring for one gateway process.

Everything is built once from the loaded GatewayConfig and shared by
reference: the HTTP app keeps it on app.state, the stdio runner keeps it
for the life of the process. Tests build one around a fake backend.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from sqlgate.services.audit.trail import AuditTrail
from sqlgate.services.resilience.circuit_breaker import CircuitBreakerRegistry
from sqlgate.services.resilience.executor import ResilientExecutor
from sqlgate.services.safety.contracts import ProcedureContractCache
from sqlgate.services.safety.sanitizer import ParameterSanitizer
from sqlgate.services.shared.backend import Backend, SqlAlchemyBackend
from sqlgate.services.shared.config import GatewayConfig
from sqlgate.services.shared.database import SessionLocal
from sqlgate.services.workflow.tasks import APPROVAL_TTL_MINUTES, TaskWorkflow


@dataclass
class Components:
    config:          GatewayConfig
    backend:         Backend
    registry:        CircuitBreakerRegistry
    executor:        ResilientExecutor
    sanitizer:       ParameterSanitizer
    contracts:       ProcedureContractCache
    audit:           AuditTrail
    workflow:        TaskWorkflow
    session_factory: Callable[[], Session] = SessionLocal

    def databases(self) -> list[str]:
        return sorted(self.config.databases)


def build_components(
    config: GatewayConfig,
    backend: Optional[Backend] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    approval_ttl_minutes: int = APPROVAL_TTL_MINUTES,
) -> Components:
    backend = backend if backend is not None else SqlAlchemyBackend(config.databases)
    registry = CircuitBreakerRegistry()
    executor = ResilientExecutor(registry, config.resilience, sleep=sleep)
    audit = AuditTrail()
    return Components(
        config=config,
        backend=backend,
        registry=registry,
        executor=executor,
        sanitizer=ParameterSanitizer(config.sanitizer),
        contracts=ProcedureContractCache(backend, config.contracts),
        audit=audit,
        workflow=TaskWorkflow(audit, executor, backend, config.resilience, approval_ttl_minutes),
        session_factory=session_factory,
    )
