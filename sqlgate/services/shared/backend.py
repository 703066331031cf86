"""
Backend collaborator: the only path from the gateway to an agent-facing database.

Backend is a Protocol so the dispatcher, the contract cache and the task
workflow can be driven by a fake in tests. SqlAlchemyBackend is the shipped
implementation:

  - one engine per logical database name (GatewayConfig.databases)
  - pool_pre_ping / pool_size / max_overflow bound each pool
  - blocking driver calls run in the default executor so the event loop
    stays free; asyncio.wait_for in the resilience layer bounds the wait

Errors leaving execute():
  TransientBackendFailure  connection loss, pool timeout, operational errors
  ValidationFailure        unknown database or procedure
  InternalError            anything else the driver raised (syntax, constraint)
"""

import asyncio
import functools
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime
from decimal import Decimal
from typing import Any, Mapping, Protocol, runtime_checkable

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DBAPIError, DisconnectionError, OperationalError, SQLAlchemyError, TimeoutError as PoolTimeoutError,
)

from sqlgate.services.shared.errors import InternalError, TransientBackendFailure, ValidationFailure

logger = structlog.get_logger()

MAX_ROWS = 1000


@dataclass
class QueryResult:
    columns:           list[str]       = field(default_factory=list)
    rows:              list[list[Any]] = field(default_factory=list)
    rows_affected:     int             = 0
    execution_time_ms: float           = 0.0
    truncated:         bool            = False

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "columns":         self.columns,
            "rows":            self.rows,
            "rowCount":        self.row_count,
            "rowsAffected":    self.rows_affected,
            "executionTimeMs": round(self.execution_time_ms, 3),
            "truncated":       self.truncated,
        }


@runtime_checkable
class Backend(Protocol):
    async def execute(
        self, database: str, statement: str, parameters: Mapping[str, Any], timeout: float
    ) -> QueryResult: ...

    async def get_procedure_metadata(self, database: str, qualified_name: str) -> dict[str, Any]: ...

    def is_transient(self, exc: BaseException) -> bool: ...


def to_json_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, dtime)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex().upper()
    return str(value)


# ── Procedure metadata ────────────────────────────────────────────────────────

_PROCEDURE_METADATA_SQL = text("""
    SELECT r.routine_type,
           p.parameter_name,
           p.data_type,
           p.parameter_mode,
           p.character_maximum_length,
           p.ordinal_position
    FROM information_schema.routines r
    LEFT JOIN information_schema.parameters p
           ON p.specific_schema = r.specific_schema
          AND p.specific_name   = r.specific_name
    WHERE r.routine_schema = :schema
      AND r.routine_name   = :name
    ORDER BY p.ordinal_position
""")

_MODE_TO_DIRECTION = {
    "IN":    "input",
    "OUT":   "output",
    "INOUT": "input_output",
}


class SqlAlchemyBackend:
    def __init__(
        self,
        databases: Mapping[str, str],
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        max_rows: int = MAX_ROWS,
    ):
        self._urls = dict(databases)
        self._engines: dict[str, Engine] = {}
        self._lock = threading.Lock()
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self.max_rows = max_rows

    def _engine(self, database: str) -> Engine:
        if database not in self._urls:
            raise ValidationFailure(
                f"Unknown database '{database}'",
                errors=[f"Unknown database '{database}'"],
            )
        with self._lock:
            engine = self._engines.get(database)
            if engine is None:
                url = self._urls[database]
                kwargs: dict[str, Any] = {"pool_pre_ping": True}
                if not url.startswith("sqlite"):
                    kwargs.update(pool_size=self._pool_size, max_overflow=self._max_overflow)
                engine = create_engine(url, **kwargs)
                self._engines[database] = engine
                logger.info("backend_engine_created", database=database, dialect=engine.dialect.name)
            return engine

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, (OperationalError, DisconnectionError, PoolTimeoutError)):
            return True
        return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)

    def _wrap(self, database: str, exc: SQLAlchemyError) -> Exception:
        if self.is_transient(exc):
            return TransientBackendFailure(f"{database}: {exc.__class__.__name__}: {exc}")
        logger.error("backend_statement_error", database=database, error=exc.__class__.__name__)
        return InternalError(
            f"{database}: {exc}",
            safe_message="Database error while executing statement",
            data={"errorType": exc.__class__.__name__},
        )

    # ── Sync workers (executor threads) ────────────────────────────────────────

    def _execute_sync(self, database: str, statement: str, parameters: Mapping[str, Any]) -> QueryResult:
        engine = self._engine(database)
        started = time.perf_counter()
        try:
            with engine.begin() as conn:
                result = conn.execute(text(statement), dict(parameters))
                out = QueryResult()
                if result.returns_rows:
                    out.columns = list(result.keys())
                    fetched = result.fetchmany(self.max_rows + 1)
                    out.truncated = len(fetched) > self.max_rows
                    out.rows = [[to_json_value(v) for v in row] for row in fetched[: self.max_rows]]
                else:
                    out.rows_affected = max(result.rowcount, 0)
        except SQLAlchemyError as exc:
            raise self._wrap(database, exc) from exc
        out.execution_time_ms = (time.perf_counter() - started) * 1000
        return out

    def _metadata_sync(self, database: str, qualified_name: str) -> dict[str, Any]:
        engine = self._engine(database)
        schema, _, name = qualified_name.rpartition(".")
        try:
            with engine.connect() as conn:
                rows = conn.execute(
                    _PROCEDURE_METADATA_SQL, {"schema": schema or "public", "name": name}
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise self._wrap(database, exc) from exc

        if not rows:
            raise ValidationFailure(
                f"Unknown procedure '{qualified_name}'",
                errors=[f"Unknown procedure '{qualified_name}'"],
            )
        parameters = []
        for row in rows:
            if row["parameter_name"] is None:
                continue
            parameters.append({
                "name":       row["parameter_name"],
                "data_type":  row["data_type"],
                "direction":  _MODE_TO_DIRECTION.get((row["parameter_mode"] or "IN").upper(), "input"),
                "max_length": row["character_maximum_length"],
                "required":   True,
            })
        return {
            "qualified_name":     qualified_name,
            "parameters":         parameters,
            "returns_result_set": (rows[0]["routine_type"] or "").upper() == "FUNCTION",
        }

    # ── Async surface ──────────────────────────────────────────────────────────

    async def execute(
        self, database: str, statement: str, parameters: Mapping[str, Any], timeout: float
    ) -> QueryResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._execute_sync, database, statement, parameters or {})
        )

    async def get_procedure_metadata(self, database: str, qualified_name: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._metadata_sync, database, qualified_name)
        )

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()

