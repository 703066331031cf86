"""
Gateway error taxonomy.

A closed set of error kinds. Each kind is a thin GatewayError subclass that
carries structured fields instead of free-form text:

  kind            ErrorKind tag, stable across releases
  code            JSON-RPC error code surfaced on the wire
  safe_message    the only text that may cross the protocol boundary
  correlation_id  ties the wire error to the server-side log line
  data            extra key/value detail (field names, errors, task ids)

The dispatcher turns these into explicit JSON-RPC error values; nothing
below it formats protocol errors itself.
"""

import enum
import uuid
from typing import Any, Optional


# ── JSON-RPC codes ────────────────────────────────────────────────────────────

PARSE_ERROR       = -32700
INVALID_REQUEST   = -32600
METHOD_NOT_FOUND  = -32601
INVALID_PARAMS    = -32602
INTERNAL_ERROR    = -32603

# Application range (-32000 .. -32099)
VALIDATION_FAILED    = -32001
CONTRACT_MISMATCH    = -32002
SERVICE_UNAVAILABLE  = -32003
STALE_TASK_STATE     = -32004
TASK_NOT_FOUND       = -32005


class ErrorKind(str, enum.Enum):
    validation_failure        = "validation_failure"
    contract_mismatch         = "contract_mismatch"
    transient_backend_failure = "transient_backend_failure"
    resilience_exhausted      = "resilience_exhausted"
    stale_task_state          = "stale_task_state"
    task_not_found            = "task_not_found"
    protocol_error            = "protocol_error"
    internal_error            = "internal_error"
    configuration_error       = "configuration_error"


class GatewayError(Exception):
    kind: ErrorKind = ErrorKind.internal_error
    code: int = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        data: Optional[dict[str, Any]] = None,
        code: Optional[int] = None,
        correlation_id: Optional[str] = None,
        safe_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.data = data or {}
        if code is not None:
            self.code = code
        self.correlation_id = correlation_id or uuid.uuid4().hex
        self.safe_message = safe_message or message

    def to_error(self) -> dict[str, Any]:
        """JSON-RPC error object. Only safe_message and data leave the process."""
        data = dict(self.data)
        data["kind"] = self.kind.value
        data["correlationId"] = self.correlation_id
        return {"code": self.code, "message": self.safe_message, "data": data}


class ValidationFailure(GatewayError):
    """Policy or sanitizer rejection. Never retried, always audited."""
    kind = ErrorKind.validation_failure
    code = VALIDATION_FAILED

    def __init__(self, message: str, errors: Optional[list[str]] = None, **kwargs):
        data = kwargs.pop("data", None) or {}
        if errors:
            data.setdefault("errors", list(errors))
        super().__init__(message, data=data, **kwargs)
        self.errors = list(errors or [])


class ContractMismatch(GatewayError):
    """Provided parameters disagree with the procedure contract. Possible tampering."""
    kind = ErrorKind.contract_mismatch
    code = CONTRACT_MISMATCH

    def __init__(self, message: str, errors: Optional[list[str]] = None, **kwargs):
        data = kwargs.pop("data", None) or {}
        if errors:
            data.setdefault("errors", list(errors))
        super().__init__(message, data=data, **kwargs)
        self.errors = list(errors or [])


class TransientBackendFailure(GatewayError):
    """Connection loss or timeout. Eligible for retry and circuit accounting."""
    kind = ErrorKind.transient_backend_failure
    code = SERVICE_UNAVAILABLE

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("safe_message", "Transient backend failure")
        super().__init__(message, **kwargs)


class ResilienceExhausted(GatewayError):
    """Retries exhausted or circuit open."""
    kind = ErrorKind.resilience_exhausted
    code = SERVICE_UNAVAILABLE

    def __init__(self, message: str, *, circuit_open: bool = False, attempts: int = 0, **kwargs):
        data = kwargs.pop("data", None) or {}
        data.setdefault("circuitOpen", circuit_open)
        data.setdefault("attempts", attempts)
        kwargs.setdefault(
            "safe_message",
            "Service temporarily unavailable due to repeated failures" if circuit_open
            else "Service temporarily unavailable, retries exhausted",
        )
        super().__init__(message, data=data, **kwargs)
        self.circuit_open = circuit_open
        self.attempts = attempts


class StaleTaskState(GatewayError):
    """Concurrent transition lost the race, or the task left the expected state."""
    kind = ErrorKind.stale_task_state
    code = STALE_TASK_STATE


class TaskNotFound(GatewayError):
    kind = ErrorKind.task_not_found
    code = TASK_NOT_FOUND


class ProtocolError(GatewayError):
    """Malformed envelope, unknown method or unknown tool."""
    kind = ErrorKind.protocol_error
    code = INVALID_REQUEST


class InternalError(GatewayError):
    kind = ErrorKind.internal_error
    code = INTERNAL_ERROR

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("safe_message", "Internal error")
        super().__init__(message, **kwargs)


class ConfigurationError(GatewayError):
    """Startup-fatal: the policy document is missing or incomplete."""
    kind = ErrorKind.configuration_error
    code = INTERNAL_ERROR
