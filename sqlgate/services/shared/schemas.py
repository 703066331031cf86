"""
Pydantic request/response schemas for the gateway.
Covers the JSON-RPC envelope, tool argument shapes that need structure,
and the REST views over tasks and the audit trail.
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from sqlgate.services.shared.models import AuditSeverity, TaskStatus, TaskType


# ── JSON-RPC envelope ─────────────────────────────────────────────────────────

class JsonRpcRequest(BaseModel):
    jsonrpc: Literal["2.0"]
    method:  str = Field(..., min_length=1)
    id:      Optional[Union[int, str]] = None
    params:  Optional[dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        return self.id is None


# ── Stored procedure parameters ───────────────────────────────────────────────

ParameterDirection = Literal["input", "output", "input_output", "return_value"]


class ProcedureParameter(BaseModel):
    """
    One bind parameter supplied by the agent.
    is_sensitive values are never logged or persisted in clear.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name:         str
    value:        Any = None
    data_type:    Optional[str] = Field(None, alias="dataType")
    direction:    ParameterDirection = "input"
    is_sensitive: bool = Field(False, alias="isSensitive")
    size:         Optional[int] = None


# ── Tasks ─────────────────────────────────────────────────────────────────────

class TaskProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp:        datetime
    status:           TaskStatus
    message:          str
    percent_complete: int


class DatabaseTaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                str
    type:              TaskType
    status:            TaskStatus
    database_name:     str
    created_by:        str
    requires_approval: bool
    tool_name:         str
    statement:         str
    parameters:        dict[str, Any]
    reason:            Optional[str]
    attempts:          int
    reviewed_by:       Optional[str]
    reviewed_at:       Optional[datetime]
    error_message:     Optional[str]
    results:           list[Any]
    progress:          list[TaskProgressOut]
    created_at:        datetime
    updated_at:        datetime


class TaskReviewRequest(BaseModel):
    reviewed_by: str = Field(..., min_length=1)
    comment:     Optional[str] = None


# ── Audit ─────────────────────────────────────────────────────────────────────

class AuditEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:             int
    timestamp:      datetime
    user_id:        str
    entity_type:    str
    entity_id:      Optional[str]
    action:         str
    success:        bool
    severity:       AuditSeverity
    detail:         str
    data:           dict[str, Any]
    correlation_id: Optional[str]


class AuditSearchCriteria(BaseModel):
    user_id:     Optional[str]           = None
    entity_type: Optional[str]           = None
    entity_id:   Optional[str]           = None
    action:      Optional[str]           = None
    start:       Optional[datetime]      = None
    end:         Optional[datetime]      = None
    severity:    Optional[AuditSeverity] = None
    success:     Optional[bool]          = None
    text:        Optional[str]           = None


class AuditPage(BaseModel):
    items:     list[AuditEventOut]
    total:     int
    page:      int
    page_size: int


class AuditSummary(BaseModel):
    start:         datetime
    end:           datetime
    total_events:  int
    success_count: int
    failure_count: int
    success_rate:  float
    by_action:     dict[str, int]
    by_severity:   dict[str, int]
