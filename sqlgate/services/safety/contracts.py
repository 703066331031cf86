"""
Stored Procedure Contract Cache
--------------------------------
Caches the expected parameter shape of each stored procedure and checks
agent-supplied parameters against it. A mismatch between what the agent
sends and what the catalog says is treated as a tamper signal.

Entries live for ContractPolicy.cache_ttl_seconds (default 1 hour). A stale
or missing entry is refreshed from Backend.get_procedure_metadata; concurrent
refreshes of one key wait on a per-key asyncio.Lock so the catalog is hit once.
"""

import asyncio
import enum
import fnmatch
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

import structlog

from sqlgate.services.safety.results import ValidationResult
from sqlgate.services.safety.sanitizer import bind_name, escape_for_logging
from sqlgate.services.shared.backend import Backend
from sqlgate.services.shared.config import ContractPolicy
from sqlgate.services.shared.errors import ValidationFailure
from sqlgate.services.shared.models import utcnow
from sqlgate.services.shared.schemas import ProcedureParameter

logger = structlog.get_logger()

QUALIFIED_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?$")
IDENTIFIER_RE     = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SecurityLevel(str, enum.Enum):
    standard = "standard"
    elevated = "elevated"
    critical = "critical"


# ── Type families ─────────────────────────────────────────────────────────────

_TYPE_FAMILIES: dict[str, frozenset[str]] = {
    "string": frozenset({
        "char", "varchar", "nchar", "nvarchar", "text", "ntext", "character", "character varying",
        "uuid", "uniqueidentifier", "xml", "json", "jsonb", "citext", "str", "string",
    }),
    "integer": frozenset({
        "int", "integer", "smallint", "bigint", "tinyint", "int2", "int4", "int8",
        "serial", "bigserial",
    }),
    "decimal": frozenset({
        "decimal", "numeric", "money", "smallmoney", "float", "real", "double", "double precision",
        "float4", "float8",
    }),
    "boolean": frozenset({"bit", "bool", "boolean"}),
    "datetime": frozenset({
        "date", "time", "datetime", "datetime2", "smalldatetime", "datetimeoffset", "timestamp",
        "timestamp without time zone", "timestamp with time zone",
        "time without time zone", "time with time zone", "interval",
    }),
    "binary": frozenset({"binary", "varbinary", "image", "bytea", "blob"}),
}

_SIZE_SUFFIX_RE = re.compile(r"\s*\(.*\)\s*$")


def type_family(data_type: Optional[str]) -> Optional[str]:
    """Maps a declared SQL type ("NVARCHAR(50)", "int4") to its family, None if unknown."""
    if not data_type:
        return None
    normalized = _SIZE_SUFFIX_RE.sub("", data_type.strip().lower())
    for family, names in _TYPE_FAMILIES.items():
        if normalized in names:
            return family
    return None


def value_family(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (float, Decimal)):
        return "decimal"
    if isinstance(value, (datetime, date)):
        return "datetime"
    if isinstance(value, (bytes, bytearray)):
        return "binary"
    if isinstance(value, str):
        return "string"
    return None


def _compatible(expected: str, provided: str, declared: bool) -> bool:
    if expected == provided:
        return True
    if expected == "decimal" and provided == "integer":
        return True
    # JSON carries dates, uuids and blobs as strings
    if not declared and provided == "string" and expected in ("datetime", "binary"):
        return True
    return False


# ── Contracts ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParameterContract:
    name:          str
    data_type:     Optional[str]
    required:      bool = True
    direction:     str = "input"
    max_length:    Optional[int] = None
    default_value: Any = None

    @property
    def accepts_input(self) -> bool:
        return self.direction in ("input", "input_output")


@dataclass(frozen=True)
class StoredProcedureContract:
    qualified_name:     str
    parameters:         tuple[ParameterContract, ...]
    returns_result_set: bool
    security_level:     SecurityLevel
    cached_at:          datetime
    expires_at:         datetime
    _index:             dict = field(default_factory=dict, init=False, compare=False, repr=False)

    def __post_init__(self):
        if self.expires_at <= self.cached_at:
            raise ValueError("expires_at must be later than cached_at")
        for p in self.parameters:
            self._index[bind_name(p.name).lower()] = p

    def is_stale(self, now: datetime) -> bool:
        return now >= self.expires_at

    def parameter(self, name: str) -> Optional[ParameterContract]:
        return self._index.get(bind_name(name).lower())

    def to_dict(self) -> dict[str, Any]:
        return {
            "qualifiedName":    self.qualified_name,
            "securityLevel":    self.security_level.value,
            "returnsResultSet": self.returns_result_set,
            "parameters": [
                {
                    "name":      p.name,
                    "dataType":  p.data_type,
                    "required":  p.required,
                    "direction": p.direction,
                    "maxLength": p.max_length,
                }
                for p in self.parameters
            ],
        }


def normalize_qualified_name(qualified_name: str) -> str:
    name = (qualified_name or "").strip()
    if not QUALIFIED_NAME_RE.match(name):
        raise ValidationFailure(
            f"Invalid procedure name '{escape_for_logging(name)}'",
            errors=[f"Procedure name must be 'schema.name' or 'name', got '{escape_for_logging(name)}'"],
        )
    return name


def build_call(
    contract: StoredProcedureContract, provided: Iterable[ProcedureParameter]
) -> tuple[str, dict[str, Any], set[str]]:
    """
    Statement text, bind values and the bind keys holding sensitive values
    for one validated call. Arguments follow the contract's ordinal order;
    values travel only as bind parameters. Once an optional parameter is
    skipped, the remaining arguments use named notation (`name => :pN`) so
    they cannot shift into the skipped slot.
    """
    by_name = {bind_name(p.name).lower(): p for p in provided}
    placeholders: list[str] = []
    binds: dict[str, Any] = {}
    sensitive: set[str] = set()
    skipped = False
    for i, pc in enumerate(p for p in contract.parameters if p.accepts_input):
        supplied = by_name.get(bind_name(pc.name).lower())
        if supplied is None:
            skipped = True
            continue
        key = f"p{i}"
        if skipped:
            name = bind_name(pc.name)
            if not IDENTIFIER_RE.match(name):
                raise ValidationFailure(
                    f"Parameter '{escape_for_logging(name)}' cannot be passed by name",
                    errors=[f"Parameter '{escape_for_logging(name)}' follows an omitted parameter "
                            "and is not a plain identifier"],
                )
            placeholders.append(f"{name} => :{key}")
        else:
            placeholders.append(f":{key}")
        binds[key] = supplied.value
        if supplied.is_sensitive:
            sensitive.add(key)
    args = ", ".join(placeholders)
    if contract.returns_result_set:
        return f"SELECT * FROM {contract.qualified_name}({args})", binds, sensitive
    return f"CALL {contract.qualified_name}({args})", binds, sensitive


# ── Cache ─────────────────────────────────────────────────────────────────────

class ProcedureContractCache:
    def __init__(
        self,
        backend: Backend,
        policy: Optional[ContractPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.policy = policy or ContractPolicy()
        self._clock = clock
        self._entries: dict[tuple[str, str], StoredProcedureContract] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def security_level(self, qualified_name: str) -> SecurityLevel:
        key = qualified_name.lower()
        if any(fnmatch.fnmatchcase(key, g) for g in self.policy.critical_procedures):
            return SecurityLevel.critical
        if any(fnmatch.fnmatchcase(key, g) for g in self.policy.elevated_procedures):
            return SecurityLevel.elevated
        return SecurityLevel.standard

    def _from_metadata(self, qualified_name: str, meta: dict[str, Any]) -> StoredProcedureContract:
        now = self._clock()
        parameters = tuple(
            ParameterContract(
                name=p["name"],
                data_type=p.get("data_type"),
                required=bool(p.get("required", True)) and p.get("default_value") is None,
                direction=p.get("direction", "input"),
                max_length=p.get("max_length") if (p.get("max_length") or 0) > 0 else None,
                default_value=p.get("default_value"),
            )
            for p in meta.get("parameters", [])
        )
        return StoredProcedureContract(
            qualified_name=qualified_name,
            parameters=parameters,
            returns_result_set=bool(meta.get("returns_result_set", False)),
            security_level=self.security_level(qualified_name),
            cached_at=now,
            expires_at=now + timedelta(seconds=self.policy.cache_ttl_seconds),
        )

    async def get_or_refresh(self, database: str, qualified_name: str) -> StoredProcedureContract:
        qualified_name = normalize_qualified_name(qualified_name)
        key = (database, qualified_name.lower())

        entry = self._entries.get(key)
        if entry is not None and not entry.is_stale(self._clock()):
            return entry

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # another waiter may have refreshed while we queued
            entry = self._entries.get(key)
            if entry is not None and not entry.is_stale(self._clock()):
                return entry
            meta = await self.backend.get_procedure_metadata(database, qualified_name)
            entry = self._from_metadata(qualified_name, meta)
            self._entries[key] = entry
            logger.info(
                "procedure_contract_refreshed",
                database=database,
                procedure=qualified_name,
                parameter_count=len(entry.parameters),
                security_level=entry.security_level.value,
            )
            return entry

    def invalidate(self, database: Optional[str] = None, qualified_name: Optional[str] = None) -> int:
        """Drops matching entries (all of them when called without arguments)."""
        doomed = [
            k for k in self._entries
            if (database is None or k[0] == database)
            and (qualified_name is None or k[1] == qualified_name.lower())
        ]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def validate(self, contract: StoredProcedureContract, provided: Iterable[ProcedureParameter]) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        provided = list(provided)
        supplied = {bind_name(p.name).lower() for p in provided}

        for pc in contract.parameters:
            if pc.accepts_input and pc.required and bind_name(pc.name).lower() not in supplied:
                errors.append(f"Required parameter '{pc.name}' is missing")

        for p in provided:
            safe_name = escape_for_logging(p.name)
            pc = contract.parameter(p.name)
            if pc is None:
                message = f"Unexpected parameter '{safe_name}' for procedure '{contract.qualified_name}'"
                logger.error(
                    "procedure_contract_tamper_signal",
                    procedure=contract.qualified_name,
                    parameter=safe_name,
                    mode=self.policy.unexpected_parameter,
                )
                if self.policy.unexpected_parameter == "warning":
                    warnings.append(message)
                else:
                    errors.append(message)
                continue

            if p.value is None:
                continue

            expected = type_family(pc.data_type)
            declared = type_family(p.data_type) if p.data_type else None
            actual = declared or value_family(p.value)
            if expected and actual and not _compatible(expected, actual, declared is not None):
                errors.append(
                    f"Parameter '{safe_name}' type mismatch: expected {pc.data_type} ({expected}), got {actual}"
                )
            if pc.max_length and isinstance(p.value, (str, bytes, bytearray)) and len(p.value) > pc.max_length:
                errors.append(f"Parameter '{safe_name}' exceeds declared length {pc.max_length}")

        return ValidationResult(errors=errors, warnings=warnings)
