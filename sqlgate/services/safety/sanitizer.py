"""
Parameter Sanitizer
--------------------
Validates agent-supplied bind parameters before they reach a backend, and
renders them safely for logs and persisted task rows.

Hard errors:  null bytes, oversized strings, malformed or duplicate names.
Warnings:     injection signatures (7 categories, regex only). A category
              listed in SanitizerPolicy.block_categories becomes an error.

Bind parameters are never concatenated into SQL, so a signature match is a
tamper signal to log and audit, not proof of an attack.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

import structlog

from sqlgate.services.safety.results import ValidationResult
from sqlgate.services.shared.config import SanitizerPolicy
from sqlgate.services.shared.schemas import ProcedureParameter

logger = structlog.get_logger()

REDACTED = "***REDACTED***"

_NAME_RE    = re.compile(r"^@?[A-Za-z_][A-Za-z0-9_]*$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


@dataclass
class SignatureMatch:
    category: str
    pattern:  str
    start:    int
    end:      int


# ── Signature library ─────────────────────────────────────────────────────────

INJECTION_SIGNATURES = {
    "tautology": [
        (r"\bor\s+(\d+)\s*=\s*\1\b", "numeric_tautology"),
        (r"'\s*or\s+'[^']*'\s*=\s*'", "string_tautology"),
        (r"\bor\s+true\b", "or_true"),
    ],
    "stacked_destructive": [
        (r";\s*(?:drop|delete|truncate|alter|shutdown)\b", "stacked_ddl_dml"),
        (r";\s*(?:insert|update)\s", "stacked_write"),
        (r";\s*exec(?:ute)?\b", "stacked_exec"),
    ],
    "comment_truncation": [
        (r"--", "line_comment"),
        (r"/\*|\*/", "block_comment"),
        (r"#\s*$", "hash_comment"),
    ],
    "hex_payload": [
        (r"\b0x[0-9a-f]{8,}", "hex_literal"),
        (r"\b(?:char|nchar)\s*\(\s*\d+\s*\)\s*\+", "char_concat"),
    ],
    "union_select": [
        (r"\bunion\s+(?:all\s+)?select\b", "union_select"),
    ],
    "time_delay": [
        (r"\bwaitfor\s+delay\b", "waitfor_delay"),
        (r"\bpg_sleep\s*\(", "pg_sleep"),
        (r"\bsleep\s*\(\s*\d", "sleep"),
        (r"\bbenchmark\s*\(", "benchmark"),
    ],
    "system_procedure": [
        (r"\bxp_\w+", "extended_procedure"),
        (r"\bsp_(?:executesql|oacreate|oamethod|configure|addlogin|addsrvrolemember)\b", "system_procedure"),
        (r"\bopen(?:rowset|datasource|query)\b", "ad_hoc_remote"),
    ],
}

CATEGORIES = frozenset(INJECTION_SIGNATURES)


# ── Rendering helpers ─────────────────────────────────────────────────────────

def escape_for_logging(value: Optional[str]) -> str:
    """Control characters 0x00-0x1F and 0x7F become literal \\xHH (uppercase hex)."""
    if value is None:
        return ""
    return _CONTROL_RE.sub(lambda m: f"\\x{ord(m.group()):02X}", value)


def _type_label(parameter: ProcedureParameter) -> str:
    if parameter.data_type:
        return parameter.data_type
    if parameter.value is None:
        return "null"
    return type(parameter.value).__name__


def to_log_string(parameter: ProcedureParameter) -> str:
    name = escape_for_logging(parameter.name)
    if parameter.is_sensitive:
        return f"{name}={REDACTED}"
    value = "NULL" if parameter.value is None else escape_for_logging(str(parameter.value))
    return f"{name}={value} (Type: {_type_label(parameter)}, Direction: {parameter.direction})"


def coerce_parameters(raw: Any) -> list[ProcedureParameter]:
    """
    Accepts the two shapes agents send:
      {"id": 5, "name": "x"}                        plain name -> value map
      [{"name": "@id", "value": 5, "dataType": ...}] full parameter objects
    """
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        return [ProcedureParameter(name=str(k), value=v) for k, v in raw.items()]
    if isinstance(raw, list):
        return [p if isinstance(p, ProcedureParameter) else ProcedureParameter.model_validate(p) for p in raw]
    raise TypeError("parameters must be an object or an array of parameter objects")


def bind_name(name: str) -> str:
    return name[1:] if name.startswith("@") else name


# ── Sanitizer ─────────────────────────────────────────────────────────────────

class ParameterSanitizer:
    def __init__(self, policy: Optional[SanitizerPolicy] = None):
        self.policy = policy or SanitizerPolicy()
        self._compiled: dict[str, list[tuple[re.Pattern, str]]] = {
            category: [(re.compile(pattern, re.IGNORECASE | re.MULTILINE), name) for pattern, name in patterns]
            for category, patterns in INJECTION_SIGNATURES.items()
        }

    def scan(self, text: str) -> list[SignatureMatch]:
        matches: list[SignatureMatch] = []
        for category, patterns in self._compiled.items():
            for compiled, name in patterns:
                m = compiled.search(text)
                if m:
                    matches.append(SignatureMatch(category, name, m.start(), m.end()))
        matches.sort(key=lambda m: m.start)
        return matches

    def validate_parameter(self, procedure_name: str, parameter: ProcedureParameter) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        safe_name = escape_for_logging(parameter.name)

        if not _NAME_RE.match(parameter.name):
            errors.append(f"Parameter name '{safe_name}' is not a valid identifier")

        value = parameter.value
        if isinstance(value, (bytes, bytearray)):
            if len(value) > self.policy.max_string_length:
                errors.append(
                    f"Parameter '{safe_name}' exceeds maximum length of {self.policy.max_string_length}"
                )
            return ValidationResult(errors=errors)
        if not isinstance(value, str):
            return ValidationResult(errors=errors)

        if "\x00" in value:
            errors.append(f"Parameter '{safe_name}' contains null bytes")
        if len(value) > self.policy.max_string_length:
            errors.append(f"Parameter '{safe_name}' exceeds maximum length of {self.policy.max_string_length}")

        seen_categories: set[str] = set()
        for match in self.scan(value):
            if match.category in seen_categories:
                continue
            seen_categories.add(match.category)
            message = f"Parameter '{safe_name}' contains a suspicious pattern ({match.category})"
            logger.warning(
                "parameter_injection_signature",
                procedure=escape_for_logging(procedure_name),
                parameter=safe_name,
                category=match.category,
                pattern=match.pattern,
                blocked=match.category in self.policy.block_categories,
            )
            if match.category in self.policy.block_categories:
                errors.append(message)
            else:
                warnings.append(message)

        return ValidationResult(errors=errors, warnings=warnings)

    def validate_parameters(
        self, procedure_name: str, parameters: Iterable[ProcedureParameter]
    ) -> ValidationResult:
        result = ValidationResult()
        seen: set[str] = set()
        for parameter in parameters:
            key = bind_name(parameter.name).lower()
            if key in seen:
                result = result.merge(ValidationResult.failure(
                    [f"Duplicate parameter '{escape_for_logging(parameter.name)}'"]
                ))
                continue
            seen.add(key)
            result = result.merge(self.validate_parameter(procedure_name, parameter))
        return result
