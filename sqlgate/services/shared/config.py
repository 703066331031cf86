"""
Gateway configuration: policy profiles, resilience and sanitizer settings.

The whole document is loaded exactly once at process start (FastAPI lifespan
or the stdio runner) and handed to each component by reference. Every model
here is frozen; nothing re-reads or mutates configuration at runtime.

A missing document, invalid JSON or a missing required field raises
ConfigurationError - the process refuses to start rather than fall back.

Document shape (config/policy.json):

    {
      "server":    {"name": "sqlgate", "version": "0.1.0"},
      "policies":  {"read": {...}, "write": {...}, "ddl": {...}},
      "resilience": {"max_retry_attempts": 3, ...},
      "sanitizer":  {"block_categories": []},
      "contracts":  {"cache_ttl_seconds": 3600, "unexpected_parameter": "error"},
      "databases":  {"sales": "postgresql://..."}
    }
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from sqlgate.services.shared.errors import ConfigurationError

POLICY_PATH: str = os.getenv("SQLGATE_POLICY_PATH", "config/policy.json")

REQUIRED_PROFILES: tuple[str, ...] = ("read", "write", "ddl")


def _upper_set(values) -> frozenset[str]:
    return frozenset(str(v).strip().upper() for v in values if str(v).strip())


# ── Policy profile ────────────────────────────────────────────────────────────

class PolicyConfig(BaseModel):
    """
    Static statement rules for one profile.
    blocked_keywords may hold fnmatch globs ("SP_*", "XP_*") for prefix matches.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed_keywords:           frozenset[str]
    blocked_keywords:           frozenset[str]
    max_statement_length:       int = Field(..., gt=0)
    select_only_mode:           bool
    block_system_tables:        bool
    block_drop_truncate:        bool
    block_delete_without_where: bool
    block_update_without_where: bool
    approval_keywords:          frozenset[str] = frozenset()
    allow_multiple_statements:  bool = False

    @field_validator("allowed_keywords", "blocked_keywords", "approval_keywords", mode="before")
    @classmethod
    def _normalize_keywords(cls, v):
        if isinstance(v, str):
            v = [v]
        return _upper_set(v)


# ── Resilience / sanitizer / contracts ───────────────────────────────────────

class ResiliencePolicy(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retry_attempts: int   = Field(3, ge=0)
    base_delay:         float = Field(1.0, ge=0)
    max_delay:          float = Field(30.0, ge=0)
    failure_threshold:  int   = Field(5, ge=1)
    break_duration:     float = Field(60.0, gt=0)
    timeout:            float = Field(60.0, gt=0)


class SanitizerPolicy(BaseModel):
    """
    block_categories promotes injection-signature categories from warning to
    hard error, e.g. ["stacked_destructive", "system_procedure"].
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_string_length: int            = Field(8000, gt=0)
    block_categories:  frozenset[str] = frozenset()


class ContractPolicy(BaseModel):
    """
    elevated_procedures / critical_procedures are fnmatch globs over
    lowercase "schema.name"; critical procedures run only after approval.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    cache_ttl_seconds:    float                       = Field(3600.0, gt=0)
    unexpected_parameter: Literal["error", "warning"] = "error"
    elevated_procedures:  frozenset[str]              = frozenset()
    critical_procedures:  frozenset[str]              = frozenset()

    @field_validator("elevated_procedures", "critical_procedures", mode="before")
    @classmethod
    def _lower_globs(cls, v):
        return frozenset(str(x).strip().lower() for x in v if str(x).strip())


class ServerInfo(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name:    str = "sqlgate"
    version: str = "0.1.0"


# ── Whole document ────────────────────────────────────────────────────────────

class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    server:     ServerInfo             = ServerInfo()
    policies:   dict[str, PolicyConfig]
    resilience: ResiliencePolicy       = ResiliencePolicy()
    sanitizer:  SanitizerPolicy        = SanitizerPolicy()
    contracts:  ContractPolicy         = ContractPolicy()
    databases:  dict[str, str]         = {}

    @model_validator(mode="after")
    def _require_profiles(self):
        missing = [p for p in REQUIRED_PROFILES if p not in self.policies]
        if missing:
            raise ValueError(f"missing policy profile(s): {', '.join(missing)}")
        return self

    def policy(self, profile: str) -> PolicyConfig:
        return self.policies[profile]


def load_config(path: str | os.PathLike | None = None) -> GatewayConfig:
    """Read and validate the policy document. Any problem is startup-fatal."""
    doc_path = Path(path or POLICY_PATH)
    if not doc_path.is_file():
        raise ConfigurationError(f"Policy document not found: {doc_path}")
    try:
        return GatewayConfig.model_validate_json(doc_path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigurationError(
            f"Invalid policy document {doc_path}",
            data={"errors": problems},
        ) from exc
