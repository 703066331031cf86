"""
Statement Validator
--------------------
Lexical/structural validation of one SQL statement against a PolicyConfig.
No SQL grammar: statements are tokenized into uppercase keyword candidates
and checked in this order:

  1. length limit                         → error, stop
  2. empty statement                      → error, stop
  3. select-only mode (leading verb)      → error
  4. blocked keywords (globs allowed)     → one error per keyword
  5. DROP / TRUNCATE flag                 → error
  6. DELETE / UPDATE without WHERE        → error
  7. system tables (sys.*, information_schema.*) → error
  8. more than one statement              → error
  9. no allowed keyword at all            → warning

Quoted string literals are removed before tokenizing, comments are not:
a blocked keyword hidden in a comment is still seen. Structural checks
(WHERE presence, statement count) look at code only, so a WHERE inside a
comment does not count.

classify() turns the result into allowed / blocked / requires_approval.
"""

import enum
import fnmatch
import re
from dataclasses import dataclass
from typing import Optional

import structlog

from sqlgate.services.safety.results import ValidationResult
from sqlgate.services.shared.config import PolicyConfig

logger = structlog.get_logger()

_STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'?")
_TOKEN_RE          = re.compile(r"[A-Za-z_][A-Za-z0-9_$#]*")
_LEADING_NOISE_RE  = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/|\()", re.DOTALL)
_COMMENT_RE        = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)

_SYSTEM_SCHEMA_RE = re.compile(
    r"(?<![\w.$#@])[\[\"`]?(sys|information_schema|pg_catalog)[\]\"`]?\s*\.\s*[\[\"`]?\w",
    re.IGNORECASE,
)
_SYSTEM_TABLE_TOKENS = frozenset({
    "SYSOBJECTS", "SYSCOLUMNS", "SYSUSERS", "SYSLOGINS", "SYSDATABASES",
    "SQLITE_MASTER", "SQLITE_SCHEMA", "PG_SHADOW", "PG_AUTHID",
})

_SELECT_VERBS = ("SELECT", "WITH")
_GLOB_CHARS   = set("*?[")


class StatementClass(str, enum.Enum):
    allowed           = "allowed"
    blocked           = "blocked"
    requires_approval = "requires_approval"


@dataclass
class StatementDecision:
    classification: StatementClass
    result:         ValidationResult
    leading_verb:   Optional[str]


# ── Lexing helpers ────────────────────────────────────────────────────────────

def strip_literals(statement: str) -> str:
    return _STRING_LITERAL_RE.sub("''", statement)


def tokenize(statement: str) -> list[str]:
    """Uppercase keyword candidates, string literal contents excluded."""
    return [t.upper() for t in _TOKEN_RE.findall(strip_literals(statement))]


def leading_verb(statement: str) -> Optional[str]:
    """First keyword after leading whitespace, comments and parentheses."""
    text = statement
    while True:
        m = _LEADING_NOISE_RE.match(text)
        if not m or not m.group(0):
            break
        text = text[m.end():]
    m = _TOKEN_RE.match(text)
    return m.group(0).upper() if m else None


def _matches(token: str, pattern: str) -> bool:
    if _GLOB_CHARS & set(pattern):
        return fnmatch.fnmatchcase(token, pattern)
    return token == pattern


def _code_only(statement: str) -> str:
    """Statement text with string literals and comments blanked out."""
    return _COMMENT_RE.sub(" ", strip_literals(statement))


def _has_trailing_statement(statement: str) -> bool:
    text = _code_only(statement).strip().rstrip(";").strip()
    return ";" in text and any(part.strip() for part in text.split(";")[1:])


# ── Validation ────────────────────────────────────────────────────────────────

def validate(statement: str, policy: PolicyConfig) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    if len(statement) > policy.max_statement_length:
        errors.append(
            f"Statement length {len(statement)} exceeds maximum of {policy.max_statement_length} characters"
        )
        return ValidationResult(errors=errors)

    tokens = tokenize(statement)
    if not tokens:
        return ValidationResult(errors=["Statement is empty"])

    verb = leading_verb(strip_literals(statement)) or tokens[0]

    if policy.select_only_mode and verb not in _SELECT_VERBS:
        errors.append(f"Only SELECT/WITH statements are permitted, found leading verb '{verb}'")

    seen: set[str] = set()
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        for pattern in policy.blocked_keywords:
            if _matches(token, pattern):
                errors.append(f"Blocked keyword '{token}' is not permitted")
                break

    if policy.block_drop_truncate:
        for kw in ("DROP", "TRUNCATE"):
            if kw in seen and not any(_matches(kw, p) for p in policy.blocked_keywords):
                errors.append(f"'{kw}' statements are not permitted")

    if verb in ("DELETE", "UPDATE"):
        flag = policy.block_delete_without_where if verb == "DELETE" else policy.block_update_without_where
        code_tokens = [t.upper() for t in _TOKEN_RE.findall(_code_only(statement))]
        verb_index = code_tokens.index(verb) if verb in code_tokens else 0
        if flag and "WHERE" not in code_tokens[verb_index + 1:]:
            errors.append(f"{verb} without a WHERE clause is not permitted")

    if policy.block_system_tables:
        literal_free = strip_literals(statement)
        m = _SYSTEM_SCHEMA_RE.search(literal_free)
        if m:
            errors.append(f"Access to system objects ('{m.group(1).lower()}.*') is not permitted")
        for token in sorted(seen & _SYSTEM_TABLE_TOKENS):
            errors.append(f"Access to system table '{token}' is not permitted")

    if not policy.allow_multiple_statements and _has_trailing_statement(statement):
        errors.append("Multiple statements in one request are not permitted")

    if not errors and not (seen & policy.allowed_keywords):
        warnings.append("Statement matches no allowed keyword; intent is ambiguous")

    return ValidationResult(errors=errors, warnings=warnings)


def classify(statement: str, policy: PolicyConfig) -> StatementDecision:
    result = validate(statement, policy)
    verb = leading_verb(strip_literals(statement))

    if not result.is_valid:
        logger.info("statement_blocked", verb=verb, error_count=len(result.errors))
        return StatementDecision(StatementClass.blocked, result, verb)
    if verb and verb in policy.approval_keywords:
        return StatementDecision(StatementClass.requires_approval, result, verb)
    return StatementDecision(StatementClass.allowed, result, verb)
