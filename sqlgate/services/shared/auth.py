"""
Caller identity for the HTTP surface.

Provides the `get_caller` FastAPI dependency used by every route that acts on
behalf of someone (MCP calls, approvals, audit cleanup).

When REQUIRE_API_KEY=false (default for local dev):
  - the caller is taken from the X-User-Id header, defaulting to "anonymous"
  - no key validation is performed

When REQUIRE_API_KEY=true:
  - X-Api-Key must match SQLGATE_API_KEY (constant-time comparison)
  - returns HTTP 403 if the key is missing or wrong

Identity issuance is out of scope; this only decides who the audit trail
and task rows attribute an action to.

Usage in a FastAPI route:
    @router.post("/tasks/{task_id}/approve")
    def approve(task_id: str, caller: str = Depends(get_caller)):
        ...
"""

import hmac
import os

from fastapi import Header, HTTPException

REQUIRE_API_KEY: bool = os.getenv("REQUIRE_API_KEY", "false").lower() == "true"
SQLGATE_API_KEY: str = os.getenv("SQLGATE_API_KEY", "")


def check_api_key(presented: str | None, expected: str = SQLGATE_API_KEY) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def get_caller(
    x_api_key: str | None = Header(None, alias="X-Api-Key"),
    x_user_id: str | None = Header(None, alias="X-User-Id"),
) -> str:
    """FastAPI dependency: resolves the acting user for the current request."""
    if REQUIRE_API_KEY and not check_api_key(x_api_key):
        raise HTTPException(
            status_code=403,
            detail="A valid X-Api-Key header is required.",
        )
    return (x_user_id or "anonymous").strip() or "anonymous"
