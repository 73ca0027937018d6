# API Security - Admin token for trigger endpoints
#
# Ingestion triggers and scheduler control are restricted to callers that
# present the configured admin token in the X-Admin-Token header.  Query
# endpoints stay open to the dashboard.

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

# Admin token configured for this process (None = admin endpoints disabled)
_ADMIN_TOKEN: Optional[str] = None


def initialize_admin_token(token: Optional[str] = None) -> str:
    """
    Set the admin token for this process.

    Args:
        token: Configured token.  When omitted a random 256-bit token is
               generated and returned so the operator can use it.

    Returns:
        The active admin token
    """
    global _ADMIN_TOKEN
    _ADMIN_TOKEN = token or secrets.token_urlsafe(32)
    return _ADMIN_TOKEN


def clear_admin_token() -> None:
    """Disable admin endpoints (they answer 503 until a token is set)."""
    global _ADMIN_TOKEN
    _ADMIN_TOKEN = None


async def verify_admin_token(x_admin_token: str = Header(None)) -> str:
    """
    FastAPI dependency to verify the admin token.

    Usage in routes:
        @router.post("/ingest", dependencies=[Depends(verify_admin_token)])

    Raises:
        HTTPException: 503 if no token is configured, 401 if the header
                       is missing or wrong
    """
    if _ADMIN_TOKEN is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin token not configured",
        )

    if x_admin_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-Token header",
        )

    # Constant-time comparison
    if not secrets.compare_digest(x_admin_token, _ADMIN_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )

    return x_admin_token
