"""Request authentication for the jobflow API.

Accepts either:
1. X-API-Key header matching INTERNAL_API_KEY (service-to-service, cron)
2. Authorization: Bearer <JWT> signed with JWT_SECRET (HS256), with a `sub`

The core only needs to know who (if anyone) is calling; the identity's
subject is stamped on the jobs, workflows and executions it creates.
"""

import hmac
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import jwt
from fastapi import Header, HTTPException

logger = logging.getLogger(__name__)

INTERNAL_API_KEY = os.environ.get("INTERNAL_API_KEY", "")
JWT_SECRET = os.environ.get("JWT_SECRET", "")
JWT_ALGORITHM = "HS256"


@dataclass
class Identity:
    """The authenticated caller."""
    subject: str
    method: str  # "api_key" | "jwt"
    claims: dict[str, Any] = field(default_factory=dict)


def verify_token(token: str) -> dict[str, Any]:
    """Decode and validate a bearer JWT. Raises HTTPException on failure."""
    if not JWT_SECRET:
        raise HTTPException(status_code=503, detail="JWT authentication is not configured")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return payload


async def require_identity(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Identity:
    """FastAPI dependency: resolve the caller or reject with 401."""
    if x_api_key:
        if INTERNAL_API_KEY and hmac.compare_digest(x_api_key, INTERNAL_API_KEY):
            return Identity(subject="internal", method="api_key")
        raise HTTPException(status_code=401, detail="Invalid API key")

    if authorization and authorization.lower().startswith("bearer "):
        payload = verify_token(authorization[7:].strip())
        return Identity(subject=str(payload["sub"]), method="jwt", claims=payload)

    raise HTTPException(status_code=401, detail="Authentication required")
