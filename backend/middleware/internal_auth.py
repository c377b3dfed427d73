"""
Internal Service Authentication

API key authentication for the reconciliation admin surface. Callers are
internal services (the admin UI backend, ops tooling); the human acting
through them is identified by X-Actor-Id and recorded in the audit trail.

Environment Variables:
    INTERNAL_API_KEY: Primary API key for internal services
    INTERNAL_API_KEYS: Comma-separated list of valid keys (for key rotation)

Usage:
    from middleware.internal_auth import InternalCaller, require_internal_service

    @router.patch("/matches/{match_id}/resolve")
    async def resolve(caller: InternalCaller = Depends(require_internal_service)):
        caller.actor_id  # X-Actor-Id, or the service name

Headers:
    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name> (optional, for logging)
    X-Actor-Id: <user id> (optional; required by endpoints that record a human decision)
"""

import os
import secrets
import logging
from typing import Optional, Set
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

# Header names
API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"
ACTOR_ID_HEADER = "X-Actor-Id"

# Environment variable names
INTERNAL_API_KEY_ENV = "INTERNAL_API_KEY"
INTERNAL_API_KEYS_ENV = "INTERNAL_API_KEYS"  # Comma-separated for rotation


@dataclass
class InternalCaller:
    """An authenticated internal caller."""
    service_name: str
    api_key_hash: str  # Last 8 chars of key for logging
    actor_id: Optional[str] = None

    @property
    def audit_actor(self) -> str:
        return self.actor_id or self.service_name


@lru_cache(maxsize=1)
def _get_valid_api_keys() -> Set[str]:
    """
    Get set of valid API keys from environment.
    Cached; call _get_valid_api_keys.cache_clear() after changing the environment.
    """
    keys = set()

    primary_key = os.environ.get(INTERNAL_API_KEY_ENV)
    if primary_key:
        keys.add(primary_key.strip())

    additional_keys = os.environ.get(INTERNAL_API_KEYS_ENV, "")
    for key in additional_keys.split(","):
        key = key.strip()
        if key:
            keys.add(key)

    if not keys:
        logger.warning("No internal API keys configured - reconciliation admin API is closed")

    return keys


def is_internal_auth_configured() -> bool:
    """Check if internal authentication is configured."""
    return len(_get_valid_api_keys()) > 0


def validate_internal_key(api_key: str) -> bool:
    """
    Validate an internal API key.

    Returns:
        True if valid, False otherwise
    """
    if not api_key:
        return False

    # Constant-time comparison to prevent timing attacks
    for valid_key in _get_valid_api_keys():
        if secrets.compare_digest(api_key, valid_key):
            return True

    return False


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def get_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalCaller:
    """
    FastAPI dependency to authenticate internal service requests.

    Raises:
        HTTPException: 503 if no keys are configured, 401 if the key is missing or invalid
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")

    if not is_internal_auth_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal authentication not configured"
        )

    if not api_key:
        logger.warning(f"Missing API key from service: {service_name}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not validate_internal_key(api_key):
        logger.warning(f"Invalid API key from service: {service_name}, key ending: ...{api_key[-8:]}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip() or None
    return InternalCaller(
        service_name=service_name,
        api_key_hash=f"...{api_key[-8:]}",
        actor_id=actor_id,
    )


# Use directly as dependency
require_internal_service = get_internal_service


async def require_actor(caller: InternalCaller = Depends(get_internal_service)) -> InternalCaller:
    """Internal auth plus a named human actor (X-Actor-Id)."""
    if not caller.actor_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{ACTOR_ID_HEADER} header is required for this action"
        )
    return caller
