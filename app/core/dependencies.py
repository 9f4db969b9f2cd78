"""
Caller identity for the deploy routes.

Authentication itself belongs to Supabase Auth; this module only resolves a bearer token to
an owner id before any orchestrator operation runs.
"""

import hashlib
import logging
import time
from typing import Any, Dict, Tuple

from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client

from app.core.exceptions import AuthError
from app.database.supabase_client import get_supabase

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Short TTL cache so status polling does not hit Supabase Auth on every request
_USER_CACHE: Dict[str, Tuple[Dict[str, Any], float]] = {}
_USER_CACHE_TTL_SEC = 60
_USER_CACHE_MAX_SIZE = 500


def resolve_user(token: str, supabase: Client) -> Dict[str, Any]:
    """Return {"id", "email"} for a Supabase access token. Raises AuthError when invalid."""
    cache_key = hashlib.sha256(token.encode()).hexdigest()
    now = time.monotonic()
    cached = _USER_CACHE.get(cache_key)
    if cached is not None:
        user_data, expiry = cached
        if now < expiry:
            return user_data
        _USER_CACHE.pop(cache_key, None)

    try:
        user_response = supabase.auth.get_user(jwt=token)
    except Exception as e:
        logger.info(f"Token rejected by Supabase Auth: {e}")
        raise AuthError("Invalid or expired token")
    if not user_response or not user_response.user:
        raise AuthError("Invalid or expired token")

    user_data = {"id": user_response.user.id, "email": user_response.user.email}
    if len(_USER_CACHE) < _USER_CACHE_MAX_SIZE:
        _USER_CACHE[cache_key] = (user_data, now + _USER_CACHE_TTL_SEC)
    return user_data


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(security),
    supabase: Client = Depends(get_supabase),
) -> Dict[str, Any]:
    """Extract current user info from the bearer token"""
    return resolve_user(credentials.credentials, supabase)
