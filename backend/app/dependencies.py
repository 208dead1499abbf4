"""Dependency injection for FastAPI routes."""

import hmac
import time
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from jwt import PyJWKClient

from app.config import get_settings, Settings
from app.database import get_authenticated_postgrest_client, Database, get_db


security = HTTPBearer()

# Cache for JWKS client
_jwks_client: PyJWKClient | None = None
_jwks_client_timestamp: float = 0
JWKS_CACHE_TTL = 3600  # 1 hour


def get_jwks_client(settings: Settings) -> PyJWKClient:
    """Get cached JWKS client for Supabase JWT verification."""
    global _jwks_client, _jwks_client_timestamp

    current_time = time.time()

    # Refresh if cache expired or not initialized
    if _jwks_client is None or (current_time - _jwks_client_timestamp) > JWKS_CACHE_TTL:
        jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
        _jwks_client = PyJWKClient(jwks_url)
        _jwks_client_timestamp = current_time

    return _jwks_client


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Validate the Supabase JWT using JWKS and return the user profile.

    Auto-creates the profile row for users created directly in Supabase Auth.
    """
    token = credentials.credentials

    try:
        jwks_client = get_jwks_client(settings)
        signing_key = jwks_client.get_signing_key_from_jwt(token)

        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience="authenticated",
            issuer=f"{settings.supabase_url}/auth/v1",
        )

        user_id: str = payload.get("sub")
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing user ID",
                headers={"WWW-Authenticate": "Bearer"},
            )

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.PyJWKClientError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Token verification failed: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Profile lookups go through the user's JWT so RLS applies
    database = Database(get_authenticated_postgrest_client(token))
    user = database.get_user_by_id(user_id)

    if user is None:
        user = database.create_user({
            "id": user_id,
            "email": payload.get("email"),
            "display_name": None,
        })
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create user record",
            )

    return user


def get_admin_database() -> Database:
    """Database with the service role client.

    sync_jobs, sync_sessions, webhook_events and connection secrets are
    owned by the sync core, not by individual users; routes check
    ownership themselves.
    """
    return get_db()


async def require_scheduler(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> None:
    """Allow only the external scheduler (scheduler_token or the service role key)."""
    accepted = [
        token
        for token in (settings.scheduler_token, settings.supabase_service_role_key)
        if token
    ]
    supplied = credentials.credentials
    if not any(hmac.compare_digest(supplied, token) for token in accepted):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid scheduler token",
            headers={"WWW-Authenticate": "Bearer"},
        )
